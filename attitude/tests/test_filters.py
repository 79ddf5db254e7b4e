#!/usr/bin/env python3
"""
test_filters.py -- Tests for the orientation filters.

Tests cover:
  * Quaternion math helpers (product, rotation, slerp, two-vector rotation)
  * Common filter contract (unit norm, reset, copy semantics)
  * Static convergence toward gravity alignment
  * Yaw tracking from the gyro
  * Kalman numerical-failure handling
  * Filter factory

Run:  python3 -m pytest attitude/tests/test_filters.py -v
"""

import math
import numpy as np
import pytest

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from attitude.errors import FilterConstructionError, NumericalError
from attitude.filters import (
    ComplementaryFilter, FilterType, KalmanFilter, MadgwickFilter,
    OrientationFilter, create_filter, parse_filter_type, q2euler,
    _qconj, _qfrom_rotvec, _qfrom_two_vectors, _qmul, _qnorm, _qrot,
    _skew, _slerp, IDENTITY_Q,
)

GRAVITY = np.array([0.0, 0.0, 9.81])
ZERO = np.zeros(3)
DT = 0.01   # 100 Hz

ALL_TYPES = [FilterType.COMPLEMENTARY, FilterType.MADGWICK, FilterType.KALMAN]


def _angle_from_identity(q: np.ndarray) -> float:
    return 2.0 * math.acos(min(1.0, abs(float(q[0]))))


def _tilt_then_rest(f: OrientationFilter, tilt_steps=50, rest_steps=500):
    """Roll about X at 1 rad/s, then hold still under gravity."""
    for _ in range(tilt_steps):
        f.update(GRAVITY, np.array([1.0, 0.0, 0.0]), DT)
    tilted = _angle_from_identity(f.get_orientation())
    for _ in range(rest_steps):
        f.update(GRAVITY, ZERO, DT)
    return tilted, f.get_orientation()


# ── Quaternion unit tests ──────────────────────────────────────────────────

class TestQuaternionOps:
    def test_identity_rotation(self):
        v = np.array([1.0, 2.0, 3.0])
        np.testing.assert_allclose(_qrot(IDENTITY_Q, v), v, atol=1e-12)

    def test_90deg_z_rotation(self):
        angle = math.pi / 2
        q = np.array([math.cos(angle/2), 0, 0, math.sin(angle/2)])
        vr = _qrot(q, np.array([1.0, 0.0, 0.0]))
        np.testing.assert_allclose(vr, [0, 1, 0], atol=1e-12)

    def test_qmul_inverse_gives_identity(self):
        q = _qnorm(np.array([1.0, 2.0, 3.0, 4.0]))
        np.testing.assert_allclose(_qmul(q, _qconj(q)), [1, 0, 0, 0], atol=1e-12)

    def test_qnorm_degenerate_is_identity(self):
        np.testing.assert_allclose(_qnorm(np.zeros(4)), IDENTITY_Q)

    def test_skew_cross_product(self):
        v = np.array([1.0, 2.0, 3.0])
        u = np.array([4.0, 5.0, 6.0])
        np.testing.assert_allclose(_skew(v) @ u, np.cross(v, u), atol=1e-12)
        np.testing.assert_allclose(_skew(v), -_skew(v).T, atol=1e-12)

    def test_rotvec_matches_axis_angle(self):
        q = _qfrom_rotvec(np.array([0.0, 0.0, math.pi / 2]), 1e-10)
        np.testing.assert_allclose(q, [math.cos(math.pi/4), 0, 0, math.sin(math.pi/4)],
                                   atol=1e-12)

    def test_rotvec_below_threshold_is_identity(self):
        q = _qfrom_rotvec(np.array([1e-12, 0.0, 0.0]), 1e-10)
        np.testing.assert_array_equal(q, IDENTITY_Q)

    def test_two_vectors(self):
        a = np.array([0.0, 0.0, 1.0])
        b = np.array([0.3, -1.0, 2.0])
        b = b / np.linalg.norm(b)
        q = _qfrom_two_vectors(a, b)
        np.testing.assert_allclose(_qrot(q, a), b, atol=1e-12)

    def test_two_vectors_antiparallel(self):
        a = np.array([0.0, 0.0, 1.0])
        q = _qfrom_two_vectors(a, -a)
        assert abs(np.linalg.norm(q) - 1.0) < 1e-12
        np.testing.assert_allclose(_qrot(q, a), -a, atol=1e-12)
        # Upside-down accelerometer maps to a half turn about X
        np.testing.assert_allclose(np.abs(q), [0.0, 1.0, 0.0, 0.0], atol=1e-12)

    def test_slerp_endpoints(self):
        q0 = IDENTITY_Q
        q1 = _qfrom_rotvec(np.array([0.0, 1.0, 0.0]), 1e-10)
        np.testing.assert_allclose(_slerp(q0, q1, 0.0), q0, atol=1e-12)
        np.testing.assert_allclose(_slerp(q0, q1, 1.0), q1, atol=1e-12)

    def test_slerp_halfway_angle(self):
        q1 = _qfrom_rotvec(np.array([0.0, 0.0, 1.0]), 1e-10)
        qh = _slerp(IDENTITY_Q, q1, 0.5)
        assert abs(_angle_from_identity(qh) - 0.5) < 1e-12

    def test_slerp_takes_shortest_arc(self):
        q1 = _qfrom_rotvec(np.array([0.0, 0.0, 1.0]), 1e-10)
        np.testing.assert_allclose(_slerp(IDENTITY_Q, -q1, 0.5),
                                   _slerp(IDENTITY_Q, q1, 0.5), atol=1e-12)

    def test_euler_of_yaw(self):
        q = _qfrom_rotvec(np.array([0.0, 0.0, math.radians(30.0)]), 1e-10)
        np.testing.assert_allclose(q2euler(q), [0.0, 0.0, 30.0], atol=1e-9)


# ── Common contract ─────────────────────────────────────────────────────────

class TestFilterContract:
    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_initial_identity(self, ftype):
        f = create_filter(ftype)
        np.testing.assert_array_equal(f.get_orientation(), IDENTITY_Q)

    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_unit_norm_under_random_input(self, ftype):
        rng = np.random.default_rng(7)
        f = create_filter(ftype)
        for _ in range(2000):
            accel = GRAVITY + rng.normal(0.0, 2.0, 3)
            gyro = rng.normal(0.0, 2.0, 3)
            f.update(accel, gyro, DT)
            assert abs(np.linalg.norm(f.get_orientation()) - 1.0) < 1e-9

    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_reset_gives_identity(self, ftype):
        f = create_filter(ftype)
        for _ in range(100):
            f.update(np.array([3.0, -2.0, 9.0]), np.array([0.5, -0.3, 1.0]), DT)
        assert _angle_from_identity(f.get_orientation()) > 1e-3
        f.reset()
        np.testing.assert_array_equal(f.get_orientation(), IDENTITY_Q)

    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_get_orientation_returns_copy(self, ftype):
        f = create_filter(ftype)
        q = f.get_orientation()
        q[:] = 0.0
        np.testing.assert_array_equal(f.get_orientation(), IDENTITY_Q)

    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_zero_dt_keeps_unit_norm(self, ftype):
        f = create_filter(ftype)
        f.update(GRAVITY, np.array([1.0, 2.0, 3.0]), 0.0)
        assert abs(np.linalg.norm(f.get_orientation()) - 1.0) < 1e-9

    @pytest.mark.parametrize("ftype", ALL_TYPES)
    def test_zero_accel_raises_and_keeps_state(self, ftype):
        f = create_filter(ftype)
        f.update(GRAVITY, np.array([0.2, 0.0, 0.0]), DT)
        before = f.get_orientation()
        with pytest.raises(NumericalError):
            f.update(ZERO, np.array([0.2, 0.0, 0.0]), DT)
        np.testing.assert_array_equal(f.get_orientation(), before)


# ── Static convergence ──────────────────────────────────────────────────────

class TestStaticConvergence:
    def test_gravity_only_stays_identity(self):
        for ftype in ALL_TYPES:
            f = create_filter(ftype)
            for _ in range(200):
                f.update(GRAVITY, ZERO, DT)
            assert _angle_from_identity(f.get_orientation()) < 1e-6

    def test_complementary_recovers_from_tilt(self):
        tilted, q = _tilt_then_rest(ComplementaryFilter())
        assert tilted > 0.1
        assert _angle_from_identity(q) < 1e-3

    def test_madgwick_recovers_from_tilt(self):
        tilted, q = _tilt_then_rest(MadgwickFilter())
        assert tilted > 0.1
        assert _angle_from_identity(q) < 1e-2

    def test_kalman_recovers_from_tilt(self):
        tilted, q = _tilt_then_rest(KalmanFilter())
        assert tilted > 0.01
        assert _angle_from_identity(q) < 5e-2

    def test_complementary_weight_sets_pull(self):
        """A heavier accelerometer weight pulls back to level faster."""
        slow, fast = ComplementaryFilter(0.02), ComplementaryFilter(0.2)
        for f in (slow, fast):
            for _ in range(20):
                f.update(GRAVITY, np.array([1.0, 0.0, 0.0]), DT)
        assert _angle_from_identity(fast.get_orientation()) < \
            _angle_from_identity(slow.get_orientation())


# ── Gyro tracking ───────────────────────────────────────────────────────────

class TestYawTracking:
    @pytest.mark.parametrize("ftype", [FilterType.MADGWICK, FilterType.KALMAN])
    def test_yaw_integrates_gyro(self, ftype):
        """Yaw is unobservable from gravity; 1 rad/s for 1 s gives ~57.3 deg."""
        f = create_filter(ftype)
        for _ in range(100):
            f.update(GRAVITY, np.array([0.0, 0.0, 1.0]), DT)
        roll, pitch, yaw = q2euler(f.get_orientation())
        assert abs(yaw - math.degrees(1.0)) < 0.5
        assert abs(roll) < 1e-6 and abs(pitch) < 1e-6

    def test_complementary_short_rotation_tracks(self):
        f = ComplementaryFilter()
        f.update(GRAVITY, np.array([0.0, 0.0, 1.0]), DT)
        _, _, yaw = q2euler(f.get_orientation())
        assert abs(yaw - math.degrees(0.01 * 0.98)) < 1e-3


# ── Kalman internals ────────────────────────────────────────────────────────

class TestKalman:
    def test_initial_covariance(self):
        kf = KalmanFilter()
        np.testing.assert_allclose(kf.P, np.eye(3) * 0.1)
        np.testing.assert_allclose(kf.Q, np.eye(3) * 0.001)
        np.testing.assert_allclose(kf.R, np.eye(3) * 0.1)

    def test_reset_restores_covariance(self):
        kf = KalmanFilter()
        for _ in range(50):
            kf.update(GRAVITY, np.array([0.3, 0.1, 0.0]), DT)
        kf.reset()
        np.testing.assert_allclose(kf.P, np.eye(3) * 0.1)

    def test_covariance_stays_finite(self):
        kf = KalmanFilter()
        for _ in range(1000):
            kf.update(GRAVITY, np.array([0.0, 0.0, 0.5]), DT)
        assert np.all(np.isfinite(kf.P))

    def test_non_finite_covariance_raises_without_corrupting(self):
        kf = KalmanFilter()
        kf.update(GRAVITY, np.array([0.2, 0.0, 0.0]), DT)
        q_before = kf.get_orientation()
        kf.P = np.full((3, 3), np.nan)
        with pytest.raises(NumericalError):
            kf.update(GRAVITY, np.array([0.2, 0.0, 0.0]), DT)
        np.testing.assert_array_equal(kf.get_orientation(), q_before)

    def test_ill_conditioned_innovation_raises_without_corrupting(self):
        # At identity with zero gyro: P = 0.101 I after predict, so
        # S = diag(0.201, 0.201, 0.1) and cond(S) ~ 2
        kf = KalmanFilter(max_condition=1.5)
        q_before = kf.get_orientation()
        P_before = kf.P.copy()
        with pytest.raises(NumericalError):
            kf.update(GRAVITY, ZERO, DT)
        np.testing.assert_array_equal(kf.get_orientation(), q_before)
        np.testing.assert_array_equal(kf.P, P_before)

    def test_well_conditioned_innovation_accepted(self):
        kf = KalmanFilter(max_condition=2.5)
        kf.update(GRAVITY, ZERO, DT)
        np.testing.assert_allclose(kf.P[2, 2], 0.101)

    def test_singular_inverse_raises_without_corrupting(self, monkeypatch):
        kf = KalmanFilter()
        kf.update(GRAVITY, np.array([0.2, 0.0, 0.0]), DT)
        q_before = kf.get_orientation()
        P_before = kf.P.copy()

        def singular(a):
            raise np.linalg.LinAlgError("Singular matrix")

        monkeypatch.setattr(np.linalg, "inv", singular)
        with pytest.raises(NumericalError):
            kf.update(GRAVITY, np.array([0.2, 0.0, 0.0]), DT)
        np.testing.assert_array_equal(kf.get_orientation(), q_before)
        np.testing.assert_array_equal(kf.P, P_before)

    def test_invalid_noise_rejected(self):
        with pytest.raises(FilterConstructionError):
            KalmanFilter(measurement_noise=0.0)


# ── Factory ─────────────────────────────────────────────────────────────────

class TestFactory:
    def test_types(self):
        assert isinstance(create_filter(FilterType.COMPLEMENTARY), ComplementaryFilter)
        assert isinstance(create_filter(FilterType.MADGWICK), MadgwickFilter)
        assert isinstance(create_filter(FilterType.KALMAN), KalmanFilter)

    def test_string_selector(self):
        assert isinstance(create_filter("Madgwick"), MadgwickFilter)
        assert parse_filter_type("kalman") is FilterType.KALMAN

    def test_defaults(self):
        assert create_filter("complementary").accel_weight == 0.02
        assert create_filter("madgwick").beta == 0.1

    def test_params_forwarded(self):
        assert create_filter("madgwick", beta=0.05).beta == 0.05

    def test_fresh_instance_each_call(self):
        assert create_filter("kalman") is not create_filter("kalman")

    def test_unknown_selector(self):
        with pytest.raises(FilterConstructionError):
            create_filter("particle")

    def test_unknown_parameter(self):
        with pytest.raises(FilterConstructionError):
            create_filter("madgwick", gain=0.3)

    @pytest.mark.parametrize("w", [0.0, 1.0, -0.1])
    def test_complementary_weight_range(self, w):
        with pytest.raises(FilterConstructionError):
            create_filter("complementary", accel_weight=w)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
