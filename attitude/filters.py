#!/usr/bin/env python3
"""
filters.py -- Orientation filters for a single 6-axis IMU.

Three interchangeable estimators share one contract
(:class:`OrientationFilter`): ``update(accel, gyro, dt)``,
``get_orientation()`` and ``reset()``.

  * **Complementary** -- gyro integration blended toward the
    accelerometer tilt by spherical interpolation.

  * **Madgwick** -- gradient-descent correction of the quaternion rate
    toward the gravity direction (Madgwick 2010, IMU variant).

  * **Kalman** -- simplified attitude EKF with a 3-dim small-angle error
    state, fixed process/measurement noise, and the accelerometer as a
    gravity reference.

Conventions
    q = [w, x, y, z]   scalar-first, Hamilton product, unit norm
    accel              m/s^2 (only its direction is used)
    gyro               rad/s, body frame
    dt                 seconds

``update`` is all-or-nothing: the new state is computed on locals and
committed only when every value is finite, otherwise :class:`NumericalError`
is raised and the previous state is kept.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Union

import numpy as np

from .errors import FilterConstructionError, NumericalError

# -- Constants -----------------------------------------------------------------
IDENTITY_Q = np.array([1.0, 0.0, 0.0, 0.0])
WORLD_UP = np.array([0.0, 0.0, 1.0])
GRAVITY_DOWN = np.array([0.0, 0.0, -1.0])

RAD2DEG = 180.0 / math.pi
DEG2RAD = math.pi / 180.0


# -- Quaternion helpers (scalar-first: q = [w, x, y, z]) ----------------------

def _qnorm(q: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(q)
    return q / n if n > 1e-12 else IDENTITY_Q.copy()


def _qmul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product  a * b."""
    w1, x1, y1, z1 = a
    w2, x2, y2, z2 = b
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2,
    ])


def _qconj(q: np.ndarray) -> np.ndarray:
    return np.array([q[0], -q[1], -q[2], -q[3]])


def _qrot(q: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Rotate vector *v* by quaternion *q*:  v' = q * [0,v] * q*."""
    qv = np.array([0.0, v[0], v[1], v[2]])
    return _qmul(_qmul(q, qv), _qconj(q))[1:]


def _skew(v: np.ndarray) -> np.ndarray:
    """3-vector -> skew-symmetric matrix [v]x."""
    return np.array([
        [ 0,    -v[2],  v[1]],
        [ v[2],  0,    -v[0]],
        [-v[1],  v[0],  0   ],
    ])


def _qfrom_rotvec(theta: np.ndarray, eps: float) -> np.ndarray:
    """Rotation vector (axis * angle) -> quaternion.  Identity below *eps*."""
    angle = float(np.linalg.norm(theta))
    if angle < eps:
        return IDENTITY_Q.copy()
    axis = theta / angle
    s = math.sin(angle / 2)
    return np.array([math.cos(angle / 2), axis[0]*s, axis[1]*s, axis[2]*s])


def _qfrom_two_vectors(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Shortest rotation taking direction *a* onto direction *b*."""
    a = a / np.linalg.norm(a)
    b = b / np.linalg.norm(b)
    dot = float(np.clip(np.dot(a, b), -1.0, 1.0))
    if dot < -1.0 + 1e-12:
        # Antiparallel: half turn about the basis axis least aligned with a
        e = np.eye(3)[int(np.argmin(np.abs(a)))]
        axis = e - np.dot(e, a) * a
        axis = axis / np.linalg.norm(axis)
        return np.array([0.0, axis[0], axis[1], axis[2]])
    cross = np.cross(a, b)
    return _qnorm(np.array([1.0 + dot, cross[0], cross[1], cross[2]]))


def _slerp(q0: np.ndarray, q1: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation along the shortest arc."""
    dot = float(np.dot(q0, q1))
    if dot < 0.0:
        q1 = -q1
        dot = -dot
    if dot > 1.0 - 1e-9:
        return _qnorm(q0 + t * (q1 - q0))
    theta = math.acos(min(dot, 1.0))
    sin_theta = math.sin(theta)
    w0 = math.sin((1.0 - t) * theta) / sin_theta
    w1 = math.sin(t * theta) / sin_theta
    return _qnorm(w0 * q0 + w1 * q1)


def q2euler(q: np.ndarray) -> np.ndarray:
    """Quaternion -> Euler angles [roll, pitch, yaw] in degrees."""
    w, x, y, z = q
    sinr = 2.0 * (w*x + y*z)
    cosr = 1.0 - 2.0 * (x*x + y*y)
    roll = math.atan2(sinr, cosr)
    sinp = 2.0 * (w*y - z*x)
    sinp = np.clip(sinp, -1.0, 1.0)
    pitch = math.asin(sinp)
    siny = 2.0 * (w*z + x*y)
    cosy = 1.0 - 2.0 * (y*y + z*z)
    yaw = math.atan2(siny, cosy)
    return np.array([roll, pitch, yaw]) * RAD2DEG


def _unit(v: np.ndarray, what: str) -> np.ndarray:
    n = float(np.linalg.norm(v))
    if not np.isfinite(n) or n < 1e-12:
        raise NumericalError(f"{what} vector cannot be normalised (|v|={n})")
    return v / n


def _checked(q: np.ndarray, where: str) -> np.ndarray:
    if not np.all(np.isfinite(q)):
        raise NumericalError(f"non-finite quaternion after {where}")
    return _qnorm(q)


# -- Common contract -----------------------------------------------------------

class OrientationFilter(ABC):
    """Stateful orientation estimator fed one (accel, gyro, dt) triple at a time."""

    def __init__(self):
        self.q = IDENTITY_Q.copy()

    @abstractmethod
    def update(self, accel: np.ndarray, gyro: np.ndarray, dt: float) -> None:
        ...

    def get_orientation(self) -> np.ndarray:
        return self.q.copy()

    def reset(self) -> None:
        self.q = IDENTITY_Q.copy()


# -- Complementary -------------------------------------------------------------

class ComplementaryFilter(OrientationFilter):
    """
    Gyro integration pulled toward the accelerometer tilt.

    Each step right-multiplies the exponential-map delta of ``gyro * dt``
    and then slerps a fraction ``accel_weight`` of the way toward the
    rotation that takes world +Z onto the measured accelerometer direction.
    """

    def __init__(self, accel_weight: float = 0.02):
        if not 0.0 < accel_weight < 1.0:
            raise FilterConstructionError(
                f"accel_weight must be in (0, 1), got {accel_weight}")
        super().__init__()
        self.accel_weight = accel_weight

    def update(self, accel: np.ndarray, gyro: np.ndarray, dt: float) -> None:
        dq = _qfrom_rotvec(np.asarray(gyro, dtype=float) * dt, 1e-10)
        q_gyro = _qmul(self.q, dq)

        a = _unit(np.asarray(accel, dtype=float), "accelerometer")
        q_accel = _qfrom_two_vectors(WORLD_UP, a)

        self.q = _checked(_slerp(q_gyro, q_accel, self.accel_weight),
                          "complementary blend")


# -- Madgwick ------------------------------------------------------------------

class MadgwickFilter(OrientationFilter):
    """
    Madgwick gradient-descent filter (accelerometer + gyro only).

    The gravity-alignment objective is

        f(q, a) = R(q)^T [0, 0, 1] - a_hat

    and the normalised gradient J^T f is subtracted, scaled by ``beta``,
    from the gyro quaternion rate before Euler integration.
    """

    def __init__(self, beta: float = 0.1):
        if beta < 0.0:
            raise FilterConstructionError(f"beta must be >= 0, got {beta}")
        super().__init__()
        self.beta = beta

    def update(self, accel: np.ndarray, gyro: np.ndarray, dt: float) -> None:
        q0, q1, q2, q3 = self.q
        ax, ay, az = _unit(np.asarray(accel, dtype=float), "accelerometer")
        gx, gy, gz = np.asarray(gyro, dtype=float)

        # -- Objective and Jacobian --
        f = np.array([
            2*(q1*q3 - q0*q2) - ax,
            2*(q0*q1 + q2*q3) - ay,
            2*(0.5 - q1*q1 - q2*q2) - az,
        ])
        J = np.array([
            [-2*q2,  2*q3, -2*q0,  2*q1],
            [ 2*q1,  2*q0,  2*q3,  2*q2],
            [ 0.0,  -4*q1, -4*q2,  0.0 ],
        ])
        step = J.T @ f
        mag = float(np.linalg.norm(step))
        if mag > 1e-10:
            step = step / mag

        # -- Rate of change from gyro:  q_dot = 0.5 * q * [0, w] --
        q_dot = 0.5 * np.array([
            -q1*gx - q2*gy - q3*gz,
             q0*gx + q2*gz - q3*gy,
             q0*gy - q1*gz + q3*gx,
             q0*gz + q1*gy - q2*gx,
        ])
        q_dot -= self.beta * step

        self.q = _checked(self.q + q_dot * dt, "madgwick integration")


# -- Simplified attitude EKF ---------------------------------------------------

class KalmanFilter(OrientationFilter):
    """
    Simplified attitude EKF.

    Error state is a 3-vector of small rotation angles with covariance P.
    Predict integrates the gyro; correct compares the normalised
    accelerometer with the body-frame gravity predicted from q.

    Noise is fixed:  Q = 0.001 I,  R = 0.1 I,  P0 = 0.1 I.
    """

    def __init__(self,
                 process_noise: float = 0.001,
                 measurement_noise: float = 0.1,
                 initial_covariance: float = 0.1,
                 max_condition: float = 1e12):
        if process_noise < 0 or measurement_noise <= 0 or initial_covariance <= 0:
            raise FilterConstructionError(
                "Kalman noise terms must be positive "
                f"(Q={process_noise}, R={measurement_noise}, P0={initial_covariance})")
        super().__init__()
        self.initial_covariance = initial_covariance
        self.max_condition = max_condition
        self.Q = np.eye(3) * process_noise
        self.R = np.eye(3) * measurement_noise
        self.P = np.eye(3) * initial_covariance

    def reset(self) -> None:
        super().reset()
        self.P = np.eye(3) * self.initial_covariance

    def update(self, accel: np.ndarray, gyro: np.ndarray, dt: float) -> None:
        q, P = self._predict(self.q, self.P, np.asarray(gyro, dtype=float), dt)
        q, P = self._correct(q, P, np.asarray(accel, dtype=float))
        if not np.all(np.isfinite(P)):
            raise NumericalError("non-finite covariance after correction")
        self.q = q
        self.P = P

    # -- EKF predict -----------------------------------------------------------

    def _predict(self, q: np.ndarray, P: np.ndarray,
                 gyro: np.ndarray, dt: float) -> tuple[np.ndarray, np.ndarray]:
        theta = gyro * dt
        q = _checked(_qmul(q, _qfrom_rotvec(theta, 1e-6)), "predict")

        F = np.eye(3) - _skew(theta)
        P = F @ P @ F.T + self.Q
        return q, P

    # -- EKF correct: accelerometer gravity reference --------------------------

    def _correct(self, q: np.ndarray, P: np.ndarray,
                 accel: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        z = _unit(accel, "accelerometer")
        h = _qrot(_qconj(q), GRAVITY_DOWN)
        y = z - h

        H = -_skew(h)
        S = H @ P @ H.T + self.R
        if not np.all(np.isfinite(S)) or np.linalg.cond(S) > self.max_condition:
            raise NumericalError("innovation covariance S is singular")
        try:
            S_inv = np.linalg.inv(S)
        except np.linalg.LinAlgError as e:
            raise NumericalError(f"innovation covariance inversion failed: {e}") from e
        K = P @ H.T @ S_inv

        dtheta = K @ y
        q = _checked(_qmul(_qfrom_rotvec(dtheta, 1e-6), q), "correct")

        P = (np.eye(3) - K @ H) @ P
        return q, P


# -- Factory -------------------------------------------------------------------

class FilterType(str, Enum):
    COMPLEMENTARY = "complementary"
    MADGWICK = "madgwick"
    KALMAN = "kalman"


_FILTERS = {
    FilterType.COMPLEMENTARY: ComplementaryFilter,
    FilterType.MADGWICK: MadgwickFilter,
    FilterType.KALMAN: KalmanFilter,
}


def parse_filter_type(filter_type: Union[FilterType, str]) -> FilterType:
    """Accept a :class:`FilterType` or its string value (case-insensitive)."""
    if isinstance(filter_type, FilterType):
        return filter_type
    try:
        return FilterType(str(filter_type).lower())
    except ValueError:
        raise FilterConstructionError(
            f"Unknown filter type: {filter_type!r} "
            f"(expected one of {[t.value for t in FilterType]})") from None


def create_filter(filter_type: Union[FilterType, str] = FilterType.KALMAN,
                  **params) -> OrientationFilter:
    """
    Construct a fresh filter of the requested type.

    Parameters
    ----------
    filter_type : FilterType or str
        ``complementary``, ``madgwick`` or ``kalman``.
    **params
        Forwarded to the filter constructor (e.g. ``beta=0.05``).

    Raises
    ------
    FilterConstructionError
        Unknown selector or invalid parameters.
    """
    cls = _FILTERS[parse_filter_type(filter_type)]
    try:
        return cls(**params)
    except TypeError as e:
        raise FilterConstructionError(f"{cls.__name__}: {e}") from e
