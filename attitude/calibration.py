#!/usr/bin/env python3
"""
calibration.py -- Static bias/scale estimation for a 6-axis IMU.

Collects samples while the sensor is at rest and computes:
  • accel bias   (m/s²)  -- mean reading minus the expected [0, 0, g]
  • gyro bias    (rad/s) -- mean reading (true rate is zero at rest)
  • accel/gyro scale     -- diag(1 + k · per-axis variance)

The scale term is an empirical noise-inflation heuristic, not a physical
sensitivity calibration.  ``k`` is configurable per deployment profile.

The caller must ensure the sensor is **stationary** and z-up during
calibration.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Union

import numpy as np

from .errors import CalibrationError

STANDARD_GRAVITY = 9.81     # m/s²  (value assumed by the stationary model)
CALIBRATION_SAMPLES = 1000


@dataclass
class CalibrationData:
    """Per-sensor bias and scale corrections:  corrected = scale @ (raw − bias)."""
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_scale: np.ndarray = field(default_factory=lambda: np.eye(3))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro_scale: np.ndarray = field(default_factory=lambda: np.eye(3))

    def __post_init__(self):
        self.accel_bias = np.asarray(self.accel_bias, dtype=float)
        self.accel_scale = np.asarray(self.accel_scale, dtype=float)
        self.gyro_bias = np.asarray(self.gyro_bias, dtype=float)
        self.gyro_scale = np.asarray(self.gyro_scale, dtype=float)
        self._check()

    def _check(self) -> None:
        for name, shape in (("accel_bias", (3,)), ("accel_scale", (3, 3)),
                            ("gyro_bias", (3,)), ("gyro_scale", (3, 3))):
            value = getattr(self, name)
            if value.shape != shape:
                raise CalibrationError(f"{name} must have shape {shape}, got {value.shape}")
            if not np.all(np.isfinite(value)):
                raise CalibrationError(f"{name} contains non-finite values")
        for name in ("accel_scale", "gyro_scale"):
            if abs(np.linalg.det(getattr(self, name))) < 1e-12:
                raise CalibrationError(f"{name} is singular")

    # -- Correction -------------------------------------------------------------

    def apply_accel(self, raw: np.ndarray) -> np.ndarray:
        return self.accel_scale @ (np.asarray(raw, dtype=float) - self.accel_bias)

    def apply_gyro(self, raw: np.ndarray) -> np.ndarray:
        return self.gyro_scale @ (np.asarray(raw, dtype=float) - self.gyro_bias)

    def copy(self) -> CalibrationData:
        return CalibrationData(
            accel_bias=self.accel_bias.copy(),
            accel_scale=self.accel_scale.copy(),
            gyro_bias=self.gyro_bias.copy(),
            gyro_scale=self.gyro_scale.copy(),
        )

    # -- Persistence ------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "accel_bias": self.accel_bias.tolist(),
            "accel_scale": self.accel_scale.tolist(),
            "gyro_bias": self.gyro_bias.tolist(),
            "gyro_scale": self.gyro_scale.tolist(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> CalibrationData:
        try:
            return cls(
                accel_bias=d["accel_bias"],
                accel_scale=d["accel_scale"],
                gyro_bias=d["gyro_bias"],
                gyro_scale=d["gyro_scale"],
            )
        except KeyError as e:
            raise CalibrationError(f"calibration record is missing {e}") from e
        except (TypeError, ValueError) as e:
            if isinstance(e, CalibrationError):
                raise
            raise CalibrationError(f"malformed calibration record: {e}") from e

    def save(self, path: Union[str, Path]) -> None:
        """Write as JSON.  Python float repr round-trips every value exactly."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Union[str, Path]) -> CalibrationData:
        try:
            with open(path, "r") as f:
                d = json.load(f)
        except json.JSONDecodeError as e:
            raise CalibrationError(f"{path}: not valid JSON ({e})") from e
        return cls.from_dict(d)

    def summary(self) -> str:
        ba = self.accel_bias
        bg = self.gyro_bias
        sa = np.diag(self.accel_scale)
        sg = np.diag(self.gyro_scale)
        return (
            f"Calibration\n"
            f"  Accel bias : [{ba[0]:+.4f}, {ba[1]:+.4f}, {ba[2]:+.4f}] m/s²\n"
            f"  Accel scale: [{sa[0]:.4f}, {sa[1]:.4f}, {sa[2]:.4f}]\n"
            f"  Gyro bias  : [{bg[0]:+.5f}, {bg[1]:+.5f}, {bg[2]:+.5f}] rad/s\n"
            f"  Gyro scale : [{sg[0]:.4f}, {sg[1]:.4f}, {sg[2]:.4f}]\n"
        )


# -- Sample accumulation -------------------------------------------------------

class CalibrationBuffer:
    """Paired accel/gyro FIFOs of fixed capacity; the oldest samples are evicted."""

    def __init__(self, capacity: int = CALIBRATION_SAMPLES):
        self.capacity = capacity
        self.accel: Deque[np.ndarray] = deque(maxlen=capacity)
        self.gyro: Deque[np.ndarray] = deque(maxlen=capacity)

    def append(self, accel: np.ndarray, gyro: np.ndarray) -> None:
        self.accel.append(np.asarray(accel, dtype=float).copy())
        self.gyro.append(np.asarray(gyro, dtype=float).copy())

    def clear(self) -> None:
        self.accel.clear()
        self.gyro.clear()

    @property
    def is_full(self) -> bool:
        return len(self.accel) >= self.capacity and len(self.gyro) >= self.capacity

    def __len__(self) -> int:
        return min(len(self.accel), len(self.gyro))


# -- Statistics ----------------------------------------------------------------

def compute_calibration(accel: np.ndarray,
                        gyro: np.ndarray,
                        gravity: float = STANDARD_GRAVITY,
                        accel_noise_gain: float = 0.5,
                        gyro_noise_gain: float = 0.5) -> CalibrationData:
    """
    Derive bias and scale corrections from *stationary* samples.

    Parameters
    ----------
    accel, gyro : array_like, shape (N, 3)
        Raw accelerometer (m/s²) and gyroscope (rad/s) readings.
    gravity : float
        Expected magnitude along +Z at rest.
    accel_noise_gain, gyro_noise_gain : float
        ``k`` in ``scale = diag(1 + k · var)``.

    Returns
    -------
    CalibrationData

    Raises
    ------
    CalibrationError
        Fewer than two samples, or statistics that are not finite.
    """
    accel = np.asarray(accel, dtype=float)
    gyro = np.asarray(gyro, dtype=float)
    if accel.ndim != 2 or accel.shape[1] != 3 or gyro.ndim != 2 or gyro.shape[1] != 3:
        raise CalibrationError(
            f"expected (N, 3) arrays, got {accel.shape} and {gyro.shape}")
    n = min(len(accel), len(gyro))
    if n < 2:
        raise CalibrationError(f"Need ≥2 samples for calibration, got {n}")

    # ── Mean and (N−1)-normalised covariance ──
    accel_mean = accel.mean(axis=0)
    gyro_mean = gyro.mean(axis=0)
    accel_cov = np.cov(accel, rowvar=False, ddof=1)
    gyro_cov = np.cov(gyro, rowvar=False, ddof=1)

    if not (np.all(np.isfinite(accel_cov)) and np.all(np.isfinite(gyro_cov))):
        raise CalibrationError("sample covariance is not finite")

    # ── Stationary, z-up: accel sees +g on Z, gyro sees zero rate ──
    accel_bias = accel_mean - np.array([0.0, 0.0, gravity])
    gyro_bias = gyro_mean

    accel_scale = np.diag(1.0 + accel_noise_gain * np.diag(accel_cov))
    gyro_scale = np.diag(1.0 + gyro_noise_gain * np.diag(gyro_cov))

    return CalibrationData(
        accel_bias=accel_bias,
        accel_scale=accel_scale,
        gyro_bias=gyro_bias,
        gyro_scale=gyro_scale,
    )
