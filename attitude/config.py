"""Pipeline configuration and named deployment profiles."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional

from .calibration import CALIBRATION_SAMPLES, STANDARD_GRAVITY
from .filters import FilterType, parse_filter_type

G = STANDARD_GRAVITY


@dataclass
class ProcessorConfig:
    # Validation band (inclusive)
    accel_min: float = 0.1 * G                  # m/s²
    accel_max: float = 4.0 * G                  # m/s²
    gyro_max: float = math.radians(500.0)       # rad/s

    min_dt: float = 0.001                       # s; closer samples are dropped
    calibration_samples: int = CALIBRATION_SAMPLES
    gravity: float = G
    accel_noise_gain: float = 0.5
    gyro_noise_gain: float = 0.5

    smoothing_factor: Optional[float] = None    # slerp weight of the new estimate
    default_filter: FilterType = FilterType.KALMAN
    event_queue_size: int = 1024

    def __post_init__(self):
        self.default_filter = parse_filter_type(self.default_filter)

    def validate(self) -> None:
        """Raise ValueError for settings the pipeline cannot honour."""
        if not 0.0 <= self.accel_min <= self.accel_max:
            raise ValueError(f"accel band [{self.accel_min}, {self.accel_max}] is empty")
        if self.gyro_max <= 0:
            raise ValueError(f"gyro_max must be positive, got {self.gyro_max}")
        if self.min_dt <= 0:
            raise ValueError(f"min_dt must be positive, got {self.min_dt}")
        if self.calibration_samples < 2:
            raise ValueError("calibration_samples must be at least 2")
        if self.accel_noise_gain < 0 or self.gyro_noise_gain < 0:
            raise ValueError("noise gains must be non-negative")
        if self.smoothing_factor is not None and not 0.0 < self.smoothing_factor <= 1.0:
            raise ValueError(f"smoothing_factor must be in (0, 1], got {self.smoothing_factor}")
        if self.event_queue_size < 1:
            raise ValueError("event_queue_size must be positive")

    @classmethod
    def from_profile(cls, name: str, **overrides) -> ProcessorConfig:
        try:
            base = PROFILES[name]
        except KeyError:
            raise ValueError(f"Unknown profile {name!r} (expected one of {sorted(PROFILES)})") from None
        return replace(base, **overrides)


PROFILES = {
    # Desktop visualiser fed by a wide-range sensor; smoothed output
    "desktop": ProcessorConfig(smoothing_factor=0.7),
    # Pico W firmware stream: tighter accel band, ±2000 °/s gyro
    "pico": ProcessorConfig(
        accel_min=0.5 * G,
        accel_max=3.0 * G,
        gyro_max=math.radians(2000.0),
        accel_noise_gain=0.01,
        gyro_noise_gain=0.01,
    ),
}
