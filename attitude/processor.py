#!/usr/bin/env python3
"""
processor.py -- Thread-safe IMU processing pipeline.

Per sample (under one lock):

  1. **Validate** -- finite components, |accel| inside the configured band,
     |gyro| under the sensor ceiling.  Rejected samples raise an error
     event and change nothing.
  2. **Timestamp gate** -- dt from the previous accepted sample; samples
     closer than ``min_dt`` are dropped silently.  The first sample uses
     dt = 0.
  3. **Calibration branch** -- while calibrating, samples are buffered and
     no orientation is produced.
  4. **Correct** -- ``scale @ (raw - bias)`` for accel and gyro.
  5. **Filter** -- the active :class:`OrientationFilter` is updated.
  6. **Smooth** (optional) -- slerp against the previously emitted
     orientation.
  7. **Emit** -- an :class:`OrientationEvent` on the channel.

Control calls (filter switch, calibration start/finish/load, reset) take
the same lock, so a sample is never processed against a half-replaced
filter or calibration.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .calibration import CalibrationBuffer, CalibrationData, compute_calibration
from .config import ProcessorConfig
from .errors import (
    AttitudeError, CalibrationError, FilterConstructionError, NumericalError,
    TransportError, ValidationError,
)
from .events import CalibrationEvent, ErrorEvent, EventChannel, OrientationEvent
from .filters import FilterType, OrientationFilter, _slerp, create_filter, parse_filter_type
from .imu_driver import IMUSample

logger = logging.getLogger(__name__)


class DataProcessor:
    """Validates, calibrates and filters IMU samples; publishes events."""

    def __init__(self,
                 config: Optional[ProcessorConfig] = None,
                 channel: Optional[EventChannel] = None):
        self.config = config or ProcessorConfig()
        self.config.validate()
        self.channel = channel or EventChannel(self.config.event_queue_size)

        self._lock = threading.Lock()

        # Fatal on failure: no pipeline without a filter
        self._filter_type = parse_filter_type(self.config.default_filter)
        self._filter: OrientationFilter = create_filter(self._filter_type)

        self._calibration = CalibrationData()
        self._buffer = CalibrationBuffer(self.config.calibration_samples)
        self._is_calibrating = False
        self._last_timestamp = 0
        self._smoothed: Optional[np.ndarray] = None

    # -- Read-only views -------------------------------------------------------

    @property
    def filter_type(self) -> FilterType:
        with self._lock:
            return self._filter_type

    @property
    def calibration(self) -> CalibrationData:
        with self._lock:
            return self._calibration.copy()

    @property
    def is_calibrating(self) -> bool:
        with self._lock:
            return self._is_calibrating

    @property
    def calibration_progress(self) -> float:
        """Fraction of the calibration buffer filled (0..1)."""
        with self._lock:
            return len(self._buffer) / self._buffer.capacity

    @property
    def last_timestamp(self) -> int:
        with self._lock:
            return self._last_timestamp

    def get_orientation(self) -> np.ndarray:
        with self._lock:
            return self._filter.get_orientation()

    # -- Sample path -----------------------------------------------------------

    def process_sample(self, sample: IMUSample) -> Optional[np.ndarray]:
        """
        Run one sample through the pipeline.

        Returns the emitted orientation quaternion, or None when the sample
        was rejected, dropped, or consumed by calibration.
        """
        try:
            self._validate(sample)
        except ValidationError as e:
            logger.warning("sample %d rejected: %s", sample.timestamp, e)
            self._emit_error(e)
            return None

        with self._lock:
            dt = 0.0
            if self._last_timestamp != 0:
                dt = (sample.timestamp - self._last_timestamp) / 1e6
                if dt < self.config.min_dt:
                    logger.debug("sample %d dropped: dt=%.6f s", sample.timestamp, dt)
                    return None

            if self._is_calibrating:
                self._buffer.append(sample.accel, sample.gyro)
                self._last_timestamp = sample.timestamp
                return None

            accel = self._calibration.apply_accel(sample.accel)
            gyro = self._calibration.apply_gyro(sample.gyro)

            try:
                with np.errstate(invalid="raise", divide="raise", over="raise"):
                    self._filter.update(accel, gyro, dt)
            except (NumericalError, np.linalg.LinAlgError, FloatingPointError) as e:
                if not isinstance(e, NumericalError):
                    e = NumericalError(f"{type(e).__name__}: {e}")
                logger.warning("filter update failed at %d: %s", sample.timestamp, e)
                self._emit_error(e)
                return None

            q = self._filter.get_orientation()
            if self.config.smoothing_factor is not None:
                if self._smoothed is not None:
                    q = _slerp(self._smoothed, q, self.config.smoothing_factor)
                self._smoothed = q.copy()

            self._last_timestamp = sample.timestamp
            self.channel.publish(OrientationEvent(sample.timestamp, q.copy()))
            return q

    def _validate(self, sample: IMUSample) -> None:
        cfg = self.config
        if sample.accel.shape != (3,) or sample.gyro.shape != (3,):
            raise ValidationError(
                f"expected 3-axis vectors, got {sample.accel.shape}/{sample.gyro.shape}")
        if not (np.all(np.isfinite(sample.accel)) and np.all(np.isfinite(sample.gyro))):
            raise ValidationError("non-finite IMU reading")

        a_mag = float(np.linalg.norm(sample.accel))
        if a_mag < cfg.accel_min or a_mag > cfg.accel_max:
            raise ValidationError(
                f"|accel|={a_mag:.4f} m/s² outside [{cfg.accel_min:.4f}, {cfg.accel_max:.4f}]")

        g_mag = float(np.linalg.norm(sample.gyro))
        if g_mag > cfg.gyro_max:
            raise ValidationError(f"|gyro|={g_mag:.4f} rad/s above {cfg.gyro_max:.4f}")

    # -- Filter control --------------------------------------------------------

    def set_filter_type(self, filter_type: Union[FilterType, str], **params) -> bool:
        """
        Replace the active filter with a freshly constructed one.

        The previous filter's state is discarded.  On failure the previous
        filter stays active, an error event is emitted and False returned.
        """
        try:
            ftype = parse_filter_type(filter_type)
            new_filter = create_filter(ftype, **params)
        except FilterConstructionError as e:
            logger.warning("filter switch to %r failed: %s", filter_type, e)
            self._emit_error(e)
            return False

        with self._lock:
            self._filter = new_filter
            self._filter_type = ftype
        logger.info("active filter: %s", ftype.value)
        return True

    def reset_orientation(self) -> None:
        """Reset the active filter to identity.  Calibration and buffers are kept."""
        with self._lock:
            self._filter.reset()

    # -- Calibration -----------------------------------------------------------

    def start_calibration(self) -> None:
        with self._lock:
            self._buffer.clear()
            self._is_calibrating = True
        logger.info("calibration started (%d samples)", self._buffer.capacity)

    def update_calibration(self, sample: IMUSample) -> None:
        """Buffer one sample if a calibration session is running."""
        with self._lock:
            if not self._is_calibrating:
                return
            self._buffer.append(sample.accel, sample.gyro)

    def finish_calibration(self) -> Optional[CalibrationData]:
        """
        Compute and install calibration from the buffered samples.

        Returns the new :class:`CalibrationData`, or None if the buffers are
        not yet full (session continues) or the statistics are unusable
        (session ends).  The previous calibration is kept in both cases.
        """
        cfg = self.config
        with self._lock:
            if not self._buffer.is_full:
                err = CalibrationError(
                    f"Not enough samples for calibration "
                    f"({len(self._buffer)}/{self._buffer.capacity})")
                logger.warning("%s", err)
                self._emit_error(err)
                return None

            try:
                cal = compute_calibration(
                    np.array(self._buffer.accel),
                    np.array(self._buffer.gyro),
                    gravity=cfg.gravity,
                    accel_noise_gain=cfg.accel_noise_gain,
                    gyro_noise_gain=cfg.gyro_noise_gain,
                )
            except CalibrationError as e:
                logger.warning("calibration failed: %s", e)
                self._emit_error(e)
                cal = None
            else:
                self._calibration = cal
                self.channel.publish(CalibrationEvent(cal.copy()))
                logger.info("calibration complete\n%s", cal.summary())
            finally:
                self._is_calibrating = False
                self._buffer.clear()
            return cal

    def set_calibration_data(self, calibration: CalibrationData) -> None:
        """Install externally supplied calibration, bypassing the session."""
        cal = calibration.copy()
        with self._lock:
            self._calibration = cal
            self.channel.publish(CalibrationEvent(cal.copy()))

    def load_calibration(self, path: Union[str, Path]) -> bool:
        try:
            cal = CalibrationData.load(path)
        except (CalibrationError, OSError) as e:
            err = e if isinstance(e, CalibrationError) else CalibrationError(f"{path}: {e}")
            logger.warning("loading calibration failed: %s", err)
            self._emit_error(err)
            return False
        self.set_calibration_data(cal)
        logger.info("calibration loaded from %s", path)
        return True

    def save_calibration(self, path: Union[str, Path]) -> bool:
        cal = self.calibration
        try:
            cal.save(path)
        except OSError as e:
            err = CalibrationError(f"{path}: {e}")
            logger.warning("saving calibration failed: %s", err)
            self._emit_error(err)
            return False
        logger.info("calibration saved to %s", path)
        return True

    # -- Errors ----------------------------------------------------------------

    def report_transport_error(self, message: str) -> None:
        """Forward a sample-source failure; pipeline state is untouched."""
        self._emit_error(TransportError(message))

    def _emit_error(self, err: AttitudeError) -> None:
        self.channel.publish(ErrorEvent(err.category, str(err)))
