#!/usr/bin/env python3
"""
errors.py -- Error taxonomy for the attitude pipeline.

Every error carries a ``category`` string that is copied onto the
``ErrorEvent`` published by the pipeline, so observers can tell a dropped
sample from a failed calibration without parsing messages.
"""

from __future__ import annotations


class AttitudeError(Exception):
    """Base class for all pipeline errors."""
    category = "error"


class TransportError(AttitudeError, RuntimeError):
    """Sample source failed (port missing, read error, link closed)."""
    category = "transport"


class ValidationError(AttitudeError, ValueError):
    """Sample rejected before touching pipeline state."""
    category = "validation"


class FilterConstructionError(AttitudeError, ValueError):
    """Unknown filter selector or invalid filter parameters."""
    category = "filter"


class CalibrationError(AttitudeError, ValueError):
    """Not enough samples, or the statistics are unusable."""
    category = "calibration"


class NumericalError(AttitudeError, ArithmeticError):
    """Filter predict/correct produced a singular or non-finite result."""
    category = "numerical"
