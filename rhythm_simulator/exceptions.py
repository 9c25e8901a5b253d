"""
Errors raised by the rhythm generation engine.
"""


class RhythmSimulationError(Exception):
    """Base class for rhythm simulation failures."""


class InvalidParameter(RhythmSimulationError, ValueError):
    """Burden or duration outside the supported range, or a calibration that does not converge."""


class PoolExhaustion(RhythmSimulationError):
    """An RR pool ran out of intervals and could not be extended."""
