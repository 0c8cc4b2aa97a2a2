"""Background operational jobs."""

from .drift_detector import DriftDetector, DriftSweepReport

__all__ = [
    'DriftDetector',
    'DriftSweepReport',
]
