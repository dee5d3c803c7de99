"""Infrastructure modules for the yield lifecycle engine"""

from .clock import Clock, ManualClock, SystemClock  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"Clock",
	"ManualClock",
	"SystemClock",
	"MetricsRecorder",
	"TickStats",
	"StateStore",
]
