"""Progress events and the ProgressBus."""

from .bus import ProgressBus, Subscription
from .models import ProgressEvent, ProgressEventType

__all__ = ["ProgressBus", "ProgressEvent", "ProgressEventType", "Subscription"]
