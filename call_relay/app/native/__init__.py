"""Native call-UI boundary: bridge interface and implementations."""

from .action_store import NativeActionStore
from .affordance import BestEffortAffordance
from .base import NativeCallBridge, NativeEventHandler
from .bridge import LocalNativeBridge

__all__ = [
    "BestEffortAffordance",
    "LocalNativeBridge",
    "NativeActionStore",
    "NativeCallBridge",
    "NativeEventHandler",
]
