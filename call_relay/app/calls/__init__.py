"""Call-session state machine and its durable acknowledgement pipeline."""

from .controller import CallLifecycleController, build_controller
from .invite_store import InviteStore
from .ledger import ActionLedger
from .registry import CallSession, CallSessionRegistry
from .retry_queue import PendingActionQueue, compute_backoff_ms
from .ui_state import CallUiStore

__all__ = [
    "ActionLedger",
    "CallLifecycleController",
    "CallSession",
    "CallSessionRegistry",
    "CallUiStore",
    "InviteStore",
    "PendingActionQueue",
    "build_controller",
    "compute_backoff_ms",
]
