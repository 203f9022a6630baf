"""In-memory registry of live call sessions."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterator
from dataclasses import dataclass, field

from shared.schemas import CallAction, CallInvite, CallStatus

_LOGGER = logging.getLogger(__name__)

_BUSY_STATUSES = frozenset({CallStatus.RINGING, CallStatus.ACCEPTED})

# Ended call ids kept for duplicate-invite suppression.
DEFAULT_MAX_ENDED = 1024


@dataclass(slots=True)
class CallSession:
    """Lifecycle record for one call, from ringing to ended.

    Attributes:
        invite: The invite that created the session.
        status: Current lifecycle status.
        timeout_task: Pending missed-call timer, owned by the session.
        processed_actions: Actions already handed to the backend pipeline in
            this process lifetime.
    """

    invite: CallInvite
    status: CallStatus = CallStatus.RINGING
    timeout_task: asyncio.Task[None] | None = None
    processed_actions: set[CallAction] = field(default_factory=set)

    @property
    def call_id(self) -> str:
        return self.invite.call_id

    def cancel_timeout(self) -> None:
        """Cancels the missed-call timer unless it is the task calling us."""
        task = self.timeout_task
        self.timeout_task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        _LOGGER.debug("Cancelling missed-call timer.", extra={"call_id": self.call_id})
        task.cancel()


class CallSessionRegistry:
    """Maps call ids to live sessions. Authoritative only while the process lives.

    Ended ids are remembered so re-delivered invites stay ignored. Only the
    most recent ``max_ended`` ids are kept.
    """

    def __init__(self, *, max_ended: int = DEFAULT_MAX_ENDED) -> None:
        self._sessions: dict[str, CallSession] = {}
        self._ended: OrderedDict[str, None] = OrderedDict()
        self._max_ended = max_ended

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._sessions.values()))

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    def add(self, session: CallSession) -> CallSession:
        self._sessions[session.call_id] = session
        return session

    def remove(self, call_id: str) -> CallSession | None:
        """Destroys the session and remembers the id as ended for this process."""
        session = self._sessions.pop(call_id, None)
        if session is not None:
            session.cancel_timeout()
        self._ended[call_id] = None
        self._ended.move_to_end(call_id)
        while len(self._ended) > self._max_ended:
            self._ended.popitem(last=False)
        return session

    def is_ended(self, call_id: str) -> bool:
        return call_id in self._ended

    def has_ringing_or_active(self) -> bool:
        return any(session.status in _BUSY_STATUSES for session in self._sessions.values())

    def clear(self) -> None:
        """Cancels every timer and forgets all sessions."""
        for session in list(self._sessions.values()):
            session.cancel_timeout()
        self._sessions.clear()
