from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CallKind(str, Enum):
    VOICE = "voiceCall"
    VIDEO = "videoCall"


class CallAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    MISSED = "missed"


class CallStatus(str, Enum):
    IDLE = "idle"
    RINGING = "ringing"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    MISSED = "missed"
    ENDED = "ended"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CallInvite(_CamelModel):
    """Incoming call announcement. Immutable once decoded."""

    type: CallKind = CallKind.VOICE
    call_id: str = Field(alias="callId", min_length=1)
    caller_name: str = Field(alias="callerName", min_length=1)
    timestamp_ms: int = Field(alias="timestampMs", gt=0)
    ttl_sec: int = Field(alias="ttlSec", ge=5, le=120, default=30)
    action_endpoint: Optional[str] = Field(alias="actionEndpoint", default=None)
    caller_id: Optional[str] = Field(alias="callerId", default=None)
    receiver_id: Optional[str] = Field(alias="receiverId", default=None)
    caller_doc_id: Optional[str] = Field(alias="calleridDocID", default=None)
    receiver_doc_id: Optional[str] = Field(alias="receiverDocID", default=None)
    routing: dict[str, str] = Field(default_factory=dict)

    @property
    def has_video(self) -> bool:
        return self.type == CallKind.VIDEO


class CallEnded(_CamelModel):
    type: Literal["CALL_ENDED"] = "CALL_ENDED"
    call_id: str = Field(alias="callId", min_length=1)
    status: Optional[str] = None
    dismiss_notification: Optional[bool] = Field(alias="dismissNotification", default=None)


class CallUiState(_CamelModel):
    status: CallStatus = CallStatus.IDLE
    call_id: Optional[str] = Field(alias="callId", default=None)
    caller_name: Optional[str] = Field(alias="callerName", default=None)
    last_event_at_ms: int = Field(alias="lastEventAtMs", default=0)


class PendingAction(_CamelModel):
    """Backend notification that has not been acknowledged yet."""

    call_id: str = Field(alias="callId")
    action: CallAction
    invite: CallInvite
    attempts: int = Field(ge=0, default=0)
    next_attempt_at_ms: int = Field(alias="nextAttemptAtMs", default=0)
    last_error: str = Field(alias="lastError", default="")

    @property
    def key(self) -> str:
        return f"{self.call_id}:{self.action.value}"


class NativePendingAction(_CamelModel):
    call_id: str = Field(alias="callId")
    action: str
    timestamp_ms: int = Field(alias="timestampMs", default=0)

    @field_validator("action")
    @classmethod
    def normalize_action(cls, value: str) -> str:
        return value.strip().lower()


class NativeEvent(_CamelModel):
    name: Literal["answer", "end"]
    call_id: str = Field(alias="callId", min_length=1)


class CallActionRequest(_CamelModel):
    call_id: str = Field(alias="callId")
    action: CallAction
    timestamp_ms: int = Field(alias="timestampMs")


CallEndStatus = Literal["declined", "missed", "timeout", "completed"]


class CallEndRequest(_CamelModel):
    call_id: Optional[int] = Field(alias="callId", default=None)
    status: CallEndStatus
    call_status: CallEndStatus = Field(alias="callStatus")
    start_time: Optional[str] = Field(alias="startTime", default=None)
    end_time: str = Field(alias="endTime")
    duration: int = 0
    type: CallKind = CallKind.VOICE
    caller_doc_id: Optional[str] = Field(alias="calleridDocID", default=None)
    ended_by_id: Optional[str] = Field(alias="endedById", default=None)


class ReceiverRingingAckRequest(_CamelModel):
    call_id: str = Field(alias="callId")
    receiver_id: str = Field(alias="receiverId")
