"""Decoding of push-message data maps into call invites and end signals.

Push payloads arrive as flat string maps. Anything that does not decode is
reported as ``None`` so callers can log and drop it.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from shared.schemas import CallEnded, CallInvite, CallKind

from ..config import settings

_LOGGER = logging.getLogger(__name__)

INVITE_TYPE_TAGS = frozenset(
    {
        "call_invite",
        "voicecall",
        "videocall",
        "voice_call",
        "video_call",
        "call",
        "call_ringing",
    }
)
CALL_ENDED_TYPE_TAG = "call_ended"

ROUTING_KEYS = ("channelName", "roomId", "token", "category", "categoryName", "ProfilePic")


def _get_string(data: Mapping[str, Any], key: str) -> str:
    """Returns a trimmed string for scalar values and ``""`` otherwise."""
    value = data.get(key)
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    return ""


def _parse_number(raw: str) -> float | None:
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _normalize_ttl(raw: str) -> int:
    """Floors and clamps ``ttlSec``; unusable values fall back to the default."""
    parsed = _parse_number(raw)
    if parsed is None or parsed < settings.MIN_TTL_SEC:
        parsed = settings.DEFAULT_TTL_SEC
    return min(max(math.floor(parsed), settings.MIN_TTL_SEC), settings.MAX_TTL_SEC)


def parse_call_invite(data: Mapping[str, Any] | None) -> CallInvite | None:
    """Decodes a push data map into a ``CallInvite``.

    Args:
        data: Raw push data map.

    Returns:
        A validated invite, or ``None`` when the payload is not a usable
        invite (unknown type tag, missing identity, bad timestamp).
    """
    if not data:
        return None
    type_tag = _get_string(data, "type").lower()
    if type_tag not in INVITE_TYPE_TAGS:
        return None

    call_id = _get_string(data, "callId")
    caller_name = _get_string(data, "callerName")
    if not call_id or not caller_name:
        return None

    raw_timestamp = _get_string(data, "timestampMs") or _get_string(data, "timestamp")
    timestamp = _parse_number(raw_timestamp) if raw_timestamp else float(int(time.time() * 1000))
    if timestamp is None or timestamp <= 0:
        return None

    optional = {
        key: _get_string(data, key) or None
        for key in ("actionEndpoint", "callerId", "receiverId", "calleridDocID", "receiverDocID")
    }
    routing = {key: value for key in ROUTING_KEYS if (value := _get_string(data, key))}

    try:
        return CallInvite(
            type=CallKind.VIDEO if "video" in type_tag else CallKind.VOICE,
            callId=call_id,
            callerName=caller_name,
            timestampMs=int(timestamp),
            ttlSec=_normalize_ttl(_get_string(data, "ttlSec")),
            routing=routing,
            **optional,
        )
    except ValidationError:
        _LOGGER.debug("Push invite failed schema validation.", extra={"call_id": call_id}, exc_info=True)
        return None


def parse_call_ended(data: Mapping[str, Any] | None) -> CallEnded | None:
    """Decodes a ``CALL_ENDED`` push data map."""
    if not data:
        return None
    if _get_string(data, "type").lower() != CALL_ENDED_TYPE_TAG:
        return None

    call_id = _get_string(data, "callId")
    if not call_id:
        return None

    dismiss_raw = _get_string(data, "dismissNotification").lower()
    dismiss: bool | None = None
    if dismiss_raw == "true":
        dismiss = True
    elif dismiss_raw == "false":
        dismiss = False

    return CallEnded(
        callId=call_id,
        status=_get_string(data, "status") or None,
        dismissNotification=dismiss,
    )
