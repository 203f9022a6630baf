"""HTTP client wrapper for notifying the backend about call decisions."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from shared.schemas import (
    CallAction,
    CallActionRequest,
    CallEndRequest,
    CallEndStatus,
    CallInvite,
    ReceiverRingingAckRequest,
)

from .config import settings

_LOGGER = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def redact_url(url: str) -> str:
    """Strips the query string so tokens in callback URLs never reach logs."""
    trimmed = (url or "").strip()
    head, sep, _ = trimmed.partition("?")
    return f"{head}?REDACTED" if sep else trimmed


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso_from_ms(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _leading_int(value: str) -> int | None:
    """Returns the leading integer of ``value`` (``"42abc"`` -> 42)."""
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else None


class BackendClient:
    """Thin async client for the backend call-decision routes.

    Every send raises on network failure (`httpx.HTTPError`) or a non-2xx
    response (`httpx.HTTPStatusError`) so callers can route failures into the
    retry queue.
    """

    def __init__(self, base_url: str | None = None, *, timeout: float | None = None) -> None:
        """Initializes the backend API client.

        Args:
            base_url: Backend API base URL. Defaults to settings.
            timeout: Request timeout in seconds. Defaults to settings.
        """
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout or settings.BACKEND_TIMEOUT_SECONDS)

    def resolve_endpoint(self, action_endpoint: str | None) -> str | None:
        """Turns an invite callback address into an absolute URL.

        Returns:
            ``None`` for blank addresses, the address itself when absolute,
            otherwise the address joined onto the backend base URL.
        """
        endpoint = (action_endpoint or "").strip()
        if not endpoint:
            return None
        if re.match(r"^https?://", endpoint, flags=re.IGNORECASE):
            return endpoint
        if endpoint.startswith("/"):
            return f"{self.base_url}{endpoint}"
        return f"{self.base_url}/{endpoint}"

    async def _post(self, url: str, payload: dict[str, Any], *, call_id: str) -> None:
        """POSTs a JSON payload and raises for non-2xx responses."""
        started = time.monotonic()
        _LOGGER.debug(
            "Sending backend request.",
            extra={"url": redact_url(url), "call_id": call_id, "payload_keys": sorted(payload)},
        )
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError:
            _LOGGER.warning(
                "Backend request network error.",
                extra={
                    "url": redact_url(url),
                    "call_id": call_id,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            raise
        duration_ms = int((time.monotonic() - started) * 1000)
        if response.is_error:
            _LOGGER.warning(
                "Backend request returned non-2xx.",
                extra={
                    "url": redact_url(url),
                    "call_id": call_id,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                    "duration_ms": duration_ms,
                },
            )
        response.raise_for_status()
        _LOGGER.debug(
            "Backend request succeeded.",
            extra={"url": redact_url(url), "call_id": call_id, "status_code": response.status_code},
        )

    async def send_call_action(self, invite: CallInvite, action: CallAction) -> None:
        """Posts ``{callId, action, timestampMs}`` to the invite callback."""
        endpoint = self.resolve_endpoint(invite.action_endpoint)
        if endpoint is None:
            _LOGGER.info(
                "Backend callback skipped (no actionEndpoint).",
                extra={"call_id": invite.call_id, "action": action.value},
            )
            return
        body = CallActionRequest(callId=invite.call_id, action=action, timestampMs=_now_ms())
        await self._post(endpoint, body.model_dump(mode="json", by_alias=True), call_id=invite.call_id)

    async def send_call_end(self, invite: CallInvite, status: CallEndStatus) -> None:
        """Posts the fixed call-end record for a declined or missed call."""
        body = CallEndRequest(
            callId=_leading_int(invite.call_id),
            status=status,
            callStatus=status,
            startTime=_iso_from_ms(invite.timestamp_ms) if invite.timestamp_ms else None,
            endTime=_iso_from_ms(_now_ms()),
            duration=0,
            type=invite.type,
            calleridDocID=invite.caller_doc_id or invite.caller_id,
            endedById=invite.receiver_id or invite.caller_id,
        )
        await self._post(
            f"{self.base_url}{settings.CALL_END_PATH}",
            body.model_dump(mode="json", by_alias=True),
            call_id=invite.call_id,
        )

    async def send_receiver_ringing_ack(self, call_id: str, receiver_id: str) -> None:
        """Tells the backend the receiver's device is ringing."""
        body = ReceiverRingingAckRequest(callId=call_id, receiverId=receiver_id)
        await self._post(
            f"{self.base_url}{settings.RINGING_ACK_PATH}",
            body.model_dump(mode="json", by_alias=True),
            call_id=call_id,
        )

    async def deliver_action(self, invite: CallInvite, action: CallAction) -> None:
        """Routes one terminal action to the backend route that records it.

        Invites with a callback address always use it. Without one, declines
        and misses go to the call-end route and accepts need no network call.
        """
        if invite.action_endpoint:
            await self.send_call_action(invite, action)
            return
        if action == CallAction.DECLINE:
            await self.send_call_end(invite, "declined")
            return
        if action == CallAction.MISSED:
            await self.send_call_end(invite, "missed")
            return
        if action == CallAction.ACCEPT:
            return
        raise ValueError(f"Unsupported call action: {action}")

    async def close(self) -> None:
        """Closes the underlying HTTP client and frees connection resources."""
        _LOGGER.debug("Closing BackendClient HTTP session.")
        await self._client.aclose()
