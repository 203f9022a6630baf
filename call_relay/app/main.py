"""FastAPI entrypoint for the call relay.

This module performs four primary responsibilities:
1. Accept decoded push data maps and hand them to the call controller.
2. Accept actions and telephony events coming from the native call UI.
3. Expose user intents (accept/decline/end) and the call status projection.
4. Manage process-lifecycle resources: durable storage, the backend client,
   and the one-time controller bootstrap.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, HTTPException, Request, status

from shared.schemas import NativeEvent, NativePendingAction

from .backend_client import BackendClient
from .calls.controller import CallLifecycleController, build_controller
from .config import settings
from .native.base import NativeCallBridge
from .native.bridge import LocalNativeBridge
from .storage.base import KeyValueStore
from .storage.memory import InMemoryKeyValueStore
from .storage.postgres import PostgresKeyValueStore

_LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configures runtime log levels for relay lifecycle tracing."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    storage_level = getattr(logging, settings.STORAGE_LOG_LEVEL.upper(), logging.INFO)
    httpx_level = getattr(logging, settings.HTTPX_LOG_LEVEL.upper(), logging.WARNING)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)

    _LOGGER.setLevel(level)
    logging.getLogger("call_relay").setLevel(level)
    logging.getLogger("call_relay.app.storage").setLevel(storage_level)
    logging.getLogger("httpx").setLevel(httpx_level)
    logging.getLogger("httpcore").setLevel(httpx_level)
    _LOGGER.debug(
        "Logging configured for call relay.",
        extra={
            "log_level": settings.LOG_LEVEL,
            "storage_log_level": settings.STORAGE_LOG_LEVEL,
            "durable_backend": "postgres" if settings.DB_CONNECTION_STRING else "memory",
        },
    )


async def _open_default_store() -> KeyValueStore:
    """Returns Postgres storage when configured, otherwise an in-process store."""
    if not settings.DB_CONNECTION_STRING:
        _LOGGER.warning("DB_CONNECTION_STRING not set; call state will not survive restarts.")
        return InMemoryKeyValueStore()
    return await PostgresKeyValueStore.create(settings.DB_CONNECTION_STRING)


def _controller(request: Request) -> CallLifecycleController:
    return request.app.state.controller


def create_app(
    *,
    store: KeyValueStore | None = None,
    backend: BackendClient | None = None,
    bridge: NativeCallBridge | None = None,
) -> FastAPI:
    """Builds the relay application.

    Args:
        store: Durable store override. Defaults to settings-driven storage.
        backend: Backend client override.
        bridge: Native bridge override. Defaults to a store-backed bridge.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _LOGGER.debug("Call relay lifespan startup beginning.")
        owns_store = store is None
        durable = store if store is not None else await _open_default_store()
        client = backend or BackendClient()
        native = bridge or LocalNativeBridge(durable)
        controller = build_controller(store=durable, backend=client, bridge=native)
        app.state.store = durable
        app.state.bridge = native
        app.state.controller = controller
        await controller.bootstrap()
        try:
            yield
        finally:
            _LOGGER.debug("Call relay lifespan shutdown beginning.")
            await controller.shutdown()
            await client.close()
            if owns_store:
                try:
                    await durable.aclose()
                except Exception:
                    _LOGGER.exception("Failed to close durable store.")

    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Returns a minimal liveness response for probes."""
        return {"status": "ok", "service": "call_relay"}

    @app.post("/push/messages")
    async def push_message(
        request: Request,
        data: dict[str, Any] = Body(...),
        source: str = "push",
    ) -> dict[str, bool]:
        """Feeds one push data map to the controller. Undecodable maps are dropped."""
        await _controller(request).handle_remote_message(data, source)
        return {"accepted": True}

    @app.post("/native/actions")
    async def native_action(request: Request, action: NativePendingAction) -> dict[str, bool]:
        """Records an action taken on the native UI while the runtime was absent."""
        native = request.app.state.bridge
        if not isinstance(native, LocalNativeBridge):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Native action store is not available for this bridge.",
            )
        await native.actions.record(action.call_id, action.action, action.timestamp_ms or None)
        return {"recorded": True}

    @app.post("/native/events")
    async def native_event(request: Request, event: NativeEvent) -> dict[str, bool]:
        """Delivers a telephony event (answer/end) from the native call UI."""
        native = request.app.state.bridge
        if isinstance(native, LocalNativeBridge):
            await native.emit(event)
        else:
            await _controller(request).handle_native_event(event)
        return {"accepted": True}

    @app.post("/calls/{call_id}/accept")
    async def accept(request: Request, call_id: str, reason: str = "user") -> dict[str, Any]:
        controller = _controller(request)
        await controller.accept_call(call_id, reason)
        return controller.ui.get().model_dump(mode="json", by_alias=True)

    @app.post("/calls/{call_id}/decline")
    async def decline(request: Request, call_id: str, reason: str = "user") -> dict[str, Any]:
        controller = _controller(request)
        await controller.decline_call(call_id, reason)
        return controller.ui.get().model_dump(mode="json", by_alias=True)

    @app.post("/calls/{call_id}/end")
    async def end(request: Request, call_id: str, reason: str = "user") -> dict[str, Any]:
        controller = _controller(request)
        await controller.end_call(call_id, reason)
        return controller.ui.get().model_dump(mode="json", by_alias=True)

    @app.post("/calls/flush")
    async def flush(request: Request) -> dict[str, int]:
        controller = _controller(request)
        await controller.queue.flush()
        return {"pending": len(await controller.queue.load())}

    @app.get("/calls/state")
    async def call_state(request: Request) -> dict[str, Any]:
        return _controller(request).ui.get().model_dump(mode="json", by_alias=True)

    @app.get("/calls/pending")
    async def pending_actions(request: Request) -> list[dict[str, Any]]:
        entries = await _controller(request).queue.load()
        return [entry.model_dump(mode="json", by_alias=True) for entry in entries]

    return app


_configure_logging()
app = create_app()
