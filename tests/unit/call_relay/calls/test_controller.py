from __future__ import annotations

import asyncio
import json

import httpx

from shared.schemas import CallAction, CallStatus, NativeEvent

from call_relay.app.backend_client import BackendClient
from call_relay.app.calls.controller import build_controller
from call_relay.app.calls.invite_store import invite_key
from call_relay.app.calls.ledger import action_done_key
from call_relay.app.storage.memory import InMemoryKeyValueStore
from tests.unit.call_relay._fakes import (
    FakeBackend,
    FakeBridge,
    FakeClock,
    FailingStore,
    GatedSleep,
    make_controller,
    make_invite,
    run,
)


def test_invite_starts_ringing_persists_and_arms_timer() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        bridge = FakeBridge()
        sleep = GatedSleep()
        controller = make_controller(store=store, bridge=bridge, sleep=sleep)

        await controller.handle_incoming_invite(make_invite("c1", ttlSec=12), "push")
        await asyncio.sleep(0)

        session = controller.registry.get("c1")
        assert session is not None
        assert session.status == CallStatus.RINGING
        assert session.timeout_task is not None
        assert sleep.delays == [12]
        assert invite_key("c1") in store.snapshot()
        assert bridge.started == ["c1"]
        ui = controller.ui.get()
        assert (ui.status, ui.call_id, ui.caller_name) == (CallStatus.RINGING, "c1", "Bob")

        await controller.shutdown()

    run(scenario())


def test_unanswered_call_is_missed_after_ttl() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        backend = FakeBackend()
        sleep = GatedSleep()
        controller = make_controller(store=store, backend=backend, sleep=sleep)

        await controller.handle_incoming_invite(make_invite("c1", ttlSec=5), "push")
        await asyncio.sleep(0)
        timer = controller.registry.get("c1").timeout_task

        sleep.release()
        await timer
        await controller.wait_idle()

        assert sleep.delays == [5]
        assert "c1" not in controller.registry
        assert controller.ui.get().status == CallStatus.ENDED
        assert backend.deliveries == [("c1", CallAction.MISSED)]
        assert await controller.ledger.is_done("c1", CallAction.MISSED)
        assert invite_key("c1") not in store.snapshot()

    run(scenario())


def test_missed_is_ignored_once_call_was_accepted() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        controller = make_controller(backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.accept_call("c1", "user")
        await controller.mark_missed("c1")
        await controller.wait_idle()

        assert controller.registry.get("c1").status == CallStatus.ACCEPTED
        assert backend.deliveries == [("c1", CallAction.ACCEPT)]

        await controller.shutdown()

    run(scenario())


def test_accept_cancels_timer_and_notifies_backend() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        bridge = FakeBridge()
        controller = make_controller(backend=backend, bridge=bridge)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        timer = controller.registry.get("c1").timeout_task
        await controller.accept_call("c1", "user")
        await controller.wait_idle()
        await asyncio.sleep(0)

        assert timer.cancelled()
        assert controller.registry.get("c1").timeout_task is None
        assert controller.ui.get().status == CallStatus.ACCEPTED
        assert bridge.stopped == ["accepted"]
        assert backend.deliveries == [("c1", CallAction.ACCEPT)]

        await controller.shutdown()

    run(scenario())


def test_duplicate_invite_is_ignored() -> None:
    async def scenario() -> None:
        sleep = GatedSleep()
        bridge = FakeBridge()
        controller = make_controller(sleep=sleep, bridge=bridge)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        first = controller.registry.get("c1")
        await controller.handle_incoming_invite(make_invite("c1", callerName="Mallory"), "push_retry")
        await asyncio.sleep(0)

        assert controller.registry.get("c1") is first
        assert first.invite.caller_name == "Bob"
        assert len(controller.registry) == 1
        assert sleep.delays == [30]
        assert bridge.started == ["c1"]

        await controller.shutdown()

    run(scenario())


def test_invite_while_busy_is_ignored() -> None:
    async def scenario() -> None:
        sleep = GatedSleep()
        store = InMemoryKeyValueStore()
        controller = make_controller(store=store, sleep=sleep)

        await controller.handle_incoming_invite(make_invite("a"), "push")
        await asyncio.sleep(0)
        await controller.handle_incoming_invite(make_invite("b"), "push")
        await controller.accept_call("a", "user")
        await controller.handle_incoming_invite(make_invite("c"), "push")
        await asyncio.sleep(0)

        assert "b" not in controller.registry
        assert "c" not in controller.registry
        assert sleep.delays == [30]
        assert invite_key("b") not in store.snapshot()
        assert controller.ui.get().call_id == "a"

        await controller.shutdown()

    run(scenario())


def test_decline_ends_call_and_removes_invite() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        backend = FakeBackend()
        controller = make_controller(store=store, backend=backend)
        seen: list[CallStatus] = []
        controller.ui.subscribe(lambda state: seen.append(state.status))

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.decline_call("c1", "user")
        await controller.wait_idle()

        assert seen == [CallStatus.RINGING, CallStatus.DECLINED, CallStatus.ENDED]
        assert "c1" not in controller.registry
        assert invite_key("c1") not in store.snapshot()
        assert backend.deliveries == [("c1", CallAction.DECLINE)]
        assert store.snapshot()[action_done_key("c1", CallAction.DECLINE)] == "1"

    run(scenario())


def test_ended_call_accepts_no_further_transitions() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        sleep = GatedSleep()
        controller = make_controller(backend=backend, sleep=sleep)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await asyncio.sleep(0)
        await controller.decline_call("c1", "user")
        await controller.accept_call("c1", "late_tap")
        await controller.mark_missed("c1")
        await controller.end_call("c1", "late_end")
        await controller.handle_incoming_invite(make_invite("c1"), "push_retry")
        await controller.wait_idle()
        await asyncio.sleep(0)

        assert "c1" not in controller.registry
        assert controller.ui.get().status == CallStatus.ENDED
        assert backend.deliveries == [("c1", CallAction.DECLINE)]
        assert sleep.delays == [30]

    run(scenario())


def test_end_call_while_ringing_is_treated_as_decline() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        bridge = FakeBridge()
        controller = make_controller(backend=backend, bridge=bridge)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.end_call("c1", "hangup")
        await controller.wait_idle()

        assert backend.deliveries == [("c1", CallAction.DECLINE)]
        assert bridge.stopped[0] == "end:hangup"
        assert controller.ui.get().status == CallStatus.ENDED
        assert "c1" not in controller.registry

    run(scenario())


def test_end_call_after_accept_ends_without_new_notification() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        backend = FakeBackend()
        controller = make_controller(store=store, backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.accept_call("c1", "user")
        await controller.end_call("c1", "hangup")
        await controller.wait_idle()

        assert backend.deliveries == [("c1", CallAction.ACCEPT)]
        assert controller.ui.get().status == CallStatus.ENDED
        assert invite_key("c1") not in store.snapshot()
        assert "c1" not in controller.registry

    run(scenario())


def test_actions_rehydrate_session_from_invite_store() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        first = make_controller(store=store)
        await first.handle_incoming_invite(make_invite("c1"), "push")
        await first.shutdown()

        backend = FakeBackend()
        restarted = make_controller(store=store, backend=backend)
        await restarted.accept_call("c1", "after_restart")
        await restarted.wait_idle()

        session = restarted.registry.get("c1")
        assert session is not None
        assert session.status == CallStatus.ACCEPTED
        assert backend.deliveries == [("c1", CallAction.ACCEPT)]

        await restarted.shutdown()

    run(scenario())


def test_action_for_unknown_call_is_noop() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        controller = make_controller(backend=backend)

        await controller.accept_call("ghost", "user")
        await controller.decline_call("ghost", "user")
        await controller.end_call("ghost", "user")
        await controller.mark_missed("ghost")

        assert backend.deliveries == []
        assert controller.ui.get().status == CallStatus.IDLE

    run(scenario())


def test_handle_action_once_skips_pairs_done_in_ledger() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        backend = FakeBackend()
        controller = make_controller(store=store, backend=backend)
        await controller.ledger.mark_done("c1", CallAction.DECLINE)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.decline_call("c1", "user")
        await controller.wait_idle()

        assert backend.deliveries == []
        assert controller.ui.get().status == CallStatus.ENDED

    run(scenario())


def test_handle_action_once_is_idempotent_within_session() -> None:
    async def scenario() -> None:
        backend = FakeBackend([RuntimeError("offline")])
        controller = make_controller(backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        invite = controller.registry.get("c1").invite
        await controller.handle_action_once(invite, CallAction.ACCEPT)
        await controller.handle_action_once(invite, CallAction.ACCEPT)
        await controller.wait_idle()

        # One direct attempt plus the retry flush it triggered.
        assert backend.deliveries == [("c1", CallAction.ACCEPT), ("c1", CallAction.ACCEPT)]

        await controller.shutdown()

    run(scenario())


def test_backend_failure_queues_action_without_touching_ui() -> None:
    async def scenario() -> None:
        backend = FakeBackend([RuntimeError("offline"), RuntimeError("still offline")])
        controller = make_controller(backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.decline_call("c1", "user")
        await controller.wait_idle()

        assert controller.ui.get().status == CallStatus.ENDED
        pending = await controller.queue.load()
        assert [(entry.call_id, entry.action, entry.attempts) for entry in pending] == [
            ("c1", CallAction.DECLINE, 1)
        ]
        assert pending[0].last_error == "still offline"
        assert not await controller.ledger.is_done("c1", CallAction.DECLINE)

    run(scenario())


def test_failed_accept_is_retried_until_backend_recovers() -> None:
    statuses = [500, 500, 200]
    requests: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append({"url": str(request.url), "json": json.loads(request.content.decode("utf-8"))})
        return httpx.Response(statuses.pop(0))

    async def scenario() -> None:
        clock = FakeClock()
        backend = BackendClient(base_url="http://backend")
        backend._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        controller = build_controller(
            store=InMemoryKeyValueStore(),
            backend=backend,
            bridge=FakeBridge(),
            clock_ms=clock,
            sleep=GatedSleep(),
        )

        await controller.handle_incoming_invite(
            make_invite("c2", actionEndpoint="/ack"),
            "push",
        )
        await controller.accept_call("c2", "user")
        await controller.wait_idle()

        pending = await controller.queue.load()
        assert [(entry.key, entry.attempts) for entry in pending] == [("c2:accept", 1)]
        assert pending[0].next_attempt_at_ms == clock() + 2000

        clock.advance(2000)
        await controller.queue.flush()

        assert await controller.queue.load() == []
        assert await controller.ledger.is_done("c2", CallAction.ACCEPT)
        assert len(requests) == 3
        assert requests[0]["url"] == "http://backend/ack"
        assert requests[0]["json"]["callId"] == "c2"
        assert requests[0]["json"]["action"] == "accept"

        await controller.shutdown()
        await backend.close()

    run(scenario())


def test_receiver_ringing_ack_is_best_effort() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        backend.ringing_ack_error = RuntimeError("ack endpoint down")
        controller = make_controller(backend=backend)

        await controller.handle_incoming_invite(make_invite("c1", receiverId="r-9"), "push")
        await controller.wait_idle()

        assert backend.ringing_acks == [("c1", "r-9")]
        assert controller.registry.get("c1").status == CallStatus.RINGING
        assert await controller.queue.load() == []

        await controller.shutdown()

    run(scenario())


def test_native_affordance_failures_do_not_block_lifecycle() -> None:
    async def scenario() -> None:
        bridge = FakeBridge()
        bridge.fail_start = True
        bridge.fail_stop = True
        backend = FakeBackend()
        controller = make_controller(bridge=bridge, backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        assert controller.registry.get("c1").status == CallStatus.RINGING

        await controller.decline_call("c1", "user")
        await controller.wait_idle()

        assert controller.ui.get().status == CallStatus.ENDED
        assert backend.deliveries == [("c1", CallAction.DECLINE)]

    run(scenario())


def test_storage_failures_do_not_break_call_flow() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        controller = make_controller(store=FailingStore(), backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.decline_call("c1", "user")
        await controller.wait_idle()

        assert controller.ui.get().status == CallStatus.ENDED
        assert backend.deliveries == [("c1", CallAction.DECLINE)]

    run(scenario())


def test_remote_call_ended_tears_down_without_backend_notification() -> None:
    async def scenario() -> None:
        store = InMemoryKeyValueStore()
        backend = FakeBackend()
        bridge = FakeBridge()
        controller = make_controller(store=store, backend=backend, bridge=bridge)

        await controller.handle_remote_message(
            {"type": "voiceCall", "callId": "c1", "callerName": "Bob", "timestampMs": "1700000000000"},
            "fcm_foreground",
        )
        await controller.handle_remote_message({"type": "CALL_ENDED", "callId": "c1", "status": "Cancelled"}, "fcm")
        await controller.wait_idle()

        assert "c1" not in controller.registry
        assert invite_key("c1") not in store.snapshot()
        assert bridge.stopped == ["cleanup:CALL_ENDED:cancelled"]
        assert backend.deliveries == []
        ui = controller.ui.get()
        assert (ui.status, ui.call_id, ui.caller_name) == (CallStatus.ENDED, "c1", "Bob")

    run(scenario())


def test_remote_call_ended_without_dismiss_keeps_call() -> None:
    async def scenario() -> None:
        controller = make_controller()

        await controller.handle_remote_message(
            {"type": "videoCall", "callId": "c1", "callerName": "Bob"},
            "fcm",
        )
        await controller.handle_remote_message(
            {"type": "call_ended", "callId": "c1", "dismissNotification": "false"},
            "fcm",
        )

        session = controller.registry.get("c1")
        assert session is not None
        assert session.status == CallStatus.RINGING
        assert session.invite.has_video

        await controller.shutdown()

    run(scenario())


def test_unrecognized_remote_message_is_dropped() -> None:
    async def scenario() -> None:
        controller = make_controller()

        await controller.handle_remote_message({"type": "chat", "callId": "c1", "callerName": "Bob"}, "fcm")
        await controller.handle_remote_message(None, "fcm")

        assert len(controller.registry) == 0
        assert controller.ui.get().status == CallStatus.IDLE

    run(scenario())


def test_native_answer_and_end_events_drive_transitions() -> None:
    async def scenario() -> None:
        backend = FakeBackend()
        controller = make_controller(backend=backend)

        await controller.handle_incoming_invite(make_invite("c1"), "push")
        await controller.handle_native_event(NativeEvent(name="answer", callId="c1"))
        assert controller.registry.get("c1").status == CallStatus.ACCEPTED

        await controller.handle_native_event(NativeEvent(name="end", callId="c1"))
        await controller.wait_idle()

        assert "c1" not in controller.registry
        assert backend.deliveries == [("c1", CallAction.ACCEPT)]

    run(scenario())
