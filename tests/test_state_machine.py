"""Tests for the emergency state machine.

Covers the idle -> arming -> active -> idle lifecycle, duplicate
activation suppression, cancellation from both arming and active,
location degradation, escalation, stealth mode and the snapshot stream.

Durations use a small ``time_scale`` so a nominal 3-second countdown
takes 30 ms of wall time.  All tests run WITHOUT network access.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from src.models.emergency import (
    Acknowledgement,
    ActivationConfig,
    Contact,
    DispatchResult,
    NotificationPayload,
    Position,
    Recipient,
)
from src.models.enums import (
    AcknowledgementKind,
    EmergencyStatus,
    NotificationTier,
    RecipientKind,
    TaskState,
    TriggerMethod,
)
from src.services.emergency.dispatcher import NotificationDispatcher
from src.services.emergency.errors import LocationError, PermissionDeniedError
from src.services.emergency.location import LocationProvider, SubscriptionHandle
from src.services.emergency.sequencer import NotificationSequencer
from src.services.emergency.state_machine import EmergencyStateMachine

SCALE = 0.01


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLocationProvider(LocationProvider):
    """In-memory provider whose fix, error and subscribers are test-controlled."""

    def __init__(self, position: Position | None = None, error: LocationError | None = None) -> None:
        self.position = position
        self.error = error
        self.subscriptions: dict[str, tuple] = {}
        self.unsubscribed: list[SubscriptionHandle] = []

    async def get_current_position(self) -> Position:
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.position is None:
            raise LocationError("no fix")
        return self.position

    def subscribe(self, on_update, on_error) -> SubscriptionHandle:
        handle = SubscriptionHandle()
        self.subscriptions[handle.handle_id] = (on_update, on_error)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.subscriptions.pop(handle.handle_id, None)
        self.unsubscribed.append(handle)

    def emit(self, position: Position) -> None:
        for on_update, _ in list(self.subscriptions.values()):
            on_update(position)

    def emit_error(self, error: LocationError) -> None:
        for _, on_error in list(self.subscriptions.values()):
            on_error(error)


class RecordingDispatcher(NotificationDispatcher):
    """Records every dispatch; can fail or block per recipient name.

    ``failures`` maps a recipient name to how many attempts should fail
    (``-1`` means every attempt).  ``gates`` maps a name to an event the
    dispatch waits on before answering.
    """

    def __init__(
        self,
        failures: dict[str, int] | None = None,
        gates: dict[str, asyncio.Event] | None = None,
    ) -> None:
        self.calls: list[tuple[str, NotificationPayload]] = []
        self.failures = dict(failures or {})
        self.gates = gates or {}

    async def dispatch(self, recipient: Recipient, payload: NotificationPayload) -> DispatchResult:
        self.calls.append((recipient.name, payload))
        gate = self.gates.get(recipient.name)
        if gate is not None:
            await gate.wait()
        remaining = self.failures.get(recipient.name, 0)
        if remaining:
            if remaining > 0:
                self.failures[recipient.name] = remaining - 1
            return DispatchResult.failed("simulated outage")
        return DispatchResult.ok("msg-1")

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


CONTACTS = (
    Contact(name="Mom", phone="+91-9876543210"),
    Contact(name="Dad", phone="+91-9876543211"),
    Contact(name="Priya", phone="+91-9876543212", relationship="friend"),
)


class Harness:
    def __init__(self, machine, location, dispatcher, sequencer) -> None:
        self.machine: EmergencyStateMachine = machine
        self.location: FakeLocationProvider = location
        self.dispatcher: RecordingDispatcher = dispatcher
        self.sequencer: NotificationSequencer = sequencer
        self.acks: list[Acknowledgement] = []
        machine.add_acknowledgement_listener(self.acks.append)

    def ack_kinds(self) -> list[AcknowledgementKind]:
        return [a.kind for a in self.acks]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def make_harness():
    created: list[Harness] = []

    def _make(
        *,
        location: FakeLocationProvider | None = None,
        dispatcher: RecordingDispatcher | None = None,
        **overrides,
    ) -> Harness:
        params = {
            "contacts": CONTACTS,
            "countdown_seconds": 3,
            "time_scale": SCALE,
            "retry_backoff_seconds": 0.1,
            "retry_backoff_max_seconds": 0.5,
        }
        params.update(overrides)
        location = location or FakeLocationProvider(Position(latitude=28.6139, longitude=77.2090))
        dispatcher = dispatcher or RecordingDispatcher()
        sequencer = NotificationSequencer(dispatcher)
        machine = EmergencyStateMachine(
            location=location,
            sequencer=sequencer,
            config=ActivationConfig(**params),
        )
        harness = Harness(machine, location, dispatcher, sequencer)
        created.append(harness)
        return harness

    yield _make

    for harness in created:
        await harness.machine.aclose()


# ---------------------------------------------------------------------------
# Activation lifecycle
# ---------------------------------------------------------------------------


class TestActivation:
    async def test_starts_idle(self, make_harness) -> None:
        h = make_harness()
        snap = h.machine.snapshot()
        assert snap.status is EmergencyStatus.IDLE
        assert snap.session_id is None
        assert snap.tasks == []

    async def test_request_moves_to_arming_without_session(self, make_harness) -> None:
        h = make_harness()
        assert h.machine.request_activation(TriggerMethod.HOTKEY) is True
        assert h.machine.status is EmergencyStatus.ARMING
        assert h.machine.countdown_remaining == 3
        assert h.machine.session is None, "arming is pre-session state"
        assert h.ack_kinds() == [AcknowledgementKind.ARMING_STARTED]

    async def test_countdown_completes_into_active(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.BUTTON_HOLD)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        session = h.machine.session
        assert session is not None
        assert session.status is EmergencyStatus.ACTIVE
        assert session.trigger_method is TriggerMethod.BUTTON_HOLD
        assert session.armed_at is not None
        assert h.machine.countdown_remaining is None
        assert AcknowledgementKind.ACTIVATED in h.ack_kinds()

    async def test_authority_first_then_contacts_in_order(self, make_harness) -> None:
        h = make_harness(base_delay_seconds=4, inter_contact_gap_seconds=1)
        h.machine.request_activation(TriggerMethod.VOICE)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        tasks = h.machine.tasks()
        assert [t.recipient.name for t in tasks] == [
            "Emergency Services (112)",
            "Mom",
            "Dad",
            "Priya",
        ]
        assert tasks[0].recipient.kind is RecipientKind.AUTHORITY
        assert [t.scheduled_offset_seconds for t in tasks] == [0.0, 4.0, 5.0, 6.0]

        await wait_until(lambda: len(h.dispatcher.calls) == 4)
        assert h.dispatcher.names() == ["Emergency Services (112)", "Mom", "Dad", "Priya"]

    async def test_zero_countdown_activates_immediately(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0)
        h.machine.request_activation(TriggerMethod.SHAKE)
        assert h.machine.status is EmergencyStatus.ACTIVE
        assert h.machine.session is not None

    async def test_payload_carries_session_and_location(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: len(h.dispatcher.calls) >= 1)

        _, payload = h.dispatcher.calls[0]
        assert payload.session_id == h.machine.session.id
        assert payload.location is not None
        assert payload.location_unavailable is False
        assert payload.maps_url is not None and "28.613900" in payload.maps_url


class TestDuplicateActivation:
    async def test_concurrent_triggers_create_one_session(self, make_harness) -> None:
        h = make_harness()

        async def fire(method: TriggerMethod) -> bool:
            await asyncio.sleep(0)
            return h.machine.request_activation(method)

        results = await asyncio.gather(
            fire(TriggerMethod.VOICE),
            fire(TriggerMethod.HOTKEY),
            fire(TriggerMethod.SHAKE),
            fire(TriggerMethod.BUTTON_HOLD),
        )
        assert results.count(True) == 1, "exactly one trigger wins"

        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        assert h.machine.session.trigger_method is TriggerMethod.VOICE

    async def test_activation_while_active_is_noop(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        session_id = h.machine.session.id
        task_count = len(h.machine.tasks())

        for method in TriggerMethod:
            assert h.machine.request_activation(method) is False

        await asyncio.sleep(0.02)
        assert h.machine.session.id == session_id
        assert len(h.machine.tasks()) == task_count, "no duplicate tasks"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelWhileArming:
    async def test_cancel_at_one_second_never_activates(self, make_harness) -> None:
        h = make_harness(time_scale=0.05)
        h.machine.request_activation(TriggerMethod.BUTTON_HOLD)
        await wait_until(lambda: h.machine.countdown_remaining == 2)

        assert h.machine.cancel_activation() is True
        assert h.machine.status is EmergencyStatus.IDLE

        await asyncio.sleep(0.05 * 4)
        assert h.machine.status is EmergencyStatus.IDLE
        assert h.machine.session is None
        assert h.machine.last_session is None, "no session was ever created"
        assert h.machine.elapsed_seconds == 0
        assert h.machine.tasks() == []
        assert h.dispatcher.calls == []
        assert h.ack_kinds() == [AcknowledgementKind.ARMING_STARTED, AcknowledgementKind.ARMING_CANCELLED]

    async def test_release_cancels_button_hold(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.BUTTON_HOLD)
        assert h.machine.activation_released() is True
        assert h.machine.status is EmergencyStatus.IDLE

    async def test_release_ignored_for_other_methods(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.VOICE)
        assert h.machine.activation_released() is False
        assert h.machine.status is EmergencyStatus.ARMING

    async def test_cancel_from_idle_is_noop(self, make_harness) -> None:
        h = make_harness()
        assert h.machine.cancel_activation() is False
        assert h.acks == []


class TestCancelWhileActive:
    async def test_pending_tasks_voided_sent_tasks_stay_sent(self, make_harness) -> None:
        # Contacts are far enough out that only the authority is sent.
        h = make_harness(base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(
            lambda: any(t.state is TaskState.SENT for t in h.machine.tasks())
        )
        session_id = h.machine.session.id

        assert h.machine.cancel_activation() is True
        assert h.machine.status is EmergencyStatus.IDLE
        assert h.machine.session is None
        assert h.machine.elapsed_seconds == 0

        states = {t.recipient.name: t.state for t in h.machine.tasks()}
        assert states == {
            "Emergency Services (112)": TaskState.SENT,
            "Mom": TaskState.CANCELLED,
            "Dad": TaskState.CANCELLED,
            "Priya": TaskState.CANCELLED,
        }

        last = h.machine.last_session
        assert last.id == session_id
        assert last.status is EmergencyStatus.CANCELLED
        assert last.elapsed_seconds == 0

        # Inspecting again, or cancelling again, changes nothing.
        assert h.machine.cancel_activation() is False
        assert {t.recipient.name: t.state for t in h.machine.tasks()} == states
        await asyncio.sleep(0.05)
        assert h.dispatcher.names() == ["Emergency Services (112)"]

    async def test_cancel_stops_location_subscription(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        assert len(h.location.subscriptions) == 1

        h.machine.cancel_activation()
        assert h.location.subscriptions == {}
        assert len(h.location.unsubscribed) == 1

    async def test_cancel_ack_distinct_from_activation_ack(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        h.machine.cancel_activation()

        assert h.ack_kinds()[-2:] == [AcknowledgementKind.ACTIVATED, AcknowledgementKind.CANCELLED]
        assert h.acks[-1].message != h.acks[-2].message

    async def test_elapsed_advances_then_resets(self, make_harness) -> None:
        h = make_harness(base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.elapsed_seconds >= 3)
        assert h.machine.session.elapsed_seconds >= 3

        h.machine.cancel_activation()
        assert h.machine.elapsed_seconds == 0
        await asyncio.sleep(SCALE * 5)
        assert h.machine.elapsed_seconds == 0, "timer must not outlive the session"

    async def test_in_flight_dispatch_completes_after_cancel(self, make_harness) -> None:
        gate = asyncio.Event()
        dispatcher = RecordingDispatcher(gates={"Emergency Services (112)": gate})
        h = make_harness(dispatcher=dispatcher, base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: len(dispatcher.calls) == 1)

        h.machine.cancel_activation()
        authority = h.machine.tasks()[0]
        assert authority.state is TaskState.PENDING, "in-flight attempt is not aborted"

        gate.set()
        await wait_until(lambda: h.machine.tasks()[0].state is TaskState.SENT)
        assert [t.state for t in h.machine.tasks()[1:]] == [TaskState.CANCELLED] * 3

    async def test_in_flight_failure_not_retried_after_cancel(self, make_harness) -> None:
        gate = asyncio.Event()
        dispatcher = RecordingDispatcher(
            failures={"Emergency Services (112)": -1},
            gates={"Emergency Services (112)": gate},
        )
        h = make_harness(dispatcher=dispatcher, base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: len(dispatcher.calls) == 1)

        h.machine.cancel_activation()
        gate.set()
        await wait_until(lambda: h.machine.tasks()[0].state is TaskState.CANCELLED)
        await asyncio.sleep(0.02)
        assert h.machine.tasks()[0].attempts == 1
        assert len(dispatcher.calls) == 1


class TestRearm:
    async def test_new_session_id_after_cancel(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0)
        seen: set[str] = set()
        for _ in range(3):
            h.machine.request_activation(TriggerMethod.HOTKEY)
            session_id = h.machine.session.id
            assert session_id not in seen
            seen.add(session_id)
            h.machine.cancel_activation()
        assert len(seen) == 3

    async def test_rearm_after_arming_cancel(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.BUTTON_HOLD)
        h.machine.cancel_activation()
        assert h.machine.request_activation(TriggerMethod.VOICE) is True
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        assert h.machine.session.trigger_method is TriggerMethod.VOICE


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


class TestLocationDegradation:
    async def test_permission_denied_still_activates(self, make_harness) -> None:
        location = FakeLocationProvider(error=PermissionDeniedError("denied"))
        h = make_harness(location=location)
        h.machine.request_activation(TriggerMethod.VOICE)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        session = h.machine.session
        assert session.location is None
        assert session.location_degraded is True
        assert h.machine.snapshot().location_degraded is True

        await wait_until(lambda: len(h.dispatcher.calls) >= 1)
        name, payload = h.dispatcher.calls[0]
        assert name == "Emergency Services (112)"
        assert payload.session_id == session.id
        assert payload.location_unavailable is True
        assert "Location unavailable." in payload.message

    async def test_subscription_update_clears_degraded(self, make_harness) -> None:
        location = FakeLocationProvider(error=LocationError("timeout"))
        h = make_harness(location=location, countdown_seconds=0, base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.session.location_degraded)

        fix = Position(latitude=19.076, longitude=72.8777, accuracy=12.0)
        location.emit(fix)
        session = h.machine.session
        assert session.location == fix
        assert session.location_degraded is False

    async def test_error_after_fix_keeps_last_known(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0, base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.session.location is not None)

        h.location.emit_error(LocationError("signal lost"))
        session = h.machine.session
        assert session.location is not None
        assert session.location_degraded is False
        assert session.location_error == "signal lost"

    async def test_older_fix_is_ignored(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0, base_delay_seconds=100)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.session.location is not None)
        current = h.machine.session.location

        stale = Position(
            latitude=1.0,
            longitude=1.0,
            captured_at=current.captured_at - timedelta(minutes=5),
        )
        h.location.emit(stale)
        assert h.machine.session.location == current

    async def test_later_dispatch_uses_latest_fix(self, make_harness) -> None:
        h = make_harness(base_delay_seconds=10)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        moved = Position(latitude=12.9716, longitude=77.5946, captured_at=datetime.now(UTC))
        h.location.emit(moved)
        await wait_until(lambda: "Mom" in h.dispatcher.names())

        payload = dict(h.dispatcher.calls)["Mom"]
        assert payload.location == moved


# ---------------------------------------------------------------------------
# Delivery failure
# ---------------------------------------------------------------------------


class TestDeliveryFailure:
    async def test_failed_task_does_not_affect_others(self, make_harness) -> None:
        dispatcher = RecordingDispatcher(failures={"Dad": -1})
        h = make_harness(dispatcher=dispatcher, max_attempts=3)
        h.machine.request_activation(TriggerMethod.HOTKEY)

        await wait_until(lambda: all(t.is_terminal for t in h.machine.tasks()) and len(h.machine.tasks()) == 4)

        states = {t.recipient.name: (t.state, t.attempts) for t in h.machine.tasks()}
        assert states["Dad"] == (TaskState.FAILED, 3)
        assert states["Mom"][0] is TaskState.SENT
        assert states["Priya"][0] is TaskState.SENT
        assert states["Emergency Services (112)"][0] is TaskState.SENT
        assert h.machine.status is EmergencyStatus.ACTIVE, "failures never roll back the session"
        assert AcknowledgementKind.DELIVERY_FAILED in h.ack_kinds()


# ---------------------------------------------------------------------------
# Configuration, escalation, stealth
# ---------------------------------------------------------------------------


class TestConfiguration:
    async def test_configure_during_arming_applies_to_next_session(self, make_harness) -> None:
        h = make_harness()
        h.machine.request_activation(TriggerMethod.HOTKEY)
        h.machine.configure(
            h.machine.config.model_copy(update={"contacts": (Contact(name="Neighbour", phone="+91-9000000000"),)})
        )
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        assert [c.name for c in h.machine.session.contacts] == ["Mom", "Dad", "Priya"]
        assert [c.name for c in h.machine.config.contacts] == ["Neighbour"]

    async def test_escalation_notifies_secondary_tier(self, make_harness) -> None:
        h = make_harness(
            base_delay_seconds=1,
            escalation_after_seconds=2,
            secondary_contacts=(Contact(name="Aunt", phone="+91-9111111111"),),
        )
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: "Aunt" in h.dispatcher.names())

        secondary = [t for t in h.machine.tasks() if t.tier is NotificationTier.SECONDARY]
        assert [t.recipient.name for t in secondary] == ["Aunt"]
        assert secondary[0].scheduled_offset_seconds == 3.0
        assert h.machine.session.escalated is True
        assert AcknowledgementKind.ESCALATED in h.ack_kinds()

    async def test_no_escalation_after_cancel(self, make_harness) -> None:
        h = make_harness(
            base_delay_seconds=100,
            escalation_after_seconds=5,
            secondary_contacts=(Contact(name="Aunt", phone="+91-9111111111"),),
        )
        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)
        h.machine.cancel_activation()

        await asyncio.sleep(SCALE * 10)
        assert AcknowledgementKind.ESCALATED not in h.ack_kinds()
        assert all(t.tier is NotificationTier.PRIMARY for t in h.machine.tasks())

    async def test_stealth_suppresses_acknowledgements(self, make_harness) -> None:
        h = make_harness(stealth=True, countdown_seconds=0)
        h.machine.request_activation(TriggerMethod.VOICE)
        await wait_until(lambda: len(h.dispatcher.calls) >= 1)
        h.machine.cancel_activation()

        assert h.acks == []
        assert h.dispatcher.calls, "alerts are still sent in stealth mode"


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class TestSnapshots:
    async def test_stream_receives_initial_and_arming(self, make_harness) -> None:
        h = make_harness()
        queue = h.machine.open_stream()
        first = queue.get_nowait()
        assert first.status is EmergencyStatus.IDLE

        h.machine.request_activation(TriggerMethod.HOTKEY)
        second = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert second.status is EmergencyStatus.ARMING
        assert second.countdown_remaining == 3
        h.machine.close_stream(queue)

    async def test_listener_sees_countdown_then_active(self, make_harness) -> None:
        h = make_harness()
        seen: list[tuple[EmergencyStatus, int | None]] = []
        h.machine.add_listener(lambda s: seen.append((s.status, s.countdown_remaining)))

        h.machine.request_activation(TriggerMethod.HOTKEY)
        await wait_until(lambda: h.machine.status is EmergencyStatus.ACTIVE)

        assert seen[:3] == [
            (EmergencyStatus.ARMING, 3),
            (EmergencyStatus.ARMING, 2),
            (EmergencyStatus.ARMING, 1),
        ]
        assert (EmergencyStatus.ACTIVE, None) in seen

    async def test_failing_listener_does_not_break_machine(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0)

        def boom(_snapshot) -> None:
            raise RuntimeError("ui crashed")

        h.machine.add_listener(boom)
        assert h.machine.request_activation(TriggerMethod.HOTKEY) is True
        assert h.machine.status is EmergencyStatus.ACTIVE

    async def test_session_property_is_a_copy(self, make_harness) -> None:
        h = make_harness(countdown_seconds=0)
        h.machine.request_activation(TriggerMethod.HOTKEY)
        copy = h.machine.session
        copy.elapsed_seconds = 999
        assert h.machine.session.elapsed_seconds != 999
