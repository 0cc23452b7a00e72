"""Emergency state machine: the single owner of emergency status.

States::

    idle --request_activation--> arming --countdown done--> active
      ^                            |                          |
      +------ cancel_activation ---+------ cancel_activation -+

Rules enforced here:

* Only one session may be arming or active.  ``request_activation``
  from any state other than ``idle`` is a logged no-op, which is what
  keeps two trigger sources firing together (voice + hotkey, say) from
  producing two sessions.
* Cancelling while arming creates nothing: no session id, no tasks.
* Entering ``active`` never waits on I/O.  A location failure degrades
  the session instead of blocking it.
* Cancelling while active stops the timer, voids pending notifications,
  drops the location subscription and returns to ``idle`` in a single
  synchronous step.
* Every scheduled callback carries the generation it was created for and
  is ignored once the generation has moved on.

The machine is the only writer of :class:`EmergencySession`; the
sequencer and observers only ever see copies.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final

import structlog

from src.models.emergency import (
    Acknowledgement,
    ActivationConfig,
    EmergencySession,
    EmergencySnapshot,
    NotificationTask,
    Position,
)
from src.models.enums import (
    AcknowledgementKind,
    EmergencyStatus,
    NotificationTier,
    TaskState,
    TriggerMethod,
)
from src.services.emergency.errors import LocationError, PermissionDeniedError
from src.services.emergency.location import LocationProvider, SubscriptionHandle
from src.services.emergency.sequencer import NotificationSequencer
from src.services.emergency.session_timer import SessionTimer

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[EmergencySnapshot], None]
AcknowledgementListener = Callable[[Acknowledgement], None]

_STREAM_MAXSIZE: Final[int] = 64

_ACK_MESSAGES: Final[dict[AcknowledgementKind, str]] = {
    AcknowledgementKind.ARMING_STARTED: "Emergency activation in {countdown}s. Release or cancel to stop.",
    AcknowledgementKind.ARMING_CANCELLED: "Emergency activation was cancelled.",
    AcknowledgementKind.ACTIVATED: "Emergency activated. Notifying emergency services and your contacts.",
    AcknowledgementKind.CANCELLED: "Emergency cancelled. Alerts already sent cannot be recalled.",
    AcknowledgementKind.DELIVERY_FAILED: "Could not reach {recipient} after {attempts} attempts.",
    AcknowledgementKind.ESCALATED: "No response yet. Alerting your secondary contacts.",
}


class EmergencyStateMachine:
    """Arbitrates trigger sources into a single emergency session.

    Parameters
    ----------
    location:
        Provider used for the initial fix and the continuous stream.
    sequencer:
        Notification sequencer that receives the contacts on activation.
    config:
        Configuration for the next arming.  Replace it with
        :meth:`configure`; an armed session keeps the snapshot it was
        armed with.
    """

    def __init__(
        self,
        *,
        location: LocationProvider,
        sequencer: NotificationSequencer,
        config: ActivationConfig | None = None,
    ) -> None:
        self._location = location
        self._sequencer = sequencer
        self._config = config or ActivationConfig()

        self._status = EmergencyStatus.IDLE
        self._generation = 0
        self._armed_config: ActivationConfig | None = None
        self._method: TriggerMethod | None = None
        self._countdown_remaining: int | None = None
        self._countdown_task: asyncio.Task[None] | None = None
        self._prefetch: asyncio.Task[Position] | None = None

        self._session: EmergencySession | None = None
        self._last_session: EmergencySession | None = None
        self._origin: float | None = None
        self._subscription: SubscriptionHandle | None = None
        self._timer: SessionTimer | None = None

        self._listeners: list[SnapshotListener] = []
        self._ack_listeners: list[AcknowledgementListener] = []
        self._streams: set[asyncio.Queue[EmergencySnapshot]] = set()
        self._quiet = False

        self._sequencer.add_listener(self._on_task_changed)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> EmergencyStatus:
        return self._status

    @property
    def config(self) -> ActivationConfig:
        """Configuration that the next arming will use."""
        return self._config

    @property
    def session(self) -> EmergencySession | None:
        """Copy of the active session, if any."""
        return self._session.model_copy() if self._session is not None else None

    @property
    def last_session(self) -> EmergencySession | None:
        """Copy of the most recently cancelled session."""
        return self._last_session.model_copy() if self._last_session is not None else None

    @property
    def countdown_remaining(self) -> int | None:
        return self._countdown_remaining

    @property
    def elapsed_seconds(self) -> int:
        return self._timer.elapsed_seconds if self._timer is not None else 0

    def tasks(self) -> list[NotificationTask]:
        """Tasks of the active session, or of the last one when idle."""
        target = self._session or self._last_session
        return self._sequencer.tasks_for(target.id) if target is not None else []

    def snapshot(self) -> EmergencySnapshot:
        session = self._session
        return EmergencySnapshot(
            status=self._status,
            session_id=session.id if session else None,
            last_session_id=self._last_session.id if self._last_session else None,
            trigger_method=self._method,
            countdown_remaining=self._countdown_remaining,
            armed_at=session.armed_at if session else None,
            elapsed_seconds=self.elapsed_seconds if session else 0,
            location=session.location if session else None,
            location_degraded=session.location_degraded if session else False,
            tasks=self.tasks(),
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_acknowledgement_listener(self, listener: AcknowledgementListener) -> None:
        self._ack_listeners.append(listener)

    def open_stream(self) -> asyncio.Queue[EmergencySnapshot]:
        """Return a queue that receives every published snapshot.

        The queue is bounded; a slow consumer loses the oldest snapshots,
        never the newest.
        """
        queue: asyncio.Queue[EmergencySnapshot] = asyncio.Queue(maxsize=_STREAM_MAXSIZE)
        queue.put_nowait(self.snapshot())
        self._streams.add(queue)
        return queue

    def close_stream(self, queue: asyncio.Queue[EmergencySnapshot]) -> None:
        self._streams.discard(queue)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("emergency.listener_failed", exc_info=True)
        for queue in list(self._streams):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

    def _acknowledge(self, kind: AcknowledgementKind, **context: object) -> None:
        config = self._armed_config or self._config
        if config.stealth:
            logger.debug("emergency.acknowledgement_suppressed", kind=kind)
            return
        session_id = self._session.id if self._session else None
        ack = Acknowledgement(
            kind=kind,
            session_id=session_id,
            message=_ACK_MESSAGES[kind].format(**context),
        )
        for listener in list(self._ack_listeners):
            try:
                listener(ack)
            except Exception:
                logger.warning("emergency.ack_listener_failed", kind=kind, exc_info=True)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: ActivationConfig) -> None:
        """Use ``config`` from the next arming on.  Never touches an armed session."""
        self._config = config
        logger.info(
            "emergency.configured",
            contacts=len(config.contacts),
            countdown_seconds=config.countdown_seconds,
            applies_to="next_session" if self._status is not EmergencyStatus.IDLE else "immediately",
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def request_activation(self, method: TriggerMethod) -> bool:
        """Start arming.  Returns ``False`` when already arming or active."""
        if self._status is not EmergencyStatus.IDLE:
            logger.info(
                "emergency.activation_suppressed",
                status=self._status,
                method=method,
                session_id=self._session.id if self._session else None,
            )
            return False

        self._generation += 1
        generation = self._generation
        config = self._config
        self._armed_config = config
        self._method = method
        self._status = EmergencyStatus.ARMING
        self._countdown_remaining = config.countdown_seconds

        loop = asyncio.get_running_loop()
        self._prefetch = loop.create_task(
            self._location.get_current_position(),
            name="emergency-location-prefetch",
        )
        self._prefetch.add_done_callback(lambda task, gen=generation: self._on_prefetch_done(gen, task))

        logger.info(
            "emergency.arming",
            method=method,
            countdown_seconds=config.countdown_seconds,
            contacts=len(config.contacts),
        )
        self._acknowledge(AcknowledgementKind.ARMING_STARTED, countdown=config.countdown_seconds)

        if config.countdown_seconds == 0:
            self._activate(generation)
        else:
            self._countdown_task = loop.create_task(
                self._run_countdown(generation, config),
                name="emergency-countdown",
            )
            self._publish()
        return True

    def activation_released(self) -> bool:
        """Release of a press-and-hold trigger: cancels only a hold countdown."""
        if self._status is EmergencyStatus.ARMING and self._method is TriggerMethod.BUTTON_HOLD:
            return self.cancel_activation(reason="released")
        logger.debug("emergency.release_ignored", status=self._status, method=self._method)
        return False

    def cancel_activation(self, reason: str = "user") -> bool:
        """Cancel arming or an active session.  Returns ``False`` from idle."""
        if self._status is EmergencyStatus.IDLE:
            logger.info("emergency.cancel_ignored", reason=reason)
            return False

        if self._status is EmergencyStatus.ARMING:
            self._generation += 1
            self._teardown_arming()
            self._status = EmergencyStatus.IDLE
            self._method = None
            logger.info("emergency.arming_cancelled", reason=reason)
            self._acknowledge(AcknowledgementKind.ARMING_CANCELLED)
            self._armed_config = None
            self._publish()
            return True

        session = self._session
        assert session is not None
        self._generation += 1
        self._quiet = True

        final_elapsed = self._timer.stop() if self._timer is not None else 0
        self._timer = None
        self._sequencer.cancel(session.id)
        self._quiet = False
        self._drop_subscription()
        if self._prefetch is not None and not self._prefetch.done():
            self._prefetch.cancel()
        self._prefetch = None

        session.status = EmergencyStatus.CANCELLED
        session.elapsed_seconds = 0
        session.cancelled_at = datetime.now(UTC)

        logger.info(
            "emergency.cancelled",
            session_id=session.id,
            reason=reason,
            elapsed_seconds=final_elapsed,
        )
        self._acknowledge(AcknowledgementKind.CANCELLED)

        self._last_session = session
        self._session = None
        self._origin = None
        self._method = None
        self._armed_config = None
        self._status = EmergencyStatus.IDLE
        self._publish()
        return True

    async def aclose(self) -> None:
        """Tear down timers, subscriptions and pending dispatches."""
        self._generation += 1
        self._teardown_arming()
        if self._prefetch is not None and not self._prefetch.done():
            self._prefetch.cancel()
        self._prefetch = None
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
        self._drop_subscription()
        await self._sequencer.aclose()
        self._streams.clear()
        logger.info("emergency.closed", status=self._status)

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    async def _run_countdown(self, generation: int, config: ActivationConfig) -> None:
        loop = asyncio.get_running_loop()
        origin = loop.time()
        total = config.countdown_seconds
        for step in range(1, total + 1):
            delay = origin + config.wall_seconds(step) - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if generation != self._generation:
                return
            self._countdown_remaining = total - step
            if step < total:
                self._publish()
        self._countdown_task = None
        self._activate(generation)

    def _teardown_arming(self) -> None:
        if self._countdown_task is not None:
            self._countdown_task.cancel()
            self._countdown_task = None
        if self._status is EmergencyStatus.ARMING and self._prefetch is not None:
            if not self._prefetch.done():
                self._prefetch.cancel()
            self._prefetch = None
        self._countdown_remaining = None

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _activate(self, generation: int) -> None:
        if generation != self._generation or self._status is not EmergencyStatus.ARMING:
            return
        config = self._armed_config or self._config
        assert self._method is not None
        loop = asyncio.get_running_loop()

        session = EmergencySession(
            status=EmergencyStatus.ACTIVE,
            trigger_method=self._method,
            armed_at=datetime.now(UTC),
            contacts=config.contacts,
        )
        self._session = session
        self._origin = loop.time()
        self._status = EmergencyStatus.ACTIVE
        self._countdown_remaining = None

        # Location: stream first, then whatever the prefetch already knows.
        try:
            self._subscription = self._location.subscribe(
                lambda pos, gen=generation: self._on_location_update(gen, pos),
                lambda err, gen=generation: self._on_location_error(gen, err),
            )
        except LocationError as exc:
            self._subscription = None
            self._degrade(session, exc)
        if self._prefetch is not None and self._prefetch.done():
            self._apply_prefetch(session, self._prefetch)

        self._timer = SessionTimer(
            tick_seconds=config.time_scale,
            on_tick=lambda _elapsed, gen=generation: self._on_tick(gen),
        )
        if config.escalation_after_seconds and config.secondary_contacts:
            self._timer.add_threshold(
                config.escalation_after_seconds,
                lambda gen=generation: self._escalate(gen),
            )
        self._timer.start(session.id, origin=self._origin)

        logger.info(
            "emergency.activated",
            session_id=session.id,
            method=session.trigger_method,
            contacts=len(session.contacts),
            location_available=session.location is not None,
            location_degraded=session.location_degraded,
        )
        self._acknowledge(AcknowledgementKind.ACTIVATED)

        self._sequencer.schedule(
            session,
            session.contacts,
            config=config,
            origin=self._origin,
            location_source=self._current_location,
        )
        self._publish()

    def _escalate(self, generation: int) -> None:
        session = self._session
        config = self._armed_config
        if generation != self._generation or session is None or config is None or self._origin is None:
            return
        session.escalated = True
        logger.warning(
            "emergency.escalated",
            session_id=session.id,
            after_seconds=config.escalation_after_seconds,
            secondary_contacts=len(config.secondary_contacts),
        )
        self._acknowledge(AcknowledgementKind.ESCALATED)
        self._sequencer.schedule(
            session,
            config.secondary_contacts,
            config=config,
            origin=self._origin,
            location_source=self._current_location,
            tier=NotificationTier.SECONDARY,
            start_offset=float(config.escalation_after_seconds or 0),
        )
        self._publish()

    def _on_tick(self, generation: int) -> None:
        if generation != self._generation or self._session is None or self._timer is None:
            return
        self._session.elapsed_seconds = self._timer.elapsed_seconds
        self._publish()

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    def _current_location(self) -> Position | None:
        session = self._session
        return session.location if session is not None else None

    def _on_prefetch_done(self, generation: int, task: asyncio.Task[Position]) -> None:
        if task.cancelled():
            return
        # Retrieve the exception even when stale so asyncio does not warn.
        exc = task.exception()
        if generation != self._generation or self._session is None:
            if exc is not None:
                logger.debug("emergency.prefetch_failed_before_activation", error=str(exc))
            return
        self._apply_prefetch(self._session, task)
        self._publish()

    def _apply_prefetch(self, session: EmergencySession, task: asyncio.Task[Position]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self._set_location(session, task.result())
        elif isinstance(exc, LocationError):
            self._degrade(session, exc)
        else:
            logger.warning("emergency.location_prefetch_error", error=repr(exc))
            self._degrade(session, LocationError(str(exc) or exc.__class__.__name__))

    def _on_location_update(self, generation: int, position: Position) -> None:
        if generation != self._generation or self._session is None:
            return
        self._set_location(self._session, position)
        self._publish()

    def _on_location_error(self, generation: int, error: LocationError) -> None:
        if generation != self._generation or self._session is None:
            return
        self._degrade(self._session, error)
        self._publish()

    @staticmethod
    def _set_location(session: EmergencySession, position: Position) -> None:
        current = session.location
        if current is not None and position.captured_at < current.captured_at:
            return
        session.location = position
        session.location_degraded = False
        session.location_error = None

    @staticmethod
    def _degrade(session: EmergencySession, error: LocationError) -> None:
        session.location_error = str(error) or error.__class__.__name__
        session.location_degraded = session.location is None
        logger.warning(
            "emergency.location_degraded",
            session_id=session.id,
            permission_denied=isinstance(error, PermissionDeniedError),
            error=session.location_error,
            has_last_known=session.location is not None,
        )

    def _drop_subscription(self) -> None:
        if self._subscription is None:
            return
        try:
            self._location.unsubscribe(self._subscription)
        except Exception:
            logger.warning("emergency.unsubscribe_failed", exc_info=True)
        self._subscription = None

    # ------------------------------------------------------------------
    # Sequencer feedback
    # ------------------------------------------------------------------

    def _on_task_changed(self, task: NotificationTask) -> None:
        if task.state is TaskState.FAILED:
            self._acknowledge(
                AcknowledgementKind.DELIVERY_FAILED,
                recipient=task.recipient.name,
                attempts=task.attempts,
            )
        if not self._quiet:
            self._publish()
