"""Notification sequencer: ordered, staggered, retried alert delivery.

Once a session is active the sequencer turns the frozen contact list
into a deterministic schedule and drives the dispatcher:

* The authority endpoint is always first, at offset 0.
* Contact ``i`` follows at ``base_delay + i * gap`` in original list
  order.  Contacts are never reordered.
* Every offset is measured from the session's ``armed_at`` origin on the
  event-loop clock, so a brief pause of the process does not push the
  rest of the schedule back.
* A failed attempt is retried with exponential backoff (tenacity) up to
  the task's ``max_attempts``; after that the task is ``failed`` and
  listeners are told.  Nothing is dropped silently.
* ``cancel`` voids every task that has not started dispatching.  An
  attempt already in flight finishes but is never retried.  Tasks that
  were ``sent`` stay ``sent``.

Scheduling is idempotent per ``(session id, tier)``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.emergency import (
    ActivationConfig,
    Contact,
    DispatchResult,
    EmergencySession,
    NotificationTask,
    Position,
    Recipient,
)
from src.models.enums import NotificationTier, TaskState
from src.services.emergency.dispatcher import NotificationDispatcher, build_payload
from src.services.emergency.errors import DispatchFailedError

logger = structlog.get_logger(__name__)

TaskListener = Callable[[NotificationTask], None]
LocationSource = Callable[[], Position | None]


def build_schedule(
    session_id: str,
    contacts: Sequence[Contact],
    *,
    authority: Recipient | None,
    base_delay_seconds: float,
    inter_contact_gap_seconds: float,
    max_attempts: int,
    tier: NotificationTier = NotificationTier.PRIMARY,
    start_offset: float = 0.0,
) -> list[NotificationTask]:
    """Compute the staggered task list for one tier of a session.

    Pure function: no I/O and no clock.  The returned list is in
    dispatch order (authority first, then contacts as given).
    """
    tasks: list[NotificationTask] = []
    if authority is not None:
        tasks.append(
            NotificationTask(
                session_id=session_id,
                recipient=authority,
                tier=tier,
                scheduled_offset_seconds=start_offset,
                max_attempts=max_attempts,
            )
        )
    for index, contact in enumerate(contacts):
        tasks.append(
            NotificationTask(
                session_id=session_id,
                recipient=Recipient.from_contact(contact),
                tier=tier,
                scheduled_offset_seconds=start_offset + base_delay_seconds + index * inter_contact_gap_seconds,
                max_attempts=max_attempts,
            )
        )
    return tasks


class NotificationSequencer:
    """Schedules and dispatches notification tasks for emergency sessions.

    Parameters
    ----------
    dispatcher:
        Delivery backend.  Exceptions it raises count as failed attempts.
    """

    __slots__ = (
        "_dispatcher",
        "_in_flight",
        "_listeners",
        "_runners",
        "_scheduled",
        "_tasks",
        "_void_sessions",
    )

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher
        self._tasks: dict[str, list[NotificationTask]] = {}
        self._scheduled: set[tuple[str, NotificationTier]] = set()
        self._runners: dict[str, asyncio.Task[None]] = {}
        self._in_flight: set[str] = set()
        self._void_sessions: set[str] = set()
        self._listeners: list[TaskListener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: TaskListener) -> None:
        """Register a callback invoked with a copy of every changed task."""
        self._listeners.append(listener)

    def _notify(self, task: NotificationTask) -> None:
        snapshot = task.model_copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("sequencer.listener_failed", task_id=task.task_id, exc_info=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def tasks_for(self, session_id: str) -> list[NotificationTask]:
        """Copies of every task of a session, in schedule order."""
        return [t.model_copy() for t in self._tasks.get(session_id, [])]

    def is_scheduled(self, session_id: str, tier: NotificationTier = NotificationTier.PRIMARY) -> bool:
        return (session_id, tier) in self._scheduled

    @property
    def pending_runners(self) -> int:
        return len(self._runners)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        session: EmergencySession,
        contacts: Iterable[Contact],
        *,
        config: ActivationConfig,
        origin: float,
        location_source: LocationSource,
        tier: NotificationTier = NotificationTier.PRIMARY,
        start_offset: float = 0.0,
    ) -> list[NotificationTask]:
        """Create and start the tasks for one tier of ``session``.

        ``origin`` is the event-loop time that corresponds to
        ``session.armed_at``.  A second call for the same session and
        tier returns the existing tasks without creating new ones.
        """
        key = (session.id, tier)
        if key in self._scheduled:
            logger.info("sequencer.duplicate_schedule_ignored", session_id=session.id, tier=tier)
            return [t.model_copy() for t in self._tasks.get(session.id, []) if t.tier is tier]
        if session.id in self._void_sessions:
            logger.info("sequencer.schedule_after_cancel_ignored", session_id=session.id, tier=tier)
            return []

        tasks = build_schedule(
            session.id,
            list(contacts),
            authority=config.authority if tier is NotificationTier.PRIMARY else None,
            base_delay_seconds=config.base_delay_seconds,
            inter_contact_gap_seconds=config.inter_contact_gap_seconds,
            max_attempts=config.max_attempts,
            tier=tier,
            start_offset=start_offset,
        )
        self._scheduled.add(key)
        self._tasks.setdefault(session.id, []).extend(tasks)

        frozen_session = session.model_copy()
        for task in tasks:
            runner = asyncio.create_task(
                self._run(task, frozen_session, config, origin, location_source),
                name=f"notify-{task.task_id[:8]}",
            )
            self._runners[task.task_id] = runner
            runner.add_done_callback(lambda _r, tid=task.task_id: self._runners.pop(tid, None))

        logger.info(
            "sequencer.scheduled",
            session_id=session.id,
            tier=tier,
            tasks=len(tasks),
            offsets=[t.scheduled_offset_seconds for t in tasks],
        )
        return [t.model_copy() for t in tasks]

    def cancel(self, session_id: str) -> list[NotificationTask]:
        """Void every not-yet-dispatched task of a session.

        Returns copies of the tasks that were cancelled.  In-flight
        attempts are left to finish; the runner will not retry them.
        """
        self._void_sessions.add(session_id)
        cancelled: list[NotificationTask] = []
        for task in self._tasks.get(session_id, []):
            if task.state is not TaskState.PENDING or task.task_id in self._in_flight:
                continue
            runner = self._runners.pop(task.task_id, None)
            if runner is not None:
                runner.cancel()
            self._set_state(task, TaskState.CANCELLED)
            cancelled.append(task.model_copy())

        logger.info(
            "sequencer.session_cancelled",
            session_id=session_id,
            cancelled=len(cancelled),
            in_flight=sum(1 for t in self._tasks.get(session_id, []) if t.task_id in self._in_flight),
        )
        return cancelled

    async def wait_idle(self) -> None:
        """Wait until every runner has finished (used on shutdown and in tests)."""
        while self._runners:
            await asyncio.gather(*list(self._runners.values()), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel every runner, including in-flight attempts."""
        runners = list(self._runners.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self._runners.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _set_state(self, task: NotificationTask, state: TaskState) -> None:
        task.state = state
        if state is TaskState.SENT:
            task.sent_at = datetime.now(UTC)
        self._notify(task)

    async def _run(
        self,
        task: NotificationTask,
        session: EmergencySession,
        config: ActivationConfig,
        origin: float,
        location_source: LocationSource,
    ) -> None:
        loop = asyncio.get_running_loop()
        due = origin + config.wall_seconds(task.scheduled_offset_seconds)
        delay = due - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(task.max_attempts),
            wait=wait_exponential(
                multiplier=config.wall_seconds(config.retry_backoff_seconds),
                max=config.wall_seconds(config.retry_backoff_max_seconds),
            ),
            retry=retry_if_exception_type(DispatchFailedError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                if task.session_id in self._void_sessions:
                    self._set_state(task, TaskState.CANCELLED)
                    return
                with attempt:
                    await self._attempt(task, session, config, location_source)
        except DispatchFailedError as exc:
            self._set_state(task, TaskState.FAILED)
            logger.error(
                "sequencer.task_failed",
                session_id=task.session_id,
                task_id=task.task_id,
                recipient=task.recipient.name,
                attempts=task.attempts,
                reason=exc.reason,
            )

    async def _attempt(
        self,
        task: NotificationTask,
        session: EmergencySession,
        config: ActivationConfig,
        location_source: LocationSource,
    ) -> None:
        task.attempts += 1
        payload = build_payload(
            session,
            task.recipient,
            location_source(),
            user_display_name=config.user_display_name,
        )

        self._in_flight.add(task.task_id)
        try:
            result = await self._dispatcher.dispatch(task.recipient, payload)
        except Exception as exc:
            logger.warning(
                "sequencer.dispatch_raised",
                task_id=task.task_id,
                recipient=task.recipient.name,
                attempt=task.attempts,
                exc_info=True,
            )
            result = DispatchResult.failed(str(exc) or exc.__class__.__name__)
        finally:
            self._in_flight.discard(task.task_id)

        if result.delivered:
            task.last_error = None
            self._set_state(task, TaskState.SENT)
            logger.info(
                "sequencer.task_sent",
                session_id=task.session_id,
                task_id=task.task_id,
                recipient=task.recipient.name,
                tier=task.tier,
                offset=task.scheduled_offset_seconds,
                attempts=task.attempts,
            )
            return

        task.last_error = result.reason or "delivery failed"
        if task.session_id in self._void_sessions:
            # Session was cancelled while this attempt was in flight.
            self._set_state(task, TaskState.CANCELLED)
            logger.info("sequencer.in_flight_failure_not_retried", task_id=task.task_id)
            return

        logger.warning(
            "sequencer.attempt_failed",
            session_id=task.session_id,
            task_id=task.task_id,
            recipient=task.recipient.name,
            attempt=task.attempts,
            max_attempts=task.max_attempts,
            reason=task.last_error,
        )
        self._notify(task)
        raise DispatchFailedError(task.last_error, task_id=task.task_id)
