"""Elapsed-time counter for an active emergency session."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)

TickCallback = Callable[[int], None]


class SessionTimer:
    """Counts whole seconds while a session is active.

    Ticks are scheduled against the origin passed to :meth:`start`
    (``origin + n * tick_seconds``), so a late wake-up does not shift
    later ticks.  :meth:`stop` cancels the tick task and resets the
    counter in one synchronous step; no tick can be delivered for a
    session after it has been stopped.

    Thresholds registered with :meth:`add_threshold` fire once, on the
    first tick that reaches them.
    """

    __slots__ = ("_elapsed", "_fired", "_on_tick", "_session_id", "_task", "_thresholds", "_tick_seconds")

    def __init__(self, tick_seconds: float = 1.0, on_tick: TickCallback | None = None) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")
        self._tick_seconds = tick_seconds
        self._on_tick = on_tick
        self._elapsed = 0
        self._session_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._thresholds: list[tuple[int, Callable[[], None]]] = []
        self._fired: set[int] = set()

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_threshold(self, seconds: int, callback: Callable[[], None]) -> None:
        """Call ``callback`` once when the counter reaches ``seconds``."""
        if seconds < 1:
            raise ValueError("threshold must be at least one second")
        self._thresholds.append((seconds, callback))
        self._thresholds.sort(key=lambda item: item[0])

    def start(self, session_id: str, origin: float | None = None) -> None:
        if self.is_running:
            raise RuntimeError(f"timer already running for session {self._session_id}")
        loop = asyncio.get_running_loop()
        self._elapsed = 0
        self._fired.clear()
        self._session_id = session_id
        self._task = loop.create_task(
            self._run(session_id, loop.time() if origin is None else origin),
            name=f"session-timer-{session_id[:8]}",
        )

    def stop(self) -> int:
        """Stop ticking and reset.  Returns the final elapsed count."""
        final = self._elapsed
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._session_id = None
        self._elapsed = 0
        self._fired.clear()
        return final

    async def _run(self, session_id: str, origin: float) -> None:
        loop = asyncio.get_running_loop()
        tick = 0
        while True:
            tick += 1
            delay = origin + tick * self._tick_seconds - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if self._session_id != session_id:
                return
            self._elapsed += 1
            self._fire_thresholds()
            if self._on_tick is not None:
                try:
                    self._on_tick(self._elapsed)
                except Exception:
                    logger.warning("session_timer.tick_callback_failed", session_id=session_id, exc_info=True)

    def _fire_thresholds(self) -> None:
        for index, (seconds, callback) in enumerate(self._thresholds):
            if seconds > self._elapsed:
                break
            if index in self._fired:
                continue
            self._fired.add(index)
            try:
                callback()
            except Exception:
                logger.warning("session_timer.threshold_callback_failed", threshold=seconds, exc_info=True)
