"""Location providers for the emergency orchestrator.

The orchestrator only depends on the :class:`LocationProvider` contract:
a one-shot ``get_current_position`` plus a continuous subscription.  The
concrete :class:`DeviceLocationProvider` is fed by the client device
(the browser's geolocation watch posts fixes and errors to the API).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from src.models.emergency import Position
from src.services.emergency.errors import LocationError, PermissionDeniedError

logger = structlog.get_logger(__name__)

PositionCallback = Callable[[Position], None]
ErrorCallback = Callable[[LocationError], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque token returned by :meth:`LocationProvider.subscribe`."""

    handle_id: str = field(default_factory=lambda: uuid4().hex)


class LocationProvider:
    """Abstract base for location sources."""

    async def get_current_position(self) -> Position:
        """Return the current position or raise :class:`LocationError`."""
        raise NotImplementedError

    def subscribe(
        self,
        on_update: PositionCallback,
        on_error: ErrorCallback,
    ) -> SubscriptionHandle:
        raise NotImplementedError

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        raise NotImplementedError


class DeviceLocationProvider(LocationProvider):
    """Location pushed by the user's device.

    ``push_position`` and ``report_error`` are called by the HTTP layer
    whenever the browser's ``watchPosition`` fires.  Subscribers receive
    every fix in arrival order.  A permission denial is sticky until the
    next successful fix.

    Parameters
    ----------
    fix_timeout_seconds:
        How long ``get_current_position`` waits for a first fix when none
        has been received yet.
    """

    __slots__ = ("_denied", "_fix_event", "_fix_timeout", "_last_error", "_latest", "_subscribers")

    def __init__(self, fix_timeout_seconds: float = 5.0) -> None:
        self._fix_timeout = fix_timeout_seconds
        self._latest: Position | None = None
        self._denied = False
        self._last_error: LocationError | None = None
        self._fix_event: asyncio.Event | None = None
        self._subscribers: dict[str, tuple[PositionCallback, ErrorCallback]] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def latest(self) -> Position | None:
        return self._latest

    @property
    def permission_denied(self) -> bool:
        return self._denied

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # LocationProvider contract
    # ------------------------------------------------------------------

    async def get_current_position(self) -> Position:
        if self._denied:
            raise PermissionDeniedError("location permission denied")
        if self._latest is not None:
            return self._latest

        if self._fix_event is None:
            self._fix_event = asyncio.Event()
        try:
            await asyncio.wait_for(self._fix_event.wait(), timeout=self._fix_timeout)
        except TimeoutError:
            raise LocationError(
                f"no position fix within {self._fix_timeout:.1f}s"
            ) from None

        if self._latest is None:
            # Woken by an error rather than a fix.
            if self._denied:
                raise PermissionDeniedError("location permission denied")
            raise self._last_error or LocationError("location unavailable")
        return self._latest

    def subscribe(
        self,
        on_update: PositionCallback,
        on_error: ErrorCallback,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle()
        self._subscribers[handle.handle_id] = (on_update, on_error)
        logger.info("location.subscribed", handle=handle.handle_id, subscribers=len(self._subscribers))
        if self._denied and self._last_error is not None:
            on_error(self._last_error)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if self._subscribers.pop(handle.handle_id, None) is not None:
            logger.info("location.unsubscribed", handle=handle.handle_id)

    # ------------------------------------------------------------------
    # Device input
    # ------------------------------------------------------------------

    def push_position(self, position: Position) -> None:
        """Record a fix from the device and fan it out to subscribers."""
        self._latest = position
        self._denied = False
        self._last_error = None
        self._wake_waiters()

        for on_update, _ in list(self._subscribers.values()):
            try:
                on_update(position)
            except Exception:
                logger.warning("location.subscriber_failed", exc_info=True)

    def report_error(self, error: LocationError) -> None:
        """Record a geolocation error reported by the device."""
        self._last_error = error
        if isinstance(error, PermissionDeniedError):
            self._denied = True
            self._latest = None
        logger.warning(
            "location.device_error",
            error=str(error),
            permission_denied=self._denied,
        )
        self._wake_waiters()

        for _, on_error in list(self._subscribers.values()):
            try:
                on_error(error)
            except Exception:
                logger.warning("location.subscriber_failed", exc_info=True)

    def _wake_waiters(self) -> None:
        if self._fix_event is not None:
            self._fix_event.set()
            self._fix_event = None
