"""Notification dispatch contract and the two shipped dispatchers.

The orchestrator never talks to a telephony or SMS provider directly.
It hands a :class:`NotificationPayload` to a dispatcher and receives a
:class:`DispatchResult`.  Two implementations are provided:

* :class:`LoggingDispatcher` -- development default.  Logs the alert and
  reports delivery, keeping an in-memory record.
* :class:`WebhookDispatcher` -- POSTs the payload as JSON to a relay
  service (e.g. an SMS/voice gateway bridge) using ``httpx``.

Message text is rendered here so that every dispatcher sends the same
copy: the authority gets a terse incident line, contacts get a personal
alert.  A missing location is stated explicitly rather than omitted.
"""

from __future__ import annotations

import re
from typing import Final
from uuid import uuid4

import httpx
import structlog

from src.models.emergency import (
    DispatchResult,
    EmergencySession,
    NotificationPayload,
    Position,
    Recipient,
)
from src.models.enums import RecipientKind, TriggerMethod

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

_TEMPLATES: Final[dict[RecipientKind, str]] = {
    RecipientKind.AUTHORITY: (
        "SOS: {user} activated an emergency alert via {method} at {armed_at}. "
        "{location_text} Reference: {session_ref}."
    ),
    RecipientKind.CONTACT: (
        "{recipient}, {user} has triggered an emergency alert on SafeMap and may need help. "
        "{location_text} Emergency services have been notified. Reference: {session_ref}."
    ),
}

_METHOD_LABELS: Final[dict[TriggerMethod, str]] = {
    TriggerMethod.BUTTON_HOLD: "panic button",
    TriggerMethod.VOICE: "voice command",
    TriggerMethod.HOTKEY: "keyboard shortcut",
    TriggerMethod.SHAKE: "phone shake",
}

_LOCATION_UNAVAILABLE: Final[str] = "Location unavailable."

_PHONE_DIGITS_RE: Final[re.Pattern[str]] = re.compile(r"\d")


def mask_phone(phone: str) -> str:
    """Mask all but the last four digits of a phone number for logs."""
    digits = _PHONE_DIGITS_RE.findall(phone)
    if len(digits) <= 4:
        return phone
    keep = len(digits) - 4
    out: list[str] = []
    for ch in phone:
        if ch.isdigit() and keep > 0:
            out.append("*")
            keep -= 1
        else:
            out.append(ch)
    return "".join(out)


def render_message(
    session: EmergencySession,
    recipient: Recipient,
    location: Position | None,
    *,
    user_display_name: str = "A SafeMap user",
) -> str:
    if location is not None:
        location_text = (
            f"Last known location: {location.latitude:.6f}, {location.longitude:.6f} "
            f"({location.maps_url})."
        )
    else:
        location_text = _LOCATION_UNAVAILABLE

    armed_at = session.armed_at.strftime("%H:%M:%S UTC") if session.armed_at else "unknown time"
    return _TEMPLATES[recipient.kind].format(
        recipient=recipient.name,
        user=user_display_name,
        method=_METHOD_LABELS.get(session.trigger_method, str(session.trigger_method)),
        armed_at=armed_at,
        location_text=location_text,
        session_ref=session.id[:8],
    )


def build_payload(
    session: EmergencySession,
    recipient: Recipient,
    location: Position | None,
    *,
    user_display_name: str = "A SafeMap user",
) -> NotificationPayload:
    """Assemble the payload for one recipient using the freshest location."""
    return NotificationPayload(
        session_id=session.id,
        trigger_method=session.trigger_method,
        recipient_name=recipient.name,
        recipient_kind=recipient.kind,
        message=render_message(
            session, recipient, location, user_display_name=user_display_name
        ),
        armed_at=session.armed_at,
        location=location,
        location_unavailable=location is None,
        maps_url=location.maps_url if location is not None else None,
    )


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Abstract base for delivery backends."""

    async def dispatch(
        self,
        recipient: Recipient,
        payload: NotificationPayload,
    ) -> DispatchResult:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Development dispatcher: logs every alert and reports delivery."""

    __slots__ = ("_delivered",)

    def __init__(self) -> None:
        self._delivered: list[tuple[Recipient, NotificationPayload]] = []

    @property
    def delivered(self) -> list[tuple[Recipient, NotificationPayload]]:
        return list(self._delivered)

    async def dispatch(
        self,
        recipient: Recipient,
        payload: NotificationPayload,
    ) -> DispatchResult:
        self._delivered.append((recipient, payload))
        logger.info(
            "dispatch.logged",
            session_id=payload.session_id,
            recipient=recipient.name,
            kind=recipient.kind,
            to=mask_phone(recipient.phone),
            location_unavailable=payload.location_unavailable,
            message_preview=payload.message[:80],
        )
        return DispatchResult.ok(provider_message_id=f"log_{uuid4().hex[:12]}")


class WebhookDispatcher(NotificationDispatcher):
    """POST each alert to a relay endpoint.

    The relay is expected to answer 2xx on acceptance and may return a
    JSON body with a ``message_id``.  Any other status or a transport
    error is reported as a failed attempt; retries are the sequencer's
    job, not the dispatcher's.

    Parameters
    ----------
    url:
        Relay endpoint.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests inject one with a
        mock transport).  When omitted the dispatcher owns its client and
        closes it in :meth:`close`.
    """

    __slots__ = ("_client", "_owns_client", "_timeout", "_url")

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("WebhookDispatcher requires a non-empty url.")
        self._url = url
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def dispatch(
        self,
        recipient: Recipient,
        payload: NotificationPayload,
    ) -> DispatchResult:
        body = {
            "to": recipient.phone,
            "recipient": recipient.model_dump(mode="json"),
            "payload": payload.model_dump(mode="json"),
        }
        try:
            response = await self._client.post(self._url, json=body, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning(
                "dispatch.webhook_transport_error",
                session_id=payload.session_id,
                recipient=recipient.name,
                error=str(exc),
            )
            return DispatchResult.failed(f"transport error: {exc.__class__.__name__}")

        if not response.is_success:
            logger.warning(
                "dispatch.webhook_rejected",
                session_id=payload.session_id,
                recipient=recipient.name,
                status=response.status_code,
            )
            return DispatchResult.failed(f"relay responded {response.status_code}")

        message_id: str | None = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            raw_id = data.get("message_id")
            message_id = str(raw_id) if raw_id is not None else None

        logger.info(
            "dispatch.webhook_delivered",
            session_id=payload.session_id,
            recipient=recipient.name,
            to=mask_phone(recipient.phone),
        )
        return DispatchResult.ok(provider_message_id=message_id)
