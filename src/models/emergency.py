"""Pydantic models for the emergency activation and notification flow.

``EmergencySession`` is the aggregate root owned by the state machine.
``NotificationTask`` is one scheduled delivery per (session, recipient,
tier).  ``ActivationConfig`` is the frozen configuration snapshot taken
when arming starts; it is never mutated mid-session.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Final
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import (
    AcknowledgementKind,
    EmergencyStatus,
    NotificationTier,
    RecipientKind,
    TaskState,
    TriggerMethod,
)

_MAPS_URL: Final[str] = "https://maps.google.com/?q={lat:.6f},{lng:.6f}"


# ---------------------------------------------------------------------------
# Contacts and recipients
# ---------------------------------------------------------------------------


class Contact(BaseModel):
    """An emergency contact from the user's configuration."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=2, max_length=32)
    relationship: str = Field(default="family", max_length=50)


class Recipient(BaseModel):
    """Target of a notification: a contact or the authority endpoint."""

    model_config = ConfigDict(frozen=True)

    kind: RecipientKind
    name: str
    phone: str
    relationship: str = ""

    @classmethod
    def from_contact(cls, contact: Contact) -> Recipient:
        return cls(
            kind=RecipientKind.CONTACT,
            name=contact.name,
            phone=contact.phone,
            relationship=contact.relationship,
        )

    @classmethod
    def authority(cls, name: str = "Emergency Services (112)", phone: str = "112") -> Recipient:
        return cls(kind=RecipientKind.AUTHORITY, name=name, phone=phone, relationship="emergency")


class Position(BaseModel):
    """A single location fix."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    accuracy: float | None = Field(default=None, ge=0.0)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def maps_url(self) -> str:
        return _MAPS_URL.format(lat=self.latitude, lng=self.longitude)


# ---------------------------------------------------------------------------
# Configuration snapshot
# ---------------------------------------------------------------------------


class ActivationConfig(BaseModel):
    """Configuration captured at arming time.

    Durations are nominal seconds.  ``time_scale`` is the number of
    wall-clock seconds per nominal second (1.0 outside of tests).
    """

    model_config = ConfigDict(frozen=True)

    contacts: tuple[Contact, ...] = ()
    secondary_contacts: tuple[Contact, ...] = ()
    authority: Recipient = Field(default_factory=Recipient.authority)
    user_display_name: str = "A SafeMap user"

    countdown_seconds: int = Field(default=3, ge=0)
    time_scale: float = Field(default=1.0, gt=0)

    base_delay_seconds: float = Field(default=4.0, ge=0)
    inter_contact_gap_seconds: float = Field(default=1.0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)
    retry_backoff_max_seconds: float = Field(default=8.0, ge=0)

    escalation_after_seconds: int | None = Field(default=None, ge=1)
    stealth: bool = False

    def wall_seconds(self, nominal: float) -> float:
        """Convert a nominal duration into event-loop seconds."""
        return nominal * self.time_scale


# ---------------------------------------------------------------------------
# Session and tasks
# ---------------------------------------------------------------------------


class EmergencySession(BaseModel):
    """One armed-to-resolved emergency episode."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    status: EmergencyStatus = EmergencyStatus.ACTIVE
    trigger_method: TriggerMethod
    armed_at: datetime | None = None
    elapsed_seconds: int = 0
    location: Position | None = None
    location_degraded: bool = False
    location_error: str | None = None
    contacts: tuple[Contact, ...] = ()
    escalated: bool = False
    cancelled_at: datetime | None = None


class NotificationTask(BaseModel):
    """A single scheduled delivery to one recipient."""

    task_id: str = Field(default_factory=lambda: uuid4().hex)
    session_id: str
    recipient: Recipient
    tier: NotificationTier = NotificationTier.PRIMARY
    scheduled_offset_seconds: float = Field(..., ge=0)
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    max_attempts: int = Field(default=3, ge=1)
    last_error: str | None = None
    sent_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not TaskState.PENDING


# ---------------------------------------------------------------------------
# Dispatch contract
# ---------------------------------------------------------------------------


class NotificationPayload(BaseModel):
    """What the dispatcher delivers to a recipient."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    trigger_method: TriggerMethod
    recipient_name: str
    recipient_kind: RecipientKind
    message: str
    armed_at: datetime | None = None
    location: Position | None = None
    location_unavailable: bool = False
    maps_url: str | None = None


class DispatchResult(BaseModel):
    """Outcome reported by a dispatcher: delivered or failed with a reason."""

    delivered: bool
    reason: str | None = None
    provider_message_id: str | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> DispatchResult:
        return cls(delivered=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, reason: str) -> DispatchResult:
        return cls(delivered=False, reason=reason)


# ---------------------------------------------------------------------------
# Observer surface
# ---------------------------------------------------------------------------


class Acknowledgement(BaseModel):
    """A user-facing confirmation (rendered as a toast by the UI)."""

    kind: AcknowledgementKind
    session_id: str | None = None
    message: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EmergencySnapshot(BaseModel):
    """Read-only view of the orchestrator for rendering."""

    status: EmergencyStatus
    session_id: str | None = None
    last_session_id: str | None = None
    trigger_method: TriggerMethod | None = None
    countdown_remaining: int | None = None
    armed_at: datetime | None = None
    elapsed_seconds: int = 0
    location: Position | None = None
    location_degraded: bool = False
    tasks: list[NotificationTask] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
