from __future__ import annotations

from enum import StrEnum


class EmergencyStatus(StrEnum):
    __slots__ = ()

    IDLE = "idle"
    ARMING = "arming"
    ACTIVE = "active"
    CANCELLED = "cancelled"


class TriggerMethod(StrEnum):
    """Input modality that requested activation (audit only)."""

    __slots__ = ()

    BUTTON_HOLD = "button_hold"
    VOICE = "voice"
    HOTKEY = "hotkey"
    SHAKE = "shake"


class TaskState(StrEnum):
    __slots__ = ()

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecipientKind(StrEnum):
    __slots__ = ()

    AUTHORITY = "authority"
    CONTACT = "contact"


class NotificationTier(StrEnum):
    __slots__ = ()

    PRIMARY = "primary"
    SECONDARY = "secondary"


class AcknowledgementKind(StrEnum):
    """User-facing confirmations emitted by the state machine."""

    __slots__ = ()

    ARMING_STARTED = "arming_started"
    ARMING_CANCELLED = "arming_cancelled"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    DELIVERY_FAILED = "delivery_failed"
    ESCALATED = "escalated"
