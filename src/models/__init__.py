from src.models.emergency import (
    Acknowledgement,
    ActivationConfig,
    Contact,
    DispatchResult,
    EmergencySession,
    EmergencySnapshot,
    NotificationPayload,
    NotificationTask,
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

__all__ = [
    "Acknowledgement",
    "AcknowledgementKind",
    "ActivationConfig",
    "Contact",
    "DispatchResult",
    "EmergencySession",
    "EmergencySnapshot",
    "EmergencyStatus",
    "NotificationPayload",
    "NotificationTask",
    "NotificationTier",
    "Position",
    "Recipient",
    "RecipientKind",
    "TaskState",
    "TriggerMethod",
]
