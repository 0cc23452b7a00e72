"""SafeMap service layer -- emergency orchestration and its collaborators."""

from __future__ import annotations

from src.services.emergency import (
    DeviceLocationProvider,
    EmergencyStateMachine,
    LoggingDispatcher,
    NotificationSequencer,
    WebhookDispatcher,
)

__all__ = [
    "DeviceLocationProvider",
    "EmergencyStateMachine",
    "LoggingDispatcher",
    "NotificationSequencer",
    "WebhookDispatcher",
]
