"""Emergency activation and notification orchestrator for SafeMap.

Turns any number of concurrent trigger sources into one emergency
session, runs the cancellable arming countdown, keeps the location
stream alive while active and sequences alerts to emergency services
and the user's contacts.

Components:
  - EmergencyStateMachine  -- owns the session and its transitions
  - NotificationSequencer  -- staggered, retried, idempotent dispatch
  - SessionTimer           -- elapsed time and escalation thresholds
  - Trigger adapters       -- button hold, hotkey, voice phrase, shake

Public API::

    from src.services.emergency import (
        EmergencyStateMachine,
        NotificationSequencer,
        DeviceLocationProvider,
        LoggingDispatcher,
    )
"""

from __future__ import annotations

from src.services.emergency.dispatcher import (
    LoggingDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
    build_payload,
)
from src.services.emergency.errors import (
    DispatchFailedError,
    EmergencyError,
    LocationError,
    PermissionDeniedError,
)
from src.services.emergency.location import (
    DeviceLocationProvider,
    LocationProvider,
    SubscriptionHandle,
)
from src.services.emergency.sequencer import NotificationSequencer, build_schedule
from src.services.emergency.session_timer import SessionTimer
from src.services.emergency.state_machine import EmergencyStateMachine
from src.services.emergency.triggers import (
    HoldButtonTrigger,
    HotkeyTrigger,
    ShakeTrigger,
    VoicePhraseTrigger,
)

__all__ = [
    "DeviceLocationProvider",
    "DispatchFailedError",
    "EmergencyError",
    "EmergencyStateMachine",
    "HoldButtonTrigger",
    "HotkeyTrigger",
    "LocationError",
    "LocationProvider",
    "LoggingDispatcher",
    "NotificationDispatcher",
    "NotificationSequencer",
    "PermissionDeniedError",
    "SessionTimer",
    "ShakeTrigger",
    "SubscriptionHandle",
    "VoicePhraseTrigger",
    "WebhookDispatcher",
    "build_payload",
    "build_schedule",
]
