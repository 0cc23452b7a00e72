"""Exceptions raised inside the emergency orchestrator.

Double activation and cancel-from-idle are deliberately absent: they are
logged no-ops, never errors.
"""

from __future__ import annotations


class EmergencyError(Exception):
    """Base class for orchestrator errors."""


class LocationError(EmergencyError):
    """The location provider could not produce a position."""


class PermissionDeniedError(LocationError):
    """The user (or platform) denied access to location."""


class DispatchFailedError(EmergencyError):
    """A single delivery attempt failed; retryable up to the task bound."""

    def __init__(self, reason: str, *, task_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.task_id = task_id
