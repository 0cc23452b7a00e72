"""Emergency activation API endpoints for SafeMap.

The browser UI drives the orchestrator through these endpoints: trigger
events (button hold/release, hotkey, voice transcript, shake readings),
geolocation fixes and errors, the contact list used for the next
arming, and a WebSocket stream of status snapshots.

The UI never mutates orchestrator state except through the activate /
cancel commands (and the trigger adapters that call them).
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from src.models.emergency import Contact, EmergencySnapshot, Position
from src.models.enums import EmergencyStatus, TriggerMethod
from src.services.emergency.errors import LocationError, PermissionDeniedError
from src.services.emergency.location import DeviceLocationProvider
from src.services.emergency.state_machine import EmergencyStateMachine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/emergency", tags=["emergency"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class ActivateRequest(BaseModel):
    method: TriggerMethod = TriggerMethod.BUTTON_HOLD


class CommandResponse(BaseModel):
    accepted: bool
    snapshot: EmergencySnapshot


class VoiceTriggerRequest(BaseModel):
    transcript: str = Field(..., min_length=1, max_length=2000)
    language: str | None = Field(default=None, max_length=10)


class HotkeyTriggerRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=20)
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False


class ShakeTriggerRequest(BaseModel):
    x: float
    y: float
    z: float


class TriggerResponse(BaseModel):
    matched: bool
    accepted: bool
    snapshot: EmergencySnapshot


class LocationFixRequest(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    accuracy: float | None = Field(default=None, ge=0.0)


class LocationErrorRequest(BaseModel):
    code: str = Field(..., pattern=r"^(permission_denied|position_unavailable|timeout)$")
    message: str = Field(default="", max_length=500)


class ContactsRequest(BaseModel):
    contacts: list[Contact] = Field(default_factory=list, max_length=20)


class ContactsResponse(BaseModel):
    contacts: list[Contact]
    applies_to_next_session: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _machine(request: Request) -> EmergencyStateMachine:
    machine = getattr(request.app.state, "emergency", None)
    if machine is None:
        raise HTTPException(status_code=503, detail="Emergency orchestrator not available")
    return machine


def _trigger(request: Request, name: str) -> Any:
    triggers = getattr(request.app.state, "triggers", None) or {}
    trigger = triggers.get(name)
    if trigger is None:
        raise HTTPException(status_code=503, detail=f"{name} trigger not available")
    return trigger


def _location_provider(request: Request) -> DeviceLocationProvider:
    provider = getattr(request.app.state, "location_provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="Location provider not available")
    return provider


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.get("/status", response_model=EmergencySnapshot)
async def get_status(request: Request) -> EmergencySnapshot:
    """Current status, countdown, elapsed time, location and task states."""
    return _machine(request).snapshot()


@router.post("/activate", response_model=CommandResponse)
async def activate(body: ActivateRequest, request: Request) -> CommandResponse:
    """Request activation.  Idempotent while arming or active."""
    machine = _machine(request)
    accepted = machine.request_activation(body.method)
    return CommandResponse(accepted=accepted, snapshot=machine.snapshot())


@router.post("/release", response_model=CommandResponse)
async def release(request: Request) -> CommandResponse:
    """Panic button released; cancels only a press-and-hold countdown."""
    machine = _machine(request)
    accepted = machine.activation_released()
    return CommandResponse(accepted=accepted, snapshot=machine.snapshot())


@router.post("/cancel", response_model=CommandResponse)
async def cancel(request: Request) -> CommandResponse:
    """Cancel arming or the active emergency.  Sent alerts are not recalled."""
    machine = _machine(request)
    accepted = machine.cancel_activation()
    return CommandResponse(accepted=accepted, snapshot=machine.snapshot())


# ---------------------------------------------------------------------------
# Trigger sources
# ---------------------------------------------------------------------------


@router.post("/triggers/voice", response_model=TriggerResponse)
async def voice_trigger(body: VoiceTriggerRequest, request: Request) -> TriggerResponse:
    machine = _machine(request)
    trigger = _trigger(request, "voice")
    matched = trigger.match(body.transcript, body.language) is not None
    accepted = trigger.handle_transcript(body.transcript, body.language) if matched else False
    return TriggerResponse(matched=matched, accepted=accepted, snapshot=machine.snapshot())


@router.post("/triggers/hotkey", response_model=TriggerResponse)
async def hotkey_trigger(body: HotkeyTriggerRequest, request: Request) -> TriggerResponse:
    machine = _machine(request)
    trigger = _trigger(request, "hotkey")
    flags = {"ctrl": body.ctrl, "shift": body.shift, "alt": body.alt, "meta": body.meta}
    matched = trigger.matches(body.key, **flags)
    accepted = trigger.handle_key(body.key, **flags) if matched else False
    return TriggerResponse(matched=matched, accepted=accepted, snapshot=machine.snapshot())


@router.post("/triggers/shake", response_model=TriggerResponse)
async def shake_trigger(body: ShakeTriggerRequest, request: Request) -> TriggerResponse:
    machine = _machine(request)
    trigger = _trigger(request, "shake")
    matched = trigger.detect(body.x, body.y, body.z)
    accepted = trigger.fire() if matched else False
    return TriggerResponse(matched=matched, accepted=accepted, snapshot=machine.snapshot())


# ---------------------------------------------------------------------------
# Device location
# ---------------------------------------------------------------------------


@router.post("/location", status_code=202)
async def push_location(body: LocationFixRequest, request: Request) -> dict:
    """Receive a geolocation fix from the device's watchPosition."""
    provider = _location_provider(request)
    provider.push_position(
        Position(latitude=body.latitude, longitude=body.longitude, accuracy=body.accuracy)
    )
    return {"accepted": True}


@router.post("/location/error", status_code=202)
async def push_location_error(body: LocationErrorRequest, request: Request) -> dict:
    """Receive a geolocation error (permission denied, unavailable, timeout)."""
    provider = _location_provider(request)
    message = body.message or body.code.replace("_", " ")
    if body.code == "permission_denied":
        provider.report_error(PermissionDeniedError(message))
    else:
        provider.report_error(LocationError(message))
    return {"accepted": True, "permission_denied": provider.permission_denied}


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@router.get("/contacts", response_model=ContactsResponse)
async def get_contacts(request: Request) -> ContactsResponse:
    machine = _machine(request)
    return ContactsResponse(
        contacts=list(machine.config.contacts),
        applies_to_next_session=False,
    )


@router.put("/contacts", response_model=ContactsResponse)
async def replace_contacts(body: ContactsRequest, request: Request) -> ContactsResponse:
    """Replace the contact list.  An armed session keeps its own snapshot."""
    machine = _machine(request)
    machine.configure(machine.config.model_copy(update={"contacts": tuple(body.contacts)}))
    logger.info("api.emergency.contacts_replaced", count=len(body.contacts))
    return ContactsResponse(
        contacts=list(body.contacts),
        applies_to_next_session=machine.status is not EmergencyStatus.IDLE,
    )


# ---------------------------------------------------------------------------
# Snapshot stream
# ---------------------------------------------------------------------------


@router.websocket("/stream")
async def snapshot_stream(websocket: WebSocket) -> None:
    """Push every published snapshot to the UI as JSON."""
    machine = getattr(websocket.app.state, "emergency", None)
    if machine is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    queue = machine.open_stream()
    try:
        while True:
            snapshot = await queue.get()
            await websocket.send_text(snapshot.model_dump_json())
    except WebSocketDisconnect:
        logger.info("api.emergency.stream_closed")
    finally:
        machine.close_stream(queue)
