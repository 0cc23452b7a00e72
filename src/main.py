"""SafeMap FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the emergency orchestrator (location provider,
dispatcher, notification sequencer, state machine and trigger adapters).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import Settings, settings
from src.api.router import api_router
from src.models.emergency import ActivationConfig, Contact, Recipient

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_activation_config(cfg: Settings) -> ActivationConfig:
    """Translate flat environment settings into the orchestrator's config."""
    return ActivationConfig(
        contacts=tuple(Contact(**c) for c in cfg.emergency_contacts),
        secondary_contacts=tuple(Contact(**c) for c in cfg.secondary_contacts),
        authority=Recipient.authority(cfg.authority_name, cfg.authority_phone),
        user_display_name=cfg.user_display_name,
        countdown_seconds=cfg.countdown_seconds,
        time_scale=cfg.time_scale,
        base_delay_seconds=cfg.notification_base_delay_seconds,
        inter_contact_gap_seconds=cfg.notification_gap_seconds,
        max_attempts=cfg.notification_max_attempts,
        retry_backoff_seconds=cfg.notification_backoff_seconds,
        retry_backoff_max_seconds=cfg.notification_backoff_max_seconds,
        escalation_after_seconds=cfg.escalation_after_seconds,
        stealth=cfg.stealth_mode,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the SafeMap emergency services.

    On startup:
      1. Initialise the device location provider
      2. Initialise the notification dispatcher (webhook relay or log)
      3. Create the NotificationSequencer and EmergencyStateMachine
      4. Create the trigger adapters
      5. Store everything on ``app.state``

    On shutdown:
      - Cancel timers, subscriptions and pending dispatches.
      - Close the relay HTTP client.
    """
    _configure_logging()
    logger.info(
        "app.startup",
        env=settings.env,
        countdown_seconds=settings.countdown_seconds,
        contacts=len(settings.emergency_contacts),
    )

    app.state.start_time = time.time()

    # -- 1. Location ---------------------------------------------------------
    from src.services.emergency import DeviceLocationProvider

    location = DeviceLocationProvider(fix_timeout_seconds=settings.location_fix_timeout_seconds)
    app.state.location_provider = location
    logger.info("app.location_initialised")

    # -- 2. Dispatcher -------------------------------------------------------
    from src.services.emergency import LoggingDispatcher, NotificationDispatcher, WebhookDispatcher

    dispatcher: NotificationDispatcher
    webhook: WebhookDispatcher | None = None
    if settings.dispatch_webhook_url:
        webhook = WebhookDispatcher(
            settings.dispatch_webhook_url,
            timeout=settings.dispatch_timeout_seconds,
        )
        dispatcher = webhook
        logger.info("app.dispatcher_initialised", backend="webhook")
    else:
        dispatcher = LoggingDispatcher()
        logger.warning("app.dispatcher_log_only", reason="SAFEMAP_DISPATCH_WEBHOOK_URL not set")

    # -- 3. Orchestrator -----------------------------------------------------
    from src.services.emergency import EmergencyStateMachine, NotificationSequencer

    sequencer = NotificationSequencer(dispatcher)
    machine = EmergencyStateMachine(
        location=location,
        sequencer=sequencer,
        config=build_activation_config(settings),
    )
    app.state.emergency = machine
    logger.info("app.orchestrator_initialised")

    # -- 4. Triggers ---------------------------------------------------------
    from src.services.emergency import (
        HoldButtonTrigger,
        HotkeyTrigger,
        ShakeTrigger,
        VoicePhraseTrigger,
    )

    app.state.triggers = {
        "button": HoldButtonTrigger(machine),
        "hotkey": HotkeyTrigger(machine, settings.hotkey),
        "voice": VoicePhraseTrigger(
            machine,
            settings.voice_phrases,
            default_language=settings.voice_language,
        ),
        "shake": ShakeTrigger(
            machine,
            threshold=settings.shake_threshold,
            required_peaks=settings.shake_peaks,
            window_seconds=settings.shake_window_seconds,
        ),
    }
    logger.info("app.triggers_initialised", triggers=sorted(app.state.triggers))

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_started")
    await machine.aclose()
    if webhook is not None:
        await webhook.close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SafeMap API",
    description=(
        "SafeMap emergency activation and notification orchestrator. "
        "Turns panic-button, hotkey, voice and shake triggers into a single "
        "emergency session and alerts emergency services and trusted contacts."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
# allow_credentials=True must not be combined with allow_origins=["*"].
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization"],
    )

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "SafeMap API",
        "description": "Emergency activation and notification orchestrator",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "status": "/api/v1/emergency/status",
            "activate": "/api/v1/emergency/activate",
            "release": "/api/v1/emergency/release",
            "cancel": "/api/v1/emergency/cancel",
            "triggers": "/api/v1/emergency/triggers/{voice,hotkey,shake}",
            "location": "/api/v1/emergency/location",
            "contacts": "/api/v1/emergency/contacts",
            "stream": "/api/v1/emergency/stream",
        },
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
