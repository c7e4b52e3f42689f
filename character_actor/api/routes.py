# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""API route handlers for the character actor service.

This module defines the HTTP endpoints of one character actor:
- POST /event: Inbound turn/event notification from the orchestrator
- POST /api/character/action: Manual override (force an action, bypass scoring)
- GET /api/character, GET /api/character/status: Snapshot and vitals
- GET /api/ai/status, PUT /api/ai: Read and update decision weights
- POST /register, POST /unregister: Manual lease control
- POST /api/character/save: Force persistence
- GET /health: Service health
- GET /metrics: Service metrics (optional, requires ENABLE_METRICS=true)

Reads go through the state store's non-blocking snapshot; every mutation
goes through the event gateway or a store transaction.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from character_actor.config import Settings, get_settings
from character_actor.logging import StructuredLogger, get_request_id, set_character_id
from character_actor.metrics import MetricsCollector
from character_actor.models import (
    AIStatusResponse,
    DecisionMode,
    EventNotification,
    EventResponse,
    HealthResponse,
    OverrideRequest,
    StatusResponse,
    WeightsUpdate,
)
from character_actor.services.event_gateway import (
    EventGateway,
    GatewayBusyError,
    GatewayNotAcceptingError,
)
from character_actor.services.lifecycle import (
    AlreadyRegisteredError,
    LifecycleManager,
    LifecycleState,
    RegistrationCancelledError,
    RegistrationFailedError,
)
from character_actor.services.scoring import strategy_for
from character_actor.services.situation import room_id_for
from character_actor.services.state_store import StateStore

logger = StructuredLogger(__name__)

router = APIRouter()


def create_error_response(
    error_type: str,
    message: str,
    status_code: int
) -> HTTPException:
    """Create a structured error response.

    Args:
        error_type: Machine-readable error type
        message: Human-readable error message
        status_code: HTTP status code

    Returns:
        HTTPException with structured error detail
    """
    request_id = get_request_id()

    error_detail = {
        "error": {
            "type": error_type,
            "message": message,
            "request_id": request_id if request_id else None
        }
    }

    return HTTPException(
        status_code=status_code,
        detail=error_detail
    )


def get_state_store() -> StateStore:
    """Dependency that provides the character's StateStore.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_state_store dependency must be overridden. "
        "This should be configured in character_actor.main module."
    )


def get_lifecycle_manager() -> LifecycleManager:
    """Dependency that provides the LifecycleManager.

    This is a placeholder that must be overridden by the application.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_lifecycle_manager dependency must be overridden. "
        "This should be configured in character_actor.main module."
    )


def get_event_gateway() -> EventGateway:
    """Dependency that provides the EventGateway.

    This is a placeholder that must be overridden by the application.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_event_gateway dependency must be overridden. "
        "This should be configured in character_actor.main module."
    )


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Dependency that provides the MetricsCollector (None when disabled).

    This is a placeholder that must be overridden by the application.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_metrics_collector dependency must be overridden. "
        "This should be configured in character_actor.main module."
    )


def _gateway_error(e: Exception) -> HTTPException:
    if isinstance(e, GatewayNotAcceptingError):
        return create_error_response("not_accepting", str(e), status.HTTP_503_SERVICE_UNAVAILABLE)
    if isinstance(e, GatewayBusyError):
        return create_error_response("queue_full", str(e), status.HTTP_429_TOO_MANY_REQUESTS)
    if isinstance(e, ValueError):
        return create_error_response("invalid_event", str(e), status.HTTP_400_BAD_REQUEST)
    return create_error_response(
        "internal_error",
        f"Failed to process request: {type(e).__name__}",
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )


@router.post(
    "/event",
    response_model=EventResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive a turn or event notification",
    description=(
        "Inbound notification from the orchestrator. Turn notifications "
        "(combat.turn, exploration.turn) run one decision cycle and answer with "
        "the chosen action; other events update character state. Notifications "
        "are processed one at a time in arrival order."
    ),
    responses={
        400: {"description": "Malformed event data"},
        429: {"description": "Inbound queue full"},
        503: {"description": "Not accepting notifications (not yet registered or shutting down)"},
    }
)
async def receive_event(
    notification: EventNotification,
    gateway: EventGateway = Depends(get_event_gateway),
    store: StateStore = Depends(get_state_store)
) -> EventResponse:
    set_character_id(store.character_id)
    logger.info("Event received", event_type=notification.type)

    try:
        return await gateway.handle_event(notification)
    except Exception as e:
        logger.warning(
            "Event processing failed",
            event_type=notification.type,
            error_type=type(e).__name__
        )
        raise _gateway_error(e) from e


@router.post(
    "/api/character/action",
    response_model=EventResponse,
    status_code=status.HTTP_200_OK,
    summary="Force a specific action",
    description=(
        "Manual override: the given action bypasses scoring. If a decision "
        "cycle is in flight the override is queued behind it, never dropped."
    )
)
async def override_action(
    request: OverrideRequest,
    gateway: EventGateway = Depends(get_event_gateway),
    store: StateStore = Depends(get_state_store)
) -> EventResponse:
    set_character_id(store.character_id)
    logger.info("Manual override requested", action_type=request.action.type)

    try:
        return await gateway.handle_override(request)
    except Exception as e:
        raise _gateway_error(e) from e


@router.get(
    "/api/character",
    status_code=status.HTTP_200_OK,
    summary="Full character snapshot",
    description="Committed snapshot with the session token redacted, plus derived stats."
)
async def get_character(store: StateStore = Depends(get_state_store)) -> Dict[str, Any]:
    snapshot = store.snapshot()
    data = snapshot.public_view()
    data["derived"] = {
        "alive": snapshot.is_alive(),
        "healthRatio": round(snapshot.health.ratio, 3),
        "manaRatio": round(snapshot.mana.ratio, 3),
        "currentRoom": room_id_for(snapshot.position),
        "registered": snapshot.is_registered(),
    }
    return data


@router.get(
    "/api/character/status",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Character vitals and status"
)
async def get_status(
    store: StateStore = Depends(get_state_store),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager)
) -> StatusResponse:
    snapshot = store.snapshot()
    return StatusResponse(
        character_id=snapshot.id,
        name=snapshot.name,
        character_class=snapshot.character_class,
        level=snapshot.level,
        health=snapshot.health,
        mana=snapshot.mana,
        position=snapshot.position,
        alive=snapshot.is_alive(),
        in_combat=snapshot.combat.in_combat,
        registered=snapshot.is_registered(),
        lifecycle_state=lifecycle.state.value,
        ai_enabled=snapshot.ai_enabled,
        last_action=snapshot.last_action,
        last_heartbeat_at=snapshot.last_heartbeat_at,
    )


def _ai_status(store: StateStore) -> AIStatusResponse:
    snapshot = store.snapshot()
    strategy = strategy_for(snapshot.character_class, DecisionMode.EXPLORATION)
    return AIStatusResponse(
        ai_enabled=snapshot.ai_enabled,
        character_class=snapshot.character_class,
        weights=snapshot.weights,
        effective_weights=strategy.effective_weights(snapshot.weights),
    )


@router.get(
    "/api/ai/status",
    response_model=AIStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Decision weights and AI switch"
)
async def get_ai_status(store: StateStore = Depends(get_state_store)) -> AIStatusResponse:
    return _ai_status(store)


@router.put(
    "/api/ai",
    response_model=AIStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Update decision weights",
    description="Partial update. Changes take effect from the next decision cycle."
)
async def update_ai(
    update: WeightsUpdate,
    gateway: EventGateway = Depends(get_event_gateway),
    store: StateStore = Depends(get_state_store)
) -> AIStatusResponse:
    set_character_id(store.character_id)
    try:
        await gateway.update_weights(update)
    except ValueError as e:
        raise create_error_response(
            "invalid_weights", str(e), status.HTTP_422_UNPROCESSABLE_ENTITY
        ) from e
    return _ai_status(store)


@router.post(
    "/register",
    status_code=status.HTTP_200_OK,
    summary="Register with the orchestrator",
    responses={
        409: {"description": "Already registered or registering, or cancelled by unregister"},
        502: {"description": "Registration attempts exhausted"},
    }
)
async def register(
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
    store: StateStore = Depends(get_state_store)
) -> Dict[str, Any]:
    set_character_id(store.character_id)
    try:
        session = await lifecycle.register()
    except AlreadyRegisteredError as e:
        raise create_error_response("already_registered", str(e), status.HTTP_409_CONFLICT) from e
    except RegistrationCancelledError as e:
        raise create_error_response("registration_cancelled", str(e), status.HTTP_409_CONFLICT) from e
    except RegistrationFailedError as e:
        raise create_error_response("registration_failed", str(e), status.HTTP_502_BAD_GATEWAY) from e

    return {
        "registered": True,
        "sessionId": session.session_id,
        "expiresAt": session.expires_at.isoformat() if session.expires_at else None,
    }


@router.post(
    "/unregister",
    status_code=status.HTTP_200_OK,
    summary="Release the orchestrator session",
    description="Best effort: the local session is cleared even if the orchestrator is unreachable."
)
async def unregister(
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
    store: StateStore = Depends(get_state_store)
) -> Dict[str, Any]:
    set_character_id(store.character_id)
    released = await lifecycle.unregister()
    return {"registered": False, "released": released}


@router.post(
    "/api/character/save",
    status_code=status.HTTP_200_OK,
    summary="Persist the character snapshot now"
)
async def save_character(store: StateStore = Depends(get_state_store)) -> Dict[str, Any]:
    if not await store.save():
        raise create_error_response(
            "save_failed",
            "Snapshot could not be persisted",
            status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    return {"saved": True, "version": store.version}


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description=(
        "Returns status='healthy' while registered and accepting notifications, "
        "'degraded' otherwise (registering, faulted or unregistered)."
    )
)
async def health_check(
    store: StateStore = Depends(get_state_store),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
    gateway: EventGateway = Depends(get_event_gateway),
    settings: Settings = Depends(get_settings)
) -> HealthResponse:
    snapshot = store.snapshot()
    healthy = gateway.accepting and lifecycle.state != LifecycleState.FAULTED
    if settings.auto_register:
        healthy = healthy and lifecycle.state == LifecycleState.REGISTERED

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        service=settings.service_name,
        character_id=snapshot.id,
        lifecycle_state=lifecycle.state.value,
        registered=snapshot.is_registered(),
        accepting_events=gateway.accepting,
    )


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Request counts, error counts, latencies and decision, heartbeat, "
        "registration and submission outcomes. Returns 404 if metrics are disabled."
    ),
    responses={404: {"description": "Metrics disabled"}}
)
async def get_metrics(
    settings: Settings = Depends(get_settings),
    collector: Optional[MetricsCollector] = Depends(get_metrics_collector)
):
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()
