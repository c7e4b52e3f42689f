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
"""FastAPI application entry point for the character actor service.

One process hosts one character. The lifespan:
- loads and validates settings, configures logging and metrics
- loads the persisted snapshot (or creates one from settings)
- wires the state store, decision engine, submitter, lifecycle manager
  and event gateway, storing each in app state
- registers with the orchestrator when AUTO_REGISTER is set; exhausting
  the registration attempts aborts startup
- on shutdown drains the gateway, releases the session and saves
"""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import AsyncClient

from character_actor.api.routes import router
from character_actor.config import Settings, get_settings
from character_actor.logging import StructuredLogger, configure_logging, set_character_id
from character_actor.metrics import MetricsCollector
from character_actor.middleware import RequestCorrelationMiddleware
from character_actor.models import CharacterSnapshot, DecisionWeights, ResourcePool
from character_actor.services.action_submitter import ActionSubmitter
from character_actor.services.decision_engine import DecisionEngine
from character_actor.services.event_gateway import EventGateway
from character_actor.services.lifecycle import LifecycleManager, RegistrationFailedError
from character_actor.services.orchestrator_client import OrchestratorClient
from character_actor.services.state_store import SnapshotRepository, StateStore

# Will be configured in lifespan
logger = logging.getLogger(__name__)


def build_initial_snapshot(settings: Settings, repository: SnapshotRepository) -> CharacterSnapshot:
    """Load the persisted snapshot, or create a fresh one from settings.

    Name and class from settings override a persisted record; persisted
    vitals, memory and weights are kept. Without CHARACTER_ID nothing is
    loaded and a new id is generated.
    """
    character_id = settings.character_id or str(uuid.uuid4())
    snapshot = repository.load(character_id) if settings.character_id else None
    if snapshot is not None:
        snapshot.name = settings.character_name
        snapshot.character_class = settings.character_class
        return snapshot

    return CharacterSnapshot(
        id=character_id,
        name=settings.character_name,
        character_class=settings.character_class,
        level=settings.character_level,
        health=ResourcePool(current=settings.max_health, maximum=settings.max_health),
        mana=ResourcePool(current=settings.max_mana, maximum=settings.max_mana),
        abilities=dict(settings.ability_scores),
        weights=DecisionWeights(**settings.weight_values()),
        ai_enabled=settings.enable_ai,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Args:
        app: FastAPI application instance

    Raises:
        RegistrationFailedError: If AUTO_REGISTER is set and registration
            exhausts its attempts (startup fails)
    """
    logger.info("Starting character actor service...")

    try:
        settings = get_settings()

        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"Orchestrator base URL: {settings.orchestrator_base_url}")
        logger.info(f"Metrics enabled: {settings.enable_metrics}")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    metrics = MetricsCollector() if settings.enable_metrics else None
    app.state.metrics = metrics

    app.state.http_client = AsyncClient()
    logger.info("HTTP client initialized")

    repository = SnapshotRepository(settings.state_dir)
    snapshot = build_initial_snapshot(settings, repository)
    set_character_id(snapshot.id)

    app.state.store = StateStore(snapshot, repository=repository, metrics=metrics)
    logger.info(f"Character loaded (id={snapshot.id}, class={snapshot.character_class})")

    app.state.orchestrator_client = OrchestratorClient(
        base_url=settings.orchestrator_base_url,
        http_client=app.state.http_client,
        registration_timeout=settings.registration_timeout,
        heartbeat_timeout=settings.heartbeat_timeout,
        submission_timeout=settings.submission_timeout,
        unregister_timeout=settings.unregister_timeout,
        log=StructuredLogger("character_actor.orchestrator"),
        metrics=metrics,
    )

    app.state.lifecycle = LifecycleManager(
        client=app.state.orchestrator_client,
        store=app.state.store,
        endpoint=settings.character_endpoint,
        max_attempts=settings.registration_max_attempts,
        base_delay=settings.registration_base_delay,
        heartbeat_interval=settings.heartbeat_interval,
        metrics=metrics,
    )

    app.state.engine = DecisionEngine(rng_seed=settings.rng_seed, metrics=metrics)
    app.state.submitter = ActionSubmitter(
        client=app.state.orchestrator_client,
        max_attempts=settings.submission_max_attempts,
        retry_delay=settings.submission_retry_delay,
        enabled=settings.submit_decisions,
        on_session_error=app.state.lifecycle.handle_session_error,
        metrics=metrics,
    )
    app.state.gateway = EventGateway(
        store=app.state.store,
        engine=app.state.engine,
        submitter=app.state.submitter,
        queue_size=settings.event_queue_size,
        metrics=metrics,
    )
    app.state.lifecycle.on_registered(app.state.gateway.on_registered)

    # Without auto-registration the actor serves locally until /register.
    await app.state.gateway.start(accept=not settings.auto_register)
    app.state.store.start_autosave(settings.save_interval)

    if settings.auto_register:
        try:
            await app.state.lifecycle.register()
        except RegistrationFailedError as e:
            logger.critical(f"Registration failed; aborting startup ({e.attempts} attempts): {e.last_error}")
            await app.state.gateway.stop()
            await app.state.store.stop_autosave()
            await app.state.http_client.aclose()
            raise

    yield

    logger.info("Shutting down character actor service...")
    await app.state.gateway.stop()
    await app.state.lifecycle.shutdown()
    await app.state.store.stop_autosave()
    await app.state.store.save()
    await app.state.http_client.aclose()
    logger.info("HTTP client closed")


app = FastAPI(
    title="Character Actor API",
    description=(
        "Autonomous character actor for a turn-based dungeon game. Registers "
        "with the game orchestrator, decides one action per turn notification "
        "and reports it back."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestCorrelationMiddleware)

app.include_router(router, tags=["character"])


def _from_state(name: str):
    if not hasattr(app.state, name):
        raise RuntimeError(
            f"{name} not initialized. "
            "Ensure the application lifespan has started."
        )
    return getattr(app.state, name)


def get_state_store_override() -> StateStore:
    """Dependency override that provides the StateStore from app state."""
    return _from_state('store')


def get_lifecycle_manager_override() -> LifecycleManager:
    """Dependency override that provides the LifecycleManager from app state."""
    return _from_state('lifecycle')


def get_event_gateway_override() -> EventGateway:
    """Dependency override that provides the EventGateway from app state."""
    return _from_state('gateway')


def get_metrics_collector_override():
    """Dependency override that provides the MetricsCollector (or None)."""
    return getattr(app.state, 'metrics', None)


from character_actor.api.routes import (  # noqa: E402
    get_event_gateway,
    get_lifecycle_manager,
    get_metrics_collector,
    get_state_store,
)
app.dependency_overrides[get_state_store] = get_state_store_override
app.dependency_overrides[get_lifecycle_manager] = get_lifecycle_manager_override
app.dependency_overrides[get_event_gateway] = get_event_gateway_override
app.dependency_overrides[get_metrics_collector] = get_metrics_collector_override


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    logging.getLogger().setLevel(settings.log_level)

    uvicorn.run(
        "character_actor.main:app",
        host="0.0.0.0",
        port=8080,
        log_level=settings.log_level.lower()
    )
