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
"""EventGateway: single-consumer entry point for inbound work.

Turn/event notifications and manual overrides are placed on one bounded
asyncio.Queue and handled by a single worker task, one at a time, in
arrival order. An override that arrives while a decision cycle is running
waits in the queue behind it. Each caller awaits a future resolved by the
worker, so HTTP handlers can still answer synchronously.

Decision cycles run inside a StateStore transaction (the decision input is
the committed snapshot, never a stale copy); the resulting action is
submitted after the transaction has been released.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from character_actor.logging import StructuredLogger
from character_actor.metrics import MetricsCollector
from character_actor.models import (
    ActionType,
    CandidateAction,
    CharacterSnapshot,
    DecisionMode,
    DecisionWeights,
    EventNotification,
    EventResponse,
    GameStateView,
    OverrideRequest,
    Position,
    WeightsUpdate,
    utcnow,
)
from character_actor.services.action_submitter import ActionSubmitter
from character_actor.services.decision_engine import DecisionEngine
from character_actor.services.orchestrator_client import RegistrationGrant
from character_actor.services.situation import room_id_for
from character_actor.services.state_store import StateStore

logger = StructuredLogger(__name__)


class GatewayNotAcceptingError(Exception):
    """Raised when work arrives before the gateway accepts it or after shutdown."""
    pass


class GatewayBusyError(Exception):
    """Raised when the inbound queue is full."""
    pass


class WorkKind(str, Enum):
    EVENT = "event"
    OVERRIDE = "override"


@dataclass
class WorkItem:
    kind: WorkKind
    payload: Any
    future: asyncio.Future = field(repr=False)


Handler = Callable[[EventNotification], Awaitable[EventResponse]]


class EventGateway:
    """Admits one unit of work at a time and dispatches it."""

    def __init__(
        self,
        store: StateStore,
        engine: DecisionEngine,
        submitter: ActionSubmitter,
        queue_size: int = 64,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Initialize the gateway.

        Args:
            store: State store owning the character snapshot
            engine: Decision engine
            submitter: Action submitter
            queue_size: Maximum number of queued work items
            log: Logger (defaults to the module logger)
            metrics: Optional metrics collector
        """
        self.store = store
        self.engine = engine
        self.submitter = submitter
        self.queue_size = queue_size
        self.log = log or logger
        self.metrics = metrics
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._accepting = False
        self._handlers: Dict[str, Handler] = {
            "combat.start": self._on_combat_start,
            "combat.turn": self._on_combat_turn,
            "combat.end": self._on_combat_end,
            "exploration.turn": self._on_exploration_turn,
            "exploration.discovery": self._on_discovery,
            "game.state_update": self._on_state_update,
            "character.damage": self._on_damage,
            "character.heal": self._on_heal,
            "character.mana": self._on_mana,
        }

    @property
    def accepting(self) -> bool:
        return self._accepting and self.running

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self, accept: bool = False) -> None:
        """Start the worker. Work is admitted once open() is called (or accept=True)."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._run())
        if accept:
            self.open()
        self.log.info("Event gateway started", queue_size=self.queue_size, accepting=self._accepting)

    def open(self) -> None:
        if not self._accepting:
            self._accepting = True
            self.log.info("Event gateway accepting notifications")

    def on_registered(self, grant: RegistrationGrant) -> None:
        """Lifecycle callback: a session exists, so begin accepting notifications."""
        self.open()

    async def stop(self) -> None:
        """Stop admitting work, finish queued items, then stop the worker."""
        self._accepting = False
        worker, self._worker = self._worker, None
        if worker is None:
            return
        await self._queue.put(None)
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self.log.info("Event gateway stopped")

    async def _enqueue(self, kind: WorkKind, payload: Any) -> EventResponse:
        if not self.accepting:
            raise GatewayNotAcceptingError("Character is not accepting notifications")
        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(WorkItem(kind=kind, payload=payload, future=future))
        except asyncio.QueueFull:
            if self.metrics:
                self.metrics.record_error("gateway_queue_full")
            raise GatewayBusyError(f"Inbound queue full ({self.queue_size} items)")
        return await future

    async def handle_event(self, notification: EventNotification) -> EventResponse:
        """Queue a notification and wait for its response."""
        return await self._enqueue(WorkKind.EVENT, notification)

    async def handle_override(self, request: OverrideRequest) -> EventResponse:
        """Queue a manual override and wait for its response."""
        return await self._enqueue(WorkKind.OVERRIDE, request)

    async def update_weights(self, update: WeightsUpdate) -> DecisionWeights:
        """Replace decision weights and/or the AI switch.

        Runs in its own transaction, so a cycle already holding the store
        finishes with the weights it captured; the next cycle sees these.

        Raises:
            ValueError: If the resulting weights are invalid
        """
        changes = update.weight_changes()

        def apply(snapshot: CharacterSnapshot) -> DecisionWeights:
            if changes:
                snapshot.weights = snapshot.weights.with_updates(**changes)
            if update.ai_enabled is not None:
                snapshot.ai_enabled = update.ai_enabled
            return snapshot.weights

        weights = await self.store.update(apply, reason="weights")
        self.log.info(
            "Decision weights updated",
            changed=",".join(sorted(changes)) or "none",
            ai_enabled=update.ai_enabled
        )
        return weights

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    break
                if item.future.cancelled():
                    continue
                try:
                    if item.kind == WorkKind.OVERRIDE:
                        result = await self._process_override(item.payload)
                    else:
                        result = await self._process_event(item.payload)
                except Exception as e:
                    self.log.error(
                        "Work item failed",
                        kind=item.kind.value,
                        error_type=type(e).__name__,
                        error=str(e)[:200]
                    )
                    if not item.future.done():
                        item.future.set_exception(e)
                else:
                    if not item.future.done():
                        item.future.set_result(result)
            finally:
                self._queue.task_done()

    async def _process_event(self, notification: EventNotification) -> EventResponse:
        handler = self._handlers.get(notification.type)
        if handler is None:
            self.log.warning("Unknown event type", event_type=notification.type)
            return EventResponse(
                acknowledged=False,
                message=f"Unknown event type: {notification.type}"
            )
        self.log.debug("Processing event", event_type=notification.type)
        return await handler(notification)

    # ------------------------------------------------------------------
    # Decision turns
    # ------------------------------------------------------------------

    async def _on_combat_turn(self, notification: EventNotification) -> EventResponse:
        return await self._decide_turn(notification, DecisionMode.COMBAT)

    async def _on_exploration_turn(self, notification: EventNotification) -> EventResponse:
        return await self._decide_turn(notification, DecisionMode.EXPLORATION)

    async def _decide_turn(self, notification: EventNotification, mode: DecisionMode) -> EventResponse:
        decision = None
        async with self.store.transaction(f"{mode.value}.turn") as working:
            if mode == DecisionMode.COMBAT:
                working.combat.in_combat = True
                working.combat.turn_active = True
                combat_view = (notification.game_state_view or {}).get("combat")
                if isinstance(combat_view, dict) and isinstance(combat_view.get("round"), int):
                    working.combat.encounter_round = combat_view["round"]
            else:
                self._observe_room(working)

            if notification.manual_control or not working.ai_enabled:
                self.log.info(
                    "Skipping AI decision",
                    manual_control=notification.manual_control,
                    ai_enabled=working.ai_enabled
                )
            else:
                decision = self.engine.decide(
                    working,
                    notification.game_state_view,
                    mode,
                    notification.available_actions,
                )
                self._record_action(working, decision.action, mode, ai_generated=True)
            character_id, session = working.id, working.session

        if decision is None:
            return EventResponse(acknowledged=True, ai_generated=False, message="Awaiting manual action")

        submission = await self.submitter.submit(character_id, decision.action, session)
        return EventResponse(
            acknowledged=True,
            action=decision.action.model_dump(mode="json", by_alias=True),
            ai_generated=True,
            submission=submission,
        )

    async def _process_override(self, request: OverrideRequest) -> EventResponse:
        async with self.store.transaction("override") as working:
            mode = DecisionMode.COMBAT if working.combat.in_combat else DecisionMode.EXPLORATION
            self._record_action(working, request.action, mode, ai_generated=False)
            character_id, session = working.id, working.session

        self.log.info("Manual override applied", action_type=request.action.type)
        submission = None
        if request.submit:
            submission = await self.submitter.submit(character_id, request.action, session)
        return EventResponse(
            acknowledged=True,
            action=request.action.model_dump(mode="json", by_alias=True),
            ai_generated=False,
            submission=submission,
        )

    @staticmethod
    def _observe_room(snapshot: CharacterSnapshot) -> None:
        room = room_id_for(snapshot.position)
        if room not in snapshot.exploration.visited_rooms:
            snapshot.exploration.visited_rooms.append(room)

    @staticmethod
    def _record_action(
        snapshot: CharacterSnapshot,
        action: CandidateAction,
        mode: DecisionMode,
        ai_generated: bool
    ) -> None:
        memory = snapshot.exploration
        memory.turn_counter += 1

        if action.type == ActionType.SEARCH and action.area == "current_room":
            room = room_id_for(snapshot.position)
            if room not in memory.searched_rooms:
                memory.searched_rooms.append(room)
        elif action.type == ActionType.REST:
            memory.last_rest_turn = memory.turn_counter

        if mode == DecisionMode.COMBAT:
            snapshot.combat.turn_active = False

        snapshot.last_action = {
            "action": action.model_dump(mode="json", by_alias=True),
            "mode": mode.value,
            "aiGenerated": ai_generated,
            "turn": memory.turn_counter,
            "at": utcnow().isoformat(),
        }

    # ------------------------------------------------------------------
    # State events
    # ------------------------------------------------------------------

    async def _mutate(self, notification: EventNotification, mutator: Callable[[CharacterSnapshot], Any]) -> EventResponse:
        await self.store.update(mutator, reason=notification.type)
        return EventResponse(acknowledged=True)

    async def _on_combat_start(self, notification: EventNotification) -> EventResponse:
        def start(s: CharacterSnapshot) -> None:
            s.combat.in_combat = True
            s.combat.initiative = int(notification.data.get("initiative", 0))
            s.combat.encounter_round = 1
            s.combat.turn_active = False

        return await self._mutate(notification, start)

    async def _on_combat_end(self, notification: EventNotification) -> EventResponse:
        def end(s: CharacterSnapshot) -> None:
            s.combat.in_combat = False
            s.combat.turn_active = False
            s.combat.encounter_round = 0

        return await self._mutate(notification, end)

    @staticmethod
    def _amount(notification: EventNotification) -> int:
        try:
            return int(notification.data.get("amount", 0))
        except (TypeError, ValueError) as e:
            raise ValueError(f"{notification.type} requires a numeric amount") from e

    async def _on_damage(self, notification: EventNotification) -> EventResponse:
        amount = self._amount(notification)

        def damage(s: CharacterSnapshot) -> None:
            s.health.current -= amount

        return await self._mutate(notification, damage)

    async def _on_heal(self, notification: EventNotification) -> EventResponse:
        amount = self._amount(notification)

        def heal(s: CharacterSnapshot) -> None:
            s.health.current += amount

        return await self._mutate(notification, heal)

    async def _on_mana(self, notification: EventNotification) -> EventResponse:
        amount = self._amount(notification)

        def change(s: CharacterSnapshot) -> None:
            s.mana.current += amount

        return await self._mutate(notification, change)

    async def _on_state_update(self, notification: EventNotification) -> EventResponse:
        data = notification.data
        try:
            position = Position.model_validate(data["position"]) if isinstance(data.get("position"), dict) else None
        except ValidationError as e:
            self.log.warning("Rejected state update", error_count=e.error_count())
            return EventResponse(acknowledged=False, message="Invalid position in state update")
        objective = data.get("objective")
        if objective is not None and not isinstance(objective, str):
            self.log.warning("Rejected state update", objective_type=type(objective).__name__)
            return EventResponse(acknowledged=False, message="Invalid objective in state update")

        def sync(s: CharacterSnapshot) -> None:
            if position is not None:
                s.position = position
            for name in ("health", "mana"):
                value = data.get(name)
                pool = getattr(s, name)
                if isinstance(value, dict):
                    pool.current = int(value.get("current", pool.current))
                    pool.maximum = int(value.get("maximum", value.get("max", pool.maximum)))
                elif isinstance(value, (int, float)):
                    pool.current = int(value)
            if isinstance(data.get("level"), int):
                s.level = data["level"]
            if "objective" in data:
                s.exploration.current_objective = objective

        return await self._mutate(notification, sync)

    async def _on_discovery(self, notification: EventNotification) -> EventResponse:
        discoveries = notification.data.get("discoveries")
        discoveries = list(discoveries) if isinstance(discoveries, list) else []
        try:
            view = GameStateView.model_validate(notification.game_state_view or {})
        except ValidationError as e:
            self.log.warning("Ignoring malformed view on discovery", error_count=e.error_count())
            view = GameStateView()
        if view.exploration is not None:
            discoveries.extend(view.exploration.discoveries)

        def record(s: CharacterSnapshot) -> None:
            memory = s.exploration
            for discovery in discoveries:
                if not isinstance(discovery, dict):
                    continue
                ref = discovery.get("id") or discovery.get("name")
                if ref is None:
                    continue
                kind = discovery.get("type")
                target = memory.known_traps if kind == "trap" else memory.found_secrets if kind == "secret" else None
                if target is not None and ref not in target:
                    target.append(ref)

        return await self._mutate(notification, record)
