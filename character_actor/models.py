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
"""Pydantic models for the character actor service.

This module defines the character snapshot and its parts, the game-state
view pushed by the orchestrator, the candidate action variants produced by
the decision pipeline, and the request/response models of the HTTP API.

All models serialize with camelCase aliases (the orchestrator's wire
format) and accept either camelCase or snake_case on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel

MIN_LEVEL = 1
MAX_LEVEL = 20


def utcnow() -> datetime:
    """Timezone-aware current time; all timestamps in this service are UTC."""
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base model with camelCase wire aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionType(str, Enum):
    """Type tags of candidate actions as understood by the orchestrator."""
    ATTACK = "combat.attack"
    DEFEND = "combat.defend"
    CAST_SPELL = "combat.cast_spell"
    USE_ITEM = "inventory.use_item"
    MOVE = "exploration.move"
    SEARCH = "exploration.search"
    INVESTIGATE = "exploration.investigate"
    REST = "exploration.rest"


# Bare names the orchestrator uses in availableActions.
ACTION_TYPE_ALIASES: Dict[str, ActionType] = {
    "attack": ActionType.ATTACK,
    "defend": ActionType.DEFEND,
    "cast_spell": ActionType.CAST_SPELL,
    "spell": ActionType.CAST_SPELL,
    "use_item": ActionType.USE_ITEM,
    "item": ActionType.USE_ITEM,
    "move": ActionType.MOVE,
    "search": ActionType.SEARCH,
    "investigate": ActionType.INVESTIGATE,
    "rest": ActionType.REST,
}


def normalize_action_tag(entry: Any) -> Optional[str]:
    """Type tag of one availableActions entry.

    Entries may be tags ("combat.attack"), bare names ("attack") or
    objects carrying either in "type" ({"type": "attack", "target": "orc-1"}).
    Names with no candidate counterpart (e.g. "dodge") are returned as
    given and simply match nothing. Returns None for entries without a type.
    """
    if isinstance(entry, Mapping):
        entry = entry.get("type")
    if not isinstance(entry, str) or not entry.strip():
        return None
    name = entry.strip()
    alias = ACTION_TYPE_ALIASES.get(name.lower())
    return alias.value if alias else name


class DecisionMode(str, Enum):
    """Scoring mode of a decision cycle."""
    COMBAT = "combat"
    EXPLORATION = "exploration"


# ---------------------------------------------------------------------------
# Character snapshot
# ---------------------------------------------------------------------------


class ResourcePool(WireModel):
    """A bounded pool such as health or mana.

    No range constraints are declared here: out-of-range values are
    clamped by the state store rather than rejected at parse time.
    """
    current: int = 0
    maximum: int = 0

    @property
    def ratio(self) -> float:
        """current / maximum, or 0.0 when maximum is zero."""
        if self.maximum <= 0:
            return 0.0
        return self.current / self.maximum


class Position(WireModel):
    """Location of a character or entity."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    room_id: Optional[str] = None
    facing: Optional[str] = None
    cover: bool = False


class Item(WireModel):
    """Inventory item.

    Attributes:
        type: potion, scroll, tool, weapon, armor or misc
        subtype: e.g. "healing" / "mana" for potions
        spell: spell carried by a scroll
        combat_usable: tools only; potions and scrolls are always usable
    """
    id: Optional[str] = None
    name: str
    type: str = "misc"
    subtype: Optional[str] = None
    spell: Optional[str] = None
    quantity: int = 1
    combat_usable: bool = False

    @property
    def ref(self) -> str:
        return self.id or self.name


class Spell(WireModel):
    """Known spell. Type is one of damage, healing, buff, debuff, utility."""
    name: str
    level: int = Field(default=1, ge=0, le=9)
    type: str = "damage"
    target: str = "enemy"

    @property
    def cost(self) -> int:
        """Mana cost of casting the spell."""
        return self.level * 2


class Weapon(WireModel):
    name: str = "fists"
    type: str = "melee"
    range: float = 5.0

    @property
    def is_ranged(self) -> bool:
        return self.type == "ranged" or self.range > 5


class DecisionWeights(WireModel):
    """Immutable personality weights controlling the scoring policy.

    Every weight is in [0, 1]. Updates produce a new value; the instance
    captured at the start of a decision cycle is used for the whole cycle.
    """
    model_config = ConfigDict(frozen=True)

    aggressiveness: float = Field(default=0.5, ge=0.0, le=1.0)
    caution: float = Field(default=0.5, ge=0.0, le=1.0)
    curiosity: float = Field(default=0.7, ge=0.0, le=1.0)
    tactical: float = Field(default=0.5, ge=0.0, le=1.0)
    thoroughness: float = Field(default=0.6, ge=0.0, le=1.0)
    secret_finding: float = Field(default=0.5, ge=0.0, le=1.0)
    trap_awareness: float = Field(default=0.7, ge=0.0, le=1.0)
    leadership: float = Field(default=0.3, ge=0.0, le=1.0)
    teamwork: float = Field(default=0.7, ge=0.0, le=1.0)
    spellcasting: float = Field(default=0.5, ge=0.0, le=1.0)

    @property
    def risk_tolerance(self) -> float:
        """Inverse of caution."""
        return 1.0 - self.caution

    def with_updates(self, **changes: Optional[float]) -> "DecisionWeights":
        """Return a validated copy with the given (non-None) weights replaced.

        Raises:
            pydantic.ValidationError: If a value is outside [0, 1] or unknown
        """
        data = self.model_dump()
        for name, value in changes.items():
            if value is None:
                continue
            if name not in data:
                raise ValueError(f"Unknown decision weight: {name}")
            data[name] = value
        return DecisionWeights.model_validate(data)

    def adjusted(self, modifiers: Mapping[str, float]) -> "DecisionWeights":
        """Apply additive modifiers, clamping each weight to [0, 1]."""
        data = self.model_dump()
        for name, delta in modifiers.items():
            if name in data:
                data[name] = min(1.0, max(0.0, data[name] + delta))
        return DecisionWeights.model_validate(data)


class RegistrationSession(WireModel):
    """Proof of an active lease with the orchestrator."""
    session_id: str
    bearer_token: str
    registered_at: datetime
    orchestrator_endpoint: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """A session without a known expiry is treated as valid."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at


class CombatStatus(WireModel):
    in_combat: bool = False
    initiative: int = 0
    turn_active: bool = False
    encounter_round: int = 0


class ExplorationMemory(WireModel):
    """Actor-local exploration memory, persisted with the snapshot."""
    visited_rooms: List[str] = Field(default_factory=list)
    searched_rooms: List[str] = Field(default_factory=list)
    known_traps: List[str] = Field(default_factory=list)
    found_secrets: List[str] = Field(default_factory=list)
    current_objective: Optional[str] = None
    turn_counter: int = 0
    last_rest_turn: Optional[int] = None


class CharacterSnapshot(WireModel):
    """The character's authoritative mutable state.

    Mutated only through StateStore transactions. Invariants (pools within
    [0, maximum], level within [1, 20]) are enforced by clamp_invariants()
    at the store's commit boundary and by the persistence loader.
    """
    id: str
    name: str
    character_class: str = "fighter"
    level: int = 1
    health: ResourcePool = Field(default_factory=lambda: ResourcePool(current=20, maximum=20))
    mana: ResourcePool = Field(default_factory=ResourcePool)
    position: Position = Field(default_factory=Position)
    abilities: Dict[str, int] = Field(default_factory=dict)
    inventory: List[Item] = Field(default_factory=list)
    spells: List[Spell] = Field(default_factory=list)
    equipped_weapon: Optional[Weapon] = None
    weights: DecisionWeights = Field(default_factory=DecisionWeights)
    session: Optional[RegistrationSession] = None
    combat: CombatStatus = Field(default_factory=CombatStatus)
    exploration: ExplorationMemory = Field(default_factory=ExplorationMemory)
    ai_enabled: bool = True
    last_action: Optional[Dict[str, Any]] = None
    last_heartbeat_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def is_alive(self) -> bool:
        return self.health.current > 0

    def can_act(self) -> bool:
        return self.is_alive()

    def is_registered(self) -> bool:
        """True while a session is held (expired or not)."""
        return self.session is not None

    def has_valid_session(self, now: Optional[datetime] = None) -> bool:
        """True when a session is held and its token is not past expiry."""
        return self.session is not None and not self.session.is_expired(now)

    def clamp_invariants(self) -> List[str]:
        """Clamp out-of-range values in place.

        Returns:
            Human-readable descriptions of every correction made
        """
        corrections: List[str] = []

        if not MIN_LEVEL <= self.level <= MAX_LEVEL:
            clamped = min(MAX_LEVEL, max(MIN_LEVEL, self.level))
            corrections.append(f"level {self.level} -> {clamped}")
            self.level = clamped

        for name in ("health", "mana"):
            pool: ResourcePool = getattr(self, name)
            if pool.maximum < 0:
                corrections.append(f"{name}.maximum {pool.maximum} -> 0")
                pool.maximum = 0
            if pool.current < 0:
                corrections.append(f"{name}.current {pool.current} -> 0")
                pool.current = 0
            elif pool.current > pool.maximum:
                corrections.append(f"{name}.current {pool.current} -> {pool.maximum}")
                pool.current = pool.maximum

        return corrections

    def public_view(self) -> Dict[str, Any]:
        """Serialized snapshot with the bearer token removed."""
        data = self.model_dump(mode="json", by_alias=True)
        if data.get("session"):
            data["session"]["bearerToken"] = "***REDACTED***"
        return data


# ---------------------------------------------------------------------------
# Game-state view (pushed by the orchestrator; parsed leniently)
# ---------------------------------------------------------------------------


class Entity(WireModel):
    """An opposing or allied entity in an encounter."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    health: float = Field(default=0.0, validation_alias=AliasChoices("health", "hp"))
    position: Optional[Position] = None


class CombatView(WireModel):
    model_config = ConfigDict(extra="allow")

    enemies: List[Entity] = Field(default_factory=list)
    allies: List[Entity] = Field(default_factory=list)
    round: int = 1


class Exit(WireModel):
    direction: str
    room_id: Optional[str] = None
    dangerous: bool = False
    blocked: bool = False


class InteractableObject(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    interesting: bool = False
    magical: bool = False
    unique: bool = False
    dangerous: bool = False
    quest_related: bool = False


class ExplorationView(WireModel):
    model_config = ConfigDict(extra="allow")

    exits: List[Exit] = Field(default_factory=list)
    blocked_directions: List[str] = Field(default_factory=list)
    light_level: str = "normal"
    danger_level: int = 0
    hostile_presence: bool = False
    safe_to_rest: Optional[bool] = None
    interactable_objects: List[InteractableObject] = Field(default_factory=list)
    potential_secrets: List[Any] = Field(default_factory=list)
    potential_traps: List[Any] = Field(default_factory=list)
    discoveries: List[Dict[str, Any]] = Field(default_factory=list)
    visible_areas: List[Dict[str, Any]] = Field(default_factory=list)
    suggests_search: bool = False
    objective_direction: Optional[str] = None
    needs_climbing: bool = False

    @field_validator('exits', mode='before')
    @classmethod
    def coerce_exit_names(cls, v: Any) -> Any:
        """Accept bare direction strings as exits."""
        if isinstance(v, list):
            return [{"direction": e} if isinstance(e, str) else e for e in v]
        return v


class GameStateView(WireModel):
    model_config = ConfigDict(extra="allow")

    combat: Optional[CombatView] = None
    exploration: Optional[ExplorationView] = None


# ---------------------------------------------------------------------------
# Candidate actions
# ---------------------------------------------------------------------------


class AttackAction(WireModel):
    type: Literal["combat.attack"] = "combat.attack"
    subtype: Literal["melee", "ranged"] = "melee"
    target: Optional[str] = None
    weapon: Optional[str] = None


class DefendAction(WireModel):
    type: Literal["combat.defend"] = "combat.defend"
    subtype: str = "full_defense"


class CastSpellAction(WireModel):
    type: Literal["combat.cast_spell"] = "combat.cast_spell"
    name: str
    level: int = 0
    spell_type: str = "damage"
    target: Optional[str] = None
    cost: int = 0


class UseItemAction(WireModel):
    type: Literal["inventory.use_item"] = "inventory.use_item"
    item_ref: str
    item_name: Optional[str] = None
    item_type: str = "misc"
    item_subtype: Optional[str] = None
    item_spell: Optional[str] = None
    target: Optional[str] = None
    purpose: str = "combat"


class MoveAction(WireModel):
    type: Literal["exploration.move"] = "exploration.move"
    direction: str
    cautious: bool = False
    destination: Optional[str] = None
    destination_explored: bool = False


class SearchAction(WireModel):
    type: Literal["exploration.search"] = "exploration.search"
    area: str = "current_room"
    kind: Literal["general", "secrets", "traps"] = "general"
    thorough: bool = False


class InvestigateAction(WireModel):
    type: Literal["exploration.investigate"] = "exploration.investigate"
    target_object: str
    approach: Literal["normal", "careful"] = "normal"
    interesting: bool = False
    dangerous: bool = False
    advances_objective: bool = False


class RestAction(WireModel):
    type: Literal["exploration.rest"] = "exploration.rest"
    duration: Literal["short", "long"] = "short"
    keep_watch: bool = False


CandidateAction = Annotated[
    Union[
        AttackAction,
        DefendAction,
        CastSpellAction,
        UseItemAction,
        MoveAction,
        SearchAction,
        InvestigateAction,
        RestAction,
    ],
    Field(discriminator="type"),
]

candidate_action_adapter: TypeAdapter = TypeAdapter(CandidateAction)


class ScoredAction(WireModel):
    """A candidate with its non-negative score and generation index."""
    action: CandidateAction
    score: float = Field(ge=0.0)
    index: int = 0


# ---------------------------------------------------------------------------
# API request/response models
# ---------------------------------------------------------------------------


class EventNotification(WireModel):
    """Inbound turn/event notification from the orchestrator."""
    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1, max_length=100)
    game_state_view: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("gameStateView", "game_state_view", "gameState")
    )
    available_actions: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    manual_control: bool = False

    @field_validator('available_actions', mode='before')
    @classmethod
    def normalize_available_actions(cls, v: Any) -> Any:
        """Reduce offered actions (tags, bare names or objects) to type tags."""
        if v is None:
            return []
        if isinstance(v, list):
            tags = [normalize_action_tag(entry) for entry in v]
            return [tag for tag in tags if tag is not None]
        return v


class SubmissionResult(WireModel):
    """Outcome of reporting an action to the orchestrator.

    A result with submitted=False is a normal outcome (for example while
    unregistered); reason says why.
    """
    submitted: bool = False
    accepted: Optional[bool] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    submitted_at: Optional[datetime] = None


class EventResponse(WireModel):
    acknowledged: bool
    action: Optional[Dict[str, Any]] = None
    ai_generated: bool = False
    submission: Optional[SubmissionResult] = None
    message: Optional[str] = None


class OverrideRequest(WireModel):
    """Manual override: force a specific action, bypassing scoring."""
    action: CandidateAction
    submit: bool = True


class WeightsUpdate(WireModel):
    """Partial update of the decision weights; omitted fields are unchanged."""
    aggressiveness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    caution: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    curiosity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tactical: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    thoroughness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    secret_finding: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    trap_awareness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    leadership: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    teamwork: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    spellcasting: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    ai_enabled: Optional[bool] = None

    def weight_changes(self) -> Dict[str, float]:
        data = self.model_dump(exclude={"ai_enabled"}, exclude_none=True)
        return data


class AIStatusResponse(WireModel):
    ai_enabled: bool
    character_class: str
    weights: DecisionWeights
    effective_weights: DecisionWeights


class StatusResponse(WireModel):
    character_id: str
    name: str
    character_class: str
    level: int
    health: ResourcePool
    mana: ResourcePool
    position: Position
    alive: bool
    in_combat: bool
    registered: bool
    lifecycle_state: str
    ai_enabled: bool
    last_action: Optional[Dict[str, Any]] = None
    last_heartbeat_at: Optional[datetime] = None


class HealthResponse(WireModel):
    status: Literal["healthy", "degraded"] = "healthy"
    service: str = "character-actor"
    character_id: Optional[str] = None
    lifecycle_state: str = "unregistered"
    registered: bool = False
    accepting_events: bool = False
