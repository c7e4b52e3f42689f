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
"""Candidate action generation.

generate_candidates() is pure: it returns the candidate actions for one
decision cycle in a deterministic order. The result always contains the
mode's fallback action (Defend in combat, a general Search in
exploration), so the decision engine is never starved of options.
"""

from typing import Any, Iterable, List, Optional

from character_actor.models import (
    AttackAction,
    CandidateAction,
    CastSpellAction,
    CharacterSnapshot,
    DecisionMode,
    DecisionWeights,
    DefendAction,
    Entity,
    GameStateView,
    InvestigateAction,
    Item,
    MoveAction,
    RestAction,
    SearchAction,
    UseItemAction,
    normalize_action_tag,
)
from character_actor.services.situation import (
    Situation,
    analyze_situation,
    legal_exits,
)

EXPLORATION_TOOLS = frozenset({"torch", "rope", "thieves_tools", "compass", "map"})
DETECTION_SCROLLS = frozenset({"detect_magic", "find_traps", "light", "darkvision"})
COMBAT_ITEM_TYPES = frozenset({"potion", "scroll"})
SELF_TARGETED_SPELLS = frozenset({"healing", "buff"})

REST_HEALTH_RATIO = 0.7
LONG_REST_HEALTH_RATIO = 0.5
HIGH_THOROUGHNESS = 0.8


def fallback_action(mode: DecisionMode) -> CandidateAction:
    """The always-legal action for a mode."""
    if mode == DecisionMode.COMBAT:
        return DefendAction(subtype="full_defense")
    return SearchAction(area="current_room", kind="general", thorough=False)


def select_target(situation: Situation, weights: DecisionWeights) -> Optional[Entity]:
    """Pick an attack target according to the character's personality."""
    if weights.tactical > 0.6 and situation.weakest_enemy is not None:
        return situation.weakest_enemy
    if weights.aggressiveness > 0.7 and situation.strongest_enemy is not None:
        return situation.strongest_enemy
    return situation.nearest_enemy


def is_combat_item(item: Item) -> bool:
    if item.quantity <= 0:
        return False
    return item.type in COMBAT_ITEM_TYPES or (item.type == "tool" and item.combat_usable)


def is_exploration_item(item: Item) -> bool:
    if item.quantity <= 0:
        return False
    if item.type == "tool":
        return item.name in EXPLORATION_TOOLS
    if item.type == "scroll":
        return item.spell in DETECTION_SCROLLS
    if item.type == "potion":
        return item.subtype == "healing"
    return False


def _use_item(item: Item, purpose: str) -> UseItemAction:
    return UseItemAction(
        item_ref=item.ref,
        item_name=item.name,
        item_type=item.type,
        item_subtype=item.subtype,
        item_spell=item.spell,
        target="self",
        purpose=purpose,
    )


def _combat_candidates(
    snapshot: CharacterSnapshot,
    view: GameStateView,
    situation: Situation,
    weights: DecisionWeights
) -> List[CandidateAction]:
    candidates: List[CandidateAction] = []
    target = select_target(situation, weights)
    weapon = snapshot.equipped_weapon

    if target is not None:
        candidates.append(AttackAction(
            subtype="melee",
            target=target.id,
            weapon=weapon.name if weapon else "fists",
        ))
        if weapon is not None and weapon.is_ranged:
            candidates.append(AttackAction(subtype="ranged", target=target.id, weapon=weapon.name))

    candidates.append(fallback_action(DecisionMode.COMBAT))

    for spell in snapshot.spells:
        if spell.cost > snapshot.mana.current:
            continue
        spell_target = "self" if spell.type in SELF_TARGETED_SPELLS else (target.id if target else None)
        candidates.append(CastSpellAction(
            name=spell.name,
            level=spell.level,
            spell_type=spell.type,
            target=spell_target,
            cost=spell.cost,
        ))

    for item in snapshot.inventory:
        if is_combat_item(item):
            candidates.append(_use_item(item, "combat"))

    if weights.tactical > 0.3 or situation.health_percentage < 0.5:
        for direction, destination in legal_exits(snapshot, view):
            candidates.append(MoveAction(
                direction=direction,
                cautious=True,
                destination=destination,
                destination_explored=destination in snapshot.exploration.visited_rooms,
            ))

    return candidates


def _exploration_candidates(
    snapshot: CharacterSnapshot,
    view: GameStateView,
    situation: Situation,
    weights: DecisionWeights
) -> List[CandidateAction]:
    candidates: List[CandidateAction] = []
    memory = snapshot.exploration

    for direction, destination in legal_exits(snapshot, view):
        candidates.append(MoveAction(
            direction=direction,
            cautious=weights.caution > 0.5,
            destination=destination,
            destination_explored=destination is not None and destination in memory.visited_rooms,
        ))

    suggests_search = view.exploration is not None and view.exploration.suggests_search
    if not situation.room_searched or weights.thoroughness >= HIGH_THOROUGHNESS or suggests_search:
        candidates.append(SearchAction(
            area="current_room", kind="general", thorough=weights.thoroughness > 0.6
        ))
        if weights.secret_finding > 0.4:
            candidates.append(SearchAction(
                area="current_room", kind="secrets", thorough=weights.thoroughness > 0.5
            ))
        if weights.trap_awareness > 0.5:
            candidates.append(SearchAction(
                area="ahead", kind="traps", thorough=weights.caution > 0.6
            ))

    if view.exploration is not None:
        for obj in view.exploration.interactable_objects:
            candidates.append(InvestigateAction(
                target_object=obj.id,
                approach="careful" if weights.caution > 0.6 else "normal",
                interesting=obj.interesting or obj.magical or obj.unique,
                dangerous=obj.dangerous,
                advances_objective=obj.quest_related or (
                    memory.current_objective is not None and obj.id == memory.current_objective
                ),
            ))

    if (
        situation.health_percentage < REST_HEALTH_RATIO
        and situation.can_rest
        and not situation.recently_rested
    ):
        candidates.append(RestAction(
            duration="long" if situation.health_percentage < LONG_REST_HEALTH_RATIO else "short",
            keep_watch=weights.caution > 0.4,
        ))

    for item in snapshot.inventory:
        if is_exploration_item(item):
            candidates.append(_use_item(item, "exploration"))

    return candidates


def filter_available(
    candidates: Iterable[CandidateAction],
    available_actions: Optional[Iterable[Any]],
    fallback: CandidateAction
) -> List[CandidateAction]:
    """Keep candidates whose type tag is offered; the fallback always stays.

    Offered actions may be type tags, bare names ("attack") or objects with
    a "type" key.
    """
    candidates = list(candidates)
    allowed = {tag for tag in map(normalize_action_tag, available_actions or ()) if tag}
    if allowed:
        candidates = [c for c in candidates if c.type in allowed or c == fallback]
    if fallback not in candidates:
        candidates.append(fallback)
    return candidates


def generate_candidates(
    snapshot: CharacterSnapshot,
    view: GameStateView,
    available_actions: Optional[Iterable[str]] = None,
    mode: DecisionMode = DecisionMode.EXPLORATION,
    weights: Optional[DecisionWeights] = None,
    situation: Optional[Situation] = None
) -> List[CandidateAction]:
    """Produce the candidate actions for one decision cycle.

    Args:
        snapshot: Character state at the start of the cycle
        view: Parsed game-state view
        available_actions: Type tags offered by the orchestrator (empty means all)
        mode: Combat or exploration
        weights: Effective weights (defaults to the snapshot's)
        situation: Precomputed situation (computed if omitted)

    Returns:
        Non-empty list of candidates in generation order
    """
    weights = weights or snapshot.weights
    situation = situation or analyze_situation(snapshot, view, mode)
    fallback = fallback_action(mode)

    if not snapshot.can_act():
        return [fallback]

    if mode == DecisionMode.COMBAT:
        candidates = _combat_candidates(snapshot, view, situation, weights)
    else:
        candidates = _exploration_candidates(snapshot, view, situation, weights)

    return filter_available(candidates, available_actions, fallback)
