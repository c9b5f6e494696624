"""
Map Veto Sequencer.

Walks two teams through the canonical ban / pick / side-pick order of a
match format and produces the final ordered map list with sides.

- ``VetoSequencer`` is pure: every call returns a new ``VetoState``.
- ``VetoService`` persists actions under a per-match lock and hands the
  match to the lifecycle once the veto completes.
"""

import random
from dataclasses import replace
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import (
    InvalidVetoActionError,
    MatchNotFoundError,
    StateConflictError,
    ValidationError,
)
from .distributed_lock import LockManager, LockType
from .event_bus import OrchestratorEventBus
from .models import (
    MatchFormat,
    MatchStatus,
    OrchestratorEventType,
    PickedMap,
    Side,
    TeamSlot,
    VetoAction,
    VetoActionKind,
    VetoState,
    VetoStatus,
    VetoStep,
    utcnow,
)
from .repository import TournamentRepository

if TYPE_CHECKING:
    from .lifecycle import MatchStateMachine

logger = get_logger(__name__)

T1, T2 = TeamSlot.TEAM1, TeamSlot.TEAM2
BAN, PICK, SIDE = VetoActionKind.BAN, VetoActionKind.PICK, VetoActionKind.SIDE_PICK

BO1_VETO_ORDER: Tuple[VetoStep, ...] = (
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
    VetoStep(T1, SIDE),
)

BO3_VETO_ORDER: Tuple[VetoStep, ...] = (
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
    VetoStep(T1, PICK),
    VetoStep(T2, SIDE),
    VetoStep(T2, PICK),
    VetoStep(T1, SIDE),
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
)

BO5_VETO_ORDER: Tuple[VetoStep, ...] = (
    VetoStep(T1, BAN),
    VetoStep(T2, BAN),
    VetoStep(T1, PICK),
    VetoStep(T2, SIDE),
    VetoStep(T2, PICK),
    VetoStep(T1, SIDE),
    VetoStep(T1, PICK),
    VetoStep(T2, SIDE),
    VetoStep(T2, PICK),
    VetoStep(T1, SIDE),
)

DEFAULT_VETO_ORDERS: Dict[MatchFormat, Tuple[VetoStep, ...]] = {
    MatchFormat.BO1: BO1_VETO_ORDER,
    MatchFormat.BO3: BO3_VETO_ORDER,
    MatchFormat.BO5: BO5_VETO_ORDER,
}


def get_veto_order(
    match_format: MatchFormat,
    custom_orders: Optional[Dict[str, Tuple[VetoStep, ...]]] = None,
) -> Tuple[VetoStep, ...]:
    """Canonical steps for a format, preferring a tournament override."""
    if custom_orders:
        custom = custom_orders.get(match_format.value)
        if custom:
            return tuple(custom)
    return DEFAULT_VETO_ORDERS[match_format]


def required_pool_size(match_format: MatchFormat, steps: Sequence[VetoStep]) -> int:
    """Maps consumed by the order: bans + picks, plus one decider when picks fall short."""
    bans = sum(1 for s in steps if s.action is BAN)
    picks = sum(1 for s in steps if s.action is PICK)
    decider = 1 if picks < match_format.num_maps else 0
    return bans + picks + decider


class VetoSequencer:
    """Pure veto state machine."""

    def start(
        self,
        match_format: MatchFormat,
        map_pool: Sequence[str],
        team1_id: Optional[str] = None,
        team2_id: Optional[str] = None,
        custom_orders: Optional[Dict[str, Tuple[VetoStep, ...]]] = None,
    ) -> VetoState:
        """Build an in-progress veto for a pool that exactly fits the order."""
        steps = get_veto_order(match_format, custom_orders)
        pool = tuple(map_pool)

        if len(set(pool)) != len(pool):
            raise ValidationError("Map pool contains duplicates", {"maps": list(pool)})

        needed = required_pool_size(match_format, steps)
        if len(pool) != needed:
            raise ValidationError(
                f"Veto for {match_format.value} needs exactly {needed} maps, got {len(pool)}",
                {"format": match_format.value, "required": needed, "provided": len(pool)},
            )

        return VetoState(
            format=match_format,
            steps=steps,
            map_pool=pool,
            available_maps=pool,
            team1_id=team1_id,
            team2_id=team2_id,
        )

    def apply(
        self,
        state: VetoState,
        team: TeamSlot,
        action: VetoActionKind,
        map_name: Optional[str] = None,
        side: Optional[Side] = None,
    ) -> VetoState:
        """
        Apply one action and return the new state.

        Raises:
            InvalidVetoActionError: wrong actor, wrong kind, bad map/side,
                or the veto is already complete. ``state`` is never touched.
        """
        step = state.next_step
        if state.is_complete or step is None:
            raise InvalidVetoActionError("Veto is already completed")

        details = {
            "step": state.current_step,
            "expectedTeam": step.team.value,
            "expectedAction": step.action.value,
        }
        if team is not step.team:
            raise InvalidVetoActionError(f"Not {team.value}'s turn", details)
        if action is not step.action:
            raise InvalidVetoActionError(
                f"Expected {step.action.value}, got {action.value}", details
            )

        available = list(state.available_maps)
        banned = list(state.banned_maps)
        picked = list(state.picked_maps)

        if action in (BAN, PICK):
            if not map_name or map_name not in available:
                raise InvalidVetoActionError(
                    f"Map not available: {map_name}",
                    {**details, "availableMaps": available},
                )
            available.remove(map_name)
            if action is BAN:
                banned.append(map_name)
            else:
                picked.append(
                    PickedMap(
                        map_number=len(picked) + 1,
                        map_name=map_name,
                        picked_by=team.value,
                    )
                )
            recorded = VetoAction(
                step=state.current_step, team=team, action=action, map_name=map_name
            )
        else:
            if side is None:
                raise InvalidVetoActionError("Side pick requires a side (CT or T)", details)

            target = self._side_pick_target(picked, available)
            if target is None:
                raise InvalidVetoActionError("No map awaiting a side choice", details)
            if target == len(picked):
                # Single-map formats: the last remaining map becomes the decider
                picked.append(
                    PickedMap(
                        map_number=len(picked) + 1,
                        map_name=available.pop(),
                        picked_by="decider",
                    )
                )
            picked[target] = picked[target].with_side(team, side)
            recorded = VetoAction(
                step=state.current_step,
                team=team,
                action=action,
                map_name=picked[target].map_name,
                side=side,
            )

        new_state = replace(
            state,
            actions=state.actions + (recorded,),
            available_maps=tuple(available),
            banned_maps=tuple(banned),
            picked_maps=tuple(picked),
        )

        if len(new_state.actions) == new_state.total_steps:
            new_state = self._complete(new_state)
        return new_state

    def _side_pick_target(self, picked: List[PickedMap], available: List[str]) -> Optional[int]:
        """Index of the map receiving sides; len(picked) means "append the decider"."""
        for index in range(len(picked) - 1, -1, -1):
            if not picked[index].has_sides:
                return index
        if len(available) == 1:
            return len(picked)
        return None

    def _complete(self, state: VetoState) -> VetoState:
        picked = list(state.picked_maps)
        available = list(state.available_maps)

        # Remaining map becomes a knife-round decider
        if len(picked) < state.format.num_maps and len(available) == 1:
            picked.append(
                PickedMap(
                    map_number=len(picked) + 1,
                    map_name=available.pop(),
                    picked_by="decider",
                    knife_round=True,
                )
            )

        return replace(
            state,
            picked_maps=tuple(picked),
            available_maps=tuple(available),
            status=VetoStatus.COMPLETED,
            completed_at=utcnow(),
        )

    def random_action(
        self, state: VetoState, rng: random.Random
    ) -> Tuple[VetoActionKind, Optional[str], Optional[Side]]:
        """A random legal action for the next step."""
        step = state.next_step
        if step is None:
            raise InvalidVetoActionError("Veto is already completed")
        if step.action is SIDE:
            return step.action, None, rng.choice([Side.CT, Side.T])
        return step.action, rng.choice(sorted(state.available_maps)), None


class VetoService:
    """Persisted veto actions for matches."""

    def __init__(
        self,
        repository: TournamentRepository,
        locks: LockManager,
        event_bus: OrchestratorEventBus,
        lifecycle: "MatchStateMachine",
        sequencer: Optional[VetoSequencer] = None,
    ):
        self.repository = repository
        self.locks = locks
        self.event_bus = event_bus
        self.lifecycle = lifecycle
        self.sequencer = sequencer or VetoSequencer()

    async def get_state(self, slug: str) -> VetoState:
        match = await self.repository.get_match(slug)
        if match is None:
            raise MatchNotFoundError(slug)
        if match.veto_state is None:
            raise StateConflictError(slug, match.status.value, ["pending (veto open)"])
        return match.veto_state

    async def submit_action(
        self,
        slug: str,
        team: TeamSlot,
        action: VetoActionKind,
        map_name: Optional[str] = None,
        side: Optional[Side] = None,
    ) -> VetoState:
        """Apply and persist one action. Completion moves the match to ready."""
        match = await self.repository.get_match(slug)
        if match is None:
            raise MatchNotFoundError(slug)

        async with self.locks.lock(match.tournament_id, LockType.MATCH, slug):
            match = await self.repository.get_match(slug)
            if match is None:
                raise MatchNotFoundError(slug)
            if match.status != MatchStatus.PENDING or match.veto_state is None:
                raise StateConflictError(slug, match.status.value, ["pending"])

            new_state = self.sequencer.apply(match.veto_state, team, action, map_name, side)

            updated = await self.repository.compare_and_update(
                slug, [MatchStatus.PENDING], veto_state=new_state
            )
            if updated is None:
                raise StateConflictError(slug, "changed", ["pending"])

            last = new_state.actions[-1]
            await self.repository.record_event(slug, "veto_action", last.to_dict())
            logger.info(
                "veto_action",
                match_slug=slug,
                team=team.value,
                action=action.value,
                map_name=last.map_name,
                side=side.value if side else None,
                step=last.step,
            )

        await self.event_bus.emit(
            OrchestratorEventType.VETO_ACTION,
            match.tournament_id,
            match_slug=slug,
            **last.to_dict(),
        )

        if new_state.is_complete:
            await self.event_bus.emit(
                OrchestratorEventType.VETO_COMPLETED,
                match.tournament_id,
                match_slug=slug,
                maps=[m.map_name for m in new_state.picked_maps],
            )
            await self.lifecycle.mark_ready(slug)

        return new_state

    async def simulate(self, slug: str, rng: Optional[random.Random] = None) -> VetoState:
        """Finish a veto with random legal choices (development aid)."""
        rng = rng or random.Random()
        state = await self.get_state(slug)
        while not state.is_complete:
            step = state.next_step
            action, map_name, side = self.sequencer.random_action(state, rng)
            state = await self.submit_action(slug, step.team, action, map_name, side)
        return state

