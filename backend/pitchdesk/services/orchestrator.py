"""Negotiation Orchestrator.

Owns the pitch's ``deal_stage``. It reacts to interest and contract events
and is the only component that moves the stage:

* forward, monotonically, to the stage an event implies
  (interest -> discussion -> contract_negotiation -> completed);
* backward only on an explicit withdrawal, rejection or contract
  cancellation, and then only to the stage the remaining active interests
  still justify.

Interest-driven advances are best effort: a lost race is re-read and, if
someone else already moved the stage at least as far, treated as done.
Contract-driven advances are authoritative and retried once.
"""
import logging
from typing import Optional

from pitchdesk.core.errors import Conflict
from pitchdesk.core.events import (
    ContractAdvanced, ContractCompleted, ContractCreated, EventBus, InterestCreated,
    InterestEvent, InterestReactivated, InterestRejected, InterestUpdated, InterestWithdrawn,
)
from pitchdesk.models.schemas import (
    ACTIVE_INTEREST_STATUSES, ContractStatus, DEAL_STAGE_RANK, DealStage, INTEREST_STAGE,
    TERMINAL_DEAL_STAGES,
)
from pitchdesk.services.pitch_store import PitchStore, StageUpdate
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

# Stages an interest change is allowed to pull the pitch back from
_REGRESSIBLE = (DealStage.INTEREST, DealStage.DISCUSSION, DealStage.CONTRACT_NEGOTIATION)


def stage_rank(stage: DealStage) -> int:
    return DEAL_STAGE_RANK.get(stage, -1)


class NegotiationOrchestrator:
    def __init__(self, store: WorkflowStore, pitches: PitchStore):
        self.store = store
        self.pitches = pitches

    def register(self, bus: EventBus) -> None:
        bus.subscribe(InterestCreated, self.on_interest_changed)
        bus.subscribe(InterestReactivated, self.on_interest_changed)
        bus.subscribe(InterestUpdated, self.on_interest_changed)
        bus.subscribe(InterestWithdrawn, self.on_interest_ended)
        bus.subscribe(InterestRejected, self.on_interest_ended)
        bus.subscribe(ContractCreated, self.on_contract_created)
        bus.subscribe(ContractAdvanced, self.on_contract_advanced)
        bus.subscribe(ContractCompleted, self.on_contract_completed)

    # --- Event handlers ---

    async def on_interest_changed(self, event: InterestEvent) -> None:
        target = INTEREST_STAGE.get(event.interest.status)
        if target is not None:
            await self.advance_to(event.pitch_id, target)

    async def on_interest_ended(self, event: InterestEvent) -> None:
        await self.recompute_after_exit(event.pitch_id)

    async def on_contract_created(self, event: ContractCreated) -> None:
        await self.advance_to(event.pitch_id, DealStage.CONTRACT_NEGOTIATION, authoritative=True)

    async def on_contract_advanced(self, event: ContractAdvanced) -> None:
        if event.contract.status == ContractStatus.CANCELLED:
            await self.recompute_after_exit(event.pitch_id, from_contract=True)

    async def on_contract_completed(self, event: ContractCompleted) -> None:
        for attempt in (1, 2):
            if await self.pitches.close_pitch(event.pitch_id) == StageUpdate.SUCCESS:
                logger.info(f"Pitch {event.pitch_id} completed via contract {event.contract.id}")
                return
            logger.warning(f"Closing pitch {event.pitch_id} lost a race (attempt {attempt}/2)")
        raise Conflict("Could not mark pitch completed", pitch_id=event.pitch_id, contract_id=event.contract.id)

    # --- Stage movement ---

    async def advance_to(self, pitch_id: str, target: DealStage, authoritative: bool = False) -> DealStage:
        """
        Move the pitch forward to ``target`` unless it is already there or beyond.

        Returns the stage the pitch ends up in. Raises Conflict only for an
        authoritative advance that lost the race twice.
        """
        attempts = 2 if authoritative else 1
        for _ in range(attempts):
            pitch = await self.pitches.require_pitch(pitch_id)
            current = pitch.deal_stage
            if current in TERMINAL_DEAL_STAGES or stage_rank(current) >= stage_rank(target):
                return current
            if await self.pitches.advance_deal_stage(pitch_id, current, target) == StageUpdate.SUCCESS:
                return target

        pitch = await self.pitches.require_pitch(pitch_id)
        if stage_rank(pitch.deal_stage) >= stage_rank(target):
            return pitch.deal_stage
        if authoritative:
            raise Conflict(
                f"Could not advance pitch to {target.value}",
                pitch_id=pitch_id,
                current_state=pitch.deal_stage.value,
            )
        logger.info(f"Pitch {pitch_id} left at {pitch.deal_stage.value} after concurrent change")
        return pitch.deal_stage

    async def recompute_after_exit(self, pitch_id: str, from_contract: bool = False) -> Optional[DealStage]:
        """
        Lower the stage after an interest left (or a contract was cancelled)
        to what the remaining active interests justify.

        Never touches a pitch that still has an active contract, and never
        lowers below ``pitch``.
        """
        if await self.store.get_active_contract(pitch_id) is not None:
            return None
        pitch = await self.pitches.require_pitch(pitch_id)
        current = pitch.deal_stage
        if current not in _REGRESSIBLE:
            return current
        if current == DealStage.CONTRACT_NEGOTIATION and not from_contract:
            return current

        remaining = await self.store.list_interests(pitch_id=pitch_id, statuses=ACTIVE_INTEREST_STATUSES)
        target = DealStage.PITCH
        for interest in remaining:
            stage = INTEREST_STAGE[interest.status]
            if stage_rank(stage) > stage_rank(target):
                target = stage

        if stage_rank(target) >= stage_rank(current):
            return current
        if await self.pitches.regress_deal_stage(pitch_id, current, target) == StageUpdate.CONFLICT:
            # Someone else moved it; their change wins
            return None
        return target
