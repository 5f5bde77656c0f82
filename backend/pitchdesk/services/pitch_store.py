"""Pitch Store Adapter: typed access to transfer pitches.

Stage changes go through ``advance_deal_stage`` / ``regress_deal_stage``,
which are conditional on the stage the caller last read. A lost race comes
back as ``StageUpdate.CONFLICT`` instead of an exception so the caller can
re-read and decide.

Counters are bookkeeping only: failures to bump them are logged and never
block or fail a workflow transition.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pitchdesk.core.errors import (
    Conflict, InvalidTransition, NotFound, PitchClosed, PitchUnavailable, WorkflowError,
)
from pitchdesk.models.schemas import (
    Caller, DealStage, Pitch, PitchCreate, PitchFilters, PitchStatus, utcnow,
)
from pitchdesk.services.profiles import ProfileDirectory
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

# Stages an expired pitch may still be sitting in; once a contract is being
# negotiated the contract decides the pitch's fate, not the clock.
_EXPIRABLE_STAGES = (DealStage.PITCH, DealStage.INTEREST, DealStage.DISCUSSION)


class StageUpdate(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


class PitchStore:
    def __init__(self, store: WorkflowStore, profiles: ProfileDirectory):
        self.store = store
        self.profiles = profiles

    # --- Reads ---

    async def get_pitch(self, pitch_id: str) -> Optional[Pitch]:
        """Fetch a pitch, materialising the derived ``expired`` status if its expiry has passed."""
        pitch = await self.store.get_pitch(pitch_id)
        if pitch is None:
            return None
        if pitch.status == PitchStatus.ACTIVE and pitch.is_past_expiry():
            if await self._expire(pitch):
                return await self.store.get_pitch(pitch_id)
        return pitch

    async def require_pitch(self, pitch_id: str) -> Pitch:
        pitch = await self.get_pitch(pitch_id)
        if pitch is None:
            raise NotFound("Pitch not found", pitch_id=pitch_id)
        return pitch

    async def require_open_pitch(self, pitch_id: str) -> Pitch:
        """A pitch that still accepts interest and contract writes."""
        pitch = await self.require_pitch(pitch_id)
        ensure_not_closed(pitch)
        if pitch.status != PitchStatus.ACTIVE:
            raise PitchUnavailable(
                f"Pitch is {pitch.status.value}",
                pitch_id=pitch_id,
                status=pitch.status.value,
            )
        return pitch

    async def get_active_pitches(self, filters: Optional[PitchFilters] = None) -> list[Pitch]:
        filters = filters or PitchFilters()
        pitches = await self.store.list_pitches(filters)
        if filters.include_inactive:
            return pitches
        now = utcnow()
        return [p for p in pitches if not p.is_past_expiry(now)]

    # --- Writes ---

    async def create_pitch(self, caller: Caller, data: PitchCreate) -> Pitch:
        team = await self.profiles.require_team(caller)
        pitch = Pitch(team_id=team.id, **data.model_dump())
        pitch = await self.store.insert_pitch(pitch)
        logger.info(f"Pitch created: {pitch.id} for player {pitch.player_id} by team {team.id}")
        return pitch

    async def withdraw_pitch(self, caller: Caller, pitch_id: str) -> Pitch:
        pitch = await self.require_pitch(pitch_id)
        await self.profiles.require_pitch_owner(caller, pitch)
        ensure_not_closed(pitch)
        if pitch.status == PitchStatus.WITHDRAWN:
            return pitch
        if pitch.status != PitchStatus.ACTIVE:
            raise PitchUnavailable(f"Pitch is {pitch.status.value}", pitch_id=pitch_id, status=pitch.status.value)
        contract = await self.store.get_active_contract(pitch_id)
        if contract is not None:
            raise InvalidTransition(
                "pitch", pitch.deal_stage.value, "withdraw",
                message="Cancel the active contract before withdrawing the pitch",
                pitch_id=pitch_id,
                contract_id=contract.id,
            )
        if not await self.store.update_pitch_if(
            pitch_id, {"status": PitchStatus.ACTIVE}, {"status": PitchStatus.WITHDRAWN}
        ):
            raise Conflict("Pitch changed while withdrawing", pitch_id=pitch_id)
        logger.info(f"Pitch {pitch_id} withdrawn by team {pitch.team_id}")
        return await self.require_pitch(pitch_id)

    async def advance_deal_stage(self, pitch_id: str, from_stage: DealStage, to_stage: DealStage) -> StageUpdate:
        """Move the stage forward only if it is still ``from_stage``."""
        return await self._swap_stage(pitch_id, from_stage, to_stage)

    async def regress_deal_stage(self, pitch_id: str, from_stage: DealStage, to_stage: DealStage) -> StageUpdate:
        """Explicit withdrawal/cancellation path; same conditional semantics as advancing."""
        return await self._swap_stage(pitch_id, from_stage, to_stage)

    async def close_pitch(self, pitch_id: str) -> StageUpdate:
        """Terminal completion: stage and status both become ``completed``."""
        pitch = await self.require_pitch(pitch_id)
        if pitch.status == PitchStatus.COMPLETED:
            return StageUpdate.SUCCESS
        ok = await self.store.update_pitch_if(
            pitch_id,
            {"deal_stage": pitch.deal_stage, "status": pitch.status},
            {"deal_stage": DealStage.COMPLETED, "status": PitchStatus.COMPLETED},
        )
        return StageUpdate.SUCCESS if ok else StageUpdate.CONFLICT

    async def update_counters(self, pitch_id: str, deltas: dict[str, int]) -> bool:
        try:
            await self.store.increment_pitch_counters(pitch_id, deltas)
            return True
        except WorkflowError as e:
            logger.warning(f"Counter update {deltas} on pitch {pitch_id} skipped: {e.message}")
            return False

    async def record_view(self, pitch_id: str) -> None:
        await self.require_pitch(pitch_id)
        await self.update_counters(pitch_id, {"view_count": 1})

    async def expire_stale_pitches(self, now: Optional[datetime] = None) -> int:
        """Materialise ``expired`` for every active pitch past its expiry. Returns how many flipped."""
        now = now or utcnow()
        filters = PitchFilters(deal_stages=list(_EXPIRABLE_STAGES), limit=10_000)
        expired = 0
        for pitch in await self.store.list_pitches(filters):
            if pitch.is_past_expiry(now) and await self._expire(pitch):
                expired += 1
        if expired:
            logger.info(f"Expired {expired} stale pitches")
        return expired

    # --- Internals ---

    async def _swap_stage(self, pitch_id: str, from_stage: DealStage, to_stage: DealStage) -> StageUpdate:
        ok = await self.store.update_pitch_if(pitch_id, {"deal_stage": from_stage}, {"deal_stage": to_stage})
        if ok:
            logger.info(f"Pitch {pitch_id} deal_stage {from_stage.value} → {to_stage.value}")
            return StageUpdate.SUCCESS
        logger.warning(f"Pitch {pitch_id} stage change {from_stage.value} → {to_stage.value} lost a race")
        return StageUpdate.CONFLICT

    async def _expire(self, pitch: Pitch) -> bool:
        if pitch.deal_stage not in _EXPIRABLE_STAGES:
            return False
        ok = await self.store.update_pitch_if(
            pitch.id,
            {"status": PitchStatus.ACTIVE, "deal_stage": pitch.deal_stage},
            {"status": PitchStatus.EXPIRED, "deal_stage": DealStage.EXPIRED},
        )
        if ok:
            logger.info(f"Pitch {pitch.id} expired (expires_at={pitch.expires_at})")
        return ok


def ensure_not_closed(pitch: Pitch) -> None:
    if pitch.status == PitchStatus.COMPLETED or pitch.deal_stage == DealStage.COMPLETED:
        raise PitchClosed(
            "Transfer for this pitch is completed; no further changes are allowed",
            pitch_id=pitch.id,
        )
