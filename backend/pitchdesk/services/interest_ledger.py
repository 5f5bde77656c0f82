"""Interest Ledger.

One ``AgentInterest`` row per (pitch, agent), ever. Re-expressing interest
updates the row, expressing it again after a withdrawal or rejection
reactivates it, and cancelling only flips the status. Every state change
appends a line to the row's audit log.

State mutations are retried once on Conflict/UpstreamUnavailable; events
are published after the mutation has committed, outside the retry, so a
retry never double-publishes.
"""
import logging
from typing import Optional

from pitchdesk.core.errors import Conflict, InvalidTransition, NotFound
from pitchdesk.core.events import (
    EventBus, InterestCreated, InterestEvent, InterestReactivated, InterestRejected,
    InterestUpdated, InterestWithdrawn,
)
from pitchdesk.core.retry import retry_once
from pitchdesk.models.schemas import (
    ACTIVE_INTEREST_STATUSES, AgentInterest, Caller, InterestStatus, ShortlistEntry, utcnow,
)
from pitchdesk.services.pitch_store import PitchStore, ensure_not_closed
from pitchdesk.services.profiles import ProfileDirectory
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

# Only the pitching team opens a negotiation
AGENT_SETTABLE_STATUSES = {InterestStatus.INTERESTED, InterestStatus.REQUESTED}


def audit_line(text: str) -> str:
    return f"{utcnow().isoformat()} {text}"


class InterestLedger:
    def __init__(self, store: WorkflowStore, pitches: PitchStore, profiles: ProfileDirectory, bus: EventBus):
        self.store = store
        self.pitches = pitches
        self.profiles = profiles
        self.bus = bus

    # ------------------------------------------------------------------
    # Agent-side operations
    # ------------------------------------------------------------------

    async def express_interest(
        self,
        pitch_id: str,
        agent_id: str,
        status: InterestStatus = InterestStatus.INTERESTED,
        message: Optional[str] = None,
    ) -> AgentInterest:
        """Create, update or reactivate the agent's interest in a pitch."""
        if status not in AGENT_SETTABLE_STATUSES:
            raise InvalidTransition(
                "interest", "-", f"set status {status.value}",
                message="Agents may only register interest as 'interested' or 'requested'",
                pitch_id=pitch_id,
                agent_id=agent_id,
            )

        async def record() -> InterestEvent:
            await self.pitches.require_open_pitch(pitch_id)
            await self.profiles.require_agent(agent_id)

            existing = await self.store.get_interest(pitch_id, agent_id)
            if existing is None:
                interest = await self.store.insert_interest(
                    AgentInterest(
                        pitch_id=pitch_id,
                        agent_id=agent_id,
                        status=status,
                        message=message,
                        audit_log=[audit_line(f"expressed interest ({status.value})")],
                    )
                )
                return InterestCreated(pitch_id=pitch_id, interest=interest)

            values = {"status": status, "message": message if message is not None else existing.message}
            if existing.is_active:
                entry = audit_line(f"updated {existing.status.value} -> {status.value}")
                event_type = InterestUpdated
            else:
                entry = audit_line(f"reactivated {existing.status.value} -> {status.value}")
                event_type = InterestReactivated

            updated = await self.store.update_interest_if(existing.id, existing.status, values, audit_entry=entry)
            if updated is None:
                raise Conflict("Interest changed concurrently", pitch_id=pitch_id, agent_id=agent_id)
            return event_type(pitch_id=pitch_id, interest=updated, previous_status=existing.status)

        event = await retry_once(record, "express_interest")
        if not isinstance(event, InterestUpdated):
            await self.pitches.update_counters(pitch_id, {"interest_count": 1})
        logger.info(
            f"Interest {type(event).__name__} on pitch {pitch_id} by agent {agent_id} "
            f"({event.interest.status.value})"
        )
        await self.bus.publish(event)
        return event.interest

    async def cancel_interest(self, pitch_id: str, agent_id: str) -> AgentInterest:
        """Withdraw interest. Idempotent: cancelling twice changes nothing the second time."""

        async def record() -> tuple[AgentInterest, Optional[InterestStatus]]:
            pitch = await self.pitches.require_pitch(pitch_id)
            ensure_not_closed(pitch)
            interest = await self.store.get_interest(pitch_id, agent_id)
            if interest is None:
                raise NotFound("No interest recorded for this agent and pitch", pitch_id=pitch_id, agent_id=agent_id)
            if not interest.is_active:
                return interest, None
            updated = await self.store.update_interest_if(
                interest.id,
                None,
                {"status": InterestStatus.WITHDRAWN},
                audit_entry=audit_line(f"withdrawn (was {interest.status.value})"),
            )
            return updated, interest.status

        interest, previous = await retry_once(record, "cancel_interest")
        if previous is None:
            logger.debug(f"Interest on pitch {pitch_id} by agent {agent_id} already {interest.status.value}")
            return interest

        await self.pitches.update_counters(pitch_id, {"interest_count": -1})
        logger.info(f"Interest withdrawn on pitch {pitch_id} by agent {agent_id}")
        await self.bus.publish(InterestWithdrawn(pitch_id=pitch_id, interest=interest, previous_status=previous))
        return interest

    # ------------------------------------------------------------------
    # Team-side operations
    # ------------------------------------------------------------------

    async def start_negotiation(self, caller: Caller, pitch_id: str, agent_id: str) -> AgentInterest:
        """The pitching team moves an agent's interest into negotiation."""
        pitch = await self.pitches.require_open_pitch(pitch_id)
        await self.profiles.require_pitch_owner(caller, pitch)

        interest = await self._require_interest(pitch_id, agent_id)
        if interest.status == InterestStatus.NEGOTIATING:
            return interest
        if not interest.is_active:
            raise InvalidTransition("interest", interest.status.value, "start negotiation on", pitch_id=pitch_id)
        return await self.mark_negotiating(interest, f"negotiation opened by team {pitch.team_id}")

    async def mark_negotiating(self, interest: AgentInterest, reason: str) -> AgentInterest:
        """Conditionally move an active interest to ``negotiating`` and publish the update."""
        updated = await self.store.update_interest_if(
            interest.id,
            interest.status,
            {"status": InterestStatus.NEGOTIATING},
            audit_entry=audit_line(f"{interest.status.value} -> negotiating: {reason}"),
        )
        if updated is None:
            raise Conflict(
                "Interest changed concurrently",
                pitch_id=interest.pitch_id,
                agent_id=interest.agent_id,
            )
        logger.info(f"Interest {interest.id} on pitch {interest.pitch_id} now negotiating")
        await self.bus.publish(
            InterestUpdated(pitch_id=interest.pitch_id, interest=updated, previous_status=interest.status)
        )
        return updated

    async def reject_interest(self, caller: Caller, pitch_id: str, agent_id: str) -> AgentInterest:
        """The pitching team declines an agent's interest. Idempotent."""
        pitch = await self.pitches.require_pitch(pitch_id)
        ensure_not_closed(pitch)
        await self.profiles.require_pitch_owner(caller, pitch)

        interest = await self._require_interest(pitch_id, agent_id)
        if interest.status == InterestStatus.REJECTED:
            return interest
        if interest.status == InterestStatus.WITHDRAWN:
            raise InvalidTransition("interest", interest.status.value, "reject", pitch_id=pitch_id)

        contract = await self.store.get_active_contract(pitch_id)
        if contract is not None and contract.agent_id == agent_id:
            raise InvalidTransition(
                "interest", interest.status.value, "reject",
                message="Cancel the active contract with this agent first",
                pitch_id=pitch_id,
                contract_id=contract.id,
            )

        updated = await self.store.update_interest_if(
            interest.id,
            interest.status,
            {"status": InterestStatus.REJECTED},
            audit_entry=audit_line(f"rejected by team (was {interest.status.value})"),
        )
        if updated is None:
            raise Conflict("Interest changed concurrently", pitch_id=pitch_id, agent_id=agent_id)

        await self.pitches.update_counters(pitch_id, {"interest_count": -1})
        logger.info(f"Interest on pitch {pitch_id} by agent {agent_id} rejected")
        await self.bus.publish(InterestRejected(pitch_id=pitch_id, interest=updated, previous_status=interest.status))
        return updated

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    async def list_interest_for_pitch(
        self, pitch_id: str, include_inactive: bool = False, caller: Optional[Caller] = None
    ) -> list[AgentInterest]:
        if caller is not None:
            pitch = await self.pitches.require_pitch(pitch_id)
            await self.profiles.require_pitch_owner(caller, pitch)
        statuses = None if include_inactive else ACTIVE_INTEREST_STATUSES
        return await self.store.list_interests(pitch_id=pitch_id, statuses=statuses)

    async def list_interest_for_agent(self, agent_id: str, include_inactive: bool = False) -> list[AgentInterest]:
        statuses = None if include_inactive else ACTIVE_INTEREST_STATUSES
        return await self.store.list_interests(agent_id=agent_id, statuses=statuses)

    # ------------------------------------------------------------------
    # Shortlist
    # ------------------------------------------------------------------

    async def add_to_shortlist(self, pitch_id: str, agent_id: str, notes: Optional[str] = None) -> bool:
        """Returns False if the pitch was already on the agent's shortlist."""
        await self.pitches.require_pitch(pitch_id)
        entry = await self.store.insert_shortlist(ShortlistEntry(pitch_id=pitch_id, agent_id=agent_id, notes=notes))
        if entry is None:
            return False
        await self.pitches.update_counters(pitch_id, {"shortlist_count": 1})
        return True

    async def remove_from_shortlist(self, pitch_id: str, agent_id: str) -> bool:
        removed = await self.store.delete_shortlist(pitch_id, agent_id)
        if removed:
            await self.pitches.update_counters(pitch_id, {"shortlist_count": -1})
        return removed

    async def list_shortlist(self, agent_id: str) -> list[ShortlistEntry]:
        return await self.store.list_shortlist(agent_id)

    async def _require_interest(self, pitch_id: str, agent_id: str) -> AgentInterest:
        interest = await self.store.get_interest(pitch_id, agent_id)
        if interest is None:
            raise NotFound("No interest recorded for this agent and pitch", pitch_id=pitch_id, agent_id=agent_id)
        return interest
