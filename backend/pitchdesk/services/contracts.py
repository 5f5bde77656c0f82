"""Contract Lifecycle Manager.

At most one non-terminal contract exists per pitch; the store's insert is the
atomic guard. Status changes follow ``TRANSITIONS`` and are applied with a
conditional update on the status the caller read, so two concurrent actions
cannot both win.

Happy path::

    draft -> sent_to_agent -> agent_reviewed -> team_reviewed -> signed -> completed

From ``team_reviewed`` both parties sign: the team by approving the final
terms, the agent with ``sign``. The first signature parks the contract in
``partially_signed``; it only becomes ``signed`` once both are on record.
Review states can bounce to ``revision_requested`` or ``rejected``, both of
which return to ``draft`` on ``revise``. ``cancel`` ends any non-terminal
contract and frees the pitch for a new one.
"""
import logging
from typing import Optional

from pitchdesk.core.errors import (
    Conflict, DuplicateContract, Forbidden, InvalidTransition, NotFound,
)
from pitchdesk.core.events import ContractAdvanced, ContractCompleted, ContractCreated, EventBus
from pitchdesk.core.retry import retry_once
from pitchdesk.models.schemas import (
    Caller, Contract, ContractAction, ContractStatus, ContractTerms, ContractWorkflowStep,
    DealStage, InterestStatus, Message, MessageType, TERMINAL_CONTRACT_STATUSES, UserType, utcnow,
)
from pitchdesk.services.dispatcher import MessageDispatcher
from pitchdesk.services.interest_ledger import InterestLedger
from pitchdesk.services.pitch_store import PitchStore, ensure_not_closed
from pitchdesk.services.profiles import ProfileDirectory
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

_REVIEW_STATES = (ContractStatus.SENT_TO_AGENT, ContractStatus.AGENT_REVIEWED, ContractStatus.TEAM_REVIEWED)

# (current status, action) -> next status. CANCEL is handled separately since
# it applies to every non-terminal status.
TRANSITIONS: dict[tuple[ContractStatus, ContractAction], ContractStatus] = {
    (ContractStatus.DRAFT, ContractAction.SEND): ContractStatus.SENT_TO_AGENT,
    (ContractStatus.SENT_TO_AGENT, ContractAction.APPROVE): ContractStatus.AGENT_REVIEWED,
    (ContractStatus.AGENT_REVIEWED, ContractAction.FINALIZE): ContractStatus.TEAM_REVIEWED,
    (ContractStatus.TEAM_REVIEWED, ContractAction.APPROVE): ContractStatus.SIGNED,
    (ContractStatus.TEAM_REVIEWED, ContractAction.SIGN): ContractStatus.SIGNED,
    (ContractStatus.PARTIALLY_SIGNED, ContractAction.APPROVE): ContractStatus.SIGNED,
    (ContractStatus.PARTIALLY_SIGNED, ContractAction.SIGN): ContractStatus.SIGNED,
    (ContractStatus.SIGNED, ContractAction.COMPLETE): ContractStatus.COMPLETED,
    (ContractStatus.REVISION_REQUESTED, ContractAction.REVISE): ContractStatus.DRAFT,
    (ContractStatus.REJECTED, ContractAction.REVISE): ContractStatus.DRAFT,
}
for _state in _REVIEW_STATES:
    TRANSITIONS[(_state, ContractAction.REQUEST_CHANGES)] = ContractStatus.REVISION_REQUESTED
    TRANSITIONS[(_state, ContractAction.REJECT)] = ContractStatus.REJECTED

# Edges the agent drives; every other edge belongs to the team
AGENT_EDGES = {
    (ContractStatus.SENT_TO_AGENT, ContractAction.APPROVE),
    (ContractStatus.SENT_TO_AGENT, ContractAction.REQUEST_CHANGES),
    (ContractStatus.SENT_TO_AGENT, ContractAction.REJECT),
    (ContractStatus.TEAM_REVIEWED, ContractAction.SIGN),
    (ContractStatus.PARTIALLY_SIGNED, ContractAction.SIGN),
}

# Edges that put a party's signature on the contract. They only reach
# ``signed`` once the other party has signed too, else ``partially_signed``.
SIGNING_EDGES = {
    (ContractStatus.TEAM_REVIEWED, ContractAction.APPROVE),
    (ContractStatus.TEAM_REVIEWED, ContractAction.SIGN),
    (ContractStatus.PARTIALLY_SIGNED, ContractAction.APPROVE),
    (ContractStatus.PARTIALLY_SIGNED, ContractAction.SIGN),
}


def next_status(current: ContractStatus, action: ContractAction) -> Optional[ContractStatus]:
    if current in TERMINAL_CONTRACT_STATUSES:
        return None
    if action == ContractAction.CANCEL:
        return ContractStatus.CANCELLED
    return TRANSITIONS.get((current, action))


def actor_for(current: ContractStatus, action: ContractAction) -> UserType:
    return UserType.AGENT if (current, action) in AGENT_EDGES else UserType.TEAM


class ContractLifecycleManager:
    def __init__(
        self,
        store: WorkflowStore,
        pitches: PitchStore,
        profiles: ProfileDirectory,
        ledger: InterestLedger,
        dispatcher: MessageDispatcher,
        bus: EventBus,
        service_charge_rate: float = 0.15,
    ):
        self.store = store
        self.pitches = pitches
        self.profiles = profiles
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.bus = bus
        self.service_charge_rate = service_charge_rate

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_contract(
        self,
        caller: Caller,
        pitch_id: str,
        agent_id: str,
        team_id: Optional[str] = None,
        terms: Optional[ContractTerms] = None,
    ) -> Contract:
        """
        Open the pitch's contract with one of the agents holding active interest.

        Everything is validated by reading before the first write. The insert
        is the single atomic guard against a second active contract; once it
        succeeds the interest is promoted to ``negotiating`` (if it was not
        already) and the orchestrator moves the pitch to contract_negotiation.
        """
        terms = terms or ContractTerms()

        async def insert() -> Contract:
            pitch = await self.pitches.require_open_pitch(pitch_id)
            team = await self.profiles.require_pitch_owner(caller, pitch)
            if team_id is not None and team_id != team.id:
                raise Forbidden("Contract team does not match caller", team_id=team_id)
            if pitch.deal_stage == DealStage.PITCH:
                raise InvalidTransition(
                    "pitch", pitch.deal_stage.value, "create a contract for",
                    message="No agent has expressed interest in this pitch yet",
                    pitch_id=pitch_id,
                )
            await self.profiles.require_agent(agent_id)

            interest = await self.store.get_interest(pitch_id, agent_id)
            if interest is None or not interest.is_active:
                raise InvalidTransition(
                    "interest", interest.status.value if interest else "missing", "create a contract from",
                    pitch_id=pitch_id,
                    agent_id=agent_id,
                )

            existing = await self.store.get_active_contract(pitch_id)
            if existing is not None:
                raise DuplicateContract(
                    "An active contract already exists for this pitch",
                    pitch_id=pitch_id,
                    existing_contract_id=existing.id,
                    existing_status=existing.status.value,
                )

            contract_value = terms.contract_value or pitch.asking_price
            currency = terms.currency or pitch.currency
            return await self.store.insert_contract(
                Contract(
                    pitch_id=pitch_id,
                    agent_id=agent_id,
                    team_id=team.id,
                    contract_value=contract_value,
                    currency=currency,
                    contract_details={**terms.model_dump(mode="json"), "currency": currency},
                    financial_summary={
                        "transfer_fee": contract_value,
                        "annual_salary": terms.salary,
                        "total_value": contract_value + (terms.salary or 0),
                        "currency": currency,
                    },
                )
            )

        contract = await retry_once(insert, "create_contract")
        logger.info(f"Contract {contract.id} created for pitch {pitch_id} with agent {agent_id}")

        await self._record_step(contract, "draft_created", None, ContractStatus.DRAFT, caller.profile_id)

        interest = await self.store.get_interest(pitch_id, agent_id)
        if interest is not None and interest.status != InterestStatus.NEGOTIATING and interest.is_active:
            try:
                await self.ledger.mark_negotiating(interest, f"contract {contract.id} created")
            except Conflict:
                logger.warning(f"Interest on pitch {pitch_id} changed while contract {contract.id} was created")

        await self.bus.publish(ContractCreated(pitch_id=pitch_id, contract=contract, actor_id=caller.profile_id))
        return contract

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def advance(
        self,
        caller: Caller,
        contract_id: str,
        action: ContractAction,
        notes: Optional[str] = None,
        terms: Optional[ContractTerms] = None,
    ) -> Contract:
        """Apply ``action`` to the contract if the transition table and the caller's role allow it."""

        async def apply() -> tuple[Contract, Contract]:
            contract = await self.require_contract(contract_id)
            pitch = await self.pitches.require_pitch(contract.pitch_id)
            ensure_not_closed(pitch)

            target = next_status(contract.status, action)
            if target is None:
                raise InvalidTransition(
                    "contract", contract.status.value, action.value,
                    contract_id=contract_id,
                )
            party = actor_for(contract.status, action)
            await self._require_actor(caller, contract, party)

            values: dict = {"status": target}
            if (contract.status, action) in SIGNING_EDGES:
                signatures = self._sign(contract, party, caller.profile_id, action)
                values["signatures"] = signatures
                if any(p.value not in signatures for p in UserType):
                    values["status"] = ContractStatus.PARTIALLY_SIGNED
            if action == ContractAction.REVISE and terms is not None:
                currency = terms.currency or contract.currency
                values["contract_value"] = terms.contract_value or contract.contract_value
                values["currency"] = currency
                values["contract_details"] = {
                    **contract.contract_details,
                    **terms.model_dump(mode="json"),
                    "currency": currency,
                }
            if target == ContractStatus.COMPLETED:
                values["deal_stage"] = DealStage.COMPLETED
                values["financial_summary"] = self._settle(contract)

            updated = await self.store.update_contract_if(contract_id, contract.status, values)
            if updated is None:
                raise Conflict("Contract changed concurrently", contract_id=contract_id)
            return contract, updated

        before, contract = await retry_once(apply, f"contract {action.value}")
        logger.info(f"Contract {contract_id}: {before.status.value} -> {contract.status.value} ({action.value})")

        await self._record_step(contract, action.value, before.status, contract.status, caller.profile_id, notes)
        await self.bus.publish(
            ContractAdvanced(pitch_id=contract.pitch_id, contract=contract, actor_id=caller.profile_id, action=action)
        )
        if contract.status == ContractStatus.COMPLETED:
            await self.bus.publish(
                ContractCompleted(pitch_id=contract.pitch_id, contract=contract, actor_id=caller.profile_id)
            )
        return contract

    @staticmethod
    def _sign(contract: Contract, party: UserType, signed_by: str, action: ContractAction) -> dict:
        if party.value in contract.signatures:
            raise InvalidTransition(
                "contract", contract.status.value, action.value,
                message=f"The {party.value} has already signed this contract",
                contract_id=contract.id,
            )
        return {
            **contract.signatures,
            party.value: {"signed_by": signed_by, "signed_at": utcnow().isoformat()},
        }

    def _settle(self, contract: Contract) -> dict:
        rate = self.service_charge_rate
        return {
            **contract.financial_summary,
            "contract_value": contract.contract_value,
            "service_charge_rate": rate,
            "service_charge_amount": round(contract.contract_value * rate, 2),
            "currency": contract.currency,
        }

    # ------------------------------------------------------------------
    # Conversation on a contract
    # ------------------------------------------------------------------

    async def post_contract_message(self, caller: Caller, contract_id: str, content: str) -> Message:
        contract = await self.require_contract(contract_id)
        agent_profile, team_owner = await self._parties(contract)
        if caller.profile_id not in (agent_profile, team_owner):
            raise Forbidden("Only contract parties can post messages", contract_id=contract_id)
        receiver = team_owner if caller.profile_id == agent_profile else agent_profile
        return await self.dispatcher.dispatch(
            MessageType.CONTRACT, caller.profile_id, receiver, contract.pitch_id, content, contract_id=contract_id
        )

    async def list_contract_messages(self, caller: Caller, contract_id: str) -> list[Message]:
        contract = await self.get_for_party(caller, contract_id)
        return await self.store.list_messages(contract_id=contract.id)

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    async def require_contract(self, contract_id: str) -> Contract:
        contract = await self.store.get_contract(contract_id)
        if contract is None:
            raise NotFound("Contract not found", contract_id=contract_id)
        return contract

    async def get_for_party(self, caller: Caller, contract_id: str) -> Contract:
        contract = await self.require_contract(contract_id)
        if caller.profile_id not in await self._parties(contract):
            raise Forbidden("Only contract parties can view this contract", contract_id=contract_id)
        return contract

    async def list_contracts(self, owner_id: str, owner_type: UserType) -> list[Contract]:
        """Contracts visible to a profile: the agent's own, or every contract of the team it owns."""
        if owner_type == UserType.AGENT:
            agent = await self.store.get_agent_by_profile(owner_id)
            return await self.store.list_contracts(agent_id=agent.id) if agent else []
        team = await self.store.get_team_by_profile(owner_id)
        return await self.store.list_contracts(team_id=team.id) if team else []

    async def get_workflow_steps(self, caller: Caller, contract_id: str) -> list[ContractWorkflowStep]:
        contract = await self.get_for_party(caller, contract_id)
        return await self.store.list_workflow_steps(contract.id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _parties(self, contract: Contract) -> tuple[str, str]:
        agent_profile = await self.profiles.agent_profile_id(contract.agent_id)
        team_owner = await self.profiles.team_owner_id(contract.team_id)
        return agent_profile, team_owner

    async def _require_actor(self, caller: Caller, contract: Contract, expected: UserType) -> None:
        agent_profile, team_owner = await self._parties(contract)
        allowed = agent_profile if expected == UserType.AGENT else team_owner
        if caller.profile_id != allowed:
            raise Forbidden(
                f"Only the contract's {expected.value} can do this now",
                contract_id=contract.id,
                current_state=contract.status.value,
            )

    async def _record_step(
        self,
        contract: Contract,
        step_type: str,
        from_status: Optional[ContractStatus],
        to_status: ContractStatus,
        completed_by: str,
        notes: Optional[str] = None,
    ) -> None:
        await self.store.insert_workflow_step(
            ContractWorkflowStep(
                contract_id=contract.id,
                step_type=step_type,
                from_status=from_status,
                to_status=to_status,
                completed_by=completed_by,
                notes=notes,
            )
        )
