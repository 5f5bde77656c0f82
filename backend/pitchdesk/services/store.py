"""Storage boundary for the negotiation workflow.

``WorkflowStore`` is the typed query/command interface the services talk to.
Each method is one atomic store call; nothing here spans calls, so the
services stay correct under re-execution by leaning on the conditional
(``*_if``) updates and the uniqueness guards of the insert methods.

``MemoryStore`` is the in-memory mode used when DATABASE_URL is not set and
by the tests. ``SqlStore`` in db_ops.py is the PostgreSQL implementation.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from pitchdesk.core.errors import Conflict, DuplicateContract, NotFound
from pitchdesk.models.schemas import (
    Agent, AgentInterest, Contract, ContractStatus, ContractWorkflowStep, COUNTER_FIELDS,
    InterestStatus, Message, MessageType, Notification, Pitch, PitchFilters, PitchStatus,
    Profile, ShortlistEntry, Team, utcnow,
)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStore(ABC):
    """Async typed access to every table the workflow reads or writes."""

    # --- Profiles / agents / teams ---

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Optional[Profile]: ...

    @abstractmethod
    async def insert_profile(self, profile: Profile) -> Profile: ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    @abstractmethod
    async def get_agent_by_profile(self, profile_id: str) -> Optional[Agent]: ...

    @abstractmethod
    async def insert_agent(self, agent: Agent) -> Agent:
        """Raises Conflict if the profile already has an agent row."""

    @abstractmethod
    async def get_team(self, team_id: str) -> Optional[Team]: ...

    @abstractmethod
    async def get_team_by_profile(self, profile_id: str) -> Optional[Team]: ...

    @abstractmethod
    async def insert_team(self, team: Team) -> Team: ...

    # --- Pitches ---

    @abstractmethod
    async def insert_pitch(self, pitch: Pitch) -> Pitch: ...

    @abstractmethod
    async def get_pitch(self, pitch_id: str) -> Optional[Pitch]: ...

    @abstractmethod
    async def list_pitches(self, filters: PitchFilters) -> list[Pitch]: ...

    @abstractmethod
    async def update_pitch_if(self, pitch_id: str, expected: dict[str, Any], values: dict[str, Any]) -> bool:
        """Apply ``values`` only if every field in ``expected`` still matches. Returns False otherwise."""

    @abstractmethod
    async def increment_pitch_counters(self, pitch_id: str, deltas: dict[str, int]) -> None:
        """Atomic increments; counters never drop below zero."""

    # --- Agent interest ---

    @abstractmethod
    async def get_interest(self, pitch_id: str, agent_id: str) -> Optional[AgentInterest]: ...

    @abstractmethod
    async def insert_interest(self, interest: AgentInterest) -> AgentInterest:
        """Raises Conflict if a row for (pitch_id, agent_id) already exists."""

    @abstractmethod
    async def update_interest_if(
        self,
        interest_id: str,
        expected_status: Optional[InterestStatus],
        values: dict[str, Any],
        audit_entry: Optional[str] = None,
    ) -> Optional[AgentInterest]:
        """
        Conditionally update an interest row and append ``audit_entry`` to its log.

        ``expected_status=None`` applies unconditionally (last writer wins).
        Returns the updated row, or None when the predicate did not hold.
        """

    @abstractmethod
    async def list_interests(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[InterestStatus]] = None,
    ) -> list[AgentInterest]: ...

    # --- Contracts ---

    @abstractmethod
    async def insert_contract(self, contract: Contract) -> Contract:
        """Raises DuplicateContract if the pitch already has an active contract."""

    @abstractmethod
    async def get_contract(self, contract_id: str) -> Optional[Contract]: ...

    @abstractmethod
    async def get_active_contract(self, pitch_id: str) -> Optional[Contract]: ...

    @abstractmethod
    async def update_contract_if(
        self,
        contract_id: str,
        expected_status: ContractStatus,
        values: dict[str, Any],
    ) -> Optional[Contract]: ...

    @abstractmethod
    async def list_contracts(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        team_id: Optional[str] = None,
        statuses: Optional[Iterable[ContractStatus]] = None,
    ) -> list[Contract]: ...

    @abstractmethod
    async def insert_workflow_step(self, step: ContractWorkflowStep) -> ContractWorkflowStep: ...

    @abstractmethod
    async def list_workflow_steps(self, contract_id: str) -> list[ContractWorkflowStep]: ...

    # --- Messages ---

    @abstractmethod
    async def find_message(
        self,
        sender_id: str,
        receiver_id: str,
        pitch_id: Optional[str],
        message_type: MessageType,
    ) -> Optional[Message]: ...

    @abstractmethod
    async def insert_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def list_messages(
        self,
        pitch_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        message_type: Optional[MessageType] = None,
    ) -> list[Message]: ...

    # --- Notifications ---

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool: ...

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int: ...

    # --- Shortlist ---

    @abstractmethod
    async def insert_shortlist(self, entry: ShortlistEntry) -> Optional[ShortlistEntry]:
        """Returns None if the (pitch, agent) pair is already shortlisted."""

    @abstractmethod
    async def delete_shortlist(self, pitch_id: str, agent_id: str) -> bool: ...

    @abstractmethod
    async def list_shortlist(self, agent_id: str) -> list[ShortlistEntry]: ...


class MemoryStore(WorkflowStore):
    """
    Dict-backed store. Method bodies never await, so each call is atomic with
    respect to other coroutines on the event loop. Rows are copied on the way
    in and out so callers can't mutate stored state behind the store's back.
    """

    def __init__(self):
        self.profiles: dict[str, Profile] = {}
        self.agents: dict[str, Agent] = {}
        self.teams: dict[str, Team] = {}
        self.pitches: dict[str, Pitch] = {}
        self.interests: dict[str, AgentInterest] = {}
        self.contracts: dict[str, Contract] = {}
        self.workflow_steps: list[ContractWorkflowStep] = []
        self.messages: list[Message] = []
        self.notifications: dict[str, Notification] = {}
        self.shortlist: dict[str, ShortlistEntry] = {}

    # --- Profiles / agents / teams ---

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        row = self.profiles.get(profile_id)
        return row.model_copy(deep=True) if row else None

    async def insert_profile(self, profile: Profile) -> Profile:
        row = profile.model_copy(deep=True)
        row.id = row.id or new_id()
        self.profiles[row.id] = row
        return row.model_copy(deep=True)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = self.agents.get(agent_id)
        return row.model_copy(deep=True) if row else None

    async def get_agent_by_profile(self, profile_id: str) -> Optional[Agent]:
        for row in self.agents.values():
            if row.profile_id == profile_id:
                return row.model_copy(deep=True)
        return None

    async def insert_agent(self, agent: Agent) -> Agent:
        if any(a.profile_id == agent.profile_id for a in self.agents.values()):
            raise Conflict("Agent row already exists for profile", profile_id=agent.profile_id)
        row = agent.model_copy(deep=True)
        row.id = row.id or new_id()
        self.agents[row.id] = row
        return row.model_copy(deep=True)

    async def get_team(self, team_id: str) -> Optional[Team]:
        row = self.teams.get(team_id)
        return row.model_copy(deep=True) if row else None

    async def get_team_by_profile(self, profile_id: str) -> Optional[Team]:
        for row in self.teams.values():
            if row.profile_id == profile_id:
                return row.model_copy(deep=True)
        return None

    async def insert_team(self, team: Team) -> Team:
        row = team.model_copy(deep=True)
        row.id = row.id or new_id()
        self.teams[row.id] = row
        return row.model_copy(deep=True)

    # --- Pitches ---

    async def insert_pitch(self, pitch: Pitch) -> Pitch:
        row = pitch.model_copy(deep=True)
        row.id = row.id or new_id()
        self.pitches[row.id] = row
        return row.model_copy(deep=True)

    async def get_pitch(self, pitch_id: str) -> Optional[Pitch]:
        row = self.pitches.get(pitch_id)
        return row.model_copy(deep=True) if row else None

    async def list_pitches(self, filters: PitchFilters) -> list[Pitch]:
        rows = sorted(self.pitches.values(), key=lambda p: p.created_at, reverse=True)
        result = []
        for p in rows:
            if not filters.include_inactive and p.status != PitchStatus.ACTIVE:
                continue
            if filters.team_id and p.team_id != filters.team_id:
                continue
            if filters.player_id and p.player_id != filters.player_id:
                continue
            if filters.transfer_type and p.transfer_type != filters.transfer_type:
                continue
            if filters.deal_stages and p.deal_stage not in filters.deal_stages:
                continue
            if filters.min_price is not None and p.asking_price < filters.min_price:
                continue
            if filters.max_price is not None and p.asking_price > filters.max_price:
                continue
            result.append(p.model_copy(deep=True))
        return result[filters.offset:filters.offset + filters.limit]

    async def update_pitch_if(self, pitch_id: str, expected: dict[str, Any], values: dict[str, Any]) -> bool:
        row = self.pitches.get(pitch_id)
        if row is None:
            raise NotFound("Pitch not found", pitch_id=pitch_id)
        if any(getattr(row, k) != v for k, v in expected.items()):
            return False
        for k, v in values.items():
            setattr(row, k, v)
        row.updated_at = utcnow()
        return True

    async def increment_pitch_counters(self, pitch_id: str, deltas: dict[str, int]) -> None:
        row = self.pitches.get(pitch_id)
        if row is None:
            raise NotFound("Pitch not found", pitch_id=pitch_id)
        for name, delta in deltas.items():
            if name not in COUNTER_FIELDS:
                raise ValueError(f"Unknown pitch counter: {name}")
            setattr(row, name, max(0, getattr(row, name) + delta))

    # --- Agent interest ---

    async def get_interest(self, pitch_id: str, agent_id: str) -> Optional[AgentInterest]:
        for row in self.interests.values():
            if row.pitch_id == pitch_id and row.agent_id == agent_id:
                return row.model_copy(deep=True)
        return None

    async def insert_interest(self, interest: AgentInterest) -> AgentInterest:
        for row in self.interests.values():
            if row.pitch_id == interest.pitch_id and row.agent_id == interest.agent_id:
                raise Conflict(
                    "Interest already recorded for this agent and pitch",
                    pitch_id=interest.pitch_id,
                    agent_id=interest.agent_id,
                )
        row = interest.model_copy(deep=True)
        row.id = row.id or new_id()
        self.interests[row.id] = row
        return row.model_copy(deep=True)

    async def update_interest_if(
        self,
        interest_id: str,
        expected_status: Optional[InterestStatus],
        values: dict[str, Any],
        audit_entry: Optional[str] = None,
    ) -> Optional[AgentInterest]:
        row = self.interests.get(interest_id)
        if row is None:
            raise NotFound("Interest not found", interest_id=interest_id)
        if expected_status is not None and row.status != expected_status:
            return None
        for k, v in values.items():
            setattr(row, k, v)
        if audit_entry:
            row.audit_log.append(audit_entry)
        row.updated_at = utcnow()
        return row.model_copy(deep=True)

    async def list_interests(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[InterestStatus]] = None,
    ) -> list[AgentInterest]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            r for r in self.interests.values()
            if (pitch_id is None or r.pitch_id == pitch_id)
            and (agent_id is None or r.agent_id == agent_id)
            and (wanted is None or r.status in wanted)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    # --- Contracts ---

    async def insert_contract(self, contract: Contract) -> Contract:
        for row in self.contracts.values():
            if row.pitch_id == contract.pitch_id and row.is_active:
                raise DuplicateContract(
                    "An active contract already exists for this pitch",
                    pitch_id=contract.pitch_id,
                    existing_contract_id=row.id,
                    existing_status=row.status.value,
                )
        row = contract.model_copy(deep=True)
        row.id = row.id or new_id()
        self.contracts[row.id] = row
        return row.model_copy(deep=True)

    async def get_contract(self, contract_id: str) -> Optional[Contract]:
        row = self.contracts.get(contract_id)
        return row.model_copy(deep=True) if row else None

    async def get_active_contract(self, pitch_id: str) -> Optional[Contract]:
        for row in self.contracts.values():
            if row.pitch_id == pitch_id and row.is_active:
                return row.model_copy(deep=True)
        return None

    async def update_contract_if(
        self,
        contract_id: str,
        expected_status: ContractStatus,
        values: dict[str, Any],
    ) -> Optional[Contract]:
        row = self.contracts.get(contract_id)
        if row is None:
            raise NotFound("Contract not found", contract_id=contract_id)
        if row.status != expected_status:
            return None
        for k, v in values.items():
            setattr(row, k, v)
        row.last_activity = utcnow()
        return row.model_copy(deep=True)

    async def list_contracts(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        team_id: Optional[str] = None,
        statuses: Optional[Iterable[ContractStatus]] = None,
    ) -> list[Contract]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            r for r in self.contracts.values()
            if (pitch_id is None or r.pitch_id == pitch_id)
            and (agent_id is None or r.agent_id == agent_id)
            and (team_id is None or r.team_id == team_id)
            and (wanted is None or r.status in wanted)
        ]
        rows.sort(key=lambda r: r.last_activity, reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    async def insert_workflow_step(self, step: ContractWorkflowStep) -> ContractWorkflowStep:
        row = step.model_copy(deep=True)
        row.id = row.id or new_id()
        self.workflow_steps.append(row)
        return row.model_copy(deep=True)

    async def list_workflow_steps(self, contract_id: str) -> list[ContractWorkflowStep]:
        return [s.model_copy(deep=True) for s in self.workflow_steps if s.contract_id == contract_id]

    # --- Messages ---

    async def find_message(
        self,
        sender_id: str,
        receiver_id: str,
        pitch_id: Optional[str],
        message_type: MessageType,
    ) -> Optional[Message]:
        for m in self.messages:
            if (m.sender_id, m.receiver_id, m.pitch_id, m.message_type) == (
                sender_id, receiver_id, pitch_id, message_type
            ):
                return m.model_copy(deep=True)
        return None

    async def insert_message(self, message: Message) -> Message:
        row = message.model_copy(deep=True)
        row.id = row.id or new_id()
        self.messages.append(row)
        return row.model_copy(deep=True)

    async def list_messages(
        self,
        pitch_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        message_type: Optional[MessageType] = None,
    ) -> list[Message]:
        return [
            m.model_copy(deep=True) for m in self.messages
            if (pitch_id is None or m.pitch_id == pitch_id)
            and (contract_id is None or m.contract_id == contract_id)
            and (participant_id is None or participant_id in (m.sender_id, m.receiver_id))
            and (message_type is None or m.message_type == message_type)
        ]

    # --- Notifications ---

    async def insert_notification(self, notification: Notification) -> Notification:
        row = notification.model_copy(deep=True)
        row.id = row.id or new_id()
        self.notifications[row.id] = row
        return row.model_copy(deep=True)

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        rows = [
            n for n in self.notifications.values()
            if n.user_id == user_id and not (unread_only and n.is_read)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in rows[:limit]]

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        row = self.notifications.get(notification_id)
        if row is None or row.user_id != user_id:
            return False
        row.is_read = True
        return True

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = 0
        for row in self.notifications.values():
            if row.user_id == user_id and not row.is_read:
                row.is_read = True
                count += 1
        return count

    # --- Shortlist ---

    async def insert_shortlist(self, entry: ShortlistEntry) -> Optional[ShortlistEntry]:
        for row in self.shortlist.values():
            if row.pitch_id == entry.pitch_id and row.agent_id == entry.agent_id:
                return None
        row = entry.model_copy(deep=True)
        row.id = row.id or new_id()
        self.shortlist[row.id] = row
        return row.model_copy(deep=True)

    async def delete_shortlist(self, pitch_id: str, agent_id: str) -> bool:
        for key, row in list(self.shortlist.items()):
            if row.pitch_id == pitch_id and row.agent_id == agent_id:
                del self.shortlist[key]
                return True
        return False

    async def list_shortlist(self, agent_id: str) -> list[ShortlistEntry]:
        return [r.model_copy(deep=True) for r in self.shortlist.values() if r.agent_id == agent_id]
