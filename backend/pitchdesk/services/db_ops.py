"""PostgreSQL implementation of the workflow store.

Every public method opens its own AsyncSession and commits before returning,
so each call is one atomic round-trip as far as the services are concerned.
Conditional updates are expressed as ``UPDATE ... WHERE <predicate>`` and
report a lost race through the returned row count, never by raising.

Driver and connection failures surface as UpstreamUnavailable; uniqueness
violations on agent_interest / contracts surface as Conflict /
DuplicateContract so the services can treat them as lost races. Other
integrity failures are told apart by constraint name: a missing foreign key
is NotFound, anything else a non-retryable WorkflowError.
"""
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import String, cast, delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pitchdesk.core.errors import Conflict, DuplicateContract, NotFound, UpstreamUnavailable, WorkflowError
from pitchdesk.models.db_models import (
    AgentInterestRow, AgentRow, ContractRow, ContractWorkflowStepRow, MessageRow,
    NotificationRow, PitchRow, ProfileRow, ShortlistRow, TeamRow,
)
from pitchdesk.models.schemas import (
    Agent, AgentInterest, Contract, ContractStatus, ContractWorkflowStep, COUNTER_FIELDS,
    InterestStatus, Message, MessageType, Notification, Pitch, PitchFilters, PitchStatus,
    Profile, ShortlistEntry, Team, utcnow,
)
from pitchdesk.services.store import WorkflowStore, new_id

logger = logging.getLogger(__name__)


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    """Enum members → their stored string values."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _to_model(model_cls, row):
    return model_cls.model_validate(row, from_attributes=True) if row is not None else None


def _interest(row: Optional[AgentInterestRow]) -> Optional[AgentInterest]:
    if row is None:
        return None
    return AgentInterest(
        id=row.id,
        pitch_id=row.pitch_id,
        agent_id=row.agent_id,
        status=InterestStatus(row.status),
        message=row.message,
        audit_log=list(row.audit_log or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _contract(row: Optional[ContractRow]) -> Optional[Contract]:
    if row is None:
        return None
    return Contract(
        id=row.id,
        pitch_id=row.pitch_id,
        agent_id=row.agent_id,
        team_id=row.team_id,
        status=ContractStatus(row.status),
        deal_stage=row.deal_stage,
        contract_value=row.contract_value or 0.0,
        currency=row.currency or "USD",
        contract_details=row.contract_details or {},
        financial_summary=row.financial_summary or {},
        signatures=row.signatures or {},
        created_at=row.created_at,
        last_activity=row.last_activity,
    )


ACTIVE_CONTRACT_INDEX = "uq_contracts_active_pitch"
INTEREST_UNIQUE = "uq_agent_interest_pitch_agent"

# Postgres SQLSTATE for foreign key violations
FOREIGN_KEY_VIOLATION = "23503"


def _constraint_name(error: IntegrityError) -> Optional[str]:
    """Name of the violated constraint, read off the asyncpg error behind the DBAPI wrapper."""
    for candidate in (error.orig, getattr(error.orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name
    return None


def _sqlstate(error: IntegrityError) -> Optional[str]:
    for candidate in (error.orig, getattr(error.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def _violates(error: IntegrityError, constraint: str) -> bool:
    name = _constraint_name(error)
    if name is not None:
        return name == constraint
    return constraint in str(error.orig)


def _integrity_error(error: IntegrityError, label: str, **context: Any) -> WorkflowError:
    """Map an IntegrityError no lost-race rule claimed onto the error taxonomy."""
    if _sqlstate(error) == FOREIGN_KEY_VIOLATION:
        return NotFound(
            "Referenced record does not exist",
            operation=label,
            constraint=_constraint_name(error),
            **context,
        )
    return WorkflowError(
        f"Storage rejected {label}",
        operation=label,
        constraint=_constraint_name(error),
        **context,
    )


async def _execute_update(session: AsyncSession, stmt):
    # Bulk UPDATE; no ORM objects to keep in sync
    return await session.execute(stmt, execution_options={"synchronize_session": False})


def _notification(row: NotificationRow) -> Notification:
    return Notification(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        message=row.message,
        type=row.type,
        metadata=row.metadata_ or {},
        is_read=bool(row.is_read),
        created_at=row.created_at,
    )


class SqlStore(WorkflowStore):
    """WorkflowStore backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, label: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except WorkflowError:
                raise
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"DB {label} failed: {e}")
                try:
                    await session.rollback()
                except (SQLAlchemyError, OSError) as rollback_error:
                    logger.warning(f"Rollback after failed {label} also failed: {rollback_error}")
                raise UpstreamUnavailable(f"Storage call {label} failed", operation=label) from e

    async def _add(self, label: str, row) -> None:
        async with self._session(label) as session:
            session.add(row)
            await session.commit()

    # -----------------------------------------------------------------------
    # Profiles / agents / teams
    # -----------------------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        async with self._session("get_profile") as session:
            return _to_model(Profile, await session.get(ProfileRow, profile_id))

    async def insert_profile(self, profile: Profile) -> Profile:
        profile = profile.model_copy()
        profile.id = profile.id or new_id()
        await self._add("insert_profile", ProfileRow(**_plain(profile.model_dump())))
        return profile

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        async with self._session("get_agent") as session:
            return _to_model(Agent, await session.get(AgentRow, agent_id))

    async def get_agent_by_profile(self, profile_id: str) -> Optional[Agent]:
        async with self._session("get_agent_by_profile") as session:
            result = await session.execute(select(AgentRow).where(AgentRow.profile_id == profile_id))
            return _to_model(Agent, result.scalar_one_or_none())

    async def insert_agent(self, agent: Agent) -> Agent:
        agent = agent.model_copy()
        agent.id = agent.id or new_id()
        async with self._session("insert_agent") as session:
            session.add(AgentRow(**agent.model_dump()))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise Conflict("Agent row already exists for profile", profile_id=agent.profile_id) from e
        return agent

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self._session("get_team") as session:
            return _to_model(Team, await session.get(TeamRow, team_id))

    async def get_team_by_profile(self, profile_id: str) -> Optional[Team]:
        async with self._session("get_team_by_profile") as session:
            result = await session.execute(select(TeamRow).where(TeamRow.profile_id == profile_id).limit(1))
            return _to_model(Team, result.scalar_one_or_none())

    async def insert_team(self, team: Team) -> Team:
        team = team.model_copy()
        team.id = team.id or new_id()
        await self._add("insert_team", TeamRow(**team.model_dump()))
        return team

    # -----------------------------------------------------------------------
    # Pitches
    # -----------------------------------------------------------------------

    async def insert_pitch(self, pitch: Pitch) -> Pitch:
        pitch = pitch.model_copy()
        pitch.id = pitch.id or new_id()
        await self._add("insert_pitch", PitchRow(**_plain(pitch.model_dump())))
        return pitch

    async def get_pitch(self, pitch_id: str) -> Optional[Pitch]:
        async with self._session("get_pitch") as session:
            return _to_model(Pitch, await session.get(PitchRow, pitch_id))

    async def list_pitches(self, filters: PitchFilters) -> list[Pitch]:
        conditions = []
        if not filters.include_inactive:
            conditions.append(PitchRow.status == PitchStatus.ACTIVE.value)
        if filters.team_id:
            conditions.append(PitchRow.team_id == filters.team_id)
        if filters.player_id:
            conditions.append(PitchRow.player_id == filters.player_id)
        if filters.transfer_type:
            conditions.append(PitchRow.transfer_type == filters.transfer_type.value)
        if filters.deal_stages:
            conditions.append(PitchRow.deal_stage.in_([s.value for s in filters.deal_stages]))
        if filters.min_price is not None:
            conditions.append(PitchRow.asking_price >= filters.min_price)
        if filters.max_price is not None:
            conditions.append(PitchRow.asking_price <= filters.max_price)
        stmt = (
            select(PitchRow)
            .where(*conditions)
            .order_by(PitchRow.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        async with self._session("list_pitches") as session:
            result = await session.execute(stmt)
            return [_to_model(Pitch, r) for r in result.scalars().all()]

    async def update_pitch_if(self, pitch_id: str, expected: dict[str, Any], values: dict[str, Any]) -> bool:
        predicate = [PitchRow.id == pitch_id]
        predicate += [getattr(PitchRow, k) == v for k, v in _plain(expected).items()]
        stmt = update(PitchRow).where(*predicate).values(**_plain(values), updated_at=utcnow())
        async with self._session("update_pitch_if") as session:
            result = await _execute_update(session, stmt)
            await session.commit()
            if result.rowcount == 1:
                return True
            if await session.get(PitchRow, pitch_id) is None:
                raise NotFound("Pitch not found", pitch_id=pitch_id)
            return False

    async def increment_pitch_counters(self, pitch_id: str, deltas: dict[str, int]) -> None:
        for name in deltas:
            if name not in COUNTER_FIELDS:
                raise ValueError(f"Unknown pitch counter: {name}")
        values = {
            name: func.greatest(func.coalesce(getattr(PitchRow, name), 0) + delta, 0)
            for name, delta in deltas.items()
        }
        async with self._session("increment_pitch_counters") as session:
            result = await _execute_update(session, update(PitchRow).where(PitchRow.id == pitch_id).values(**values))
            await session.commit()
            if result.rowcount == 0:
                raise NotFound("Pitch not found", pitch_id=pitch_id)

    # -----------------------------------------------------------------------
    # Agent interest
    # -----------------------------------------------------------------------

    async def get_interest(self, pitch_id: str, agent_id: str) -> Optional[AgentInterest]:
        stmt = select(AgentInterestRow).where(
            AgentInterestRow.pitch_id == pitch_id,
            AgentInterestRow.agent_id == agent_id,
        )
        async with self._session("get_interest") as session:
            result = await session.execute(stmt)
            return _interest(result.scalar_one_or_none())

    async def insert_interest(self, interest: AgentInterest) -> AgentInterest:
        interest = interest.model_copy(deep=True)
        interest.id = interest.id or new_id()
        async with self._session("insert_interest") as session:
            session.add(AgentInterestRow(**_plain(interest.model_dump())))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if not _violates(e, INTEREST_UNIQUE):
                    raise _integrity_error(
                        e, "insert_interest", pitch_id=interest.pitch_id, agent_id=interest.agent_id
                    ) from e
                raise Conflict(
                    "Interest already recorded for this agent and pitch",
                    pitch_id=interest.pitch_id,
                    agent_id=interest.agent_id,
                ) from e
        return interest

    async def update_interest_if(
        self,
        interest_id: str,
        expected_status: Optional[InterestStatus],
        values: dict[str, Any],
        audit_entry: Optional[str] = None,
    ) -> Optional[AgentInterest]:
        predicate = [AgentInterestRow.id == interest_id]
        if expected_status is not None:
            predicate.append(AgentInterestRow.status == expected_status.value)
        new_values = {**_plain(values), "updated_at": utcnow()}
        if audit_entry:
            # Append in the same statement so concurrent writers never drop an entry
            new_values["audit_log"] = func.coalesce(
                AgentInterestRow.audit_log, text("'[]'::jsonb")
            ).op("||")(func.jsonb_build_array(cast(audit_entry, String)))
        async with self._session("update_interest_if") as session:
            result = await _execute_update(session, update(AgentInterestRow).where(*predicate).values(**new_values))
            await session.commit()
            row = await session.get(AgentInterestRow, interest_id, populate_existing=True)
            if row is None:
                raise NotFound("Interest not found", interest_id=interest_id)
            return _interest(row) if result.rowcount == 1 else None

    async def list_interests(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[InterestStatus]] = None,
    ) -> list[AgentInterest]:
        conditions = []
        if pitch_id is not None:
            conditions.append(AgentInterestRow.pitch_id == pitch_id)
        if agent_id is not None:
            conditions.append(AgentInterestRow.agent_id == agent_id)
        if statuses is not None:
            conditions.append(AgentInterestRow.status.in_([s.value for s in statuses]))
        stmt = select(AgentInterestRow).where(*conditions).order_by(AgentInterestRow.created_at.desc())
        async with self._session("list_interests") as session:
            result = await session.execute(stmt)
            return [_interest(r) for r in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Contracts
    # -----------------------------------------------------------------------

    async def insert_contract(self, contract: Contract) -> Contract:
        contract = contract.model_copy(deep=True)
        contract.id = contract.id or new_id()
        async with self._session("insert_contract") as session:
            session.add(ContractRow(**_plain(contract.model_dump())))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                # The partial unique index on active contracts is the concurrency guard
                if _violates(e, ACTIVE_CONTRACT_INDEX):
                    raise DuplicateContract(
                        "An active contract already exists for this pitch",
                        pitch_id=contract.pitch_id,
                    ) from e
                raise _integrity_error(e, "insert_contract", pitch_id=contract.pitch_id) from e
        return contract

    async def get_contract(self, contract_id: str) -> Optional[Contract]:
        async with self._session("get_contract") as session:
            return _contract(await session.get(ContractRow, contract_id))

    async def get_active_contract(self, pitch_id: str) -> Optional[Contract]:
        stmt = select(ContractRow).where(
            ContractRow.pitch_id == pitch_id,
            ContractRow.status.notin_([ContractStatus.COMPLETED.value, ContractStatus.CANCELLED.value]),
        )
        async with self._session("get_active_contract") as session:
            result = await session.execute(stmt)
            return _contract(result.scalars().first())

    async def update_contract_if(
        self,
        contract_id: str,
        expected_status: ContractStatus,
        values: dict[str, Any],
    ) -> Optional[Contract]:
        stmt = (
            update(ContractRow)
            .where(ContractRow.id == contract_id, ContractRow.status == expected_status.value)
            .values(**_plain(values), last_activity=utcnow())
        )
        async with self._session("update_contract_if") as session:
            result = await _execute_update(session, stmt)
            await session.commit()
            row = await session.get(ContractRow, contract_id, populate_existing=True)
            if row is None:
                raise NotFound("Contract not found", contract_id=contract_id)
            return _contract(row) if result.rowcount == 1 else None

    async def list_contracts(
        self,
        pitch_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        team_id: Optional[str] = None,
        statuses: Optional[Iterable[ContractStatus]] = None,
    ) -> list[Contract]:
        conditions = []
        if pitch_id is not None:
            conditions.append(ContractRow.pitch_id == pitch_id)
        if agent_id is not None:
            conditions.append(ContractRow.agent_id == agent_id)
        if team_id is not None:
            conditions.append(ContractRow.team_id == team_id)
        if statuses is not None:
            conditions.append(ContractRow.status.in_([s.value for s in statuses]))
        stmt = select(ContractRow).where(*conditions).order_by(ContractRow.last_activity.desc())
        async with self._session("list_contracts") as session:
            result = await session.execute(stmt)
            return [_contract(r) for r in result.scalars().all()]

    async def insert_workflow_step(self, step: ContractWorkflowStep) -> ContractWorkflowStep:
        step = step.model_copy()
        step.id = step.id or new_id()
        await self._add("insert_workflow_step", ContractWorkflowStepRow(**_plain(step.model_dump())))
        return step

    async def list_workflow_steps(self, contract_id: str) -> list[ContractWorkflowStep]:
        stmt = (
            select(ContractWorkflowStepRow)
            .where(ContractWorkflowStepRow.contract_id == contract_id)
            .order_by(ContractWorkflowStepRow.created_at.asc())
        )
        async with self._session("list_workflow_steps") as session:
            result = await session.execute(stmt)
            return [_to_model(ContractWorkflowStep, r) for r in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def find_message(
        self,
        sender_id: str,
        receiver_id: str,
        pitch_id: Optional[str],
        message_type: MessageType,
    ) -> Optional[Message]:
        pitch_clause = MessageRow.pitch_id.is_(None) if pitch_id is None else MessageRow.pitch_id == pitch_id
        stmt = select(MessageRow).where(
            MessageRow.sender_id == sender_id,
            MessageRow.receiver_id == receiver_id,
            pitch_clause,
            MessageRow.message_type == message_type.value,
        ).limit(1)
        async with self._session("find_message") as session:
            result = await session.execute(stmt)
            return _to_model(Message, result.scalar_one_or_none())

    async def insert_message(self, message: Message) -> Message:
        message = message.model_copy()
        message.id = message.id or new_id()
        await self._add("insert_message", MessageRow(**_plain(message.model_dump())))
        return message

    async def list_messages(
        self,
        pitch_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        message_type: Optional[MessageType] = None,
    ) -> list[Message]:
        conditions = []
        if pitch_id is not None:
            conditions.append(MessageRow.pitch_id == pitch_id)
        if contract_id is not None:
            conditions.append(MessageRow.contract_id == contract_id)
        if participant_id is not None:
            conditions.append(or_(MessageRow.sender_id == participant_id, MessageRow.receiver_id == participant_id))
        if message_type is not None:
            conditions.append(MessageRow.message_type == message_type.value)
        stmt = select(MessageRow).where(*conditions).order_by(MessageRow.created_at.asc())
        async with self._session("list_messages") as session:
            result = await session.execute(stmt)
            return [_to_model(Message, r) for r in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        notification = notification.model_copy()
        notification.id = notification.id or new_id()
        row = NotificationRow(
            id=notification.id,
            user_id=notification.user_id,
            title=notification.title,
            message=notification.message,
            type=notification.type.value,
            metadata_=notification.metadata,
            is_read=notification.is_read,
            created_at=notification.created_at,
        )
        await self._add("insert_notification", row)
        return notification

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationRow.is_read.is_(False))
        stmt = stmt.order_by(NotificationRow.created_at.desc()).limit(limit)
        async with self._session("list_notifications") as session:
            result = await session.execute(stmt)
            return [_notification(r) for r in result.scalars().all()]

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.id == notification_id, NotificationRow.user_id == user_id)
            .values(is_read=True)
        )
        async with self._session("mark_notification_read") as session:
            result = await _execute_update(session, stmt)
            await session.commit()
            return result.rowcount == 1

    async def mark_all_notifications_read(self, user_id: str) -> int:
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.user_id == user_id, NotificationRow.is_read.is_(False))
            .values(is_read=True)
        )
        async with self._session("mark_all_notifications_read") as session:
            result = await _execute_update(session, stmt)
            await session.commit()
            return result.rowcount

    # -----------------------------------------------------------------------
    # Shortlist
    # -----------------------------------------------------------------------

    async def insert_shortlist(self, entry: ShortlistEntry) -> Optional[ShortlistEntry]:
        entry = entry.model_copy()
        entry.id = entry.id or new_id()
        stmt = (
            insert(ShortlistRow)
            .values(**entry.model_dump())
            .on_conflict_do_nothing(index_elements=["pitch_id", "agent_id"])
        )
        async with self._session("insert_shortlist") as session:
            result = await session.execute(stmt)
            await session.commit()
            return entry if result.rowcount == 1 else None

    async def delete_shortlist(self, pitch_id: str, agent_id: str) -> bool:
        stmt = delete(ShortlistRow).where(ShortlistRow.pitch_id == pitch_id, ShortlistRow.agent_id == agent_id)
        async with self._session("delete_shortlist") as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def list_shortlist(self, agent_id: str) -> list[ShortlistEntry]:
        stmt = select(ShortlistRow).where(ShortlistRow.agent_id == agent_id).order_by(ShortlistRow.created_at.desc())
        async with self._session("list_shortlist") as session:
            result = await session.execute(stmt)
            return [_to_model(ShortlistEntry, r) for r in result.scalars().all()]
