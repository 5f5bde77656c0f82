"""SQLAlchemy ORM table definitions for PitchDesk.

These are the persistent representations. The Pydantic models in schemas.py
remain the canonical runtime models; these classes are for DB I/O only.
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB

from pitchdesk.core.database import Base
from pitchdesk.models.schemas import utcnow


class ProfileRow(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    user_type = Column(String, nullable=False)
    full_name = Column(String, default="")
    email = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AgentRow(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)
    agency_name = Column(String)
    auto_provisioned = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TeamRow(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    team_name = Column(String, nullable=False)
    country = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class PitchRow(Base):
    __tablename__ = "transfer_pitches"

    id = Column(String, primary_key=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    player_id = Column(String, nullable=False)
    player_name = Column(String)
    # active → expired | completed | withdrawn
    status = Column(String, default="active", index=True)
    # pitch → interest → discussion → contract_negotiation → completed (| expired)
    deal_stage = Column(String, default="pitch", index=True)
    transfer_type = Column(String, default="permanent")
    asking_price = Column(Float, default=0.0)
    currency = Column(String, default="USD")
    description = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    view_count = Column(Integer, default=0)
    message_count = Column(Integer, default=0)
    shortlist_count = Column(Integer, default=0)
    interest_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class AgentInterestRow(Base):
    __tablename__ = "agent_interest"
    __table_args__ = (UniqueConstraint("pitch_id", "agent_id", name="uq_agent_interest_pitch_agent"),)

    id = Column(String, primary_key=True)
    pitch_id = Column(String, ForeignKey("transfer_pitches.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    # interested | requested | negotiating | withdrawn | rejected
    status = Column(String, nullable=False, default="interested", index=True)
    message = Column(Text)
    audit_log = Column(JSONB, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class ContractRow(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        # One active contract per pitch; completed/cancelled rows fall outside the index
        Index(
            "uq_contracts_active_pitch",
            "pitch_id",
            unique=True,
            postgresql_where=text("status NOT IN ('completed', 'cancelled')"),
        ),
    )

    id = Column(String, primary_key=True)
    pitch_id = Column(String, ForeignKey("transfer_pitches.id"), nullable=False, index=True)
    agent_id = Column(String, ForeignKey("agents.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="draft", index=True)
    deal_stage = Column(String, default="contract_negotiation")
    contract_value = Column(Float, default=0.0)
    currency = Column(String, default="USD")
    contract_details = Column(JSONB, default=dict)
    financial_summary = Column(JSONB, default=dict)
    signatures = Column(JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_activity = Column(DateTime(timezone=True), default=utcnow)


class ContractWorkflowStepRow(Base):
    __tablename__ = "contract_workflow_steps"

    id = Column(String, primary_key=True)
    contract_id = Column(String, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True)
    step_type = Column(String, nullable=False)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    completed_by = Column(String, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class MessageRow(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_first_touch", "sender_id", "receiver_id", "pitch_id", "message_type"),
    )

    id = Column(String, primary_key=True)
    sender_id = Column(String, nullable=False)
    receiver_id = Column(String, nullable=False)
    pitch_id = Column(String, ForeignKey("transfer_pitches.id"), index=True)
    contract_id = Column(String, ForeignKey("contracts.id"), index=True)
    message_type = Column(String, default="general")
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    metadata_ = Column("metadata", JSONB, default=dict)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ShortlistRow(Base):
    __tablename__ = "shortlist"
    __table_args__ = (UniqueConstraint("pitch_id", "agent_id", name="uq_shortlist_pitch_agent"),)

    id = Column(String, primary_key=True)
    pitch_id = Column(String, ForeignKey("transfer_pitches.id", ondelete="CASCADE"), nullable=False)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
