"""Data models for PitchDesk."""
from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserType(str, Enum):
    AGENT = "agent"
    TEAM = "team"


class PitchStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"


class DealStage(str, Enum):
    """Pitch-level summary of negotiation progress."""
    PITCH = "pitch"
    INTEREST = "interest"
    DISCUSSION = "discussion"
    CONTRACT_NEGOTIATION = "contract_negotiation"
    COMPLETED = "completed"
    EXPIRED = "expired"


# Forward order of the negotiation path. EXPIRED sits off the path.
DEAL_STAGE_RANK = {
    DealStage.PITCH: 0,
    DealStage.INTEREST: 1,
    DealStage.DISCUSSION: 2,
    DealStage.CONTRACT_NEGOTIATION: 3,
    DealStage.COMPLETED: 4,
}

TERMINAL_DEAL_STAGES = {DealStage.COMPLETED, DealStage.EXPIRED}


class TransferType(str, Enum):
    PERMANENT = "permanent"
    LOAN = "loan"


class InterestStatus(str, Enum):
    INTERESTED = "interested"
    REQUESTED = "requested"        # asking for more information before committing
    NEGOTIATING = "negotiating"
    WITHDRAWN = "withdrawn"        # terminal, retained for audit / reactivation
    REJECTED = "rejected"          # terminal, retained for audit / reactivation


ACTIVE_INTEREST_STATUSES = {
    InterestStatus.INTERESTED,
    InterestStatus.REQUESTED,
    InterestStatus.NEGOTIATING,
}

# Stage an active interest pulls its pitch towards
INTEREST_STAGE = {
    InterestStatus.INTERESTED: DealStage.INTEREST,
    InterestStatus.REQUESTED: DealStage.INTEREST,
    InterestStatus.NEGOTIATING: DealStage.DISCUSSION,
}


class ContractStatus(str, Enum):
    DRAFT = "draft"
    SENT_TO_AGENT = "sent_to_agent"
    AGENT_REVIEWED = "agent_reviewed"
    TEAM_REVIEWED = "team_reviewed"
    PARTIALLY_SIGNED = "partially_signed"
    SIGNED = "signed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"
    CANCELLED = "cancelled"


TERMINAL_CONTRACT_STATUSES = {ContractStatus.COMPLETED, ContractStatus.CANCELLED}


class ContractAction(str, Enum):
    SEND = "send"
    APPROVE = "approve"
    FINALIZE = "finalize"
    SIGN = "sign"
    REQUEST_CHANGES = "request_changes"
    REJECT = "reject"
    REVISE = "revise"
    COMPLETE = "complete"
    CANCEL = "cancel"


class MessageType(str, Enum):
    GENERAL = "general"
    INTEREST = "interest"
    NEGOTIATION = "negotiation"
    CONTRACT = "contract"


class NotificationType(str, Enum):
    AGENT_INTEREST = "agent_interest"
    NEGOTIATION = "negotiation"
    CONTRACT_UPDATE = "contract_update"
    SUCCESS = "success"


class Caller(BaseModel):
    """Already-authenticated identity of whoever issued the request."""
    profile_id: str
    user_type: UserType


# ---------------------------------------------------------------------------
# Identity-side rows
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    id: str = ""
    user_type: UserType
    full_name: str = ""
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Agent(BaseModel):
    id: str = ""
    profile_id: str
    agency_name: Optional[str] = None
    auto_provisioned: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Team(BaseModel):
    id: str = ""
    profile_id: str
    team_name: str
    country: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Workflow entities
# ---------------------------------------------------------------------------

class Pitch(BaseModel):
    """A team's published offer of a player for transfer or loan."""
    id: str = ""
    team_id: str
    player_id: str
    player_name: Optional[str] = None
    status: PitchStatus = PitchStatus.ACTIVE
    deal_stage: DealStage = DealStage.PITCH
    transfer_type: TransferType = TransferType.PERMANENT
    asking_price: float = 0.0
    currency: str = "USD"
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    view_count: int = 0
    message_count: int = 0
    shortlist_count: int = 0
    interest_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or utcnow())


COUNTER_FIELDS = ("view_count", "message_count", "shortlist_count", "interest_count")


class AgentInterest(BaseModel):
    """One agent's stance toward one pitch. At most one row per (pitch, agent)."""
    id: str = ""
    pitch_id: str
    agent_id: str
    status: InterestStatus = InterestStatus.INTERESTED
    message: Optional[str] = None
    audit_log: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_INTEREST_STATUSES


class ContractTerms(BaseModel):
    """Structured contract terms. Financial formulas are not applied here."""
    contract_value: float = 0.0
    currency: Optional[str] = None
    transfer_type: TransferType = TransferType.PERMANENT
    duration: Optional[str] = None
    salary: Optional[float] = None
    sign_on_bonus: Optional[float] = None
    performance_bonus: Optional[float] = None
    relocation_support: Optional[float] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Contract(BaseModel):
    """The binding negotiation artifact for a pitch."""
    id: str = ""
    pitch_id: str
    agent_id: str
    team_id: str
    status: ContractStatus = ContractStatus.DRAFT
    deal_stage: DealStage = DealStage.CONTRACT_NEGOTIATION
    contract_value: float = 0.0
    currency: str = "USD"
    contract_details: dict[str, Any] = Field(default_factory=dict)
    financial_summary: dict[str, Any] = Field(default_factory=dict)
    # party -> {"signed_by", "signed_at"}
    signatures: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_CONTRACT_STATUSES


class ContractWorkflowStep(BaseModel):
    id: str = ""
    contract_id: str
    step_type: str
    from_status: Optional[ContractStatus] = None
    to_status: ContractStatus
    completed_by: str
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    id: str = ""
    sender_id: str
    receiver_id: str
    pitch_id: Optional[str] = None
    contract_id: Optional[str] = None
    message_type: MessageType = MessageType.GENERAL
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = ""
    user_id: str
    title: str
    message: str
    type: NotificationType
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class ShortlistEntry(BaseModel):
    id: str = ""
    pitch_id: str
    agent_id: str
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Request / filter models
# ---------------------------------------------------------------------------

class PitchFilters(BaseModel):
    """Filters for listing pitches."""
    team_id: Optional[str] = None
    player_id: Optional[str] = None
    transfer_type: Optional[TransferType] = None
    deal_stages: list[DealStage] = Field(default_factory=list)
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    include_inactive: bool = False
    limit: int = 50
    offset: int = 0


class PitchCreate(BaseModel):
    player_id: str
    player_name: Optional[str] = None
    transfer_type: TransferType = TransferType.PERMANENT
    asking_price: float = 0.0
    currency: str = "USD"
    description: Optional[str] = None
    expires_at: Optional[datetime] = None


class InterestRequest(BaseModel):
    status: InterestStatus = InterestStatus.INTERESTED
    message: Optional[str] = None


class ContractCreate(BaseModel):
    pitch_id: str
    agent_id: str
    terms: ContractTerms = Field(default_factory=ContractTerms)


class ContractActionRequest(BaseModel):
    action: ContractAction
    notes: Optional[str] = None
    terms: Optional[ContractTerms] = None


class MessageCreate(BaseModel):
    receiver_id: str
    content: str
    pitch_id: Optional[str] = None
