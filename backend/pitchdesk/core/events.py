"""Typed in-process event channel.

Components publish workflow events here instead of broadcasting string-keyed
refresh events. Subscribers are awaited in registration order before
``publish`` returns, so every side effect of a transition has completed by
the time the originating request answers.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from pitchdesk.models.schemas import AgentInterest, Contract, ContractAction, InterestStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkflowEvent:
    pitch_id: str
    occurred_at: datetime = field(default_factory=_now, compare=False)


@dataclass(frozen=True)
class InterestEvent(WorkflowEvent):
    interest: Optional[AgentInterest] = None
    previous_status: Optional[InterestStatus] = None


@dataclass(frozen=True)
class InterestCreated(InterestEvent):
    pass


@dataclass(frozen=True)
class InterestUpdated(InterestEvent):
    pass


@dataclass(frozen=True)
class InterestReactivated(InterestEvent):
    pass


@dataclass(frozen=True)
class InterestWithdrawn(InterestEvent):
    pass


@dataclass(frozen=True)
class InterestRejected(InterestEvent):
    pass


@dataclass(frozen=True)
class ContractEvent(WorkflowEvent):
    contract: Optional[Contract] = None
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class ContractCreated(ContractEvent):
    pass


@dataclass(frozen=True)
class ContractAdvanced(ContractEvent):
    action: Optional[ContractAction] = None


@dataclass(frozen=True)
class ContractCompleted(ContractEvent):
    pass


Handler = Callable[[WorkflowEvent], Awaitable[None]]


class EventBus:
    """Dispatches events to handlers subscribed to the event's class or a base class."""

    def __init__(self):
        self._handlers: list[tuple[type, Handler]] = []

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers.append((event_type, handler))

    async def publish(self, event: WorkflowEvent) -> None:
        logger.debug(f"Event {type(event).__name__} for pitch {event.pitch_id}")
        for event_type, handler in self._handlers:
            if isinstance(event, event_type):
                await handler(event)
