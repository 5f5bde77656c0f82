"""Notification / Message Dispatcher.

Outbound side effects of workflow transitions: conversation messages between
the parties and notifications for whoever is on the receiving end.

First-touch messages (the agent's interest note, the team's negotiation
opener) are upserted on (sender, receiver, pitch, type) so that retried or
repeated requests never produce a second copy. Notifications are
fire-and-forget: sink failures are retried once and logged. Event handlers
run under the same single retry, and a handler that still fails is logged
rather than propagated back into the transition that triggered it.
"""
import logging
from typing import Any, Awaitable, Callable, Optional

from pitchdesk.core.events import (
    ContractAdvanced, ContractCompleted, ContractCreated, EventBus, InterestCreated,
    InterestEvent, InterestReactivated, InterestRejected, InterestUpdated, InterestWithdrawn, WorkflowEvent,
)
from pitchdesk.core.retry import retry_once
from pitchdesk.models.schemas import (
    ContractAction, ContractStatus, InterestStatus, Message, MessageType, Notification, NotificationType, Pitch,
)
from pitchdesk.services.pitch_store import PitchStore
from pitchdesk.services.profiles import ProfileDirectory
from pitchdesk.services.sinks import NotificationSink
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

_CONTRACT_UPDATES = {
    ContractAction.SEND: ("Contract Ready for Review", "The contract for {player} has been sent to you for review."),
    ContractAction.APPROVE: ("Contract Approved", "The contract for {player} has been approved."),
    ContractAction.FINALIZE: ("Contract Finalized", "Final terms for {player} are ready for signature."),
    ContractAction.SIGN: ("Contract Signed", "The agent has signed the contract for {player}."),
    ContractAction.REQUEST_CHANGES: ("Changes Requested", "Changes were requested on the contract for {player}."),
    ContractAction.REJECT: ("Contract Rejected", "The contract for {player} was rejected."),
    ContractAction.REVISE: ("Contract Revised", "The contract for {player} is back in draft with revised terms."),
    ContractAction.CANCEL: ("Contract Cancelled", "The contract for {player} has been cancelled."),
}


def _player(pitch: Optional[Pitch]) -> str:
    if pitch is None:
        return "your player"
    return pitch.player_name or f"player {pitch.player_id}"


class MessageDispatcher:
    def __init__(
        self,
        store: WorkflowStore,
        pitches: PitchStore,
        profiles: ProfileDirectory,
        sinks: list[NotificationSink],
    ):
        self.store = store
        self.pitches = pitches
        self.profiles = profiles
        self.sinks = sinks

    def register(self, bus: EventBus) -> None:
        bus.subscribe(InterestCreated, self._guarded(self.on_interest_opened))
        bus.subscribe(InterestReactivated, self._guarded(self.on_interest_opened))
        bus.subscribe(InterestUpdated, self._guarded(self.on_interest_updated))
        bus.subscribe(InterestWithdrawn, self._guarded(self.on_interest_withdrawn))
        bus.subscribe(InterestRejected, self._guarded(self.on_interest_rejected))
        bus.subscribe(ContractCreated, self._guarded(self.on_contract_created))
        bus.subscribe(ContractAdvanced, self._guarded(self.on_contract_advanced))
        bus.subscribe(ContractCompleted, self._guarded(self.on_contract_completed))

    def _guarded(self, handler: Callable[[WorkflowEvent], Awaitable[None]]):
        """
        Wrap an event handler so its side effects are retried once and its
        failures stay out of the transition that published the event.

        Re-running a handler is safe: first-touch messages are upserted and
        ``notify`` never raises, so nothing already delivered is sent twice.
        """
        label = f"dispatcher.{handler.__name__}"

        async def run(event: WorkflowEvent) -> None:
            try:
                await retry_once(lambda: handler(event), label)
            except Exception as e:
                logger.error(
                    f"{label} gave up on {type(event).__name__} for pitch {event.pitch_id}: {e}",
                    exc_info=True,
                )

        return run

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        kind: MessageType,
        sender_id: str,
        receiver_id: str,
        pitch_id: Optional[str],
        content: str,
        contract_id: Optional[str] = None,
        first_touch: bool = False,
    ) -> Message:
        """
        Record a message between two parties.

        With ``first_touch`` (always the case for ``interest`` messages) an
        existing message with the same sender, receiver, pitch and kind is
        returned instead of inserting another.
        """
        if first_touch or kind == MessageType.INTEREST:
            existing = await self.store.find_message(sender_id, receiver_id, pitch_id, kind)
            if existing is not None:
                logger.debug(f"First-touch {kind.value} message already exists for pitch {pitch_id}")
                return existing

        message = await self.store.insert_message(
            Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                pitch_id=pitch_id,
                contract_id=contract_id,
                message_type=kind,
                content=content,
            )
        )
        if pitch_id:
            await self.pitches.update_counters(pitch_id, {"message_count": 1})
        return message

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[Notification]:
        """Fan a notification out to every sink. Never raises."""
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            metadata=metadata or {},
        )
        delivered = False
        for sink in self.sinks:
            for attempt in (1, 2):
                try:
                    await sink.create_notification(notification)
                    delivered = True
                    break
                except Exception as e:
                    logger.warning(
                        f"Notification '{title}' to {user_id} via {sink.name} failed "
                        f"(attempt {attempt}/2): {e}"
                    )
        return notification if delivered else None

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        return await self.store.list_notifications(user_id, unread_only=unread_only, limit=limit)

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        return await self.store.mark_notification_read(notification_id, user_id)

    async def mark_all_read(self, user_id: str) -> int:
        count = await self.store.mark_all_notifications_read(user_id)
        logger.debug(f"Marked {count} notifications read for {user_id}")
        return count

    # ------------------------------------------------------------------
    # Interest events
    # ------------------------------------------------------------------

    async def _interest_parties(self, event: InterestEvent) -> tuple[Pitch, str, str]:
        pitch = await self.pitches.require_pitch(event.pitch_id)
        agent_profile = await self.profiles.agent_profile_id(event.interest.agent_id)
        team_owner = await self.profiles.team_owner_id(pitch.team_id)
        return pitch, agent_profile, team_owner

    async def _upsert_interest_message(self, event: InterestEvent, pitch: Pitch, agent_profile: str, team_owner: str):
        interest = event.interest
        content = interest.message or f"Interested in {_player(pitch)} ({interest.status.value})."
        await self.dispatch(MessageType.INTEREST, agent_profile, team_owner, pitch.id, content)

    async def on_interest_opened(self, event: InterestEvent) -> None:
        pitch, agent_profile, team_owner = await self._interest_parties(event)
        await self._upsert_interest_message(event, pitch, agent_profile, team_owner)

        agent_name = await self.profiles.display_name(agent_profile, "An agent")
        renewed = isinstance(event, InterestReactivated)
        await self.notify(
            team_owner,
            "Agent Interest Renewed" if renewed else "New Agent Interest",
            f"{agent_name} {'renewed' if renewed else 'expressed'} interest in {_player(pitch)}.",
            NotificationType.AGENT_INTEREST,
            {"pitch_id": pitch.id, "interest_id": event.interest.id, "status": event.interest.status.value},
        )

    async def on_interest_updated(self, event: InterestUpdated) -> None:
        pitch, agent_profile, team_owner = await self._interest_parties(event)
        await self._upsert_interest_message(event, pitch, agent_profile, team_owner)

        status = event.interest.status
        if status == event.previous_status:
            return

        if status == InterestStatus.NEGOTIATING:
            team_name = await self.profiles.display_name(team_owner, "The team")
            await self.dispatch(
                MessageType.NEGOTIATION,
                team_owner,
                agent_profile,
                pitch.id,
                f"{team_name} would like to open negotiations for {_player(pitch)}.",
                first_touch=True,
            )
            await self.notify(
                agent_profile,
                "Negotiation Started",
                f"Negotiations for {_player(pitch)} are open.",
                NotificationType.NEGOTIATION,
                {"pitch_id": pitch.id, "interest_id": event.interest.id},
            )
        else:
            await self.notify(
                team_owner,
                "Agent Interest Updated",
                f"Interest in {_player(pitch)} is now {status.value}.",
                NotificationType.AGENT_INTEREST,
                {"pitch_id": pitch.id, "interest_id": event.interest.id, "status": status.value},
            )

    async def on_interest_withdrawn(self, event: InterestWithdrawn) -> None:
        pitch, agent_profile, team_owner = await self._interest_parties(event)
        agent_name = await self.profiles.display_name(agent_profile, "An agent")
        await self.notify(
            team_owner,
            "Interest Withdrawn",
            f"{agent_name} withdrew interest in {_player(pitch)}.",
            NotificationType.AGENT_INTEREST,
            {"pitch_id": pitch.id, "interest_id": event.interest.id},
        )

    async def on_interest_rejected(self, event: InterestRejected) -> None:
        pitch, agent_profile, _ = await self._interest_parties(event)
        await self.notify(
            agent_profile,
            "Interest Declined",
            f"The team declined your interest in {_player(pitch)}.",
            NotificationType.AGENT_INTEREST,
            {"pitch_id": pitch.id, "interest_id": event.interest.id},
        )

    # ------------------------------------------------------------------
    # Contract events
    # ------------------------------------------------------------------

    async def _contract_parties(self, contract) -> tuple[str, str]:
        agent_profile = await self.profiles.agent_profile_id(contract.agent_id)
        team_owner = await self.profiles.team_owner_id(contract.team_id)
        return agent_profile, team_owner

    async def on_contract_created(self, event: ContractCreated) -> None:
        contract = event.contract
        pitch = await self.pitches.get_pitch(event.pitch_id)
        agent_profile, _ = await self._contract_parties(contract)
        await self.notify(
            agent_profile,
            "Contract Created",
            f"A draft contract for {_player(pitch)} has been created.",
            NotificationType.CONTRACT_UPDATE,
            {"pitch_id": event.pitch_id, "contract_id": contract.id},
        )

    async def on_contract_advanced(self, event: ContractAdvanced) -> None:
        template = _CONTRACT_UPDATES.get(event.action)
        if template is None:
            # Completion is announced by on_contract_completed
            return
        contract = event.contract
        pitch = await self.pitches.get_pitch(event.pitch_id)
        agent_profile, team_owner = await self._contract_parties(contract)
        recipient = team_owner if event.actor_id == agent_profile else agent_profile
        title, body = template
        if contract.status == ContractStatus.SIGNED:
            title, body = "Contract Fully Signed", "Both parties have signed the contract for {player}."
        await self.notify(
            recipient,
            title,
            body.format(player=_player(pitch)),
            NotificationType.CONTRACT_UPDATE,
            {"pitch_id": event.pitch_id, "contract_id": contract.id, "status": contract.status.value},
        )

    async def on_contract_completed(self, event: ContractCompleted) -> None:
        contract = event.contract
        pitch = await self.pitches.get_pitch(event.pitch_id)
        metadata = {
            "pitch_id": event.pitch_id,
            "contract_id": contract.id,
            "financial_summary": contract.financial_summary,
        }
        for recipient in await self._contract_parties(contract):
            await self.notify(
                recipient,
                "Transfer Completed",
                f"The transfer of {_player(pitch)} is complete.",
                NotificationType.SUCCESS,
                metadata,
            )
