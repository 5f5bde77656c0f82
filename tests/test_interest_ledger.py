"""Tests for the interest ledger: uniqueness, idempotence, reactivation and permissions."""
import pytest

from conftest import run
from pitchdesk.core.errors import Forbidden, InvalidTransition, NotFound, PitchUnavailable
from pitchdesk.core.events import InterestCreated, InterestReactivated, InterestUpdated, InterestWithdrawn
from pitchdesk.models.schemas import DealStage, InterestStatus, MessageType


class TestExpressInterest:
    def test_first_expression_creates_row_and_counts(self, workflow, world, events):
        interest = run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id, message="Keen on Jonas"))

        assert interest.status == InterestStatus.INTERESTED
        assert interest.message == "Keen on Jonas"
        assert len(interest.audit_log) == 1
        pitch = run(workflow.pitches.get_pitch(world.pitch.id))
        assert pitch.interest_count == 1
        assert isinstance(events[-1], InterestCreated)

    def test_repeated_expression_keeps_single_row(self, workflow, world, events):
        first = run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        second = run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id, InterestStatus.REQUESTED))

        assert first.id == second.id
        assert second.status == InterestStatus.REQUESTED
        rows = run(workflow.store.list_interests(pitch_id=world.pitch.id))
        assert len(rows) == 1
        assert run(workflow.pitches.get_pitch(world.pitch.id)).interest_count == 1
        assert isinstance(events[-1], InterestUpdated)

    def test_three_calls_produce_one_interest_message(self, workflow, world):
        for _ in range(3):
            run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id, message="Still keen"))

        messages = run(workflow.store.list_messages(pitch_id=world.pitch.id, message_type=MessageType.INTEREST))
        assert len(messages) == 1
        assert messages[0].sender_id == "agent-profile-1"
        assert messages[0].receiver_id == "team-owner-1"
        assert run(workflow.pitches.get_pitch(world.pitch.id)).message_count == 1

    def test_agent_cannot_open_negotiation_directly(self, workflow, world):
        with pytest.raises(InvalidTransition):
            run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id, InterestStatus.NEGOTIATING))
        assert run(workflow.store.get_interest(world.pitch.id, world.agent1.id)) is None

    def test_unknown_pitch_is_not_found(self, workflow, world):
        with pytest.raises(NotFound):
            run(workflow.ledger.express_interest("no-such-pitch", world.agent1.id))

    def test_withdrawn_pitch_rejects_interest(self, workflow, world):
        run(workflow.pitches.withdraw_pitch(world.team_caller, world.pitch.id))
        with pytest.raises(PitchUnavailable) as exc:
            run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        assert exc.value.context["status"] == "withdrawn"


class TestCancelInterest:
    def test_cancel_is_idempotent(self, workflow, world, events):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        first = run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))
        events_after_first = len(events)
        notifications_after_first = len(run(workflow.store.list_notifications("team-owner-1")))

        second = run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))

        assert first.status == second.status == InterestStatus.WITHDRAWN
        assert second.audit_log == first.audit_log
        assert len(events) == events_after_first
        assert len(run(workflow.store.list_notifications("team-owner-1"))) == notifications_after_first
        assert run(workflow.pitches.get_pitch(world.pitch.id)).interest_count == 0

    def test_cancel_without_interest_is_not_found(self, workflow, world):
        with pytest.raises(NotFound):
            run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))

    def test_cancel_notifies_team(self, workflow, world, events):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))

        titles = [n.title for n in run(workflow.store.list_notifications("team-owner-1"))]
        assert "Interest Withdrawn" in titles
        assert isinstance(events[-1], InterestWithdrawn)


class TestReactivation:
    def test_expressing_after_withdrawal_reactivates_same_row(self, workflow, world, events):
        original = run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))

        revived = run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))

        assert revived.id == original.id
        assert revived.status == InterestStatus.INTERESTED
        assert len(revived.audit_log) == 3
        assert isinstance(events[-1], InterestReactivated)
        assert events[-1].previous_status == InterestStatus.WITHDRAWN
        pitch = run(workflow.pitches.get_pitch(world.pitch.id))
        assert pitch.interest_count == 1
        assert pitch.deal_stage == DealStage.INTEREST

    def test_reactivation_sends_fresh_notification(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))

        titles = [n.title for n in run(workflow.store.list_notifications("team-owner-1"))]
        assert titles.count("Agent Interest Renewed") == 1
        assert titles.count("New Agent Interest") == 1


class TestTeamActions:
    def test_start_negotiation_by_owner(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        interest = run(workflow.ledger.start_negotiation(world.team_caller, world.pitch.id, world.agent1.id))

        assert interest.status == InterestStatus.NEGOTIATING
        assert run(workflow.pitches.get_pitch(world.pitch.id)).deal_stage == DealStage.DISCUSSION
        openers = run(workflow.store.list_messages(pitch_id=world.pitch.id, message_type=MessageType.NEGOTIATION))
        assert len(openers) == 1
        assert openers[0].sender_id == "team-owner-1"

    def test_start_negotiation_twice_sends_one_opener(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.start_negotiation(world.team_caller, world.pitch.id, world.agent1.id))
        run(workflow.ledger.start_negotiation(world.team_caller, world.pitch.id, world.agent1.id))

        openers = run(workflow.store.list_messages(pitch_id=world.pitch.id, message_type=MessageType.NEGOTIATION))
        assert len(openers) == 1

    def test_other_team_cannot_start_negotiation(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        with pytest.raises(Forbidden):
            run(workflow.ledger.start_negotiation(world.other_team_caller, world.pitch.id, world.agent1.id))

    def test_agent_cannot_start_negotiation(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        with pytest.raises(Forbidden):
            run(workflow.ledger.start_negotiation(world.agent1_caller, world.pitch.id, world.agent1.id))

    def test_reject_notifies_agent_and_is_idempotent(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.reject_interest(world.team_caller, world.pitch.id, world.agent1.id))
        again = run(workflow.ledger.reject_interest(world.team_caller, world.pitch.id, world.agent1.id))

        assert again.status == InterestStatus.REJECTED
        titles = [n.title for n in run(workflow.store.list_notifications("agent-profile-1"))]
        assert titles == ["Interest Declined"]
        assert run(workflow.pitches.get_pitch(world.pitch.id)).interest_count == 0

    def test_reject_after_withdrawal_is_invalid(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))
        with pytest.raises(InvalidTransition):
            run(workflow.ledger.reject_interest(world.team_caller, world.pitch.id, world.agent1.id))


class TestProjections:
    def test_inactive_rows_hidden_by_default(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.ledger.express_interest(world.pitch.id, world.agent2.id))
        run(workflow.ledger.cancel_interest(world.pitch.id, world.agent2.id))

        active = run(workflow.ledger.list_interest_for_pitch(world.pitch.id))
        everything = run(workflow.ledger.list_interest_for_pitch(world.pitch.id, include_inactive=True))

        assert [i.agent_id for i in active] == [world.agent1.id]
        assert len(everything) == 2
        assert run(workflow.ledger.list_interest_for_agent(world.agent2.id)) == []
        assert len(run(workflow.ledger.list_interest_for_agent(world.agent2.id, include_inactive=True))) == 1

    def test_pitch_listing_requires_owner(self, workflow, world):
        with pytest.raises(Forbidden):
            run(workflow.ledger.list_interest_for_pitch(world.pitch.id, caller=world.other_team_caller))


class TestShortlist:
    def test_shortlist_counts_once(self, workflow, world):
        assert run(workflow.ledger.add_to_shortlist(world.pitch.id, world.agent1.id)) is True
        assert run(workflow.ledger.add_to_shortlist(world.pitch.id, world.agent1.id)) is False
        assert run(workflow.pitches.get_pitch(world.pitch.id)).shortlist_count == 1

        assert run(workflow.ledger.remove_from_shortlist(world.pitch.id, world.agent1.id)) is True
        assert run(workflow.ledger.remove_from_shortlist(world.pitch.id, world.agent1.id)) is False
        assert run(workflow.pitches.get_pitch(world.pitch.id)).shortlist_count == 0
