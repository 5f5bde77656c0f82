"""Contract lifecycle: single active contract, transition table, actors, completion."""
import pytest

from conftest import run
from pitchdesk.core.errors import (
    DuplicateContract, Forbidden, InvalidTransition, PitchClosed,
)
from pitchdesk.models.schemas import (
    ContractAction, ContractStatus, ContractTerms, DealStage, InterestStatus, MessageType,
    NotificationType, PitchStatus, UserType,
)
from pitchdesk.services.contracts import TRANSITIONS, actor_for, next_status


def open_contract(workflow, world, agent=None):
    agent = agent or world.agent1
    run(workflow.ledger.express_interest(world.pitch.id, agent.id))
    return run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, agent.id))


def drive(workflow, caller, contract_id, *actions):
    contract = None
    for action in actions:
        contract = run(workflow.contracts.advance(caller, contract_id, action))
    return contract


class TestTransitionTable:
    def test_happy_path_edges(self):
        path = [
            (ContractStatus.DRAFT, ContractAction.SEND, ContractStatus.SENT_TO_AGENT),
            (ContractStatus.SENT_TO_AGENT, ContractAction.APPROVE, ContractStatus.AGENT_REVIEWED),
            (ContractStatus.AGENT_REVIEWED, ContractAction.FINALIZE, ContractStatus.TEAM_REVIEWED),
            (ContractStatus.TEAM_REVIEWED, ContractAction.APPROVE, ContractStatus.SIGNED),
            (ContractStatus.SIGNED, ContractAction.COMPLETE, ContractStatus.COMPLETED),
        ]
        for current, action, expected in path:
            assert TRANSITIONS[(current, action)] == expected

    def test_terminal_states_have_no_exits(self):
        for action in ContractAction:
            assert next_status(ContractStatus.COMPLETED, action) is None
            assert next_status(ContractStatus.CANCELLED, action) is None

    def test_cancel_reaches_cancelled_from_review(self):
        assert next_status(ContractStatus.AGENT_REVIEWED, ContractAction.CANCEL) == ContractStatus.CANCELLED

    def test_agent_owns_the_first_review(self):
        assert actor_for(ContractStatus.SENT_TO_AGENT, ContractAction.APPROVE) == UserType.AGENT
        assert actor_for(ContractStatus.TEAM_REVIEWED, ContractAction.APPROVE) == UserType.TEAM
        assert actor_for(ContractStatus.PARTIALLY_SIGNED, ContractAction.SIGN) == UserType.AGENT
        assert actor_for(ContractStatus.DRAFT, ContractAction.SEND) == UserType.TEAM


class TestCreateContract:
    def test_creation_promotes_interest_and_stage(self, workflow, world):
        contract = open_contract(workflow, world)

        assert contract.status == ContractStatus.DRAFT
        assert contract.contract_value == 2_500_000
        assert contract.currency == "EUR"
        interest = run(workflow.store.get_interest(world.pitch.id, world.agent1.id))
        assert interest.status == InterestStatus.NEGOTIATING
        assert run(workflow.pitches.get_pitch(world.pitch.id)).deal_stage == DealStage.CONTRACT_NEGOTIATION
        steps = run(workflow.contracts.get_workflow_steps(world.team_caller, contract.id))
        assert [s.step_type for s in steps] == ["draft_created"]
        titles = [n.title for n in run(workflow.store.list_notifications("agent-profile-1"))]
        assert "Contract Created" in titles

    def test_second_active_contract_is_rejected_without_side_effects(self, workflow, world):
        first = open_contract(workflow, world)
        run(workflow.ledger.express_interest(world.pitch.id, world.agent2.id))

        with pytest.raises(DuplicateContract) as exc:
            run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent2.id))

        assert exc.value.context["existing_contract_id"] == first.id
        assert len(run(workflow.store.list_contracts(pitch_id=world.pitch.id))) == 1
        other = run(workflow.store.get_interest(world.pitch.id, world.agent2.id))
        assert other.status == InterestStatus.INTERESTED

    def test_requires_active_interest(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent2.id))
        with pytest.raises(InvalidTransition):
            run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id))

    def test_requires_some_interest_on_pitch(self, workflow, world):
        with pytest.raises(InvalidTransition) as exc:
            run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id))
        assert exc.value.context["current_state"] == "pitch"

    def test_only_owning_team_creates(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        with pytest.raises(Forbidden):
            run(workflow.contracts.create_contract(world.other_team_caller, world.pitch.id, world.agent1.id))
        with pytest.raises(Forbidden):
            run(workflow.contracts.create_contract(world.agent1_caller, world.pitch.id, world.agent1.id))

    def test_explicit_terms_are_kept(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        terms = ContractTerms(contract_value=1_800_000, currency="EUR", duration="3 years", salary=400_000)
        contract = run(
            workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id, terms=terms)
        )
        assert contract.contract_value == 1_800_000
        assert contract.contract_details["duration"] == "3 years"
        assert contract.financial_summary["total_value"] == 2_200_000

    def test_currency_defaults_to_pitch(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        contract = run(workflow.contracts.create_contract(
            world.team_caller, world.pitch.id, world.agent1.id, terms=ContractTerms(contract_value=2_000_000)
        ))

        assert contract.currency == "EUR"
        assert contract.financial_summary["currency"] == "EUR"
        assert contract.contract_details["currency"] == "EUR"


class TestAdvance:
    def test_full_path_to_completion(self, workflow, world):
        contract = open_contract(workflow, world)

        drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.APPROVE)
        drive(workflow, world.team_caller, contract.id, ContractAction.FINALIZE, ContractAction.APPROVE)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.SIGN)
        done = drive(workflow, world.team_caller, contract.id, ContractAction.COMPLETE)

        assert done.status == ContractStatus.COMPLETED
        assert done.deal_stage == DealStage.COMPLETED
        assert done.financial_summary["service_charge_rate"] == 0.15
        assert done.financial_summary["service_charge_amount"] == 375_000
        pitch = run(workflow.pitches.get_pitch(world.pitch.id))
        assert pitch.status == PitchStatus.COMPLETED
        assert pitch.deal_stage == DealStage.COMPLETED

        steps = run(workflow.contracts.get_workflow_steps(world.agent1_caller, contract.id))
        assert [s.to_status for s in steps] == [
            ContractStatus.DRAFT,
            ContractStatus.SENT_TO_AGENT,
            ContractStatus.AGENT_REVIEWED,
            ContractStatus.TEAM_REVIEWED,
            ContractStatus.PARTIALLY_SIGNED,
            ContractStatus.SIGNED,
            ContractStatus.COMPLETED,
        ]
        for profile_id in ("agent-profile-1", "team-owner-1"):
            kinds = [n.type for n in run(workflow.store.list_notifications(profile_id))]
            assert NotificationType.SUCCESS in kinds

    def test_completed_pitch_is_closed_to_everything(self, workflow, world):
        contract = open_contract(workflow, world)
        drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.APPROVE)
        drive(workflow, world.team_caller, contract.id, ContractAction.FINALIZE, ContractAction.APPROVE)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.SIGN)
        drive(workflow, world.team_caller, contract.id, ContractAction.COMPLETE)

        with pytest.raises(PitchClosed):
            run(workflow.ledger.express_interest(world.pitch.id, world.agent2.id))
        with pytest.raises(PitchClosed):
            run(workflow.ledger.cancel_interest(world.pitch.id, world.agent1.id))
        with pytest.raises(PitchClosed):
            run(workflow.contracts.advance(world.team_caller, contract.id, ContractAction.CANCEL))
        with pytest.raises(PitchClosed):
            run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id))

    def test_action_not_in_table_is_invalid(self, workflow, world):
        contract = open_contract(workflow, world)
        with pytest.raises(InvalidTransition) as exc:
            run(workflow.contracts.advance(world.team_caller, contract.id, ContractAction.COMPLETE))
        assert exc.value.context["current_state"] == "draft"
        assert exc.value.context["attempted"] == "complete"

    def test_wrong_party_is_forbidden(self, workflow, world):
        contract = open_contract(workflow, world)
        with pytest.raises(Forbidden):
            run(workflow.contracts.advance(world.agent1_caller, contract.id, ContractAction.SEND))
        drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
        with pytest.raises(Forbidden):
            run(workflow.contracts.advance(world.team_caller, contract.id, ContractAction.APPROVE))
        with pytest.raises(Forbidden):
            run(workflow.contracts.advance(world.agent2_caller, contract.id, ContractAction.APPROVE))

    def test_revision_loop_returns_to_draft_with_new_terms(self, workflow, world):
        contract = open_contract(workflow, world)
        drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
        bounced = drive(workflow, world.agent1_caller, contract.id, ContractAction.REQUEST_CHANGES)
        assert bounced.status == ContractStatus.REVISION_REQUESTED

        revised = run(
            workflow.contracts.advance(
                world.team_caller,
                contract.id,
                ContractAction.REVISE,
                notes="Raised the fee",
                terms=ContractTerms(contract_value=2_750_000),
            )
        )
        assert revised.status == ContractStatus.DRAFT
        assert revised.contract_value == 2_750_000
        assert revised.currency == "EUR"
        steps = run(workflow.contracts.get_workflow_steps(world.team_caller, contract.id))
        assert steps[-1].notes == "Raised the fee"

    def test_cancel_frees_pitch_for_new_contract(self, workflow, world):
        contract = open_contract(workflow, world)
        cancelled = drive(workflow, world.team_caller, contract.id, ContractAction.CANCEL)
        assert cancelled.status == ContractStatus.CANCELLED

        run(workflow.ledger.express_interest(world.pitch.id, world.agent2.id))
        second = run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent2.id))
        assert second.status == ContractStatus.DRAFT
        assert run(workflow.pitches.get_pitch(world.pitch.id)).deal_stage == DealStage.CONTRACT_NEGOTIATION

    def test_counterparty_is_notified(self, workflow, world):
        contract = open_contract(workflow, world)
        drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.APPROVE)

        agent_titles = [n.title for n in run(workflow.store.list_notifications("agent-profile-1"))]
        team_titles = [n.title for n in run(workflow.store.list_notifications("team-owner-1"))]
        assert "Contract Ready for Review" in agent_titles
        assert "Contract Approved" in team_titles


def reach_team_review(workflow, world):
    contract = open_contract(workflow, world)
    drive(workflow, world.team_caller, contract.id, ContractAction.SEND)
    drive(workflow, world.agent1_caller, contract.id, ContractAction.APPROVE)
    drive(workflow, world.team_caller, contract.id, ContractAction.FINALIZE)
    return contract


class TestSignatures:
    def test_team_signature_alone_is_partial(self, workflow, world):
        contract = reach_team_review(workflow, world)

        partial = drive(workflow, world.team_caller, contract.id, ContractAction.APPROVE)

        assert partial.status == ContractStatus.PARTIALLY_SIGNED
        assert set(partial.signatures) == {"team"}
        assert partial.signatures["team"]["signed_by"] == "team-owner-1"
        with pytest.raises(InvalidTransition):
            run(workflow.contracts.advance(world.team_caller, contract.id, ContractAction.COMPLETE))

    def test_either_party_may_sign_first(self, workflow, world):
        contract = reach_team_review(workflow, world)

        partial = drive(workflow, world.agent1_caller, contract.id, ContractAction.SIGN)
        assert partial.status == ContractStatus.PARTIALLY_SIGNED
        signed = drive(workflow, world.team_caller, contract.id, ContractAction.APPROVE)

        assert signed.status == ContractStatus.SIGNED
        assert set(signed.signatures) == {"team", "agent"}
        titles = [n.title for n in run(workflow.store.list_notifications("agent-profile-1"))]
        assert "Contract Fully Signed" in titles

    def test_party_cannot_sign_twice(self, workflow, world):
        contract = reach_team_review(workflow, world)
        drive(workflow, world.agent1_caller, contract.id, ContractAction.SIGN)

        with pytest.raises(InvalidTransition) as exc:
            run(workflow.contracts.advance(world.agent1_caller, contract.id, ContractAction.SIGN))
        assert exc.value.context["current_state"] == "partially_signed"
        assert run(workflow.contracts.require_contract(contract.id)).status == ContractStatus.PARTIALLY_SIGNED

    def test_only_the_contract_agent_signs(self, workflow, world):
        contract = reach_team_review(workflow, world)
        with pytest.raises(Forbidden):
            run(workflow.contracts.advance(world.team_caller, contract.id, ContractAction.SIGN))
        with pytest.raises(Forbidden):
            run(workflow.contracts.advance(world.agent2_caller, contract.id, ContractAction.SIGN))


class TestContractMessages:
    def test_parties_can_talk(self, workflow, world):
        contract = open_contract(workflow, world)
        run(workflow.contracts.post_contract_message(world.agent1_caller, contract.id, "Can we add a relocation clause?"))
        run(workflow.contracts.post_contract_message(world.team_caller, contract.id, "Yes, revised draft coming."))

        messages = run(workflow.contracts.list_contract_messages(world.team_caller, contract.id))
        assert [m.receiver_id for m in messages] == ["team-owner-1", "agent-profile-1"]
        assert all(m.message_type == MessageType.CONTRACT for m in messages)

    def test_outsiders_cannot_read_or_post(self, workflow, world):
        contract = open_contract(workflow, world)
        with pytest.raises(Forbidden):
            run(workflow.contracts.post_contract_message(world.agent2_caller, contract.id, "Hello"))
        with pytest.raises(Forbidden):
            run(workflow.contracts.get_for_party(world.other_team_caller, contract.id))

    def test_listing_by_owner(self, workflow, world):
        contract = open_contract(workflow, world)
        assert [c.id for c in run(workflow.contracts.list_contracts("team-owner-1", UserType.TEAM))] == [contract.id]
        assert [c.id for c in run(workflow.contracts.list_contracts("agent-profile-1", UserType.AGENT))] == [contract.id]
        assert run(workflow.contracts.list_contracts("agent-profile-2", UserType.AGENT)) == []
