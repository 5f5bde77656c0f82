"""Pitch store adapter: expiry, withdrawal, conditional stage swaps, counters."""
from datetime import timedelta

import pytest

from conftest import run
from pitchdesk.core.errors import Forbidden, InvalidTransition, PitchUnavailable
from pitchdesk.models.schemas import DealStage, PitchCreate, PitchFilters, PitchStatus, utcnow
from pitchdesk.services.pitch_store import StageUpdate


def make_pitch(workflow, world, **overrides):
    data = {"player_id": "player-22", "player_name": "Ade Mensah", "asking_price": 900_000}
    data.update(overrides)
    return run(workflow.pitches.create_pitch(world.team_caller, PitchCreate(**data)))


class TestExpiry:
    def test_expiry_is_derived_on_read(self, workflow, world):
        stale = make_pitch(workflow, world, expires_at=utcnow() - timedelta(hours=1))

        pitch = run(workflow.pitches.get_pitch(stale.id))

        assert pitch.status == PitchStatus.EXPIRED
        assert pitch.deal_stage == DealStage.EXPIRED
        with pytest.raises(PitchUnavailable):
            run(workflow.ledger.express_interest(stale.id, world.agent1.id))

    def test_listing_hides_expired(self, workflow, world):
        stale = make_pitch(workflow, world, expires_at=utcnow() - timedelta(minutes=5))
        fresh = make_pitch(workflow, world, expires_at=utcnow() + timedelta(days=30))

        ids = [p.id for p in run(workflow.pitches.get_active_pitches())]

        assert stale.id not in ids
        assert fresh.id in ids
        assert world.pitch.id in ids

    def test_sweep_flips_only_stale_pitches(self, workflow, world):
        make_pitch(workflow, world, expires_at=utcnow() - timedelta(days=1))
        make_pitch(workflow, world, expires_at=utcnow() - timedelta(days=2))
        make_pitch(workflow, world, expires_at=utcnow() + timedelta(days=1))

        assert run(workflow.pitches.expire_stale_pitches()) == 2
        assert run(workflow.pitches.expire_stale_pitches()) == 0

    def test_contract_negotiation_outlives_expiry(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id))
        workflow.store.pitches[world.pitch.id].expires_at = utcnow() - timedelta(hours=1)

        assert run(workflow.pitches.expire_stale_pitches()) == 0
        pitch = run(workflow.pitches.get_pitch(world.pitch.id))
        assert pitch.status == PitchStatus.ACTIVE
        assert pitch.deal_stage == DealStage.CONTRACT_NEGOTIATION


class TestWithdrawPitch:
    def test_owner_withdraws(self, workflow, world):
        pitch = run(workflow.pitches.withdraw_pitch(world.team_caller, world.pitch.id))
        assert pitch.status == PitchStatus.WITHDRAWN
        # idempotent
        assert run(workflow.pitches.withdraw_pitch(world.team_caller, world.pitch.id)).status == PitchStatus.WITHDRAWN

    def test_other_team_cannot_withdraw(self, workflow, world):
        with pytest.raises(Forbidden):
            run(workflow.pitches.withdraw_pitch(world.other_team_caller, world.pitch.id))

    def test_active_contract_blocks_withdrawal(self, workflow, world):
        run(workflow.ledger.express_interest(world.pitch.id, world.agent1.id))
        contract = run(workflow.contracts.create_contract(world.team_caller, world.pitch.id, world.agent1.id))
        with pytest.raises(InvalidTransition) as exc:
            run(workflow.pitches.withdraw_pitch(world.team_caller, world.pitch.id))
        assert exc.value.context["contract_id"] == contract.id


class TestStageSwap:
    def test_swap_requires_expected_stage(self, workflow, world):
        assert run(
            workflow.pitches.advance_deal_stage(world.pitch.id, DealStage.INTEREST, DealStage.DISCUSSION)
        ) == StageUpdate.CONFLICT
        assert run(
            workflow.pitches.advance_deal_stage(world.pitch.id, DealStage.PITCH, DealStage.INTEREST)
        ) == StageUpdate.SUCCESS
        assert run(workflow.pitches.get_pitch(world.pitch.id)).deal_stage == DealStage.INTEREST


class TestCounters:
    def test_counters_never_go_negative(self, workflow, world):
        assert run(workflow.pitches.update_counters(world.pitch.id, {"interest_count": -3})) is True
        assert run(workflow.pitches.get_pitch(world.pitch.id)).interest_count == 0

    def test_counter_failure_is_swallowed(self, workflow, world):
        assert run(workflow.pitches.update_counters("missing", {"view_count": 1})) is False

    def test_views_are_counted(self, workflow, world):
        run(workflow.pitches.record_view(world.pitch.id))
        run(workflow.pitches.record_view(world.pitch.id))
        assert run(workflow.pitches.get_pitch(world.pitch.id)).view_count == 2

    def test_filters(self, workflow, world):
        make_pitch(workflow, world, asking_price=100_000)
        cheap = run(workflow.pitches.get_active_pitches(PitchFilters(max_price=500_000)))
        assert [p.asking_price for p in cheap] == [100_000]
