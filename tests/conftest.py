"""
Shared fixtures for the workflow tests.

Everything runs against the in-memory store. pytest-asyncio is not used:
fixtures and tests drive coroutines with ``asyncio.run``, which is safe here
because MemoryStore holds no loop-bound resources.
"""
import asyncio
from types import SimpleNamespace

import pytest

from pitchdesk.core.config import Settings, get_settings
from pitchdesk.core.events import EventBus, WorkflowEvent
from pitchdesk.models.schemas import Agent, Caller, PitchCreate, Profile, Team, UserType
from pitchdesk.services.store import MemoryStore
from pitchdesk.services.workflow import Workflow


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps and no stray .env values leaking into tests."""
    monkeypatch.setenv("RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("SENDGRID_API_KEY", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(
        retry_backoff_seconds=0,
        expiry_sweep_enabled=False,
        sendgrid_api_key="",
        database_url="",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def workflow(store, settings):
    return Workflow(store, settings)


async def seed_world(wf: Workflow) -> SimpleNamespace:
    store = wf.store
    await store.insert_profile(
        Profile(id="team-owner-1", user_type=UserType.TEAM, full_name="Nordvik FC", email="office@nordvik.example")
    )
    team = await store.insert_team(Team(profile_id="team-owner-1", team_name="Nordvik FC", country="NO"))
    await store.insert_profile(Profile(id="team-owner-2", user_type=UserType.TEAM, full_name="Riverside United"))
    other_team = await store.insert_team(Team(profile_id="team-owner-2", team_name="Riverside United"))

    await store.insert_profile(Profile(id="agent-profile-1", user_type=UserType.AGENT, full_name="Mara Lind"))
    agent1 = await store.insert_agent(Agent(profile_id="agent-profile-1", agency_name="Lind Sports"))
    await store.insert_profile(Profile(id="agent-profile-2", user_type=UserType.AGENT, full_name="Tomas Okafor"))
    agent2 = await store.insert_agent(Agent(profile_id="agent-profile-2", agency_name="Okafor Management"))

    team_caller = Caller(profile_id="team-owner-1", user_type=UserType.TEAM)
    pitch = await wf.pitches.create_pitch(
        team_caller,
        PitchCreate(player_id="player-9", player_name="Jonas Berg", asking_price=2_500_000, currency="EUR"),
    )
    return SimpleNamespace(
        team=team,
        other_team=other_team,
        agent1=agent1,
        agent2=agent2,
        pitch=pitch,
        team_caller=team_caller,
        other_team_caller=Caller(profile_id="team-owner-2", user_type=UserType.TEAM),
        agent1_caller=Caller(profile_id="agent-profile-1", user_type=UserType.AGENT),
        agent2_caller=Caller(profile_id="agent-profile-2", user_type=UserType.AGENT),
    )


@pytest.fixture
def world(workflow):
    return run(seed_world(workflow))


def record_events(bus: EventBus) -> list[WorkflowEvent]:
    seen: list[WorkflowEvent] = []

    async def _record(event: WorkflowEvent) -> None:
        seen.append(event)

    bus.subscribe(WorkflowEvent, _record)
    return seen


@pytest.fixture
def events(workflow):
    return record_events(workflow.bus)
