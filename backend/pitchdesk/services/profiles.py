"""Identity-side lookups and the "ensure agent profile exists" boundary step.

Authentication happens upstream; this module only resolves an authenticated
caller to the agent/team rows the workflow needs and checks ownership.
"""
import logging

from pitchdesk.core.errors import Conflict, Forbidden, NotFound
from pitchdesk.models.schemas import Agent, Caller, Pitch, Profile, Team, UserType
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)


class ProfileDirectory:
    def __init__(self, store: WorkflowStore, auto_provision: bool = True):
        self.store = store
        self.auto_provision = auto_provision

    async def ensure_agent_profile(self, caller: Caller) -> Agent:
        """
        Return the agent row for an agent caller, creating a minimal one if missing.

        Fabricating a business entity on first touch can hide onboarding bugs
        upstream, so every provisioning is logged at WARNING and the behaviour
        can be switched off with AUTO_PROVISION_PROFILES=false, in which case a
        missing agent row is a NotFound.
        """
        if caller.user_type != UserType.AGENT:
            raise Forbidden("Only agents can act on interest", profile_id=caller.profile_id)

        agent = await self.store.get_agent_by_profile(caller.profile_id)
        if agent is not None:
            return agent

        if not self.auto_provision:
            raise NotFound("No agent profile exists for caller", profile_id=caller.profile_id)

        logger.warning(f"Auto-provisioning agent profile for {caller.profile_id}: no agents row existed")
        if await self.store.get_profile(caller.profile_id) is None:
            await self.store.insert_profile(Profile(id=caller.profile_id, user_type=UserType.AGENT))
        try:
            return await self.store.insert_agent(Agent(profile_id=caller.profile_id, auto_provisioned=True))
        except Conflict:
            # A concurrent request provisioned it first
            agent = await self.store.get_agent_by_profile(caller.profile_id)
            if agent is None:
                raise
            return agent

    async def require_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound("Agent not found", agent_id=agent_id)
        return agent

    async def require_team(self, caller: Caller) -> Team:
        """The team row owned by a team caller."""
        if caller.user_type != UserType.TEAM:
            raise Forbidden("Only teams can perform this action", profile_id=caller.profile_id)
        team = await self.store.get_team_by_profile(caller.profile_id)
        if team is None:
            raise NotFound("No team profile exists for caller", profile_id=caller.profile_id)
        return team

    async def require_pitch_owner(self, caller: Caller, pitch: Pitch) -> Team:
        team = await self.require_team(caller)
        if team.id != pitch.team_id:
            raise Forbidden("Only the owning team can manage this pitch", pitch_id=pitch.id, team_id=team.id)
        return team

    async def team_owner_id(self, team_id: str) -> str:
        """Profile id of the user who owns a team."""
        team = await self.store.get_team(team_id)
        if team is None:
            raise NotFound("Team not found", team_id=team_id)
        return team.profile_id

    async def agent_profile_id(self, agent_id: str) -> str:
        return (await self.require_agent(agent_id)).profile_id

    async def display_name(self, profile_id: str, fallback: str) -> str:
        profile = await self.store.get_profile(profile_id)
        return profile.full_name if profile and profile.full_name else fallback
