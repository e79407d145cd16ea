"""
Assignment policy tests
"""
import pytest

from helpdesk.config import TicketStatus
from helpdesk.core import ValidationException
from helpdesk.triage.application import (
    FirstAvailableAssignment, LeastLoadedAssignment, RoundRobinAssignment,
    create_assignment_policy
)

from conftest import SYSTEM_EMAIL, make_ticket


class TestFirstAvailable:

    @pytest.mark.asyncio
    async def test_earliest_agent_excluding_system_identity(self, repos):
        policy = FirstAvailableAssignment(repos.users, SYSTEM_EMAIL)

        assert await policy.choose_assignee(make_ticket()) == "agent-1"

    @pytest.mark.asyncio
    async def test_only_system_identity_left(self, repos):
        repos.users.users = [u for u in repos.users.users if u.email == SYSTEM_EMAIL]
        policy = FirstAvailableAssignment(repos.users, SYSTEM_EMAIL)

        assert await policy.choose_assignee(make_ticket()) is None


class TestRoundRobin:

    @pytest.mark.asyncio
    async def test_cycles_through_agents(self, repos):
        policy = RoundRobinAssignment(repos.users, SYSTEM_EMAIL)

        chosen = [await policy.choose_assignee(make_ticket()) for _ in range(3)]

        assert chosen == ["agent-1", "agent-2", "agent-1"]


class TestLeastLoaded:

    @pytest.mark.asyncio
    async def test_picks_agent_with_fewest_waiting_tickets(self, repos):
        repos.tickets.add(make_ticket(status=TicketStatus.WAITING_HUMAN, assignee_id="agent-1"))
        repos.tickets.add(make_ticket(status=TicketStatus.RESOLVED, assignee_id="agent-2"))
        policy = LeastLoadedAssignment(repos.users, repos.tickets, SYSTEM_EMAIL)

        assert await policy.choose_assignee(make_ticket()) == "agent-2"

    @pytest.mark.asyncio
    async def test_tie_goes_to_earlier_agent(self, repos):
        policy = LeastLoadedAssignment(repos.users, repos.tickets, SYSTEM_EMAIL)

        assert await policy.choose_assignee(make_ticket()) == "agent-1"


class TestFactory:

    @pytest.mark.parametrize("name, policy_type", [
        ("first_available", FirstAvailableAssignment),
        ("round_robin", RoundRobinAssignment),
        ("least_loaded", LeastLoadedAssignment),
    ])
    def test_known_policies(self, repos, name, policy_type):
        policy = create_assignment_policy(name, repos.users, repos.tickets, SYSTEM_EMAIL)

        assert isinstance(policy, policy_type)
        assert policy.name == name

    def test_unknown_policy(self, repos):
        with pytest.raises(ValidationException):
            create_assignment_policy("random", repos.users, repos.tickets, SYSTEM_EMAIL)
