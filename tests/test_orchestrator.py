"""
Triage orchestrator tests

Runs the full pipeline against in-memory repositories and checks the ticket
outcome and the audit trail written for each run.
"""
import asyncio
import copy

import pytest
from unittest.mock import AsyncMock

from helpdesk.config import AuditAction, AuditActor, TicketStatus, TriageAction
from helpdesk.core import ConflictException, InvalidStateException, ResourceNotFoundException
from helpdesk.infrastructure.llm import MockLLMClient
from helpdesk.triage.domain import TRIAGE_PLAN_STEPS, TriageConfig
from helpdesk.triage.infrastructure import build_triage_components

from conftest import (
    FailingLLMClient, NEUTRAL_DESCRIPTION, NEUTRAL_TITLE, make_ticket
)

SUCCESS_ACTIONS_AUTO_CLOSE = [
    AuditAction.TRIAGE_STARTED,
    AuditAction.AGENT_CLASSIFIED,
    AuditAction.KB_RETRIEVED,
    AuditAction.DRAFT_GENERATED,
    AuditAction.DECISION_MADE,
    AuditAction.AUTO_CLOSED,
]


@pytest.fixture
def orchestrator(components):
    return components.orchestrator


@pytest.fixture
def billing_ticket(repos):
    return repos.tickets.add(make_ticket())


class TestAutoClosePath:
    """High-confidence tickets with auto-close enabled"""

    @pytest.mark.asyncio
    async def test_run_writes_six_ordered_entries(self, orchestrator, repos, billing_ticket, auto_close_config):
        result = await orchestrator.triage(billing_ticket.id, config=auto_close_config)

        entries = await repos.audit_logs.list_for_run(result.run_id)
        assert [e.action for e in entries] == SUCCESS_ACTIONS_AUTO_CLOSE
        assert [e.sequence for e in entries] == sorted(e.sequence for e in entries)
        assert all(e.ticket_id == billing_ticket.id for e in entries)
        assert all(e.actor == AuditActor.SYSTEM for e in entries)

    @pytest.mark.asyncio
    async def test_ticket_resolved_with_generated_reply(self, orchestrator, repos, billing_ticket, auto_close_config):
        result = await orchestrator.triage(billing_ticket.id, config=auto_close_config)

        assert result.success
        assert result.decision == TriageAction.AUTO_CLOSE
        assert result.confidence == 0.9
        assert result.degraded is False

        ticket = repos.tickets.stored(billing_ticket.id)
        assert ticket.status == TicketStatus.RESOLVED
        assert ticket.category == "billing"
        assert ticket.agent_suggestion_id == result.suggestion_id
        assert len(ticket.replies) == 1
        assert ticket.replies[0].is_agent_generated
        assert ticket.replies[0].author_id == "system"

        suggestion = await repos.suggestions.get_by_id(result.suggestion_id)
        assert suggestion.auto_closed is True
        assert suggestion.run_id == result.run_id
        assert suggestion.draft_reply == ticket.replies[0].content
        assert "kb-refund" in suggestion.article_ids

    @pytest.mark.asyncio
    async def test_system_user_created_on_demand(self, orchestrator, repos, billing_ticket, auto_close_config):
        repos.users.users = [u for u in repos.users.users if u.id != "system"]

        await orchestrator.triage(billing_ticket.id, config=auto_close_config)

        system_users = [u for u in repos.users.users if u.email == "system@helpdesk.local"]
        assert len(system_users) == 1
        assert repos.tickets.stored(billing_ticket.id).replies[0].author_id == system_users[0].id

    @pytest.mark.asyncio
    async def test_stored_configuration_is_used(self, orchestrator, repos, billing_ticket, auto_close_config):
        repos.config.config = auto_close_config

        result = await orchestrator.triage(billing_ticket.id)

        assert result.decision == TriageAction.AUTO_CLOSE


class TestAssignPath:
    """Tickets handed to a human"""

    @pytest.mark.asyncio
    async def test_low_confidence_assigns_first_agent(self, orchestrator, repos, auto_close_config):
        ticket = repos.tickets.add(make_ticket(NEUTRAL_TITLE, NEUTRAL_DESCRIPTION))

        result = await orchestrator.triage(ticket.id, config=auto_close_config)

        assert result.decision == TriageAction.ASSIGN_HUMAN
        assert result.confidence == 0.5
        assert result.assignee_id == "agent-1"

        stored = repos.tickets.stored(ticket.id)
        assert stored.status == TicketStatus.WAITING_HUMAN
        assert stored.assignee_id == "agent-1"
        assert stored.category == "other"
        assert stored.replies == []

        entries = await repos.audit_logs.list_for_run(result.run_id)
        assert entries[-1].action == AuditAction.ASSIGNED_TO_HUMAN
        assert entries[-1].metadata["assignee_id"] == "agent-1"
        assert entries[-1].metadata["policy"] == "first_available"

    @pytest.mark.asyncio
    async def test_auto_close_disabled_by_default(self, orchestrator, repos, billing_ticket):
        result = await orchestrator.triage(billing_ticket.id)

        assert result.decision == TriageAction.ASSIGN_HUMAN
        decision = [e for e in repos.audit_logs.entries if e.action == AuditAction.DECISION_MADE][0]
        assert decision.metadata["auto_close_enabled"] is False
        suggestion = await repos.suggestions.get_by_id(result.suggestion_id)
        assert suggestion.auto_closed is False

    @pytest.mark.asyncio
    async def test_no_agents_keeps_ticket_unassigned(self, orchestrator, repos, billing_ticket):
        repos.users.users = []

        result = await orchestrator.triage(billing_ticket.id)

        assert result.assignee_id is None
        assert repos.tickets.stored(billing_ticket.id).status == TicketStatus.WAITING_HUMAN

    @pytest.mark.asyncio
    async def test_waiting_ticket_can_be_triaged_again(self, orchestrator, repos, billing_ticket):
        first = await orchestrator.triage(billing_ticket.id)
        second = await orchestrator.triage(billing_ticket.id)

        assert first.run_id != second.run_id
        latest = await repos.suggestions.latest_for_ticket(billing_ticket.id)
        assert latest.id == second.suggestion_id


class TestAuditMetadata:
    """What each step records"""

    @pytest.mark.asyncio
    async def test_plan_snapshot_taken_before_classification(self, orchestrator, repos, billing_ticket):
        result = await orchestrator.triage(billing_ticket.id, run_id="run-fixed")

        assert result.run_id == "run-fixed"
        started, classified = (await repos.audit_logs.list_for_run("run-fixed"))[:2]
        assert started.metadata["steps"] == TRIAGE_PLAN_STEPS
        assert started.metadata["ticket_info"] == {
            "id": billing_ticket.id,
            "title": billing_ticket.title,
            "category": "other",
            "status": "open",
        }
        assert classified.metadata["original_category"] == "other"
        assert classified.metadata["predicted_category"] == "billing"
        assert classified.metadata["category_updated"] is True
        assert classified.metadata["model_info"]["provider"] == "stub"

    @pytest.mark.asyncio
    async def test_category_kept_at_or_below_update_confidence(self, orchestrator, repos):
        ticket = repos.tickets.add(make_ticket("Where is my package", "It has not arrived yet"))

        result = await orchestrator.triage(ticket.id)

        assert result.confidence == 0.7
        assert repos.tickets.stored(ticket.id).category == "other"
        classified = [e for e in repos.audit_logs.entries if e.action == AuditAction.AGENT_CLASSIFIED][0]
        assert classified.metadata["category_updated"] is False

    @pytest.mark.asyncio
    async def test_retrieval_metadata(self, orchestrator, repos, billing_ticket):
        await orchestrator.triage(billing_ticket.id)

        retrieved = [e for e in repos.audit_logs.entries if e.action == AuditAction.KB_RETRIEVED][0]
        assert retrieved.metadata["count"] == len(retrieved.metadata["ids"])
        assert retrieved.metadata["count"] <= 3
        assert "kb-tracking" not in retrieved.metadata["ids"]
        assert len(retrieved.metadata["query"]) <= 100


class TestFailures:
    """Errors before and during the pipeline"""

    @pytest.mark.asyncio
    async def test_unknown_ticket_writes_nothing(self, orchestrator, repos):
        with pytest.raises(ResourceNotFoundException):
            await orchestrator.triage("missing-ticket")

        assert repos.audit_logs.entries == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TicketStatus.RESOLVED, TicketStatus.CLOSED])
    async def test_terminal_ticket_writes_nothing(self, orchestrator, repos, status):
        ticket = repos.tickets.add(make_ticket(status=status))

        with pytest.raises(InvalidStateException):
            await orchestrator.triage(ticket.id)

        assert repos.audit_logs.entries == []
        assert not orchestrator.guard.is_running(ticket.id)

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, orchestrator, repos, billing_ticket):
        async with orchestrator.guard.hold(billing_ticket.id):
            with pytest.raises(ConflictException):
                await orchestrator.triage(billing_ticket.id)

        assert repos.audit_logs.entries == []
        result = await orchestrator.triage(billing_ticket.id)
        assert result.success

    @pytest.mark.asyncio
    async def test_interleaved_runs_produce_one_outcome(self, orchestrator, repos, billing_ticket):
        search = repos.knowledge_base.full_text_search

        async def yielding_search(query, category, limit):
            await asyncio.sleep(0)
            return await search(query, category, limit)

        repos.knowledge_base.full_text_search = yielding_search

        results = await asyncio.gather(
            orchestrator.triage(billing_ticket.id, run_id="run-first"),
            orchestrator.triage(billing_ticket.id, run_id="run-second"),
            return_exceptions=True,
        )

        assert results[0].success
        assert isinstance(results[1], ConflictException)
        assert len(repos.suggestions.suggestions) == 1
        assert repos.audit_logs.actions("run-second") == []
        assert len(repos.audit_logs.actions("run-first")) == 6
        assert not orchestrator.guard.is_running(billing_ticket.id)

    @pytest.mark.asyncio
    async def test_recording_plan_leaves_ticket_untouched(self, orchestrator, repos, billing_ticket):
        before = copy.deepcopy(repos.tickets.stored(billing_ticket.id))
        orchestrator._classifier.classify = AsyncMock(side_effect=RuntimeError("classifier down"))

        with pytest.raises(RuntimeError, match="classifier down"):
            await orchestrator.triage(billing_ticket.id, run_id="run-plan-only")

        assert repos.audit_logs.actions("run-plan-only") == [
            AuditAction.TRIAGE_STARTED,
            AuditAction.TRIAGE_FAILED,
        ]
        after = repos.tickets.stored(billing_ticket.id)
        assert after == before
        assert (after.category, after.status, after.version) == ("other", TicketStatus.OPEN, 1)
        assert after.replies == []
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_step_failure_records_and_reraises(self, orchestrator, repos, billing_ticket):
        repos.knowledge_base.error = RuntimeError("search backend down")

        with pytest.raises(RuntimeError, match="search backend down"):
            await orchestrator.triage(billing_ticket.id, run_id="run-failed")

        assert repos.audit_logs.actions("run-failed") == [
            AuditAction.TRIAGE_STARTED,
            AuditAction.AGENT_CLASSIFIED,
            AuditAction.TRIAGE_FAILED,
        ]
        failed = repos.audit_logs.entries[-1]
        assert failed.metadata == {
            "error": "search backend down",
            "error_type": "RuntimeError",
            "step": "retrieve_kb_articles",
        }
        assert not orchestrator.guard.is_running(billing_ticket.id)

    @pytest.mark.asyncio
    async def test_completed_steps_keep_their_effects(self, orchestrator, repos, billing_ticket):
        repos.knowledge_base.error = RuntimeError("search backend down")

        with pytest.raises(RuntimeError):
            await orchestrator.triage(billing_ticket.id)

        stored = repos.tickets.stored(billing_ticket.id)
        assert stored.category == "billing"
        assert stored.status == TicketStatus.OPEN
        assert stored.agent_suggestion_id is None
        assert repos.suggestions.suggestions == {}

    @pytest.mark.asyncio
    async def test_version_conflict_in_execute(self, orchestrator, repos, billing_ticket):
        repos.tickets.apply_triage_outcome = AsyncMock(
            side_effect=ConflictException("Ticket", billing_ticket.id, "expected version 2, found 3")
        )

        with pytest.raises(ConflictException):
            await orchestrator.triage(billing_ticket.id)

        failed = repos.audit_logs.entries[-1]
        assert failed.action == AuditAction.TRIAGE_FAILED
        assert failed.metadata["step"] == "execute_decision"
        assert failed.metadata["error_type"] == "ConflictException"
        assert AuditAction.ASSIGNED_TO_HUMAN not in repos.audit_logs.actions()

    @pytest.mark.asyncio
    async def test_audit_failure_while_recording_failure(self, orchestrator, repos, billing_ticket):
        repos.knowledge_base.error = RuntimeError("search backend down")
        original_append = repos.audit_logs.append

        async def append(entry):
            if entry.action == AuditAction.TRIAGE_FAILED:
                raise RuntimeError("audit store down")
            return await original_append(entry)

        repos.audit_logs.append = append

        with pytest.raises(RuntimeError, match="search backend down"):
            await orchestrator.triage(billing_ticket.id)


class TestDegradedRuns:
    """Remote capability failures"""

    @pytest.mark.asyncio
    async def test_fallback_marks_run_degraded(self, test_settings, repos, billing_ticket, auto_close_config):
        components = build_triage_components(test_settings, repos, llm_client=FailingLLMClient())

        result = await components.orchestrator.triage(billing_ticket.id, config=auto_close_config)

        assert result.success
        assert result.degraded is True
        assert result.decision == TriageAction.AUTO_CLOSE
        sources = {
            e.action: e.metadata["source"] for e in repos.audit_logs.entries
            if e.action in (AuditAction.AGENT_CLASSIFIED, AuditAction.DRAFT_GENERATED)
        }
        assert sources == {
            AuditAction.AGENT_CLASSIFIED: "fallback",
            AuditAction.DRAFT_GENERATED: "fallback",
        }

    @pytest.mark.asyncio
    async def test_remote_run_is_not_degraded(self, test_settings, repos, billing_ticket):
        components = build_triage_components(
            test_settings, repos, llm_client=MockLLMClient(category="billing", confidence=0.95)
        )
        config = TriageConfig(auto_close_enabled=True, confidence_threshold=0.9, sla_hours=24)

        result = await components.orchestrator.triage(billing_ticket.id, config=config)

        assert result.degraded is False
        assert result.confidence == 0.95
        suggestion = await repos.suggestions.get_by_id(result.suggestion_id)
        assert suggestion.citations == ["Mock Article"]
        assert suggestion.model_info.provider == "mock"
