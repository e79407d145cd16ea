"""
Retry coordinator and background dispatcher tests
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, call

from helpdesk.core import RetryExhaustedException, ValidationException
from helpdesk.triage.application import RetryCoordinator, TriageDispatcher
from helpdesk.triage.domain import TriageResult

from conftest import make_ticket


def _result(run_id="run-ok"):
    return TriageResult(
        success=True, run_id=run_id, ticket_id="ticket-1",
        decision="assign_human", confidence=0.5
    )


@pytest.fixture
def fake_orchestrator():
    orchestrator = MagicMock()
    orchestrator.triage = AsyncMock(return_value=_result())
    return orchestrator


class TestRetryCoordinator:

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, fake_orchestrator, backoff_sleep):
        retry = RetryCoordinator(fake_orchestrator, sleep=backoff_sleep)

        result = await retry.retry_triage("ticket-1")

        assert result.success
        assert fake_orchestrator.triage.await_count == 1
        backoff_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, fake_orchestrator, backoff_sleep):
        fake_orchestrator.triage.side_effect = [RuntimeError("a"), RuntimeError("b"), _result()]
        retry = RetryCoordinator(fake_orchestrator, max_attempts=3, backoff_base=2.0, sleep=backoff_sleep)

        result = await retry.retry_triage("ticket-1")

        assert result.success
        assert backoff_sleep.await_args_list == [call(2.0), call(4.0)]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_a_fresh_run_id(self, fake_orchestrator, backoff_sleep):
        fake_orchestrator.triage.side_effect = RuntimeError("down")
        retry = RetryCoordinator(fake_orchestrator, max_attempts=3, sleep=backoff_sleep)

        with pytest.raises(RetryExhaustedException):
            await retry.retry_triage("ticket-1")

        run_ids = [c.kwargs["run_id"] for c in fake_orchestrator.triage.await_args_list]
        assert len(run_ids) == 3
        assert len(set(run_ids)) == 3

    @pytest.mark.asyncio
    async def test_exhausted_names_attempts_and_last_error(self, fake_orchestrator, backoff_sleep):
        last = RuntimeError("third")
        fake_orchestrator.triage.side_effect = [RuntimeError("first"), RuntimeError("second"), last]
        retry = RetryCoordinator(fake_orchestrator, max_attempts=3, sleep=backoff_sleep)

        with pytest.raises(RetryExhaustedException) as exc_info:
            await retry.retry_triage("ticket-1")

        assert "after 3 attempts" in str(exc_info.value)
        assert "third" in str(exc_info.value)
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last
        # no wait after the final attempt
        assert backoff_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_per_call_attempts_override(self, fake_orchestrator, backoff_sleep):
        fake_orchestrator.triage.side_effect = RuntimeError("down")
        retry = RetryCoordinator(fake_orchestrator, max_attempts=3, sleep=backoff_sleep)

        with pytest.raises(RetryExhaustedException, match="after 1 attempts"):
            await retry.retry_triage("ticket-1", max_attempts=1)

        backoff_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_attempts(self, fake_orchestrator):
        with pytest.raises(ValidationException):
            await RetryCoordinator(fake_orchestrator).retry_triage("ticket-1", max_attempts=0)

        fake_orchestrator.triage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_bounds_the_loop(self, fake_orchestrator):
        async def slow_triage(ticket_id, run_id=None, config=None):
            await asyncio.sleep(5)

        fake_orchestrator.triage = AsyncMock(side_effect=slow_triage)
        retry = RetryCoordinator(fake_orchestrator, max_attempts=3)

        with pytest.raises(RetryExhaustedException, match="timed out") as exc_info:
            await retry.retry_triage("ticket-1", timeout=0.05)

        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_retries_real_pipeline_failures(self, components, repos, backoff_sleep):
        ticket = repos.tickets.add(make_ticket())
        repos.knowledge_base.error = RuntimeError("search backend down")

        with pytest.raises(RetryExhaustedException):
            await components.retry.retry_triage(ticket.id)

        failures = [e for e in repos.audit_logs.entries if e.action == "TRIAGE_FAILED"]
        assert len(failures) == 3
        assert len({e.run_id for e in failures}) == 3
        assert backoff_sleep.await_args_list == [call(2.0), call(4.0)]


class TestTriageDispatcher:

    @pytest.mark.asyncio
    async def test_dispatch_runs_in_background(self, fake_orchestrator):
        dispatcher = TriageDispatcher(fake_orchestrator)

        task = dispatcher.dispatch("ticket-1")
        await dispatcher.drain()

        assert task.done()
        assert task.result().success
        fake_orchestrator.triage.assert_awaited_once_with("ticket-1")
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, fake_orchestrator):
        fake_orchestrator.triage.side_effect = RuntimeError("boom")
        dispatcher = TriageDispatcher(fake_orchestrator)

        assert await dispatcher.run("ticket-1") is None

    @pytest.mark.asyncio
    async def test_created_ticket_is_triaged(self, components, repos):
        ticket = await components.lifecycle.create_ticket(
            title="Refund request", description="Please refund my invoice", created_by="customer-1"
        )
        await components.dispatcher.drain()

        stored = repos.tickets.stored(ticket.id)
        assert stored.status == "waiting_human"
        assert stored.agent_suggestion_id is not None
