"""
Triage Orchestrator
===================

Sequences classify -> retrieve -> draft -> decide -> execute for one ticket,
writing one audit entry per step under a shared run id.

Also contains the per-ticket run guard, the assignment policies, the retry
coordinator and the fire-and-forget dispatcher used on ticket creation.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional, Set

from helpdesk.config import AuditAction, AuditActor
from helpdesk.core import (
    ConflictException, ResourceNotFoundException, RetryExhaustedException,
    ValidationException
)
from helpdesk.shared.infrastructure.logging import get_logger, get_context_logger, log_latency
from helpdesk.triage.application.services import (
    AuditTrail, IAssignmentPolicy, IClassifier, IDrafter, IKnowledgeRetriever,
    ITicketRepository, IUserRepository, TriageConfigService
)
from helpdesk.triage.domain import (
    AgentSuggestion, CATEGORY_UPDATE_CONFIDENCE, DecisionPolicy, TRIAGE_PLAN_STEPS,
    Ticket, TriageConfig, TriagePlan, TriageResult, TriageRunContext
)

logger = get_logger(__name__)


class TicketRunGuard:
    """
    In-process exclusion of concurrent runs for the same ticket.

    Acquisition is a synchronous check-and-add, so no lock is needed on a
    single event loop.
    """

    def __init__(self):
        self._active: Set[str] = set()

    def is_running(self, ticket_id: str) -> bool:
        return ticket_id in self._active

    @asynccontextmanager
    async def hold(self, ticket_id: str):
        if ticket_id in self._active:
            raise ConflictException("Ticket", ticket_id, "triage is already running for this ticket")
        self._active.add(ticket_id)
        try:
            yield
        finally:
            self._active.discard(ticket_id)


# ========== Assignment Policies ==========

class FirstAvailableAssignment(IAssignmentPolicy):
    """First agent account by creation order."""

    name = "first_available"

    def __init__(self, users: IUserRepository, system_email: str):
        self._users = users
        self._system_email = system_email

    async def choose_assignee(self, ticket: Ticket) -> Optional[str]:
        agents = await self._users.list_agents(exclude_email=self._system_email)
        return agents[0].id if agents else None


class RoundRobinAssignment(IAssignmentPolicy):
    """Cycles through agent accounts with an in-process cursor."""

    name = "round_robin"

    def __init__(self, users: IUserRepository, system_email: str):
        self._users = users
        self._system_email = system_email
        self._cursor = 0

    async def choose_assignee(self, ticket: Ticket) -> Optional[str]:
        agents = await self._users.list_agents(exclude_email=self._system_email)
        if not agents:
            return None
        chosen = agents[self._cursor % len(agents)]
        self._cursor += 1
        return chosen.id


class LeastLoadedAssignment(IAssignmentPolicy):
    """Agent with the fewest waiting_human tickets; ties go to the earlier account."""

    name = "least_loaded"

    def __init__(self, users: IUserRepository, tickets: ITicketRepository, system_email: str):
        self._users = users
        self._tickets = tickets
        self._system_email = system_email

    async def choose_assignee(self, ticket: Ticket) -> Optional[str]:
        agents = await self._users.list_agents(exclude_email=self._system_email)
        if not agents:
            return None
        load = await self._tickets.count_waiting_by_assignee([agent.id for agent in agents])
        # min() returns the first of equal keys, keeping account order
        return min(agents, key=lambda agent: load.get(agent.id, 0)).id


def create_assignment_policy(
    name: str,
    users: IUserRepository,
    tickets: ITicketRepository,
    system_email: str
) -> IAssignmentPolicy:
    """Build the assignment policy registered under ``name``."""
    if name == FirstAvailableAssignment.name:
        return FirstAvailableAssignment(users, system_email)
    if name == RoundRobinAssignment.name:
        return RoundRobinAssignment(users, system_email)
    if name == LeastLoadedAssignment.name:
        return LeastLoadedAssignment(users, tickets, system_email)
    raise ValidationException(f"Unknown assignment policy '{name}'", {"policy": name})


# ========== Orchestrator ==========

class TriageOrchestrator:
    """
    Runs the fixed triage pipeline for one ticket.

    Step outputs travel in a ``TriageRunContext``; the audit trail is written
    after every step but never read back. A failing step records
    ``TRIAGE_FAILED`` and re-raises the original exception. Effects of steps
    that already completed, such as a persisted category change, stay in place.
    """

    def __init__(
        self,
        tickets: ITicketRepository,
        users: IUserRepository,
        audit: AuditTrail,
        classifier: IClassifier,
        retriever: IKnowledgeRetriever,
        drafter: IDrafter,
        assignment: IAssignmentPolicy,
        config_service: TriageConfigService,
        system_user_email: str = "system@helpdesk.local",
        kb_search_limit: int = 3,
        query_max_length: int = 200,
        guard: Optional[TicketRunGuard] = None
    ):
        self._tickets = tickets
        self._users = users
        self._audit = audit
        self._classifier = classifier
        self._retriever = retriever
        self._drafter = drafter
        self._assignment = assignment
        self._config_service = config_service
        self._system_user_email = system_user_email
        self._kb_search_limit = kb_search_limit
        self._query_max_length = query_max_length
        self._guard = guard or TicketRunGuard()

    @property
    def guard(self) -> TicketRunGuard:
        return self._guard

    async def triage(
        self,
        ticket_id: str,
        run_id: Optional[str] = None,
        config: Optional[TriageConfig] = None
    ) -> TriageResult:
        """
        Triage one ticket.

        Raises:
            ConflictException: A run for this ticket is already in progress
            ResourceNotFoundException: The ticket does not exist
            InvalidStateException: The ticket is not open or waiting_human
            Exception: Whatever a pipeline step raised, after TRIAGE_FAILED is recorded
        """
        run_id = run_id or str(uuid.uuid4())
        log = get_context_logger(__name__, run_id=run_id)

        async with self._guard.hold(ticket_id):
            ticket = await self._tickets.get_by_id(ticket_id)
            if ticket is None:
                raise ResourceNotFoundException("Ticket", ticket_id)
            ticket.ensure_triageable()

            ctx = TriageRunContext(run_id=run_id, ticket=ticket, config=config)
            log.info("Triage started", extra={"ticket_id": ticket_id, "status": ticket.status})

            try:
                for step_name, step in self._steps():
                    ctx.current_step = step_name
                    with log_latency(log, step_name, ticket_id=ticket_id):
                        await step(ctx)
            except Exception as e:
                await self._record_failure(ctx, e, log)
                raise

        log.info(
            "Triage completed",
            extra={
                "ticket_id": ticket_id,
                "decision": ctx.decision.action,
                "confidence": ctx.classification.confidence,
                "degraded": ctx.degraded
            }
        )
        return TriageResult(
            success=True,
            run_id=run_id,
            ticket_id=ticket_id,
            decision=ctx.decision.action,
            confidence=ctx.classification.confidence,
            suggestion_id=ctx.suggestion.id,
            assignee_id=ctx.assignee_id,
            degraded=ctx.degraded
        )

    def _steps(self) -> List[tuple]:
        return [
            ("record_plan", self._record_plan),
            ("classify_category", self._classify),
            ("retrieve_kb_articles", self._retrieve),
            ("draft_reply", self._draft),
            ("make_decision", self._decide),
            ("execute_decision", self._execute),
        ]

    async def _record_plan(self, ctx: TriageRunContext) -> None:
        ctx.plan = TriagePlan(steps=list(TRIAGE_PLAN_STEPS), ticket_info=ctx.ticket.snapshot())
        await self._log_step(ctx, AuditAction.TRIAGE_STARTED, ctx.plan.to_dict())

    async def _classify(self, ctx: TriageRunContext) -> None:
        ticket = ctx.ticket
        result = await self._classifier.classify(ticket.full_text)
        ctx.classification = result

        original_category = ticket.category
        category_updated = False
        if result.confidence > CATEGORY_UPDATE_CONFIDENCE and ticket.update_category(result.predicted_category):
            await self._tickets.save_category(ticket)
            category_updated = True

        await self._log_step(ctx, AuditAction.AGENT_CLASSIFIED, {
            "original_category": original_category,
            "predicted_category": result.predicted_category,
            "confidence": result.confidence,
            "category_updated": category_updated,
            "model_info": result.model_info.to_dict(),
            "source": result.source
        })

    async def _retrieve(self, ctx: TriageRunContext) -> None:
        query = ctx.ticket.search_query(self._query_max_length)
        ctx.articles = await self._retriever.search(
            query, ctx.classification.predicted_category, self._kb_search_limit
        )
        await self._log_step(ctx, AuditAction.KB_RETRIEVED, {
            "query": query[:100],
            "count": len(ctx.articles),
            "ids": [article.id for article in ctx.articles],
            "titles": [article.title for article in ctx.articles]
        })

    async def _draft(self, ctx: TriageRunContext) -> None:
        ctx.draft = await self._drafter.draft(ctx.ticket.full_text, ctx.articles)
        await self._log_step(ctx, AuditAction.DRAFT_GENERATED, {
            "draft_length": len(ctx.draft.draft_reply),
            "citations_count": len(ctx.draft.citations),
            "model_info": ctx.draft.model_info.to_dict(),
            "source": ctx.draft.source
        })

    async def _decide(self, ctx: TriageRunContext) -> None:
        if ctx.config is None:
            ctx.config = await self._config_service.get_snapshot()
        ctx.decision = DecisionPolicy.decide(ctx.classification.confidence, ctx.config)
        await self._log_step(ctx, AuditAction.DECISION_MADE, ctx.decision.to_dict())

    async def _execute(self, ctx: TriageRunContext) -> None:
        ticket = ctx.ticket
        suggestion = AgentSuggestion(
            id=str(uuid.uuid4()),
            ticket_id=ticket.id,
            run_id=ctx.run_id,
            predicted_category=ctx.classification.predicted_category,
            article_ids=[article.id for article in ctx.articles],
            draft_reply=ctx.draft.draft_reply,
            citations=list(ctx.draft.citations),
            confidence=ctx.classification.confidence,
            auto_closed=ctx.decision.is_auto_close,
            model_info=ctx.classification.model_info
        )

        if ctx.decision.is_auto_close:
            system_user = await self._users.get_or_create_system_user(self._system_user_email)
            ticket.resolve_with_generated_reply(system_user.id, suggestion.draft_reply, suggestion.id)
        else:
            ctx.assignee_id = await self._assignment.choose_assignee(ticket)
            ticket.hand_to_human(ctx.assignee_id, suggestion.id)

        await self._tickets.apply_triage_outcome(ticket, suggestion)
        ctx.suggestion = suggestion

        if ctx.decision.is_auto_close:
            await self._log_step(ctx, AuditAction.AUTO_CLOSED, {
                "suggestion_id": suggestion.id,
                "confidence": suggestion.confidence
            })
        else:
            await self._log_step(ctx, AuditAction.ASSIGNED_TO_HUMAN, {
                "suggestion_id": suggestion.id,
                "assignee_id": ctx.assignee_id,
                "policy": self._assignment.name,
                "confidence": suggestion.confidence
            })

    async def _log_step(self, ctx: TriageRunContext, action: str, metadata: dict) -> None:
        await self._audit.record(
            ticket_id=ctx.ticket.id,
            run_id=ctx.run_id,
            actor=AuditActor.SYSTEM,
            action=action,
            metadata=metadata
        )

    async def _record_failure(self, ctx: TriageRunContext, error: Exception, log) -> None:
        log.error(
            "Triage failed",
            extra={
                "ticket_id": ctx.ticket.id,
                "step": ctx.current_step,
                "error_type": type(error).__name__,
                "error": str(error)
            }
        )
        try:
            await self._audit.record(
                ticket_id=ctx.ticket.id,
                run_id=ctx.run_id,
                actor=AuditActor.SYSTEM,
                action=AuditAction.TRIAGE_FAILED,
                metadata={
                    "error": str(error) or type(error).__name__,
                    "error_type": type(error).__name__,
                    "step": ctx.current_step
                }
            )
        except Exception as audit_error:
            log.error(
                "Failed to record triage failure",
                extra={"ticket_id": ctx.ticket.id, "error": str(audit_error)}
            )


# ========== Retry ==========

class RetryCoordinator:
    """
    Bounded retries around the orchestrator.

    Each attempt gets a fresh run id. After failed attempt ``n`` (counted
    from 1) the coordinator waits ``backoff_base ** n`` seconds, except after
    the last attempt. The wait is cancellable and an optional overall timeout
    bounds the whole loop.
    """

    def __init__(
        self,
        orchestrator: TriageOrchestrator,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._orchestrator = orchestrator
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep

    async def retry_triage(
        self,
        ticket_id: str,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        config: Optional[TriageConfig] = None
    ) -> TriageResult:
        """
        Triage with retries.

        Raises:
            RetryExhaustedException: Every attempt failed or the timeout expired
        """
        attempts = self._max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValidationException("max_attempts must be at least 1", {"max_attempts": attempts})

        progress: Dict[str, object] = {"attempts": 0, "last_error": None, "run_ids": []}
        loop = self._attempt_loop(ticket_id, attempts, config, progress)
        if timeout is None:
            return await loop

        try:
            return await asyncio.wait_for(loop, timeout)
        except asyncio.TimeoutError as e:
            last_error = progress["last_error"]
            raise RetryExhaustedException(
                ticket_id,
                progress["attempts"],
                last_error=last_error,
                reason=f"timed out after {timeout}s"
            ) from (last_error or e)

    async def _attempt_loop(
        self,
        ticket_id: str,
        attempts: int,
        config: Optional[TriageConfig],
        progress: Dict[str, object]
    ) -> TriageResult:
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            run_id = str(uuid.uuid4())
            progress["attempts"] = attempt
            progress["run_ids"].append(run_id)
            try:
                return await self._orchestrator.triage(ticket_id, run_id=run_id, config=config)
            except Exception as e:
                last_error = e
                progress["last_error"] = e
                logger.warning(
                    "Triage attempt failed",
                    extra={
                        "ticket_id": ticket_id,
                        "run_id": run_id,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": str(e)
                    }
                )
                if attempt < attempts:
                    await self._sleep(self._backoff_base ** attempt)

        raise RetryExhaustedException(ticket_id, attempts, last_error=last_error) from last_error


# ========== Background Dispatch ==========

class TriageDispatcher:
    """
    Fire-and-forget triage for newly created tickets.

    Failures are logged and never reach the caller that created the ticket.
    """

    def __init__(self, orchestrator: TriageOrchestrator):
        self._orchestrator = orchestrator
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, ticket_id: str) -> asyncio.Task:
        """Schedule a run on the current event loop."""
        task = asyncio.get_running_loop().create_task(self.run(ticket_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, ticket_id: str) -> Optional[TriageResult]:
        try:
            return await self._orchestrator.triage(ticket_id)
        except Exception as e:
            logger.error(
                "Background triage failed",
                extra={"ticket_id": ticket_id, "error_type": type(e).__name__, "error": str(e)}
            )
            return None

    async def drain(self) -> None:
        """Wait for in-flight runs, used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
