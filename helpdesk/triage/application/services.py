"""
Triage Application Services
============================

Application services for classification, retrieval, drafting, the audit
trail, the triage configuration record and the ticket lifecycle.

Orchestrates business logic between domain entities and repositories.
"""

import re
import json
import time
import uuid
import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from helpdesk.config import (
    AuditAction, AuditActor, ResultSource, TicketCategory, UserRole,
    VALID_CATEGORIES, VALID_STATUSES
)
from helpdesk.core import (
    LLMException, ResourceNotFoundException, ValidationException
)
from helpdesk.infrastructure.llm import ILLMClient
from helpdesk.shared.infrastructure.logging import get_logger
from helpdesk.triage.domain import (
    AgentSuggestion, AuditLogEntry, AuditPage, AuditQuery, AuditStats,
    ClassificationPromptBuilder, ClassificationResult, DraftPromptBuilder,
    DraftResult, KeywordRules, ModelInfo, RetrievedArticle, SuggestionStats,
    Ticket, TicketPage, TicketQuery, TriageConfig, User, utcnow
)

logger = get_logger(__name__)


# ========== Repository Interfaces ==========

class ITicketRepository(ABC):
    """
    Interface for ticket data access.

    Every method is its own unit of work. Methods taking a ``Ticket`` write
    the new ``version`` back onto it and raise ``ConflictException`` when the
    stored version no longer matches.
    """

    @abstractmethod
    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket with its replies."""

    @abstractmethod
    async def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket."""

    @abstractmethod
    async def save_category(self, ticket: Ticket) -> Ticket:
        """Persist only the ticket category."""

    @abstractmethod
    async def save(self, ticket: Ticket) -> Ticket:
        """Persist status, assignee and new replies of a lifecycle change."""

    @abstractmethod
    async def apply_triage_outcome(self, ticket: Ticket, suggestion: AgentSuggestion) -> Ticket:
        """Insert the suggestion and update the ticket in one transaction."""

    @abstractmethod
    async def count_waiting_by_assignee(self, assignee_ids: List[str]) -> Dict[str, int]:
        """Number of waiting_human tickets per assignee."""

    @abstractmethod
    async def query(self, query: TicketQuery) -> Tuple[List[Ticket], int]:
        """Filtered page of tickets, newest first, plus the total match count."""


class ISuggestionRepository(ABC):
    """Interface for agent suggestion storage."""

    @abstractmethod
    async def get_by_id(self, suggestion_id: str) -> Optional[AgentSuggestion]:
        """Get suggestion by ID."""

    @abstractmethod
    async def latest_for_ticket(self, ticket_id: str) -> Optional[AgentSuggestion]:
        """Most recently created suggestion of a ticket."""

    @abstractmethod
    async def update_draft(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        """Persist an edited draft."""

    @abstractmethod
    async def stats(self, day_since: datetime, week_since: datetime) -> SuggestionStats:
        """Aggregates over all suggestions; the two cutoffs bound the recent counts."""


class IAuditLogRepository(ABC):
    """Interface for the append-only audit log."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Store an entry; returns it with its sequence number."""

    @abstractmethod
    async def list_for_run(self, run_id: str) -> List[AuditLogEntry]:
        """Entries of one run in insertion order."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        """Filtered page of entries plus the total match count."""

    @abstractmethod
    async def count_since(self, since: datetime) -> Tuple[Dict[str, int], Dict[str, int]]:
        """Counts by action and by actor of entries newer than ``since``."""


class IConfigRepository(ABC):
    """Interface for the singleton triage configuration record."""

    @abstractmethod
    async def get(self) -> Optional[TriageConfig]:
        """Current record, or None when it was never written."""

    @abstractmethod
    async def save(self, config: TriageConfig, updated_by: Optional[str]) -> TriageConfig:
        """Create or replace the record."""


class IUserRepository(ABC):
    """Interface for account lookups."""

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""

    @abstractmethod
    async def list_agents(self, exclude_email: Optional[str] = None) -> List[User]:
        """Agent-role accounts ordered by creation time."""

    @abstractmethod
    async def get_or_create_system_user(self, email: str) -> User:
        """Identity that authors generated replies."""


class IKnowledgeBaseRepository(ABC):
    """Search primitives over published knowledge base articles."""

    @abstractmethod
    async def full_text_search(
        self, query: str, category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        """Relevance-ranked full-text search."""

    @abstractmethod
    async def loose_search(
        self, words: List[str], category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        """Tag membership or title substring match against any of the words."""

    @abstractmethod
    async def latest(self, category: Optional[str], limit: int) -> List[RetrievedArticle]:
        """Most recently updated articles."""


# ========== Capability Interfaces ==========

class IClassifier(ABC):
    """Maps ticket text to a category and confidence."""

    @abstractmethod
    async def classify(self, text: str) -> ClassificationResult:
        """Classify ticket text."""


class IKnowledgeRetriever(ABC):
    """Maps a query and category to ranked candidate articles."""

    @abstractmethod
    async def search(
        self, query: str, category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        """Search for candidate articles."""


class IDrafter(ABC):
    """Maps ticket text and articles to a reply draft."""

    @abstractmethod
    async def draft(self, text: str, articles: List[RetrievedArticle]) -> DraftResult:
        """Draft a reply."""


class IAssignmentPolicy(ABC):
    """Chooses the human assignee of a ticket handed off by triage."""

    name: str = "unknown"

    @abstractmethod
    async def choose_assignee(self, ticket: Ticket) -> Optional[str]:
        """User id of the chosen agent, or None when nobody is available."""


def _strip_code_fences(content: str) -> str:
    """Extract the JSON body from a response that may be wrapped in markdown fences."""
    if "```json" in content:
        return content.split("```json")[1].split("```")[0].strip()
    if "```" in content:
        return content.split("```")[1].split("```")[0].strip()
    return content.strip()


def _elapsed_ms(start_time: float) -> int:
    return int((time.perf_counter() - start_time) * 1000)


# ========== Audit Trail ==========

class AuditTrail:
    """
    Append-only event store keyed by ticket and run id.

    Entries are never updated or deleted. Reads serve replay and reporting;
    the triage pipeline never reads its own entries back.
    """

    def __init__(self, repository: IAuditLogRepository):
        self._repo = repository

    async def record(
        self,
        ticket_id: Optional[str],
        run_id: str,
        actor: str,
        action: str,
        metadata: Optional[dict] = None
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            run_id=run_id,
            actor=actor,
            action=action,
            metadata=metadata or {},
            timestamp=utcnow()
        )
        stored = await self._repo.append(entry)
        logger.debug(
            "Audit entry recorded",
            extra={"run_id": run_id, "ticket_id": ticket_id, "action": action}
        )
        return stored

    async def for_run(self, run_id: str) -> List[AuditLogEntry]:
        """All entries of a run in insertion order."""
        return await self._repo.list_for_run(run_id)

    async def for_ticket(
        self,
        ticket_id: str,
        action: Optional[str] = None,
        page: int = 1,
        limit: int = 50
    ) -> AuditPage:
        """Ticket history, newest first."""
        return await self.query(self.build_query(ticket_id=ticket_id, action=action, page=page, limit=limit))

    async def query(self, query: AuditQuery) -> AuditPage:
        entries, total = await self._repo.query(query)
        return AuditPage(entries=entries, total=total, page=query.page, limit=query.limit)

    async def stats(self, days: int = 7) -> AuditStats:
        """Counts by action and by actor over the last ``days`` days."""
        if not 1 <= days <= 365:
            raise ValidationException("days must be between 1 and 365", {"days": days})
        since = utcnow() - timedelta(days=days)
        by_action, by_actor = await self._repo.count_since(since)
        return AuditStats(days=days, since=since, by_action=by_action, by_actor=by_actor)

    @staticmethod
    def build_query(**filters) -> AuditQuery:
        """Validated AuditQuery; bad filters raise ValidationException."""
        try:
            return AuditQuery(**filters)
        except ValueError as e:
            raise ValidationException(str(e), filters) from e


# ========== Classifiers ==========

class KeywordClassifier(IClassifier):
    """Deterministic keyword-count classifier."""

    provider = "stub"
    model = "rule-based"

    def __init__(self, prompt_version: str = "1.0"):
        self._prompt_version = prompt_version

    async def classify(self, text: str) -> ClassificationResult:
        start_time = time.perf_counter()
        category, confidence = KeywordRules.classify(text)
        return ClassificationResult(
            predicted_category=category,
            confidence=confidence,
            model_info=ModelInfo(
                provider=self.provider,
                model=self.model,
                prompt_version=self._prompt_version,
                latency_ms=_elapsed_ms(start_time)
            ),
            source=ResultSource.DETERMINISTIC
        )


class LLMClassifier(IClassifier):
    """
    Remote classifier with keyword fallback.

    Any provider error or malformed answer degrades to the deterministic
    classifier; errors never propagate from here.
    """

    TEMPERATURE = 0.1
    MAX_TOKENS = 150

    def __init__(
        self,
        llm_client: ILLMClient,
        fallback: Optional[KeywordClassifier] = None,
        prompt_version: str = "1.0"
    ):
        self._llm = llm_client
        self._fallback = fallback or KeywordClassifier(prompt_version)
        self._prompt_version = prompt_version

    async def classify(self, text: str) -> ClassificationResult:
        start_time = time.perf_counter()

        messages = [
            {"role": "system", "content": ClassificationPromptBuilder.get_system_prompt()},
            {"role": "user", "content": ClassificationPromptBuilder.build_prompt(text)}
        ]

        try:
            response = await self._llm.chat_completion(
                messages=messages,
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
                operation="classification"
            )
            category, confidence = self._parse(response.content)
        except Exception as e:
            logger.warning(
                "Remote classification failed, using keyword fallback",
                extra={"error": str(e), "provider": self._llm.provider}
            )
            return await self._degrade(text)

        return ClassificationResult(
            predicted_category=category,
            confidence=confidence,
            model_info=ModelInfo(
                provider=self._llm.provider,
                model=response.model,
                prompt_version=self._prompt_version,
                latency_ms=_elapsed_ms(start_time)
            ),
            source=ResultSource.REMOTE
        )

    @staticmethod
    def _parse(content: str) -> Tuple[str, float]:
        """Validate the JSON answer; raises LLMException when malformed."""
        try:
            data = json.loads(_strip_code_fences(content))
        except json.JSONDecodeError as e:
            raise LLMException(f"Failed to parse classification response: {e}")

        if not isinstance(data, dict):
            raise LLMException("Classification response is not a JSON object")

        category = data.get("predictedCategory")
        if category not in VALID_CATEGORIES:
            raise LLMException(f"Unknown category in classification response: {category!r}")

        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise LLMException(f"Non-numeric confidence in classification response: {confidence!r}")
        if not 0.0 <= confidence <= 1.0:
            raise LLMException(f"Confidence out of range in classification response: {confidence}")

        return category, float(confidence)

    async def _degrade(self, text: str) -> ClassificationResult:
        result = await self._fallback.classify(text)
        return dataclasses.replace(result, source=ResultSource.FALLBACK)


# ========== Knowledge Retrieval ==========

class KnowledgeRetriever(IKnowledgeRetriever):
    """
    Ranked knowledge base lookup.

    Full-text search first, a looser tag/title match when that finds nothing,
    and the latest articles when there is no query at all. Search errors
    propagate to the caller.
    """

    def __init__(self, repository: IKnowledgeBaseRepository):
        self._repo = repository

    async def search(
        self, query: str, category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        category_filter = category if category and category != TicketCategory.OTHER else None
        query = (query or "").strip()

        if not query:
            articles = await self._repo.latest(category_filter, limit)
        else:
            articles = await self._repo.full_text_search(query, category_filter, limit)
            if not articles:
                words = self.query_words(query)
                articles = await self._repo.loose_search(words, category_filter, limit) if words else []

        # sorted() is stable, so equal scores keep repository order
        return sorted(articles, key=lambda article: article.score, reverse=True)[:limit]

    @staticmethod
    def query_words(query: str) -> List[str]:
        """Distinct lower-cased words of the query, in order."""
        return list(dict.fromkeys(re.findall(r"\w+", query.lower())))


# ========== Drafters ==========

class TemplateDrafter(IDrafter):
    """Deterministic template drafter citing at most two articles."""

    provider = "stub"
    model = "template-based"

    OPENING = "Thank you for contacting our support team. "
    WITH_ARTICLES = "Based on our knowledge base, here's how we can help:\n\n"
    CLOSING = (
        "\nPlease review the information above. If you need additional assistance, "
        "our support team will be happy to help further."
    )
    NO_ARTICLES = (
        "We've received your request and our support team will review it shortly. "
        "We typically respond within 24 hours."
    )
    MAX_CITED = 2

    def __init__(self, prompt_version: str = "1.0"):
        self._prompt_version = prompt_version

    async def draft(self, text: str, articles: List[RetrievedArticle]) -> DraftResult:
        start_time = time.perf_counter()
        draft_reply = self.OPENING
        citations: List[str] = []

        if articles:
            draft_reply += self.WITH_ARTICLES
            for index, article in enumerate(articles[:self.MAX_CITED], 1):
                draft_reply += f"{article.title} [{index}]\n"
                citations.append(article.title)
            draft_reply += self.CLOSING
        else:
            draft_reply += self.NO_ARTICLES

        return DraftResult(
            draft_reply=draft_reply,
            citations=citations,
            model_info=ModelInfo(
                provider=self.provider,
                model=self.model,
                prompt_version=self._prompt_version,
                latency_ms=_elapsed_ms(start_time)
            ),
            source=ResultSource.DETERMINISTIC
        )


class LLMDrafter(IDrafter):
    """Remote drafter with template fallback."""

    TEMPERATURE = 0.3
    MAX_TOKENS = 500

    def __init__(
        self,
        llm_client: ILLMClient,
        fallback: Optional[TemplateDrafter] = None,
        prompt_version: str = "1.0"
    ):
        self._llm = llm_client
        self._fallback = fallback or TemplateDrafter(prompt_version)
        self._prompt_version = prompt_version

    async def draft(self, text: str, articles: List[RetrievedArticle]) -> DraftResult:
        start_time = time.perf_counter()

        messages = [
            {"role": "system", "content": DraftPromptBuilder.get_system_prompt()},
            {"role": "user", "content": DraftPromptBuilder.build_prompt(text, articles)}
        ]

        try:
            response = await self._llm.chat_completion(
                messages=messages,
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
                operation="draft"
            )
            draft_reply, citations = self._parse(response.content)
        except Exception as e:
            logger.warning(
                "Remote drafting failed, using template fallback",
                extra={"error": str(e), "provider": self._llm.provider}
            )
            result = await self._fallback.draft(text, articles)
            return dataclasses.replace(result, source=ResultSource.FALLBACK)

        return DraftResult(
            draft_reply=draft_reply,
            citations=citations,
            model_info=ModelInfo(
                provider=self._llm.provider,
                model=response.model,
                prompt_version=self._prompt_version,
                latency_ms=_elapsed_ms(start_time)
            ),
            source=ResultSource.REMOTE
        )

    @staticmethod
    def _parse(content: str) -> Tuple[str, List[str]]:
        try:
            data = json.loads(_strip_code_fences(content))
        except json.JSONDecodeError as e:
            raise LLMException(f"Failed to parse draft response: {e}")

        if not isinstance(data, dict):
            raise LLMException("Draft response is not a JSON object")

        draft_reply = data.get("draftReply")
        if not isinstance(draft_reply, str) or not draft_reply.strip():
            raise LLMException("Draft response has no draftReply text")

        citations = data.get("citations", [])
        if not isinstance(citations, list) or not all(isinstance(c, str) for c in citations):
            raise LLMException("Draft response citations must be a list of titles")

        return draft_reply, citations


# ========== Configuration ==========

class TriageConfigService:
    """Read and update the singleton triage configuration record."""

    FIELDS = ("auto_close_enabled", "confidence_threshold", "sla_hours")

    def __init__(self, repository: IConfigRepository, audit: AuditTrail, defaults: TriageConfig):
        self._repo = repository
        self._audit = audit
        self._defaults = defaults

    async def get_snapshot(self) -> TriageConfig:
        """Stored record, or compiled-in defaults when none exists."""
        config = await self._repo.get()
        return config or self._defaults

    async def update(self, changes: Dict[str, Any], updated_by: Optional[str] = None) -> TriageConfig:
        unknown = set(changes) - set(self.FIELDS)
        if unknown:
            raise ValidationException(f"Unknown configuration fields: {sorted(unknown)}")

        current = await self.get_snapshot()
        merged = {**current.to_dict(), **{k: v for k, v in changes.items() if v is not None}}
        try:
            updated = TriageConfig(**merged)
        except ValueError as e:
            raise ValidationException(str(e), {"changes": changes}) from e

        saved = await self._repo.save(updated, updated_by)
        await self._audit.record(
            ticket_id=None,
            run_id=str(uuid.uuid4()),
            actor=AuditActor.USER,
            action=AuditAction.CONFIG_UPDATED,
            metadata={
                "updated_by": updated_by,
                "old_values": current.to_dict(),
                "new_values": saved.to_dict()
            }
        )
        logger.info("Triage configuration updated", extra={"updated_by": updated_by, **saved.to_dict()})
        return saved


# ========== Triage Statistics ==========

class TriageStatsService:
    """Dashboard aggregates over stored agent suggestions."""

    def __init__(self, suggestions: ISuggestionRepository):
        self._suggestions = suggestions

    async def suggestion_stats(self) -> SuggestionStats:
        now = utcnow()
        stats = await self._suggestions.stats(
            day_since=now - timedelta(hours=24),
            week_since=now - timedelta(days=7)
        )
        logger.info(
            "Triage stats computed",
            extra={"total": stats.total, "auto_close_rate": round(stats.auto_close_rate, 4)}
        )
        return stats


# ========== Ticket Lifecycle ==========

class TicketLifecycleService:
    """
    Ticket creation and the human-driven status changes around triage.

    Each operation writes one audit entry under a fresh run id.
    """

    def __init__(
        self,
        tickets: ITicketRepository,
        suggestions: ISuggestionRepository,
        users: IUserRepository,
        audit: AuditTrail,
        on_created: Optional[Callable[[str], Any]] = None
    ):
        self._tickets = tickets
        self._suggestions = suggestions
        self._users = users
        self._audit = audit
        self._on_created = on_created

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._tickets.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket

    async def list_tickets(self, **filters) -> TicketPage:
        """Filtered page of tickets, newest first; bad filters raise ValidationException."""
        try:
            query = TicketQuery(**filters)
        except ValueError as e:
            raise ValidationException(str(e), filters) from e
        tickets, total = await self._tickets.query(query)
        return TicketPage(tickets=tickets, total=total, page=query.page, limit=query.limit)

    async def create_ticket(
        self,
        title: str,
        description: str,
        created_by: str,
        category: Optional[str] = None
    ) -> Ticket:
        """
        Persist an open ticket and trigger triage without waiting for it.

        Callers observe the pre-triage state until the background run ends.
        """
        category = category or TicketCategory.OTHER
        if category not in VALID_CATEGORIES:
            raise ValidationException(f"Invalid category '{category}'", {"category": category})

        ticket = await self._tickets.create(Ticket(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            category=category,
            created_by=created_by
        ))

        await self._audit.record(
            ticket_id=ticket.id,
            run_id=str(uuid.uuid4()),
            actor=AuditActor.USER,
            action=AuditAction.TICKET_CREATED,
            metadata={"title": ticket.title, "category": ticket.category, "created_by": created_by}
        )
        logger.info("Ticket created", extra={"ticket_id": ticket.id, "category": ticket.category})

        if self._on_created is not None:
            self._on_created(ticket.id)
        return ticket

    async def reply(
        self,
        ticket_id: str,
        author_id: str,
        content: str,
        status: Optional[str] = None
    ) -> Ticket:
        if status is not None and status not in VALID_STATUSES:
            raise ValidationException(f"Invalid status '{status}'", {"status": status})

        ticket = await self.get_ticket(ticket_id)
        previous_status = ticket.status
        ticket.add_reply(author_id, content, status)
        ticket = await self._tickets.save(ticket)

        await self._record(ticket.id, AuditActor.AGENT, AuditAction.REPLY_SENT, {
            "author_id": author_id,
            "content_length": len(content),
            "status_change": (
                {"from": previous_status, "to": ticket.status}
                if ticket.status != previous_status else None
            )
        })
        return ticket

    async def assign(self, ticket_id: str, assignee_id: str, assigned_by: Optional[str] = None) -> Ticket:
        assignee = await self._users.get_by_id(assignee_id)
        if assignee is None:
            raise ResourceNotFoundException("User", assignee_id)
        if assignee.role not in (UserRole.AGENT, UserRole.ADMIN):
            raise ValidationException(
                "Assignee must be an agent or admin",
                {"assignee_id": assignee_id, "role": assignee.role}
            )

        ticket = await self.get_ticket(ticket_id)
        previous_assignee = ticket.assign(assignee_id)
        ticket = await self._tickets.save(ticket)

        await self._record(ticket.id, AuditActor.USER, AuditAction.TICKET_ASSIGNED, {
            "assignee_id": assignee_id,
            "previous_assignee_id": previous_assignee,
            "assigned_by": assigned_by
        })
        return ticket

    async def reopen(self, ticket_id: str, actor_id: str, actor_role: str = UserRole.USER) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        previous_status = ticket.reopen()
        ticket = await self._tickets.save(ticket)

        actor = AuditActor.USER if actor_role == UserRole.USER else AuditActor.AGENT
        await self._record(ticket.id, actor, AuditAction.TICKET_REOPENED, {
            "previous_status": previous_status,
            "reopened_by": actor_id
        })
        return ticket

    async def close(self, ticket_id: str, actor_id: str) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        previous_status = ticket.status
        ticket.close(actor_id)
        ticket = await self._tickets.save(ticket)

        await self._record(ticket.id, AuditActor.AGENT, AuditAction.TICKET_CLOSED, {
            "previous_status": previous_status,
            "closed_by": actor_id
        })
        return ticket

    async def latest_suggestion(self, ticket_id: str) -> AgentSuggestion:
        await self.get_ticket(ticket_id)
        suggestion = await self._suggestions.latest_for_ticket(ticket_id)
        if suggestion is None:
            raise ResourceNotFoundException("AgentSuggestion", f"ticket:{ticket_id}")
        return suggestion

    async def edit_suggestion(self, suggestion_id: str, draft_reply: str, editor_id: Optional[str] = None) -> AgentSuggestion:
        suggestion = await self._suggestions.get_by_id(suggestion_id)
        if suggestion is None:
            raise ResourceNotFoundException("AgentSuggestion", suggestion_id)

        previous = suggestion.edit_draft(draft_reply)
        suggestion = await self._suggestions.update_draft(suggestion)

        await self._record(suggestion.ticket_id, AuditActor.AGENT, AuditAction.SUGGESTION_EDITED, {
            "suggestion_id": suggestion.id,
            "editor_id": editor_id,
            "original_length": len(previous),
            "new_length": len(draft_reply)
        })
        return suggestion

    async def _record(self, ticket_id: str, actor: str, action: str, metadata: dict) -> None:
        await self._audit.record(
            ticket_id=ticket_id,
            run_id=str(uuid.uuid4()),
            actor=actor,
            action=action,
            metadata=metadata
        )
        logger.info("Ticket lifecycle change", extra={"ticket_id": ticket_id, "action": action})
