"""
pytest configuration and shared fixtures

In-memory repositories stand in for PostgreSQL. They copy tickets in and
out and enforce the same version check as the SQLAlchemy repositories, so
the pipeline sees the same unit-of-work behaviour it gets in production.
"""
import copy
import dataclasses
import re
import uuid
from collections import Counter
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
from unittest.mock import AsyncMock

from helpdesk.config import Settings, TicketStatus, UserRole
from helpdesk.core import ConflictException, LLMException, RepositoryException
from helpdesk.infrastructure.llm import ILLMClient
from helpdesk.triage.application import (
    IAuditLogRepository, IConfigRepository, IKnowledgeBaseRepository,
    ISuggestionRepository, ITicketRepository, IUserRepository
)
from helpdesk.triage.domain import (
    CONFIDENCE_BUCKET_BOUNDARIES, AgentSuggestion, CategoryStats, ModelInfo, RetrievedArticle,
    SuggestionStats, Ticket, TriageConfig, User, confidence_bucket, utcnow
)
from helpdesk.triage.infrastructure import TriageRepositories, build_triage_components

SYSTEM_EMAIL = "system@helpdesk.local"


# ========== In-memory repositories ==========

class InMemorySuggestionRepository(ISuggestionRepository):
    def __init__(self):
        self.suggestions: Dict[str, AgentSuggestion] = {}

    def add(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        self.suggestions[suggestion.id] = copy.deepcopy(suggestion)
        return suggestion

    async def get_by_id(self, suggestion_id: str) -> Optional[AgentSuggestion]:
        stored = self.suggestions.get(suggestion_id)
        return copy.deepcopy(stored) if stored else None

    async def latest_for_ticket(self, ticket_id: str) -> Optional[AgentSuggestion]:
        matches = [s for s in self.suggestions.values() if s.ticket_id == ticket_id]
        return copy.deepcopy(matches[-1]) if matches else None

    async def update_draft(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        self.suggestions[suggestion.id] = copy.deepcopy(suggestion)
        return suggestion

    async def stats(self, day_since, week_since):
        stored = list(self.suggestions.values())
        distribution = [0] * (len(CONFIDENCE_BUCKET_BOUNDARIES) - 1)
        by_category: Dict[str, List[float]] = {}
        for s in stored:
            distribution[confidence_bucket(s.confidence)] += 1
            by_category.setdefault(s.predicted_category, []).append(s.confidence)
        return SuggestionStats(
            total=len(stored),
            auto_closed_total=sum(1 for s in stored if s.auto_closed),
            last_24_hours=sum(1 for s in stored if s.created_at >= day_since),
            last_7_days=sum(1 for s in stored if s.created_at >= week_since),
            average_confidence=sum(s.confidence for s in stored) / len(stored) if stored else 0.0,
            confidence_distribution=distribution,
            category_breakdown={
                category: CategoryStats(count=len(values), average_confidence=sum(values) / len(values))
                for category, values in by_category.items()
            },
        )


class InMemoryTicketRepository(ITicketRepository):
    def __init__(self, suggestions: InMemorySuggestionRepository):
        self.tickets: Dict[str, Ticket] = {}
        self._suggestions = suggestions

    def add(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = copy.deepcopy(ticket)
        return ticket

    def stored(self, ticket_id: str) -> Ticket:
        return self.tickets[ticket_id]

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        stored = self.tickets.get(ticket_id)
        return copy.deepcopy(stored) if stored else None

    async def create(self, ticket: Ticket) -> Ticket:
        ticket.version = 1
        return self.add(ticket)

    async def save_category(self, ticket: Ticket) -> Ticket:
        stored = self._check_version(ticket)
        stored.category = ticket.category
        stored.updated_at = ticket.updated_at
        stored.version += 1
        ticket.version = stored.version
        return ticket

    async def save(self, ticket: Ticket) -> Ticket:
        self._write(ticket)
        return ticket

    async def apply_triage_outcome(self, ticket: Ticket, suggestion: AgentSuggestion) -> Ticket:
        self._check_version(ticket)
        self._suggestions.add(suggestion)
        self._write(ticket)
        return ticket

    async def count_waiting_by_assignee(self, assignee_ids: List[str]) -> Dict[str, int]:
        counts = Counter(
            t.assignee_id for t in self.tickets.values()
            if t.status == TicketStatus.WAITING_HUMAN and t.assignee_id in assignee_ids
        )
        return dict(counts)

    async def query(self, query):
        matches = [
            t for t in self.tickets.values()
            if (query.status is None or t.status == query.status)
            and (query.category is None or t.category == query.category)
            and (query.assignee_id is None or t.assignee_id == query.assignee_id)
            and (query.created_by is None or t.created_by == query.created_by)
        ]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        page = matches[query.offset:query.offset + query.limit]
        return [copy.deepcopy(t) for t in page], len(matches)

    def _check_version(self, ticket: Ticket) -> Ticket:
        stored = self.tickets.get(ticket.id)
        if stored is None:
            raise RepositoryException(f"Ticket {ticket.id} disappeared during update")
        if stored.version != ticket.version:
            raise ConflictException(
                "Ticket", ticket.id, f"expected version {ticket.version}, found {stored.version}"
            )
        return stored

    def _write(self, ticket: Ticket) -> None:
        stored = self._check_version(ticket)
        ticket.version = stored.version + 1
        self.tickets[ticket.id] = copy.deepcopy(ticket)


class InMemoryAuditLogRepository(IAuditLogRepository):
    def __init__(self):
        self.entries = []

    async def append(self, entry):
        stored = dataclasses.replace(entry, sequence=len(self.entries) + 1)
        self.entries.append(stored)
        return stored

    async def list_for_run(self, run_id):
        return [e for e in self.entries if e.run_id == run_id]

    async def query(self, query):
        matches = [
            e for e in self.entries
            if (query.ticket_id is None or e.ticket_id == query.ticket_id)
            and (query.run_id is None or e.run_id == query.run_id)
            and (query.actor is None or e.actor == query.actor)
            and (query.action is None or e.action == query.action)
            and (query.since is None or e.timestamp >= query.since)
            and (query.until is None or e.timestamp <= query.until)
        ]
        matches.sort(key=lambda e: e.sequence, reverse=not query.ascending)
        return matches[query.offset:query.offset + query.limit], len(matches)

    async def count_since(self, since):
        recent = [e for e in self.entries if e.timestamp >= since]
        return dict(Counter(e.action for e in recent)), dict(Counter(e.actor for e in recent))

    def actions(self, run_id: Optional[str] = None) -> List[str]:
        return [e.action for e in self.entries if run_id is None or e.run_id == run_id]


class InMemoryConfigRepository(IConfigRepository):
    def __init__(self, config: Optional[TriageConfig] = None):
        self.config = config
        self.updated_by = None

    async def get(self):
        return self.config

    async def save(self, config, updated_by):
        self.config = config
        self.updated_by = updated_by
        return config


class InMemoryUserRepository(IUserRepository):
    def __init__(self):
        self.users: List[User] = []

    def add(self, user_id: str, role: str = UserRole.AGENT, email: Optional[str] = None) -> User:
        user = User(
            id=user_id,
            name=user_id.title(),
            email=email or f"{user_id}@helpdesk.local",
            role=role,
            created_at=utcnow() + timedelta(seconds=len(self.users))
        )
        self.users.append(user)
        return user

    async def get_by_id(self, user_id):
        return next((u for u in self.users if u.id == user_id), None)

    async def list_agents(self, exclude_email=None):
        agents = [u for u in self.users if u.role == UserRole.AGENT and u.email != exclude_email]
        return sorted(agents, key=lambda u: u.created_at)

    async def get_or_create_system_user(self, email):
        existing = next((u for u in self.users if u.email == email), None)
        return existing or self.add("system", UserRole.AGENT, email)


class InMemoryKnowledgeBaseRepository(IKnowledgeBaseRepository):
    """Word-overlap scoring over a list of articles; set ``error`` to make searches fail."""

    def __init__(self, articles: Optional[List[RetrievedArticle]] = None):
        self.articles = list(articles or [])
        self.error: Optional[Exception] = None

    async def full_text_search(self, query, category, limit):
        self._maybe_fail()
        words = set(re.findall(r"\w+", query.lower()))
        scored = []
        for article in self._filtered(category):
            text_words = set(re.findall(r"\w+", f"{article.title} {article.body}".lower()))
            overlap = len(words & text_words)
            if overlap:
                scored.append(dataclasses.replace(article, score=float(overlap)))
        scored.sort(key=lambda a: a.score, reverse=True)
        return scored[:limit]

    async def loose_search(self, words, category, limit):
        self._maybe_fail()
        return [
            dataclasses.replace(a, score=0.5) for a in self._filtered(category)
            if set(words) & set(a.tags) or any(w in a.title.lower() for w in words)
        ][:limit]

    async def latest(self, category, limit):
        self._maybe_fail()
        return list(reversed(self._filtered(category)))[:limit]

    def _filtered(self, category):
        return [a for a in self.articles if category is None or category in a.tags]

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error


class FailingLLMClient(ILLMClient):
    provider = "failing"
    model = "failing-model"

    def __init__(self):
        self.calls = 0

    async def chat_completion(self, messages, temperature=0.3, max_tokens=1000, operation="chat_completion"):
        self.calls += 1
        raise LLMException("provider unavailable", {"operation": operation})


# ========== Sample data ==========

ARTICLES = [
    RetrievedArticle(
        id="kb-payment",
        title="How to update payment method",
        body="Open Billing Settings and update the payment card on file.",
        tags=["billing", "payments"],
    ),
    RetrievedArticle(
        id="kb-refund",
        title="Refund and cancellation policy",
        body="Refunds for a duplicate charge are issued to the original payment method.",
        tags=["billing", "refund"],
    ),
    RetrievedArticle(
        id="kb-tracking",
        title="Tracking your shipment",
        body="Use the tracking number from the confirmation email.",
        tags=["shipping", "tracking"],
    ),
    RetrievedArticle(
        id="kb-500",
        title="Troubleshooting 500 errors",
        body="Clear the browser cache and retry.",
        tags=["tech", "errors"],
    ),
]

# Four billing keywords: refund, payment, charge, invoice
BILLING_TITLE = "Refund for duplicate payment"
BILLING_DESCRIPTION = "I was charged twice, please refund the invoice."

# No keyword of any category
NEUTRAL_TITLE = "Question about opening hours"
NEUTRAL_DESCRIPTION = "When is the team reachable on weekends?"


def make_ticket(
    title: str = BILLING_TITLE,
    description: str = BILLING_DESCRIPTION,
    **overrides
) -> Ticket:
    fields = {
        "id": str(uuid.uuid4()),
        "title": title,
        "description": description,
        "created_by": "customer-1",
    }
    fields.update(overrides)
    return Ticket(**fields)


def make_suggestion(ticket_id: str, auto_closed: bool = False, **overrides) -> AgentSuggestion:
    fields = {
        "id": str(uuid.uuid4()),
        "ticket_id": ticket_id,
        "run_id": str(uuid.uuid4()),
        "predicted_category": "billing",
        "article_ids": ["kb-refund"],
        "draft_reply": "Thank you for contacting our support team.",
        "confidence": 0.9,
        "auto_closed": auto_closed,
        "model_info": ModelInfo(provider="stub", model="rule-based", prompt_version="1.0"),
    }
    fields.update(overrides)
    return AgentSuggestion(**fields)


# ========== Fixtures ==========

@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="development",
        llm_api_key=None,
        stub_mode=True,
        auto_close_enabled=False,
        confidence_threshold=0.78,
        assignment_policy="first_available",
        system_user_email=SYSTEM_EMAIL,
    )


@pytest.fixture
def repos():
    suggestions = InMemorySuggestionRepository()
    users = InMemoryUserRepository()
    users.add("agent-1")
    users.add("agent-2")
    users.add("customer-1", role=UserRole.USER)
    users.add("system", role=UserRole.AGENT, email=SYSTEM_EMAIL)
    return TriageRepositories(
        tickets=InMemoryTicketRepository(suggestions),
        suggestions=suggestions,
        audit_logs=InMemoryAuditLogRepository(),
        config=InMemoryConfigRepository(),
        users=users,
        knowledge_base=InMemoryKnowledgeBaseRepository(ARTICLES),
    )


@pytest.fixture
def backoff_sleep():
    return AsyncMock()


@pytest.fixture
def components(test_settings, repos, backoff_sleep):
    return build_triage_components(test_settings, repos, sleep=backoff_sleep)


@pytest.fixture
def auto_close_config():
    return TriageConfig(auto_close_enabled=True, confidence_threshold=0.78, sla_hours=24)
