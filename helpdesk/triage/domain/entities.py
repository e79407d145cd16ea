"""
Triage Domain Entities
======================

Domain entities for the ticket triage module.

Contains pure Python business objects for tickets, agent suggestions,
audit entries and the per-run state threaded through the pipeline.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, List, Any

from helpdesk.config import (
    TicketStatus, TicketCategory, TriageAction, ResultSource,
    TRIAGEABLE_STATUSES, REOPENABLE_STATUSES
)
from helpdesk.core import InvalidStateException


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# Legal status changes outside the triage execute phase
_TRANSITIONS = {
    TicketStatus.OPEN: {TicketStatus.WAITING_HUMAN, TicketStatus.RESOLVED, TicketStatus.CLOSED},
    TicketStatus.WAITING_HUMAN: {TicketStatus.RESOLVED, TicketStatus.CLOSED},
    TicketStatus.RESOLVED: {TicketStatus.WAITING_HUMAN, TicketStatus.CLOSED},
    TicketStatus.CLOSED: {TicketStatus.WAITING_HUMAN},
}


@dataclass
class ModelInfo:
    """Provenance of a classification or draft."""
    provider: str
    model: str
    prompt_version: str
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TicketReply:
    """One reply in a ticket thread."""
    author_id: str
    content: str
    is_agent_generated: bool = False
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class User:
    """Helpdesk account."""
    id: str
    name: str
    email: str
    role: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Ticket:
    """
    Support ticket entity.

    Owns the ticket status state machine. The triage execute phase moves an
    open or waiting ticket to ``resolved`` or ``waiting_human``; human actions
    use ``add_reply``, ``assign``, ``reopen`` and ``close``.
    """
    id: str
    title: str
    description: str
    created_by: str
    category: str = TicketCategory.OTHER
    status: str = TicketStatus.OPEN
    assignee_id: Optional[str] = None
    agent_suggestion_id: Optional[str] = None
    replies: List[TicketReply] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @property
    def full_text(self) -> str:
        """Text handed to the classifier and drafter."""
        return f"{self.title}\n{self.description}"

    def search_query(self, max_length: int) -> str:
        """Knowledge base query derived from title and description."""
        return f"{self.title} {self.description}"[:max_length]

    @property
    def can_be_triaged(self) -> bool:
        return self.status in TRIAGEABLE_STATUSES

    def ensure_triageable(self) -> None:
        """Raise unless the pipeline may run against this ticket."""
        if not self.can_be_triaged:
            raise InvalidStateException(
                f"Ticket {self.id} cannot be triaged in status '{self.status}'",
                current_state=self.status
            )

    def snapshot(self) -> dict:
        """Identity/category/status snapshot recorded in the triage plan."""
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "status": self.status,
        }

    def update_category(self, category: str) -> bool:
        """Set the category; returns True when it changed."""
        if category == self.category:
            return False
        self.category = category
        self._touch()
        return True

    # ----- triage execute phase -----

    def resolve_with_generated_reply(self, author_id: str, content: str, suggestion_id: str) -> None:
        """Auto-close: resolve the ticket with the drafted reply."""
        self.ensure_triageable()
        self.agent_suggestion_id = suggestion_id
        self.status = TicketStatus.RESOLVED
        self.replies.append(TicketReply(
            author_id=author_id,
            content=content,
            is_agent_generated=True
        ))
        self._touch()

    def hand_to_human(self, assignee_id: Optional[str], suggestion_id: str) -> None:
        """Assign-human: park the ticket for a human, keeping any current assignee if none chosen."""
        self.ensure_triageable()
        self.agent_suggestion_id = suggestion_id
        self.status = TicketStatus.WAITING_HUMAN
        if assignee_id:
            self.assignee_id = assignee_id
        self._touch()

    # ----- human lifecycle -----

    def add_reply(self, author_id: str, content: str, status: Optional[str] = None) -> None:
        """Append a human reply, optionally moving the ticket to a new status."""
        if status is not None and status != self.status:
            self._transition(status)
        self.replies.append(TicketReply(author_id=author_id, content=content))
        if status == TicketStatus.RESOLVED and not self.assignee_id:
            self.assignee_id = author_id
        self._touch()

    def assign(self, assignee_id: str) -> Optional[str]:
        """Manually assign; returns the previous assignee."""
        if self.status == TicketStatus.CLOSED:
            raise InvalidStateException("Cannot assign a closed ticket", current_state=self.status)
        previous = self.assignee_id
        self.assignee_id = assignee_id
        self.status = TicketStatus.WAITING_HUMAN
        self._touch()
        return previous

    def reopen(self) -> str:
        """Reopen a resolved or closed ticket; returns the previous status."""
        if self.status not in REOPENABLE_STATUSES:
            raise InvalidStateException(
                "Can only reopen resolved or closed tickets",
                current_state=self.status
            )
        previous = self.status
        self.status = TicketStatus.WAITING_HUMAN
        self._touch()
        return previous

    def close(self, actor_id: str) -> None:
        if self.status == TicketStatus.CLOSED:
            raise InvalidStateException("Ticket is already closed", current_state=self.status)
        self.status = TicketStatus.CLOSED
        if not self.assignee_id:
            self.assignee_id = actor_id
        self._touch()

    def _transition(self, target: str) -> None:
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidStateException(
                f"Cannot move ticket from '{self.status}' to '{target}'",
                current_state=self.status
            )
        self.status = target

    def _touch(self) -> None:
        self.updated_at = utcnow()


@dataclass
class RetrievedArticle:
    """Knowledge base article returned by retrieval, with its relevance score."""
    id: str
    title: str
    body: str
    tags: List[str] = field(default_factory=list)
    score: float = 0.0


@dataclass
class ClassificationResult:
    """
    Result of ticket classification.

    ``source`` tells a remote answer apart from a deterministic one and from
    a remote call that degraded to the deterministic path.
    """
    predicted_category: str
    confidence: float  # 0.0 to 1.0
    model_info: ModelInfo
    source: str = ResultSource.DETERMINISTIC

    def __post_init__(self):
        """Validate classification result."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("Confidence must be between 0 and 1")

    @property
    def is_degraded(self) -> bool:
        return self.source == ResultSource.FALLBACK


@dataclass
class DraftResult:
    """Reply draft with the titles of the articles it cites."""
    draft_reply: str
    citations: List[str]
    model_info: ModelInfo
    source: str = ResultSource.DETERMINISTIC

    @property
    def is_degraded(self) -> bool:
        return self.source == ResultSource.FALLBACK


@dataclass(frozen=True)
class TriageDecision:
    """Verdict of the decision policy."""
    action: str
    reasoning: str
    confidence: float
    threshold: float
    auto_close_enabled: bool

    @property
    def is_auto_close(self) -> bool:
        return self.action == TriageAction.AUTO_CLOSE

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AgentSuggestion:
    """
    Outcome of one completed pipeline run.

    Only the draft can change after creation, and only while the ticket was
    not auto-closed with it.
    """
    id: str
    ticket_id: str
    run_id: str
    predicted_category: str
    article_ids: List[str]
    draft_reply: str
    confidence: float
    auto_closed: bool
    model_info: ModelInfo
    citations: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def edit_draft(self, draft_reply: str) -> str:
        """Replace the draft; returns the previous draft."""
        if self.auto_closed:
            raise InvalidStateException(
                "Cannot edit suggestion for auto-closed ticket",
                details={"suggestion_id": self.id}
            )
        previous = self.draft_reply
        self.draft_reply = draft_reply
        self.updated_at = utcnow()
        return previous


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record. ``ticket_id`` is None for system-wide events."""
    id: str
    run_id: str
    actor: str
    action: str
    metadata: dict
    ticket_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    sequence: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "run_id": self.run_id,
            "actor": self.actor,
            "action": self.action,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TriagePlan:
    """Fixed step list plus the ticket snapshot taken when the run began."""
    steps: List[str]
    ticket_info: dict

    def to_dict(self) -> dict:
        return {"steps": list(self.steps), "ticket_info": dict(self.ticket_info)}


@dataclass
class TriageRunContext:
    """
    In-memory state of one pipeline run.

    Each step reads its inputs from here; the audit trail is only a record.
    """
    run_id: str
    ticket: Ticket
    config: Optional[Any] = None
    plan: Optional[TriagePlan] = None
    classification: Optional[ClassificationResult] = None
    articles: List[RetrievedArticle] = field(default_factory=list)
    draft: Optional[DraftResult] = None
    decision: Optional[TriageDecision] = None
    suggestion: Optional[AgentSuggestion] = None
    assignee_id: Optional[str] = None
    current_step: str = "load_ticket"

    @property
    def degraded(self) -> bool:
        return bool(
            (self.classification and self.classification.is_degraded)
            or (self.draft and self.draft.is_degraded)
        )


@dataclass
class TriageResult:
    """Returned to the caller of a successful run."""
    success: bool
    run_id: str
    ticket_id: str
    decision: str
    confidence: float
    suggestion_id: Optional[str] = None
    assignee_id: Optional[str] = None
    degraded: bool = False

    def to_dict(self) -> dict:
        return asdict(self)
