"""
Triage Application DTOs
========================

Data Transfer Objects for the ticket, triage, audit and config APIs.

Pydantic models for request/response validation.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime

from helpdesk.triage.domain import (
    AgentSuggestion, AuditLogEntry, AuditPage, AuditStats, SuggestionStats, Ticket,
    TicketPage, TriageConfig, TriageResult
)


# ========== Type Aliases for Literals ==========
CategoryStr = Literal["billing", "tech", "shipping", "other"]
ReplyStatusStr = Literal["open", "waiting_human", "resolved", "closed"]
RoleStr = Literal["admin", "agent", "user"]
DecisionStr = Literal["auto_close", "assign_human"]

# Width of the id and run id columns
ID_MAX_LENGTH = 64


# ========== Request DTOs ==========

class CreateTicketRequest(BaseModel):
    """Request model for ticket creation."""
    title: str = Field(..., min_length=1, max_length=200, description="Ticket title")
    description: str = Field(..., min_length=1, max_length=5000, description="Problem description")
    category: Optional[CategoryStr] = Field(None, description="Initial category, defaults to other")
    created_by: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH, description="Creator user ID")


class ReplyRequest(BaseModel):
    """Request model for a human reply."""
    author_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)
    content: str = Field(..., min_length=1, max_length=5000)
    status: Optional[ReplyStatusStr] = Field(None, description="Optional new ticket status")


class AssignRequest(BaseModel):
    """Request model for manual assignment."""
    assignee_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)
    assigned_by: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)


class ReopenRequest(BaseModel):
    """Request model for reopening a ticket."""
    actor_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)
    actor_role: RoleStr = "user"


class CloseRequest(BaseModel):
    """Request model for closing a ticket."""
    actor_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)


class TriageRequest(BaseModel):
    """Optional body of a manual triage request."""
    run_id: Optional[str] = Field(
        None, max_length=ID_MAX_LENGTH, description="Run ID to use instead of a generated one"
    )


class RetryTriageRequest(BaseModel):
    """Optional body of a retrying triage request."""
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Overall bound on the retry loop")


class EditSuggestionRequest(BaseModel):
    """Request model for editing a suggestion draft."""
    draft_reply: str = Field(..., min_length=1, max_length=5000)
    editor_id: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)


class ConfigUpdateRequest(BaseModel):
    """Partial configuration update; ranges are checked by the config service."""
    auto_close_enabled: Optional[bool] = None
    confidence_threshold: Optional[float] = None
    sla_hours: Optional[int] = None
    updated_by: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"updated_by"})


# ========== Response DTOs ==========

class TicketReplyInfo(BaseModel):
    """Reply information in API response."""
    author_id: str
    content: str
    is_agent_generated: bool
    timestamp: datetime


class TicketResponse(BaseModel):
    """Response model for a ticket."""
    id: str
    title: str
    description: str
    category: CategoryStr
    status: str
    created_by: str
    assignee_id: Optional[str] = None
    agent_suggestion_id: Optional[str] = None
    replies: List[TicketReplyInfo] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, ticket: Ticket) -> "TicketResponse":
        """Create from domain entity."""
        return cls(
            id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            category=ticket.category,
            status=ticket.status,
            created_by=ticket.created_by,
            assignee_id=ticket.assignee_id,
            agent_suggestion_id=ticket.agent_suggestion_id,
            replies=[
                TicketReplyInfo(
                    author_id=reply.author_id,
                    content=reply.content,
                    is_agent_generated=reply.is_agent_generated,
                    timestamp=reply.timestamp
                )
                for reply in ticket.replies
            ],
            created_at=ticket.created_at,
            updated_at=ticket.updated_at
        )


class TriageResultResponse(BaseModel):
    """Response model for a completed triage run."""
    success: bool
    run_id: str
    ticket_id: str
    decision: DecisionStr
    confidence: float = Field(..., ge=0.0, le=1.0)
    suggestion_id: Optional[str] = None
    assignee_id: Optional[str] = None
    degraded: bool = False

    @classmethod
    def from_domain(cls, result: TriageResult) -> "TriageResultResponse":
        return cls(**result.to_dict())


class ModelInfoResponse(BaseModel):
    """Provenance information in API response."""
    provider: str
    model: str
    prompt_version: str
    latency_ms: int


class SuggestionResponse(BaseModel):
    """Response model for an agent suggestion."""
    id: str
    ticket_id: str
    run_id: str
    predicted_category: CategoryStr
    article_ids: List[str]
    draft_reply: str
    citations: List[str]
    confidence: float
    auto_closed: bool
    model_info: ModelInfoResponse
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, suggestion: AgentSuggestion) -> "SuggestionResponse":
        return cls(
            id=suggestion.id,
            ticket_id=suggestion.ticket_id,
            run_id=suggestion.run_id,
            predicted_category=suggestion.predicted_category,
            article_ids=suggestion.article_ids,
            draft_reply=suggestion.draft_reply,
            citations=suggestion.citations,
            confidence=suggestion.confidence,
            auto_closed=suggestion.auto_closed,
            model_info=ModelInfoResponse(**suggestion.model_info.to_dict()),
            created_at=suggestion.created_at,
            updated_at=suggestion.updated_at
        )


class AuditEntryResponse(BaseModel):
    """Response model for one audit entry."""
    id: str
    ticket_id: Optional[str] = None
    run_id: str
    actor: str
    action: str
    metadata: Dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_domain(cls, entry: AuditLogEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            ticket_id=entry.ticket_id,
            run_id=entry.run_id,
            actor=entry.actor,
            action=entry.action,
            metadata=entry.metadata,
            timestamp=entry.timestamp
        )


class AuditPageResponse(BaseModel):
    """Paginated audit entries."""
    entries: List[AuditEntryResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_domain(cls, page: AuditPage) -> "AuditPageResponse":
        return cls(
            entries=[AuditEntryResponse.from_domain(e) for e in page.entries],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages
        )


class RunTraceResponse(BaseModel):
    """All entries of one run in insertion order."""
    run_id: str
    entries: List[AuditEntryResponse]
    count: int


class AuditStatsResponse(BaseModel):
    """Audit counts by action and by actor."""
    days: int
    since: datetime
    total: int
    by_action: Dict[str, int]
    by_actor: Dict[str, int]

    @classmethod
    def from_domain(cls, stats: AuditStats) -> "AuditStatsResponse":
        return cls(
            days=stats.days,
            since=stats.since,
            total=stats.total,
            by_action=stats.by_action,
            by_actor=stats.by_actor
        )


class ConfigResponse(BaseModel):
    """Current triage configuration."""
    auto_close_enabled: bool
    confidence_threshold: float = Field(..., ge=0.0, le=1.0)
    sla_hours: int = Field(..., ge=1, le=168)

    @classmethod
    def from_domain(cls, config: TriageConfig) -> "ConfigResponse":
        return cls(**config.to_dict())


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    environment: str
    llm_enabled: bool
    timestamp: datetime


class TicketPageResponse(BaseModel):
    """Paginated tickets, newest first."""
    tickets: List[TicketResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_domain(cls, page: TicketPage) -> "TicketPageResponse":
        return cls(
            tickets=[TicketResponse.from_domain(t) for t in page.tickets],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages
        )


class ConfidenceBucketResponse(BaseModel):
    """Suggestion count with confidence in [lower, upper)."""
    lower: float
    upper: float
    count: int


class CategoryStatsResponse(BaseModel):
    count: int
    average_confidence: float


class TriageStatsResponse(BaseModel):
    """Aggregates over all agent suggestions."""
    total: int
    auto_closed_total: int
    last_24_hours: int
    last_7_days: int
    average_confidence: float
    confidence_distribution: List[ConfidenceBucketResponse]
    category_breakdown: Dict[str, CategoryStatsResponse]
    auto_close_rate: float

    @classmethod
    def from_domain(cls, stats: SuggestionStats) -> "TriageStatsResponse":
        return cls(
            total=stats.total,
            auto_closed_total=stats.auto_closed_total,
            last_24_hours=stats.last_24_hours,
            last_7_days=stats.last_7_days,
            average_confidence=stats.average_confidence,
            confidence_distribution=[
                ConfidenceBucketResponse(lower=lower, upper=upper, count=count)
                for (lower, upper), count in zip(stats.buckets(), stats.confidence_distribution)
            ],
            category_breakdown={
                category: CategoryStatsResponse(
                    count=entry.count, average_confidence=entry.average_confidence
                )
                for category, entry in stats.category_breakdown.items()
            },
            auto_close_rate=stats.auto_close_rate
        )
