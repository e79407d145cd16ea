"""
Triage Domain Layer
===================

Domain layer for the ticket triage module.

Contains:
- Entities: Ticket, AgentSuggestion, AuditLogEntry and per-run results
- Value Objects: TriageConfig, DecisionPolicy, KeywordRules, prompt builders,
  audit and ticket queries, suggestion statistics

This layer is framework-agnostic and contains pure business logic.
"""

from helpdesk.triage.domain.entities import (
    utcnow,
    ModelInfo,
    TicketReply,
    User,
    Ticket,
    RetrievedArticle,
    ClassificationResult,
    DraftResult,
    TriageDecision,
    AgentSuggestion,
    AuditLogEntry,
    TriagePlan,
    TriageRunContext,
    TriageResult,
)
from helpdesk.triage.domain.value_objects import (
    TRIAGE_PLAN_STEPS,
    CATEGORY_UPDATE_CONFIDENCE,
    TriageConfig,
    DecisionPolicy,
    KeywordRules,
    ClassificationPromptBuilder,
    DraftPromptBuilder,
    AuditQuery,
    AuditPage,
    AuditStats,
    TicketQuery,
    TicketPage,
    CONFIDENCE_BUCKET_BOUNDARIES,
    confidence_bucket,
    CategoryStats,
    SuggestionStats,
)

__all__ = [
    "utcnow",
    "ModelInfo",
    "TicketReply",
    "User",
    "Ticket",
    "RetrievedArticle",
    "ClassificationResult",
    "DraftResult",
    "TriageDecision",
    "AgentSuggestion",
    "AuditLogEntry",
    "TriagePlan",
    "TriageRunContext",
    "TriageResult",
    "TRIAGE_PLAN_STEPS",
    "CATEGORY_UPDATE_CONFIDENCE",
    "TriageConfig",
    "DecisionPolicy",
    "KeywordRules",
    "ClassificationPromptBuilder",
    "DraftPromptBuilder",
    "AuditQuery",
    "AuditPage",
    "AuditStats",
    "TicketQuery",
    "TicketPage",
    "CONFIDENCE_BUCKET_BOUNDARIES",
    "confidence_bucket",
    "CategoryStats",
    "SuggestionStats",
]
