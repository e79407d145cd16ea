"""
Triage Value Objects
====================

Immutable value objects and pure rules for the triage domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from helpdesk.config import (
    TicketCategory, TriageAction, KEYWORD_CATEGORIES,
    VALID_ACTIONS, VALID_ACTORS, VALID_CATEGORIES, VALID_STATUSES
)
from helpdesk.triage.domain.entities import TriageDecision


TRIAGE_PLAN_STEPS = [
    "classify_category",
    "retrieve_kb_articles",
    "draft_reply",
    "compute_confidence",
    "make_decision",
]

# Confidence a classification must exceed before the ticket category is overwritten
CATEGORY_UPDATE_CONFIDENCE = 0.7


@dataclass(frozen=True)
class TriageConfig:
    """Snapshot of the singleton triage configuration record."""
    auto_close_enabled: bool
    confidence_threshold: float
    sla_hours: int

    def __post_init__(self):
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")
        if not 1 <= self.sla_hours <= 168:
            raise ValueError("sla_hours must be between 1 and 168")

    @classmethod
    def defaults(cls, app_settings) -> "TriageConfig":
        """Compiled-in defaults used when no configuration record exists."""
        return cls(
            auto_close_enabled=app_settings.auto_close_enabled,
            confidence_threshold=app_settings.confidence_threshold,
            sla_hours=app_settings.sla_hours
        )

    def to_dict(self) -> dict:
        return asdict(self)


class DecisionPolicy:
    """
    Confidence-based auto-close rule.

    Pure function of its inputs: no side effects, no randomness.
    """

    @staticmethod
    def decide(confidence: float, config: TriageConfig) -> TriageDecision:
        """
        Turn a confidence value and configuration into a verdict.

        ``auto_close`` iff auto-close is enabled and confidence reaches the
        threshold (inclusive); ``assign_human`` otherwise.
        """
        threshold = config.confidence_threshold
        if not config.auto_close_enabled:
            action = TriageAction.ASSIGN_HUMAN
            reasoning = "Auto-close is disabled; assigning to a human agent"
        elif confidence >= threshold:
            action = TriageAction.AUTO_CLOSE
            reasoning = f"Confidence {confidence:.2f} meets threshold {threshold:.2f}"
        else:
            action = TriageAction.ASSIGN_HUMAN
            reasoning = f"Confidence {confidence:.2f} is below threshold {threshold:.2f}"

        return TriageDecision(
            action=action,
            reasoning=reasoning,
            confidence=confidence,
            threshold=threshold,
            auto_close_enabled=config.auto_close_enabled
        )


class KeywordRules:
    """
    Fixed keyword lists behind the deterministic classifier.

    Matching is a case-insensitive substring test per keyword; a keyword
    counts once however often it occurs.
    """

    KEYWORDS: Dict[str, List[str]] = {
        TicketCategory.BILLING: [
            "refund", "invoice", "payment", "charge", "billing", "money", "cost", "price"
        ],
        TicketCategory.TECH: [
            "error", "bug", "login", "password", "api", "code", "500", "404", "crash", "broken"
        ],
        TicketCategory.SHIPPING: [
            "delivery", "shipment", "tracking", "package", "order", "shipping", "delivered"
        ],
    }

    NO_MATCH_CONFIDENCE = 0.5
    BASE_CONFIDENCE = 0.6
    PER_MATCH_CONFIDENCE = 0.1
    MAX_CONFIDENCE = 0.9

    @classmethod
    def count_matches(cls, text: str) -> Dict[str, int]:
        """Number of distinct keywords of each category found in the text."""
        lower_text = text.lower()
        return {
            category: sum(1 for word in cls.KEYWORDS[category] if word in lower_text)
            for category in KEYWORD_CATEGORIES
        }

    @classmethod
    def classify(cls, text: str) -> Tuple[str, float]:
        """
        Pick the category with the most matches.

        Ties go to the earliest category in enumeration order; no matches
        at all resolve to ``other``.
        """
        counts = cls.count_matches(text)
        best_category = TicketCategory.OTHER
        best_count = 0
        for category in KEYWORD_CATEGORIES:
            if counts[category] > best_count:
                best_category = category
                best_count = counts[category]

        if best_count == 0:
            return TicketCategory.OTHER, cls.NO_MATCH_CONFIDENCE

        confidence = round(cls.BASE_CONFIDENCE + cls.PER_MATCH_CONFIDENCE * best_count, 2)
        return best_category, min(cls.MAX_CONFIDENCE, confidence)


class ClassificationPromptBuilder:
    """
    Builds prompts for ticket classification.

    All prompt text for the remote classifier lives here.
    """

    SYSTEM_PROMPT = (
        "You are a support ticket classifier. "
        "Respond only with valid JSON matching the required schema."
    )

    @classmethod
    def build_prompt(cls, text: str) -> str:
        """Build classification prompt from ticket text."""
        return f"""Classify this support ticket into one of these categories: billing, tech, shipping, other.

Ticket: "{text}"

Classification rules:
- billing: refunds, payments, invoices, charges, pricing
- tech: errors, bugs, login issues, technical problems, API issues
- shipping: delivery, tracking, packages, orders, shipment
- other: general inquiries that don't fit above categories

Respond with JSON only:
{{
  "predictedCategory": "billing|tech|shipping|other",
  "confidence": 0.0-1.0
}}"""

    @classmethod
    def get_system_prompt(cls) -> str:
        """Get the system prompt for classification."""
        return cls.SYSTEM_PROMPT


class DraftPromptBuilder:
    """Builds prompts for reply drafting."""

    SYSTEM_PROMPT = (
        "You are a helpful support agent. Draft professional, helpful responses to "
        "support tickets using the provided knowledge base articles. Always include "
        "numbered citations. Respond only with valid JSON matching the required schema."
    )

    ARTICLE_BODY_LIMIT = 500

    @classmethod
    def build_prompt(cls, text: str, articles: list) -> str:
        """Build the draft prompt listing each article with its citation number."""
        articles_text = "\n\n".join(
            f"[{i}] {article.title}\n{article.body[:cls.ARTICLE_BODY_LIMIT]}..."
            for i, article in enumerate(articles, 1)
        )

        return f"""Draft a helpful response to this support ticket using the provided knowledge base articles.

Ticket: "{text}"

Available Knowledge Base Articles:
{articles_text}

Requirements:
- Be professional and helpful
- Reference relevant articles with numbered citations like [1], [2]
- Keep response concise but complete
- If no articles are directly relevant, provide a general helpful response

Respond with JSON only:
{{
  "draftReply": "your response here with [1] citations",
  "citations": ["Article Title 1", "Article Title 2"]
}}"""

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT


@dataclass(frozen=True)
class AuditQuery:
    """Filters and paging for the audit system view."""
    ticket_id: Optional[str] = None
    run_id: Optional[str] = None
    actor: Optional[str] = None
    action: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    page: int = 1
    limit: int = 50
    ascending: bool = False

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.limit <= 100:
            raise ValueError("limit must be between 1 and 100")
        if self.actor is not None and self.actor not in VALID_ACTORS:
            raise ValueError(f"actor must be one of {VALID_ACTORS}")
        if self.action is not None and self.action not in VALID_ACTIONS:
            raise ValueError(f"unknown audit action '{self.action}'")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class AuditPage:
    """One page of audit entries with the total match count."""
    entries: list
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass(frozen=True)
class AuditStats:
    """Entry counts by action and by actor within a time window."""
    days: int
    since: datetime
    by_action: Dict[str, int]
    by_actor: Dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.by_action.values())


@dataclass(frozen=True)
class TicketQuery:
    """Filters and paging for the ticket list, newest first."""
    status: Optional[str] = None
    category: Optional[str] = None
    assignee_id: Optional[str] = None
    created_by: Optional[str] = None
    page: int = 1
    limit: int = 20

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.limit <= 50:
            raise ValueError("limit must be between 1 and 50")
        if self.status is not None and self.status not in VALID_STATUSES:
            raise ValueError(f"status must be one of {VALID_STATUSES}")
        if self.category is not None and self.category not in VALID_CATEGORIES:
            raise ValueError(f"category must be one of {VALID_CATEGORIES}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class TicketPage:
    """One page of tickets with the total match count."""
    tickets: list
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


# Lower bounds are inclusive; the last bucket also holds 1.0
CONFIDENCE_BUCKET_BOUNDARIES = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)


def confidence_bucket(confidence: float) -> int:
    """Index of the distribution bucket a confidence value falls into."""
    for index, upper in enumerate(CONFIDENCE_BUCKET_BOUNDARIES[1:-1]):
        if confidence < upper:
            return index
    return len(CONFIDENCE_BUCKET_BOUNDARIES) - 2


@dataclass(frozen=True)
class CategoryStats:
    """Suggestion count and mean confidence of one predicted category."""
    count: int
    average_confidence: float


@dataclass(frozen=True)
class SuggestionStats:
    """
    Aggregate view over all stored agent suggestions.

    ``confidence_distribution`` holds one count per bucket of
    ``CONFIDENCE_BUCKET_BOUNDARIES``.
    """
    total: int
    auto_closed_total: int
    last_24_hours: int
    last_7_days: int
    average_confidence: float
    confidence_distribution: List[int]
    category_breakdown: Dict[str, CategoryStats]

    @property
    def auto_close_rate(self) -> float:
        return self.auto_closed_total / self.total if self.total else 0.0

    @staticmethod
    def buckets() -> List[Tuple[float, float]]:
        bounds = CONFIDENCE_BUCKET_BOUNDARIES
        return list(zip(bounds[:-1], bounds[1:]))
