"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-triage", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== LLM Provider (OpenAI-compatible) ==========
    llm_provider: str = Field(
        default="deepseek",
        description="Provider name recorded in suggestion provenance"
    )
    llm_api_key: Optional[str] = Field(
        default=None,
        description="API key for the chat completions provider"
    )
    llm_base_url: str = Field(
        default="https://api.deepseek.com/v1",
        description="Base URL of the OpenAI-compatible API"
    )
    llm_model: str = Field(
        default="deepseek-chat",
        description="Model used for classification and drafting"
    )
    llm_timeout_seconds: float = Field(
        default=30.0,
        description="Hard timeout for a single LLM request",
        gt=0,
        le=120
    )
    stub_mode: bool = Field(
        default=False,
        description="Use the deterministic classifier and drafter (no API calls)"
    )
    prompt_version: str = Field(default="1.0", description="Prompt template version tag")

    # ========== Triage Defaults (used when no config record exists) ==========
    auto_close_enabled: bool = Field(
        default=False,
        description="Allow the pipeline to resolve tickets on its own"
    )
    confidence_threshold: float = Field(
        default=0.78,
        description="Minimum confidence required for auto-close",
        ge=0.0,
        le=1.0
    )
    sla_hours: int = Field(default=24, description="SLA target in hours", ge=1, le=168)

    # ========== Triage Pipeline ==========
    triage_query_max_length: int = Field(
        default=200,
        description="Maximum characters of ticket text used as KB query",
        ge=10
    )
    kb_search_limit: int = Field(
        default=3,
        description="Number of KB articles retrieved per run",
        ge=1,
        le=20
    )
    assignment_policy: str = Field(
        default="first_available",
        description="Human assignee selection policy"
    )
    system_user_email: str = Field(
        default="system@helpdesk.local",
        description="Identity that authors generated replies"
    )

    # ========== Retry ==========
    retry_max_attempts: int = Field(default=3, description="Triage retry attempts", ge=1, le=10)
    retry_backoff_base: float = Field(
        default=2.0,
        description="Backoff base; wait is base ** attempt seconds",
        ge=0.0
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("assignment_policy")
    @classmethod
    def validate_assignment_policy(cls, v: str) -> str:
        """Ensure the assignment policy is known."""
        if v not in ASSIGNMENT_POLICIES:
            raise ValueError(f"assignment_policy must be one of {ASSIGNMENT_POLICIES}")
        return v

    @property
    def llm_enabled(self) -> bool:
        """Remote LLM calls are made only with a key and outside stub mode."""
        return bool(self.llm_api_key) and not self.stub_mode


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class TicketCategory(str):
    """Ticket categories."""
    BILLING = "billing"
    TECH = "tech"
    SHIPPING = "shipping"
    OTHER = "other"


class TicketStatus(str):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    TRIAGED = "triaged"           # in-flight only, never persisted
    WAITING_HUMAN = "waiting_human"
    RESOLVED = "resolved"
    CLOSED = "closed"


class UserRole(str):
    """Account roles."""
    ADMIN = "admin"
    AGENT = "agent"
    USER = "user"


class ArticleStatus(str):
    """Knowledge base article states."""
    DRAFT = "draft"
    PUBLISHED = "published"


class AuditActor(str):
    """Who produced an audit entry."""
    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class AuditAction(str):
    """Audit log actions."""
    TICKET_CREATED = "TICKET_CREATED"
    TRIAGE_STARTED = "TRIAGE_STARTED"
    AGENT_CLASSIFIED = "AGENT_CLASSIFIED"
    KB_RETRIEVED = "KB_RETRIEVED"
    DRAFT_GENERATED = "DRAFT_GENERATED"
    DECISION_MADE = "DECISION_MADE"
    AUTO_CLOSED = "AUTO_CLOSED"
    ASSIGNED_TO_HUMAN = "ASSIGNED_TO_HUMAN"
    TRIAGE_FAILED = "TRIAGE_FAILED"
    REPLY_SENT = "REPLY_SENT"
    TICKET_ASSIGNED = "TICKET_ASSIGNED"
    TICKET_REOPENED = "TICKET_REOPENED"
    TICKET_CLOSED = "TICKET_CLOSED"
    SUGGESTION_EDITED = "SUGGESTION_EDITED"
    CONFIG_UPDATED = "CONFIG_UPDATED"


class TriageAction(str):
    """Verdicts of the decision policy."""
    AUTO_CLOSE = "auto_close"
    ASSIGN_HUMAN = "assign_human"


class ResultSource(str):
    """Which path produced a classification or draft."""
    REMOTE = "remote"
    DETERMINISTIC = "deterministic"
    FALLBACK = "fallback"


# ========== Lists for validation ==========

VALID_CATEGORIES = [
    TicketCategory.BILLING, TicketCategory.TECH,
    TicketCategory.SHIPPING, TicketCategory.OTHER
]
# Enumeration order used to break classifier ties
KEYWORD_CATEGORIES = [TicketCategory.BILLING, TicketCategory.TECH, TicketCategory.SHIPPING]
VALID_STATUSES = [
    TicketStatus.OPEN, TicketStatus.TRIAGED, TicketStatus.WAITING_HUMAN,
    TicketStatus.RESOLVED, TicketStatus.CLOSED
]
TRIAGEABLE_STATUSES = [TicketStatus.OPEN, TicketStatus.WAITING_HUMAN]
REOPENABLE_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED]
VALID_ROLES = [UserRole.ADMIN, UserRole.AGENT, UserRole.USER]
VALID_ACTORS = [AuditActor.SYSTEM, AuditActor.AGENT, AuditActor.USER]
VALID_ACTIONS = [
    AuditAction.TICKET_CREATED, AuditAction.TRIAGE_STARTED,
    AuditAction.AGENT_CLASSIFIED, AuditAction.KB_RETRIEVED,
    AuditAction.DRAFT_GENERATED, AuditAction.DECISION_MADE,
    AuditAction.AUTO_CLOSED, AuditAction.ASSIGNED_TO_HUMAN,
    AuditAction.TRIAGE_FAILED, AuditAction.REPLY_SENT,
    AuditAction.TICKET_ASSIGNED, AuditAction.TICKET_REOPENED,
    AuditAction.TICKET_CLOSED, AuditAction.SUGGESTION_EDITED,
    AuditAction.CONFIG_UPDATED
]
TERMINAL_ACTIONS = [AuditAction.AUTO_CLOSED, AuditAction.ASSIGNED_TO_HUMAN]
ASSIGNMENT_POLICIES = ["first_available", "round_robin", "least_loaded"]


# Global settings instance
settings = get_settings()
