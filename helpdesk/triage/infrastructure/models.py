"""
Triage Infrastructure Models
=============================

SQLAlchemy ORM models for tickets, suggestions, the audit log, the
configuration record, users and knowledge base articles.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, text
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk.infrastructure.database import Base
from helpdesk.config import ArticleStatus, TicketCategory, TicketStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    """Helpdesk accounts. Only read by the triage pipeline, apart from the system identity."""
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ArticleModel(Base):
    """
    Knowledge base article.

    Full-text search runs over ``title || ' ' || body`` with a matching
    GIN expression index.
    """
    __tablename__ = "kb_articles"
    __table_args__ = (
        Index(
            "ix_kb_articles_fulltext",
            text("to_tsvector('english', title || ' ' || body)"),
            postgresql_using="gin"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[List[str]] = mapped_column(ARRAY(String(50)), nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ArticleStatus.DRAFT, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TicketModel(Base):
    """
    Support ticket.

    ``version`` is the optimistic concurrency counter; SQLAlchemy adds it to
    every UPDATE's WHERE clause and bumps it on write.
    """
    __tablename__ = "tickets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default=TicketCategory.OTHER)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TicketStatus.OPEN, index=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    agent_suggestion_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    replies: Mapped[List["TicketReplyModel"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketReplyModel.id",
        lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}


class TicketReplyModel(Base):
    """One reply of a ticket thread; the serial id keeps thread order."""
    __tablename__ = "ticket_replies"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    ticket_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_agent_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    ticket: Mapped[TicketModel] = relationship(back_populates="replies")


class AgentSuggestionModel(Base):
    """Outcome of one completed triage run."""
    __tablename__ = "agent_suggestions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    predicted_category: Mapped[str] = mapped_column(String(20), nullable=False)
    article_ids: Mapped[List[str]] = mapped_column(ARRAY(String(64)), nullable=False, default=list)
    draft_reply: Mapped[str] = mapped_column(Text, nullable=False)
    citations: Mapped[List[str]] = mapped_column(ARRAY(String(200)), nullable=False, default=list)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    auto_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Provenance
    model_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model_name: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt_version: Mapped[str] = mapped_column(String(20), nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AuditLogModel(Base):
    """
    Append-only audit log.

    ``sequence`` preserves insertion order within a run even when
    timestamps collide.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_ticket_timestamp", "ticket_id", "timestamp"),
    )

    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid4)
    ticket_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )


class TriageConfigModel(Base):
    """Singleton triage configuration row (id is always 1)."""
    __tablename__ = "triage_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    auto_close_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    sla_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
