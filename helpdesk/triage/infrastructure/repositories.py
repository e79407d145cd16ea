"""
Triage Infrastructure Repositories
====================================

SQLAlchemy implementations of the triage repository interfaces.

Every public method opens its own unit of work through ``session_context``,
so the effects of an earlier pipeline step are committed before a later
step runs.
"""

import dataclasses
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from helpdesk.config import ArticleStatus, TicketStatus, UserRole
from helpdesk.core import ConflictException, RepositoryException
from helpdesk.infrastructure.database import get_session_context
from helpdesk.triage.application.services import (
    IAuditLogRepository, IConfigRepository, IKnowledgeBaseRepository,
    ISuggestionRepository, ITicketRepository, IUserRepository, KnowledgeRetriever
)
from helpdesk.triage.domain import (
    CONFIDENCE_BUCKET_BOUNDARIES, AgentSuggestion, AuditLogEntry, AuditQuery,
    CategoryStats, ModelInfo, RetrievedArticle, SuggestionStats, Ticket,
    TicketQuery, TicketReply, TriageConfig, User
)

SessionContext = Callable[[], AsyncContextManager[AsyncSession]]


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


class _SQLAlchemyRepository:
    """Shared unit-of-work handling and error translation."""

    resource_type = "Resource"

    def __init__(self, session_context: SessionContext = get_session_context):
        self._session_context = session_context

    @asynccontextmanager
    async def _unit_of_work(self, resource_id: str = "unknown"):
        try:
            async with self._session_context() as session:
                yield session
        except StaleDataError as e:
            raise ConflictException(
                self.resource_type, resource_id, "modified concurrently, version mismatch"
            ) from e
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"{self.resource_type} persistence failed: {e}",
                {"resource_id": resource_id}
            ) from e


# ========== Tickets ==========

class SQLAlchemyTicketRepository(_SQLAlchemyRepository, ITicketRepository):
    """
    SQLAlchemy implementation for tickets.

    Writes compare the domain ticket's ``version`` with the stored one before
    touching the row; the ORM version column catches writers that race past
    that check at flush time.
    """

    resource_type = "Ticket"

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        from helpdesk.triage.infrastructure.models import TicketModel

        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._unit_of_work(ticket_id) as session:
            stmt = (
                select(TicketModel)
                .options(selectinload(TicketModel.replies))
                .where(TicketModel.id == ticket_uuid)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def create(self, ticket: Ticket) -> Ticket:
        from helpdesk.triage.infrastructure.models import TicketModel

        ticket_uuid = _as_uuid(ticket.id)
        if ticket_uuid is None:
            raise RepositoryException(f"Invalid ticket ID: {ticket.id}")

        async with self._unit_of_work(ticket.id) as session:
            model = TicketModel(
                id=ticket_uuid,
                title=ticket.title,
                description=ticket.description,
                category=ticket.category,
                status=ticket.status,
                created_by=ticket.created_by,
                assignee_id=ticket.assignee_id,
                created_at=ticket.created_at,
                updated_at=ticket.updated_at
            )
            session.add(model)
            await session.flush()
            ticket.version = model.version
        return ticket

    async def save_category(self, ticket: Ticket) -> Ticket:
        async with self._unit_of_work(ticket.id) as session:
            model = await self._load_for_update(session, ticket)
            model.category = ticket.category
            model.updated_at = ticket.updated_at
            await session.flush()
            ticket.version = model.version
        return ticket

    async def save(self, ticket: Ticket) -> Ticket:
        async with self._unit_of_work(ticket.id) as session:
            model = await self._load_for_update(session, ticket)
            self._apply_changes(model, ticket)
            await session.flush()
            ticket.version = model.version
        return ticket

    async def apply_triage_outcome(self, ticket: Ticket, suggestion: AgentSuggestion) -> Ticket:
        """Suggestion insert and ticket update commit together or not at all."""
        from helpdesk.triage.infrastructure.models import AgentSuggestionModel

        async with self._unit_of_work(ticket.id) as session:
            model = await self._load_for_update(session, ticket)
            session.add(AgentSuggestionModel(
                id=UUID(suggestion.id),
                ticket_id=model.id,
                run_id=suggestion.run_id,
                predicted_category=suggestion.predicted_category,
                article_ids=list(suggestion.article_ids),
                draft_reply=suggestion.draft_reply,
                citations=list(suggestion.citations),
                confidence=suggestion.confidence,
                auto_closed=suggestion.auto_closed,
                model_provider=suggestion.model_info.provider,
                model_name=suggestion.model_info.model,
                prompt_version=suggestion.model_info.prompt_version,
                latency_ms=suggestion.model_info.latency_ms,
                created_at=suggestion.created_at,
                updated_at=suggestion.updated_at
            ))
            self._apply_changes(model, ticket)
            await session.flush()
            ticket.version = model.version
        return ticket

    async def count_waiting_by_assignee(self, assignee_ids: List[str]) -> Dict[str, int]:
        from helpdesk.triage.infrastructure.models import TicketModel

        if not assignee_ids:
            return {}

        async with self._unit_of_work() as session:
            stmt = (
                select(TicketModel.assignee_id, func.count(TicketModel.id))
                .where(
                    TicketModel.status == TicketStatus.WAITING_HUMAN,
                    TicketModel.assignee_id.in_(assignee_ids)
                )
                .group_by(TicketModel.assignee_id)
            )
            result = await session.execute(stmt)
            return {assignee_id: count for assignee_id, count in result.all()}

    async def query(self, query: TicketQuery) -> Tuple[List[Ticket], int]:
        from helpdesk.triage.infrastructure.models import TicketModel

        conditions = []
        if query.status is not None:
            conditions.append(TicketModel.status == query.status)
        if query.category is not None:
            conditions.append(TicketModel.category == query.category)
        if query.assignee_id is not None:
            conditions.append(TicketModel.assignee_id == query.assignee_id)
        if query.created_by is not None:
            conditions.append(TicketModel.created_by == query.created_by)

        async with self._unit_of_work() as session:
            count_stmt = select(func.count()).select_from(TicketModel).where(*conditions)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(TicketModel)
                .options(selectinload(TicketModel.replies))
                .where(*conditions)
                .order_by(TicketModel.created_at.desc(), TicketModel.id.desc())
                .offset(query.offset)
                .limit(query.limit)
            )
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()], total

    async def _load_for_update(self, session: AsyncSession, ticket: Ticket):
        from helpdesk.triage.infrastructure.models import TicketModel

        stmt = (
            select(TicketModel)
            .options(selectinload(TicketModel.replies))
            .where(TicketModel.id == UUID(ticket.id))
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise RepositoryException(f"Ticket {ticket.id} disappeared during update")
        if model.version != ticket.version:
            raise ConflictException(
                "Ticket", ticket.id,
                f"expected version {ticket.version}, found {model.version}"
            )
        return model

    @staticmethod
    def _apply_changes(model, ticket: Ticket) -> None:
        """Copy mutable ticket fields and append replies not stored yet."""
        from helpdesk.triage.infrastructure.models import TicketReplyModel

        model.category = ticket.category
        model.status = ticket.status
        model.assignee_id = ticket.assignee_id
        model.agent_suggestion_id = ticket.agent_suggestion_id
        model.updated_at = ticket.updated_at

        for reply in ticket.replies[len(model.replies):]:
            model.replies.append(TicketReplyModel(
                author_id=reply.author_id,
                content=reply.content,
                is_agent_generated=reply.is_agent_generated,
                timestamp=reply.timestamp
            ))

    @staticmethod
    def _to_domain(model) -> Ticket:
        return Ticket(
            id=str(model.id),
            title=model.title,
            description=model.description,
            created_by=model.created_by,
            category=model.category,
            status=model.status,
            assignee_id=model.assignee_id,
            agent_suggestion_id=model.agent_suggestion_id,
            replies=[
                TicketReply(
                    author_id=reply.author_id,
                    content=reply.content,
                    is_agent_generated=reply.is_agent_generated,
                    timestamp=reply.timestamp
                )
                for reply in model.replies
            ],
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version
        )


# ========== Suggestions ==========

class SQLAlchemySuggestionRepository(_SQLAlchemyRepository, ISuggestionRepository):
    """SQLAlchemy implementation for agent suggestions."""

    resource_type = "AgentSuggestion"

    async def get_by_id(self, suggestion_id: str) -> Optional[AgentSuggestion]:
        from helpdesk.triage.infrastructure.models import AgentSuggestionModel

        suggestion_uuid = _as_uuid(suggestion_id)
        if suggestion_uuid is None:
            return None

        async with self._unit_of_work(suggestion_id) as session:
            model = await session.get(AgentSuggestionModel, suggestion_uuid)
            return self._to_domain(model) if model else None

    async def latest_for_ticket(self, ticket_id: str) -> Optional[AgentSuggestion]:
        from helpdesk.triage.infrastructure.models import AgentSuggestionModel

        ticket_uuid = _as_uuid(ticket_id)
        if ticket_uuid is None:
            return None

        async with self._unit_of_work(ticket_id) as session:
            stmt = (
                select(AgentSuggestionModel)
                .where(AgentSuggestionModel.ticket_id == ticket_uuid)
                .order_by(AgentSuggestionModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def update_draft(self, suggestion: AgentSuggestion) -> AgentSuggestion:
        from helpdesk.triage.infrastructure.models import AgentSuggestionModel

        async with self._unit_of_work(suggestion.id) as session:
            model = await session.get(AgentSuggestionModel, UUID(suggestion.id))
            if model is None:
                raise RepositoryException(f"Suggestion {suggestion.id} not found for update")
            model.draft_reply = suggestion.draft_reply
            model.updated_at = suggestion.updated_at
        return suggestion

    async def stats(self, day_since: datetime, week_since: datetime) -> SuggestionStats:
        from helpdesk.triage.infrastructure.models import AgentSuggestionModel

        confidence = AgentSuggestionModel.confidence
        bucket_counts = []
        for lower, upper in SuggestionStats.buckets():
            condition = confidence >= lower
            if upper < CONFIDENCE_BUCKET_BOUNDARIES[-1]:
                condition = and_(condition, confidence < upper)
            bucket_counts.append(func.count().filter(condition))

        totals_stmt = select(
            func.count(),
            func.count().filter(AgentSuggestionModel.auto_closed.is_(True)),
            func.count().filter(AgentSuggestionModel.created_at >= day_since),
            func.count().filter(AgentSuggestionModel.created_at >= week_since),
            func.avg(confidence),
            *bucket_counts
        ).select_from(AgentSuggestionModel)
        categories_stmt = (
            select(AgentSuggestionModel.predicted_category, func.count(), func.avg(confidence))
            .group_by(AgentSuggestionModel.predicted_category)
        )

        async with self._unit_of_work() as session:
            row = (await session.execute(totals_stmt)).one()
            breakdown = {
                category: CategoryStats(count=count, average_confidence=float(avg or 0.0))
                for category, count, avg in (await session.execute(categories_stmt)).all()
            }

        total, auto_closed, last_day, last_week, average = row[:5]
        return SuggestionStats(
            total=total,
            auto_closed_total=auto_closed,
            last_24_hours=last_day,
            last_7_days=last_week,
            average_confidence=float(average or 0.0),
            confidence_distribution=list(row[5:]),
            category_breakdown=breakdown
        )

    @staticmethod
    def _to_domain(model) -> AgentSuggestion:
        return AgentSuggestion(
            id=str(model.id),
            ticket_id=str(model.ticket_id),
            run_id=model.run_id,
            predicted_category=model.predicted_category,
            article_ids=list(model.article_ids or []),
            draft_reply=model.draft_reply,
            citations=list(model.citations or []),
            confidence=model.confidence,
            auto_closed=model.auto_closed,
            model_info=ModelInfo(
                provider=model.model_provider,
                model=model.model_name,
                prompt_version=model.prompt_version,
                latency_ms=model.latency_ms
            ),
            created_at=model.created_at,
            updated_at=model.updated_at
        )


# ========== Audit Log ==========

class SQLAlchemyAuditLogRepository(_SQLAlchemyRepository, IAuditLogRepository):
    """SQLAlchemy implementation of the append-only audit log. Rows are only ever inserted."""

    resource_type = "AuditLog"

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        from helpdesk.triage.infrastructure.models import AuditLogModel

        async with self._unit_of_work(entry.run_id) as session:
            model = AuditLogModel(
                id=UUID(entry.id),
                ticket_id=entry.ticket_id,
                run_id=entry.run_id,
                actor=entry.actor,
                action=entry.action,
                details=entry.metadata,
                timestamp=entry.timestamp
            )
            session.add(model)
            await session.flush()
            return dataclasses.replace(entry, sequence=model.sequence)

    async def list_for_run(self, run_id: str) -> List[AuditLogEntry]:
        from helpdesk.triage.infrastructure.models import AuditLogModel

        async with self._unit_of_work(run_id) as session:
            stmt = (
                select(AuditLogModel)
                .where(AuditLogModel.run_id == run_id)
                .order_by(AuditLogModel.sequence.asc())
            )
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def query(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        from helpdesk.triage.infrastructure.models import AuditLogModel

        conditions = []
        if query.ticket_id is not None:
            conditions.append(AuditLogModel.ticket_id == query.ticket_id)
        if query.run_id is not None:
            conditions.append(AuditLogModel.run_id == query.run_id)
        if query.actor is not None:
            conditions.append(AuditLogModel.actor == query.actor)
        if query.action is not None:
            conditions.append(AuditLogModel.action == query.action)
        if query.since is not None:
            conditions.append(AuditLogModel.timestamp >= query.since)
        if query.until is not None:
            conditions.append(AuditLogModel.timestamp <= query.until)

        if query.ascending:
            ordering = (AuditLogModel.timestamp.asc(), AuditLogModel.sequence.asc())
        else:
            ordering = (AuditLogModel.timestamp.desc(), AuditLogModel.sequence.desc())

        async with self._unit_of_work() as session:
            count_stmt = select(func.count()).select_from(AuditLogModel).where(*conditions)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(AuditLogModel)
                .where(*conditions)
                .order_by(*ordering)
                .offset(query.offset)
                .limit(query.limit)
            )
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()], total

    async def count_since(self, since: datetime) -> Tuple[Dict[str, int], Dict[str, int]]:
        from helpdesk.triage.infrastructure.models import AuditLogModel

        async with self._unit_of_work() as session:
            by_action_stmt = (
                select(AuditLogModel.action, func.count())
                .where(AuditLogModel.timestamp >= since)
                .group_by(AuditLogModel.action)
            )
            by_actor_stmt = (
                select(AuditLogModel.actor, func.count())
                .where(AuditLogModel.timestamp >= since)
                .group_by(AuditLogModel.actor)
            )
            by_action = dict((await session.execute(by_action_stmt)).all())
            by_actor = dict((await session.execute(by_actor_stmt)).all())
            return by_action, by_actor

    @staticmethod
    def _to_domain(model) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(model.id),
            ticket_id=model.ticket_id,
            run_id=model.run_id,
            actor=model.actor,
            action=model.action,
            metadata=dict(model.details or {}),
            timestamp=model.timestamp,
            sequence=model.sequence
        )


# ========== Configuration ==========

class SQLAlchemyConfigRepository(_SQLAlchemyRepository, IConfigRepository):
    """SQLAlchemy implementation for the singleton configuration row."""

    resource_type = "TriageConfig"
    SINGLETON_ID = 1

    async def get(self) -> Optional[TriageConfig]:
        from helpdesk.triage.infrastructure.models import TriageConfigModel

        async with self._unit_of_work() as session:
            model = await session.get(TriageConfigModel, self.SINGLETON_ID)
            if model is None:
                return None
            return TriageConfig(
                auto_close_enabled=model.auto_close_enabled,
                confidence_threshold=model.confidence_threshold,
                sla_hours=model.sla_hours
            )

    async def save(self, config: TriageConfig, updated_by: Optional[str]) -> TriageConfig:
        from helpdesk.triage.infrastructure.models import TriageConfigModel

        async with self._unit_of_work() as session:
            model = await session.get(TriageConfigModel, self.SINGLETON_ID)
            if model is None:
                model = TriageConfigModel(id=self.SINGLETON_ID)
                session.add(model)
            model.auto_close_enabled = config.auto_close_enabled
            model.confidence_threshold = config.confidence_threshold
            model.sla_hours = config.sla_hours
            model.updated_by = updated_by
            model.updated_at = datetime.now(timezone.utc)
        return config


# ========== Users ==========

class SQLAlchemyUserRepository(_SQLAlchemyRepository, IUserRepository):
    """SQLAlchemy implementation for account lookups."""

    resource_type = "User"

    async def get_by_id(self, user_id: str) -> Optional[User]:
        from helpdesk.triage.infrastructure.models import UserModel

        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            return None

        async with self._unit_of_work(user_id) as session:
            model = await session.get(UserModel, user_uuid)
            return self._to_domain(model) if model else None

    async def list_agents(self, exclude_email: Optional[str] = None) -> List[User]:
        from helpdesk.triage.infrastructure.models import UserModel

        async with self._unit_of_work() as session:
            stmt = select(UserModel).where(UserModel.role == UserRole.AGENT)
            if exclude_email:
                stmt = stmt.where(UserModel.email != exclude_email)
            stmt = stmt.order_by(UserModel.created_at.asc(), UserModel.id.asc())
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def get_or_create_system_user(self, email: str) -> User:
        existing = await self._get_by_email(email)
        if existing is not None:
            return existing

        from helpdesk.triage.infrastructure.models import UserModel

        try:
            async with self._session_context() as session:
                model = UserModel(id=uuid4(), name="System", email=email, role=UserRole.AGENT)
                session.add(model)
                await session.flush()
                return self._to_domain(model)
        except IntegrityError:
            # Created concurrently by another run
            existing = await self._get_by_email(email)
            if existing is None:
                raise RepositoryException(f"Could not create system user {email}")
            return existing

    async def _get_by_email(self, email: str) -> Optional[User]:
        from helpdesk.triage.infrastructure.models import UserModel

        async with self._unit_of_work(email) as session:
            result = await session.execute(select(UserModel).where(UserModel.email == email))
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    @staticmethod
    def _to_domain(model) -> User:
        return User(
            id=str(model.id),
            name=model.name,
            email=model.email,
            role=model.role,
            created_at=model.created_at
        )


# ========== Knowledge Base ==========

class SQLAlchemyKnowledgeBaseRepository(_SQLAlchemyRepository, IKnowledgeBaseRepository):
    """
    PostgreSQL search primitives over published articles.

    Full-text search matches ``to_tsvector('english', title || ' ' || body)``
    against an OR of the query words and ranks with ``ts_rank``.
    """

    resource_type = "Article"

    async def full_text_search(
        self, query: str, category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        from helpdesk.triage.infrastructure.models import ArticleModel

        # Only \w+ words reach to_tsquery, so its operators cannot be injected
        words = KnowledgeRetriever.query_words(query)
        if not words:
            return []

        document = func.to_tsvector("english", ArticleModel.title + " " + ArticleModel.body)
        ts_query = func.to_tsquery("english", " | ".join(words))
        score = func.ts_rank(document, ts_query).label("score")

        stmt = (
            select(ArticleModel, score)
            .where(ArticleModel.status == ArticleStatus.PUBLISHED, document.op("@@")(ts_query))
            .order_by(score.desc(), ArticleModel.updated_at.desc())
            .limit(limit)
        )
        if category:
            stmt = stmt.where(ArticleModel.tags.any(category))

        async with self._unit_of_work() as session:
            result = await session.execute(stmt)
            return [self._to_domain(model, float(rank)) for model, rank in result.all()]

    async def loose_search(
        self, words: List[str], category: Optional[str], limit: int
    ) -> List[RetrievedArticle]:
        from helpdesk.triage.infrastructure.models import ArticleModel

        if not words:
            return []

        matches = [ArticleModel.tags.overlap(words)]
        matches.extend(ArticleModel.title.icontains(word, autoescape=True) for word in words)

        stmt = (
            select(ArticleModel)
            .where(ArticleModel.status == ArticleStatus.PUBLISHED, or_(*matches))
            .order_by(ArticleModel.updated_at.desc())
            .limit(limit)
        )
        if category:
            stmt = stmt.where(ArticleModel.tags.any(category))

        async with self._unit_of_work() as session:
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def latest(self, category: Optional[str], limit: int) -> List[RetrievedArticle]:
        from helpdesk.triage.infrastructure.models import ArticleModel

        stmt = (
            select(ArticleModel)
            .where(ArticleModel.status == ArticleStatus.PUBLISHED)
            .order_by(ArticleModel.updated_at.desc())
            .limit(limit)
        )
        if category:
            stmt = stmt.where(ArticleModel.tags.any(category))

        async with self._unit_of_work() as session:
            result = await session.execute(stmt)
            return [self._to_domain(model) for model in result.scalars().all()]

    @staticmethod
    def _to_domain(model, score: float = 0.0) -> RetrievedArticle:
        return RetrievedArticle(
            id=str(model.id),
            title=model.title,
            body=model.body,
            tags=list(model.tags or []),
            score=score
        )
