"""
Triage Component Wiring
========================

Builds the triage services from settings, repositories and the optional
LLM client.

The classifier and drafter use their remote variants when an LLM client is
available and their deterministic variants otherwise.
"""

from dataclasses import dataclass
from typing import Optional

from helpdesk.config import Settings
from helpdesk.infrastructure.llm import ILLMClient
from helpdesk.shared.infrastructure.logging import get_logger
from helpdesk.triage.application import (
    AuditTrail, IAuditLogRepository, IClassifier, IConfigRepository, IDrafter,
    IKnowledgeBaseRepository, ISuggestionRepository, ITicketRepository, IUserRepository,
    KeywordClassifier, KnowledgeRetriever, LLMClassifier, LLMDrafter, RetryCoordinator,
    TemplateDrafter, TicketLifecycleService, TriageConfigService, TriageDispatcher,
    TriageOrchestrator, TriageStatsService, create_assignment_policy
)
from helpdesk.triage.domain import TriageConfig

logger = get_logger(__name__)


@dataclass
class TriageRepositories:
    """Persistence collaborators of the triage module."""
    tickets: ITicketRepository
    suggestions: ISuggestionRepository
    audit_logs: IAuditLogRepository
    config: IConfigRepository
    users: IUserRepository
    knowledge_base: IKnowledgeBaseRepository


@dataclass
class TriageComponents:
    """Everything the HTTP layer needs, stored on ``app.state.triage``."""
    audit: AuditTrail
    config_service: TriageConfigService
    orchestrator: TriageOrchestrator
    retry: RetryCoordinator
    dispatcher: TriageDispatcher
    lifecycle: TicketLifecycleService
    stats: TriageStatsService


def sqlalchemy_repositories() -> TriageRepositories:
    """Repositories backed by the application's database engine."""
    from helpdesk.triage.infrastructure.repositories import (
        SQLAlchemyAuditLogRepository, SQLAlchemyConfigRepository,
        SQLAlchemyKnowledgeBaseRepository, SQLAlchemySuggestionRepository,
        SQLAlchemyTicketRepository, SQLAlchemyUserRepository
    )

    return TriageRepositories(
        tickets=SQLAlchemyTicketRepository(),
        suggestions=SQLAlchemySuggestionRepository(),
        audit_logs=SQLAlchemyAuditLogRepository(),
        config=SQLAlchemyConfigRepository(),
        users=SQLAlchemyUserRepository(),
        knowledge_base=SQLAlchemyKnowledgeBaseRepository()
    )


def build_classifier(llm_client: Optional[ILLMClient], prompt_version: str) -> IClassifier:
    fallback = KeywordClassifier(prompt_version)
    if llm_client is None:
        return fallback
    return LLMClassifier(llm_client, fallback=fallback, prompt_version=prompt_version)


def build_drafter(llm_client: Optional[ILLMClient], prompt_version: str) -> IDrafter:
    fallback = TemplateDrafter(prompt_version)
    if llm_client is None:
        return fallback
    return LLMDrafter(llm_client, fallback=fallback, prompt_version=prompt_version)


def build_triage_components(
    app_settings: Settings,
    repositories: TriageRepositories,
    llm_client: Optional[ILLMClient] = None,
    sleep=None
) -> TriageComponents:
    """
    Wire the triage module.

    Args:
        app_settings: Application settings
        repositories: Persistence collaborators
        llm_client: Remote LLM client, or None for the deterministic variants
        sleep: Backoff sleep override for the retry coordinator

    Returns:
        TriageComponents ready to serve requests
    """
    audit = AuditTrail(repositories.audit_logs)
    config_service = TriageConfigService(
        repositories.config, audit, TriageConfig.defaults(app_settings)
    )
    assignment = create_assignment_policy(
        app_settings.assignment_policy,
        repositories.users,
        repositories.tickets,
        app_settings.system_user_email
    )

    orchestrator = TriageOrchestrator(
        tickets=repositories.tickets,
        users=repositories.users,
        audit=audit,
        classifier=build_classifier(llm_client, app_settings.prompt_version),
        retriever=KnowledgeRetriever(repositories.knowledge_base),
        drafter=build_drafter(llm_client, app_settings.prompt_version),
        assignment=assignment,
        config_service=config_service,
        system_user_email=app_settings.system_user_email,
        kb_search_limit=app_settings.kb_search_limit,
        query_max_length=app_settings.triage_query_max_length
    )

    retry_kwargs = {} if sleep is None else {"sleep": sleep}
    retry = RetryCoordinator(
        orchestrator,
        max_attempts=app_settings.retry_max_attempts,
        backoff_base=app_settings.retry_backoff_base,
        **retry_kwargs
    )

    dispatcher = TriageDispatcher(orchestrator)
    lifecycle = TicketLifecycleService(
        repositories.tickets,
        repositories.suggestions,
        repositories.users,
        audit,
        on_created=dispatcher.dispatch
    )

    logger.info(
        "Triage components initialized",
        extra={
            "llm_enabled": llm_client is not None,
            "assignment_policy": assignment.name,
            "kb_search_limit": app_settings.kb_search_limit
        }
    )

    return TriageComponents(
        audit=audit,
        config_service=config_service,
        orchestrator=orchestrator,
        retry=retry,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        stats=TriageStatsService(repositories.suggestions)
    )
