"""
Triage Application Layer
=========================

Application layer for the ticket triage module.

Contains:
- Services: classifiers, retriever, drafters, audit trail, configuration,
  statistics, lifecycle
- Orchestrator: the pipeline, run guard, assignment policies, retries, dispatch
- DTOs: Data transfer objects for API serialization
"""

from helpdesk.triage.application.services import (
    ITicketRepository,
    ISuggestionRepository,
    IAuditLogRepository,
    IConfigRepository,
    IUserRepository,
    IKnowledgeBaseRepository,
    IClassifier,
    IKnowledgeRetriever,
    IDrafter,
    IAssignmentPolicy,
    AuditTrail,
    KeywordClassifier,
    LLMClassifier,
    KnowledgeRetriever,
    TemplateDrafter,
    LLMDrafter,
    TriageConfigService,
    TriageStatsService,
    TicketLifecycleService,
)
from helpdesk.triage.application.orchestrator import (
    TicketRunGuard,
    FirstAvailableAssignment,
    RoundRobinAssignment,
    LeastLoadedAssignment,
    create_assignment_policy,
    TriageOrchestrator,
    RetryCoordinator,
    TriageDispatcher,
)

__all__ = [
    # Repository Interfaces
    "ITicketRepository",
    "ISuggestionRepository",
    "IAuditLogRepository",
    "IConfigRepository",
    "IUserRepository",
    "IKnowledgeBaseRepository",
    # Capability Interfaces
    "IClassifier",
    "IKnowledgeRetriever",
    "IDrafter",
    "IAssignmentPolicy",
    # Services
    "AuditTrail",
    "KeywordClassifier",
    "LLMClassifier",
    "KnowledgeRetriever",
    "TemplateDrafter",
    "LLMDrafter",
    "TriageConfigService",
    "TriageStatsService",
    "TicketLifecycleService",
    # Orchestration
    "TicketRunGuard",
    "FirstAvailableAssignment",
    "RoundRobinAssignment",
    "LeastLoadedAssignment",
    "create_assignment_policy",
    "TriageOrchestrator",
    "RetryCoordinator",
    "TriageDispatcher",
]
