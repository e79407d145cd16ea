"""
Triage Infrastructure Layer
============================

Infrastructure implementations for the ticket triage module.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Data access implementations
- External: component wiring for the LLM client and repositories
"""

from helpdesk.triage.infrastructure.external import (
    TriageRepositories,
    TriageComponents,
    sqlalchemy_repositories,
    build_classifier,
    build_drafter,
    build_triage_components,
)

__all__ = [
    "TriageRepositories",
    "TriageComponents",
    "sqlalchemy_repositories",
    "build_classifier",
    "build_drafter",
    "build_triage_components",
]
