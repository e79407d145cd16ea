"""
Triage Interfaces Layer
========================

Interface adapters (controllers) for the ticket triage module.

Contains:
- Controllers: FastAPI route handlers
"""

from helpdesk.triage.interfaces.controllers import (
    tickets_router,
    triage_router,
    audit_router,
    config_router,
)

__all__ = ["tickets_router", "triage_router", "audit_router", "config_router"]
