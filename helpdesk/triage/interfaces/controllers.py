"""
Triage Controllers (API Routes)
================================

FastAPI routes for tickets, triage runs, the audit trail and the triage
configuration.

Controllers delegate to application services held on ``app.state.triage``.
Application exceptions are mapped to HTTP responses by the handlers
registered in ``helpdesk.main``.
"""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from helpdesk.shared.infrastructure.logging import get_context_logger
from helpdesk.triage.application.dto import (
    AssignRequest, AuditEntryResponse, AuditPageResponse, AuditStatsResponse,
    CloseRequest, ConfigResponse, ConfigUpdateRequest, CreateTicketRequest,
    EditSuggestionRequest, ReopenRequest, ReplyRequest, RetryTriageRequest,
    RunTraceResponse, SuggestionResponse, TicketPageResponse, TicketResponse,
    TriageRequest, TriageResultResponse, TriageStatsResponse
)
from helpdesk.triage.application.services import AuditTrail
from helpdesk.triage.infrastructure.external import TriageComponents

tickets_router = APIRouter(prefix="/tickets", tags=["Tickets"])
triage_router = APIRouter(prefix="/triage", tags=["Ticket Triage"])
audit_router = APIRouter(prefix="/audit", tags=["Audit Trail"])
config_router = APIRouter(prefix="/config", tags=["Configuration"])


# ========== Example payloads for Swagger ==========

TRIAGE_RESPONSE_EXAMPLE = {
    "success": True,
    "run_id": "0b6f0b1e-3f7a-4a53-9d43-8f1f3f7b2c11",
    "ticket_id": "123e4567-e89b-12d3-a456-426614174000",
    "decision": "assign_human",
    "confidence": 0.7,
    "suggestion_id": "8d0c2f4e-7c59-4d1c-9b9e-0f2d1f0f6a21",
    "assignee_id": "5a1e2d3c-4b5a-6978-8a9b-0c1d2e3f4a5b",
    "degraded": False
}


# ========== Dependencies ==========

def get_components(request: Request) -> TriageComponents:
    """Triage components built during application startup."""
    components = getattr(request.app.state, "triage", None)
    if components is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Triage service not initialized"
        )
    return components


def _request_logger(request: Request):
    return get_context_logger(
        __name__, correlation_id=getattr(request.state, "correlation_id", None)
    )


# ========== Tickets ==========

@tickets_router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket",
    description="""
    Persist an `open` ticket and start triage in the background.

    The response reflects the pre-triage state; poll the ticket or its
    suggestion to observe the outcome.
    """
)
async def create_ticket(
    request: Request,
    payload: CreateTicketRequest,
    components: TriageComponents = Depends(get_components)
):
    ticket = await components.lifecycle.create_ticket(
        title=payload.title,
        description=payload.description,
        created_by=payload.created_by,
        category=payload.category
    )
    _request_logger(request).info("Ticket accepted", extra={"ticket_id": ticket.id})
    return TicketResponse.from_domain(ticket)


@tickets_router.get("", response_model=TicketPageResponse, summary="List tickets, newest first")
async def list_tickets(
    status: Optional[str] = None,
    category: Optional[str] = None,
    assignee_id: Optional[str] = None,
    created_by: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    components: TriageComponents = Depends(get_components)
):
    ticket_page = await components.lifecycle.list_tickets(
        status=status,
        category=category,
        assignee_id=assignee_id,
        created_by=created_by,
        page=page,
        limit=limit
    )
    return TicketPageResponse.from_domain(ticket_page)


@tickets_router.get("/{ticket_id}", response_model=TicketResponse, summary="Get a ticket")
async def get_ticket(ticket_id: str, components: TriageComponents = Depends(get_components)):
    return TicketResponse.from_domain(await components.lifecycle.get_ticket(ticket_id))


@tickets_router.post("/{ticket_id}/reply", response_model=TicketResponse, summary="Add a human reply")
async def reply_to_ticket(
    ticket_id: str,
    payload: ReplyRequest,
    components: TriageComponents = Depends(get_components)
):
    ticket = await components.lifecycle.reply(
        ticket_id, payload.author_id, payload.content, payload.status
    )
    return TicketResponse.from_domain(ticket)


@tickets_router.post("/{ticket_id}/assign", response_model=TicketResponse, summary="Assign a ticket")
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    components: TriageComponents = Depends(get_components)
):
    ticket = await components.lifecycle.assign(ticket_id, payload.assignee_id, payload.assigned_by)
    return TicketResponse.from_domain(ticket)


@tickets_router.post(
    "/{ticket_id}/reopen",
    response_model=TicketResponse,
    summary="Reopen a resolved or closed ticket"
)
async def reopen_ticket(
    ticket_id: str,
    payload: ReopenRequest,
    components: TriageComponents = Depends(get_components)
):
    ticket = await components.lifecycle.reopen(ticket_id, payload.actor_id, payload.actor_role)
    return TicketResponse.from_domain(ticket)


@tickets_router.post("/{ticket_id}/close", response_model=TicketResponse, summary="Close a ticket")
async def close_ticket(
    ticket_id: str,
    payload: CloseRequest,
    components: TriageComponents = Depends(get_components)
):
    ticket = await components.lifecycle.close(ticket_id, payload.actor_id)
    return TicketResponse.from_domain(ticket)


# ========== Triage ==========

@triage_router.post(
    "/tickets/{ticket_id}",
    response_model=TriageResultResponse,
    summary="Run triage for a ticket",
    description="""
    Run the classify, retrieve, draft, decide and execute pipeline once.

    **Errors**:
    - `404` ticket not found
    - `400` ticket is not `open` or `waiting_human`
    - `409` a run for this ticket is already in progress
    """,
    responses={
        200: {"content": {"application/json": {"example": TRIAGE_RESPONSE_EXAMPLE}}}
    }
)
async def triage_ticket(
    ticket_id: str,
    payload: Optional[TriageRequest] = None,
    components: TriageComponents = Depends(get_components)
):
    run_id = payload.run_id if payload else None
    result = await components.orchestrator.triage(ticket_id, run_id=run_id)
    return TriageResultResponse.from_domain(result)


@triage_router.post(
    "/tickets/{ticket_id}/retry",
    response_model=TriageResultResponse,
    summary="Run triage with bounded retries"
)
async def retry_triage(
    ticket_id: str,
    payload: Optional[RetryTriageRequest] = None,
    components: TriageComponents = Depends(get_components)
):
    payload = payload or RetryTriageRequest()
    result = await components.retry.retry_triage(
        ticket_id,
        max_attempts=payload.max_attempts,
        timeout=payload.timeout_seconds
    )
    return TriageResultResponse.from_domain(result)


@triage_router.get(
    "/tickets/{ticket_id}/suggestion",
    response_model=SuggestionResponse,
    summary="Latest suggestion of a ticket"
)
async def get_latest_suggestion(ticket_id: str, components: TriageComponents = Depends(get_components)):
    return SuggestionResponse.from_domain(await components.lifecycle.latest_suggestion(ticket_id))


@triage_router.put(
    "/suggestions/{suggestion_id}",
    response_model=SuggestionResponse,
    summary="Edit a suggestion draft"
)
async def edit_suggestion(
    suggestion_id: str,
    payload: EditSuggestionRequest,
    components: TriageComponents = Depends(get_components)
):
    suggestion = await components.lifecycle.edit_suggestion(
        suggestion_id, payload.draft_reply, payload.editor_id
    )
    return SuggestionResponse.from_domain(suggestion)


@triage_router.get(
    "/stats",
    response_model=TriageStatsResponse,
    summary="Suggestion volume, confidence and auto-close rate"
)
async def get_triage_stats(components: TriageComponents = Depends(get_components)):
    return TriageStatsResponse.from_domain(await components.stats.suggestion_stats())


# ========== Audit ==========

@audit_router.get(
    "/tickets/{ticket_id}",
    response_model=AuditPageResponse,
    summary="Audit history of a ticket, newest first"
)
async def get_ticket_audit(
    ticket_id: str,
    action: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    components: TriageComponents = Depends(get_components)
):
    audit_page = await components.audit.for_ticket(ticket_id, action=action, page=page, limit=limit)
    return AuditPageResponse.from_domain(audit_page)


@audit_router.get(
    "/runs/{run_id}",
    response_model=RunTraceResponse,
    summary="Reconstruct one triage run in insertion order"
)
async def get_run_trace(run_id: str, components: TriageComponents = Depends(get_components)):
    entries = await components.audit.for_run(run_id)
    return RunTraceResponse(
        run_id=run_id,
        entries=[AuditEntryResponse.from_domain(entry) for entry in entries],
        count=len(entries)
    )


@audit_router.get("/system", response_model=AuditPageResponse, summary="Filtered audit view")
async def get_system_audit(
    ticket_id: Optional[str] = None,
    run_id: Optional[str] = None,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    order: Literal["asc", "desc"] = "desc",
    components: TriageComponents = Depends(get_components)
):
    query = AuditTrail.build_query(
        ticket_id=ticket_id,
        run_id=run_id,
        actor=actor,
        action=action,
        since=since,
        until=until,
        page=page,
        limit=limit,
        ascending=order == "asc"
    )
    return AuditPageResponse.from_domain(await components.audit.query(query))


@audit_router.get("/stats", response_model=AuditStatsResponse, summary="Audit counts by action and actor")
async def get_audit_stats(
    days: int = Query(7, ge=1, le=365),
    components: TriageComponents = Depends(get_components)
):
    return AuditStatsResponse.from_domain(await components.audit.stats(days))


# ========== Configuration ==========

@config_router.get("", response_model=ConfigResponse, summary="Current triage configuration")
async def get_config(components: TriageComponents = Depends(get_components)):
    return ConfigResponse.from_domain(await components.config_service.get_snapshot())


@config_router.put("", response_model=ConfigResponse, summary="Update triage configuration")
async def update_config(
    request: Request,
    payload: ConfigUpdateRequest,
    components: TriageComponents = Depends(get_components)
):
    config = await components.config_service.update(payload.changes(), payload.updated_by)
    _request_logger(request).info("Configuration changed via API", extra=config.to_dict())
    return ConfigResponse.from_domain(config)
