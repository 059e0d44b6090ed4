"""
Tickets Controllers (API Routes)
================================

FastAPI routes for the ticket lifecycle and the escalation sweep.

Controllers are thin - they resolve the actor from the ``X-Actor-Id``
header and delegate to application services held on ``app.state``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status

from ticketdesk.core import PermissionDeniedException
from ticketdesk.shared.infrastructure.clock import Clock
from ticketdesk.shared.infrastructure.logging import get_logger
from ticketdesk.tickets.application import TicketLifecycleService, EscalationEngine
from ticketdesk.tickets.application.dto import (
    TicketCreateDTO,
    AssignRequest, StatusChangeRequest, CommentRequest,
    EscalateRequest, ResolveRequest, ReopenRequest,
    RatingRequest, AttachmentRequest, TicketQuery,
    TicketResponse, TicketSummary, TicketListResponse,
    CommentInfo, AttachmentInfo, AuditEntryInfo,
    AuditTrailResponse, SweepResultResponse,
)
from ticketdesk.tickets.domain import Ticket, rules

logger = get_logger(__name__)
router = APIRouter(prefix="/tickets", tags=["Tickets"])
escalations_router = APIRouter(prefix="/escalations", tags=["Escalation"])


# ========== Example payloads for Swagger ==========

TICKET_CREATE_EXAMPLE = {
    "title": "Laptop will not boot",
    "description": "My laptop shows a black screen after the logo since this morning.",
    "category": "hardware",
    "priority": "high",
    "department": "Engineering",
    "location": {"building": "Science Hall", "room": "204"},
    "tags": ["laptop", "boot"]
}

ERROR_RESPONSE_EXAMPLE = {
    "error": {
        "code": "INVALID_TRANSITION",
        "message": "Cannot move ticket from 'closed' to 'in_progress'",
        "details": {"from": "closed", "to": "in_progress"}
    },
    "correlation_id": "4f6c1c8e-5a77-4a8e-9d55-2f0e5b1a6e0d"
}

SWEEP_RESPONSE_EXAMPLE = {
    "scanned": 3,
    "escalated": 2,
    "skipped": 0,
    "errors": [
        {"ticket_id": "9d1f...", "code": "SWEEP_TIMEOUT", "message": "Sweep budget exhausted"}
    ],
    "started_at": "2024-01-15T10:00:00Z",
    "duration_ms": 412
}

_ERRORS = {
    400: {"description": "Validation failed or transition not allowed", "content": {"application/json": {"example": ERROR_RESPONSE_EXAMPLE}}},
    403: {"description": "Actor may not perform this operation"},
    404: {"description": "Ticket not found"},
    409: {"description": "Concurrent update"},
}


# ========== Dependencies ==========

def get_lifecycle_service(request: Request) -> TicketLifecycleService:
    """Lifecycle service built at startup."""
    return request.app.state.lifecycle_service


def get_escalation_engine(request: Request) -> EscalationEngine:
    return request.app.state.escalation_engine


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id")) -> str:
    """
    Caller identity. Authentication happens upstream; the gateway forwards
    the authenticated user id in ``X-Actor-Id``.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise PermissionDeniedException("call the API", None, "missing X-Actor-Id header")
    return x_actor_id.strip()


async def _render(
    service: TicketLifecycleService,
    clock: Clock,
    ticket: Ticket,
    actor_id: str
) -> TicketResponse:
    """Ticket as the actor is allowed to see it."""
    actor = await service.actor(actor_id)
    return TicketResponse.from_domain(ticket, rules.can_see_internal(actor), clock.now())


# ========== Route Handlers ==========

@router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket",
    description="""
Create a ticket on behalf of the caller.

**Flow:**
1. Validate every field, rejecting with the full list of problems
2. Allocate the next ticket number for today (TKT-YYYYMMDD-NNNN)
3. Compute response/resolution deadlines from the SLA policy
4. Auto-assign to the least-loaded available technician for the category
""",
    responses={**_ERRORS, 201: {"description": "Ticket created"}},
    openapi_extra={"requestBody": {"content": {"application/json": {"example": TICKET_CREATE_EXAMPLE}}}}
)
async def create_ticket(
    payload: TicketCreateDTO,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.create_ticket(payload, actor_id)
    return await _render(service, clock, ticket, actor_id)


@router.get(
    "",
    response_model=TicketListResponse,
    summary="List tickets",
    description="Tickets visible to the caller, newest first. Admins see every ticket."
)
async def list_tickets(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    priority: Optional[str] = Query(None, description="Filter by priority"),
    category: Optional[str] = Query(None, description="Filter by category"),
    department: Optional[str] = Query(None, description="Filter by department"),
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
    created_by: Optional[str] = Query(None, description="Filter by creator"),
    include_deleted: bool = Query(False, description="Admins only: include soft-deleted tickets"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Skip N results"),
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service)
) -> TicketListResponse:
    query = TicketQuery(
        status=status_filter,
        priority=priority,
        category=category,
        department=department,
        assigned_to=assigned_to,
        created_by=created_by,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    tickets = await service.list_tickets(actor_id, query)
    return TicketListResponse(
        items=[TicketSummary.model_validate(t) for t in tickets],
        count=len(tickets),
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{ref}",
    response_model=TicketResponse,
    summary="Get a ticket",
    description="Look up by id or ticket number. Internal comments are shown to staff only.",
    responses=_ERRORS
)
async def get_ticket(
    ref: str,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.get_ticket(ref, actor_id)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/assign",
    response_model=TicketResponse,
    summary="Assign a ticket",
    description="Assign or reassign to a technician. Technicians and admins only.",
    responses=_ERRORS
)
async def assign_ticket(
    ref: str,
    payload: AssignRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.assign_ticket(ref, payload.technician_id, actor_id)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/status",
    response_model=TicketResponse,
    summary="Change ticket status",
    description="""
Move the ticket along the lifecycle state machine.

Rejected moves return 400 INVALID_TRANSITION and leave the ticket untouched.
""",
    responses=_ERRORS
)
async def change_status(
    ref: str,
    payload: StatusChangeRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.change_status(ref, payload.status, actor_id, payload.note)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/comments",
    response_model=CommentInfo,
    status_code=status.HTTP_201_CREATED,
    summary="Comment on a ticket",
    description="The first public staff comment records the ticket's first response.",
    responses=_ERRORS
)
async def add_comment(
    ref: str,
    payload: CommentRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service)
) -> CommentInfo:
    comment = await service.add_comment(ref, actor_id, payload.content, payload.internal)
    return CommentInfo.model_validate(comment)


@router.post(
    "/{ref}/escalate",
    response_model=TicketResponse,
    summary="Escalate a ticket",
    description="Raise the escalation level by one (max 3) and hand the ticket to an escalation handler.",
    responses=_ERRORS
)
async def escalate_ticket(
    ref: str,
    payload: EscalateRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.escalate(ref, actor_id, payload.reason)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/resolve",
    response_model=TicketResponse,
    summary="Resolve a ticket",
    responses=_ERRORS
)
async def resolve_ticket(
    ref: str,
    payload: ResolveRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.resolve(ref, actor_id, payload.resolution)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/reopen",
    response_model=TicketResponse,
    summary="Reopen a ticket",
    description="Creator or admin only, from resolved or closed.",
    responses=_ERRORS
)
async def reopen_ticket(
    ref: str,
    payload: ReopenRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.reopen(ref, actor_id, payload.reason)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/rating",
    response_model=TicketResponse,
    summary="Rate a resolved ticket",
    description="Creator only, once, 1 to 5.",
    responses=_ERRORS
)
async def rate_ticket(
    ref: str,
    payload: RatingRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.add_rating(ref, actor_id, payload.rating, payload.comment)
    return await _render(service, clock, ticket, actor_id)


@router.post(
    "/{ref}/attachments",
    response_model=AttachmentInfo,
    status_code=status.HTTP_201_CREATED,
    summary="Attach a file reference",
    description="Records metadata for a file already stored elsewhere (max 10 MiB).",
    responses=_ERRORS
)
async def add_attachment(
    ref: str,
    payload: AttachmentRequest,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service)
) -> AttachmentInfo:
    attachment = await service.add_attachment(
        ref, actor_id, payload.name, payload.storage_ref, payload.size_bytes, payload.mime_type
    )
    return AttachmentInfo.model_validate(attachment)


@router.delete(
    "/{ref}",
    response_model=TicketResponse,
    summary="Soft-delete a ticket",
    description="Admins only. The ticket disappears from reads and lists but is kept in storage.",
    responses=_ERRORS
)
async def delete_ticket(
    ref: str,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    clock: Clock = Depends(get_clock)
) -> TicketResponse:
    ticket = await service.delete_ticket(ref, actor_id)
    return await _render(service, clock, ticket, actor_id)


@router.get(
    "/{ref}/sla",
    summary="Live SLA state",
    description="Remaining time, percentage remaining and state for both SLA clocks.",
    responses=_ERRORS
)
async def get_sla(
    ref: str,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service)
) -> dict:
    metrics = await service.sla_metrics(ref, actor_id)
    return metrics.to_dict()


@router.get(
    "/{ref}/audit",
    response_model=AuditTrailResponse,
    summary="Audit trail",
    description="Every change to the ticket with field-level old/new values. Staff only.",
    responses=_ERRORS
)
async def get_audit_trail(
    ref: str,
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service)
) -> AuditTrailResponse:
    ticket = await service.get_ticket(ref, actor_id)
    entries = await service.audit_trail(ref, actor_id)
    return AuditTrailResponse(
        ticket_number=ticket.ticket_number,
        entries=[AuditEntryInfo.model_validate(e) for e in entries],
    )


@escalations_router.post(
    "/sweep",
    response_model=SweepResultResponse,
    summary="Run an escalation sweep now",
    description="""
Scan tickets past their resolution deadline and escalate each one level.

Normally run by the scheduler; exposed for operators. Admins only.
""",
    responses={
        200: {"content": {"application/json": {"example": SWEEP_RESPONSE_EXAMPLE}}},
        403: {"description": "Admins only"},
    }
)
async def run_sweep(
    actor_id: str = Depends(get_actor_id),
    service: TicketLifecycleService = Depends(get_lifecycle_service),
    engine: EscalationEngine = Depends(get_escalation_engine)
) -> SweepResultResponse:
    actor = await service.actor(actor_id)
    if not actor.is_admin:
        raise PermissionDeniedException("run escalation sweeps", actor.id, "admin only")

    result = await engine.run_sweep()
    logger.info("Manual escalation sweep", extra={"actor_id": actor.id, **result.to_dict()})
    return SweepResultResponse(**result.to_dict())
