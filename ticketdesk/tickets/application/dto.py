"""
Tickets Application DTOs
========================

Data Transfer Objects for the Tickets API layer.

Pydantic models for request/response validation. Request-shape errors
are reported as a ``ValidationException`` with the full field list.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ticketdesk.core import ValidationException
from ticketdesk.tickets.domain import Ticket
from ticketdesk.tickets.domain.rules import is_overdue, urgency_score


# ========== Type Aliases for Literals ==========
CategoryStr = Literal[
    "hardware", "software", "network", "email",
    "account_access", "printer", "phone", "other"
]
PriorityStr = Literal["critical", "high", "medium", "low"]


def validation_error_list(exc: ValidationError) -> List[dict]:
    """Flatten pydantic errors into ``[{"field", "message"}]``."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append({"field": field or "body", "message": error.get("msg", "Invalid value")})
    return errors


def to_validation_exception(exc: ValidationError) -> ValidationException:
    errors = validation_error_list(exc)
    return ValidationException(f"{len(errors)} invalid field(s)", errors)


# ========== Request DTOs ==========

class LocationDTO(BaseModel):
    """Where the problem is."""
    model_config = ConfigDict(str_strip_whitespace=True)

    building: Optional[str] = Field(None, max_length=100)
    room: Optional[str] = Field(None, max_length=50)
    campus: Optional[str] = Field(None, max_length=100)
    floor: Optional[str] = Field(None, max_length=20)


class TicketCreateDTO(BaseModel):
    """Request model for ticket creation."""
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=5, max_length=200, description="Short summary")
    description: str = Field(..., min_length=10, max_length=5000, description="Problem details")
    category: CategoryStr
    priority: PriorityStr = "medium"
    sub_category: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=100)
    location: Optional[LocationDTO] = None
    tags: List[str] = Field(default_factory=list, max_length=20)
    metadata: Dict[str, str] = Field(default_factory=dict, description="Client metadata")

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        """Lower-case, trim and de-duplicate tags."""
        normalized: List[str] = []
        for tag in v:
            tag = tag.strip().lower()
            if not tag:
                continue
            if len(tag) > 30:
                raise ValueError(f"Tag too long (max 30 characters): {tag[:30]}...")
            if tag not in normalized:
                normalized.append(tag)
        return normalized

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v: Dict[str, str]) -> Dict[str, str]:
        if len(v) > 20:
            raise ValueError("At most 20 metadata entries")
        for key, value in v.items():
            if len(key) > 50 or len(value) > 500:
                raise ValueError(f"Metadata entry too long: {key[:50]}")
        return v

    @classmethod
    def parse(cls, data: Any) -> "TicketCreateDTO":
        """Validate raw input, raising ValidationException with every bad field."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise to_validation_exception(e) from e


class AssignRequest(BaseModel):
    technician_id: str = Field(..., min_length=1)


class StatusChangeRequest(BaseModel):
    status: str = Field(..., description="Target status")
    note: Optional[str] = Field(None, max_length=2000)


class CommentRequest(BaseModel):
    content: str
    internal: bool = False


class EscalateRequest(BaseModel):
    reason: str


class ResolveRequest(BaseModel):
    resolution: str


class ReopenRequest(BaseModel):
    reason: str


class RatingRequest(BaseModel):
    rating: int
    comment: Optional[str] = None


class AttachmentRequest(BaseModel):
    name: str
    storage_ref: str
    size_bytes: int
    mime_type: str = "application/octet-stream"


class TicketQuery(BaseModel):
    """Filters for listing tickets. ``visible_to`` scopes the result to one user's tickets."""
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    department: Optional[str] = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    visible_to: Optional[str] = None
    include_deleted: bool = False
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


# ========== Response DTOs ==========

class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SLAClockInfo(_FromDomain):
    target_minutes: int
    deadline: datetime
    actual_minutes: Optional[int] = None
    breached: bool = False


class SLAInfo(_FromDomain):
    response: SLAClockInfo
    resolution: SLAClockInfo


class EscalationRecordInfo(_FromDomain):
    level: int
    escalated_by: str
    escalated_at: datetime
    reason: str
    previous_priority: str
    new_priority: str
    escalated_to: Optional[str] = None
    automatic: bool = False


class EscalationInfo(_FromDomain):
    level: int
    escalated_by: Optional[str] = None
    escalated_at: Optional[datetime] = None
    reason: Optional[str] = None
    escalated_to: Optional[str] = None
    history: List[EscalationRecordInfo] = []


class ResolutionInfo(_FromDomain):
    description: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_minutes: Optional[int] = None
    satisfaction_rating: Optional[int] = None
    satisfaction_comment: Optional[str] = None
    rated_at: Optional[datetime] = None


class CommentInfo(_FromDomain):
    id: str
    author_id: str
    content: str
    is_internal: bool
    is_system: bool = False
    created_at: datetime


class AttachmentInfo(_FromDomain):
    id: str
    name: str
    storage_ref: str
    size_bytes: int
    mime_type: str
    uploaded_by: str
    uploaded_at: datetime


class LocationInfo(_FromDomain):
    building: Optional[str] = None
    room: Optional[str] = None
    campus: Optional[str] = None
    floor: Optional[str] = None


class StatusHistoryInfo(_FromDomain):
    status: str
    changed_by: str
    changed_at: datetime
    comment: Optional[str] = None


class AuditEntryInfo(_FromDomain):
    id: str
    action: str
    performed_by: str
    timestamp: datetime
    changes: Dict[str, Dict[str, Any]] = {}
    note: Optional[str] = None


class TicketResponse(_FromDomain):
    """Response model for a single ticket."""
    id: str
    ticket_number: str
    title: str
    description: str
    category: str
    priority: str
    status: str
    department: Optional[str] = None
    sub_category: Optional[str] = None
    location: Optional[LocationInfo] = None
    tags: List[str] = []
    metadata: Dict[str, str] = {}
    created_by: str
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    sla: SLAInfo
    escalation: EscalationInfo
    is_escalated: bool = False
    resolution: ResolutionInfo
    first_response_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    reopen_count: int = 0
    comments: List[CommentInfo] = []
    attachments: List[AttachmentInfo] = []
    status_history: List[StatusHistoryInfo] = []
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime
    version: int
    is_overdue: bool = False
    urgency_score: int = 1

    @classmethod
    def from_domain(cls, ticket: Ticket, include_internal: bool, now: datetime) -> "TicketResponse":
        """Render a ticket for one viewer; internal comments only for staff."""
        response = cls.model_validate(ticket)
        comments = response.comments
        if not include_internal:
            comments = [c for c in comments if not c.is_internal]
        return response.model_copy(update={
            "comments": comments,
            "is_overdue": is_overdue(ticket, now),
            "urgency_score": urgency_score(ticket, now),
        })


class TicketSummary(_FromDomain):
    """Row in a ticket list."""
    id: str
    ticket_number: str
    title: str
    category: str
    priority: str
    status: str
    created_by: str
    assigned_to: Optional[str] = None
    is_escalated: bool = False
    created_at: datetime
    updated_at: datetime


class TicketListResponse(BaseModel):
    items: List[TicketSummary]
    count: int
    limit: int
    offset: int


class AuditTrailResponse(BaseModel):
    ticket_number: str
    entries: List[AuditEntryInfo]


class SweepResultResponse(BaseModel):
    scanned: int
    escalated: int
    skipped: int
    errors: List[Dict[str, Any]]
    started_at: datetime
    duration_ms: int


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    version: str
    environment: str
    storage_backend: str
    checks: Dict[str, str] = {}


def ticket_snapshot(ticket: Ticket) -> Dict[str, Any]:
    """Compact event payload handed to the notification dispatcher."""
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "category": ticket.category,
        "priority": ticket.priority,
        "status": ticket.status,
        "created_by": ticket.created_by,
        "assigned_to": ticket.assigned_to,
        "escalation_level": ticket.escalation.level,
        "updated_at": ticket.updated_at.isoformat(),
        "version": ticket.version,
    }
