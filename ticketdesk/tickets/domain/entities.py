"""
Ticket Domain Entities
======================

The Ticket aggregate and its owned records.

Entities hold state and enforce structural invariants; lifecycle rules
(which transitions are legal, who may perform them) live in
``state_machine`` and ``rules``, and orchestration lives in the
application layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ticketdesk.config import TicketStatus, ACTIVE_STATUSES


@dataclass
class SLAClock:
    """One SLA commitment (response or resolution)."""
    target_minutes: int
    deadline: datetime
    actual_minutes: Optional[int] = None
    breached: bool = False


@dataclass
class SLABlock:
    """Both SLA clocks; derived at creation, never edited by users."""
    response: SLAClock
    resolution: SLAClock


@dataclass
class EscalationRecord:
    level: int
    escalated_by: str
    escalated_at: datetime
    reason: str
    previous_priority: str
    new_priority: str
    escalated_to: Optional[str] = None
    automatic: bool = False


@dataclass
class Escalation:
    """
    Escalation level is the source of truth for "escalated"; it only
    grows, except for the reset on close/reopen.
    """
    level: int = 0
    escalated_by: Optional[str] = None
    escalated_at: Optional[datetime] = None
    reason: Optional[str] = None
    escalated_to: Optional[str] = None
    history: List[EscalationRecord] = field(default_factory=list)
    # Ticket version right after the last automatic escalation.
    swept_version: Optional[int] = None


@dataclass
class Resolution:
    description: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_minutes: Optional[int] = None
    satisfaction_rating: Optional[int] = None
    satisfaction_comment: Optional[str] = None
    rated_at: Optional[datetime] = None


@dataclass
class Comment:
    id: str
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime
    is_system: bool = False


@dataclass
class Attachment:
    id: str
    name: str
    storage_ref: str
    size_bytes: int
    mime_type: str
    uploaded_by: str
    uploaded_at: datetime


@dataclass
class Location:
    building: Optional[str] = None
    room: Optional[str] = None
    campus: Optional[str] = None
    floor: Optional[str] = None


@dataclass
class StatusHistoryEntry:
    status: str
    changed_by: str
    changed_at: datetime
    comment: Optional[str] = None


@dataclass
class AuditEntry:
    """Immutable record of one mutating operation."""
    id: str
    action: str
    performed_by: str
    timestamp: datetime
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    note: Optional[str] = None


@dataclass
class Ticket:
    """
    Support ticket aggregate.

    Everything a lifecycle operation touches (comments, history, audit)
    lives inside the aggregate so a single per-ticket write commits it
    atomically.
    """

    id: str
    ticket_number: str
    title: str
    description: str
    category: str
    priority: str
    status: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    sla: SLABlock

    # Classification extras
    department: Optional[str] = None
    sub_category: Optional[str] = None
    location: Optional[Location] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    # Ownership
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    escalation: Escalation = field(default_factory=Escalation)
    resolution: Resolution = field(default_factory=Resolution)

    first_response_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    reopen_count: int = 0

    comments: List[Comment] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    status_history: List[StatusHistoryEntry] = field(default_factory=list)
    audit_trail: List[AuditEntry] = field(default_factory=list)

    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    version: int = 0

    def __post_init__(self):
        """Validate structural invariants."""
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")

        assignee_fields = (self.assigned_to, self.assigned_by, self.assigned_at)
        if any(f is not None for f in assignee_fields) and not all(f is not None for f in assignee_fields):
            raise ValueError("assigned_to, assigned_by and assigned_at must be set together")

        if self.first_response_at and self.first_response_at < self.created_at:
            raise ValueError("first_response_at cannot be before created_at")

    @property
    def is_active(self) -> bool:
        """Still being worked on (before resolution, not cancelled)."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in (TicketStatus.CLOSED, TicketStatus.CANCELLED)

    @property
    def is_escalated(self) -> bool:
        return self.escalation.level > 0

    @property
    def public_comments(self) -> List[Comment]:
        return [c for c in self.comments if not c.is_internal]

    def set_assignee(self, technician_id: str, assigned_by: str, at: datetime) -> None:
        self.assigned_to = technician_id
        self.assigned_by = assigned_by
        self.assigned_at = at

    def clear_assignee(self) -> None:
        self.assigned_to = None
        self.assigned_by = None
        self.assigned_at = None

    def record_status(self, status: str, changed_by: str, at: datetime, comment: Optional[str] = None) -> None:
        """Set status and append its history entry in one step."""
        self.status = status
        self.status_history.append(StatusHistoryEntry(
            status=status, changed_by=changed_by, changed_at=at, comment=comment
        ))

    def touch(self, at: datetime) -> None:
        """Mark a committed mutation."""
        self.updated_at = max(self.updated_at, at)
        self.version += 1
