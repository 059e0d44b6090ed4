"""
Ticket Rules
============

Pure predicates shared by the lifecycle service and the read paths:
who may see or touch a ticket, whether it is overdue, and how urgent it is.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ticketdesk.config import (
    Priority, TicketStatus, PRIORITY_LADDER, MAX_ESCALATION_LEVEL
)
from ticketdesk.tickets.domain.entities import Ticket
from ticketdesk.tickets.domain.value_objects import UserRef


PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

# Fields whose before/after values are captured in the audit trail.
AUDITED_FIELDS = (
    "title",
    "description",
    "category",
    "priority",
    "status",
    "assigned_to",
    "escalation_level",
    "first_response_at",
    "resolved_at",
    "closed_at",
    "reopen_count",
    "satisfaction_rating",
    "is_deleted",
)


def can_view(ticket: Ticket, user: UserRef) -> bool:
    """Admins see everything; technicians their assigned or escalated-to work; everyone their own."""
    if user.is_admin:
        return True
    if ticket.is_deleted:
        return False
    if ticket.created_by == user.id:
        return True
    if user.is_staff:
        return user.id in (ticket.assigned_to, ticket.escalation.escalated_to)
    return False


def can_see_internal(user: UserRef) -> bool:
    return user.is_staff


def can_comment(ticket: Ticket, user: UserRef, internal: bool) -> bool:
    if internal:
        return user.is_staff
    return user.is_staff or ticket.created_by == user.id


def can_assign(user: UserRef) -> bool:
    return user.is_staff


def can_escalate(user: UserRef) -> bool:
    return user.is_staff


def can_reopen(ticket: Ticket, user: UserRef) -> bool:
    return user.is_admin or ticket.created_by == user.id


def can_rate(ticket: Ticket, user: UserRef) -> bool:
    return ticket.created_by == user.id


def can_attach(ticket: Ticket, user: UserRef) -> bool:
    return user.is_staff or ticket.created_by == user.id


def can_delete(user: UserRef) -> bool:
    return user.is_admin


def can_view_audit(ticket: Ticket, user: UserRef) -> bool:
    return user.is_staff and can_view(ticket, user)


def is_response_overdue(ticket: Ticket, now: datetime) -> bool:
    return (
        ticket.is_active
        and ticket.first_response_at is None
        and now > ticket.sla.response.deadline
    )


def is_resolution_overdue(ticket: Ticket, now: datetime) -> bool:
    """Judged on status: a reopened ticket is overdue again even though its first resolution is kept."""
    return ticket.is_active and now > ticket.sla.resolution.deadline


def is_overdue(ticket: Ticket, now: datetime) -> bool:
    """Active and past either deadline that has not been met."""
    return is_response_overdue(ticket, now) or is_resolution_overdue(ticket, now)


def urgency_score(ticket: Ticket, now: datetime) -> int:
    """
    Work-queue ordering score from 1 to 10.

    Priority weight (1-4), plus age (+1 over a day, +2 over three, +3 over
    a week), plus 2 when overdue, plus 3 when the resolution deadline has
    passed.
    """
    score = PRIORITY_WEIGHTS.get(ticket.priority, 0)

    age_days = (now - ticket.created_at).days
    if age_days > 7:
        score += 3
    elif age_days > 3:
        score += 2
    elif age_days > 1:
        score += 1

    if is_overdue(ticket, now):
        score += 2
    if is_resolution_overdue(ticket, now):
        score += 3

    return max(1, min(score, 10))


def _audit_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def audit_snapshot(ticket: Ticket) -> Dict[str, Any]:
    """The audited fields of a ticket, datetimes as ISO strings."""
    values = {
        "title": ticket.title,
        "description": ticket.description,
        "category": ticket.category,
        "priority": ticket.priority,
        "status": ticket.status,
        "assigned_to": ticket.assigned_to,
        "escalation_level": ticket.escalation.level,
        "first_response_at": ticket.first_response_at,
        "resolved_at": ticket.resolution.resolved_at,
        "closed_at": ticket.closed_at,
        "reopen_count": ticket.reopen_count,
        "satisfaction_rating": ticket.resolution.satisfaction_rating,
        "is_deleted": ticket.is_deleted,
    }
    return {name: _audit_value(values[name]) for name in AUDITED_FIELDS}


def diff_snapshots(before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """``{field: {"old": ..., "new": ...}}`` for every field that changed."""
    before = before or {}
    return {
        name: {"old": before.get(name), "new": after[name]}
        for name in AUDITED_FIELDS
        if before.get(name) != after[name]
    }



def escalated_priority(current: str, level: int) -> str:
    """
    Priority after escalating to ``level``: at least the ladder floor for
    that level (1 medium, 2 high, 3 critical), never lower than now.
    """
    floor = PRIORITY_LADDER[min(max(level, 0), MAX_ESCALATION_LEVEL)]
    return max(current, floor, key=PRIORITY_LADDER.index)


def load_holder(snapshot: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Technician whose load counter an audited state occupies: the assignee
    of a live ticket. Closed, cancelled and deleted tickets hold no load.
    """
    if not snapshot or snapshot.get("is_deleted"):
        return None
    if snapshot.get("status") in (TicketStatus.CLOSED, TicketStatus.CANCELLED):
        return None
    return snapshot.get("assigned_to")
