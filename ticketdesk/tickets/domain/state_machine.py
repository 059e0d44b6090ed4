"""
Ticket State Machine Rules
===========================

The fixed transition table and the per-transition actor guards.

Side effects of a transition (timestamps, load counters, history) are
applied by ``TicketLifecycleService``; this module only answers "is this
move legal, and may this actor make it".
"""

from typing import Dict, FrozenSet

from ticketdesk.config import TicketStatus, VALID_STATUSES
from ticketdesk.core import (
    InvalidTransitionException,
    PermissionDeniedException,
    ValidationException,
)
from ticketdesk.tickets.domain.entities import Ticket
from ticketdesk.tickets.domain.value_objects import UserRef


TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TicketStatus.OPEN: frozenset({
        TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED,
    }),
    TicketStatus.ASSIGNED: frozenset({
        TicketStatus.IN_PROGRESS, TicketStatus.PENDING,
        TicketStatus.RESOLVED, TicketStatus.CANCELLED,
    }),
    TicketStatus.IN_PROGRESS: frozenset({
        TicketStatus.PENDING, TicketStatus.RESOLVED, TicketStatus.CANCELLED,
    }),
    TicketStatus.PENDING: frozenset({
        TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CANCELLED,
    }),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.REOPENED}),
    TicketStatus.CLOSED: frozenset({TicketStatus.REOPENED}),
    TicketStatus.REOPENED: frozenset({
        TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.CANCELLED,
    }),
    TicketStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    """
    Raises:
        ValidationException: ``target`` is not a known status
        InvalidTransitionException: the move is not in the table
    """
    if target not in VALID_STATUSES:
        raise ValidationException.for_field(
            "status", f"Status must be one of: {', '.join(VALID_STATUSES)}"
        )
    if not can_transition(current, target):
        raise InvalidTransitionException(current, target)


def ensure_actor_may_transition(ticket: Ticket, target: str, actor: UserRef) -> None:
    """
    Per-transition actor guard.

    - in_progress, pending, resolved: the assignee or an admin
    - closed: the creator, the assignee or an admin
    - reopened: the creator or an admin
    - cancelled: the creator before resolution, or an admin
    - open/assigned (out of reopened): any staff role

    Raises:
        PermissionDeniedException
    """
    if actor.is_admin:
        return

    is_assignee = ticket.assigned_to is not None and ticket.assigned_to == actor.id
    is_creator = ticket.created_by == actor.id

    if target in (TicketStatus.IN_PROGRESS, TicketStatus.PENDING, TicketStatus.RESOLVED):
        allowed = is_assignee
        reason = "only the assignee or an admin may do this"
    elif target == TicketStatus.CLOSED:
        allowed = is_creator or is_assignee
        reason = "only the creator, the assignee or an admin may close a ticket"
    elif target == TicketStatus.REOPENED:
        allowed = is_creator
        reason = "only the creator or an admin may reopen a ticket"
    elif target == TicketStatus.CANCELLED:
        allowed = is_creator and ticket.is_active
        reason = "only the creator (before resolution) or an admin may cancel a ticket"
    else:
        allowed = actor.is_staff
        reason = "staff role required"

    if not allowed:
        raise PermissionDeniedException(f"move ticket to '{target}'", actor.id, reason)
