"""
Tickets Domain Layer
====================

Contains:
- Entities: Ticket aggregate and its owned records
- Value Objects: ticket numbers, UserRef, StaffProfile, TechnicianRef
- State machine: transition table and actor guards
- Rules: permission predicates, overdue checks, urgency score, audit snapshots

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from ticketdesk.tickets.domain.entities import (
    Ticket,
    SLAClock,
    SLABlock,
    Escalation,
    EscalationRecord,
    Resolution,
    Comment,
    Attachment,
    Location,
    StatusHistoryEntry,
    AuditEntry,
)
from ticketdesk.tickets.domain.value_objects import (
    UserRef,
    StaffProfile,
    TechnicianRef,
    format_ticket_number,
    parse_ticket_number,
    is_ticket_number,
)
from ticketdesk.tickets.domain.state_machine import (
    TRANSITIONS,
    can_transition,
    ensure_transition,
    ensure_actor_may_transition,
)

__all__ = [
    # Entities
    "Ticket",
    "SLAClock",
    "SLABlock",
    "Escalation",
    "EscalationRecord",
    "Resolution",
    "Comment",
    "Attachment",
    "Location",
    "StatusHistoryEntry",
    "AuditEntry",
    # Value Objects
    "UserRef",
    "StaffProfile",
    "TechnicianRef",
    "format_ticket_number",
    "parse_ticket_number",
    "is_ticket_number",
    # State machine
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "ensure_actor_may_transition",
]
