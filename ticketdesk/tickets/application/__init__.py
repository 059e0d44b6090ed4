"""
Tickets Application Layer
=========================

Contains:
- TicketLifecycleService: every ticket state machine operation
- AssignmentMatcher: technician selection and load reservation
- EscalationEngine: overdue sweep
- AuditTrailRecorder: audit entries and "as of" reconstruction
- Collaborator interfaces and DTOs

This layer depends on the domain layer and on the SLA application layer.
"""

from ticketdesk.tickets.application.interfaces import (
    ITicketRepository,
    IStaffDirectory,
    INotificationDispatcher,
)
from ticketdesk.tickets.application.audit import AuditTrailRecorder
from ticketdesk.tickets.application.assignment import AssignmentMatcher, rank_candidates
from ticketdesk.tickets.application.services import TicketLifecycleService, SYSTEM_ACTOR
from ticketdesk.tickets.application.escalation import (
    EscalationEngine,
    SweepResult,
    SweepError,
    SWEEP_TIMEOUT,
)

__all__ = [
    # Interfaces
    "ITicketRepository",
    "IStaffDirectory",
    "INotificationDispatcher",
    # Services
    "TicketLifecycleService",
    "SYSTEM_ACTOR",
    "AssignmentMatcher",
    "rank_candidates",
    "AuditTrailRecorder",
    "EscalationEngine",
    "SweepResult",
    "SweepError",
    "SWEEP_TIMEOUT",
]
