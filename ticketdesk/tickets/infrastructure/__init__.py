"""
Tickets Infrastructure Layer
============================

- Repositories: SQLAlchemy and in-memory ticket storage / staff directory
- Models: tickets, technicians, ticket_sequences tables
- External: notification dispatchers
"""

from ticketdesk.tickets.infrastructure.repositories import (
    InMemoryTicketRepository,
    InMemoryStaffDirectory,
    SQLAlchemyTicketRepository,
    SQLAlchemyStaffDirectory,
    load_staff_profiles,
    ticket_to_document,
    ticket_from_document,
)
from ticketdesk.tickets.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    WebhookNotificationDispatcher,
    LoggingNotificationDispatcher,
)

__all__ = [
    "InMemoryTicketRepository",
    "InMemoryStaffDirectory",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyStaffDirectory",
    "load_staff_profiles",
    "ticket_to_document",
    "ticket_from_document",
    "CircuitBreaker",
    "CircuitState",
    "WebhookNotificationDispatcher",
    "LoggingNotificationDispatcher",
]
