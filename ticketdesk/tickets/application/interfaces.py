"""
Tickets Application Interfaces
==============================

Collaborator contracts consumed by the lifecycle service, the assignment
matcher and the escalation engine. Implementations live in
``ticketdesk.tickets.infrastructure``.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ticketdesk.tickets.application.dto import TicketQuery
from ticketdesk.tickets.domain import StaffProfile, Ticket


# ========== Repository Interfaces ==========

class ITicketRepository(ABC):
    """Interface for ticket aggregate storage."""

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by internal ID (deleted tickets included)."""

    @abstractmethod
    async def get_by_number(self, ticket_number: str) -> Optional[Ticket]:
        """Get ticket by ticket number."""

    @abstractmethod
    async def add(self, ticket: Ticket) -> Ticket:
        """
        Store a new ticket.

        Raises:
            ConflictException: ticket number or id already taken
        """

    @abstractmethod
    async def save(self, ticket: Ticket, expected_version: int) -> Ticket:
        """
        Store a mutated ticket.

        Raises:
            ConflictException: stored version is not ``expected_version``
        """

    @abstractmethod
    async def next_sequence(self, day: date) -> int:
        """Allocate the next ticket number sequence for a UTC day (starts at 1)."""

    @abstractmethod
    async def list(self, query: TicketQuery) -> List[Ticket]:
        """Tickets matching a query, newest first."""

    @abstractmethod
    async def list_overdue(self, now: datetime, limit: int) -> List[Ticket]:
        """
        Non-deleted, non-terminal tickets below the escalation cap whose
        resolution deadline has passed, or whose response deadline has
        passed without a first response. Oldest deadline first.
        """


class IStaffDirectory(ABC):
    """Interface for the staff directory (users, availability, load)."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[StaffProfile]:
        """Get a user's directory record."""

    @abstractmethod
    async def list_candidates(self, role: str) -> List[StaffProfile]:
        """All users with a role, in any availability."""

    @abstractmethod
    async def reserve(self, user_id: str, at: datetime) -> bool:
        """
        Atomically take one unit of load if the user is available and has
        spare capacity; records ``at`` as the last assignment time.

        Returns:
            False when the reservation lost to availability or capacity
        """

    @abstractmethod
    async def adjust_load(self, user_id: str, delta: int) -> None:
        """Add ``delta`` to the user's current ticket count (never below zero)."""


class INotificationDispatcher(ABC):
    """Interface for lifecycle event delivery."""

    @abstractmethod
    def emit(self, event_type: str, ticket_snapshot: Dict[str, Any], context: Dict[str, Any]) -> None:
        """
        Hand off an event without waiting for delivery.

        Delivery failures are the dispatcher's concern and never reach
        the caller.
        """

    async def close(self) -> None:
        """Release resources; default is a no-op."""
