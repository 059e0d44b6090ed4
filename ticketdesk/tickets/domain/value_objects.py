"""
Ticket Value Objects
====================

Ticket numbers and the directory records the core reads about people.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Tuple

from ticketdesk.config import (
    Role, Availability, STAFF_ROLES, TICKET_NUMBER_PREFIX
)

TICKET_NUMBER_PATTERN = re.compile(rf"^{TICKET_NUMBER_PREFIX}-(\d{{8}})-(\d{{4,}})$")


def format_ticket_number(day: date, sequence: int) -> str:
    """
    ``TKT-YYYYMMDD-NNNN``; the sequence is zero padded to four digits and
    simply widens past 9999.
    """
    if sequence < 1:
        raise ValueError("sequence starts at 1")
    return f"{TICKET_NUMBER_PREFIX}-{day:%Y%m%d}-{sequence:04d}"


def parse_ticket_number(value: str) -> Tuple[date, int]:
    """Inverse of :func:`format_ticket_number`."""
    match = TICKET_NUMBER_PATTERN.match(value)
    if not match:
        raise ValueError(f"Not a ticket number: {value!r}")
    day = datetime.strptime(match.group(1), "%Y%m%d").date()
    return day, int(match.group(2))


def is_ticket_number(value: str) -> bool:
    return bool(TICKET_NUMBER_PATTERN.match(value))


@dataclass(frozen=True)
class UserRef:
    """An actor as seen by the core: id and role, nothing else is trusted."""
    id: str
    role: str
    display_name: str = ""
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class StaffProfile:
    """
    Directory record for a user, with the workload fields the assignment
    matcher reads. Requesters simply have no support areas.
    """
    id: str
    role: str
    display_name: str = ""
    email: Optional[str] = None
    support_areas: List[str] = field(default_factory=list)
    departments: List[str] = field(default_factory=list)
    availability: str = Availability.AVAILABLE
    current_tickets: int = 0
    max_tickets: int = 10
    last_assigned_at: Optional[datetime] = None
    can_handle_escalations: bool = False

    @property
    def has_capacity(self) -> bool:
        return self.current_tickets < self.max_tickets

    def serves(self, category: str, department: Optional[str]) -> bool:
        """An empty department list serves every department."""
        if category not in self.support_areas:
            return False
        if department and self.departments:
            return department in self.departments
        return True

    def as_user(self) -> UserRef:
        return UserRef(id=self.id, role=self.role, display_name=self.display_name, email=self.email)

    def as_technician(self) -> "TechnicianRef":
        return TechnicianRef(
            id=self.id,
            role=self.role,
            display_name=self.display_name,
            current_tickets=self.current_tickets,
        )


@dataclass(frozen=True)
class TechnicianRef:
    """Result of a successful match."""
    id: str
    role: str
    display_name: str = ""
    current_tickets: int = 0
