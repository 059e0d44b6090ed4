"""
Assignment Matcher
==================

Picks a technician for a ticket from the staff directory and claims one
unit of their load.

Selection is least-loaded first, ties broken by the earliest previous
assignment (never-assigned first), then by id so the order is total.
The claim is the directory's conditional increment; when it loses a race
the next candidate is tried, so two tickets never both land on a
technician's last free slot.
"""

from typing import Iterable, List, Optional

from ticketdesk.config import Role, Availability, MAX_ESCALATION_LEVEL
from ticketdesk.shared.infrastructure.clock import Clock, ensure_utc
from ticketdesk.shared.infrastructure.logging import get_logger
from ticketdesk.tickets.application.interfaces import IStaffDirectory
from ticketdesk.tickets.domain import StaffProfile, TechnicianRef, Ticket

logger = get_logger(__name__)


def rank_candidates(candidates: Iterable[StaffProfile]) -> List[StaffProfile]:
    """Least loaded, then least recently assigned (never first), then id."""
    return sorted(
        candidates,
        key=lambda p: (
            p.current_tickets,
            p.last_assigned_at is not None,
            ensure_utc(p.last_assigned_at).timestamp() if p.last_assigned_at else 0.0,
            p.id,
        ),
    )


def is_eligible(profile: StaffProfile) -> bool:
    return profile.availability == Availability.AVAILABLE and profile.has_capacity


class AssignmentMatcher:
    """Technician selection over an IStaffDirectory."""

    def __init__(self, directory: IStaffDirectory, clock: Clock):
        self._directory = directory
        self._clock = clock

    async def _technicians_for(self, category: str, department: Optional[str]) -> List[StaffProfile]:
        technicians = await self._directory.list_candidates(Role.TECHNICIAN)
        return rank_candidates(
            p for p in technicians
            if is_eligible(p) and p.serves(category, department)
        )

    async def find_available_technician(
        self,
        category: str,
        department: Optional[str] = None
    ) -> Optional[TechnicianRef]:
        """
        Best technician for a category/department without claiming them.

        Returns:
            TechnicianRef, or None when nobody qualifies (not an error)
        """
        ranked = await self._technicians_for(category, department)
        return ranked[0].as_technician() if ranked else None

    async def claim(self, category: str, department: Optional[str] = None) -> Optional[TechnicianRef]:
        """Select and reserve a technician for new work."""
        return await self._claim_first(await self._technicians_for(category, department))

    async def find_escalation_handler(self, ticket: Ticket, level: int) -> Optional[TechnicianRef]:
        """
        Select and reserve a handler for an escalated ticket.

        Below the top level: available technicians flagged
        ``can_handle_escalations``, preferring those who serve the
        ticket's category. At the top level: available admins. The
        current assignee is never picked again.
        """
        if level >= MAX_ESCALATION_LEVEL:
            pool = await self._directory.list_candidates(Role.ADMIN)
            ranked = rank_candidates(p for p in pool if is_eligible(p) and p.id != ticket.assigned_to)
        else:
            pool = await self._directory.list_candidates(Role.TECHNICIAN)
            eligible = [
                p for p in pool
                if p.can_handle_escalations and is_eligible(p) and p.id != ticket.assigned_to
            ]
            serving = rank_candidates(p for p in eligible if p.serves(ticket.category, ticket.department))
            others = rank_candidates(p for p in eligible if p not in serving)
            ranked = serving + others

        return await self._claim_first(ranked)

    async def _claim_first(self, ranked: List[StaffProfile]) -> Optional[TechnicianRef]:
        now = self._clock.now()
        for profile in ranked:
            if await self._directory.reserve(profile.id, now):
                return profile.as_technician()
            logger.debug("Reservation lost, trying next candidate", extra={"technician_id": profile.id})
        return None

    async def release(self, technician_id: str) -> None:
        """Give back a claimed unit of load."""
        await self._directory.adjust_load(technician_id, -1)
