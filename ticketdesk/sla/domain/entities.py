"""
SLA Domain Entities
====================

Read-side SLA snapshot for a ticket at a given instant.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ticketdesk.config import SLAState


@dataclass
class SLAClockMetrics:
    """State of one SLA clock (response or resolution) at evaluation time."""
    target_minutes: int
    deadline: datetime
    remaining_seconds: float
    percentage_remaining: float
    is_breached: bool
    state: SLAState
    met_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "target_minutes": self.target_minutes,
            "deadline": self.deadline.isoformat(),
            "remaining_seconds": self.remaining_seconds,
            "percentage_remaining": self.percentage_remaining,
            "is_breached": self.is_breached,
            "state": self.state,
            "met_at": self.met_at.isoformat() if self.met_at else None,
        }


@dataclass
class SLAMetrics:
    """
    SLA metrics for a ticket.

    Contains calculated SLA information including deadlines,
    remaining time, and breach status.
    """

    ticket_number: str
    evaluated_at: datetime
    response: SLAClockMetrics
    resolution: SLAClockMetrics

    # Overall status (computed field)
    is_any_breached: bool = field(init=False)

    def __post_init__(self):
        self.is_any_breached = self.response.is_breached or self.resolution.is_breached

    @property
    def most_urgent_state(self) -> SLAState:
        """Get the most urgent SLA state."""
        states = (self.response.state, self.resolution.state)
        if self.is_any_breached:
            return SLAState.BREACHED
        if SLAState.AT_RISK in states:
            return SLAState.AT_RISK
        if all(s == SLAState.MET for s in states):
            return SLAState.MET
        return SLAState.ON_TRACK

    @property
    def next_deadline(self) -> datetime:
        """Earliest deadline of a clock that is still running."""
        running = [c.deadline for c in (self.response, self.resolution)
                   if c.state not in (SLAState.MET, SLAState.BREACHED)]
        if running:
            return min(running)
        return min(self.response.deadline, self.resolution.deadline)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "ticket_number": self.ticket_number,
            "evaluated_at": self.evaluated_at.isoformat(),
            "response": self.response.to_dict(),
            "resolution": self.resolution.to_dict(),
            "overall": {
                "state": self.most_urgent_state,
                "is_any_breached": self.is_any_breached,
                "next_deadline": self.next_deadline.isoformat(),
            },
        }
