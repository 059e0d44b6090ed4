"""
SLA Application Services
=========================

Policy access and the SLA read model.

Following SOLID principles:
- Single Responsibility: policy lookup and metrics evaluation only
- Dependency Inversion: services depend on ISLAPolicyProvider, not on YAML
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from ticketdesk.sla.domain import (
    SLAPolicy, SLAMetrics, SLAClockMetrics, DeadlineCalculator
)


class ISLAPolicyProvider(ABC):
    """Interface for SLA policy access."""

    @abstractmethod
    def get_policy(self) -> SLAPolicy:
        """Get the policy currently in effect."""


class StaticSLAPolicyProvider(ISLAPolicyProvider):
    """Fixed policy, used by tests and when no YAML file is configured."""

    def __init__(self, policy: Optional[SLAPolicy] = None):
        self._policy = policy or SLAPolicy()

    def get_policy(self) -> SLAPolicy:
        return self._policy


class SLAService:
    """
    Evaluates the SLA clocks stored on a ticket.

    The ticket's deadlines were fixed at creation; this service only reads
    them, so a later policy change never moves an existing ticket's targets.
    """

    def __init__(self, policy_provider: ISLAPolicyProvider):
        self._policy_provider = policy_provider

    @property
    def policy(self) -> SLAPolicy:
        return self._policy_provider.get_policy()

    def calculate_metrics(self, ticket: Any, now: datetime) -> SLAMetrics:
        """
        Calculate SLA metrics for a ticket.

        Args:
            ticket: Ticket aggregate (reads ``sla``, ``created_at``,
                ``first_response_at`` and ``resolution.resolved_at``)
            now: Evaluation instant
        """
        threshold = self.policy.at_risk_threshold_percent
        created_at = ticket.created_at

        def clock(block, met_at: Optional[datetime]) -> SLAClockMetrics:
            remaining, pct = DeadlineCalculator.calculate_remaining_metrics(
                created_at, block.deadline, now, met_at
            )
            state = DeadlineCalculator.calculate_status(
                created_at, block.deadline, now, met_at, threshold
            )
            return SLAClockMetrics(
                target_minutes=block.target_minutes,
                deadline=block.deadline,
                remaining_seconds=remaining,
                percentage_remaining=pct,
                is_breached=block.breached or DeadlineCalculator.is_breached(block.deadline, met_at, now),
                state=state,
                met_at=met_at,
            )

        return SLAMetrics(
            ticket_number=ticket.ticket_number,
            evaluated_at=now,
            response=clock(ticket.sla.response, ticket.first_response_at),
            resolution=clock(ticket.sla.resolution, ticket.resolution.resolved_at),
        )
