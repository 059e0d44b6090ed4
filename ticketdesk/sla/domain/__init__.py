"""
SLA Domain Layer
================

Domain layer for SLA policy and deadlines.

Contains:
- Value Objects: SLAPolicy (priority → targets), SLADeadlines
- Domain Services: DeadlineCalculator (stateless deadline/breach logic)
- Entities: SLAMetrics read model

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from ticketdesk.sla.domain.entities import SLAMetrics, SLAClockMetrics
from ticketdesk.sla.domain.value_objects import (
    DEFAULT_SLA_TARGETS,
    SLAPolicy,
    SLADeadlines,
    DeadlineCalculator,
    format_minutes,
)

__all__ = [
    # Entities
    "SLAMetrics",
    "SLAClockMetrics",
    # Value Objects & Services
    "DEFAULT_SLA_TARGETS",
    "SLAPolicy",
    "SLADeadlines",
    "DeadlineCalculator",
    "format_minutes",
]
