"""
SLA Application Layer
======================

Application layer for the SLA module.

Contains:
- ISLAPolicyProvider: abstraction over where the policy table comes from
- SLAService: evaluates a ticket's stored SLA clocks into SLAMetrics

This layer depends on the domain layer only.
"""

from ticketdesk.sla.application.services import (
    ISLAPolicyProvider,
    StaticSLAPolicyProvider,
    SLAService,
)

__all__ = [
    "ISLAPolicyProvider",
    "StaticSLAPolicyProvider",
    "SLAService",
]
