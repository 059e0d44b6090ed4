"""
SLA Infrastructure Layer
=========================

- SLAConfigManager: YAML policy provider with hot reload
- EscalationScheduler: periodic sweep trigger
"""

from ticketdesk.sla.infrastructure.external import (
    SLAConfigManager,
    EscalationScheduler,
)

__all__ = [
    "SLAConfigManager",
    "EscalationScheduler",
]
