"""
Tickets Interfaces Layer
========================

FastAPI route handlers for the ticket lifecycle and escalation sweep.
"""

from ticketdesk.tickets.interfaces.controllers import (
    router as tickets_router,
    escalations_router,
)

__all__ = ["tickets_router", "escalations_router"]
