"""
Shared fixtures: a fixed clock, in-memory storage seeded with a small
help desk team, and a dispatcher that records every event.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import pytest

from ticketdesk.config import Role, Availability
from ticketdesk.shared.infrastructure.clock import FixedClock
from ticketdesk.shared.infrastructure.locks import KeyedLockRegistry
from ticketdesk.sla.application import SLAService, StaticSLAPolicyProvider
from ticketdesk.tickets.application import (
    TicketLifecycleService,
    EscalationEngine,
    INotificationDispatcher,
)
from ticketdesk.tickets.domain import StaffProfile
from ticketdesk.tickets.infrastructure import InMemoryTicketRepository, InMemoryStaffDirectory

START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class RecordingDispatcher(INotificationDispatcher):
    """Keeps emitted events in memory for assertions."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any], Dict[str, Any]]] = []

    def emit(self, event_type: str, ticket_snapshot: Dict[str, Any], context: Dict[str, Any]) -> None:
        self.events.append((event_type, ticket_snapshot, context))

    def types(self) -> List[str]:
        return [e[0] for e in self.events]


def staff_profiles() -> List[StaffProfile]:
    return [
        StaffProfile(id="admin-1", role=Role.ADMIN, display_name="Admin One"),
        StaffProfile(
            id="tech-hw", role=Role.TECHNICIAN, display_name="Hardware Tech",
            support_areas=["hardware", "printer"], max_tickets=5,
        ),
        StaffProfile(
            id="tech-net", role=Role.TECHNICIAN, display_name="Network Tech",
            support_areas=["network", "email"], max_tickets=5,
        ),
        StaffProfile(
            id="tech-esc", role=Role.TECHNICIAN, display_name="Escalation Tech",
            support_areas=["software"], max_tickets=5, can_handle_escalations=True,
        ),
        StaffProfile(
            id="tech-away", role=Role.TECHNICIAN, display_name="Away Tech",
            support_areas=["hardware"], availability=Availability.AWAY,
        ),
        StaffProfile(id="student-1", role=Role.STUDENT, display_name="Student One"),
        StaffProfile(id="student-2", role=Role.STUDENT, display_name="Student Two"),
        StaffProfile(id="staff-1", role=Role.STAFF, display_name="Staff One"),
    ]


def ticket_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "title": "Laptop will not boot",
        "description": "Black screen after the vendor logo since this morning.",
        "category": "hardware",
        "priority": "medium",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def directory() -> InMemoryStaffDirectory:
    return InMemoryStaffDirectory(staff_profiles())


@pytest.fixture
def notifier() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def sla_service() -> SLAService:
    return SLAService(StaticSLAPolicyProvider())


@pytest.fixture
def locks():
    registry = KeyedLockRegistry()
    yield registry
    registry.close()


@pytest.fixture
def service(repository, directory, notifier, sla_service, locks, clock) -> TicketLifecycleService:
    return TicketLifecycleService(repository, directory, notifier, sla_service, locks, clock)


@pytest.fixture
def engine(repository, service, clock) -> EscalationEngine:
    return EscalationEngine(repository, service, clock, concurrency=4, budget_seconds=5.0)
