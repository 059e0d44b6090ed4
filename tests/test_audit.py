"""Tests for the audit trail: field diffs, access rules and point-in-time reads."""

from datetime import timedelta

import pytest

from ticketdesk.config import TicketStatus, AuditAction
from ticketdesk.core import PermissionDeniedException
from ticketdesk.tickets.application import AuditTrailRecorder
from ticketdesk.tickets.domain.rules import AUDITED_FIELDS, diff_snapshots

from tests.conftest import START, ticket_payload


def test_diff_reports_only_changed_fields():
    before = {name: None for name in AUDITED_FIELDS}
    before.update(status="open", priority="low")
    after = dict(before, status="assigned", assigned_to="tech-hw")

    assert diff_snapshots(before, after) == {
        "status": {"old": "open", "new": "assigned"},
        "assigned_to": {"old": None, "new": "tech-hw"},
    }


@pytest.mark.asyncio
async def test_every_operation_appends_one_entry(service, clock):
    ticket = await service.create_ticket(ticket_payload(), "student-1")
    clock.advance(minutes=5)
    await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw")
    clock.advance(minutes=5)
    await service.add_comment(ticket.id, "tech-hw", "Swapping the battery")
    clock.advance(minutes=5)
    await service.resolve(ticket.id, "tech-hw", "Battery replaced")

    entries = await service.audit_trail(ticket.id, "tech-hw")

    assert [e.action for e in entries] == [
        AuditAction.CREATED,
        AuditAction.STATUS_CHANGED,
        AuditAction.COMMENTED,
        AuditAction.RESOLVED,
    ]
    assert entries[0].changes["status"] == {"old": None, "new": TicketStatus.ASSIGNED}
    assert entries[2].changes["first_response_at"]["new"] == (START + timedelta(minutes=10)).isoformat()
    assert entries[3].performed_by == "tech-hw"
    assert entries[3].changes["resolved_at"]["old"] is None
    assert [e.timestamp for e in entries] == sorted(e.timestamp for e in entries)


@pytest.mark.asyncio
async def test_requester_cannot_read_audit_trail(service):
    ticket = await service.create_ticket(ticket_payload(), "student-1")
    with pytest.raises(PermissionDeniedException):
        await service.audit_trail(ticket.id, "student-1")


@pytest.mark.asyncio
async def test_as_of_rebuilds_past_state(service, clock):
    ticket = await service.create_ticket(ticket_payload(priority="low"), "student-1")
    clock.advance(hours=1)
    await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw")
    clock.advance(hours=1)
    await service.escalate(ticket.id, "admin-1", "Exam tomorrow")
    clock.advance(hours=1)
    latest = await service.get_ticket(ticket.id, "admin-1")

    assert AuditTrailRecorder.as_of(latest, START - timedelta(seconds=1)) is None

    at_creation = AuditTrailRecorder.as_of(latest, START + timedelta(minutes=30))
    assert at_creation["status"] == TicketStatus.ASSIGNED
    assert at_creation["priority"] == "low"
    assert at_creation["escalation_level"] == 0

    mid = AuditTrailRecorder.as_of(latest, START + timedelta(minutes=90))
    assert mid["status"] == TicketStatus.IN_PROGRESS
    assert mid["assigned_to"] == "tech-hw"

    now = AuditTrailRecorder.as_of(latest, clock.now())
    assert now["priority"] == "medium"
    assert now["escalation_level"] == 1
    assert now["assigned_to"] == "tech-esc"


def test_recorder_uses_injected_ids(clock):
    from ticketdesk.tickets.domain import Ticket, SLABlock, SLAClock

    now = clock.now()
    ticket = Ticket(
        id="t-1", ticket_number="TKT-20240304-0001", title="Printer jam",
        description="Paper stuck in tray two", category="printer", priority="low",
        status=TicketStatus.OPEN, created_by="student-1", created_at=now, updated_at=now,
        sla=SLABlock(SLAClock(1440, now + timedelta(days=1)), SLAClock(10080, now + timedelta(days=7))),
    )
    recorder = AuditTrailRecorder(id_factory=lambda: "audit-1")

    entry = recorder.record(ticket, None, AuditAction.CREATED, "student-1", now, "created")

    assert entry.id == "audit-1"
    assert ticket.audit_trail == [entry]
    assert entry.changes["title"] == {"old": None, "new": "Printer jam"}
