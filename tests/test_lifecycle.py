"""Tests for the ticket state machine and the lifecycle operations around it."""

import asyncio
from datetime import timedelta

import pytest

from ticketdesk.config import TicketStatus, AuditAction, EventType, VALID_STATUSES
from ticketdesk.core import (
    InvalidTransitionException,
    PermissionDeniedException,
    ResourceNotFoundException,
    ValidationException,
)
from ticketdesk.tickets.application.dto import TicketQuery, TicketResponse
from ticketdesk.tickets.domain import TRANSITIONS, can_transition, ensure_transition

from tests.conftest import START, ticket_payload


async def load_of(directory, user_id):
    return (await directory.get_user(user_id)).current_tickets


@pytest.fixture
def new_ticket(service):
    """Hardware ticket by student-1, auto-assigned to tech-hw."""
    async def create(**overrides):
        return await service.create_ticket(ticket_payload(**overrides), "student-1")
    return create


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(VALID_STATUSES)

    @pytest.mark.parametrize("current,target", [
        ("open", "assigned"),
        ("open", "cancelled"),
        ("assigned", "resolved"),
        ("in_progress", "pending"),
        ("pending", "in_progress"),
        ("resolved", "closed"),
        ("resolved", "reopened"),
        ("closed", "reopened"),
        ("reopened", "open"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        ("open", "resolved"),
        ("closed", "in_progress"),
        ("cancelled", "open"),
        ("resolved", "cancelled"),
        ("in_progress", "in_progress"),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionException):
            ensure_transition(current, target)

    def test_unknown_status_is_a_validation_error(self):
        with pytest.raises(ValidationException) as exc_info:
            ensure_transition("open", "archived")
        assert not isinstance(exc_info.value, InvalidTransitionException)
        assert exc_info.value.errors[0]["field"] == "status"


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_assignee_starts_work(self, service, new_ticket, notifier):
        ticket = await new_ticket()
        updated = await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw", "on it")

        assert updated.status == TicketStatus.IN_PROGRESS
        assert updated.status_history[-1].comment == "on it"
        assert updated.version == ticket.version + 1
        assert updated.audit_trail[-1].action == AuditAction.STATUS_CHANGED
        assert updated.audit_trail[-1].changes["status"] == {"old": "assigned", "new": "in_progress"}
        assert notifier.types()[-1] == EventType.STATUS_CHANGED

    @pytest.mark.asyncio
    async def test_requester_cannot_start_work(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "student-1")

    @pytest.mark.asyncio
    async def test_other_technician_cannot_start_work(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-net")

    @pytest.mark.asyncio
    async def test_invalid_transition_writes_nothing(self, service, repository, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(InvalidTransitionException):
            await service.change_status(ticket.id, TicketStatus.CLOSED, "admin-1")

        stored = await repository.get(ticket.id)
        assert stored.version == ticket.version
        assert len(stored.status_history) == len(ticket.status_history)
        assert len(stored.audit_trail) == len(ticket.audit_trail)

    @pytest.mark.asyncio
    async def test_lookup_by_ticket_number(self, service, new_ticket):
        ticket = await new_ticket()
        updated = await service.change_status(ticket.ticket_number, TicketStatus.PENDING, "tech-hw")
        assert updated.id == ticket.id

    @pytest.mark.asyncio
    async def test_assigned_requires_an_assignee(self, service, new_ticket):
        ticket = await new_ticket(category="phone")
        with pytest.raises(ValidationException):
            await service.change_status(ticket.id, TicketStatus.ASSIGNED, "admin-1")

    @pytest.mark.asyncio
    async def test_concurrent_changes_are_serialized(self, service, repository, new_ticket):
        ticket = await new_ticket()

        results = await asyncio.gather(
            service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw"),
            service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert isinstance(failures[0], InvalidTransitionException)
        assert (await repository.get(ticket.id)).version == ticket.version + 1


class TestResolveAndClose:
    @pytest.mark.asyncio
    async def test_resolve_then_close(self, service, directory, clock, new_ticket):
        ticket = await new_ticket(priority="high")
        clock.advance(minutes=90)
        resolved = await service.resolve(ticket.id, "tech-hw", "Replaced the power supply")

        assert resolved.status == TicketStatus.RESOLVED
        assert resolved.resolution.resolved_at == START + timedelta(minutes=90)
        assert resolved.resolution.resolution_minutes == 90
        assert resolved.resolution.description == "Replaced the power supply"
        assert resolved.sla.resolution.actual_minutes == 90
        assert not resolved.sla.resolution.breached
        assert resolved.audit_trail[-1].action == AuditAction.RESOLVED
        # Resolved work still counts against the technician until closed.
        assert await load_of(directory, "tech-hw") == 1

        clock.advance(hours=2)
        closed = await service.change_status(ticket.id, TicketStatus.CLOSED, "student-1")

        assert closed.status == TicketStatus.CLOSED
        assert closed.resolution.resolved_at <= closed.closed_at
        assert closed.resolution.resolution_minutes == 90
        assert await load_of(directory, "tech-hw") == 0

    @pytest.mark.asyncio
    async def test_late_resolution_is_breached(self, service, clock, new_ticket):
        ticket = await new_ticket(priority="critical")
        clock.advance(hours=5)
        resolved = await service.resolve(ticket.id, "tech-hw", "Fixed late")

        assert resolved.sla.resolution.breached
        assert resolved.sla.response.breached

    @pytest.mark.asyncio
    async def test_resolution_text_required(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(ValidationException):
            await service.resolve(ticket.id, "tech-hw", "   ")


class TestReopen:
    @pytest.mark.asyncio
    async def test_reopen_closed_ticket(self, service, directory, clock, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Reseated the RAM")
        await service.change_status(ticket.id, TicketStatus.CLOSED, "student-1")
        assert await load_of(directory, "tech-hw") == 0

        clock.advance(days=1)
        reopened = await service.reopen(ticket.id, "student-1", "Black screen is back")

        assert reopened.status == TicketStatus.REOPENED
        assert reopened.reopen_count == 1
        assert reopened.closed_at is None
        assert reopened.reopened_at == clock.now()
        assert reopened.comments[-1].is_system
        assert reopened.comments[-1].content == "Ticket reopened: Black screen is back"
        assert reopened.audit_trail[-1].action == AuditAction.REOPENED
        assert await load_of(directory, "tech-hw") == 1

    @pytest.mark.asyncio
    async def test_second_resolution_keeps_first_timestamps(self, service, clock, new_ticket):
        ticket = await new_ticket()
        clock.advance(minutes=30)
        first = await service.resolve(ticket.id, "tech-hw", "Reseated the RAM")
        clock.advance(minutes=30)
        await service.reopen(ticket.id, "student-1", "Still broken")
        await service.change_status(ticket.id, TicketStatus.ASSIGNED, "tech-hw")
        clock.advance(minutes=30)
        second = await service.resolve(ticket.id, "tech-hw", "Replaced the RAM")

        assert second.resolution.resolved_at == first.resolution.resolved_at
        assert second.resolution.resolution_minutes == 30
        assert second.resolution.description == "Replaced the RAM"
        assert second.reopen_count == 1

    @pytest.mark.asyncio
    async def test_only_creator_or_admin_may_reopen(self, service, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")

        with pytest.raises(PermissionDeniedException):
            await service.reopen(ticket.id, "tech-hw", "Not happy")

        reopened = await service.reopen(ticket.id, "admin-1", "Customer called back")
        assert reopened.reopen_count == 1

    @pytest.mark.asyncio
    async def test_reopened_back_to_open_releases_assignee(self, service, directory, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")
        await service.reopen(ticket.id, "student-1", "Broken again")

        reopened = await service.change_status(ticket.id, TicketStatus.OPEN, "admin-1")

        assert reopened.status == TicketStatus.OPEN
        assert reopened.assigned_to is None
        assert reopened.assigned_at is None
        assert await load_of(directory, "tech-hw") == 0

    @pytest.mark.asyncio
    async def test_reopen_reason_required(self, service, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")
        with pytest.raises(ValidationException):
            await service.reopen(ticket.id, "student-1", "")


class TestCancel:
    @pytest.mark.asyncio
    async def test_creator_cancels_active_ticket(self, service, directory, new_ticket):
        ticket = await new_ticket()
        cancelled = await service.change_status(ticket.id, TicketStatus.CANCELLED, "student-1")

        assert cancelled.status == TicketStatus.CANCELLED
        assert await load_of(directory, "tech-hw") == 0

        with pytest.raises(InvalidTransitionException):
            await service.change_status(ticket.id, TicketStatus.OPEN, "admin-1")

    @pytest.mark.asyncio
    async def test_other_requester_cannot_cancel(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.change_status(ticket.id, TicketStatus.CANCELLED, "student-2")


class TestAssignment:
    @pytest.mark.asyncio
    async def test_manual_assignment_of_open_ticket(self, service, directory, new_ticket, notifier):
        ticket = await new_ticket(category="phone")
        assigned = await service.assign_ticket(ticket.id, "tech-net", "admin-1")

        assert assigned.status == TicketStatus.ASSIGNED
        assert assigned.assigned_to == "tech-net"
        assert assigned.assigned_by == "admin-1"
        assert assigned.status_history[-1].status == TicketStatus.ASSIGNED
        assert await load_of(directory, "tech-net") == 1
        assert notifier.types()[-1] == EventType.ASSIGNED

    @pytest.mark.asyncio
    async def test_reassignment_moves_load(self, service, directory, new_ticket):
        ticket = await new_ticket()
        await service.change_status(ticket.id, TicketStatus.IN_PROGRESS, "tech-hw")

        reassigned = await service.assign_ticket(ticket.id, "tech-net", "tech-hw")

        assert reassigned.status == TicketStatus.IN_PROGRESS
        assert reassigned.audit_trail[-1].changes["assigned_to"] == {"old": "tech-hw", "new": "tech-net"}
        assert await load_of(directory, "tech-hw") == 0
        assert await load_of(directory, "tech-net") == 1

    @pytest.mark.asyncio
    async def test_same_technician_is_a_no_op(self, service, new_ticket):
        ticket = await new_ticket()
        again = await service.assign_ticket(ticket.id, "tech-hw", "admin-1")
        assert again.version == ticket.version

    @pytest.mark.asyncio
    async def test_requester_cannot_assign(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.assign_ticket(ticket.id, "tech-net", "student-1")

    @pytest.mark.asyncio
    async def test_unknown_or_non_staff_assignee(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(ResourceNotFoundException):
            await service.assign_ticket(ticket.id, "nobody", "admin-1")
        with pytest.raises(ResourceNotFoundException):
            await service.assign_ticket(ticket.id, "student-2", "admin-1")

    @pytest.mark.asyncio
    async def test_resolved_ticket_cannot_be_assigned(self, service, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")
        with pytest.raises(ValidationException):
            await service.assign_ticket(ticket.id, "tech-net", "admin-1")


class TestComments:
    @pytest.mark.asyncio
    async def test_first_public_staff_comment_latches_response(self, service, clock, new_ticket):
        ticket = await new_ticket(priority="critical")

        clock.advance(minutes=5)
        await service.add_comment(ticket.id, "student-1", "Any update?")
        await service.add_comment(ticket.id, "tech-hw", "Checking logs", internal=True)
        stored = await service.get_ticket(ticket.id, "admin-1")
        assert stored.first_response_at is None

        clock.advance(minutes=5)
        await service.add_comment(ticket.id, "tech-hw", "On my way to your desk.")
        clock.advance(minutes=5)
        await service.add_comment(ticket.id, "admin-1", "Second reply")

        stored = await service.get_ticket(ticket.id, "admin-1")
        assert stored.first_response_at == START + timedelta(minutes=10)
        assert stored.sla.response.actual_minutes == 10
        assert not stored.sla.response.breached
        assert stored.audit_trail[-1].action == AuditAction.COMMENTED

    @pytest.mark.asyncio
    async def test_late_first_response_is_breached(self, service, clock, new_ticket):
        ticket = await new_ticket(priority="critical")
        clock.advance(minutes=45)
        await service.add_comment(ticket.id, "tech-hw", "Sorry for the wait")

        stored = await service.get_ticket(ticket.id, "admin-1")
        assert stored.sla.response.breached
        assert stored.sla.response.actual_minutes == 45

    @pytest.mark.asyncio
    async def test_comment_permissions(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.add_comment(ticket.id, "student-1", "secret", internal=True)
        with pytest.raises(PermissionDeniedException):
            await service.add_comment(ticket.id, "student-2", "me too")

    @pytest.mark.asyncio
    async def test_comment_length(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(ValidationException):
            await service.add_comment(ticket.id, "student-1", "x" * 2001)

    @pytest.mark.asyncio
    async def test_internal_comments_hidden_from_requester(self, service, clock, new_ticket):
        ticket = await new_ticket()
        await service.add_comment(ticket.id, "tech-hw", "Warranty expired", internal=True)
        await service.add_comment(ticket.id, "tech-hw", "Ordering a part")
        stored = await service.get_ticket(ticket.id, "student-1")

        requester_view = TicketResponse.from_domain(stored, False, clock.now())
        staff_view = TicketResponse.from_domain(stored, True, clock.now())

        assert [c.content for c in requester_view.comments] == ["Ordering a part"]
        assert len(staff_view.comments) == 2


class TestRating:
    @pytest.mark.asyncio
    async def test_rate_resolved_ticket(self, service, new_ticket, notifier):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")
        rated = await service.add_rating(ticket.id, "student-1", 5, "  Quick fix, thanks  ")

        assert rated.resolution.satisfaction_rating == 5
        assert rated.resolution.satisfaction_comment == "Quick fix, thanks"
        assert rated.audit_trail[-1].action == AuditAction.RATED
        assert notifier.types()[-1] == EventType.RATED

    @pytest.mark.asyncio
    async def test_rating_unresolved_ticket_writes_nothing(self, service, repository, new_ticket):
        ticket = await new_ticket()

        with pytest.raises(ValidationException) as exc_info:
            await service.add_rating(ticket.id, "student-1", 4)

        assert exc_info.value.errors == [
            {"field": "status", "message": "Only resolved tickets can be rated"}
        ]
        stored = await repository.get(ticket.id)
        assert stored.version == ticket.version
        assert stored.status_history == ticket.status_history
        assert len(stored.audit_trail) == len(ticket.audit_trail)

    @pytest.mark.asyncio
    async def test_rating_rules(self, service, new_ticket):
        ticket = await new_ticket()
        await service.resolve(ticket.id, "tech-hw", "Done")

        with pytest.raises(PermissionDeniedException):
            await service.add_rating(ticket.id, "tech-hw", 5)
        with pytest.raises(ValidationException):
            await service.add_rating(ticket.id, "student-1", 6)

        await service.add_rating(ticket.id, "student-1", 3)
        with pytest.raises(ValidationException) as exc_info:
            await service.add_rating(ticket.id, "student-1", 4)
        assert exc_info.value.errors[0]["message"] == "Ticket has already been rated"


class TestAttachments:
    @pytest.mark.asyncio
    async def test_add_attachment(self, service, new_ticket):
        ticket = await new_ticket()
        attachment = await service.add_attachment(
            ticket.id, "student-1", "screen.jpg", "s3://helpdesk/screen.jpg", 2048, "image/jpeg"
        )

        stored = await service.get_ticket(ticket.id, "student-1")
        assert stored.attachments == [attachment]
        assert stored.audit_trail[-1].action == AuditAction.ATTACHED

    @pytest.mark.asyncio
    async def test_all_attachment_errors_reported(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(ValidationException) as exc_info:
            await service.add_attachment(ticket.id, "student-1", "", "ref", 20 * 1024 * 1024, "")

        fields = [e["field"] for e in exc_info.value.errors]
        assert fields == ["name", "size_bytes", "mime_type"]

    @pytest.mark.asyncio
    async def test_outsider_cannot_attach(self, service, new_ticket):
        ticket = await new_ticket()
        with pytest.raises(PermissionDeniedException):
            await service.add_attachment(ticket.id, "student-2", "a.txt", "ref", 10, "text/plain")


class TestVisibilityAndDelete:
    @pytest.mark.asyncio
    async def test_view_rules(self, service, new_ticket):
        ticket = await new_ticket()

        assert (await service.get_ticket(ticket.id, "student-1")).id == ticket.id
        assert (await service.get_ticket(ticket.id, "tech-hw")).id == ticket.id
        assert (await service.get_ticket(ticket.id, "admin-1")).id == ticket.id
        with pytest.raises(PermissionDeniedException):
            await service.get_ticket(ticket.id, "student-2")
        with pytest.raises(PermissionDeniedException):
            await service.get_ticket(ticket.id, "tech-net")

    @pytest.mark.asyncio
    async def test_list_is_scoped_to_actor(self, service):
        await service.create_ticket(ticket_payload(), "student-1")
        await service.create_ticket(ticket_payload(category="phone"), "student-2")

        mine = await service.list_tickets("student-1")
        everything = await service.list_tickets("admin-1")
        hardware = await service.list_tickets("admin-1", TicketQuery(category="hardware"))

        assert [t.created_by for t in mine] == ["student-1"]
        assert len(everything) == 2
        assert len(hardware) == 1

    @pytest.mark.asyncio
    async def test_soft_delete(self, service, directory, new_ticket, notifier):
        ticket = await new_ticket()

        with pytest.raises(PermissionDeniedException):
            await service.delete_ticket(ticket.id, "tech-hw")

        deleted = await service.delete_ticket(ticket.id, "admin-1")

        assert deleted.is_deleted
        assert deleted.deleted_by == "admin-1"
        assert await load_of(directory, "tech-hw") == 0
        assert notifier.types()[-1] == EventType.DELETED
        with pytest.raises(ResourceNotFoundException):
            await service.get_ticket(ticket.id, "student-1")
        assert await service.list_tickets("student-1") == []
        assert len(await service.list_tickets("admin-1", TicketQuery(include_deleted=True))) == 1

    @pytest.mark.asyncio
    async def test_missing_ticket(self, service):
        with pytest.raises(ResourceNotFoundException):
            await service.get_ticket("TKT-20240304-0999", "admin-1")
