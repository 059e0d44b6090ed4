"""
Tickets Application Services
============================

The ticket lifecycle: creation, assignment, status transitions, comments,
escalation, resolution, rating, reopening, attachments and soft delete.

Every mutating operation follows the same shape:

1. resolve the actor and apply the role gate
2. take the per-ticket lock and read a fresh copy of the aggregate
3. validate, then mutate the copy
4. append one audit entry, bump the version and save
5. settle technician load counters and emit the lifecycle event

A rejected operation raises before step 4, so nothing is written.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from ticketdesk.config import (
    TicketStatus, AuditAction, EventType, Role, SLAType,
    SYSTEM_ACTOR_ID, MAX_ESCALATION_LEVEL, MAX_ATTACHMENT_BYTES,
)
from ticketdesk.core import (
    ConflictException,
    DependencyUnavailableException,
    PermissionDeniedException,
    ResourceNotFoundException,
    ValidationException,
)
from ticketdesk.shared.infrastructure.clock import Clock
from ticketdesk.shared.infrastructure.locks import KeyedLockRegistry
from ticketdesk.shared.infrastructure.logging import get_logger
from ticketdesk.sla.application import SLAService
from ticketdesk.sla.domain import DeadlineCalculator, SLAMetrics
from ticketdesk.tickets.application.assignment import AssignmentMatcher
from ticketdesk.tickets.application.audit import AuditTrailRecorder
from ticketdesk.tickets.application.dto import TicketCreateDTO, TicketQuery, ticket_snapshot
from ticketdesk.tickets.application.interfaces import (
    ITicketRepository,
    IStaffDirectory,
    INotificationDispatcher,
)
from ticketdesk.tickets.domain import (
    Ticket, SLAClock, SLABlock, EscalationRecord, Comment, Attachment,
    Location, AuditEntry, UserRef, TechnicianRef,
    format_ticket_number, is_ticket_number,
    ensure_transition, ensure_actor_may_transition,
)
from ticketdesk.tickets.domain import rules

logger = get_logger(__name__)

SYSTEM_ACTOR = UserRef(id=SYSTEM_ACTOR_ID, role=Role.ADMIN, display_name="System")

_STATUS_ACTIONS = {
    TicketStatus.RESOLVED: AuditAction.RESOLVED,
    TicketStatus.REOPENED: AuditAction.REOPENED,
}
_STATUS_EVENTS = {
    TicketStatus.RESOLVED: EventType.RESOLVED,
    TicketStatus.REOPENED: EventType.REOPENED,
}


def _require_text(field: str, value: Optional[str], max_length: int, min_length: int = 1) -> str:
    """Trimmed text within bounds, or a single-field ValidationException."""
    text = (value or "").strip()
    if not min_length <= len(text) <= max_length:
        raise ValidationException.for_field(
            field, f"{field} must be between {min_length} and {max_length} characters"
        )
    return text


class TicketLifecycleService:
    """
    Ticket state machine operations.

    Collaborators are injected; operations are serialized per ticket by
    the lock registry and never hold a lock across tickets.
    """

    def __init__(
        self,
        repository: ITicketRepository,
        directory: IStaffDirectory,
        notifier: INotificationDispatcher,
        sla_service: SLAService,
        locks: KeyedLockRegistry,
        clock: Clock,
        matcher: Optional[AssignmentMatcher] = None,
        audit: Optional[AuditTrailRecorder] = None,
        recompute_sla_on_escalation: bool = False
    ):
        self._repository = repository
        self._directory = directory
        self._notifier = notifier
        self._sla = sla_service
        self._locks = locks
        self._clock = clock
        self._matcher = matcher or AssignmentMatcher(directory, clock)
        self._audit = audit or AuditTrailRecorder()
        self._recompute_sla = recompute_sla_on_escalation

    # ========== Plumbing ==========

    async def actor(self, actor_id: str) -> UserRef:
        """
        Resolve an actor id through the staff directory.

        Raises:
            PermissionDeniedException: unknown user
        """
        return await self._actor(actor_id)

    async def _actor(self, actor_id: str) -> UserRef:
        if actor_id == SYSTEM_ACTOR_ID:
            return SYSTEM_ACTOR
        profile = await self._directory.get_user(actor_id)
        if profile is None:
            raise PermissionDeniedException("act", actor_id, "unknown user")
        return profile.as_user()

    async def _creator(self, actor_id: str) -> UserRef:
        """Any role may create, so an unreachable directory does not block creation."""
        try:
            return await self._actor(actor_id)
        except DependencyUnavailableException:
            logger.warning(
                "Staff directory unavailable, creating ticket as requester",
                extra={"actor_id": actor_id},
                exc_info=True
            )
            return UserRef(id=actor_id, role=Role.STUDENT)

    async def _find(self, ref: str) -> Ticket:
        """Look up by id or ticket number; deleted tickets are not found."""
        ticket = await self._repository.get(ref)
        if ticket is None and is_ticket_number(ref):
            ticket = await self._repository.get_by_number(ref)
        if ticket is None or ticket.is_deleted:
            raise ResourceNotFoundException("Ticket", ref)
        return ticket

    @asynccontextmanager
    async def _locked(self, ref: str) -> AsyncIterator[Ticket]:
        """Hold the ticket's lock and yield a fresh copy read under it."""
        ticket_id = (await self._find(ref)).id
        async with self._locks.hold(ticket_id):
            yield await self._find(ticket_id)

    async def _commit(
        self,
        ticket: Ticket,
        before: Optional[Dict[str, Any]],
        action: str,
        actor_id: str,
        now: datetime,
        note: Optional[str] = None,
        claimed: Optional[str] = None
    ) -> Ticket:
        """
        Record the audit entry, bump the version and save.

        ``claimed`` is a technician already reserved for this change; the
        reservation is given back if the save does not go through.
        """
        self._audit.record(ticket, before, action, actor_id, now, note)
        expected = ticket.version
        ticket.touch(now)

        saved = None
        try:
            if before is None:
                saved = await self._repository.add(ticket)
            else:
                saved = await self._repository.save(ticket, expected)
        finally:
            if saved is None and claimed:
                await self._release_quietly(claimed)

        await self._settle_load(before, self._audit.snapshot(saved), claimed)
        return saved

    async def _settle_load(
        self,
        before: Optional[Dict[str, Any]],
        after: Dict[str, Any],
        claimed: Optional[str]
    ) -> None:
        """Move load counters from the previous holder to the new one."""
        old = rules.load_holder(before)
        new = rules.load_holder(after)
        if claimed and claimed != new:
            await self._release_quietly(claimed)
        if old == new:
            if claimed and claimed == new:
                # Same technician kept the ticket; the claim was surplus.
                await self._release_quietly(claimed)
            return
        try:
            if old:
                await self._directory.adjust_load(old, -1)
            if new and new != claimed:
                await self._directory.adjust_load(new, 1)
        except Exception:
            logger.error(
                "Failed to adjust technician load",
                extra={"previous_assignee": old, "new_assignee": new},
                exc_info=True
            )

    async def _release_quietly(self, technician_id: str) -> None:
        try:
            await self._matcher.release(technician_id)
        except Exception:
            logger.error(
                "Failed to release technician reservation",
                extra={"technician_id": technician_id},
                exc_info=True
            )

    def _notify(self, event_type: str, ticket: Ticket, **context: Any) -> None:
        """Fire-and-forget; a failing dispatcher never fails the operation."""
        try:
            self._notifier.emit(event_type, ticket_snapshot(ticket), context)
        except Exception:
            logger.warning(
                "Notification dispatch failed",
                extra={"event_type": event_type, "ticket_id": ticket.id},
                exc_info=True
            )

    # ========== Creation ==========

    async def create_ticket(self, data: Any, actor_id: str) -> Ticket:
        """
        Create a ticket, compute its SLA deadlines and try to auto-assign it.

        Args:
            data: TicketCreateDTO or a mapping with the same fields
            actor_id: Requester

        Raises:
            ValidationException: every invalid field at once
            ConflictException: ticket number collided twice
        """
        dto = TicketCreateDTO.parse(data)
        actor = await self._creator(actor_id)

        for attempt in range(2):
            try:
                ticket = await self._create_once(dto, actor)
            except ConflictException:
                if attempt:
                    raise
                logger.warning("Ticket number collision, retrying", extra={"actor_id": actor.id})
                continue
            break

        logger.info(
            "Ticket created",
            extra={
                "ticket_id": ticket.id,
                "ticket_number": ticket.ticket_number,
                "priority": ticket.priority,
                "assigned_to": ticket.assigned_to,
                "actor_id": actor.id,
            }
        )
        self._notify(EventType.CREATED, ticket, actor_id=actor.id)
        if ticket.assigned_to:
            self._notify(EventType.ASSIGNED, ticket, actor_id=SYSTEM_ACTOR_ID, automatic=True)
        return ticket

    async def _create_once(self, dto: TicketCreateDTO, actor: UserRef) -> Ticket:
        now = self._clock.now()
        sequence = await self._repository.next_sequence(now.date())
        deadlines = DeadlineCalculator.compute_deadlines(dto.priority, now, self._sla.policy)

        ticket = Ticket(
            id=str(uuid.uuid4()),
            ticket_number=format_ticket_number(now.date(), sequence),
            title=dto.title,
            description=dto.description,
            category=dto.category,
            priority=dto.priority,
            status=TicketStatus.OPEN,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            sla=SLABlock(
                response=SLAClock(deadlines.response_target, deadlines.response_deadline),
                resolution=SLAClock(deadlines.resolution_target, deadlines.resolution_deadline),
            ),
            department=dto.department,
            sub_category=dto.sub_category,
            location=Location(**dto.location.model_dump()) if dto.location else None,
            tags=list(dto.tags),
            metadata=dict(dto.metadata),
        )

        technician = await self._auto_assign(ticket)
        note = None
        if technician:
            ticket.set_assignee(technician.id, SYSTEM_ACTOR_ID, now)
            ticket.status = TicketStatus.ASSIGNED
            note = f"Auto-assigned to {technician.display_name or technician.id}"
        ticket.record_status(ticket.status, actor.id, now, note or "Ticket created")

        return await self._commit(
            ticket, None, AuditAction.CREATED, actor.id, now, note,
            claimed=technician.id if technician else None
        )

    async def _auto_assign(self, ticket: Ticket) -> Optional[TechnicianRef]:
        """Best effort: any failure leaves the ticket unassigned."""
        try:
            technician = await self._matcher.claim(ticket.category, ticket.department)
        except Exception:
            logger.warning(
                "Auto-assignment failed, ticket left unassigned",
                extra={"ticket_number": ticket.ticket_number},
                exc_info=True
            )
            return None
        if technician is None:
            logger.info(
                "No technician available, ticket left unassigned",
                extra={"ticket_number": ticket.ticket_number, "category": ticket.category}
            )
        return technician

    # ========== Reads ==========

    async def get_ticket(self, ref: str, actor_id: str) -> Ticket:
        actor = await self._actor(actor_id)
        ticket = await self._find(ref)
        if not rules.can_view(ticket, actor):
            raise PermissionDeniedException("view this ticket", actor.id)
        return ticket

    async def list_tickets(self, actor_id: str, query: Optional[TicketQuery] = None) -> List[Ticket]:
        """Tickets visible to the actor; admins may also see deleted ones."""
        actor = await self._actor(actor_id)
        query = query or TicketQuery()
        update: Dict[str, Any] = {}
        if not actor.is_admin:
            update = {"visible_to": actor.id, "include_deleted": False}
        return await self._repository.list(query.model_copy(update=update))

    async def sla_metrics(self, ref: str, actor_id: str, now: Optional[datetime] = None) -> SLAMetrics:
        ticket = await self.get_ticket(ref, actor_id)
        return self._sla.calculate_metrics(ticket, now or self._clock.now())

    async def audit_trail(self, ref: str, actor_id: str) -> List[AuditEntry]:
        actor = await self._actor(actor_id)
        ticket = await self._find(ref)
        if not rules.can_view_audit(ticket, actor):
            raise PermissionDeniedException("view the audit trail", actor.id)
        return list(ticket.audit_trail)

    # ========== Assignment ==========

    async def assign_ticket(self, ticket_id: str, technician_id: str, actor_id: str) -> Ticket:
        """
        Assign (or reassign) a ticket.

        Raises:
            PermissionDeniedException: actor is not technician/admin
            ResourceNotFoundException: technician unknown or not staff
            ValidationException: ticket is resolved, closed or cancelled
        """
        actor = await self._actor(actor_id)
        if not rules.can_assign(actor):
            raise PermissionDeniedException("assign tickets", actor.id, "technician or admin role required")

        technician = await self._directory.get_user(technician_id)
        if technician is None or not technician.as_user().is_staff:
            raise ResourceNotFoundException("Technician", technician_id)

        async with self._locked(ticket_id) as ticket:
            if not ticket.is_active:
                raise ValidationException.for_field(
                    "status", f"Cannot assign a ticket in status '{ticket.status}'"
                )
            if ticket.assigned_to == technician.id:
                return ticket

            now = self._clock.now()
            before = self._audit.snapshot(ticket)
            ticket.set_assignee(technician.id, actor.id, now)
            if ticket.status in (TicketStatus.OPEN, TicketStatus.REOPENED):
                ticket.record_status(TicketStatus.ASSIGNED, actor.id, now, f"Assigned to {technician.id}")

            ticket = await self._commit(ticket, before, AuditAction.ASSIGNED, actor.id, now)

        logger.info(
            "Ticket assigned",
            extra={"ticket_id": ticket.id, "assigned_to": technician.id, "actor_id": actor.id}
        )
        self._notify(EventType.ASSIGNED, ticket, actor_id=actor.id)
        return ticket

    # ========== Status transitions ==========

    async def change_status(
        self,
        ticket_id: str,
        new_status: str,
        actor_id: str,
        note: Optional[str] = None
    ) -> Ticket:
        """
        Move a ticket along the state machine.

        Raises:
            ValidationException: unknown status, or missing assignee for 'assigned'
            InvalidTransitionException: move not allowed from the current status
            PermissionDeniedException: actor may not make this move
        """
        actor = await self._actor(actor_id)
        note = note.strip() if note else None

        async with self._locked(ticket_id) as ticket:
            previous = ticket.status
            ticket = await self._transition(ticket, new_status, actor, note)

        logger.info(
            "Ticket status changed",
            extra={
                "ticket_id": ticket.id,
                "from_status": previous,
                "to_status": ticket.status,
                "actor_id": actor.id,
            }
        )
        self._notify(
            _STATUS_EVENTS.get(ticket.status, EventType.STATUS_CHANGED),
            ticket, actor_id=actor.id, previous_status=previous
        )
        return ticket

    async def _transition(
        self,
        ticket: Ticket,
        target: str,
        actor: UserRef,
        note: Optional[str],
        resolution_text: Optional[str] = None
    ) -> Ticket:
        """Validate, apply the side effects of a transition and commit. Caller holds the lock."""
        ensure_transition(ticket.status, target)
        ensure_actor_may_transition(ticket, target, actor)
        if target == TicketStatus.ASSIGNED and not ticket.assigned_to:
            raise ValidationException.for_field("assigned_to", "Ticket has no assignee; use assign instead")

        now = self._clock.now()
        before = self._audit.snapshot(ticket)

        if target == TicketStatus.RESOLVED:
            self._apply_resolved(ticket, actor, now, resolution_text)
        elif target == TicketStatus.CLOSED:
            if ticket.closed_at is None:
                ticket.closed_at = now
            ticket.escalation.level = 0
        elif target == TicketStatus.REOPENED:
            ticket.closed_at = None
            ticket.reopened_at = now
            ticket.reopen_count += 1
            ticket.escalation.level = 0
            reason = note or "no reason given"
            ticket.comments.append(Comment(
                id=str(uuid.uuid4()),
                author_id=actor.id,
                content=f"Ticket reopened: {reason}",
                is_internal=False,
                created_at=now,
                is_system=True,
            ))
        elif target == TicketStatus.OPEN:
            ticket.clear_assignee()

        ticket.record_status(target, actor.id, now, note)
        return await self._commit(
            ticket, before, _STATUS_ACTIONS.get(target, AuditAction.STATUS_CHANGED), actor.id, now, note
        )

    def _apply_resolved(
        self,
        ticket: Ticket,
        actor: UserRef,
        now: datetime,
        resolution_text: Optional[str]
    ) -> None:
        """Resolution timestamps and breach flags are set on the first resolution only."""
        if resolution_text:
            ticket.resolution.description = resolution_text
        if ticket.resolution.resolved_at is not None:
            return

        minutes = DeadlineCalculator.elapsed_minutes(ticket.created_at, now)
        ticket.resolution.resolved_at = now
        ticket.resolution.resolved_by = actor.id
        ticket.resolution.resolution_minutes = minutes
        ticket.sla.resolution.actual_minutes = minutes
        ticket.sla.resolution.breached = DeadlineCalculator.is_breached(
            ticket.sla.resolution.deadline, now, now
        )
        if ticket.first_response_at is None and now > ticket.sla.response.deadline:
            ticket.sla.response.breached = True

    async def resolve(self, ticket_id: str, actor_id: str, resolution_text: str) -> Ticket:
        """Transition to resolved with a resolution description."""
        text = _require_text("resolution", resolution_text, 2000)
        actor = await self._actor(actor_id)

        async with self._locked(ticket_id) as ticket:
            ticket = await self._transition(ticket, TicketStatus.RESOLVED, actor, None, text)

        logger.info(
            "Ticket resolved",
            extra={
                "ticket_id": ticket.id,
                "resolution_minutes": ticket.resolution.resolution_minutes,
                "breached": ticket.sla.resolution.breached,
                "actor_id": actor.id,
            }
        )
        self._notify(EventType.RESOLVED, ticket, actor_id=actor.id)
        return ticket

    async def reopen(self, ticket_id: str, actor_id: str, reason: str) -> Ticket:
        """Reopen a resolved or closed ticket (creator or admin)."""
        text = _require_text("reason", reason, 500)
        actor = await self._actor(actor_id)

        async with self._locked(ticket_id) as ticket:
            if not rules.can_reopen(ticket, actor):
                raise PermissionDeniedException("reopen this ticket", actor.id, "creator or admin only")
            ticket = await self._transition(ticket, TicketStatus.REOPENED, actor, text)

        logger.info(
            "Ticket reopened",
            extra={"ticket_id": ticket.id, "reopen_count": ticket.reopen_count, "actor_id": actor.id}
        )
        self._notify(EventType.REOPENED, ticket, actor_id=actor.id, reason=text)
        return ticket

    # ========== Comments, rating, attachments ==========

    async def add_comment(
        self,
        ticket_id: str,
        actor_id: str,
        content: str,
        internal: bool = False
    ) -> Comment:
        """
        Add a comment. The first public comment by staff latches the
        ticket's first response and settles the response clock.
        """
        text = _require_text("content", content, 2000)
        actor = await self._actor(actor_id)

        async with self._locked(ticket_id) as ticket:
            if not rules.can_comment(ticket, actor, internal):
                reason = "internal comments are staff only" if internal else "creator or staff only"
                raise PermissionDeniedException("comment on this ticket", actor.id, reason)

            now = self._clock.now()
            before = self._audit.snapshot(ticket)
            comment = Comment(
                id=str(uuid.uuid4()),
                author_id=actor.id,
                content=text,
                is_internal=internal,
                created_at=now,
            )
            ticket.comments.append(comment)

            if not internal and actor.is_staff and ticket.first_response_at is None:
                ticket.first_response_at = now
                ticket.sla.response.actual_minutes = DeadlineCalculator.elapsed_minutes(ticket.created_at, now)
                ticket.sla.response.breached = DeadlineCalculator.is_breached(
                    ticket.sla.response.deadline, now, now
                )

            ticket = await self._commit(
                ticket, before, AuditAction.COMMENTED, actor.id, now,
                note="internal comment" if internal else "comment"
            )

        self._notify(
            EventType.COMMENTED, ticket,
            actor_id=actor.id, comment_id=comment.id, internal=internal
        )
        return comment

    async def add_rating(
        self,
        ticket_id: str,
        actor_id: str,
        rating: int,
        comment: Optional[str] = None
    ) -> Ticket:
        """
        Rate a resolved ticket, once, as its creator.

        Raises:
            PermissionDeniedException: actor is not the creator
            ValidationException: not resolved, already rated, rating out of range
        """
        actor = await self._actor(actor_id)

        async with self._locked(ticket_id) as ticket:
            if not rules.can_rate(ticket, actor):
                raise PermissionDeniedException("rate this ticket", actor.id, "only the creator may rate")

            errors = []
            if ticket.status != TicketStatus.RESOLVED:
                errors.append({"field": "status", "message": "Only resolved tickets can be rated"})
            if ticket.resolution.satisfaction_rating is not None:
                errors.append({"field": "rating", "message": "Ticket has already been rated"})
            if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
                errors.append({"field": "rating", "message": "Rating must be an integer from 1 to 5"})
            text = comment.strip() if comment else None
            if text and len(text) > 500:
                errors.append({"field": "comment", "message": "Comment must be at most 500 characters"})
            if errors:
                raise ValidationException("Cannot rate ticket", errors)

            now = self._clock.now()
            before = self._audit.snapshot(ticket)
            ticket.resolution.satisfaction_rating = rating
            ticket.resolution.satisfaction_comment = text or None
            ticket.resolution.rated_at = now
            ticket = await self._commit(ticket, before, AuditAction.RATED, actor.id, now)

        self._notify(EventType.RATED, ticket, actor_id=actor.id, rating=rating)
        return ticket

    async def add_attachment(
        self,
        ticket_id: str,
        actor_id: str,
        name: str,
        storage_ref: str,
        size_bytes: int,
        mime_type: str
    ) -> Attachment:
        """Record attachment metadata; the bytes live in external storage."""
        errors = []
        name = (name or "").strip()
        if not 1 <= len(name) <= 255:
            errors.append({"field": "name", "message": "name must be between 1 and 255 characters"})
        if not (storage_ref or "").strip():
            errors.append({"field": "storage_ref", "message": "storage_ref is required"})
        if not 0 < size_bytes <= MAX_ATTACHMENT_BYTES:
            errors.append({
                "field": "size_bytes",
                "message": f"size must be between 1 byte and {MAX_ATTACHMENT_BYTES} bytes"
            })
        if not (mime_type or "").strip():
            errors.append({"field": "mime_type", "message": "mime_type is required"})
        if errors:
            raise ValidationException("Invalid attachment", errors)

        actor = await self._actor(actor_id)

        async with self._locked(ticket_id) as ticket:
            if not rules.can_attach(ticket, actor):
                raise PermissionDeniedException("attach files to this ticket", actor.id)

            now = self._clock.now()
            before = self._audit.snapshot(ticket)
            attachment = Attachment(
                id=str(uuid.uuid4()),
                name=name,
                storage_ref=storage_ref.strip(),
                size_bytes=size_bytes,
                mime_type=mime_type.strip(),
                uploaded_by=actor.id,
                uploaded_at=now,
            )
            ticket.attachments.append(attachment)
            await self._commit(ticket, before, AuditAction.ATTACHED, actor.id, now, note=name)

        return attachment

    async def delete_ticket(self, ticket_id: str, actor_id: str) -> Ticket:
        """Soft delete (admin only); the assignee's load is released."""
        actor = await self._actor(actor_id)
        if not rules.can_delete(actor):
            raise PermissionDeniedException("delete tickets", actor.id, "admin only")

        async with self._locked(ticket_id) as ticket:
            now = self._clock.now()
            before = self._audit.snapshot(ticket)
            ticket.is_deleted = True
            ticket.deleted_at = now
            ticket.deleted_by = actor.id
            ticket = await self._commit(ticket, before, AuditAction.DELETED, actor.id, now)

        logger.info("Ticket deleted", extra={"ticket_id": ticket.id, "actor_id": actor.id})
        self._notify(EventType.DELETED, ticket, actor_id=actor.id)
        return ticket

    # ========== Escalation ==========

    async def escalate(self, ticket_id: str, actor_id: str, reason: str) -> Ticket:
        """
        Raise the escalation level by one.

        Raises:
            PermissionDeniedException: actor is not technician/admin
            ValidationException: ticket inactive or already at the top level
        """
        text = _require_text("reason", reason, 500)
        actor = await self._actor(actor_id)
        if not rules.can_escalate(actor):
            raise PermissionDeniedException("escalate tickets", actor.id, "technician or admin role required")

        async with self._locked(ticket_id) as ticket:
            if not ticket.is_active:
                raise ValidationException.for_field(
                    "status", f"Cannot escalate a ticket in status '{ticket.status}'"
                )
            if ticket.escalation.level >= MAX_ESCALATION_LEVEL:
                raise ValidationException.for_field(
                    "escalation_level", f"Ticket is already at the maximum escalation level ({MAX_ESCALATION_LEVEL})"
                )
            ticket = await self._escalate_locked(ticket, actor.id, text, automatic=False)

        self._notify(
            EventType.ESCALATED, ticket,
            actor_id=actor.id, level=ticket.escalation.level, reason=text
        )
        return ticket

    async def auto_escalate(self, ticket_id: str, now: datetime) -> Optional[Ticket]:
        """
        Escalate one overdue ticket on behalf of the sweep.

        Returns None (and writes nothing) when the ticket is no longer
        eligible or has not changed since its last automatic escalation.
        """
        async with self._locks.hold(ticket_id):
            ticket = await self._repository.get(ticket_id)
            if ticket is None or ticket.is_deleted:
                return None
            if ticket.escalation.swept_version == ticket.version:
                return None
            if ticket.escalation.level >= MAX_ESCALATION_LEVEL or not rules.is_overdue(ticket, now):
                return None

            if rules.is_resolution_overdue(ticket, now):
                ticket.sla.resolution.breached = True
                reason = "Resolution deadline breached"
            else:
                reason = "Response deadline breached without a first response"
            if rules.is_response_overdue(ticket, now):
                ticket.sla.response.breached = True

            # The save below bumps the version by one.
            ticket.escalation.swept_version = ticket.version + 1
            ticket = await self._escalate_locked(ticket, SYSTEM_ACTOR_ID, reason, automatic=True, now=now)

        self._notify(
            EventType.ESCALATED, ticket,
            actor_id=SYSTEM_ACTOR_ID, level=ticket.escalation.level, reason=reason, automatic=True
        )
        return ticket

    async def _escalate_locked(
        self,
        ticket: Ticket,
        actor_id: str,
        reason: str,
        automatic: bool,
        now: Optional[datetime] = None
    ) -> Ticket:
        now = now or self._clock.now()
        before = self._audit.snapshot(ticket)

        level = ticket.escalation.level + 1
        previous_priority = ticket.priority
        new_priority = rules.escalated_priority(previous_priority, level)

        handler = await self._escalation_handler(ticket, level)

        ticket.escalation.level = level
        ticket.escalation.escalated_by = actor_id
        ticket.escalation.escalated_at = now
        ticket.escalation.reason = reason
        if handler:
            ticket.escalation.escalated_to = handler.id
        ticket.escalation.history.append(EscalationRecord(
            level=level,
            escalated_by=actor_id,
            escalated_at=now,
            reason=reason,
            previous_priority=previous_priority,
            new_priority=new_priority,
            escalated_to=handler.id if handler else None,
            automatic=automatic,
        ))
        ticket.priority = new_priority
        if self._recompute_sla and new_priority != previous_priority:
            self._tighten_deadlines(ticket, new_priority, now)

        if handler:
            ticket.set_assignee(handler.id, actor_id, now)
            if ticket.status in (TicketStatus.OPEN, TicketStatus.REOPENED):
                ticket.status = TicketStatus.ASSIGNED
        ticket.record_status(ticket.status, actor_id, now, f"Escalated to level {level}: {reason}")

        ticket = await self._commit(
            ticket, before, AuditAction.ESCALATED, actor_id, now,
            note=reason, claimed=handler.id if handler else None
        )

        logger.info(
            "Ticket escalated",
            extra={
                "ticket_id": ticket.id,
                "ticket_number": ticket.ticket_number,
                "level": level,
                "previous_priority": previous_priority,
                "new_priority": new_priority,
                "escalated_to": handler.id if handler else None,
                "automatic": automatic,
            }
        )
        return ticket

    async def _escalation_handler(self, ticket: Ticket, level: int) -> Optional[TechnicianRef]:
        try:
            handler = await self._matcher.find_escalation_handler(ticket, level)
        except Exception:
            logger.warning(
                "Escalation handler lookup failed, keeping current assignee",
                extra={"ticket_id": ticket.id, "level": level},
                exc_info=True
            )
            return None
        if handler is None:
            logger.info("No escalation handler available", extra={"ticket_id": ticket.id, "level": level})
        return handler

    def _tighten_deadlines(self, ticket: Ticket, priority: str, now: datetime) -> None:
        """Unmet clocks move to ``now + new target`` when that is sooner."""
        policy = self._sla.policy
        clocks = (
            (SLAType.RESPONSE, ticket.sla.response, ticket.first_response_at),
            (SLAType.RESOLUTION, ticket.sla.resolution, ticket.resolution.resolved_at),
        )
        for sla_type, clock, met_at in clocks:
            if met_at is not None:
                continue
            target = policy.target_minutes(priority, sla_type)
            candidate = now + timedelta(minutes=target)
            if candidate < clock.deadline:
                clock.deadline = candidate
                clock.target_minutes = DeadlineCalculator.elapsed_minutes(ticket.created_at, candidate)
