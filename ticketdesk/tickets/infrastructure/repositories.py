"""
Tickets Infrastructure Repositories
===================================

Concrete implementations of the ticket repository and staff directory
interfaces: SQLAlchemy for production, in-memory for the ``memory``
backend and tests.

Both hand out copies: callers mutate what they read freely, and nothing
reaches storage except through ``add``/``save``.
"""

import copy
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ticketdesk.config import (
    ACTIVE_STATUSES, MAX_ESCALATION_LEVEL, VALID_AVAILABILITY, VALID_CATEGORIES, VALID_ROLES, Availability
)
from ticketdesk.core import (
    ConfigurationException,
    ConflictException,
    DependencyUnavailableException,
    RepositoryException,
)
from ticketdesk.infrastructure.database import Database
from ticketdesk.shared.infrastructure.logging import get_logger
from ticketdesk.tickets.application.dto import TicketQuery
from ticketdesk.tickets.application.interfaces import ITicketRepository, IStaffDirectory
from ticketdesk.tickets.domain import StaffProfile, Ticket
from ticketdesk.tickets.domain.rules import is_overdue
from ticketdesk.tickets.infrastructure.models import (
    TechnicianModel,
    TicketModel,
    TicketSequenceModel,
)

logger = get_logger(__name__)

_TICKET_ADAPTER = TypeAdapter(Ticket)
_STAFF_ADAPTER = TypeAdapter(List[StaffProfile])


def ticket_to_document(ticket: Ticket) -> Dict[str, Any]:
    return _TICKET_ADAPTER.dump_python(ticket, mode="json")


def ticket_from_document(document: Dict[str, Any]) -> Ticket:
    return _TICKET_ADAPTER.validate_python(document)


def load_staff_profiles(path: Path) -> List[StaffProfile]:
    """
    Read staff records from YAML (a ``staff:`` list).

    Raises:
        ConfigurationException: unreadable or invalid file
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        profiles = _STAFF_ADAPTER.validate_python(data.get("staff", []))
    except (OSError, yaml.YAMLError, ValidationError) as e:
        raise ConfigurationException(f"Invalid staff directory file {path}: {e}") from e

    problems = []
    for profile in profiles:
        if profile.role not in VALID_ROLES:
            problems.append(f"{profile.id}: unknown role '{profile.role}'")
        if profile.availability not in VALID_AVAILABILITY:
            problems.append(f"{profile.id}: unknown availability '{profile.availability}'")
        unknown = [area for area in profile.support_areas if area not in VALID_CATEGORIES]
        if unknown:
            problems.append(f"{profile.id}: unknown support areas {unknown}")
    if problems:
        raise ConfigurationException(
            f"Invalid staff directory file {path}", {"problems": problems}
        )
    return profiles


def _matches(ticket: Ticket, query: TicketQuery) -> bool:
    if ticket.is_deleted and not query.include_deleted:
        return False
    for name in ("status", "priority", "category", "department", "assigned_to", "created_by"):
        wanted = getattr(query, name)
        if wanted is not None and getattr(ticket, name) != wanted:
            return False
    if query.visible_to is not None:
        return query.visible_to in (
            ticket.created_by, ticket.assigned_to, ticket.escalation.escalated_to
        )
    return True


# ========== In-memory ==========

class InMemoryTicketRepository(ITicketRepository):
    """
    Dict-backed repository.

    No method awaits between reading and writing its state, so each call
    is atomic with respect to other tasks on the event loop.
    """

    def __init__(self):
        self._tickets: Dict[str, Ticket] = {}
        self._by_number: Dict[str, str] = {}
        self._sequences: Dict[date, int] = {}

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        ticket = self._tickets.get(ticket_id)
        return copy.deepcopy(ticket) if ticket else None

    async def get_by_number(self, ticket_number: str) -> Optional[Ticket]:
        ticket_id = self._by_number.get(ticket_number)
        return await self.get(ticket_id) if ticket_id else None

    async def add(self, ticket: Ticket) -> Ticket:
        if ticket.id in self._tickets:
            raise ConflictException(f"Ticket id {ticket.id} already exists")
        if ticket.ticket_number in self._by_number:
            raise ConflictException(f"Ticket number {ticket.ticket_number} already exists")
        self._tickets[ticket.id] = copy.deepcopy(ticket)
        self._by_number[ticket.ticket_number] = ticket.id
        return copy.deepcopy(ticket)

    async def save(self, ticket: Ticket, expected_version: int) -> Ticket:
        stored = self._tickets.get(ticket.id)
        if stored is None:
            raise RepositoryException(f"Ticket {ticket.id} not found")
        if stored.version != expected_version:
            raise ConflictException(
                f"Ticket {ticket.ticket_number} was modified concurrently",
                {"expected_version": expected_version, "actual_version": stored.version}
            )
        self._tickets[ticket.id] = copy.deepcopy(ticket)
        return copy.deepcopy(ticket)

    async def next_sequence(self, day: date) -> int:
        value = self._sequences.get(day, 0) + 1
        self._sequences[day] = value
        return value

    async def list(self, query: TicketQuery) -> List[Ticket]:
        matched = [t for t in self._tickets.values() if _matches(t, query)]
        matched.sort(key=lambda t: (t.created_at, t.ticket_number), reverse=True)
        page = matched[query.offset:query.offset + query.limit]
        return [copy.deepcopy(t) for t in page]

    async def list_overdue(self, now: datetime, limit: int) -> List[Ticket]:
        overdue = [
            t for t in self._tickets.values()
            if not t.is_deleted
            and t.escalation.level < MAX_ESCALATION_LEVEL
            and is_overdue(t, now)
        ]
        overdue.sort(key=lambda t: (min(t.sla.response.deadline, t.sla.resolution.deadline), t.id))
        return [copy.deepcopy(t) for t in overdue[:limit]]


class InMemoryStaffDirectory(IStaffDirectory):
    """Dict-backed staff directory, optionally seeded from YAML."""

    def __init__(self, profiles: Iterable[StaffProfile] = ()):
        self._profiles: Dict[str, StaffProfile] = {}
        for profile in profiles:
            self.upsert(profile)

    @classmethod
    def from_yaml(cls, path: Path) -> "InMemoryStaffDirectory":
        return cls(load_staff_profiles(path))

    def upsert(self, profile: StaffProfile) -> None:
        self._profiles[profile.id] = copy.deepcopy(profile)

    async def get_user(self, user_id: str) -> Optional[StaffProfile]:
        profile = self._profiles.get(user_id)
        return copy.deepcopy(profile) if profile else None

    async def list_candidates(self, role: str) -> List[StaffProfile]:
        return [copy.deepcopy(p) for p in self._profiles.values() if p.role == role]

    async def reserve(self, user_id: str, at: datetime) -> bool:
        profile = self._profiles.get(user_id)
        if profile is None or profile.availability != Availability.AVAILABLE or not profile.has_capacity:
            return False
        profile.current_tickets += 1
        profile.last_assigned_at = at
        return True

    async def adjust_load(self, user_id: str, delta: int) -> None:
        profile = self._profiles.get(user_id)
        if profile is None:
            logger.warning("Load adjustment for unknown user", extra={"user_id": user_id})
            return
        profile.current_tickets = max(0, profile.current_tickets + delta)


# ========== SQLAlchemy ==========

def _apply_ticket_columns(model: TicketModel, ticket: Ticket) -> None:
    model.ticket_number = ticket.ticket_number
    model.status = ticket.status
    model.priority = ticket.priority
    model.category = ticket.category
    model.department = ticket.department
    model.created_by = ticket.created_by
    model.assigned_to = ticket.assigned_to
    model.escalated_to = ticket.escalation.escalated_to
    model.escalation_level = ticket.escalation.level
    model.response_deadline = ticket.sla.response.deadline
    model.resolution_deadline = ticket.sla.resolution.deadline
    model.first_response_at = ticket.first_response_at
    model.resolved_at = ticket.resolution.resolved_at
    model.is_deleted = ticket.is_deleted
    model.version = ticket.version
    model.created_at = ticket.created_at
    model.updated_at = ticket.updated_at
    model.document = ticket_to_document(ticket)


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of the ticket repository.

    Each call is its own transaction. ``save`` is a conditional UPDATE on
    the stored version, so a concurrent writer surfaces as a conflict
    instead of a lost update.
    """

    def __init__(self, database: Database):
        self._database = database

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        try:
            async with self._database.session() as session:
                model = await session.get(TicketModel, ticket_id)
                return ticket_from_document(model.document) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load ticket {ticket_id}: {e}") from e

    async def get_by_number(self, ticket_number: str) -> Optional[Ticket]:
        stmt = select(TicketModel).where(TicketModel.ticket_number == ticket_number)
        try:
            async with self._database.session() as session:
                model = (await session.execute(stmt)).scalar_one_or_none()
                return ticket_from_document(model.document) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load ticket {ticket_number}: {e}") from e

    async def add(self, ticket: Ticket) -> Ticket:
        model = TicketModel(id=ticket.id)
        _apply_ticket_columns(model, ticket)
        try:
            async with self._database.session() as session:
                session.add(model)
                await session.flush()
        except IntegrityError as e:
            raise ConflictException(f"Ticket {ticket.ticket_number} already exists") from e
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to store ticket {ticket.ticket_number}: {e}") from e
        return ticket

    async def save(self, ticket: Ticket, expected_version: int) -> Ticket:
        values = {
            "status": ticket.status,
            "priority": ticket.priority,
            "category": ticket.category,
            "department": ticket.department,
            "assigned_to": ticket.assigned_to,
            "escalated_to": ticket.escalation.escalated_to,
            "escalation_level": ticket.escalation.level,
            "response_deadline": ticket.sla.response.deadline,
            "resolution_deadline": ticket.sla.resolution.deadline,
            "first_response_at": ticket.first_response_at,
            "resolved_at": ticket.resolution.resolved_at,
            "is_deleted": ticket.is_deleted,
            "version": ticket.version,
            "updated_at": ticket.updated_at,
            "document": ticket_to_document(ticket),
        }
        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket.id, TicketModel.version == expected_version)
            .values(**values)
        )
        try:
            async with self._database.session() as session:
                result = await session.execute(stmt)
                updated = result.rowcount
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to save ticket {ticket.ticket_number}: {e}") from e

        if updated != 1:
            raise ConflictException(
                f"Ticket {ticket.ticket_number} was modified concurrently",
                {"expected_version": expected_version}
            )
        return ticket

    async def next_sequence(self, day: date) -> int:
        """Single upsert statement; the row lock serializes same-day creators."""
        stmt = (
            pg_insert(TicketSequenceModel)
            .values(day=day, last_value=1)
            .on_conflict_do_update(
                index_elements=[TicketSequenceModel.day],
                set_={"last_value": TicketSequenceModel.last_value + 1},
            )
            .returning(TicketSequenceModel.last_value)
        )
        try:
            async with self._database.session() as session:
                return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to allocate ticket number: {e}") from e

    async def list(self, query: TicketQuery) -> List[Ticket]:
        stmt = select(TicketModel)

        # Apply filters
        conditions = []
        if not query.include_deleted:
            conditions.append(TicketModel.is_deleted.is_(False))
        for name in ("status", "priority", "category", "department", "assigned_to", "created_by"):
            wanted = getattr(query, name)
            if wanted is not None:
                conditions.append(getattr(TicketModel, name) == wanted)
        if query.visible_to is not None:
            conditions.append(or_(
                TicketModel.created_by == query.visible_to,
                TicketModel.assigned_to == query.visible_to,
                TicketModel.escalated_to == query.visible_to,
            ))

        if conditions:
            stmt = stmt.where(and_(*conditions))

        # Order by created_at descending
        stmt = stmt.order_by(TicketModel.created_at.desc(), TicketModel.ticket_number.desc())
        stmt = stmt.limit(query.limit).offset(query.offset)

        try:
            async with self._database.session() as session:
                models = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to list tickets: {e}") from e
        return [ticket_from_document(m.document) for m in models]

    async def list_overdue(self, now: datetime, limit: int) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(
                TicketModel.is_deleted.is_(False),
                TicketModel.status.in_(ACTIVE_STATUSES),
                TicketModel.escalation_level < MAX_ESCALATION_LEVEL,
                or_(
                    TicketModel.resolution_deadline < now,
                    and_(TicketModel.first_response_at.is_(None), TicketModel.response_deadline < now),
                ),
            )
            .order_by(TicketModel.response_deadline, TicketModel.id)
            .limit(limit)
        )
        try:
            async with self._database.session() as session:
                models = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to scan overdue tickets: {e}") from e
        return [ticket_from_document(m.document) for m in models]


def _profile_from_model(model: TechnicianModel) -> StaffProfile:
    return StaffProfile(
        id=model.id,
        role=model.role,
        display_name=model.display_name,
        email=model.email,
        support_areas=list(model.support_areas or []),
        departments=list(model.departments or []),
        availability=model.availability,
        current_tickets=model.current_tickets,
        max_tickets=model.max_tickets,
        last_assigned_at=model.last_assigned_at,
        can_handle_escalations=model.can_handle_escalations,
    )


class SQLAlchemyStaffDirectory(IStaffDirectory):
    """
    Staff directory over the 'technicians' table.

    Load changes are single conditional UPDATE statements, so concurrent
    reservations can never push a technician past capacity.
    """

    def __init__(self, database: Database):
        self._database = database

    async def get_user(self, user_id: str) -> Optional[StaffProfile]:
        try:
            async with self._database.session() as session:
                model = await session.get(TechnicianModel, user_id)
                return _profile_from_model(model) if model else None
        except SQLAlchemyError as e:
            raise DependencyUnavailableException("staff_directory", str(e)) from e

    async def list_candidates(self, role: str) -> List[StaffProfile]:
        stmt = select(TechnicianModel).where(TechnicianModel.role == role)
        try:
            async with self._database.session() as session:
                models = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise DependencyUnavailableException("staff_directory", str(e)) from e
        return [_profile_from_model(m) for m in models]

    async def reserve(self, user_id: str, at: datetime) -> bool:
        stmt = (
            update(TechnicianModel)
            .where(
                TechnicianModel.id == user_id,
                TechnicianModel.availability == Availability.AVAILABLE,
                TechnicianModel.current_tickets < TechnicianModel.max_tickets,
            )
            .values(
                current_tickets=TechnicianModel.current_tickets + 1,
                last_assigned_at=at,
            )
        )
        try:
            async with self._database.session() as session:
                result = await session.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise DependencyUnavailableException("staff_directory", str(e)) from e

    async def adjust_load(self, user_id: str, delta: int) -> None:
        new_value = TechnicianModel.current_tickets + delta
        stmt = (
            update(TechnicianModel)
            .where(TechnicianModel.id == user_id)
            .values(current_tickets=case((new_value < 0, 0), else_=new_value))
        )
        try:
            async with self._database.session() as session:
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise DependencyUnavailableException("staff_directory", str(e)) from e

    async def seed(self, profiles: Iterable[StaffProfile]) -> int:
        """Insert or refresh directory records (load counters are left alone for existing rows)."""
        count = 0
        try:
            async with self._database.session() as session:
                for profile in profiles:
                    model = await session.get(TechnicianModel, profile.id)
                    if model is None:
                        model = TechnicianModel(id=profile.id, current_tickets=profile.current_tickets)
                        session.add(model)
                    model.role = profile.role
                    model.display_name = profile.display_name
                    model.email = profile.email
                    model.support_areas = list(profile.support_areas)
                    model.departments = list(profile.departments)
                    model.availability = profile.availability
                    model.max_tickets = profile.max_tickets
                    model.can_handle_escalations = profile.can_handle_escalations
                    count += 1
        except SQLAlchemyError as e:
            raise DependencyUnavailableException("staff_directory", str(e)) from e
        return count
