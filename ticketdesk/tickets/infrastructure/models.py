"""
Tickets Infrastructure Models
=============================

SQLAlchemy ORM models for the tickets module.

A ticket is stored as a JSON document (the whole aggregate) next to the
scalar columns that queries filter and sort on. Those columns are
rewritten from the aggregate on every save.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ticketdesk.config import Availability, TicketStatus
from ticketdesk.infrastructure.database import Base


class TicketModel(Base):
    """
    Database model for the Ticket aggregate.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Business identifier
    ticket_number: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)

    # Query columns
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=TicketStatus.OPEN, index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Full aggregate
    document: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_tickets_overdue_scan", "is_deleted", "status", "resolution_deadline"),
    )


class TechnicianModel(Base):
    """
    Staff directory record.

    Maps to the 'technicians' table; requesters live here too, with no
    support areas.
    """
    __tablename__ = "technicians"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    support_areas: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    departments: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    availability: Mapped[str] = mapped_column(String(16), nullable=False, default=Availability.AVAILABLE)
    current_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    last_assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    can_handle_escalations: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class TicketSequenceModel(Base):
    """
    Daily ticket number counter.

    Maps to the 'ticket_sequences' table; one row per UTC day.
    """
    __tablename__ = "ticket_sequences"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
