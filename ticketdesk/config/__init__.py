"""
Configuration Module
====================

Application settings and the fixed help desk vocabulary.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="ticketdesk", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Storage ==========
    storage_backend: str = Field(
        default="database",
        description="'database' (SQLAlchemy) or 'memory' (in-process, non-durable)"
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)
    staff_directory_path: Optional[Path] = Field(
        default=None,
        description="YAML file seeding the staff directory"
    )

    # ========== SLA & Escalation ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA policy YAML file"
    )
    escalation_sweep_interval: int = Field(
        default=60,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )
    escalation_sweep_budget_seconds: float = Field(
        default=30.0,
        description="Wall-clock budget for a single sweep",
        gt=0
    )
    escalation_sweep_concurrency: int = Field(
        default=8,
        description="Tickets escalated in parallel during a sweep",
        ge=1
    )
    escalation_sweep_batch_size: int = Field(
        default=500,
        description="Maximum overdue tickets scanned per sweep",
        ge=1
    )
    recompute_sla_on_escalation: bool = Field(
        default=False,
        description="Tighten unmet SLA deadlines when escalation raises priority"
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving ticket lifecycle events"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        allowed = {"database", "memory"}
        if v not in allowed:
            raise ValueError(f"storage_backend must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Category(str):
    """Ticket categories."""
    HARDWARE = "hardware"
    SOFTWARE = "software"
    NETWORK = "network"
    EMAIL = "email"
    ACCOUNT_ACCESS = "account_access"
    PRINTER = "printer"
    PHONE = "phone"
    OTHER = "other"


class Priority(str):
    """Ticket priority levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TicketStatus(str):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    CANCELLED = "cancelled"


class Role(str):
    """Roles known to the staff directory."""
    STUDENT = "student"
    STAFF = "staff"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class Availability(str):
    """Technician availability."""
    AVAILABLE = "available"
    BUSY = "busy"
    AWAY = "away"
    OFFLINE = "offline"


class SLAType(str):
    """Types of SLA clocks."""
    RESPONSE = "response"
    RESOLUTION = "resolution"


class SLAState(str):
    """SLA status states."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    MET = "met"


class AuditAction(str):
    """Audit trail actions."""
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"
    COMMENTED = "COMMENTED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    REOPENED = "REOPENED"
    RATED = "RATED"
    ATTACHED = "ATTACHED"
    DELETED = "DELETED"


class EventType(str):
    """Lifecycle events handed to the notification dispatcher."""
    CREATED = "ticket.created"
    ASSIGNED = "ticket.assigned"
    STATUS_CHANGED = "ticket.status_changed"
    COMMENTED = "ticket.commented"
    ESCALATED = "ticket.escalated"
    RESOLVED = "ticket.resolved"
    REOPENED = "ticket.reopened"
    RATED = "ticket.rated"
    DELETED = "ticket.deleted"


SYSTEM_ACTOR_ID = "system"
MAX_ESCALATION_LEVEL = 3
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
TICKET_NUMBER_PREFIX = "TKT"


# ========== Lists for validation ==========

VALID_CATEGORIES = [
    Category.HARDWARE, Category.SOFTWARE, Category.NETWORK, Category.EMAIL,
    Category.ACCOUNT_ACCESS, Category.PRINTER, Category.PHONE, Category.OTHER
]
VALID_PRIORITIES = [
    Priority.CRITICAL, Priority.HIGH,
    Priority.MEDIUM, Priority.LOW
]
# Escalation ladder, lowest first; index is the escalation level that raises
# a ticket to at least that priority.
PRIORITY_LADDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]
VALID_STATUSES = [
    TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS,
    TicketStatus.PENDING, TicketStatus.RESOLVED, TicketStatus.CLOSED,
    TicketStatus.REOPENED, TicketStatus.CANCELLED
]
ACTIVE_STATUSES = [
    TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS,
    TicketStatus.PENDING, TicketStatus.REOPENED
]
VALID_ROLES = [Role.STUDENT, Role.STAFF, Role.TECHNICIAN, Role.ADMIN]
STAFF_ROLES = [Role.TECHNICIAN, Role.ADMIN]
VALID_AVAILABILITY = [
    Availability.AVAILABLE, Availability.BUSY,
    Availability.AWAY, Availability.OFFLINE
]
VALID_SLA_TYPES = [SLAType.RESPONSE, SLAType.RESOLUTION]
