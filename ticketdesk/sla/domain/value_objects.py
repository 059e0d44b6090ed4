"""
SLA Value Objects
==================

Immutable value objects and pure calculations for the SLA domain.

The policy table maps priority to response/resolution targets in minutes;
the deadline calculator turns a priority and a creation instant into
deadlines and judges breaches. Neither touches storage or the clock.
"""

from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ticketdesk.config import (
    Priority, SLAType, SLAState,
    VALID_PRIORITIES, VALID_SLA_TYPES
)

DEFAULT_SLA_TARGETS: Dict[str, Dict[str, int]] = {
    Priority.CRITICAL: {SLAType.RESPONSE: 30, SLAType.RESOLUTION: 240},
    Priority.HIGH: {SLAType.RESPONSE: 120, SLAType.RESOLUTION: 1440},
    Priority.MEDIUM: {SLAType.RESPONSE: 480, SLAType.RESOLUTION: 4320},
    Priority.LOW: {SLAType.RESPONSE: 1440, SLAType.RESOLUTION: 10080},
}

# Most urgent first; targets must strictly grow along this order.
_URGENCY_ORDER = [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]


class SLAPolicy(BaseModel):
    """
    SLA policy table loaded from YAML.

    Missing priorities or clocks fall back to the documented defaults.
    A table is only accepted when, for both clocks, critical < high <
    medium < low, and for every priority the response target is shorter
    than the resolution target.
    """
    sla_targets: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: deepcopy(DEFAULT_SLA_TARGETS),
        description="SLA targets in minutes by priority"
    )
    at_risk_threshold_percent: int = Field(
        default=15,
        ge=0,
        le=100,
        description="Remaining-time percentage below which a clock is at risk"
    )

    @field_validator("sla_targets")
    @classmethod
    def fill_sla_targets(cls, v: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        """Fill missing priorities/clocks with defaults and reject unknown keys."""
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priorities in sla_targets: {sorted(unknown)}")

        filled: Dict[str, Dict[str, int]] = {}
        for priority in VALID_PRIORITIES:
            row = dict(v.get(priority, {}))
            for sla_type in VALID_SLA_TYPES:
                minutes = row.get(sla_type, DEFAULT_SLA_TARGETS[priority][sla_type])
                if minutes <= 0:
                    raise ValueError(f"{priority}.{sla_type} target must be positive")
                row[sla_type] = minutes
            filled[priority] = row
        return filled

    @model_validator(mode="after")
    def check_consistency(self) -> "SLAPolicy":
        for sla_type in VALID_SLA_TYPES:
            values = [self.sla_targets[p][sla_type] for p in _URGENCY_ORDER]
            if any(a >= b for a, b in zip(values, values[1:])):
                raise ValueError(
                    f"{sla_type} targets must be strictly ordered "
                    f"critical < high < medium < low, got {values}"
                )
        for priority in VALID_PRIORITIES:
            row = self.sla_targets[priority]
            if row[SLAType.RESPONSE] >= row[SLAType.RESOLUTION]:
                raise ValueError(f"{priority}: response target must be shorter than resolution target")
        return self

    def target_minutes(self, priority: str, sla_type: str) -> int:
        """Target in minutes for one clock of one priority."""
        if priority not in self.sla_targets:
            raise ValueError(f"Unknown priority: {priority}")
        return self.sla_targets[priority][sla_type]

    def describe(self, priority: str) -> str:
        """Human summary, e.g. ``Response: 30 minutes | Resolution: 4 hours``."""
        response = format_minutes(self.target_minutes(priority, SLAType.RESPONSE))
        resolution = format_minutes(self.target_minutes(priority, SLAType.RESOLUTION))
        return f"Response: {response} | Resolution: {resolution}"


@dataclass(frozen=True)
class SLADeadlines:
    """Deadlines fixed at creation from the priority then in effect."""
    priority: str
    created_at: datetime
    response_target: int
    response_deadline: datetime
    resolution_target: int
    resolution_deadline: datetime


class DeadlineCalculator:
    """
    Pure functions for SLA deadline and breach calculations.

    All inputs are aware UTC instants; arithmetic is done on instants so
    DST and local time never enter the result.
    """

    @staticmethod
    def compute_deadlines(priority: str, created_at: datetime, policy: SLAPolicy) -> SLADeadlines:
        response_target = policy.target_minutes(priority, SLAType.RESPONSE)
        resolution_target = policy.target_minutes(priority, SLAType.RESOLUTION)
        return SLADeadlines(
            priority=priority,
            created_at=created_at,
            response_target=response_target,
            response_deadline=created_at + timedelta(minutes=response_target),
            resolution_target=resolution_target,
            resolution_deadline=created_at + timedelta(minutes=resolution_target),
        )

    @staticmethod
    def elapsed_minutes(start: datetime, end: datetime) -> int:
        """Whole minutes between two instants, rounded to nearest."""
        return int(round((end - start).total_seconds() / 60))

    @staticmethod
    def is_breached(deadline: datetime, met_at: Optional[datetime], now: datetime) -> bool:
        """
        A clock is breached when it was met late, or when it is still
        running and ``now`` is past the deadline.
        """
        if met_at is not None:
            return met_at > deadline
        return now > deadline

    @staticmethod
    def calculate_status(
        created_at: datetime,
        deadline: datetime,
        current_time: datetime,
        met_at: Optional[datetime] = None,
        warning_threshold_percent: int = 15
    ) -> SLAState:
        """Current state of one SLA clock."""
        if met_at is not None:
            return SLAState.MET if met_at <= deadline else SLAState.BREACHED

        remaining = (deadline - current_time).total_seconds()
        total = (deadline - created_at).total_seconds()
        percentage = (remaining / total) * 100 if total > 0 else 0

        if remaining < 0:
            return SLAState.BREACHED
        if percentage <= warning_threshold_percent:
            return SLAState.AT_RISK
        return SLAState.ON_TRACK

    @staticmethod
    def calculate_remaining_metrics(
        created_at: datetime,
        deadline: datetime,
        current_time: datetime,
        met_at: Optional[datetime] = None
    ) -> tuple[float, float]:
        """
        Remaining time for a clock.

        Returns:
            Tuple of (remaining_seconds, percentage_remaining); both zero
            once the clock has been met.
        """
        if met_at is not None:
            return 0.0, 0.0

        remaining = (deadline - current_time).total_seconds()
        total = (deadline - created_at).total_seconds()
        percentage = max(0.0, min(100.0, (remaining / total) * 100)) if total > 0 else 0.0
        return max(0.0, remaining), percentage


def format_minutes(minutes: int) -> str:
    """Format a target for display: ``30 minutes``, ``2 hours``, ``3 days``."""
    def plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'' if n == 1 else 's'}"

    if minutes < 60:
        return plural(minutes, "minute")
    if minutes < 1440:
        hours, rest = divmod(minutes, 60)
        return plural(hours, "hour") + (f" {plural(rest, 'minute')}" if rest else "")
    days, rest = divmod(minutes, 1440)
    hours = rest // 60
    return plural(days, "day") + (f" {plural(hours, 'hour')}" if hours else "")
