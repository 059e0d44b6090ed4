"""
Audit Trail Recorder
====================

Appends one immutable entry per mutating operation and rebuilds the
audited fields of a ticket as they stood at any past instant.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ticketdesk.tickets.domain import AuditEntry, Ticket
from ticketdesk.tickets.domain.rules import audit_snapshot, diff_snapshots


class AuditTrailRecorder:
    """
    Records ``{action, performed_by, timestamp, changes, note}`` entries
    on the ticket aggregate itself, so the entry commits together with the
    change it describes.
    """

    def __init__(self, id_factory: Optional[Callable[[], str]] = None):
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    @staticmethod
    def snapshot(ticket: Ticket) -> Dict[str, Any]:
        return audit_snapshot(ticket)

    def record(
        self,
        ticket: Ticket,
        before: Optional[Dict[str, Any]],
        action: str,
        performed_by: str,
        at: datetime,
        note: Optional[str] = None
    ) -> AuditEntry:
        """
        Append an entry for an operation whose pre-state was ``before``.

        ``before`` is None for creation, in which case every audited field
        appears as new.
        """
        entry = AuditEntry(
            id=self._id_factory(),
            action=action,
            performed_by=performed_by,
            timestamp=at,
            changes=diff_snapshots(before, audit_snapshot(ticket)),
            note=note,
        )
        ticket.audit_trail.append(entry)
        return entry

    @staticmethod
    def as_of(ticket: Ticket, at: datetime) -> Optional[Dict[str, Any]]:
        """
        Audited fields as they stood at ``at``.

        Starts from the current values and rolls back every entry recorded
        after ``at``. Returns None when the ticket did not exist yet.
        """
        if at < ticket.created_at:
            return None

        state = audit_snapshot(ticket)
        for entry in reversed(ticket.audit_trail):
            if entry.timestamp <= at:
                break
            for field_name, change in entry.changes.items():
                state[field_name] = change.get("old")
        return state
