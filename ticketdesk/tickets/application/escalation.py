"""
Escalation Engine
=================

Sweeps overdue tickets and escalates each one through the lifecycle
service.

Tickets are processed concurrently up to a fixed limit, each under its
own ticket lock. One failing ticket is reported and the rest carry on.
The sweep as a whole has a wall-clock budget; whatever is unfinished
when it runs out is cancelled and reported as ``SWEEP_TIMEOUT``.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ticketdesk.shared.infrastructure.clock import Clock
from ticketdesk.shared.infrastructure.logging import get_logger, log_latency
from ticketdesk.tickets.application.interfaces import ITicketRepository
from ticketdesk.tickets.application.services import TicketLifecycleService

logger = get_logger(__name__)

SWEEP_TIMEOUT = "SWEEP_TIMEOUT"


@dataclass
class SweepError:
    ticket_id: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"ticket_id": self.ticket_id, "code": self.code, "message": self.message}


@dataclass
class SweepResult:
    """Outcome of one sweep."""
    started_at: datetime
    scanned: int = 0
    escalated: int = 0
    skipped: int = 0
    errors: List[SweepError] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "escalated": self.escalated,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }


class EscalationEngine:
    """Runs escalation sweeps over the ticket repository."""

    def __init__(
        self,
        repository: ITicketRepository,
        lifecycle: TicketLifecycleService,
        clock: Clock,
        concurrency: int = 8,
        budget_seconds: float = 30.0,
        batch_size: int = 500
    ):
        self._repository = repository
        self._lifecycle = lifecycle
        self._clock = clock
        self._concurrency = concurrency
        self._budget_seconds = budget_seconds
        self._batch_size = batch_size
        # Ticket ids being escalated by any sweep in this process.
        self._in_flight: Set[str] = set()

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Escalate every eligible overdue ticket once.

        Args:
            now: Evaluation instant; defaults to the clock
        """
        now = now or self._clock.now()
        result = SweepResult(started_at=now)
        start = time.perf_counter()

        with log_latency(logger, "escalation_sweep"):
            tickets = await self._repository.list_overdue(now, self._batch_size)
            result.scanned = len(tickets)

            semaphore = asyncio.Semaphore(self._concurrency)
            tasks = {
                asyncio.create_task(self._process(ticket.id, now, semaphore)): ticket.id
                for ticket in tickets
            }

            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=self._budget_seconds)
            else:
                done, pending = set(), set()

            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            for task, ticket_id in tasks.items():
                if task in pending:
                    result.errors.append(SweepError(
                        ticket_id, SWEEP_TIMEOUT, "Not processed within the sweep budget"
                    ))
                    continue
                error = task.exception()
                if error is not None:
                    result.errors.append(SweepError(
                        ticket_id, getattr(error, "code", "INTERNAL_ERROR"), str(error)
                    ))
                    logger.error(
                        "Escalation failed for ticket",
                        extra={"ticket_id": ticket_id, "error": str(error)},
                        exc_info=error
                    )
                elif task.result():
                    result.escalated += 1
                else:
                    result.skipped += 1

        result.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Escalation sweep finished",
            extra={
                "scanned": result.scanned,
                "escalated": result.escalated,
                "skipped": result.skipped,
                "errors": len(result.errors),
            }
        )
        return result

    async def _process(self, ticket_id: str, now: datetime, semaphore: asyncio.Semaphore) -> bool:
        """True when the ticket was escalated, False when skipped."""
        if ticket_id in self._in_flight:
            return False
        self._in_flight.add(ticket_id)
        try:
            async with semaphore:
                return await self._lifecycle.auto_escalate(ticket_id, now) is not None
        finally:
            self._in_flight.discard(ticket_id)

    async def scheduled_sweep(self) -> None:
        """Scheduler entry point; a failed sweep is logged and the next one runs as usual."""
        try:
            await self.run_sweep()
        except Exception:
            logger.exception("Scheduled escalation sweep failed")
