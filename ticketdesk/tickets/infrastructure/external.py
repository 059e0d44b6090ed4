"""
Tickets External Service Integrations
=====================================

Notification dispatchers:
- WebhookNotificationDispatcher: JSON POST per event, sent from a
  background task with retry and a circuit breaker
- LoggingNotificationDispatcher: structured log line per event
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx

from ticketdesk.shared.infrastructure.logging import get_logger
from ticketdesk.tickets.application.interfaces import INotificationDispatcher

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing endpoint for a while.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failed deliveries, reject everything for M seconds
    - HALF_OPEN: After the timeout, let a trial request through again
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


def build_event(event_type: str, ticket_snapshot: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """Wire format of a lifecycle event."""
    return {
        "id": str(uuid.uuid4()),
        "type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "ticket": ticket_snapshot,
        "context": {k: v for k, v in context.items() if v is not None},
    }


class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Webhook client with circuit breaker and retry logic.

    ``emit`` only schedules delivery; the caller's transition has already
    committed and is never affected by how delivery goes.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client
        self._tasks: Set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def emit(self, event_type: str, ticket_snapshot: Dict[str, Any], context: Dict[str, Any]) -> None:
        event = build_event(event_type, ticket_snapshot, context)
        task = asyncio.get_running_loop().create_task(self.deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def deliver(self, event: Dict[str, Any]) -> bool:
        """
        POST one event.

        Returns:
            True if delivered, False otherwise
        """
        ticket_id = event["ticket"].get("id")

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, dropping notification",
                extra={"ticket_id": ticket_id, "event_type": event["type"]}
            )
            return False

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=event)

                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.debug(
                        "Notification delivered",
                        extra={"ticket_id": ticket_id, "event_type": event["type"]}
                    )
                    return True

                logger.warning(
                    "Webhook returned error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )

            except httpx.HTTPError as e:
                logger.error(
                    "Notification delivery failed",
                    extra={
                        "error": str(e),
                        "attempt": attempt + 1,
                        "ticket_id": ticket_id
                    }
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Cancel undelivered events and close the HTTP client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LoggingNotificationDispatcher(INotificationDispatcher):
    """Default when no webhook is configured: events go to the log."""

    def emit(self, event_type: str, ticket_snapshot: Dict[str, Any], context: Dict[str, Any]) -> None:
        logger.info(
            "Ticket event",
            extra={
                "event_type": event_type,
                "ticket_id": ticket_snapshot.get("id"),
                "ticket_number": ticket_snapshot.get("ticket_number"),
                "status": ticket_snapshot.get("status"),
                "actor_id": context.get("actor_id"),
            }
        )
