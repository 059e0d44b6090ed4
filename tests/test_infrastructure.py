"""Tests for storage helpers, the assignment matcher, locks and webhook delivery."""

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

from ticketdesk.config import Role, Availability
from ticketdesk.core import ConfigurationException, ConflictException
from ticketdesk.shared.infrastructure.locks import KeyedLockRegistry
from ticketdesk.tickets.application import AssignmentMatcher, rank_candidates
from ticketdesk.tickets.domain import StaffProfile
from ticketdesk.tickets.infrastructure import (
    InMemoryStaffDirectory,
    WebhookNotificationDispatcher,
    load_staff_profiles,
)
from ticketdesk.tickets.infrastructure.external import CircuitBreaker, CircuitState
from ticketdesk.tickets.infrastructure.repositories import ticket_to_document, ticket_from_document

from tests.conftest import START, ticket_payload


def technician(tech_id: str, **fields) -> StaffProfile:
    return StaffProfile(id=tech_id, role=Role.TECHNICIAN, support_areas=["hardware"], **fields)


class TestStaffDirectory:
    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "staff.yaml"
        path.write_text(
            "staff:\n"
            "  - id: tech-1\n"
            "    role: technician\n"
            "    support_areas: [network]\n"
            "    max_tickets: 3\n"
            "  - id: student-9\n"
            "    role: student\n"
        )

        profiles = load_staff_profiles(path)

        assert [p.id for p in profiles] == ["tech-1", "student-9"]
        assert profiles[0].max_tickets == 3
        assert profiles[1].support_areas == []

    def test_invalid_yaml_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "staff.yaml"
        path.write_text("staff:\n  - role: technician\n")
        with pytest.raises(ConfigurationException):
            load_staff_profiles(path)

    def test_unknown_vocabulary_is_reported(self, tmp_path):
        path = tmp_path / "staff.yaml"
        path.write_text(
            "staff:\n"
            "  - id: tech-1\n"
            "    role: janitor\n"
            "    support_areas: [plumbing]\n"
        )
        with pytest.raises(ConfigurationException) as exc_info:
            load_staff_profiles(path)

        assert len(exc_info.value.details["problems"]) == 2

    def test_example_file_loads(self):
        profiles = load_staff_profiles(Path(__file__).parent.parent / "staff_directory.example.yaml")
        assert {"admin-1", "tech-hw-1", "student-1"} <= {p.id for p in profiles}

    @pytest.mark.asyncio
    async def test_reserve_respects_capacity_and_availability(self):
        directory = InMemoryStaffDirectory([
            technician("tech-1", max_tickets=1),
            technician("tech-2", availability=Availability.BUSY),
        ])

        assert await directory.reserve("tech-1", START) is True
        assert await directory.reserve("tech-1", START) is False
        assert await directory.reserve("tech-2", START) is False
        assert await directory.reserve("nobody", START) is False

        profile = await directory.get_user("tech-1")
        assert profile.current_tickets == 1
        assert profile.last_assigned_at == START

    @pytest.mark.asyncio
    async def test_load_never_goes_negative(self):
        directory = InMemoryStaffDirectory([technician("tech-1")])
        await directory.adjust_load("tech-1", -1)
        assert (await directory.get_user("tech-1")).current_tickets == 0

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        directory = InMemoryStaffDirectory([technician("tech-1")])
        profile = await directory.get_user("tech-1")
        profile.current_tickets = 99
        assert (await directory.get_user("tech-1")).current_tickets == 0


class TestTicketStorage:
    @pytest.mark.asyncio
    async def test_document_keeps_nested_records(self, service):
        ticket = await service.create_ticket(
            ticket_payload(location={"building": "Library", "room": "2.14"}, tags=["wifi"]),
            "student-1"
        )
        await service.add_comment(ticket.id, "tech-hw", "On my way")
        stored = await service.get_ticket(ticket.id, "admin-1")

        document = ticket_to_document(stored)
        json.dumps(document)
        restored = ticket_from_document(document)

        assert restored == stored
        assert restored.sla.response.deadline.tzinfo is not None

    @pytest.mark.asyncio
    async def test_stale_save_is_a_conflict(self, service, repository):
        ticket = await service.create_ticket(ticket_payload(), "student-1")
        first = await repository.get(ticket.id)
        second = await repository.get(ticket.id)

        first.title = "Laptop will not boot at all"
        first.version += 1
        await repository.save(first, ticket.version)

        second.version += 1
        with pytest.raises(ConflictException):
            await repository.save(second, ticket.version)


class TestAssignmentMatcher:
    def test_ranking(self):
        ranked = rank_candidates([
            technician("c", current_tickets=1),
            technician("b", current_tickets=0, last_assigned_at=START),
            technician("a", current_tickets=0, last_assigned_at=START + timedelta(hours=1)),
            technician("d", current_tickets=0),
        ])
        assert [p.id for p in ranked] == ["d", "b", "a", "c"]

    def test_naive_assignment_times_are_read_as_utc(self):
        ranked = rank_candidates([
            technician("aware", last_assigned_at=START),
            technician("naive", last_assigned_at=(START - timedelta(minutes=1)).replace(tzinfo=None)),
        ])
        assert [p.id for p in ranked] == ["naive", "aware"]

    @pytest.mark.asyncio
    async def test_department_filter(self, clock):
        directory = InMemoryStaffDirectory([
            technician("tech-eng", departments=["Engineering"]),
            technician("tech-any", current_tickets=3),
        ])
        matcher = AssignmentMatcher(directory, clock)

        assert (await matcher.find_available_technician("hardware", "Engineering")).id == "tech-eng"
        assert (await matcher.find_available_technician("hardware", "Library")).id == "tech-any"
        assert await matcher.find_available_technician("network") is None

    @pytest.mark.asyncio
    async def test_last_slot_goes_to_one_claimant(self, clock):
        directory = InMemoryStaffDirectory([technician("tech-1", max_tickets=1)])
        matcher = AssignmentMatcher(directory, clock)

        results = await asyncio.gather(*(matcher.claim("hardware") for _ in range(5)))

        assert [r.id for r in results if r] == ["tech-1"]
        assert (await directory.get_user("tech-1")).current_tickets == 1


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_serializes_same_key(self):
        registry = KeyedLockRegistry()
        order = []

        async def worker(name):
            async with registry.hold("ticket-1"):
                assert registry.is_held("ticket-1")
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(registry) == 0
        assert not registry.is_held("ticket-1")

    @pytest.mark.asyncio
    async def test_closed_registry_refuses_holders(self):
        registry = KeyedLockRegistry()
        registry.close()
        with pytest.raises(RuntimeError):
            async with registry.hold("ticket-1"):
                pass


class TestCircuitBreaker:
    def test_opens_after_threshold_and_recovers(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.0)
        breaker.record_failure()
        assert breaker.allow_request()

        breaker.record_failure()
        # Zero timeout moves straight on to a trial request.
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_stays_open_within_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()


class TestWebhookDispatcher:
    EVENT = {"type": "ticket.created", "ticket": {"id": "t-1"}, "context": {}}

    @pytest.mark.asyncio
    async def test_delivers_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = WebhookNotificationDispatcher("https://hooks.example.edu/tickets", http_client=client)

        assert await dispatcher.deliver(self.EVENT) is True
        assert received == [self.EVENT]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_failures_open_the_circuit(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0)
        dispatcher = WebhookNotificationDispatcher(
            "https://hooks.example.edu/tickets",
            max_retries=1,
            circuit_breaker=breaker,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        assert await dispatcher.deliver(self.EVENT) is False
        assert await dispatcher.deliver(self.EVENT) is False
        assert len(calls) == 1
        assert breaker.state == CircuitState.OPEN
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_delivery(self):
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(200)

        dispatcher = WebhookNotificationDispatcher(
            "https://hooks.example.edu/tickets",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        dispatcher.emit("ticket.created", {"id": "t-1"}, {"actor_id": "student-1", "note": None})
        await asyncio.sleep(0)
        assert dispatcher.pending == 1

        await dispatcher.close()
        assert dispatcher.pending == 0
