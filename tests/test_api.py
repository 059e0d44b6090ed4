"""HTTP tests against the FastAPI app wired to in-memory services."""

import pytest
from fastapi.testclient import TestClient

from ticketdesk.config import Settings
from ticketdesk.core import DependencyUnavailableException, RepositoryException
from ticketdesk.main import create_app

from tests.conftest import ticket_payload


def as_user(user_id: str) -> dict:
    return {"X-Actor-Id": user_id}


@pytest.fixture
def client(service, engine, clock):
    app = create_app(
        Settings(storage_backend="memory", escalation_sweep_interval=0),
        use_lifespan=False
    )
    app.state.clock = clock
    app.state.lifecycle_service = service
    app.state.escalation_engine = engine
    app.state.scheduler = None
    app.state.database = None

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def created(client) -> dict:
    response = client.post("/tickets", json=ticket_payload(), headers=as_user("student-1"))
    assert response.status_code == 201
    return response.json()


class TestTicketEndpoints:
    def test_create(self, created):
        assert created["ticket_number"] == "TKT-20240304-0001"
        assert created["status"] == "assigned"
        assert created["assigned_to"] == "tech-hw"
        assert created["sla"]["response"]["target_minutes"] == 480
        assert created["is_overdue"] is False

    def test_create_reports_every_invalid_field(self, client):
        response = client.post(
            "/tickets",
            json={"title": "Hi", "description": "short", "category": "furniture"},
            headers=as_user("student-1"),
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {"title", "description", "category"} <= {e["field"] for e in error["errors"]}

    def test_missing_actor_header(self, client):
        response = client.get("/tickets")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_lookup_by_number(self, client, created):
        response = client.get(f"/tickets/{created['ticket_number']}", headers=as_user("tech-hw"))

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_unknown_ticket(self, client):
        response = client.get("/tickets/TKT-20240304-9999", headers=as_user("admin-1"))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_invalid_transition_leaves_ticket_untouched(self, client, created):
        response = client.post(
            f"/tickets/{created['id']}/status",
            json={"status": "closed"},
            headers=as_user("tech-hw"),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "INVALID_TRANSITION"
        assert body["error"]["details"] == {"current_status": "assigned", "requested_status": "closed"}

        current = client.get(f"/tickets/{created['id']}", headers=as_user("tech-hw")).json()
        assert current["status"] == "assigned"
        assert current["version"] == created["version"]

    def test_other_requester_cannot_view(self, client, created):
        response = client.get(f"/tickets/{created['id']}", headers=as_user("student-2"))
        assert response.status_code == 403

    def test_internal_comments_hidden_from_requester(self, client, created):
        ref = created["id"]
        internal = client.post(
            f"/tickets/{ref}/comments",
            json={"content": "Motherboard is likely dead", "internal": True},
            headers=as_user("tech-hw"),
        )
        public = client.post(
            f"/tickets/{ref}/comments",
            json={"content": "Ordering a replacement part"},
            headers=as_user("tech-hw"),
        )
        assert internal.status_code == 201
        assert public.status_code == 201

        requester_view = client.get(f"/tickets/{ref}", headers=as_user("student-1")).json()
        staff_view = client.get(f"/tickets/{ref}", headers=as_user("tech-hw")).json()

        assert [c["content"] for c in requester_view["comments"]] == ["Ordering a replacement part"]
        assert len(staff_view["comments"]) == 2
        assert staff_view["first_response_at"] is not None

    def test_resolve_then_rate(self, client, created):
        ref = created["id"]
        resolved = client.post(
            f"/tickets/{ref}/resolve", json={"resolution": "Replaced the motherboard"},
            headers=as_user("tech-hw"),
        )
        rated = client.post(
            f"/tickets/{ref}/rating", json={"rating": 5, "comment": "Quick fix"},
            headers=as_user("student-1"),
        )

        assert resolved.json()["status"] == "resolved"
        assert rated.status_code == 200
        assert rated.json()["resolution"]["satisfaction_rating"] == 5

    def test_list_is_scoped_to_caller(self, client, created):
        client.post("/tickets", json=ticket_payload(category="phone"), headers=as_user("student-2"))

        mine = client.get("/tickets", headers=as_user("student-1")).json()
        everything = client.get("/tickets", headers=as_user("admin-1")).json()

        assert [t["id"] for t in mine["items"]] == [created["id"]]
        assert everything["count"] == 2

    def test_sla_and_audit(self, client, created):
        sla = client.get(f"/tickets/{created['id']}/sla", headers=as_user("student-1"))
        audit = client.get(f"/tickets/{created['id']}/audit", headers=as_user("tech-hw"))
        denied = client.get(f"/tickets/{created['id']}/audit", headers=as_user("student-1"))

        assert sla.status_code == 200
        assert sla.json()["response"]["state"] == "on_track"
        assert audit.json()["entries"][0]["action"] == "CREATED"
        assert denied.status_code == 403

    def test_delete_is_admin_only(self, client, created):
        assert client.delete(f"/tickets/{created['id']}", headers=as_user("student-1")).status_code == 403
        assert client.delete(f"/tickets/{created['id']}", headers=as_user("admin-1")).status_code == 200
        assert client.get(f"/tickets/{created['id']}", headers=as_user("admin-1")).status_code == 404


class TestEscalationEndpoints:
    def test_escalate(self, client, created):
        response = client.post(
            f"/tickets/{created['id']}/escalate", json={"reason": "Exam tomorrow"},
            headers=as_user("admin-1"),
        )

        body = response.json()
        assert body["escalation"]["level"] == 1
        assert body["is_escalated"] is True
        assert body["assigned_to"] == "tech-esc"

    def test_sweep_is_admin_only(self, client, created):
        assert client.post("/escalations/sweep", headers=as_user("tech-hw")).status_code == 403

        response = client.post("/escalations/sweep", headers=as_user("admin-1"))

        assert response.status_code == 200
        assert response.json()["scanned"] == 0


class TestPlumbing:
    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["storage_backend"] == "memory"
        assert body["checks"]["database"] == "not_used"
        assert body["checks"]["escalation_scheduler"] == "stopped"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/tickets", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json()["correlation_id"] == "abc-123"

    def test_storage_failure_hides_driver_text(self, client, repository, monkeypatch):
        async def broken(ref):
            raise RepositoryException(
                "Failed to load ticket abc: (OperationalError) password=hunter2\n"
                "[SQL: SELECT document FROM tickets WHERE id=%(id)s]"
            )

        monkeypatch.setattr(repository, "get", broken)
        response = client.get("/tickets/abc", headers=as_user("admin-1"))

        assert response.status_code == 500
        assert response.json()["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
        assert "SELECT" not in response.text
        assert "hunter2" not in response.text
        assert response.json()["correlation_id"] == response.headers["X-Correlation-ID"]

    def test_directory_outage_is_a_generic_503(self, client, directory, monkeypatch):
        async def unreachable(*args, **kwargs):
            raise DependencyUnavailableException("staff_directory", "connection refused to 10.0.0.5")

        monkeypatch.setattr(directory, "get_user", unreachable)
        response = client.get("/tickets", headers=as_user("admin-1"))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "DEPENDENCY_UNAVAILABLE"
        assert "10.0.0.5" not in response.text
