from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from tracker.dependencies import tickets as ticket_deps
from tracker.dependencies.auth import Role, User
from tracker.main import create_app
from tracker.tickets.memory import InMemoryTicketStore
from tracker.tickets.models import SweepFailure, SweepReport
from tracker.tickets.service import TicketService

RAN_AT = datetime(2024, 3, 8, 2, 0, tzinfo=timezone.utc)


@pytest.fixture
def cron_client():
    app = create_app()
    service = AsyncMock()
    scheduler = User("system", "System", Role.SYSTEM)

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[ticket_deps.require_system] = lambda: scheduler

    client = TestClient(app)
    try:
        yield client, service
    finally:
        app.dependency_overrides.clear()


def test_auto_close_endpoint_reports_summary(cron_client):
    client, service = cron_client
    report = SweepReport(
        ran_at=RAN_AT,
        closed_ticket_keys=["CSUP-S001"],
        failures=[SweepFailure("ticket-2", "CSUP-S002", "TicketConflictError", "lost the race")],
    )
    service.run_auto_close_sweep = AsyncMock(return_value=report)

    response = client.post("/cron/auto-close-tickets")

    assert response.status_code == 200
    body = response.json()
    assert body["closed_count"] == 1
    assert body["closed_tickets"] == ["CSUP-S001"]
    assert body["success"] is False
    assert body["failures"][0]["issue_key"] == "CSUP-S002"


def test_auto_close_endpoint_with_nothing_to_do(cron_client):
    client, service = cron_client
    service.run_auto_close_sweep = AsyncMock(return_value=SweepReport(ran_at=RAN_AT))

    response = client.post("/cron/auto-close-tickets")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["message"] == "No tickets to auto-close"


def test_auto_close_endpoint_surfaces_store_failure(cron_client):
    client, service = cron_client
    service.run_auto_close_sweep = AsyncMock(side_effect=OSError("connection reset"))

    response = client.post("/cron/auto-close-tickets")

    assert response.status_code == 500


def test_cron_health_is_public():
    client = TestClient(create_app())

    response = client.get("/cron/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.parametrize(("token", "status_code"), [("customer-token", 403), ("agent-token", 403), ("scheduler-token", 200)])
def test_auto_close_endpoint_requires_scheduler_or_admin(token, status_code):
    app = create_app()
    app.state.ticket_service = TicketService.build(InMemoryTicketStore())
    client = TestClient(app)

    response = client.post("/cron/auto-close-tickets", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == status_code


def test_metrics_endpoint_is_admin_only():
    client = TestClient(create_app())

    denied = client.get("/metrics", headers={"Authorization": "Bearer agent-token"})
    allowed = client.get("/metrics", headers={"Authorization": "Bearer admin-token"})

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["ticket_transitions_total"]["type"] == "counter"


def test_ping():
    client = TestClient(create_app())

    assert client.get("/ping").json() == {"status": "ok"}
