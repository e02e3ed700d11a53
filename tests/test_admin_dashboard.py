"""Tests for the admin console dashboard endpoints."""
from __future__ import annotations

import importlib.util
import inspect
import sys
from pathlib import Path

import pytest

try:  # pragma: no cover - optional dependency in minimal test environments
    from fastapi.testclient import TestClient
except ImportError:  # pragma: no cover
    pytest.skip("fastapi not installed", allow_module_level=True)

from conftest import days_ago, hours_ago

from quest_ops.backend import BackendClient, set_backend
from quest_ops.cache import QueryCache, set_query_cache


def load_dashboard_module():
    spec = importlib.util.spec_from_file_location(
        "quest_ops_admin_dashboard",
        Path(__file__).resolve().parent.parent / "ops" / "admin-dashboard" / "app.py",
    )
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    loader = spec.loader
    assert loader is not None
    loader.exec_module(module)  # type: ignore[assignment]
    return module


@pytest.fixture
def dashboard(service, backend):
    set_backend(BackendClient(backend))
    set_query_cache(QueryCache())
    module = load_dashboard_module()
    module.service = service
    try:
        yield module
    finally:
        sys.modules.pop("quest_ops_admin_dashboard", None)
        set_backend(None)
        set_query_cache(None)


@pytest.fixture
def client(dashboard):
    return TestClient(dashboard.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.text == "admin-dashboard: ok"


def test_index_renders_panels_and_errors(client, backend):
    backend.tables["quests"] = [
        {"id": "q1", "title": "Harbour Walk", "status": "revoked", "revoked_at": days_ago(1),
         "revoked_reason": "Unsafe"}
    ]
    backend.failing_tables.add("support_tickets")

    response = client.get("/")

    assert response.status_code == 200
    assert "Quest Ops Console" in response.text
    assert "Quest recently revoked" in response.text
    assert "Failed to load: support_tickets unavailable" in response.text


def test_flow_api(client, backend):
    backend.tables["quest_signups"] = [
        {"id": "p1", "status": "pending", "signed_up_at": hours_ago(60)}
    ]

    payload = client.get("/api/flow").json()

    buckets = payload["signups"]["data"]["buckets"]
    assert buckets[0]["name"] == "pendingTooLong"
    assert buckets[0]["items"][0]["id"] == "p1"
    assert payload["squads"]["error"] is None


def test_unknown_panel_is_404(client):
    assert client.get("/api/flow/nope").status_code == 404


def test_panel_error_is_reported_in_body(client, backend):
    backend.failing_tables.add("quest_squads")

    response = client.get("/api/flow/squads")

    assert response.status_code == 200
    assert response.json()["error"] == "quest_squads unavailable"


def test_instance_attention_unknown_is_404(client, backend):
    backend.tables["quest_instances"] = []
    assert client.get("/api/instances/ghost/attention").status_code == 404


def test_backend_failure_on_read_is_502(client, backend):
    backend.failing_tables.add("quest_instances")
    assert client.get("/api/instances/i1/attention").status_code == 502


def test_transition_endpoint_and_conflict(client, backend):
    backend.tables["quest_instances"] = [
        {"id": "i1", "status": "recruiting", "title": "Sunrise Hike"},
        {"id": "i2", "status": "archived", "title": "Old"},
    ]

    ok = client.post("/api/instances/i1/transition", json={"status": "locked"})
    conflict = client.post("/api/instances/i2/transition", json={"status": "live"})
    missing = client.post("/api/instances/i9/transition", json={"status": "live"})

    assert ok.status_code == 200
    assert ok.json()["status"] == "locked"
    assert ok.json()["previous_status"] == "recruiting"
    assert conflict.status_code == 409
    assert missing.status_code == 404


def test_invalid_status_is_422(client):
    response = client.post("/api/instances/i1/transition", json={"status": "exploded"})
    assert response.status_code == 422


def test_signup_override_requires_reason(client):
    response = client.post("/api/signups/s1/status", json={"status": "confirmed", "reason": ""})
    assert response.status_code == 422


def test_squad_approval_endpoint(client, backend):
    backend.tables["quest_squads"] = [
        {"id": "sq1", "status": "ready_for_review", "instance_id": "i1", "squad_members": []}
    ]

    response = client.post("/api/squads/sq1/status", json={"status": "approved", "admin_id": "a1"})

    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    assert backend.invocations[0][0] == "notify-clique-members"


def test_flag_update_and_delete(client, backend):
    backend.tables["feature_flags"] = [
        {"id": "f1", "key": "new_map", "is_enabled": False, "rollout_percentage": 100}
    ]

    updated = client.patch("/api/flags/f1", json={"is_enabled": True})
    out_of_range = client.patch("/api/flags/f1", json={"rollout_percentage": 120})
    empty = client.patch("/api/flags/f1", json={})
    deleted = client.delete("/api/flags/f1")
    gone = client.delete("/api/flags/f1")

    assert updated.json()["is_enabled"] is True
    assert out_of_range.status_code == 422
    assert empty.status_code == 400
    assert deleted.json() == {"deleted": "f1"}
    assert gone.status_code == 404


def test_route_handlers_are_synchronous(dashboard):
    from fastapi.routing import APIRoute

    handlers = [route.endpoint for route in dashboard.app.routes if isinstance(route, APIRoute)]

    assert len(handlers) > 10
    assert not [h.__name__ for h in handlers if inspect.iscoroutinefunction(h)]
