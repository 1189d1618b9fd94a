from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from fieldops.api.app import create_app
from fieldops.api.dependencies.auth import get_access, get_current_actor, get_entity_store
from fieldops.config import get_settings
from fieldops.database import get_db
from fieldops.meta_engine.services.access_pipeline import Actor
from fieldops.meta_engine.services.entity_service import DataAccessResult


def _result(rows=(), total=None):
    result = MagicMock()
    result.mappings.return_value.all.return_value = list(rows)
    result.scalar_one.return_value = total
    return result


def _client(access, actor=None):
    mock_db_session = MagicMock()

    def override_get_db():
        try:
            yield mock_db_session
        finally:
            pass

    app = create_app()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_access] = lambda: access
    if actor is not None:
        app.dependency_overrides[get_current_actor] = lambda: actor
    return TestClient(app), mock_db_session


def test_health(access):
    client, _ = _client(access)
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["roles"]["is_fallback"] is True
    assert "work_order" in body["entities"]


def test_missing_actor_is_unauthorized(access):
    client, db = _client(access)
    resp = client.get("/api/v1/customers")
    assert resp.status_code == 401
    db.execute.assert_not_called()


def test_list_returns_readable_rows(access):
    client, db = _client(access, Actor(id=1, role="admin"))
    db.execute.side_effect = [
        _result(total=1),
        _result(rows=[{"id": 1, "email": "a@example.com", "internal_note": "x"}]),
    ]
    resp = client.get("/api/v1/customers", params={"status": "active", "limit": 10})
    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "data": {
            "items": [{"id": 1, "email": "a@example.com"}],
            "total": 1,
            "page": 1,
            "limit": 10,
        },
    }


def test_technician_gets_no_contracts(access):
    client, db = _client(access, Actor(id=3, role="technician"))
    resp = client.get("/api/v1/contracts")
    assert resp.status_code == 200
    assert resp.json()["data"]["items"] == []
    db.execute.assert_not_called()


def test_malformed_list_params_are_not_a_server_error(access):
    client, db = _client(access, Actor(id=1, role="admin"))
    db.execute.side_effect = [_result(total=0), _result(rows=[])]
    resp = client.get("/api/v1/users", params={"includeInactive": "maybe", "page": "x"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"items": [], "total": 0, "page": 1, "limit": 50}


def test_unknown_entity(access):
    client, _ = _client(access, Actor(id=1, role="admin"))
    resp = client.get("/api/v1/spaceships")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_create_denied_rolls_back(access):
    client, db = _client(access, Actor(id=7, role="customer"))
    resp = client.post("/api/v1/technicians", json={"email": "t@example.com"})
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "PERMISSION_DENIED"
    assert error["user_message"].endswith("Minimum role required: manager")
    db.rollback.assert_called_once()
    db.commit.assert_not_called()


def test_create_commits(access):
    client, db = _client(access, Actor(id=7, role="customer"))
    db.execute.return_value = _result(rows=[{"id": 12, "name": "Leak", "customer_id": 7}])
    resp = client.post("/api/v1/work-orders", json={"customer_id": 7, "name": "Leak"})
    assert resp.status_code == 201
    assert resp.json()["data"]["id"] == 12
    db.commit.assert_called_once()


def test_update_validation_error(access):
    client, db = _client(access, Actor(id=7, role="customer"))
    resp = client.patch("/api/v1/users/7", json={"email": "new@example.com", "role": "admin"})
    assert resp.status_code == 422
    assert "first_name, last_name, phone" in resp.json()["error"]["message"]
    db.execute.assert_not_called()


def test_delete_missing_row(access):
    client, db = _client(access, Actor(id=1, role="admin"))
    db.execute.return_value = _result(rows=[])
    resp = client.delete("/api/v1/invoices/404")
    assert resp.status_code == 404


def test_rls_bypass_is_masked(access):
    class LeakyStore:
        def find_all(self, request):
            return DataAccessResult(rows=[{"id": 1}], rls_applied=False)

    client, _ = _client(access, Actor(id=7, role="customer"))
    client.app.dependency_overrides[get_entity_store] = lambda: LeakyStore()
    resp = client.get("/api/v1/work_orders")
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "RLS_NOT_APPLIED"
    assert error["message"] == "Internal security check failed"
    assert error["details"] == {}


@pytest.fixture
def trusted_headers(monkeypatch):
    monkeypatch.setenv("FIELDOPS_TRUST_ACTOR_HEADERS", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_actor_from_trusted_headers(access, trusted_headers):
    client, db = _client(access)
    db.execute.side_effect = [_result(total=0), _result(rows=[])]
    resp = client.get(
        "/api/v1/work_orders", headers={"x-actor-id": "7", "x-actor-role": "Customer"}
    )
    assert resp.status_code == 200
    count_params = db.execute.call_args_list[0].args[1]
    assert count_params["p2"] == "7"


def test_headers_ignored_when_untrusted(access):
    client, _ = _client(access)
    resp = client.get("/api/v1/work_orders", headers={"x-actor-role": "admin"})
    assert resp.status_code == 401
