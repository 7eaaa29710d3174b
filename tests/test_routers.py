# 📄 tests/test_routers.py
# 라우터 → 서비스 → 전역 에러 핸들러 연결 확인 (TestClient + 세션 override)

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from inventory_allocation.db.session import get_sync_session
from inventory_allocation.main import app
from inventory_allocation.system import config
from tests.helpers import lines_of, movements_of

SECRET = "test-secret"


@pytest.fixture
def client(session):
    def _override():
        yield session

    app.dependency_overrides[get_sync_session] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_on(monkeypatch):
    monkeypatch.setattr(config, "AUTH_REQUIRED", True)
    monkeypatch.setattr(config, "JWT_SECRET_KEY", SECRET)


def _token(**claims) -> str:
    payload = {
        "sub": "3",
        "username": "kim",
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        **claims,
    }
    return jwt.encode(payload, SECRET, algorithm="HS256")


def test_ping_endpoints(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/api/system/ping").json() == {"ok": True, "data": "pong"}

    for path, page in [
        ("/api/allocation/ping", "allocation.engine"),
        ("/api/stock/ledger/ping", "stock.ledger"),
        ("/api/stock/history/ping", "stock.history"),
    ]:
        res = client.get(path)
        assert res.status_code == 200
        assert res.json()["page"] == page


def test_adjust_then_allocate_order(client, session, make_order):
    order = make_order([{"product_id": 1, "qty": 6}])

    res = client.post("/api/stock/ledger/adjust", json={"product_id": 1, "delta": 10, "reason": "입고"})
    assert res.status_code == 200
    result = res.json()["data"]["result"]
    assert result["variant"]["physical_stock"] == 10
    assert result["allocation"]["total_granted"] == 6

    res = client.post(f"/api/allocation/orders/{order.id}/allocate")
    assert res.status_code == 200
    assert res.json()["data"]["result"]["status"] == "confirmed"

    res = client.get("/api/stock/ledger/variant", params={"product_id": 1})
    assert res.json()["data"]["result"]["available_stock"] == 4


def test_domain_errors_use_standard_body(client, session, make_stock, make_order):
    make_stock(1, 10)
    order = make_order([{"product_id": 1, "qty": 4}])
    client.post(f"/api/allocation/orders/{order.id}/allocate")
    item = lines_of(session, order.id)[0]

    res = client.post(f"/api/allocation/items/{item.id}/ship", json={"quantity": 5})
    assert res.status_code == 409
    body = res.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "ORDER-STATE-451"
    assert body["error"]["trace_id"].startswith("req-")

    res = client.post("/api/stock/ledger/adjust", json={"product_id": 1, "delta": -150})
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "STOCK-STATE-452"

    res = client.get("/api/stock/ledger/variant", params={"product_id": 2})
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "STOCK-NOTFOUND-101"

    res = client.post("/api/allocation/reconcile", json={"scope": "warehouse"})
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "ALLOC-VALID-001"


def test_ship_body_validation(client):
    res = client.post("/api/allocation/items/1/ship", json={"quantity": 0})
    assert res.status_code == 422


def test_ship_and_history(client, session, make_stock, make_order):
    make_stock(1, 10)
    order = make_order([{"product_id": 1, "qty": 4}])
    client.post(f"/api/allocation/orders/{order.id}/allocate")
    item = lines_of(session, order.id)[0]

    res = client.post(f"/api/allocation/items/{item.id}/ship", json={"quantity": 4})
    assert res.status_code == 200
    assert res.json()["data"]["result"]["status"] == "shipped"

    res = client.get("/api/stock/history/list", params={"movement_type": "order_shipment", "page_size": 5})
    items = res.json()["data"]["result"]["items"]
    assert [(i["quantity_delta"], i["reference_id"]) for i in items] == [(-4, order.id)]


def test_reconcile_endpoint(client, make_stock, make_order):
    make_stock(1, 10)
    make_order([{"product_id": 1, "qty": 4}])

    res = client.post("/api/allocation/reconcile", json={"scope": "product", "product_id": 1})

    assert res.status_code == 200
    result = res.json()["data"]["result"]
    assert result["scope"]["kind"] == "product"
    assert result["granted_qty"] == 4


def test_auth_required_without_token(client, auth_on):
    res = client.get("/api/stock/ledger/audit")

    assert res.status_code == 401
    assert res.json()["error"]["code"] == "AUTH-TOKEN-311"


def test_auth_required_with_token_records_actor(client, session, auth_on):
    headers = {"Authorization": f"Bearer {_token()}"}

    res = client.post(
        "/api/stock/ledger/adjust",
        json={"product_id": 1, "delta": 3, "movement_type": "return_in"},
        headers=headers,
    )

    assert res.status_code == 200
    assert [m.created_by for m in movements_of(session, 1)] == ["kim"]


def test_auth_rejects_refresh_token(client, auth_on):
    headers = {"Authorization": f"Bearer {_token(type='refresh')}"}

    res = client.get("/api/stock/ledger/audit", headers=headers)

    assert res.status_code == 401
    assert res.json()["error"]["code"] == "AUTH-TOKEN-313"
