"""
Websocket bridge authorization and fan-out, plus the Redis publisher.
"""
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tableorder import realtime, ws_bridge


@pytest.fixture
def bridge():
    ws_bridge.connections.clear()
    yield TestClient(ws_bridge.app)
    ws_bridge.connections.clear()


class FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.mark.anyio
async def test_broadcast_drops_dead_sockets():
    alive, dead = FakeSocket(), FakeSocket(fail=True)
    ws_bridge.connections["orders:1:staff"] = {alive, dead}

    assert await ws_bridge.broadcast("orders:1:staff", '{"type": "new_order"}') == 1
    assert alive.sent == ['{"type": "new_order"}']
    assert ws_bridge.connections["orders:1:staff"] == {alive}

    assert await ws_bridge.broadcast("orders:9:staff", "{}") == 0
    ws_bridge.connections.clear()


def test_staff_socket_joins_the_staff_channel(bridge, seed, owner_token):
    with bridge.websocket_connect(f"/orders?tenantId={seed.tenant_id}&role=owner&token={owner_token}") as ws:
        message = json.loads(ws.receive_text())
        assert message == {"type": "connected", "channel": f"orders:{seed.tenant_id}:staff"}


def test_staff_token_for_another_tenant_is_refused(bridge, seed, owner_token):
    with bridge.websocket_connect(f"/ws/orders?tenantId={seed.tenant_id + 1}&role=owner&token={owner_token}") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == ws_bridge.POLICY_VIOLATION


def test_customer_socket_uses_the_session_table(bridge, monkeypatch):
    async def fake_validate(cookie_header):
        assert cookie_header == "table_session=abc"
        return {"session_id": "s-1", "table_id": 7, "tenant_id": 3}

    monkeypatch.setattr(ws_bridge, "validate_customer_session", fake_validate)
    with bridge.websocket_connect(
        "/orders?tenantId=3&tableId=7&role=customer",
        headers={"Cookie": "table_session=abc"},
    ) as ws:
        assert json.loads(ws.receive_text())["channel"] == "orders:3:table:7"


def test_customer_cannot_listen_to_another_table(bridge, monkeypatch):
    async def fake_validate(cookie_header):
        return {"session_id": "s-1", "table_id": 7, "tenant_id": 3}

    monkeypatch.setattr(ws_bridge, "validate_customer_session", fake_validate)
    with bridge.websocket_connect(
        "/orders?tenantId=3&tableId=8&role=customer",
        headers={"Cookie": "table_session=abc"},
    ) as ws:
        with pytest.raises(WebSocketDisconnect):
            ws.receive_text()


def test_customer_without_session_is_refused(bridge, monkeypatch):
    async def fake_validate(cookie_header):
        return None

    monkeypatch.setattr(ws_bridge, "validate_customer_session", fake_validate)
    with bridge.websocket_connect("/orders?tenantId=3&tableId=7") as ws:
        with pytest.raises(WebSocketDisconnect):
            ws.receive_text()


def test_bridge_health(bridge):
    assert bridge.get("/health").json()["status"] == "ok"


# ---- publisher ----

class FakeRedis:
    def __init__(self):
        self.published = []

    def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))


def test_order_events_reach_staff_and_table_channels(customer, seed, monkeypatch, place_order):
    fake = FakeRedis()
    monkeypatch.setattr(realtime, "get_redis", lambda: fake)

    order = place_order()

    channels = [channel for channel, _ in fake.published]
    assert channels == [
        f"orders:{seed.tenant_id}:staff",
        f"orders:{seed.tenant_id}:table:{seed.table_id}",
    ]
    event = fake.published[0][1]
    assert event["type"] == "new_order"
    assert event["order_id"] == order["id"]
    assert event["status"] == "PENDING"


def test_publishing_is_skipped_without_redis(monkeypatch):
    monkeypatch.setattr(realtime.settings, "redis_url", "")
    assert realtime.get_redis() is None
    realtime.publish_order_update(1, {"type": "new_order"}, table_id=2)
