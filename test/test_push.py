import json

import pytest

from tableorder.client import PushChannel, normalize_event
from tableorder.client.push import backoff_delays
from tableorder.statuses import OrderStatus, PaymentStatus


def test_legacy_event_names_and_ids_are_normalized():
    event = normalize_event({"type": "status_update", "orderId": 12, "status": "Accepted"})
    assert event == {"type": "order_status_changed", "order_id": 12, "status": OrderStatus.RECEIVED}

    paid = normalize_event({"type": "order_paid", "order_id": 3, "status": "Completed", "payment_status": "Paid"})
    assert paid["type"] == "payment_completed"
    assert paid["status"] == OrderStatus.COMPLETED
    assert paid["payment_status"] == PaymentStatus.COMPLETED


def test_unknown_status_is_dropped():
    event = normalize_event({"type": "order_status_changed", "order_id": 1, "status": "Teleported"})
    assert event["status"] is None
    assert event["type"] == "order_status_changed"


def test_backoff_is_bounded():
    assert backoff_delays(5, 1.0, 5.0) == [1, 2, 4, 5, 5]


def test_url_carries_scope():
    channel = PushChannel("ws://bridge.test/", 4, 9)
    assert channel.url == "ws://bridge.test/orders?tenantId=4&role=customer&tableId=9"

    staff = PushChannel("ws://bridge.test", 4, role="owner", token="abc")
    assert staff.url == "ws://bridge.test/orders?tenantId=4&role=owner&token=abc"


class FakeSocket:
    def __init__(self, messages):
        self.messages = messages
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            if self.closed:
                return
            yield message


class FakeConnector:
    """Hands out the given sockets, then refuses every further connection."""

    def __init__(self, sockets):
        self.sockets = list(sockets)
        self.calls = []

    def __call__(self, url, additional_headers=None):
        self.calls.append((url, additional_headers))
        if self.sockets:
            return self.sockets.pop(0)
        raise OSError("connection refused")


@pytest.mark.anyio
async def test_run_dispatches_reconnects_and_gives_up():
    connector = FakeConnector([
        FakeSocket([json.dumps({"type": "status_update", "orderId": 5, "status": "Ready"}), "not json"]),
        FakeSocket([json.dumps({"type": "payment_completed", "order_id": 5})]),
    ])
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    channel = PushChannel(
        "ws://bridge.test", 1, 2,
        cookie="table_session=abc",
        connector=connector,
        sleep=fake_sleep,
    )
    events = []

    async def handler(event):
        events.append(event)

    async def broken(event):
        raise RuntimeError("handler bug")

    channel.subscribe(broken)
    channel.subscribe(handler)
    await channel.run()

    assert [e["type"] for e in events] == ["order_status_changed", "reconnected", "payment_completed"]
    assert events[0]["status"] == OrderStatus.READY
    assert sleeps == [1, 1, 2, 4, 5, 5]
    assert len(connector.calls) == 7
    assert connector.calls[0][1] == {"Cookie": "table_session=abc"}
    assert channel.gave_up
    assert not channel.connected


@pytest.mark.anyio
async def test_close_stops_without_reconnecting():
    connector = FakeConnector([FakeSocket([])])
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    channel = PushChannel("ws://bridge.test", 1, 2, connector=connector, sleep=fake_sleep)

    await channel.close()
    await channel.run()
    assert connector.calls == []
    assert sleeps == []


@pytest.mark.anyio
async def test_close_mid_stream_stops_dispatch():
    socket = FakeSocket([json.dumps({"type": "order_status_changed", "order_id": n}) for n in range(3)])
    connector = FakeConnector([socket])
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    channel = PushChannel("ws://bridge.test", 1, 2, connector=connector, sleep=fake_sleep)
    seen = []

    async def close_after_first(event):
        seen.append(event["order_id"])
        await channel.close()

    async def late_handler(event):
        seen.append(("late", event["order_id"]))

    channel.subscribe(close_after_first)
    channel.subscribe(late_handler)
    await channel.run()

    assert seen == [0]
    assert socket.closed
    assert sleeps == []
    assert len(connector.calls) == 1
