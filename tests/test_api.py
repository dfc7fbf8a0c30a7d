from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from dispatch_service import main
from dispatch_service.errors import UpstreamUnavailable
from dispatch_service.payments import ChargeResult

from conftest import auth_header, token_for

SENDER = auth_header("sender-1", "sender")
OTHER_SENDER = auth_header("sender-2", "sender")
ADMIN = auth_header("admin-1", "admin")
COURIER = auth_header("courier-1", "courier", name="Casey")

ORDER_BODY = {
    "pickup": {"address": "1560 Broadway, New York", "latitude": 40.7589, "longitude": -73.9851},
    "delivery": {"address": "100 Hudson St, New York", "latitude": 40.7205, "longitude": -74.0089},
    "recipient_name": "Ada Recipient",
    "recipient_phone": "+15550100",
    "package": {"package_type": "electronics", "size_category": "medium", "is_fragile": True},
    "urgency_level": "asap",
}


class FakeGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.charges = []

    async def charge(self, amount, payment_method_id, order_id, user_id):
        self.charges.append((amount, payment_method_id, order_id, user_id))
        if self.fail:
            raise UpstreamUnavailable("card declined")
        return ChargeResult(transaction_id="pi_test_123", status="completed")


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(main, "payment_gateway", fake)
    return fake


def create_order(client, **overrides):
    r = client.post("/orders", json={**ORDER_BODY, **overrides}, headers=SENDER)
    assert r.status_code == 201, r.text
    return r.json()["data"]


def go_online(client, headers=COURIER):
    r = client.put("/couriers/availability", json={"availability_status": "online"}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()["data"]


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_metrics_are_exposed(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "dispatch_offers_created_total" in r.text


def test_pricing_estimate(client):
    r = client.post("/pricing/estimate", json={
        "pickup": {"latitude": 40.7589, "longitude": -73.9851},
        "delivery": {"latitude": 40.7205, "longitude": -74.0089},
        "package": {"size_category": "medium", "is_fragile": True},
        "urgency_level": "asap",
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert 4.6 < body["distance_km"] < 4.8

    pricing = body["pricing"]
    assert all(isinstance(v, str) and len(v.split(".")[1]) == 2 for v in pricing.values())
    parts = ("base_price", "urgency_premium", "size_premium", "special_handling_fee", "service_fee", "tax_amount")
    assert sum(float(pricing[p]) for p in parts) == pytest.approx(float(pricing["total_amount"]))
    assert pricing["special_handling_fee"] == "5.00"


def test_unknown_tier_renders_validation_error(client):
    r = client.post("/pricing/estimate", json={
        "pickup": {"latitude": 40.7589, "longitude": -73.9851},
        "delivery": {"latitude": 40.7205, "longitude": -74.0089},
        "package": {"size_category": "gigantic"},
        "urgency_level": "asap",
    })
    assert r.status_code == 422
    assert r.json()["success"] is False
    assert r.json()["error"]["kind"] == "ValidationError"


def test_create_order_prices_and_records_history(client):
    order = create_order(client)

    assert order["status"] == "pending"
    assert order["sender_id"] == "sender-1"
    assert order["order_number"].startswith("DLV-")
    assert order["special_handling_fee"] == "5.00"
    assert order["package"]["package_type"] == "electronics"
    assert [h["new_status"] for h in order["status_history"]] == ["pending"]
    assert order["status_history"][0]["previous_status"] is None


def test_create_order_geocodes_missing_coordinates(client):
    order = create_order(client, pickup={"address": "somewhere uptown"})

    assert order["pickup_approximate"] is True
    assert order["delivery_approximate"] is False
    assert abs(order["pickup_latitude"] - 40.7589) < 0.01


def test_create_order_requires_sender(client):
    r = client.post("/orders", json=ORDER_BODY, headers=COURIER)
    assert r.status_code == 403
    assert r.json()["error"]["kind"] == "NotAuthorized"

    r = client.post("/orders", json=ORDER_BODY)
    assert r.status_code == 403


def test_scheduled_order_needs_a_date(client):
    r = client.post("/orders", json={**ORDER_BODY, "urgency_level": "scheduled"}, headers=SENDER)
    assert r.status_code == 422
    assert r.json()["error"]["kind"] == "ValidationError"


def test_order_payment_at_checkout(client, gateway):
    order = create_order(client, payment_method_id="pm_card_visa")

    assert order["payment"]["payment_status"] == "paid"
    assert order["payment_status"] == "paid"
    assert order["payment_transaction_id"] == "pi_test_123"
    assert gateway.charges[0][1] == "pm_card_visa"


def test_failed_payment_leaves_order_unpaid(client, gateway):
    gateway.fail = True
    order = create_order(client, payment_method_id="pm_card_declined")

    assert order["payment_status"] == "pending"
    assert order["payment"]["error"]["kind"] == "UpstreamUnavailable"

    gateway.fail = False
    r = client.post("/payments/process", json={"order_id": order["id"], "payment_method_id": "pm_card_visa"}, headers=SENDER)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["payment_status"] == "paid"

    r = client.post("/payments/process", json={"order_id": order["id"], "payment_method_id": "pm_card_visa"}, headers=SENDER)
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "InvalidTransition"


def test_payment_gateway_outage_renders_502(client, gateway):
    order = create_order(client)
    gateway.fail = True
    r = client.post("/payments/process", json={"order_id": order["id"], "payment_method_id": "pm_x"}, headers=SENDER)
    assert r.status_code == 502
    assert r.json()["error"]["kind"] == "UpstreamUnavailable"


def test_orders_are_private(client):
    order = create_order(client)

    assert client.get(f"/orders/{order['id']}", headers=OTHER_SENDER).status_code == 403
    assert client.get(f"/orders/{order['id']}", headers=SENDER).status_code == 200
    admin_view = client.get(f"/orders/{order['id']}", headers=ADMIN).json()["data"]
    assert admin_view["assignments"] == []

    r = client.get("/orders/does-not-exist", headers=ADMIN)
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": {"kind": "NotFound", "message": "Order does-not-exist not found"}}


def test_full_delivery_flow(client):
    go_online(client)
    order = create_order(client)

    r = client.post("/assignments", json={"order_id": order["id"], "courier_id": "courier-1"}, headers=ADMIN)
    assert r.status_code == 201, r.text
    offer = r.json()["data"]
    assert offer["assignment_type"] == "manual_assign"

    offers = client.get("/couriers/assignments?active_only=true", headers=COURIER).json()["data"]
    assert [o["id"] for o in offers] == [offer["id"]]

    r = client.post(f"/assignments/{offer['id']}/respond", json={"decision": "accept"}, headers=COURIER)
    assert r.status_code == 200, r.text

    r = client.post("/couriers/location", json={"latitude": 40.75, "longitude": -73.99, "order_id": order["id"]}, headers=COURIER)
    assert r.status_code == 200, r.text

    for status in ("pickup_in_progress", "in_transit", "delivered"):
        r = client.put(f"/orders/{order['id']}", json={"status": status}, headers=COURIER)
        assert r.status_code == 200, r.text

    final = client.get(f"/orders/{order['id']}", headers=SENDER).json()["data"]
    assert final["status"] == "delivered"
    assert final["courier_id"] == "courier-1"
    assert [h["new_status"] for h in final["status_history"]] == [
        "pending", "courier_assigned", "pickup_in_progress", "in_transit", "delivered",
    ]

    courier = go_online(client)
    assert courier["current_active_orders"] == 0


def test_second_offer_conflicts(client):
    go_online(client)
    go_online(client, auth_header("courier-2", "courier"))
    order = create_order(client)

    first = client.post("/assignments", json={"order_id": order["id"], "courier_id": "courier-1"}, headers=ADMIN)
    assert first.status_code == 201
    second = client.post("/assignments", json={"order_id": order["id"], "courier_id": "courier-2"}, headers=ADMIN)
    assert second.status_code == 409
    assert second.json()["error"]["kind"] == "ConcurrencyConflict"


def test_courier_can_claim_an_open_order(client):
    go_online(client)
    order = create_order(client)

    r = client.post("/assignments", json={"order_id": order["id"]}, headers=COURIER)
    assert r.status_code == 201, r.text
    assert r.json()["data"]["assignment_status"] == "accepted"

    view = client.get(f"/orders/{order['id']}", headers=COURIER).json()["data"]
    assert view["status"] == "courier_assigned"


def test_sender_can_only_cancel(client):
    order = create_order(client)

    r = client.put(f"/orders/{order['id']}", json={"status": "in_transit"}, headers=SENDER)
    assert r.status_code == 403

    r = client.put(
        f"/orders/{order['id']}",
        json={"status": "cancelled", "cancellation_reason": "no longer needed", "delivery_instructions": "ring twice"},
        headers=SENDER,
    )
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancelled_by"] == "sender"
    assert data["cancellation_reason"] == "no longer needed"
    assert data["delivery_instructions"] == "ring twice"

    r = client.put(f"/orders/{order['id']}", json={"status": "cancelled"}, headers=SENDER)
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "InvalidTransition"


def test_dispatch_endpoint_offers_to_online_courier(client):
    go_online(client)
    order = create_order(client)

    r = client.post(f"/orders/{order['id']}/dispatch", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["courier_id"] == "courier-1"
    assert client.post(f"/orders/{order['id']}/dispatch", headers=COURIER).status_code == 403


def test_late_response_renders_410(client, monkeypatch):
    go_online(client)
    order = create_order(client)
    offer = client.post(
        "/assignments", json={"order_id": order["id"], "courier_id": "courier-1", "response_seconds": 1}, headers=ADMIN
    ).json()["data"]

    later = main.dispatcher.clock() + timedelta(seconds=5)
    monkeypatch.setattr(main.dispatcher, "clock", lambda: later)

    r = client.post(f"/assignments/{offer['id']}/respond", json={"decision": "accept"}, headers=COURIER)
    assert r.status_code == 410
    assert r.json()["error"]["kind"] == "DeadlinePassed"


def test_order_channel_streams_status_changes(client):
    order = create_order(client)

    with client.websocket_connect(f"/ws/orders/{order['id']}?token={token_for('sender-1', 'sender')}") as ws:
        assert ws.receive_json()["type"] == "subscribed"
        r = client.put(f"/orders/{order['id']}", json={"status": "cancelled"}, headers=SENDER)
        assert r.status_code == 200
        message = ws.receive_json()

    assert message["type"] == "order_status_change"
    assert message["data"]["previous"] == "pending"
    assert message["data"]["current"] == "cancelled"


def test_order_channel_rejects_strangers(client):
    order = create_order(client)

    with client.websocket_connect(f"/ws/orders/{order['id']}?token={token_for('sender-2', 'sender')}") as ws:
        message = ws.receive_json()
    assert message["type"] == "error"
    assert message["data"]["kind"] == "NotAuthorized"

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/orders/{order['id']}?token=garbage") as ws:
            ws.receive_json()


def test_courier_feed_announces_new_orders(client):
    go_online(client)
    with client.websocket_connect(f"/ws/couriers?token={token_for('courier-1', 'courier')}") as ws:
        assert ws.receive_json()["type"] == "subscribed"
        order = create_order(client)
        message = ws.receive_json()

    assert message["type"] == "new_order_for_matching"
    assert message["data"]["order_id"] == order["id"]
    assert message["data"]["urgency"] == "asap"
    assert message["data"]["pickup_location"]["latitude"] == 40.7589


def test_rejected_update_writes_nothing(client):
    order = create_order(client)

    r = client.put(
        f"/orders/{order['id']}", json={"status": "pending", "pickup_instructions": "CHANGED"}, headers=ADMIN
    )
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "InvalidTransition"

    r = client.put(
        f"/orders/{order['id']}", json={"status": "in_transit", "delivery_instructions": "CHANGED"}, headers=SENDER
    )
    assert r.status_code == 403

    stored = client.get(f"/orders/{order['id']}", headers=SENDER).json()["data"]
    assert stored["pickup_instructions"] is None
    assert stored["delivery_instructions"] is None
    assert len(stored["status_history"]) == 1


def test_admin_reassigns_courier(client):
    go_online(client)
    go_online(client, auth_header("courier-2", "courier"))
    order = create_order(client)
    client.post("/assignments", json={"order_id": order["id"]}, headers=COURIER)

    r = client.put(f"/orders/{order['id']}", json={"courier_id": "courier-2"}, headers=COURIER)
    assert r.status_code == 403

    r = client.put(f"/orders/{order['id']}", json={"courier_id": "courier-2"}, headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["courier_id"] == "courier-2"

    assert client.get("/couriers/assignments?active_only=true", headers=COURIER).json()["data"] == []
    theirs = client.get("/couriers/assignments?active_only=true", headers=auth_header("courier-2", "courier")).json()["data"]
    assert [o["assignment_type"] for o in theirs] == ["reassigned"]
    assert client.get(f"/orders/{order['id']}", headers=COURIER).status_code == 403


def test_order_listing_is_scoped_filtered_and_paged(client):
    go_online(client)
    first = create_order(client)
    second = create_order(client)
    third = create_order(client)
    client.post("/orders", json=ORDER_BODY, headers=OTHER_SENDER)
    client.put(f"/orders/{first['id']}", json={"status": "cancelled"}, headers=SENDER)
    client.post("/assignments", json={"order_id": second["id"]}, headers=COURIER)

    r = client.get("/orders", headers=SENDER)
    assert r.status_code == 200, r.text
    body = r.json()
    assert {o["id"] for o in body["data"]} == {first["id"], second["id"], third["id"]}
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 3, "total_pages": 1}
    created = [o["created_at"] for o in body["data"]]
    assert created == sorted(created, reverse=True)

    cancelled = client.get("/orders?status=cancelled", headers=SENDER).json()["data"]
    assert [o["id"] for o in cancelled] == [first["id"]]

    page = client.get("/orders?limit=2&page=2", headers=SENDER).json()
    assert len(page["data"]) == 1
    assert page["pagination"]["total_pages"] == 2

    mine = client.get("/orders", headers=COURIER).json()["data"]
    assert [o["id"] for o in mine] == [second["id"]]
    assert client.get("/orders", headers=ADMIN).json()["pagination"]["total"] == 4

    assert client.get("/orders?date_from=2000-01-01&date_to=2000-01-31", headers=SENDER).json()["data"] == []
    r = client.get("/orders?date_from=2000-02-01&date_to=2000-01-01", headers=SENDER)
    assert r.status_code == 422
    assert r.json()["error"]["kind"] == "ValidationError"


def test_availability_survives_a_concurrent_first_toggle(client, monkeypatch):
    go_online(client)

    async def not_yet_registered(courier_id):
        return False

    # the row appears between the lookup and the insert
    monkeypatch.setattr(main, "courier_registered", not_yet_registered)
    r = client.put("/couriers/availability", json={"availability_status": "on_break"}, headers=COURIER)

    assert r.status_code == 200, r.text
    assert r.json()["data"]["availability_status"] == "on_break"
