from datetime import datetime, timedelta

import httpx
import pytest
from dateutil import tz

from ground_booking.db import get_db
from ground_booking.main import app
from ground_booking.routes import get_catalog, get_gateway, get_notifier

from conftest import PLAYERS, auth

DAY = (datetime.now(tz.gettz("Asia/Kolkata")) + timedelta(days=3)).date().isoformat()


@pytest.fixture
async def client(session_factory, catalog, gateway, notifier):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


def booking_body(slot="18:00-19:00", **extra):
    return {"resourceId": "G1", "date": DAY, "slot": slot, "playerDetails": PLAYERS, **extra}


async def create(client, user="u1", slot="18:00-19:00", headers=None, **extra):
    r = await client.post("/bookings", json=booking_body(slot, **extra), headers={**auth(user), **(headers or {})})
    assert r.status_code == 200, r.text
    return r.json()


@pytest.mark.asyncio
async def test_requires_token(client):
    r = await client.post("/bookings", json=booking_body())
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthorized"

    r = await client.get("/bookings", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_hold_conflict_reports_temporary_hold(client):
    r = await client.post("/holds", json={"resourceId": "G1", "date": DAY, "slot": "18:00-19:00"}, headers=auth("a"))
    assert r.status_code == 200
    hold = r.json()
    assert hold["holdId"].startswith("TEMP")
    assert hold["isOnHold"] is True

    r = await client.post("/bookings", json=booking_body(), headers=auth("b"))
    assert r.status_code == 409
    assert r.json()["isTemporaryHold"] is True

    r = await client.delete(f"/holds/{hold['holdId']}", headers=auth("a"))
    assert r.status_code == 200

    r = await client.post("/bookings", json=booking_body(), headers=auth("b"))
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_hold_on_unknown_ground(client):
    r = await client.post("/holds", json={"resourceId": "NOPE", "date": DAY, "slot": "18:00-19:00"}, headers=auth("a"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_create_booking_response_shape(client, notifier):
    body = await create(client, slot="19:00-20:00")

    assert body["bookingId"].startswith("BC")
    assert body["status"] == "pending"
    assert body["slot"] == "19:00-20:00"
    assert body["pricing"]["totalAmount"] == 816.0
    assert body["payment"]["status"] == "pending"
    assert body["playerDetails"]["contactPerson"]["name"] == "Asha"
    assert body["confirmation"] is None
    assert notifier.kinds() == ["booking_pending"]


@pytest.mark.asyncio
async def test_idempotency_key_header(client):
    first = await create(client, headers={"Idempotency-Key": "abc"})
    second = await create(client, headers={"Idempotency-Key": "abc"})
    assert first["bookingId"] == second["bookingId"]

    r = await client.get("/bookings", headers=auth("u1"))
    assert r.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_bad_input_is_400(client):
    r = await client.post("/bookings", json=booking_body(slot="25:00-26:00"), headers=auth("u1"))
    assert r.status_code == 400
    assert r.json()["error"] == "MalformedSlot"

    r = await client.post("/bookings", json={"slot": "18:00-19:00"}, headers=auth("u1"))
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationFailed"


@pytest.mark.asyncio
async def test_only_admin_can_book_confirmed(client):
    r = await client.post("/bookings", json=booking_body(confirm=True), headers=auth("u1"))
    assert r.status_code == 403

    r = await client.post("/bookings", json=booking_body(confirm=True), headers=auth("boss", roles=["admin"]))
    assert r.status_code == 200
    assert r.json()["status"] == "confirmed"


@pytest.mark.asyncio
async def test_availability(client):
    await create(client, slot="18:00-20:00")

    r = await client.get(f"/availability/G1/{DAY}")
    assert r.status_code == 200
    body = r.json()
    assert body["bookedSlots"] == ["18:00-19:00", "19:00-20:00"]
    assert len(body["availableSlots"]) == 22


@pytest.mark.asyncio
async def test_payment_flow(client, gateway, notifier):
    booking = await create(client)
    booking_id = booking["bookingId"]

    r = await client.post("/payments/orders", json={"bookingId": booking_id}, headers=auth("u1"))
    assert r.status_code == 200
    order = r.json()
    assert order["amount"] == 816.0
    assert order["checkoutUrl"]

    r = await client.post("/payments/verify", json={"bookingId": booking_id, "orderId": order["orderId"]},
                          headers=auth("u1"))
    assert r.json()["outcome"] == "pending"

    gateway.set_status(order["orderId"], "PAID")
    r = await client.post("/payments/verify", json={"bookingId": booking_id, "orderId": order["orderId"]},
                          headers=auth("u1"))
    assert r.status_code == 200
    body = r.json()
    assert body["outcome"] == "confirmed"
    assert body["paymentStatus"] == "completed"
    assert body["requiresRefund"] is False
    assert body["booking"]["confirmation"]["confirmationCode"]

    r = await client.get(f"/payments/status/{booking_id}", headers=auth("u1"))
    assert r.json()["status"] == "confirmed"
    assert notifier.kinds() == ["booking_pending", "booking_confirmed"]


@pytest.mark.asyncio
async def test_verify_rejects_foreign_order(client):
    booking = await create(client)
    r = await client.post("/payments/orders", json={"bookingId": booking["bookingId"]}, headers=auth("u1"))
    assert r.status_code == 200

    r = await client.post("/payments/verify", json={"bookingId": booking["bookingId"], "orderId": "order_other"},
                          headers=auth("u1"))
    assert r.status_code == 400

    r = await client.post("/payments/orders", json={"bookingId": booking["bookingId"]}, headers=auth("u2"))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_gateway_outage_on_order(client, gateway):
    booking = await create(client)
    gateway.down = True
    r = await client.post("/payments/orders", json={"bookingId": booking["bookingId"]}, headers=auth("u1"))
    assert r.status_code == 503

    r = await client.get(f"/bookings/{booking['bookingId']}", headers=auth("u1"))
    assert r.json()["payment"]["gatewayOrderId"] is None


@pytest.mark.asyncio
async def test_get_booking_heals_missed_webhook(client, gateway):
    booking = await create(client)
    r = await client.post("/payments/orders", json={"bookingId": booking["bookingId"]}, headers=auth("u1"))
    gateway.set_status(r.json()["orderId"], "PAID")

    r = await client.get(f"/bookings/{booking['bookingId']}", headers=auth("u1"))
    assert r.status_code == 200
    assert r.json()["status"] == "confirmed"
    assert r.json()["payment"]["status"] == "completed"


@pytest.mark.asyncio
async def test_payment_failed_endpoint(client):
    booking = await create(client)
    r = await client.post("/payments/failed", json={"bookingId": booking["bookingId"], "reason": "Card declined"},
                          headers=auth("u1"))
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "cancelled"
    assert body["payment"]["status"] == "failed"
    assert body["cancellation"]["reason"] == "Card declined"


@pytest.mark.asyncio
async def test_status_change_permissions(client):
    booking = await create(client)
    booking_id = booking["bookingId"]

    r = await client.get(f"/bookings/{booking_id}", headers=auth("stranger"))
    assert r.status_code == 403

    r = await client.patch(f"/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth("stranger"))
    assert r.status_code == 403

    r = await client.patch(f"/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth("u1"))
    assert r.status_code == 403

    r = await client.get(f"/bookings/{booking_id}", headers=auth("owner-1"))
    assert r.status_code == 200

    r = await client.patch(f"/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=auth("owner-1"))
    assert r.status_code == 200
    assert r.json()["confirmation"]["confirmedBy"] == "owner"

    r = await client.patch(f"/bookings/{booking_id}/status", json={"status": "cancelled", "reason": "Rain"},
                           headers=auth("u1"))
    assert r.status_code == 200
    assert r.json()["cancellation"]["reason"] == "Rain"


@pytest.mark.asyncio
async def test_webhook_always_answers_200(client, gateway):
    r = await client.post("/payments/webhook", content=b"not json")
    assert r.status_code == 200
    assert r.json() == {"status": "ignored"}

    # unknown to the gateway as well
    r = await client.post("/payments/webhook", json={"order_id": "order_404", "order_status": "PAID"})
    assert r.status_code == 200
    assert r.json() == {"status": "error"}

    booking = await create(client)
    r = await client.post("/payments/orders", json={"bookingId": booking["bookingId"]}, headers=auth("u1"))
    order_id = r.json()["orderId"]
    gateway.set_status(order_id, "PAID")

    r = await client.post("/payments/webhook", json={"data": {"order": {"order_id": order_id, "order_status": "PAID"}}})
    assert r.json() == {"status": "processed", "outcome": "confirmed"}


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["service"] == "ground-booking-service"
    assert body["payments_configured"] is True
    assert "X-Request-Id" in r.headers
