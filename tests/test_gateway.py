import base64
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import respx

from ground_booking.breaker import CircuitBreaker
from ground_booking.catalog import GroundCatalog
from ground_booking.errors import GatewayUnavailable, GroundNotFound, NotFound
from ground_booking.gateway import PaymentGateway, map_status
from ground_booking.states import GatewayStatus

from conftest import GROUNDS

API = "https://cashfree.test/pg"


def make_gateway(**kwargs):
    kwargs.setdefault("breaker", CircuitBreaker("cashfree-test", failure_threshold=2))
    return PaymentGateway(base_url=API, app_id="app", secret_key="key",
                          checkout_url="https://pay.test/checkout", **kwargs)


@pytest.mark.parametrize(
    "provider,expected",
    [
        ("PAID", GatewayStatus.PAID),
        ("success", GatewayStatus.PAID),
        ("ACTIVE", GatewayStatus.PENDING_ACTIVE),
        ("NOT_ATTEMPTED", GatewayStatus.PENDING_ACTIVE),
        ("EXPIRED", GatewayStatus.FAILED_TERMINAL),
        ("USER_DROPPED", GatewayStatus.FAILED_TERMINAL),
        ("TERMINATED", GatewayStatus.FAILED_TERMINAL),
        ("SOMETHING_NEW", GatewayStatus.PENDING_ACTIVE),
        (None, GatewayStatus.PENDING_ACTIVE),
    ],
)
def test_map_status(provider, expected):
    assert map_status(provider) == expected


@pytest.mark.asyncio
async def test_create_order_posts_to_cashfree():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        route = mock.post("/orders").mock(
            return_value=httpx.Response(200, json={"order_id": "order_1_1", "payment_session_id": "sess_abc"})
        )
        order = await gateway.create_order(
            order_id="order_1_1",
            amount=Decimal("816.00"),
            currency="INR",
            customer={"customer_id": "u1", "customer_phone": "9876543210"},
            return_url="https://app.test/return",
            notify_url="https://api.test/payments/webhook",
        )

    assert order.order_id == "order_1_1"
    assert order.payment_session_id == "sess_abc"
    assert order.checkout_url == "https://pay.test/checkout/sess_abc"

    request = route.calls.last.request
    assert request.headers["x-client-id"] == "app"
    assert request.headers["x-client-secret"] == "key"
    assert request.headers["x-api-version"] == "2023-08-01"
    body = json.loads(request.content)
    assert body["order_amount"] == 816.0
    assert body["order_meta"]["notify_url"] == "https://api.test/payments/webhook"


@pytest.mark.asyncio
async def test_create_order_prefers_payment_link():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.post("/orders").mock(return_value=httpx.Response(
            200, json={"order_id": "o", "payment_session_id": "s", "payment_link": "https://pay.test/link/o"},
        ))
        order = await gateway.create_order("o", Decimal("10"), "INR", {}, "r", "n")
    assert order.checkout_url == "https://pay.test/link/o"


@pytest.mark.asyncio
async def test_create_order_with_incomplete_response():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.post("/orders").mock(return_value=httpx.Response(200, json={"order_id": "o"}))
        with pytest.raises(GatewayUnavailable):
            await gateway.create_order("o", Decimal("10"), "INR", {}, "r", "n")


@pytest.mark.asyncio
async def test_fetch_order():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.get("/orders/order_9").mock(
            return_value=httpx.Response(200, json={"order_id": "order_9", "order_status": "PAID"})
        )
        data = await gateway.fetch_order("order_9")
    assert data["order_status"] == "PAID"


@pytest.mark.asyncio
async def test_fetch_unknown_order():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.get("/orders/nope").mock(return_value=httpx.Response(404, json={"message": "order not found"}))
        with pytest.raises(NotFound):
            await gateway.fetch_order("nope")


@pytest.mark.asyncio
async def test_auth_failure_is_bad_gateway():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.get("/orders/o").mock(return_value=httpx.Response(401, json={"message": "authentication failed"}))
        with pytest.raises(GatewayUnavailable) as exc:
            await gateway.fetch_order("o")
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout_is_unavailable():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        mock.get("/orders/o").mock(side_effect=httpx.ConnectTimeout("timed out"))
        with pytest.raises(GatewayUnavailable) as exc:
            await gateway.fetch_order("o")
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_unconfigured_gateway():
    gateway = PaymentGateway(base_url=API, app_id=None, secret_key=None)
    assert not gateway.configured
    with pytest.raises(GatewayUnavailable) as exc:
        await gateway.fetch_order("o")
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_breaker_opens_after_repeated_server_errors():
    gateway = make_gateway()
    with respx.mock(base_url=API) as mock:
        route = mock.get("/orders/o").mock(return_value=httpx.Response(500, text="boom"))
        for _ in range(2):
            with pytest.raises(GatewayUnavailable) as exc:
                await gateway.fetch_order("o")
            assert exc.value.status_code == 502

        with pytest.raises(GatewayUnavailable) as exc:
            await gateway.fetch_order("o")
        assert exc.value.status_code == 503
        assert route.call_count == 2

    status = await gateway.breaker.status()
    assert status["state"] == "OPEN"


def test_verify_signature():
    gateway = make_gateway(webhook_secret="whsec")
    body = b'{"order_id":"o"}'
    expected = base64.b64encode(hmac.new(b"whsec", b"123" + body, hashlib.sha256).digest()).decode()

    assert gateway.verify_signature(body, "123", expected)
    assert not gateway.verify_signature(body, "124", expected)
    assert not gateway.verify_signature(body, "123", None)
    assert not make_gateway().verify_signature(body, "123", expected)


CATALOG = "http://catalog.test"


@pytest.mark.asyncio
async def test_catalog_reads_wrapped_ground_once():
    catalog = GroundCatalog(base_url=CATALOG, breaker=CircuitBreaker("ground-test"), request_id="req-1")
    with respx.mock(base_url=CATALOG) as mock:
        route = mock.get("/grounds/G1").mock(return_value=httpx.Response(200, json={"ground": GROUNDS["G1"]}))

        table = await catalog.get_rate_table("G1")
        assert await catalog.get_capacity("G1") == 22
        assert await catalog.get_owner_id("G1") == "owner-1"

    assert len(table.ranges) == 2
    assert route.call_count == 1
    assert route.calls.last.request.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,error",
    [
        (httpx.Response(404), GroundNotFound),
        (httpx.Response(400), GroundNotFound),
        (httpx.Response(200, json={"_id": "G9", "isActive": False}), GroundNotFound),
        (httpx.Response(503), GatewayUnavailable),
    ],
)
async def test_catalog_errors(response, error):
    catalog = GroundCatalog(base_url=CATALOG, breaker=CircuitBreaker("ground-test"))
    with respx.mock(base_url=CATALOG) as mock:
        mock.get("/grounds/G9").mock(return_value=response)
        with pytest.raises(error):
            await catalog.get_ground("G9")


@pytest.mark.asyncio
async def test_catalog_ignores_unusable_capacity():
    catalog = GroundCatalog(base_url=CATALOG, breaker=CircuitBreaker("ground-test"))
    ground = {**GROUNDS["G1"], "features": {"capacity": "twenty-two"}}
    with respx.mock(base_url=CATALOG) as mock:
        mock.get("/grounds/G1").mock(return_value=httpx.Response(200, json=ground))
        assert await catalog.get_capacity("G1") is None
