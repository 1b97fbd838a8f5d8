"""
Cashfree Payment Gateway client.

Only the two calls the reconciliation flow needs: create an order, fetch an
order. Provider statuses are folded into ``GatewayStatus`` here so nothing
downstream has to know the provider vocabulary.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import (
    CASHFREE_API_URL,
    CASHFREE_API_VERSION,
    CASHFREE_APP_ID,
    CASHFREE_CHECKOUT_URL,
    CASHFREE_SECRET_KEY,
    CASHFREE_WEBHOOK_SECRET,
    GATEWAY_TIMEOUT_SECONDS,
)
from .errors import GatewayUnavailable, NotFound
from .states import GatewayStatus

logger = logging.getLogger(__name__)

cb_payments = CircuitBreaker("cashfree", failure_threshold=5, reset_timeout_seconds=30)

PAID_STATUSES = {"PAID", "SUCCESS"}
PENDING_STATUSES = {"ACTIVE", "PENDING", "NOT_ATTEMPTED"}
FAILED_STATUSES = {
    "EXPIRED",
    "FAILED",
    "CANCELLED",
    "TERMINATED",
    "TERMINATION_REQUESTED",
    "USER_DROPPED",
}


def map_status(provider_status: str | None) -> GatewayStatus:
    status = (provider_status or "").upper()
    if status in PAID_STATUSES:
        return GatewayStatus.PAID
    if status in FAILED_STATUSES:
        return GatewayStatus.FAILED_TERMINAL
    if status not in PENDING_STATUSES:
        logger.warning("unknown gateway status %r treated as pending", provider_status)
    return GatewayStatus.PENDING_ACTIVE


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    payment_session_id: str
    checkout_url: str


class PaymentGateway:
    def __init__(
        self,
        base_url: str = CASHFREE_API_URL,
        app_id: str | None = CASHFREE_APP_ID,
        secret_key: str | None = CASHFREE_SECRET_KEY,
        checkout_url: str = CASHFREE_CHECKOUT_URL,
        webhook_secret: str | None = CASHFREE_WEBHOOK_SECRET,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        breaker: CircuitBreaker = cb_payments,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.secret_key = secret_key
        self.checkout_url = checkout_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.breaker = breaker

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.secret_key)

    def _headers(self) -> dict:
        return {
            "x-client-id": self.app_id or "",
            "x-client-secret": self.secret_key or "",
            "x-api-version": CASHFREE_API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self.configured:
            raise GatewayUnavailable("Payment gateway not configured", status_code=503)

        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise GatewayUnavailable(str(e), status_code=503)

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, json=payload, headers=self._headers())
                resp.raise_for_status()
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            logger.warning("payment gateway timeout on %s %s", method, path)
            raise GatewayUnavailable("Payment gateway timed out", status_code=503)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                await self.breaker.record_success()
                raise NotFound("Payment order not found at gateway")
            if status >= 500:
                await self.breaker.record_failure()
            logger.error("payment gateway %s on %s %s: %s", status, method, path, e.response.text)
            if status in (401, 403):
                raise GatewayUnavailable("Payment gateway authentication failed")
            raise GatewayUnavailable(f"Payment gateway rejected the request ({status})")
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.warning("payment gateway unreachable: %s", e)
            raise GatewayUnavailable("Payment gateway unreachable")

        await self.breaker.record_success()
        return resp.json() if resp.content else {}

    async def create_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: dict,
        return_url: str,
        notify_url: str,
    ) -> GatewayOrder:
        payload = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": customer,
            "order_meta": {
                "return_url": return_url,
                "notify_url": notify_url,
            },
        }
        data = await self._request("POST", "/orders", payload)

        session_id = data.get("payment_session_id")
        if not data.get("order_id") or not session_id:
            logger.error("gateway order response missing fields: %s", data)
            raise GatewayUnavailable("Invalid response from payment gateway")

        checkout = data.get("payment_link") or f"{self.checkout_url}/{session_id}"
        return GatewayOrder(order_id=data["order_id"], payment_session_id=session_id, checkout_url=checkout)

    async def fetch_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/orders/{order_id}")

    def verify_signature(self, raw_body: bytes, timestamp: str | None, signature: str | None) -> bool:
        """
        Checks ``x-webhook-signature``: base64(HMAC-SHA256(timestamp + body)).
        Always False when no webhook secret is configured.
        """
        if not self.webhook_secret or not timestamp or not signature:
            return False
        message = timestamp.encode("utf-8") + raw_body
        digest = hmac.new(self.webhook_secret.encode("utf-8"), message, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected, signature)
