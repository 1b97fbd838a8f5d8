import logging

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import CATALOG_TIMEOUT_SECONDS, GROUND_SERVICE_URL
from .errors import GatewayUnavailable, GroundNotFound
from .pricing import RateTable

logger = logging.getLogger(__name__)

cb_ground = CircuitBreaker("ground-service", failure_threshold=5, reset_timeout_seconds=10)


class GroundCatalog:
    """
    Read-only client for the ground catalog service.

    Ground documents are fetched once per instance; routes build one instance
    per request.
    """

    def __init__(self, base_url: str = GROUND_SERVICE_URL, breaker: CircuitBreaker = cb_ground,
                 timeout: float = CATALOG_TIMEOUT_SECONDS, request_id: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self.request_id = request_id
        self._cache: dict[str, dict] = {}

    async def get_ground(self, ground_id: str) -> dict:
        if ground_id in self._cache:
            return self._cache[ground_id]

        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise GatewayUnavailable(str(e), status_code=503)

        headers = {"X-Request-Id": self.request_id} if self.request_id else {}
        url = f"{self.base_url}/grounds/{ground_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            raise GatewayUnavailable("Timeout calling ground catalog", status_code=503)
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.warning("ground catalog unreachable: %s", e)
            raise GatewayUnavailable("Ground catalog unavailable")

        if resp.status_code == 404:
            await self.breaker.record_success()
            raise GroundNotFound(f"Ground {ground_id} not found")
        if resp.status_code >= 500:
            await self.breaker.record_failure()
            raise GatewayUnavailable(f"Ground catalog returned {resp.status_code}")
        if resp.status_code >= 400:
            await self.breaker.record_success()
            raise GroundNotFound(f"Ground {ground_id} not found")

        await self.breaker.record_success()
        ground = resp.json()
        # some deployments wrap the document
        if isinstance(ground, dict) and isinstance(ground.get("ground"), dict):
            ground = ground["ground"]
        if ground.get("isActive") is False:
            raise GroundNotFound(f"Ground {ground_id} is not available for booking")

        self._cache[ground_id] = ground
        return ground

    async def get_rate_table(self, ground_id: str) -> RateTable:
        ground = await self.get_ground(ground_id)
        return RateTable.from_catalog(ground.get("price"))

    async def get_capacity(self, ground_id: str) -> int | None:
        ground = await self.get_ground(ground_id)
        capacity = (ground.get("features") or {}).get("capacity")
        if not capacity:
            return None
        try:
            return int(capacity)
        except (TypeError, ValueError):
            logger.warning("ground %s has unusable capacity %r, not enforcing it", ground_id, capacity)
            return None

    async def get_owner_id(self, ground_id: str) -> str | None:
        ground = await self.get_ground(ground_id)
        owner = ground.get("owner")
        if isinstance(owner, dict):
            owner = owner.get("userId") or owner.get("id")
        return str(owner) if owner else None
