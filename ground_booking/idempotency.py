from . import redis_client as _redis
from .config import WEBHOOK_DEDUP_TTL_SECONDS


def _key(order_id: str, provider_status: str) -> str:
    return f"processed_webhook:{order_id}:{provider_status}"


async def is_processed(order_id: str, provider_status: str) -> bool:
    return bool(await _redis.redis_client.exists(_key(order_id, provider_status)))


async def mark_processed(order_id: str, provider_status: str):
    await _redis.redis_client.set(_key(order_id, provider_status), "1", ex=WEBHOOK_DEDUP_TTL_SECONDS)
