import asyncio
import logging

from .bookings import expire_stale_pending
from .db import SessionLocal, transaction
from .gateway import PaymentGateway
from .holds import sweep_expired_holds
from .reconciliation import reconcile_stale_orders

logger = logging.getLogger(__name__)


async def sweep_once(session_factory=SessionLocal, gateway: PaymentGateway | None = None, notifier=None) -> dict:
    gateway = gateway or PaymentGateway()
    async with session_factory() as db:
        async with transaction(db):
            holds = await sweep_expired_holds(db)
        timed_out = await expire_stale_pending(db, notifier=notifier)
        reconciled = 0
        if gateway.configured:
            reconciled = await reconcile_stale_orders(db, gateway, notifier=notifier)
    return {"holds": holds, "timed_out": timed_out, "reconciled": reconciled}


async def expiry_loop(stop_event: asyncio.Event, interval: float, notifier=None):
    while not stop_event.is_set():
        try:
            result = await sweep_once(notifier=notifier)
            if any(result.values()):
                logger.info("sweep: %s", result)
        except Exception:
            logger.exception("sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
