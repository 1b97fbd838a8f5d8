import asyncio
import logging

from .events import build_event, to_json
from .publisher import publisher as default_publisher

logger = logging.getLogger(__name__)

BOOKING_PENDING = "booking_pending"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_CANCELLED = "booking_cancelled"
PAYMENT_FAILED = "payment_failed"
REFUND_REQUIRED = "refund_required"
HOLD_ACQUIRED = "hold_acquired"
HOLD_RELEASED = "hold_released"


class Notifier:
    """
    Fire-and-forget notification sink.

    ``emit`` schedules delivery on the running loop and returns immediately.
    Delivery is retried with exponential backoff; a message that still fails is
    logged and dropped, it never reaches the caller.
    """

    def __init__(self, publisher=None, attempts: int = 3, base_delay: float = 0.5):
        self.publisher = publisher or default_publisher
        self.attempts = attempts
        self.base_delay = base_delay
        self._tasks: set[asyncio.Task] = set()

    def emit(self, user_id: str, kind: str, payload: dict) -> None:
        event = build_event(f"notification.{kind}", {"user_id": user_id, "kind": kind, **payload})
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(kind, event))
        except RuntimeError:
            logger.warning("no running loop, notification %s for %s dropped", kind, user_id)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, kind: str, event: dict) -> bool:
        body = to_json(event)
        delay = self.base_delay
        for attempt in range(1, self.attempts + 1):
            try:
                await self.publisher.publish(f"notification.{kind}", body)
                return True
            except Exception as e:
                logger.warning("notification %s attempt %d/%d failed: %s", kind, attempt, self.attempts, e)
                if attempt < self.attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
        logger.error("notification %s dropped after %d attempts", kind, self.attempts)
        return False

    async def drain(self, timeout: float = 5.0):
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()


notifier = Notifier()
