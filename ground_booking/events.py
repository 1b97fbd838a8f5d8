import json
import uuid

from .types import utcnow

SOURCE = "ground-booking-service"


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "source": SOURCE,
        "occurred_at": utcnow().isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    # Decimal amounts and dates fall back to str
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def booking_payload(booking) -> dict:
    """The slice of a booking carried in notification events."""
    return {
        "booking_id": booking.booking_id,
        "ground_id": booking.ground_id,
        "date": booking.booking_date.isoformat(),
        "time_slot": booking.time_slot,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "total_amount": str(booking.total_amount),
        "currency": booking.currency,
    }
