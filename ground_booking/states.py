from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class GatewayStatus(str, Enum):
    PAID = "PAID"
    PENDING_ACTIVE = "PENDING_ACTIVE"
    FAILED_TERMINAL = "FAILED_TERMINAL"


class Actor(str, Enum):
    USER = "user"
    OWNER = "owner"
    ADMIN = "admin"
    SYSTEM = "system"


TERMINAL_STATUSES = {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.NO_SHOW: set(),
}


def can_transition(current: str, target: str) -> bool:
    return BookingStatus(target) in ALLOWED_TRANSITIONS[BookingStatus(current)]
