import secrets

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from .db import Base
from .slots import Slot, slot_from_labels
from .types import UTCDateTime, utcnow


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_ground_date", "ground_id", "booking_date"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_bookings_user_idempotency_key"),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String(32), unique=True, nullable=False, index=True)

    user_id = Column(String, nullable=False, index=True)
    ground_id = Column(String, nullable=False)
    booking_date = Column(Date, nullable=False)

    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)
    duration_hours = Column(Float, nullable=False)

    status = Column(String(16), nullable=False, index=True)  # pending/confirmed/cancelled/completed/no_show

    is_on_hold = Column(Boolean, nullable=False, default=False)
    hold_started_at = Column(UTCDateTime, nullable=True)
    hold_expires_at = Column(UTCDateTime, nullable=True)

    team_name = Column(String, nullable=True)
    player_count = Column(Integer, nullable=False, default=1)
    contact_name = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    requirements = Column(String, nullable=True)

    base_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    fee = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    gateway_order_id = Column(String, unique=True, nullable=True)
    payment_session_id = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    payment_status = Column(String(16), nullable=False, default="pending")  # pending/completed/failed/refunded
    paid_at = Column(UTCDateTime, nullable=True)
    payment_details = Column(JSON, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    refund_required = Column(Boolean, nullable=False, default=False)

    confirmed_at = Column(UTCDateTime, nullable=True)
    confirmation_code = Column(String(16), unique=True, nullable=True)
    confirmed_by = Column(String(16), nullable=True)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancelled_by = Column(String(16), nullable=True)
    cancellation_reason = Column(String, nullable=True)

    idempotency_key = Column(String, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def time_slot(self) -> str:
        return f"{self.start_time}-{self.end_time}"

    def hold_active(self, now) -> bool:
        return bool(self.is_on_hold and self.hold_expires_at and self.hold_expires_at > now)

    @property
    def slot(self) -> Slot:
        return slot_from_labels(self.start_time, self.end_time)

    @staticmethod
    def generate_booking_id() -> str:
        return "BC" + secrets.token_hex(4).upper()

    @staticmethod
    def generate_hold_id() -> str:
        return "TEMP" + secrets.token_hex(4).upper()

    @staticmethod
    def generate_confirmation_code() -> str:
        return "BC" + secrets.token_hex(3).upper()


class PartitionLock(Base):
    """One row per ground and day, row-locked by writers that check for overlaps."""

    __tablename__ = "partition_locks"

    ground_id = Column(String, primary_key=True)
    booking_date = Column(Date, primary_key=True)
    locked_at = Column(UTCDateTime, nullable=True)
