"""
Short-lived exclusive holds on a (ground, date, slot).

A hold is a ``pending`` booking row with ``is_on_hold`` set and zero pricing. It
stops blocking the moment ``hold_expires_at`` passes; the sweep below runs at
the start of every transaction touching a ground/date and closes such rows out.
"""

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .config import GROUND_TZ, HOLD_TTL_MINUTES
from .db import transaction
from .errors import NotFound, SlotUnavailable, ValidationFailed
from .events import booking_payload
from .models import Booking, PartitionLock
from .notifications import HOLD_ACQUIRED, HOLD_RELEASED
from .slots import Slot, is_past, parse_slot, slots_overlap
from .states import Actor, BookingStatus
from .types import utcnow

logger = logging.getLogger(__name__)

HELD_MESSAGE = "This slot is temporarily held by another user. Please try again in a few minutes."
BOOKED_MESSAGE = "This slot is already booked. Please choose a different time."

_UPSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


async def sweep_expired_holds(
    db: AsyncSession,
    now: datetime | None = None,
    ground_id: str | None = None,
    booking_date: date | None = None,
) -> int:
    now = now or utcnow()
    stmt = (
        select(Booking)
        .where(
            Booking.is_on_hold.is_(True),
            Booking.hold_expires_at < now,
            Booking.status == BookingStatus.PENDING.value,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if ground_id is not None:
        stmt = stmt.where(Booking.ground_id == ground_id, Booking.booking_date == booking_date)

    res = await db.execute(stmt)
    expired = list(res.scalars().all())
    for hold in expired:
        hold.is_on_hold = False
        hold.status = BookingStatus.CANCELLED.value
        hold.cancelled_at = now
        hold.cancelled_by = Actor.SYSTEM.value
        hold.cancellation_reason = "Hold expired"
        hold.updated_at = now

    if expired:
        await db.flush()
        logger.info("swept %d expired holds (ground=%s date=%s)", len(expired), ground_id, booking_date)
    return len(expired)


async def lock_partition(db: AsyncSession, ground_id: str, booking_date: date, now: datetime | None = None) -> None:
    """
    Takes the write lock for one ground and day; it is held until the
    surrounding transaction ends. Every path that checks a partition for
    overlaps and then writes to it takes this lock first, before any row lock.
    """
    now = now or utcnow()
    dialect = db.get_bind().dialect.name
    if dialect not in _UPSERTS:
        raise RuntimeError(f"partition locks are not supported on {dialect}")

    await db.execute(
        _UPSERTS[dialect](PartitionLock)
        .values(ground_id=ground_id, booking_date=booking_date, locked_at=now)
        .on_conflict_do_nothing()
    )
    await db.execute(
        update(PartitionLock)
        .where(PartitionLock.ground_id == ground_id, PartitionLock.booking_date == booking_date)
        .values(locked_at=now)
        .execution_options(synchronize_session=False)
    )


async def partition_rows(db: AsyncSession, ground_id: str, booking_date: date) -> list[Booking]:
    """Live (pending or confirmed) rows for one ground and day."""
    res = await db.execute(
        select(Booking)
        .where(
            Booking.ground_id == ground_id,
            Booking.booking_date == booking_date,
            Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
        )
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


def _hold_conflict(rows: list[Booking], slot: Slot, user_id: str, now: datetime):
    for row in rows:
        if row.status == BookingStatus.CONFIRMED.value and slots_overlap(row.slot, slot):
            return SlotUnavailable(BOOKED_MESSAGE, is_temporary_hold=False)
    for row in rows:
        if row.user_id != user_id and row.hold_active(now) and slots_overlap(row.slot, slot):
            return SlotUnavailable(HELD_MESSAGE, is_temporary_hold=True, heldUntil=row.hold_expires_at.isoformat())
    return None


async def acquire_hold(
    db: AsyncSession,
    ground_id: str,
    booking_date: date,
    slot: str | Slot,
    user_id: str,
    ttl_minutes: int = HOLD_TTL_MINUTES,
    now: datetime | None = None,
    notifier=None,
) -> Booking:
    now = now or utcnow()
    if isinstance(slot, str):
        slot = parse_slot(slot)
    if is_past(booking_date, slot, now, GROUND_TZ):
        raise ValidationFailed("Cannot hold a slot in the past")

    async with transaction(db):
        await lock_partition(db, ground_id, booking_date, now)
        await sweep_expired_holds(db, now, ground_id, booking_date)
        rows = await partition_rows(db, ground_id, booking_date)

        for row in rows:
            if row.user_id == user_id and row.hold_active(now) and slots_overlap(row.slot, slot):
                logger.info("returning existing hold %s for user %s", row.booking_id, user_id)
                return row

        conflict = _hold_conflict(rows, slot, user_id, now)
        if conflict:
            raise conflict

        hold = Booking(
            booking_id=Booking.generate_hold_id(),
            user_id=user_id,
            ground_id=ground_id,
            booking_date=booking_date,
            start_time=slot.start_label,
            end_time=slot.end_label,
            duration_hours=slot.duration_hours,
            status=BookingStatus.PENDING.value,
            is_on_hold=True,
            hold_started_at=now,
            hold_expires_at=now + timedelta(minutes=ttl_minutes),
            team_name="Temporary Hold",
            player_count=1,
            base_amount=0,
            discount=0,
            fee=0,
            total_amount=0,
            payment_status="pending",
            created_at=now,
            updated_at=now,
        )
        db.add(hold)

    logger.info("hold %s acquired by %s on %s %s %s", hold.booking_id, user_id, ground_id, booking_date, slot)
    if notifier:
        notifier.emit(user_id, HOLD_ACQUIRED, booking_payload(hold))
    return hold


async def _owned_hold(db: AsyncSession, hold_id: str, user_id: str) -> Booking | None:
    res = await db.execute(
        select(Booking)
        .where(
            Booking.booking_id == hold_id,
            Booking.user_id == user_id,
            Booking.is_on_hold.is_(True),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def renew_hold(
    db: AsyncSession,
    hold_id: str,
    user_id: str,
    ttl_minutes: int = HOLD_TTL_MINUTES,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    async with transaction(db):
        hold = await _owned_hold(db, hold_id, user_id)
        if not hold or not hold.hold_active(now):
            raise NotFound("Hold not found or already expired")
        hold.hold_expires_at = now + timedelta(minutes=ttl_minutes)
        hold.updated_at = now
    return hold


async def release_hold(
    db: AsyncSession,
    hold_id: str,
    user_id: str,
    now: datetime | None = None,
    notifier=None,
) -> Booking:
    now = now or utcnow()
    async with transaction(db):
        hold = await _owned_hold(db, hold_id, user_id)
        if not hold:
            raise NotFound("Hold not found")
        hold.is_on_hold = False
        hold.status = BookingStatus.CANCELLED.value
        hold.cancelled_at = now
        hold.cancelled_by = Actor.USER.value
        hold.cancellation_reason = "Hold released"
        hold.updated_at = now

    logger.info("hold %s released by %s", hold_id, user_id)
    if notifier:
        notifier.emit(user_id, HOLD_RELEASED, booking_payload(hold))
    return hold
