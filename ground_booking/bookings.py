"""
Booking transaction engine.

Every write path here runs inside one store transaction that first takes the
ground/day partition lock and sweeps expired holds there, then checks the live
rows of that partition for overlaps before writing. ``create_booking``
additionally re-queries rows created in the last few seconds right before
inserting.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import (
    GROUND_TZ,
    PENDING_CONFLICT_WINDOW_MINUTES,
    PENDING_PAYMENT_TTL_MINUTES,
    RECENT_RECHECK_SECONDS,
)
from .db import transaction
from .errors import Forbidden, NotFound, SlotUnavailable, ValidationFailed
from .events import booking_payload
from .holds import BOOKED_MESSAGE, HELD_MESSAGE, lock_partition, partition_rows, sweep_expired_holds
from .models import Booking
from .notifications import BOOKING_CANCELLED, BOOKING_CONFIRMED, BOOKING_PENDING, REFUND_REQUIRED
from .pricing import price
from .slots import Slot, hourly_slots, hours_until_start, is_past, parse_slot, same_slot, slots_overlap
from .states import Actor, BookingStatus, PaymentStatus, can_transition
from .types import utcnow

logger = logging.getLogger(__name__)

USER_CANCEL_CUTOFF_HOURS = 4
FULL_REFUND_HOURS = 4
HALF_REFUND_HOURS = 2

JUST_BOOKED_MESSAGE = "Another booking for this slot was just created. Please choose a different time."


def _is_blocking(row: Booking, now: datetime, user_id: str | None = None) -> bool:
    """Whether a live row keeps the slot it covers from being booked again."""
    if row.status == BookingStatus.CONFIRMED.value:
        return True
    if row.status != BookingStatus.PENDING.value:
        return False
    if row.is_on_hold:
        return row.hold_active(now) and row.user_id != user_id
    window_start = now - timedelta(minutes=PENDING_CONFLICT_WINDOW_MINUTES)
    return row.created_at >= window_start and row.payment_status != PaymentStatus.FAILED.value


def _conflict_error(blockers: list[Booking]) -> SlotUnavailable:
    # a permanent booking wins over a hold when both cover the slot
    permanent = [b for b in blockers if not b.is_on_hold]
    if permanent:
        return SlotUnavailable(BOOKED_MESSAGE, is_temporary_hold=False)
    return SlotUnavailable(
        HELD_MESSAGE,
        is_temporary_hold=True,
        heldUntil=min(b.hold_expires_at for b in blockers).isoformat(),
    )


def find_conflicts(rows: list[Booking], slot: Slot, now: datetime, user_id: str | None = None) -> list[Booking]:
    return [
        row for row in rows
        if _is_blocking(row, now, user_id) and (same_slot(row.slot, slot) or slots_overlap(row.slot, slot))
    ]


def validate_player_details(details: dict, capacity: int | None) -> dict:
    details = details or {}
    contact = details.get("contactPerson") or {}
    if not (contact.get("name") or "").strip():
        raise ValidationFailed("Contact person name is required")
    if not (contact.get("phone") or "").strip():
        raise ValidationFailed("Contact person phone is required")

    try:
        player_count = int(details.get("playerCount") or 0)
    except (TypeError, ValueError):
        raise ValidationFailed("playerCount must be a number")
    if player_count < 1:
        raise ValidationFailed("At least one player is required")
    if capacity and player_count > capacity:
        raise ValidationFailed(f"Player count ({player_count}) exceeds ground capacity ({capacity})")

    return {
        "team_name": details.get("teamName"),
        "player_count": player_count,
        "contact_name": contact["name"].strip(),
        "contact_phone": contact["phone"].strip(),
        "contact_email": contact.get("email"),
        "requirements": details.get("requirements"),
    }


async def find_by_idempotency_key(db: AsyncSession, user_id: str, key: str) -> Booking | None:
    res = await db.execute(
        select(Booking).where(Booking.user_id == user_id, Booking.idempotency_key == key)
    )
    return res.scalar_one_or_none()


async def _recent_rows(db: AsyncSession, ground_id: str, booking_date: date, since: datetime) -> list[Booking]:
    res = await db.execute(
        select(Booking)
        .where(
            Booking.ground_id == ground_id,
            Booking.booking_date == booking_date,
            Booking.created_at >= since,
            Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
        )
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def create_booking(
    db: AsyncSession,
    catalog,
    *,
    user_id: str,
    ground_id: str,
    booking_date: date,
    slot: str | Slot,
    player_details: dict,
    idempotency_key: str | None = None,
    confirm: bool = False,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()

    try:
        async with transaction(db):
            if idempotency_key:
                existing = await find_by_idempotency_key(db, user_id, idempotency_key)
                if existing:
                    logger.info("idempotent replay of %s for key %s", existing.booking_id, idempotency_key)
                    return existing

            if isinstance(slot, str):
                slot = parse_slot(slot)
            if is_past(booking_date, slot, now, GROUND_TZ):
                raise ValidationFailed("Cannot book a slot in the past")

            rate_table = await catalog.get_rate_table(ground_id)
            capacity = await catalog.get_capacity(ground_id)
            details = validate_player_details(player_details, capacity)

            await lock_partition(db, ground_id, booking_date, now)
            if idempotency_key:
                existing = await find_by_idempotency_key(db, user_id, idempotency_key)
                if existing:
                    logger.info("idempotent replay of %s for key %s", existing.booking_id, idempotency_key)
                    return existing

            await sweep_expired_holds(db, now, ground_id, booking_date)
            rows = await partition_rows(db, ground_id, booking_date)

            conflicts = find_conflicts(rows, slot, now, user_id)
            if conflicts:
                raise _conflict_error(conflicts)

            since = now - timedelta(seconds=RECENT_RECHECK_SECONDS)
            late = find_conflicts(await _recent_rows(db, ground_id, booking_date, since), slot, now, user_id)
            if late:
                logger.warning("late conflict on %s %s %s", ground_id, booking_date, slot)
                raise SlotUnavailable(JUST_BOOKED_MESSAGE, is_temporary_hold=False)

            quote = price(rate_table, slot)

            for row in rows:
                if row.user_id == user_id and row.hold_active(now) and slots_overlap(row.slot, slot):
                    row.is_on_hold = False
                    row.status = BookingStatus.CANCELLED.value
                    row.cancelled_at = now
                    row.cancelled_by = Actor.USER.value
                    row.cancellation_reason = "Converted to booking"
                    row.updated_at = now

            booking = Booking(
                booking_id=Booking.generate_booking_id(),
                user_id=user_id,
                ground_id=ground_id,
                booking_date=booking_date,
                start_time=slot.start_label,
                end_time=slot.end_label,
                duration_hours=slot.duration_hours,
                status=BookingStatus.PENDING.value,
                is_on_hold=False,
                base_amount=quote.base,
                discount=quote.discount,
                fee=quote.fee,
                total_amount=quote.total,
                currency=quote.currency,
                payment_status=PaymentStatus.PENDING.value,
                idempotency_key=idempotency_key,
                created_at=now,
                updated_at=now,
                **details,
            )
            if confirm:
                booking.status = BookingStatus.CONFIRMED.value
                booking.confirmed_at = now
                booking.confirmation_code = Booking.generate_confirmation_code()
                booking.confirmed_by = Actor.ADMIN.value

            db.add(booking)
            await db.flush()
    except IntegrityError:
        if not idempotency_key:
            raise
        existing = await find_by_idempotency_key(db, user_id, idempotency_key)
        if existing is None:
            raise
        logger.info("idempotency key %s raced, returning %s", idempotency_key, existing.booking_id)
        return existing

    logger.info(
        "booking %s created by %s on %s %s %s total=%s fallback_rate=%s",
        booking.booking_id, user_id, ground_id, booking_date, slot, quote.total, quote.used_fallback,
    )
    if notifier:
        kind = BOOKING_CONFIRMED if confirm else BOOKING_PENDING
        notifier.emit(user_id, kind, booking_payload(booking))
    return booking


async def get_booking(db: AsyncSession, booking_id: str, lock: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.booking_id == booking_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


async def lock_booking_partition(db: AsyncSession, booking_id: str, now: datetime | None = None) -> Booking:
    """Locks the ground/day of a booking, then the booking row itself, and returns it freshly read."""
    booking = await get_booking(db, booking_id)
    await lock_partition(db, booking.ground_id, booking.booking_date, now)
    return await get_booking(db, booking_id, lock=True)


async def get_booking_by_order(db: AsyncSession, order_id: str) -> Booking | None:
    res = await db.execute(select(Booking).where(Booking.gateway_order_id == order_id))
    return res.scalar_one_or_none()


async def list_user_bookings(
    db: AsyncSession,
    user_id: str,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Booking], int]:
    filters = [Booking.user_id == user_id, Booking.booking_id.not_like("TEMP%")]
    if status:
        filters.append(Booking.status == status)

    total = await db.scalar(select(func.count()).select_from(Booking).where(*filters))
    res = await db.execute(
        select(Booking)
        .where(*filters)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), int(total or 0)


async def confirmed_conflict(db: AsyncSession, booking: Booking) -> Booking | None:
    """Another confirmed row on the same ground/day whose slot overlaps this one."""
    res = await db.execute(
        select(Booking).where(
            Booking.ground_id == booking.ground_id,
            Booking.booking_date == booking.booking_date,
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.id != booking.id,
        )
    )
    for other in res.scalars().all():
        if slots_overlap(other.slot, booking.slot):
            return other
    return None


def refund_amount_for(booking: Booking, now: datetime) -> Decimal:
    """Full refund four or more hours before start, half from two hours, nothing after."""
    hours = hours_until_start(booking.booking_date, booking.slot, now, GROUND_TZ)
    total = Decimal(booking.total_amount or 0)
    if hours >= FULL_REFUND_HOURS:
        return total
    if hours >= HALF_REFUND_HOURS:
        return (total / 2).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return Decimal("0")


def apply_cancellation(booking: Booking, actor: Actor, reason: str | None, now: datetime,
                       refund: Decimal | None = None) -> None:
    booking.status = BookingStatus.CANCELLED.value
    booking.is_on_hold = False
    booking.cancelled_at = now
    booking.cancelled_by = actor.value
    booking.cancellation_reason = reason
    booking.updated_at = now

    if booking.payment_status == PaymentStatus.COMPLETED.value:
        booking.payment_status = PaymentStatus.REFUNDED.value
        booking.refund_amount = refund if refund is not None else booking.total_amount
        booking.refund_required = booking.refund_amount > 0


async def change_status(
    db: AsyncSession,
    booking_id: str,
    new_status: str,
    actor: Actor,
    actor_id: str,
    reason: str | None = None,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    try:
        target = BookingStatus(new_status)
    except ValueError:
        raise ValidationFailed(f"Unknown booking status '{new_status}'")

    async with transaction(db):
        booking = await lock_booking_partition(db, booking_id, now)

        if booking.is_on_hold:
            raise ValidationFailed("Holds are released through the holds API")
        if not can_transition(booking.status, target.value):
            raise ValidationFailed(f"Cannot change booking status from {booking.status} to {target.value}")

        if actor == Actor.USER:
            if target != BookingStatus.CANCELLED:
                raise Forbidden("Only the ground owner or an administrator can set this status")
            if (
                booking.status == BookingStatus.CONFIRMED.value
                and hours_until_start(booking.booking_date, booking.slot, now, GROUND_TZ) < USER_CANCEL_CUTOFF_HOURS
            ):
                raise ValidationFailed(
                    f"Bookings can only be cancelled at least {USER_CANCEL_CUTOFF_HOURS} hours before the start time"
                )

        if target == BookingStatus.CONFIRMED:
            other = await confirmed_conflict(db, booking)
            if other:
                raise SlotUnavailable(BOOKED_MESSAGE, is_temporary_hold=False)
            booking.status = target.value
            booking.confirmed_at = now
            booking.confirmation_code = booking.confirmation_code or Booking.generate_confirmation_code()
            booking.confirmed_by = actor.value
            booking.updated_at = now
        elif target == BookingStatus.CANCELLED:
            refund = refund_amount_for(booking, now) if actor == Actor.USER else None
            apply_cancellation(booking, actor, reason or f"Cancelled by {actor.value}", now, refund)
        else:
            booking.status = target.value
            booking.updated_at = now

    logger.info("booking %s -> %s by %s %s", booking.booking_id, booking.status, actor.value, actor_id)
    if notifier:
        if target == BookingStatus.CONFIRMED:
            notifier.emit(booking.user_id, BOOKING_CONFIRMED, booking_payload(booking))
        elif target == BookingStatus.CANCELLED:
            notifier.emit(booking.user_id, BOOKING_CANCELLED, {**booking_payload(booking), "reason": booking.cancellation_reason})
            if booking.refund_required:
                notifier.emit(booking.user_id, REFUND_REQUIRED, {**booking_payload(booking), "refund_amount": str(booking.refund_amount)})
    return booking


async def availability(db: AsyncSession, ground_id: str, booking_date: date, now: datetime | None = None) -> dict:
    now = now or utcnow()
    async with transaction(db):
        await sweep_expired_holds(db, now, ground_id, booking_date)
        rows = [r for r in await partition_rows(db, ground_id, booking_date) if _is_blocking(r, now)]

    available, booked = [], []
    for label in hourly_slots():
        slot = parse_slot(label)
        if any(slots_overlap(r.slot, slot) for r in rows):
            booked.append(label)
        else:
            available.append(label)
    return {"availableSlots": available, "bookedSlots": booked}


async def expire_stale_pending(db: AsyncSession, now: datetime | None = None, notifier=None) -> int:
    """Cancels pending bookings that never reached the payment gateway."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=PENDING_PAYMENT_TTL_MINUTES)
    async with transaction(db):
        res = await db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.PENDING.value,
                Booking.is_on_hold.is_(False),
                Booking.gateway_order_id.is_(None),
                Booking.created_at < cutoff,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        stale = list(res.scalars().all())
        for booking in stale:
            apply_cancellation(booking, Actor.SYSTEM, "Payment timeout", now)

    for booking in stale:
        logger.info("booking %s cancelled after payment timeout", booking.booking_id)
        if notifier:
            notifier.emit(booking.user_id, BOOKING_CANCELLED, {**booking_payload(booking), "reason": "Payment timeout"})
    return len(stale)
