"""
Payment reconciliation.

Order creation, client polling, the gateway webhook, the read-side auto-fix and
the background worker all end in ``reconcile``; it is the only place a
booking's status moves because of a payment. It takes the ground/day lock and
then the row lock, so a webhook and a poll arriving together are applied one
after the other, as are payments for two overlapping bookings. Replaying the
same gateway status is a no-op.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import (
    apply_cancellation,
    confirmed_conflict,
    get_booking,
    get_booking_by_order,
    lock_booking_partition,
)
from .config import (
    MIN_ORDER_AMOUNT,
    PAYMENT_NOTIFY_URL,
    PAYMENT_RETURN_URL,
    PENDING_CONFLICT_WINDOW_MINUTES,
    PENDING_PAYMENT_TTL_MINUTES,
)
from .db import transaction
from .errors import GatewayUnavailable, NotFound, ValidationFailed
from .events import booking_payload
from .gateway import PaymentGateway, map_status
from .idempotency import is_processed, mark_processed
from .models import Booking
from .notifications import BOOKING_CANCELLED, BOOKING_CONFIRMED, PAYMENT_FAILED, REFUND_REQUIRED
from .states import Actor, BookingStatus, GatewayStatus, PaymentStatus
from .types import utcnow

logger = logging.getLogger(__name__)

CONFLICT_REASON = "Slot no longer available - booking conflict detected after payment"
PAYMENT_TIMEOUT_REASON = "Payment timeout"


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    CONFLICT_REFUNDED = "conflict_refunded"
    REFUND_REQUIRED = "refund_required"
    FAILED = "failed"
    PENDING = "pending"
    NOOP = "noop"


def _customer(booking: Booking) -> dict:
    return {
        "customer_id": str(booking.user_id),
        "customer_name": booking.contact_name or "Customer",
        "customer_phone": booking.contact_phone or "",
        "customer_email": booking.contact_email or "customer@example.com",
    }


def _check_payable(booking: Booking) -> None:
    if booking.is_on_hold:
        raise ValidationFailed("A hold cannot be paid for, create a booking first")
    if booking.status != BookingStatus.PENDING.value:
        raise ValidationFailed(f"Booking is {booking.status}, payment is not possible")
    if booking.payment_status != PaymentStatus.PENDING.value:
        raise ValidationFailed(f"Payment already {booking.payment_status}")


async def create_order(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking_id: str,
    reset: bool = False,
    now: datetime | None = None,
) -> Booking:
    """
    Registers a gateway order for a pending booking. An existing order is
    reused unless ``reset`` is set. If the gateway call fails the booking is
    left exactly as it was.
    """
    now = now or utcnow()

    async with transaction(db):
        booking = await get_booking(db, booking_id)
        _check_payable(booking)
        if booking.gateway_order_id and not reset:
            logger.info("reusing gateway order %s for %s", booking.gateway_order_id, booking.booking_id)
            return booking

        amount = Decimal(booking.total_amount or 0)
        if amount < MIN_ORDER_AMOUNT:
            raise ValidationFailed(f"Booking amount must be at least {MIN_ORDER_AMOUNT} {booking.currency}")

        order_id = f"order_{booking.id}_{int(now.timestamp() * 1000)}"
        currency = booking.currency
        customer = _customer(booking)

    order = await gateway.create_order(
        order_id=order_id,
        amount=amount,
        currency=currency,
        customer=customer,
        return_url=PAYMENT_RETURN_URL.format(booking_id=booking_id),
        notify_url=PAYMENT_NOTIFY_URL,
    )

    async with transaction(db):
        booking = await get_booking(db, booking_id, lock=True)
        _check_payable(booking)
        if booking.gateway_order_id and not reset:
            # a concurrent request stored its order first; ours is left to expire unpaid
            logger.warning("order %s discarded, %s already has %s", order.order_id, booking_id, booking.gateway_order_id)
            return booking

        booking.gateway_order_id = order.order_id
        booking.payment_session_id = order.payment_session_id
        booking.checkout_url = order.checkout_url
        booking.payment_status = PaymentStatus.PENDING.value
        booking.updated_at = now

    logger.info("gateway order %s created for %s amount=%s", order.order_id, booking_id, amount)
    return booking


async def verify(gateway: PaymentGateway, order_id: str) -> tuple[GatewayStatus, dict]:
    raw = await gateway.fetch_order(order_id)
    return map_status(raw.get("order_status")), raw


def _confirm(booking: Booking, now: datetime) -> None:
    booking.status = BookingStatus.CONFIRMED.value
    booking.confirmed_at = now
    booking.confirmation_code = booking.confirmation_code or Booking.generate_confirmation_code()
    booking.confirmed_by = Actor.SYSTEM.value


def _mark_paid(booking: Booking, raw: dict | None, now: datetime) -> None:
    booking.payment_status = PaymentStatus.COMPLETED.value
    booking.paid_at = booking.paid_at or now
    if raw is not None:
        booking.payment_details = raw
    booking.updated_at = now


def _apply_paid(booking: Booking, other: Booking | None, raw: dict | None, now: datetime) -> ReconcileOutcome:
    status = booking.status

    if status == BookingStatus.CONFIRMED.value:
        if booking.payment_status == PaymentStatus.COMPLETED.value:
            return ReconcileOutcome.ALREADY_CONFIRMED
        _mark_paid(booking, raw, now)
        return ReconcileOutcome.ALREADY_CONFIRMED

    if status == BookingStatus.PENDING.value:
        _mark_paid(booking, raw, now)
        if other is not None:
            logger.warning(
                "booking %s paid but slot taken by %s, cancelling for refund",
                booking.booking_id, other.booking_id,
            )
            apply_cancellation(booking, Actor.SYSTEM, CONFLICT_REASON, now)
            return ReconcileOutcome.CONFLICT_REFUNDED
        _confirm(booking, now)
        return ReconcileOutcome.CONFIRMED

    if status == BookingStatus.CANCELLED.value:
        if booking.payment_status == PaymentStatus.REFUNDED.value:
            return ReconcileOutcome.NOOP
        # money arrived for a booking that was already cancelled
        logger.warning("late payment for cancelled booking %s, flagging refund", booking.booking_id)
        booking.payment_status = PaymentStatus.REFUNDED.value
        booking.paid_at = booking.paid_at or now
        booking.refund_amount = booking.total_amount
        booking.refund_required = True
        if raw is not None:
            booking.payment_details = raw
        booking.updated_at = now
        return ReconcileOutcome.REFUND_REQUIRED

    if booking.payment_status != PaymentStatus.COMPLETED.value:
        _mark_paid(booking, raw, now)
    return ReconcileOutcome.NOOP


def _apply_failed(booking: Booking, reason: str, raw: dict | None, now: datetime) -> ReconcileOutcome:
    if booking.status == BookingStatus.PENDING.value:
        booking.payment_status = PaymentStatus.FAILED.value
        if raw is not None:
            booking.payment_details = raw
        apply_cancellation(booking, Actor.SYSTEM, reason, now)
        return ReconcileOutcome.FAILED

    if booking.status == BookingStatus.CANCELLED.value and booking.payment_status == PaymentStatus.PENDING.value:
        booking.payment_status = PaymentStatus.FAILED.value
        booking.updated_at = now
        return ReconcileOutcome.FAILED

    if booking.payment_status == PaymentStatus.COMPLETED.value:
        logger.warning("ignoring failure for %s, payment already completed", booking.booking_id)
    return ReconcileOutcome.NOOP


async def reconcile(
    db: AsyncSession,
    booking_id: str,
    status: GatewayStatus,
    raw: dict | None = None,
    provider_status: str | None = None,
    reason: str | None = None,
    notifier=None,
    now: datetime | None = None,
) -> tuple[Booking, ReconcileOutcome]:
    now = now or utcnow()

    async with transaction(db):
        booking = await lock_booking_partition(db, booking_id, now)

        if booking.is_on_hold:
            logger.warning("payment status %s received for hold %s, ignored", status.value, booking_id)
            return booking, ReconcileOutcome.NOOP

        if status == GatewayStatus.PAID:
            other = None
            if booking.status == BookingStatus.PENDING.value:
                other = await confirmed_conflict(db, booking)
            outcome = _apply_paid(booking, other, raw, now)
        elif status == GatewayStatus.FAILED_TERMINAL:
            reason = reason or f"Payment {(provider_status or 'failed').lower()}"
            outcome = _apply_failed(booking, reason, raw, now)
        elif booking.status == BookingStatus.PENDING.value:
            outcome = ReconcileOutcome.PENDING
        else:
            outcome = ReconcileOutcome.NOOP

    if outcome not in (ReconcileOutcome.NOOP, ReconcileOutcome.PENDING, ReconcileOutcome.ALREADY_CONFIRMED):
        logger.info("reconciled %s with %s: %s", booking_id, status.value, outcome.value)
    if notifier:
        _notify(notifier, booking, outcome)
    return booking, outcome


def _notify(notifier, booking: Booking, outcome: ReconcileOutcome) -> None:
    payload = booking_payload(booking)
    if outcome == ReconcileOutcome.CONFIRMED:
        notifier.emit(booking.user_id, BOOKING_CONFIRMED, {**payload, "confirmation_code": booking.confirmation_code})
    elif outcome == ReconcileOutcome.FAILED:
        notifier.emit(booking.user_id, PAYMENT_FAILED, {**payload, "reason": booking.cancellation_reason})
    elif outcome in (ReconcileOutcome.CONFLICT_REFUNDED, ReconcileOutcome.REFUND_REQUIRED):
        if outcome == ReconcileOutcome.CONFLICT_REFUNDED:
            notifier.emit(booking.user_id, BOOKING_CANCELLED, {**payload, "reason": booking.cancellation_reason})
        notifier.emit(booking.user_id, REFUND_REQUIRED, {**payload, "refund_amount": str(booking.refund_amount)})


async def verify_booking(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking: Booking,
    notifier=None,
    now: datetime | None = None,
) -> tuple[Booking, ReconcileOutcome]:
    if not booking.gateway_order_id:
        raise ValidationFailed("No payment order exists for this booking")
    # release the read snapshot before the gateway round-trip
    await db.commit()
    status, raw = await verify(gateway, booking.gateway_order_id)
    return await reconcile(
        db, booking.booking_id, status,
        raw=raw, provider_status=raw.get("order_status"), notifier=notifier, now=now,
    )


async def auto_fix(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking: Booking,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    """Self-heals a pending booking whose webhook never arrived. Never raises on gateway trouble."""
    if booking.status != BookingStatus.PENDING.value or not booking.gateway_order_id or booking.is_on_hold:
        return booking
    try:
        booking, outcome = await verify_booking(db, gateway, booking, notifier=notifier, now=now)
    except (GatewayUnavailable, NotFound) as e:
        logger.warning("auto-fix skipped for %s: %s", booking.booking_id, e.message)
        return booking
    if outcome != ReconcileOutcome.PENDING:
        logger.info("auto-fix reconciled %s: %s", booking.booking_id, outcome.value)
    return booking


async def mark_payment_failed(
    db: AsyncSession,
    booking_id: str,
    reason: str | None = None,
    notifier=None,
    now: datetime | None = None,
) -> tuple[Booking, ReconcileOutcome]:
    return await reconcile(
        db, booking_id, GatewayStatus.FAILED_TERMINAL,
        reason=reason or "Payment failed", notifier=notifier, now=now,
    )


def parse_webhook(payload: dict) -> tuple[str | None, str | None]:
    """
    Pulls (order_id, provider_status) out of either the flat payload
    (``order_id``/``order_status``) or the nested ``data.order``/``data.payment`` one.
    """
    payload = payload or {}
    data = payload.get("data") or {}
    order = data.get("order") or {}
    payment = data.get("payment") or {}

    order_id = payload.get("order_id") or order.get("order_id")
    status = payload.get("order_status") or order.get("order_status") or payment.get("payment_status")
    return order_id, status


async def handle_webhook(
    db: AsyncSession,
    gateway: PaymentGateway,
    payload: dict,
    raw_body: bytes = b"",
    timestamp: str | None = None,
    signature: str | None = None,
    notifier=None,
) -> dict:
    order_id, provider_status = parse_webhook(payload)
    if not order_id:
        logger.warning("webhook without order id ignored")
        return {"status": "ignored"}

    if gateway.webhook_secret:
        if not gateway.verify_signature(raw_body, timestamp, signature):
            logger.warning("webhook for %s failed signature check", order_id)
            return {"status": "rejected"}
        status, raw = map_status(provider_status), payload
    else:
        # unsigned deliveries are only a hint, the gateway has the real status
        status, raw = await verify(gateway, order_id)
        provider_status = raw.get("order_status")

    dedup_status = (provider_status or status.value).upper()
    if await is_processed(order_id, dedup_status):
        logger.info("duplicate webhook for %s (%s)", order_id, dedup_status)
        return {"status": "duplicate"}

    booking = await get_booking_by_order(db, order_id)
    if not booking:
        logger.warning("webhook for unknown order %s", order_id)
        return {"status": "ignored"}

    _, outcome = await reconcile(
        db, booking.booking_id, status,
        raw=raw, provider_status=provider_status, notifier=notifier,
    )
    await mark_processed(order_id, dedup_status)
    return {"status": "processed", "outcome": outcome.value}


async def reconcile_stale_orders(
    db: AsyncSession,
    gateway: PaymentGateway,
    now: datetime | None = None,
    notifier=None,
    limit: int = 50,
) -> int:
    """
    Polls the gateway for pending bookings whose order has been open a while,
    least recently polled first. An order still open once the payment window
    has passed is cancelled as a payment timeout; a later payment for it is
    flagged for refund like any other late payment.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=PENDING_CONFLICT_WINDOW_MINUTES)
    timeout = now - timedelta(minutes=PENDING_PAYMENT_TTL_MINUTES)
    res = await db.execute(
        select(Booking)
        .where(
            Booking.status == BookingStatus.PENDING.value,
            Booking.is_on_hold.is_(False),
            Booking.gateway_order_id.is_not(None),
            Booking.created_at < cutoff,
        )
        .order_by(Booking.updated_at, Booking.id)
        .limit(limit)
    )
    stale = list(res.scalars().all())

    changed = 0
    for booking in stale:
        try:
            booking, outcome = await verify_booking(db, gateway, booking, notifier=notifier, now=now)
        except GatewayUnavailable as e:
            logger.warning("stale order sweep stopped: %s", e.message)
            break
        except NotFound:
            logger.warning("order %s unknown to gateway", booking.gateway_order_id)
            await _touch(db, booking.booking_id, now)
            continue

        if outcome == ReconcileOutcome.PENDING and booking.created_at < timeout:
            booking, outcome = await reconcile(
                db, booking.booking_id, GatewayStatus.FAILED_TERMINAL,
                reason=PAYMENT_TIMEOUT_REASON, notifier=notifier, now=now,
            )
        if outcome == ReconcileOutcome.PENDING:
            await _touch(db, booking.booking_id, now)
        else:
            changed += 1
    return changed


async def _touch(db: AsyncSession, booking_id: str, now: datetime) -> None:
    # moves a still-open order to the back of the polling queue
    async with transaction(db):
        booking = await get_booking(db, booking_id, lock=True)
        booking.updated_at = now
