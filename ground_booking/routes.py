import json
import logging
import math
from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import bookings as engine
from . import holds, reconciliation
from .catalog import GroundCatalog
from .db import get_db
from .errors import Forbidden, GroundNotFound, ValidationFailed
from .gateway import PaymentGateway
from .notifications import notifier as default_notifier
from .rbac import ADMIN, actor_for, has_role, require_role
from .schemas import (
    AvailabilityResponse,
    BookingListResponse,
    BookingResponse,
    CreateBookingRequest,
    HoldRequest,
    HoldResponse,
    OrderRequest,
    OrderResponse,
    Pagination,
    PaymentFailedRequest,
    PaymentStatusResponse,
    StatusChangeRequest,
    VerifyRequest,
    VerifyResponse,
)
from .security import current_user_id, get_current_user
from .states import BookingStatus

logger = logging.getLogger(__name__)

router = APIRouter()


def get_catalog(request: Request) -> GroundCatalog:
    return GroundCatalog(request_id=getattr(request.state, "request_id", None))


def get_gateway() -> PaymentGateway:
    return PaymentGateway()


def get_notifier():
    return default_notifier


def _hold_response(hold) -> HoldResponse:
    return HoldResponse(
        hold_id=hold.booking_id,
        resource_id=hold.ground_id,
        date=hold.booking_date,
        slot=hold.time_slot,
        expires_at=hold.hold_expires_at,
        is_on_hold=hold.is_on_hold,
    )


async def _owned_booking(db: AsyncSession, booking_id: str, user: dict):
    booking = await engine.get_booking(db, booking_id)
    if booking.user_id != current_user_id(user) and not has_role(user, ADMIN):
        raise Forbidden("You do not have access to this booking")
    return booking


async def _ground_owner(catalog: GroundCatalog, ground_id: str) -> str | None:
    try:
        return await catalog.get_owner_id(ground_id)
    except GroundNotFound:
        return None


# ================= HOLDS =================

@router.post("/holds", response_model=HoldResponse, tags=["Holds"])
async def acquire_hold(
    data: HoldRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: GroundCatalog = Depends(get_catalog),
    notifier=Depends(get_notifier),
):
    await catalog.get_ground(data.resource_id)
    hold = await holds.acquire_hold(
        db, data.resource_id, data.date, data.slot, current_user_id(user), notifier=notifier,
    )
    return _hold_response(hold)


@router.post("/holds/{hold_id}/renew", response_model=HoldResponse, tags=["Holds"])
async def renew_hold(hold_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    hold = await holds.renew_hold(db, hold_id, current_user_id(user))
    return _hold_response(hold)


@router.delete("/holds/{hold_id}", tags=["Holds"])
async def release_hold(
    hold_id: str,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier),
):
    await holds.release_hold(db, hold_id, current_user_id(user), notifier=notifier)
    return {"message": "Hold released", "holdId": hold_id}


# ================= BOOKINGS =================

@router.post("/bookings", response_model=BookingResponse, tags=["Bookings"])
async def create_booking(
    data: CreateBookingRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: GroundCatalog = Depends(get_catalog),
    notifier=Depends(get_notifier),
):
    if data.confirm:
        require_role(user, [ADMIN])

    booking = await engine.create_booking(
        db,
        catalog,
        user_id=current_user_id(user),
        ground_id=data.resource_id,
        booking_date=data.date,
        slot=data.slot,
        player_details=data.player_details.model_dump(by_alias=True),
        idempotency_key=idempotency_key or None,
        confirm=data.confirm,
        notifier=notifier,
    )
    return BookingResponse.from_model(booking)


@router.get("/bookings", response_model=BookingListResponse, tags=["Bookings"])
async def my_bookings(
    status: BookingStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await engine.list_user_bookings(
        db, current_user_id(user), status=status.value if status else None, page=page, limit=limit,
    )
    return BookingListResponse(
        bookings=[BookingResponse.from_model(b) for b in rows],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse, tags=["Bookings"])
async def get_booking(
    booking_id: str,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: GroundCatalog = Depends(get_catalog),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    booking = await engine.get_booking(db, booking_id)
    uid = current_user_id(user)
    if booking.user_id != uid and not has_role(user, ADMIN):
        if await _ground_owner(catalog, booking.ground_id) != uid:
            raise Forbidden("You do not have access to this booking")

    booking = await reconciliation.auto_fix(db, gateway, booking, notifier=notifier)
    return BookingResponse.from_model(booking)


@router.patch("/bookings/{booking_id}/status", response_model=BookingResponse, tags=["Bookings"])
async def update_status(
    booking_id: str,
    data: StatusChangeRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    catalog: GroundCatalog = Depends(get_catalog),
    notifier=Depends(get_notifier),
):
    booking = await engine.get_booking(db, booking_id)
    uid = current_user_id(user)

    owner_id = None
    if not has_role(user, ADMIN) and booking.user_id != uid:
        owner_id = await _ground_owner(catalog, booking.ground_id)
    actor = actor_for(user, booking.user_id, owner_id)

    booking = await engine.change_status(
        db, booking_id, data.status, actor, uid, reason=data.reason, notifier=notifier,
    )
    return BookingResponse.from_model(booking)


# ================= AVAILABILITY =================

@router.get("/availability/{resource_id}/{day}", response_model=AvailabilityResponse, tags=["Availability"])
async def get_availability(resource_id: str, day: date, db: AsyncSession = Depends(get_db)):
    result = await engine.availability(db, resource_id, day)
    return AvailabilityResponse(
        resource_id=resource_id,
        date=day,
        available_slots=result["availableSlots"],
        booked_slots=result["bookedSlots"],
    )


# ================= PAYMENTS =================

@router.post("/payments/orders", response_model=OrderResponse, tags=["Payments"])
async def create_order(
    data: OrderRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    await _owned_booking(db, data.booking_id, user)
    booking = await reconciliation.create_order(db, gateway, data.booking_id, reset=data.reset)
    return OrderResponse(
        booking_id=booking.booking_id,
        order_id=booking.gateway_order_id,
        checkout_url=booking.checkout_url,
        payment_session_id=booking.payment_session_id,
        amount=float(booking.total_amount),
        currency=booking.currency,
    )


@router.post("/payments/verify", response_model=VerifyResponse, tags=["Payments"])
async def verify_payment(
    data: VerifyRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    booking = await _owned_booking(db, data.booking_id, user)
    if booking.gateway_order_id != data.order_id:
        raise ValidationFailed("Order does not belong to this booking")

    booking, outcome = await reconciliation.verify_booking(db, gateway, booking, notifier=notifier)
    return VerifyResponse(
        outcome=outcome.value,
        payment_status=booking.payment_status,
        requires_refund=bool(booking.refund_required),
        booking=BookingResponse.from_model(booking),
    )


@router.post("/payments/failed", response_model=BookingResponse, tags=["Payments"])
async def payment_failed(
    data: PaymentFailedRequest,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier),
):
    await _owned_booking(db, data.booking_id, user)
    booking, _ = await reconciliation.mark_payment_failed(db, data.booking_id, data.reason, notifier=notifier)
    return BookingResponse.from_model(booking)


@router.get("/payments/status/{booking_id}", response_model=PaymentStatusResponse, tags=["Payments"])
async def payment_status(
    booking_id: str,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    booking = await _owned_booking(db, booking_id, user)
    booking = await reconciliation.auto_fix(db, gateway, booking, notifier=notifier)
    return PaymentStatusResponse(
        booking_id=booking.booking_id,
        status=booking.status,
        payment_status=booking.payment_status,
        order_id=booking.gateway_order_id,
    )


@router.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("webhook body is not JSON")
        return {"status": "ignored"}

    try:
        return await reconciliation.handle_webhook(
            db,
            gateway,
            payload,
            raw_body=raw_body,
            timestamp=request.headers.get("x-webhook-timestamp"),
            signature=request.headers.get("x-webhook-signature"),
            notifier=notifier,
        )
    except Exception:
        # the gateway retries anything but a 200
        logger.exception("webhook processing failed")
        return {"status": "error"}

