from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HoldRequest(APIModel):
    resource_id: str
    date: date
    slot: str


class HoldResponse(APIModel):
    hold_id: str
    resource_id: str
    date: date
    slot: str
    expires_at: datetime | None = None
    is_on_hold: bool


class ContactPerson(APIModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None


class PlayerDetails(APIModel):
    team_name: str | None = None
    player_count: int | None = None
    contact_person: ContactPerson = Field(default_factory=ContactPerson)
    requirements: str | None = None


class CreateBookingRequest(APIModel):
    resource_id: str
    date: date
    slot: str
    player_details: PlayerDetails = Field(default_factory=PlayerDetails)
    confirm: bool = False  # admin only: skip payment


class StatusChangeRequest(APIModel):
    status: str
    reason: str | None = None


class Pricing(APIModel):
    base_amount: float
    discount: float
    fee: float
    total_amount: float
    currency: str


class Payment(APIModel):
    gateway_order_id: str | None = None
    status: str
    paid_at: datetime | None = None
    refund_amount: float | None = None
    refund_required: bool = False


class Confirmation(APIModel):
    confirmed_at: datetime | None = None
    confirmation_code: str | None = None
    confirmed_by: str | None = None


class Cancellation(APIModel):
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    reason: str | None = None


class BookingResponse(APIModel):
    booking_id: str
    user_id: str
    resource_id: str
    date: date
    slot: str
    start_time: str
    end_time: str
    duration_hours: float
    status: str
    is_on_hold: bool
    hold_expires_at: datetime | None = None
    player_details: PlayerDetails
    pricing: Pricing
    payment: Payment
    confirmation: Confirmation | None = None
    cancellation: Cancellation | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, b) -> "BookingResponse":
        return cls(
            booking_id=b.booking_id,
            user_id=b.user_id,
            resource_id=b.ground_id,
            date=b.booking_date,
            slot=b.time_slot,
            start_time=b.start_time,
            end_time=b.end_time,
            duration_hours=b.duration_hours,
            status=b.status,
            is_on_hold=b.is_on_hold,
            hold_expires_at=b.hold_expires_at if b.is_on_hold else None,
            player_details=PlayerDetails(
                team_name=b.team_name,
                player_count=b.player_count,
                contact_person=ContactPerson(name=b.contact_name, phone=b.contact_phone, email=b.contact_email),
                requirements=b.requirements,
            ),
            pricing=Pricing(
                base_amount=float(b.base_amount or 0),
                discount=float(b.discount or 0),
                fee=float(b.fee or 0),
                total_amount=float(b.total_amount or 0),
                currency=b.currency,
            ),
            payment=Payment(
                gateway_order_id=b.gateway_order_id,
                status=b.payment_status,
                paid_at=b.paid_at,
                refund_amount=float(b.refund_amount) if b.refund_amount is not None else None,
                refund_required=bool(b.refund_required),
            ),
            confirmation=Confirmation(
                confirmed_at=b.confirmed_at,
                confirmation_code=b.confirmation_code,
                confirmed_by=b.confirmed_by,
            ) if b.confirmed_at else None,
            cancellation=Cancellation(
                cancelled_at=b.cancelled_at,
                cancelled_by=b.cancelled_by,
                reason=b.cancellation_reason,
            ) if b.cancelled_at else None,
            created_at=b.created_at,
        )


class Pagination(APIModel):
    page: int
    limit: int
    total: int
    pages: int


class BookingListResponse(APIModel):
    bookings: list[BookingResponse]
    pagination: Pagination


class AvailabilityResponse(APIModel):
    resource_id: str
    date: date
    available_slots: list[str]
    booked_slots: list[str]


class OrderRequest(APIModel):
    booking_id: str
    reset: bool = False


class OrderResponse(APIModel):
    booking_id: str
    order_id: str
    checkout_url: str
    payment_session_id: str | None = None
    amount: float
    currency: str


class VerifyRequest(APIModel):
    order_id: str
    booking_id: str


class VerifyResponse(APIModel):
    outcome: str
    payment_status: str
    requires_refund: bool
    booking: BookingResponse


class PaymentFailedRequest(APIModel):
    booking_id: str
    reason: str | None = None


class PaymentStatusResponse(APIModel):
    booking_id: str
    status: str
    payment_status: str
    order_id: str | None = None
