from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from .config import CONVENIENCE_FEE_RATE, DEFAULT_CURRENCY
from .errors import ValidationFailed
from .slots import Slot

CENTS = Decimal("0.01")
UNITS = Decimal("1")


@dataclass(frozen=True)
class RateRange:
    start_hour: int
    end_hour: int
    per_hour: Decimal

    @property
    def overnight(self) -> bool:
        return self.start_hour > self.end_hour

    def contains(self, hour: int) -> bool:
        if self.overnight:
            return hour >= self.start_hour or hour < self.end_hour
        return self.start_hour <= hour < self.end_hour


@dataclass(frozen=True)
class RateTable:
    per_hour: Decimal | None = None
    ranges: tuple[RateRange, ...] = field(default_factory=tuple)
    discount: Decimal = Decimal("0")
    discount_percent: Decimal = Decimal("0")
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def from_catalog(cls, price: dict | None) -> "RateTable":
        """
        Builds a rate table from the ground catalog's ``price`` object, e.g.
        ``{"perHour": 500}`` or
        ``{"ranges": [{"start": "06:00", "end": "18:00", "perHour": 500}], "discount": 50}``.
        """
        price = price or {}
        ranges = tuple(_parse_range(r) for r in price.get("ranges") or [])
        per_hour = price.get("perHour")

        if per_hour is None and not ranges:
            raise ValidationFailed("Ground has no hourly rate configured")

        return cls(
            per_hour=_money(per_hour) if per_hour is not None else None,
            ranges=ranges,
            discount=_money(price.get("discount") or 0),
            discount_percent=_money(price.get("discountPercent") or 0),
            currency=price.get("currency") or DEFAULT_CURRENCY,
        )


@dataclass(frozen=True)
class Quote:
    base: Decimal
    discount: Decimal
    fee: Decimal
    total: Decimal
    currency: str
    per_hour: Decimal
    used_fallback: bool = False


def _money(value) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationFailed(f"Invalid amount in rate table: {value!r}")


def _hour(value) -> int:
    if isinstance(value, int):
        hour = value
    else:
        try:
            hour = int(str(value).split(":")[0])
        except ValueError:
            raise ValidationFailed(f"Invalid hour in rate table: {value!r}")
    if not 0 <= hour <= 24:
        raise ValidationFailed(f"Invalid hour in rate table: {value!r}")
    return hour % 24


def _parse_range(raw: dict) -> RateRange:
    start = raw.get("startHour", raw.get("start"))
    end = raw.get("endHour", raw.get("end"))
    per_hour = raw.get("perHour")
    if start is None or end is None or per_hour is None:
        raise ValidationFailed("Rate range needs start, end and perHour")
    return RateRange(start_hour=_hour(start), end_hour=_hour(end), per_hour=_money(per_hour))


def select_rate(table: RateTable, hour: int) -> tuple[Decimal, bool]:
    """Returns the hourly rate for a start hour and whether the fallback range was used."""
    if not table.ranges:
        return table.per_hour, False

    for r in table.ranges:
        if r.contains(hour):
            return r.per_hour, False

    return table.ranges[0].per_hour, True


def _hours(slot: Slot) -> Decimal:
    minutes = int((slot.end - slot.start).total_seconds() // 60)
    return Decimal(minutes) / Decimal(60)


def price(table: RateTable, slot: Slot) -> Quote:
    per_hour, used_fallback = select_rate(table, slot.start_hour)

    base = (per_hour * _hours(slot)).quantize(CENTS, rounding=ROUND_HALF_UP)

    discount = table.discount + (base * table.discount_percent / Decimal(100))
    discount = min(discount, base).quantize(CENTS, rounding=ROUND_HALF_UP)

    fee = (CONVENIENCE_FEE_RATE * (base - discount)).quantize(UNITS, rounding=ROUND_HALF_UP)
    total = base - discount + fee

    return Quote(
        base=base,
        discount=discount,
        fee=fee,
        total=total,
        currency=table.currency,
        per_hour=per_hour,
        used_fallback=used_fallback,
    )
