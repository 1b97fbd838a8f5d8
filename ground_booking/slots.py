"""
Slot arithmetic.

A slot is a ``"HH:MM-HH:MM"`` time range on a calendar day. Comparisons pin both
ends to a fixed reference day so only the time of day matters; an end of
``00:00`` after a later start means midnight at the end of that day.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo

from .errors import MalformedSlot

REFERENCE_DAY = date(2000, 1, 1)

_TIME_RE = re.compile(r"^([0-9]|0[0-9]|1[0-9]|2[0-3]):([0-5][0-9])$")


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    @property
    def start_label(self) -> str:
        return self.start.strftime("%H:%M")

    @property
    def end_label(self) -> str:
        return self.end.strftime("%H:%M")

    @property
    def start_hour(self) -> int:
        return self.start.hour

    @property
    def duration_hours(self) -> float:
        return duration(self.start, self.end)

    def __str__(self) -> str:
        return f"{self.start_label}-{self.end_label}"


def _parse_time(token: str) -> time:
    m = _TIME_RE.match(token.strip())
    if not m:
        raise MalformedSlot(f"Invalid time '{token.strip()}', expected HH:MM")
    return time(int(m.group(1)), int(m.group(2)))


def _on_reference_day(t: time) -> datetime:
    return datetime.combine(REFERENCE_DAY, t)


def parse_slot(value: str) -> Slot:
    if not isinstance(value, str):
        raise MalformedSlot("Time slot must be a string like 'HH:MM-HH:MM'")

    parts = value.split("-")
    if len(parts) != 2:
        raise MalformedSlot(f"Invalid time slot '{value}', expected 'HH:MM-HH:MM'")

    start = _on_reference_day(_parse_time(parts[0]))
    end = _on_reference_day(_parse_time(parts[1]))

    # "23:00-00:00" ends at midnight
    if end.time() == time(0, 0) and start.time() != time(0, 0):
        end += timedelta(days=1)

    if start >= end:
        raise MalformedSlot(f"Invalid time slot '{value}', start must be before end")

    return Slot(start=start, end=end)


def slot_from_labels(start_label: str, end_label: str) -> Slot:
    return parse_slot(f"{start_label}-{end_label}")


def duration(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def slots_overlap(a: Slot, b: Slot) -> bool:
    return overlaps(a.start, a.end, b.start, b.end)


def same_slot(a: Slot, b: Slot) -> bool:
    return a.start_label == b.start_label and a.end_label == b.end_label


def local_now(now: datetime, tz: tzinfo) -> datetime:
    return now.astimezone(tz)


def is_past(booking_date: date, slot: Slot, now: datetime, tz: tzinfo) -> bool:
    """
    True when the slot can no longer be booked: any date before today, or today
    with a start time at or before the current time of day (in the ground's zone).
    """
    current = local_now(now, tz)
    today = current.date()
    if booking_date < today:
        return True
    if booking_date > today:
        return False
    current_minute = _on_reference_day(time(current.hour, current.minute))
    return slot.start <= current_minute


def hours_until_start(booking_date: date, slot: Slot, now: datetime, tz: tzinfo) -> float:
    starts_at = datetime.combine(booking_date, slot.start.time(), tzinfo=tz)
    return (starts_at - now).total_seconds() / 3600


def hourly_slots() -> list[str]:
    return [f"{h:02d}:00-{(h + 1) % 24:02d}:00" for h in range(24)]
