# Availability projection: turns a car's window cache plus its ledger bookings into a classification.
# Pure functions only; callers load the rows and pass "today" explicitly.
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union

# Reservation statuses that occupy a car's calendar.
# Shared by the Conflict Guard, the directory resync and this projector.
BLOCKING_STATUSES = frozenset({"pending", "active", "upcoming"})

RESERVATION_STATUSES = ("pending", "active", "upcoming", "completed", "cancelled")


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Closed-interval overlap on days: back-to-back windows sharing a day do overlap."""
    return a_start <= b_end and a_end >= b_start


class Window(NamedTuple):
    reservation_id: int
    pickup: date
    return_: date
    status: str

    @property
    def blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def contains(self, day: date) -> bool:
        return overlaps(self.pickup, self.return_, day, day)


def window_from_cache(entry: Any) -> Window:
    return Window(entry.booking_id, entry.pickup_date, entry.return_date, entry.status)


def window_from_booking(booking: Any) -> Window:
    return Window(booking.id, booking.pickup_date, booking.return_date, booking.status)


@dataclass(frozen=True)
class FullyAvailable:
    state: str = "fully_available"


@dataclass(frozen=True)
class Booked:
    until: date
    state: str = "booked"


@dataclass(frozen=True)
class AvailableUntil:
    next_start: date
    days: int
    state: str = "available_until"


Availability = Union[FullyAvailable, Booked, AvailableUntil]


def merge_windows(cached: Iterable[Any], bookings: Iterable[Any]) -> List[Window]:
    """Dedupe cache entries and ledger bookings by reservation id; the ledger wins on mismatch."""
    merged: Dict[int, Window] = {}
    for entry in cached:
        w = window_from_cache(entry)
        merged[w.reservation_id] = w
    for booking in bookings:
        w = window_from_booking(booking)
        merged[w.reservation_id] = w
    return sorted(merged.values(), key=lambda w: (w.pickup, w.reservation_id))


def classify(cached: Iterable[Any], bookings: Iterable[Any], today: Optional[date] = None) -> Availability:
    """
    Classify one car for `today`.

    - A blocking window contains today: Booked(until = latest return among those windows)
    - Else a blocking window starts after today: AvailableUntil(earliest pickup, whole days until it)
    - Else: FullyAvailable
    """
    today = today or utc_today()
    blocking = [w for w in merge_windows(cached, bookings) if w.blocking]

    current = [w for w in blocking if w.contains(today)]
    if current:
        return Booked(until=max(w.return_ for w in current))

    upcoming = [w for w in blocking if w.pickup > today]
    if upcoming:
        next_start = min(w.pickup for w in upcoming)
        return AvailableUntil(next_start=next_start, days=(next_start - today).days)

    return FullyAvailable()


def classify_many(
    car_ids: Iterable[int],
    cached: Iterable[Any],
    bookings: Iterable[Any],
    today: Optional[date] = None,
) -> Dict[int, Availability]:
    """Classify many cars in one pass over cache entries and bookings spanning all of them."""
    today = today or utc_today()
    cache_by_car: Dict[int, list] = defaultdict(list)
    for entry in cached:
        cache_by_car[entry.car_id].append(entry)
    ledger_by_car: Dict[int, list] = defaultdict(list)
    for booking in bookings:
        ledger_by_car[booking.car_id].append(booking)
    return {cid: classify(cache_by_car[cid], ledger_by_car[cid], today) for cid in car_ids}


def is_rented(windows: Iterable[Window], today: Optional[date] = None) -> bool:
    """A car counts as rented only while a blocking window contains today.

    Windows that start in the future do not make the car rented.
    """
    today = today or utc_today()
    return any(w.blocking and w.contains(today) for w in windows)


def availability_payload(result: Availability) -> dict:
    if isinstance(result, Booked):
        return {"state": result.state, "until": result.until}
    if isinstance(result, AvailableUntil):
        return {"state": result.state, "next_start": result.next_start, "days": result.days}
    return {"state": result.state}
