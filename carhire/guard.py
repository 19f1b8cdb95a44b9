# Conflict Guard: admits a booking window onto a car's cache only if no blocking window overlaps it.
# Each admission is a single conditional statement; a zero-row result means the window is taken.
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import Date, Integer, String, and_, delete, insert, literal, select, update
from sqlalchemy.orm import Session, aliased

from . import models
from .availability import BLOCKING_STATUSES
from .errors import ConflictError

logger = logging.getLogger("carhire.guard")

_windows = models.CarBookingWindow.__table__
_BLOCKING = tuple(sorted(BLOCKING_STATUSES))


def _overlapping(car_id: int, pickup: date, return_date: date, exclude_booking_id: Optional[int] = None):
    """
    Predicate for a blocking window on `car_id` overlapping [pickup, return_date].

    Closed intervals: existing.pickup <= return AND existing.return >= pickup.
    """
    other = aliased(models.CarBookingWindow)
    conditions = [
        other.car_id == car_id,
        other.status.in_(_BLOCKING),
        other.pickup_date <= return_date,
        other.return_date >= pickup,
    ]
    if exclude_booking_id is not None:
        conditions.append(other.booking_id != exclude_booking_id)
    return select(other.id).where(and_(*conditions)).exists()


def _blocked_until(db: Session, car_id: int, pickup: date, return_date: date, exclude_booking_id: Optional[int]) -> Optional[date]:
    query = db.query(models.CarBookingWindow.return_date).filter(
        models.CarBookingWindow.car_id == car_id,
        models.CarBookingWindow.status.in_(_BLOCKING),
        models.CarBookingWindow.pickup_date <= return_date,
        models.CarBookingWindow.return_date >= pickup,
    )
    if exclude_booking_id is not None:
        query = query.filter(models.CarBookingWindow.booking_id != exclude_booking_id)
    row = query.order_by(models.CarBookingWindow.return_date.desc()).first()
    return row[0] if row else None


def _conflict(db: Session, car_id: int, pickup: date, return_date: date, exclude_booking_id: Optional[int]) -> ConflictError:
    until = _blocked_until(db, car_id, pickup, return_date, exclude_booking_id)
    logger.info("Window %s..%s on car %s rejected (blocked until %s)", pickup, return_date, car_id, until)
    return ConflictError("Car is not available for the selected dates", blocked_until=until)


def admit(db: Session, booking: models.Booking) -> None:
    """
    Append the booking's window to its car's cache iff no blocking window overlaps.

    Raises ConflictError when the conditional insert matches nothing; the caller's
    transaction must then be rolled back.
    """
    db.flush()
    source = select(
        literal(booking.car_id, Integer),
        literal(booking.id, Integer),
        literal(booking.pickup_date, Date),
        literal(booking.return_date, Date),
        literal(booking.status, String),
    ).where(~_overlapping(booking.car_id, booking.pickup_date, booking.return_date))
    stmt = insert(_windows).from_select(
        ["car_id", "booking_id", "pickup_date", "return_date", "status"], source
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        raise _conflict(db, booking.car_id, booking.pickup_date, booking.return_date, booking.id)


def readmit(db: Session, booking: models.Booking) -> None:
    """
    Rewrite the booking's existing cache entry (car, dates, status) iff the new window does not
    overlap any other blocking window on the target car.

    Used when dates change on the same car or a non-blocking booking becomes blocking again.
    """
    db.flush()
    stmt = (
        update(_windows)
        .where(_windows.c.booking_id == booking.id)
        .where(~_overlapping(booking.car_id, booking.pickup_date, booking.return_date, exclude_booking_id=booking.id))
        .values(
            car_id=booking.car_id,
            pickup_date=booking.pickup_date,
            return_date=booking.return_date,
            status=booking.status,
        )
    )
    result = db.execute(stmt)
    if result.rowcount:
        return

    exists = db.execute(select(_windows.c.id).where(_windows.c.booking_id == booking.id)).first()
    if exists is None:
        # Cache entry missing (drift); fall back to a fresh admission
        admit(db, booking)
        return
    raise _conflict(db, booking.car_id, booking.pickup_date, booking.return_date, booking.id)


def release(db: Session, booking_id: int) -> None:
    """Remove the booking's window from whichever car caches it."""
    db.flush()
    db.execute(delete(_windows).where(_windows.c.booking_id == booking_id))
