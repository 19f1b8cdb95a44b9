# Car directory access: reference normalization, canonical snapshots and window-cache resync.
# The cache on each car is a projection of the bookings ledger; resync() is the only code that reconciles them.
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .availability import availability_payload, classify_many, is_rented, utc_today, window_from_cache
from .db import is_sqlite
from .errors import NotFoundError, ValidationError

logger = logging.getLogger("carhire.directory")

# Historical spellings clients use for the same fields of an embedded car object
_ID_KEYS = ("id", "_id", "car_id", "carId")
_COMPANY_ID_KEYS = ("company_id", "companyId")
_COMPANY_NAME_KEYS = ("company_name", "companyName")


@dataclass(frozen=True)
class CarRef:
    """A car reference as supplied by a client, normalized.

    Only `id` is trusted; the claimed company fields are kept for diagnostics and are
    always replaced by the canonical values at write time.
    """
    id: int
    claimed_company_id: Optional[int] = None
    claimed_company_name: Optional[str] = None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _first(src: dict, keys: Iterable[str]) -> Any:
    for key in keys:
        if src.get(key) not in (None, ""):
            return src[key]
    return None


def normalize_car_reference(raw: Any, field: str = "car") -> CarRef:
    """
    Accept a raw id, a digit string, a JSON string, or an embedded object and return a CarRef.

    Embedded objects may carry the tenant as `company` (id, or object with id/_id/name),
    `company_id`/`companyId`, and `company_name`/`companyName`.
    """
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("{"):
            try:
                raw = json.loads(stripped)
            except ValueError:
                raise ValidationError(field, "Invalid car payload")
    car_id = _as_int(raw)
    if car_id is not None:
        if car_id < 1:
            raise ValidationError(field, "Invalid car id")
        return CarRef(id=car_id)

    if not isinstance(raw, dict):
        raise ValidationError(field, "Invalid car payload")

    car_id = _as_int(_first(raw, _ID_KEYS))
    if car_id is None or car_id < 1:
        raise ValidationError(field, "Invalid car payload: missing car id")

    company = raw.get("company")
    company_id = None
    company_name = None
    if isinstance(company, dict):
        company_id = _as_int(_first(company, ("id", "_id")))
        company_name = company.get("name")
    elif company is not None:
        company_id = _as_int(company)
    if company_id is None:
        company_id = _as_int(_first(raw, _COMPANY_ID_KEYS))
    if company_name is None:
        company_name = _first(raw, _COMPANY_NAME_KEYS)

    return CarRef(id=car_id, claimed_company_id=company_id, claimed_company_name=company_name)


def get_car(db: Session, car_id: int, *, for_update: bool = False) -> models.Car:
    """Fetch the canonical car, optionally taking a row lock where the dialect supports it."""
    query = db.query(models.Car).filter(models.Car.id == car_id)
    if for_update and not is_sqlite(db):
        query = query.with_for_update()
    car = query.first()
    if car is None:
        raise NotFoundError("Car not found")
    return car


def canonical_snapshot(car: models.Car) -> dict:
    """Build the compact car summary stored on a booking, from canonical attributes only."""
    return {
        "id": car.id,
        "make": car.make,
        "model": car.model,
        "year": car.year,
        "daily_rate_cents": car.daily_rate_cents,
        "image": car.image or "",
        "company_id": car.company_id,
        "company_name": car.company.name if car.company else None,
    }


def resolve_car(db: Session, ref: CarRef, *, for_update: bool = False) -> tuple[models.Car, dict]:
    car = get_car(db, ref.id, for_update=for_update)
    snapshot = canonical_snapshot(car)
    if ref.claimed_company_id is not None and ref.claimed_company_id != car.company_id:
        # Client-supplied tenant data never reaches the ledger
        logger.info(
            "Ignoring client-supplied company %s for car %s (canonical company %s)",
            ref.claimed_company_id, car.id, car.company_id,
        )
    return car, snapshot


def resync(db: Session, car_ids: Iterable[Optional[int]], today: Optional[date] = None) -> None:
    """
    Make each car's window cache equal to the ledger and recompute the car's status.

    - Every booking referencing the car gets exactly one cache entry with its dates and status.
    - Entries whose booking no longer references the car are removed.
    - Status: 'rented' while a blocking window contains today, else 'available';
      'maintenance' is a manual override and is left alone.

    Runs inside the caller's transaction; never commits.
    """
    today = today or utc_today()
    db.flush()
    for car_id in sorted({cid for cid in car_ids if cid}):
        car = db.get(models.Car, car_id)
        if car is None:
            continue

        bookings = db.query(models.Booking).filter(models.Booking.car_id == car_id).all()
        entries = (
            db.query(models.CarBookingWindow)
            .filter(models.CarBookingWindow.car_id == car_id)
            .execution_options(populate_existing=True)
            .all()
        )
        by_booking = {e.booking_id: e for e in entries}

        for booking in bookings:
            entry = by_booking.pop(booking.id, None)
            if entry is None:
                # Entry may be parked on another car after drift; re-home it instead of duplicating
                entry = (
                    db.query(models.CarBookingWindow)
                    .filter(models.CarBookingWindow.booking_id == booking.id)
                    .execution_options(populate_existing=True)
                    .first()
                )
                if entry is None:
                    entry = models.CarBookingWindow(booking_id=booking.id)
                    db.add(entry)
                else:
                    logger.warning("Re-homing window of booking %s to car %s", booking.id, car_id)
            entry.car_id = car_id
            entry.pickup_date = booking.pickup_date
            entry.return_date = booking.return_date
            entry.status = booking.status

        for stale in by_booking.values():
            db.delete(stale)
        db.flush()

        if car.status != "maintenance":
            windows = [window_from_cache(e) for e in car_windows(db, car_id)]
            car.status = "rented" if is_rented(windows, today) else "available"
            db.add(car)
    db.flush()


def attach_availability(db: Session, cars: list[models.Car], today: Optional[date] = None) -> list[dict]:
    """Classify many cars in one pass: one query each for cache entries and bookings, then the pure projector."""
    car_ids = [car.id for car in cars]
    if not car_ids:
        return []
    cached = db.query(models.CarBookingWindow).filter(models.CarBookingWindow.car_id.in_(car_ids)).all()
    bookings = db.query(models.Booking).filter(models.Booking.car_id.in_(car_ids)).all()
    results = classify_many(car_ids, cached, bookings, today)
    return [
        {**schemas.CarRead.model_validate(car).model_dump(), "availability": availability_payload(results[car.id])}
        for car in cars
    ]


def car_windows(db: Session, car_id: int) -> list[models.CarBookingWindow]:
    return (
        db.query(models.CarBookingWindow)
        .filter(models.CarBookingWindow.car_id == car_id)
        .order_by(models.CarBookingWindow.pickup_date, models.CarBookingWindow.booking_id)
        .execution_options(populate_existing=True)
        .all()
    )
