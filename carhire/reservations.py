# Reservation lifecycle: create/update/status/delete as single transactions spanning the bookings
# ledger and the per-car window cache, plus the read-side queries used by the API.
from __future__ import annotations

import logging
import math
import os
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import directory, guard, models, schemas
from .auth import provision_guest
from .availability import BLOCKING_STATUSES, RESERVATION_STATUSES
from .db import is_sqlite, transaction
from .errors import AuthorizationError, NotFoundError, ValidationError
from .locks import car_locks

logger = logging.getLogger("carhire.reservations")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "MYR").upper()

# Fields a patch may overwrite directly; the nullable ones may also be cleared
_PLAIN_FIELDS = ("customer", "email", "phone", "details", "address", "car_image")
_NULLABLE_FIELDS = {"phone", "details", "address", "car_image"}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate_window(pickup: date, return_date: date) -> None:
    if return_date < pickup:
        raise ValidationError("return_date", "return_date must be on or after pickup_date")


def _check_tenant(actor: Optional[models.User], company_id: Optional[int]) -> None:
    if actor is None:
        raise AuthorizationError("Authentication required")
    if actor.role == "superadmin":
        return
    if actor.role == "company_admin" and actor.company_id is not None and actor.company_id == company_id:
        return
    raise AuthorizationError("Not allowed to manage bookings of another company")


def _check_access(actor: Optional[models.User], booking: models.Booking, *, manage: bool) -> None:
    """
    Authorization:
    - superadmin: any booking
    - company_admin: bookings of cars owned by its company
    - customer: read and cancel own bookings (manage=False) only
    """
    if actor is not None and not manage and booking.user_id == actor.id:
        return
    _check_tenant(actor, booking.company_id)


def get_reservation(db: Session, booking_id: int) -> models.Booking:
    booking = db.get(models.Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _get_for_update(db: Session, booking_id: int) -> models.Booking:
    query = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    if not is_sqlite(db):
        query = query.with_for_update()
    booking = query.first()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _default_amount_cents(car: models.Car, pickup: date, return_date: date) -> int:
    days = max(1, (return_date - pickup).days)
    return (car.daily_rate_cents or 0) * days


def create_reservation(
    db: Session,
    payload: schemas.BookingCreate,
    actor: Optional[models.User] = None,
    today: Optional[date] = None,
) -> models.Booking:
    """
    Create a pending reservation.

    A guest identity (no caller) is found or created first, in its own short transaction, so
    two requests from the same new guest race only on the car window. Then, in one
    transaction: canonical car re-fetch (client snapshot discarded) -> insert booking ->
    Conflict Guard admission -> cache resync and car status. Any failure there rolls back
    everything.
    """
    _validate_window(payload.pickup_date, payload.return_date)
    ref = directory.normalize_car_reference(payload.car)
    user_id = (actor or provision_guest(db, payload.email, payload.customer)).id

    with car_locks(ref.id):
        with transaction(db):
            car, snapshot = directory.resolve_car(db, ref, for_update=True)

            amount_cents = to_minor_units(payload.amount)
            if amount_cents == 0:
                amount_cents = _default_amount_cents(car, payload.pickup_date, payload.return_date)

            booking = models.Booking(
                user_id=user_id,
                customer=payload.customer,
                email=payload.email,
                phone=payload.phone,
                car_id=car.id,
                car_snapshot=snapshot,
                company_id=car.company_id,
                car_image=payload.car_image or snapshot["image"],
                pickup_date=payload.pickup_date,
                return_date=payload.return_date,
                status="pending",
                amount_cents=amount_cents,
                currency=(payload.currency or DEFAULT_CURRENCY).upper(),
                payment_status="pending",
                details=payload.details,
                address=payload.address,
                version=1,
            )
            db.add(booking)
            db.flush()

            guard.admit(db, booking)
            directory.resync(db, [car.id], today)
        db.refresh(booking)

    logger.info(
        "Booking %s created on car %s for %s..%s",
        booking.id, booking.car_id, booking.pickup_date, booking.return_date,
    )
    return booking


def update_reservation(
    db: Session,
    booking_id: int,
    patch: schemas.BookingUpdate,
    actor: Optional[models.User],
    today: Optional[date] = None,
) -> models.Booking:
    """
    Apply field, date and/or car changes.

    A car change moves the cache entry from the old car to the new one inside the same
    transaction; if the new car cannot admit the window, both cars stay untouched.
    """
    current = get_reservation(db, booking_id)
    _check_access(actor, current, manage=True)

    fields = patch.model_dump(exclude_unset=True)
    new_ref = directory.normalize_car_reference(fields["car"]) if fields.get("car") is not None else None
    prev_car_id = current.car_id
    target_car_id = new_ref.id if new_ref else prev_car_id

    with car_locks(prev_car_id, target_car_id):
        with transaction(db):
            booking = _get_for_update(db, booking_id)
            prev_car_id = booking.car_id
            # Row locks on both cars are taken in ascending id order
            for car_id in sorted({prev_car_id, target_car_id}):
                directory.get_car(db, car_id, for_update=True)

            for name in _PLAIN_FIELDS:
                if name in fields and (fields[name] is not None or name in _NULLABLE_FIELDS):
                    setattr(booking, name, fields[name])
            if fields.get("amount") is not None:
                booking.amount_cents = to_minor_units(fields["amount"])

            pickup = fields.get("pickup_date") or booking.pickup_date
            return_date = fields.get("return_date") or booking.return_date
            _validate_window(pickup, return_date)
            dates_changed = (pickup, return_date) != (booking.pickup_date, booking.return_date)
            booking.pickup_date = pickup
            booking.return_date = return_date

            if new_ref is not None:
                car, snapshot = directory.resolve_car(db, new_ref, for_update=True)
                if car.id != prev_car_id:
                    _check_tenant(actor, car.company_id)
                booking.car_id = car.id
                booking.car_snapshot = snapshot
                booking.company_id = car.company_id

            blocking = booking.status in BLOCKING_STATUSES
            if booking.car_id != prev_car_id:
                guard.release(db, booking.id)
                if blocking:
                    guard.admit(db, booking)
            elif dates_changed and blocking:
                guard.readmit(db, booking)

            booking.version = (booking.version or 1) + 1
            directory.resync(db, [prev_car_id, booking.car_id], today)
        db.refresh(booking)

    logger.info("Booking %s updated (car %s -> %s)", booking.id, prev_car_id, booking.car_id)
    return booking


def set_status(
    db: Session,
    booking_id: int,
    new_status: str,
    actor: Optional[models.User],
    today: Optional[date] = None,
) -> models.Booking:
    """
    Change a booking's status and re-derive its blocking classification.

    Moving from a non-blocking status back to a blocking one goes through the Conflict Guard,
    since the window may have been taken meanwhile.
    """
    new_status = (new_status or "").strip().lower()
    if new_status not in RESERVATION_STATUSES:
        raise ValidationError("status", f"status must be one of: {', '.join(RESERVATION_STATUSES)}")

    current = get_reservation(db, booking_id)
    _check_access(actor, current, manage=new_status != "cancelled")

    with car_locks(current.car_id):
        with transaction(db):
            booking = _get_for_update(db, booking_id)
            old_status = booking.status
            if old_status != new_status:
                booking.status = new_status
                if new_status == "cancelled" and not booking.cancel_reason:
                    booking.cancel_reason = "cancelled"
                if new_status in BLOCKING_STATUSES and old_status not in BLOCKING_STATUSES:
                    directory.get_car(db, booking.car_id, for_update=True)
                    guard.readmit(db, booking)
                booking.version = (booking.version or 1) + 1
            directory.resync(db, [booking.car_id], today)
        db.refresh(booking)

    logger.info("Booking %s status %s -> %s", booking.id, old_status, booking.status)
    return booking


def delete_reservation(
    db: Session,
    booking_id: int,
    actor: Optional[models.User],
    today: Optional[date] = None,
) -> int:
    """Remove the ledger record, its cache entry and payment trail; recompute the car status."""
    current = get_reservation(db, booking_id)
    _check_access(actor, current, manage=True)

    with car_locks(current.car_id):
        with transaction(db):
            booking = _get_for_update(db, booking_id)
            car_id = booking.car_id
            guard.release(db, booking.id)
            db.query(models.PaymentEvent).filter(models.PaymentEvent.booking_id == booking.id).delete(
                synchronize_session=False
            )
            db.delete(booking)
            db.flush()
            directory.resync(db, [car_id], today)

    logger.info("Booking %s deleted from car %s", booking_id, car_id)
    return booking_id


# Queries

def read_reservation(db: Session, booking_id: int, actor: Optional[models.User]) -> models.Booking:
    booking = get_reservation(db, booking_id)
    _check_access(actor, booking, manage=False)
    return booking


def lookup_reservation(db: Session, email: str, booking_id: int) -> models.Booking:
    """Guest-friendly lookup: the booking id must match the contact e-mail it was made with."""
    booking = (
        db.query(models.Booking)
        .filter(models.Booking.id == booking_id, models.Booking.email == email.strip().lower())
        .first()
    )
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def list_my_reservations(db: Session, user: models.User) -> list[models.Booking]:
    return (
        db.query(models.Booking)
        .filter(models.Booking.user_id == user.id)
        .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .all()
    )


def list_reservations(
    db: Session,
    actor: models.User,
    *,
    status: Optional[str] = None,
    car_id: Optional[int] = None,
    company_id: Optional[int] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: int = 12,
) -> dict:
    """
    Filtered, paginated listing scoped to what `actor` may see.

    Date filters apply to pickup_date (inclusive). Returns {page, pages, total, data}.
    """
    q = db.query(models.Booking)

    if actor.role == "company_admin":
        if company_id is not None and company_id != actor.company_id:
            raise AuthorizationError("Not allowed to list bookings of another company")
        q = q.filter(models.Booking.company_id == actor.company_id)
    elif actor.role != "superadmin":
        q = q.filter(models.Booking.user_id == actor.id)

    if status:
        q = q.filter(models.Booking.status == status)
    if car_id is not None:
        q = q.filter(models.Booking.car_id == car_id)
    if company_id is not None:
        q = q.filter(models.Booking.company_id == company_id)
    if date_from is not None:
        q = q.filter(models.Booking.pickup_date >= date_from)
    if date_to is not None:
        q = q.filter(models.Booking.pickup_date <= date_to)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.join(models.Car, models.Car.id == models.Booking.car_id).filter(
            or_(
                models.Booking.customer.ilike(pattern),
                models.Booking.email.ilike(pattern),
                models.Car.make.ilike(pattern),
                models.Car.model.ilike(pattern),
            )
        )

    total = q.count()
    items = (
        q.order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"page": page, "pages": math.ceil(total / limit) if total else 0, "total": total, "data": items}
