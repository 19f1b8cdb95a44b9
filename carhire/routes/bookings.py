# Booking endpoints: create, read, update, status changes, delete and listings.
# Handlers stay thin; the lifecycle rules and the conflict checks live in reservations.py.
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, reservations, schemas
from ..auth import get_current_user, get_current_user_optional

router = APIRouter()


@router.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_current_user_optional),
) -> models.Booking:
    """
    Reserve a car for a closed date window without opening a payment.

    Anonymous callers are provisioned as guests from the contact e-mail.
    Overlapping a pending/active/upcoming booking on the same car answers 409.
    """
    return reservations.create_reservation(db, payload, user)


@router.get("/bookings", response_model=schemas.BookingPage)
def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    car_id: Optional[int] = Query(None, ge=1),
    company_id: Optional[int] = Query(None, ge=1),
    search: Optional[str] = Query(None, max_length=100),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> dict:
    return reservations.list_reservations(
        db,
        user,
        status=status_filter,
        car_id=car_id,
        company_id=company_id,
        search=search,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Booking]:
    return reservations.list_my_reservations(db, user)


# Guests have no token; the contact e-mail plus booking id identifies the reservation
@router.get("/bookings/lookup", response_model=schemas.BookingRead)
def lookup_booking(
    email: str = Query(..., min_length=3, max_length=255),
    booking_id: int = Query(..., ge=1),
    db: Session = Depends(get_db),
) -> models.Booking:
    return reservations.lookup_reservation(db, email, booking_id)


@router.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Booking:
    return reservations.read_reservation(db, booking_id, user)


@router.put("/bookings/{booking_id}", response_model=schemas.BookingRead)
def update_booking(
    booking_id: int,
    payload: schemas.BookingUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Booking:
    return reservations.update_reservation(db, booking_id, payload, user)


@router.patch("/bookings/{booking_id}/status", response_model=schemas.BookingRead)
def update_booking_status(
    booking_id: int,
    payload: schemas.BookingStatusUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Booking:
    return reservations.set_status(db, booking_id, payload.status, user)


@router.delete("/bookings/{booking_id}", response_model=schemas.DeleteAck)
def delete_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> schemas.DeleteAck:
    deleted_id = reservations.delete_reservation(db, booking_id, user)
    return schemas.DeleteAck(booking_id=deleted_id)
