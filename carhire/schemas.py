# Pydantic models (request/response DTOs) used by the API layer.
# Keep models minimal and serializable; business rules live in the service modules.
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Union
import json

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _parse_json_object(v: Any) -> Any:
    # Multipart clients send nested objects as JSON strings
    if isinstance(v, str):
        try:
            return json.loads(v) if v.strip() else None
        except ValueError:
            return v
    return v


def _normalize_email(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip().lower()
    return v


# Cars
class AvailabilityRead(BaseModel):
    state: Literal["fully_available", "booked", "available_until"]
    until: Optional[date] = None
    next_start: Optional[date] = None
    days: Optional[int] = None


class CarRead(BaseModel):
    id: int
    make: str
    model: str
    year: Optional[int] = None
    daily_rate_cents: int
    image: Optional[str] = None
    status: Literal["available", "rented", "maintenance"]
    company_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# A car with its computed availability attached
class CarWithAvailability(CarRead):
    availability: AvailabilityRead


# Bookings
ReservationStatus = Literal["pending", "active", "upcoming", "completed", "cancelled"]


# Request payload for creating a booking.
# `car` accepts a raw id or an embedded car object; it is normalized server-side.
class BookingCreate(BaseModel):
    customer: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=50)
    car: Union[int, str, dict[str, Any]]
    pickup_date: date
    return_date: date
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    details: Optional[dict[str, Any]] = None
    address: Optional[dict[str, Any]] = None
    car_image: Optional[str] = None

    @field_validator("customer", mode="before")
    @classmethod
    def strip_customer(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
        return v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        return _normalize_email(v)

    @field_validator("details", "address", mode="before")
    @classmethod
    def parse_objects(cls, v: Any) -> Any:
        return _parse_json_object(v)


# Partial update; only provided fields are applied
class BookingUpdate(BaseModel):
    customer: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    car: Optional[Union[int, str, dict[str, Any]]] = None
    pickup_date: Optional[date] = None
    return_date: Optional[date] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    details: Optional[dict[str, Any]] = None
    address: Optional[dict[str, Any]] = None
    car_image: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        return _normalize_email(v)

    @field_validator("details", "address", mode="before")
    @classmethod
    def parse_objects(cls, v: Any) -> Any:
        return _parse_json_object(v)


class BookingStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)


# API response for a booking record
class BookingRead(BaseModel):
    id: int
    user_id: int
    customer: str
    email: str
    phone: Optional[str] = None
    car_id: int
    car_snapshot: dict[str, Any]
    company_id: Optional[int] = None
    car_image: Optional[str] = None
    pickup_date: date
    return_date: date
    status: ReservationStatus
    amount_cents: int
    currency: str
    payment_status: Literal["pending", "paid", "failed"]
    payment_intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    address: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Paginated listing envelope
class BookingPage(BaseModel):
    page: int
    pages: int
    total: int
    data: list[BookingRead]


class DeleteAck(BaseModel):
    booking_id: int
    message: str = "Booking deleted successfully"


# Payments
# Returned after opening a payment intent for a freshly created pending booking.
# `amount` is in minor units (e.g., sen for MYR).
class IntentCreateResponse(BaseModel):
    booking_id: int
    intent_id: str
    client_secret: str
    amount: int
    currency: str


# Payment intent details for the client-side payment element
class PaymentInfoResponse(BaseModel):
    booking_id: int
    intent_id: str
    client_secret: str
    amount: int
    currency: str


# Client-side confirmation: provider identifiers plus the signature handed to the client
class ClientConfirmRequest(BaseModel):
    intent_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class ConfirmationResponse(BaseModel):
    status: Literal["confirmed", "already_confirmed"]
    booking: BookingRead
