# SQLAlchemy ORM models for the reservation engine (users, companies, cars, window cache, bookings).
# Keep business logic out of models; favor services and transactional logic in the service modules.
from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import declarative_mixin, relationship

from .db import Base


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps automatically managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and updated on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Company(Base, TimestampMixin):
    """Rental company (tenant) owning cars. Managed by an external collaborator."""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)


class User(Base, TimestampMixin):
    """Caller identity.

    Roles:
    - customer: books cars; may read and cancel own bookings
    - company_admin: manages bookings for cars of its company
    - superadmin: unrestricted

    Guest identities (is_guest=True) are provisioned by the engine from a contact e-mail.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="customer", index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    is_guest = Column(Boolean, nullable=False, default=False)


class Car(Base, TimestampMixin):
    """Rentable vehicle. Metadata is owned externally; the engine only writes status and the window cache."""
    __tablename__ = "cars"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    year = Column(Integer, nullable=True)
    daily_rate_cents = Column(Integer, nullable=False)
    image = Column(String(512), nullable=True)
    status = Column(String(20), nullable=False, default="available")  # available | rented | maintenance
    version = Column(Integer, nullable=False, default=1)

    company = relationship("Company", lazy="joined")
    windows = relationship("CarBookingWindow", back_populates="car", order_by="CarBookingWindow.pickup_date")


class CarBookingWindow(Base):
    """Denormalized, non-authoritative cache of one booking's window on a car.

    The Conflict Guard writes here with conditional statements; directory.resync keeps it
    equal to the bookings ledger.
    """
    __tablename__ = "car_booking_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    pickup_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False)

    car = relationship("Car", back_populates="windows")

    # Conflict checks filter by car, blocking status and date range
    __table_args__ = (
        Index("ix_car_booking_windows_conflict", "car_id", "status", "pickup_date", "return_date"),
    )


class Booking(Base, TimestampMixin):
    """Reservation record (the ledger).

    Status transitions:
    pending -> active (payment confirmed) -> completed
       └── cancelled          └── cancelled
    'upcoming' is set explicitly by operators and blocks like 'pending'/'active'.

    'version' is incremented on each mutation and keys the payment provider's idempotency.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), nullable=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False)
    car_snapshot = Column(JSON, nullable=False, default=dict)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    car_image = Column(String(512), nullable=True)
    pickup_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="MYR")
    payment_status = Column(String(20), nullable=False, default="pending")  # pending | paid | failed
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_id = Column(String(255), nullable=True, unique=True)
    payment_signature = Column(String(255), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    address = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # Indexed access patterns: per car by status and date range, tenant listings
    __table_args__ = (
        Index("ix_bookings_car_status_dates", "car_id", "status", "pickup_date", "return_date"),
        Index("ix_bookings_pickup_date", "pickup_date"),
    )


class PaymentEvent(Base):
    """One accepted payment confirmation or webhook delivery, keyed by the provider's id."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, unique=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    confirmation_id = Column(String(255), nullable=False)
    source = Column(String(20), nullable=False)  # webhook | client
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
