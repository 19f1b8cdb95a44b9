# Pytest configuration for the reservation engine tests.
# Forces a local SQLite DB, disables Redis, runs payments offline, and wires deterministic secrets.
import os
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Test-time environment: local SQLite DB, Redis disabled, offline Stripe, predictable secrets
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("CARHIRE_JWT_SECRET", "test-secret")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("PAYMENT_CONFIRMATION_SECRET", "confirm-secret")

import sys
# Ensure the repo root is on sys.path so 'carhire' resolves when running pytest from anywhere
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from carhire.main import app  # noqa: E402
from carhire.db import Base, SessionLocal, engine  # noqa: E402
from carhire import models  # noqa: E402
from carhire.auth import create_access_token  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.

    Simple but effective for this suite; avoids transactional complexity.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """
    FastAPI TestClient bound to the application for HTTP-level tests.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator:
    """A session for service-level tests; each test gets a fresh one."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# Seed data: companies, cars and identities are owned by external services, so tests insert them directly
@pytest.fixture()
def seed() -> dict:
    with SessionLocal() as s:
        acme = models.Company(name="Acme Rentals")
        zoom = models.Company(name="Zoom Cars")
        s.add_all([acme, zoom])
        s.flush()

        car = models.Car(company_id=acme.id, make="Perodua", model="Myvi", year=2022, daily_rate_cents=12000, image="myvi.jpg")
        other_car = models.Car(company_id=acme.id, make="Proton", model="Saga", year=2021, daily_rate_cents=9000)
        foreign_car = models.Car(company_id=zoom.id, make="Honda", model="City", year=2023, daily_rate_cents=15000)
        s.add_all([car, other_car, foreign_car])

        customer = models.User(email="alice@example.com", name="Alice", role="customer")
        stranger = models.User(email="bob@example.com", name="Bob", role="customer")
        admin = models.User(email="ops@acme.example.com", name="Acme Ops", role="company_admin", company_id=acme.id)
        zoom_admin = models.User(email="ops@zoom.example.com", name="Zoom Ops", role="company_admin", company_id=zoom.id)
        root = models.User(email="root@example.com", name="Root", role="superadmin")
        s.add_all([customer, stranger, admin, zoom_admin, root])
        s.commit()

        return {
            "acme_id": acme.id,
            "zoom_id": zoom.id,
            "car_id": car.id,
            "other_car_id": other_car.id,
            "foreign_car_id": foreign_car.id,
            "customer_id": customer.id,
            "tokens": {
                "customer": create_access_token(user=customer),
                "stranger": create_access_token(user=stranger),
                "admin": create_access_token(user=admin),
                "zoom_admin": create_access_token(user=zoom_admin),
                "root": create_access_token(user=root),
            },
        }


# Convenience header for authenticated requests
def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def booking_payload(car, pickup: str, ret: str, **extra) -> dict:
    payload = {
        "customer": "Alice",
        "email": "alice@example.com",
        "phone": "+60123456789",
        "car": car,
        "pickup_date": pickup,
        "return_date": ret,
        "amount": "240.00",
    }
    payload.update(extra)
    return payload
