# Reservation lifecycle test suite: conflict rules, car moves, status changes, deletes,
# cache/ledger consistency, tenant attribution, authorization and listings.
from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from carhire import directory, models, schemas
from carhire.availability import BLOCKING_STATUSES, utc_today
from carhire.db import SessionLocal
from carhire.errors import ConflictError, ValidationError
from carhire.reservations import (
    create_reservation,
    delete_reservation,
    set_status,
    update_reservation,
)

from conftest import auth_headers, booking_payload


def user_by_email(db, email: str) -> models.User:
    return db.query(models.User).filter(models.User.email == email).one()


def create(db, car, pickup, ret, actor=None, **extra) -> models.Booking:
    payload = schemas.BookingCreate(**booking_payload(car, str(pickup), str(ret), **extra))
    return create_reservation(db, payload, actor)


def cache_windows(db, car_id: int) -> list[tuple]:
    db.expire_all()
    rows = (
        db.query(models.CarBookingWindow)
        .filter(models.CarBookingWindow.car_id == car_id)
        .order_by(models.CarBookingWindow.booking_id)
        .all()
    )
    return [(r.booking_id, r.pickup_date, r.return_date, r.status) for r in rows]


def ledger_windows(db, car_id: int) -> list[tuple]:
    db.expire_all()
    rows = (
        db.query(models.Booking)
        .filter(models.Booking.car_id == car_id)
        .order_by(models.Booking.id)
        .all()
    )
    return [(r.id, r.pickup_date, r.return_date, r.status) for r in rows]


def blocking(windows: list[tuple]) -> list[tuple]:
    return [w for w in windows if w[3] in BLOCKING_STATUSES]


# Overlapping create on the same car is rejected and reports when the car frees up
def test_overlapping_create_conflicts(db, seed):
    first = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    assert first.status == "pending"

    with pytest.raises(ConflictError) as exc_info:
        create(db, seed["car_id"], "2025-07-04", "2025-07-06")
    assert exc_info.value.blocked_until == date(2025, 7, 5)

    # Nothing from the rejected attempt is left behind
    assert db.query(models.Booking).count() == 1
    assert cache_windows(db, seed["car_id"]) == [(first.id, date(2025, 7, 1), date(2025, 7, 5), "pending")]


# Closed intervals: a return day and the next pickup day cannot be the same day
def test_same_day_turnover_conflicts_but_next_day_is_free(db, seed):
    create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    with pytest.raises(ConflictError):
        create(db, seed["car_id"], "2025-07-05", "2025-07-08")
    nxt = create(db, seed["car_id"], "2025-07-06", "2025-07-08")
    assert nxt.status == "pending"


# The same dates on a different car never conflict
def test_same_window_on_other_car_is_allowed(db, seed):
    create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    other = create(db, seed["other_car_id"], "2025-07-01", "2025-07-05")
    assert other.car_id == seed["other_car_id"]


# Cancelled reservations free their window
def test_cancelled_window_does_not_block(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    first = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    set_status(db, first.id, "cancelled", admin)

    second = create(db, seed["car_id"], "2025-07-02", "2025-07-03")
    assert second.status == "pending"


# Return before pickup is a validation error naming the offending field
def test_return_before_pickup_is_rejected(db, seed):
    with pytest.raises(ValidationError) as exc_info:
        create(db, seed["car_id"], "2025-07-05", "2025-07-01")
    assert exc_info.value.field == "return_date"
    assert db.query(models.Booking).count() == 0


# A single-day rental (pickup == return) is valid
def test_single_day_window_is_valid(db, seed):
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-01")
    assert booking.pickup_date == booking.return_date


# Client-supplied tenant data in an embedded car object is replaced by the canonical car
def test_embedded_car_company_is_overridden(db, seed):
    embedded = {
        "_id": str(seed["foreign_car_id"]),
        "make": "Fake",
        "company": {"_id": seed["acme_id"], "name": "Acme Rentals"},
        "companyName": "Acme Rentals",
        "daily_rate_cents": 1,
    }
    booking = create(db, embedded, "2025-07-01", "2025-07-02")

    assert booking.car_id == seed["foreign_car_id"]
    assert booking.company_id == seed["zoom_id"]
    assert booking.car_snapshot["company_id"] == seed["zoom_id"]
    assert booking.car_snapshot["company_name"] == "Zoom Cars"
    assert booking.car_snapshot["make"] == "Honda"


# Zero amount falls back to the car's daily rate times the rental days
def test_amount_defaults_to_daily_rate(db, seed):
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-05", amount="0")
    assert booking.amount_cents == 12000 * 4
    assert booking.currency == "MYR"

    priced = create(db, seed["other_car_id"], "2025-07-01", "2025-07-05", amount="300.50", currency="usd")
    assert priced.amount_cents == 30050
    assert priced.currency == "USD"


# A car only counts as rented while a reservation window contains today
def test_future_only_window_leaves_car_available(db, seed):
    today = utc_today()
    create(db, seed["car_id"], today + timedelta(days=3), today + timedelta(days=5))
    assert db.get(models.Car, seed["car_id"]).status == "available"

    create(db, seed["other_car_id"], today, today + timedelta(days=2))
    assert db.get(models.Car, seed["other_car_id"]).status == "rented"


# Moving a booking onto a car that is taken fails and leaves both cars untouched
def test_move_to_conflicting_car_changes_nothing(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    moving = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    blocker = create(db, seed["other_car_id"], "2025-07-03", "2025-07-04")
    before_x = cache_windows(db, seed["car_id"])
    before_y = cache_windows(db, seed["other_car_id"])

    with pytest.raises(ConflictError):
        update_reservation(db, moving.id, schemas.BookingUpdate(car=seed["other_car_id"]), admin)

    db.expire_all()
    assert db.get(models.Booking, moving.id).car_id == seed["car_id"]
    assert cache_windows(db, seed["car_id"]) == before_x
    assert cache_windows(db, seed["other_car_id"]) == before_y
    assert [w[0] for w in before_y] == [blocker.id]


# A successful move transfers the cache entry and the canonical snapshot
def test_move_to_free_car(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-05")

    moved = update_reservation(db, booking.id, schemas.BookingUpdate(car={"id": seed["other_car_id"]}), admin)

    assert moved.car_id == seed["other_car_id"]
    assert moved.car_snapshot["model"] == "Saga"
    assert moved.version == 2
    assert cache_windows(db, seed["car_id"]) == []
    assert [w[0] for w in cache_windows(db, seed["other_car_id"])] == [booking.id]


# Row locks for a car move are taken in ascending car id order, whichever way the booking moves
def test_move_locks_cars_in_ascending_id_order(db, seed, monkeypatch):
    admin = user_by_email(db, "ops@acme.example.com")
    booking = create(db, seed["other_car_id"], "2025-07-01", "2025-07-05")
    locked: list[int] = []
    real_get_car = directory.get_car

    def recording_get_car(session, car_id, *, for_update=False):
        if for_update:
            locked.append(car_id)
        return real_get_car(session, car_id, for_update=for_update)

    monkeypatch.setattr(directory, "get_car", recording_get_car)
    moved = update_reservation(db, booking.id, schemas.BookingUpdate(car=seed["car_id"]), admin)

    assert moved.car_id == seed["car_id"]
    assert seed["car_id"] < seed["other_car_id"]
    assert locked[:2] == [seed["car_id"], seed["other_car_id"]]


# Changing dates on the same car is checked against every other blocking window
def test_date_change_rechecks_conflicts(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    create(db, seed["car_id"], "2025-07-10", "2025-07-12")

    with pytest.raises(ConflictError):
        update_reservation(
            db, booking.id, schemas.BookingUpdate(pickup_date="2025-07-09", return_date="2025-07-11"), admin
        )

    # Overlapping only its own previous window is fine
    updated = update_reservation(
        db, booking.id, schemas.BookingUpdate(pickup_date="2025-07-02", return_date="2025-07-06"), admin
    )
    assert (updated.pickup_date, updated.return_date) == (date(2025, 7, 2), date(2025, 7, 6))
    assert (booking.id, date(2025, 7, 2), date(2025, 7, 6), "pending") in cache_windows(db, seed["car_id"])


# Admins cannot move a booking onto another company's car
def test_move_to_foreign_company_car_is_forbidden(client: TestClient, db, seed):
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    r = client.put(
        f"/api/v1/bookings/{booking.id}",
        headers=auth_headers(seed["tokens"]["admin"]),
        json={"car": seed["foreign_car_id"]},
    )
    assert r.status_code == 403, r.text
    assert cache_windows(db, seed["foreign_car_id"]) == []


# Reinstating a cancelled booking goes through the conflict check again
def test_reinstating_cancelled_booking_conflicts_when_window_taken(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    first = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    set_status(db, first.id, "cancelled", admin)
    create(db, seed["car_id"], "2025-07-03", "2025-07-04")

    with pytest.raises(ConflictError):
        set_status(db, first.id, "pending", admin)

    db.expire_all()
    assert db.get(models.Booking, first.id).status == "cancelled"


def test_unknown_status_is_rejected(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    booking = create(db, seed["car_id"], "2025-07-01", "2025-07-05")
    with pytest.raises(ValidationError) as exc_info:
        set_status(db, booking.id, "confirmed", admin)
    assert exc_info.value.field == "status"


# Deleting the only active booking frees the car
def test_delete_active_booking_frees_car(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    today = utc_today()
    booking = create(db, seed["car_id"], today - timedelta(days=1), today + timedelta(days=1))
    set_status(db, booking.id, "active", admin)
    assert db.get(models.Car, seed["car_id"]).status == "rented"

    booking_id = booking.id
    delete_reservation(db, booking_id, admin)

    db.expire_all()
    assert db.get(models.Booking, booking_id) is None
    assert cache_windows(db, seed["car_id"]) == []
    assert db.get(models.Car, seed["car_id"]).status == "available"


# Maintenance is a manual override that the engine never clears
def test_maintenance_status_is_left_alone(db, seed):
    car = db.get(models.Car, seed["car_id"])
    car.status = "maintenance"
    db.commit()
    today = utc_today()
    create(db, seed["car_id"], today, today + timedelta(days=1))
    db.expire_all()
    assert db.get(models.Car, seed["car_id"]).status == "maintenance"


# After any mix of operations the cache's blocking windows equal the ledger's, per car
def test_cache_matches_ledger_after_mixed_operations(db, seed):
    admin = user_by_email(db, "ops@acme.example.com")
    a = create(db, seed["car_id"], "2025-07-01", "2025-07-03")
    b = create(db, seed["car_id"], "2025-07-05", "2025-07-07")
    c = create(db, seed["other_car_id"], "2025-07-01", "2025-07-09")

    set_status(db, a.id, "active", admin)
    set_status(db, b.id, "cancelled", admin)
    update_reservation(db, c.id, schemas.BookingUpdate(car=seed["car_id"], pickup_date="2025-07-04", return_date="2025-07-06"), admin)
    set_status(db, a.id, "completed", admin)
    d = create(db, seed["other_car_id"], "2025-07-02", "2025-07-03")
    update_reservation(db, d.id, schemas.BookingUpdate(return_date="2025-07-04"), admin)
    delete_reservation(db, b.id, admin)

    for car_id in (seed["car_id"], seed["other_car_id"], seed["foreign_car_id"]):
        assert blocking(cache_windows(db, car_id)) == blocking(ledger_windows(db, car_id))
        # Every ledger booking has exactly one cache entry
        assert cache_windows(db, car_id) == ledger_windows(db, car_id)


# Concurrent overlapping creates: at most one wins
def test_concurrent_overlapping_creates_admit_at_most_one(seed):
    outcomes: list[str] = []
    lock = threading.Lock()
    start = threading.Barrier(4)

    def attempt(pickup: str, ret: str) -> None:
        session = SessionLocal()
        try:
            start.wait()
            payload = schemas.BookingCreate(**booking_payload(seed["car_id"], pickup, ret))
            create_reservation(session, payload)
            result = "ok"
        except ConflictError:
            result = "conflict"
        except Exception as exc:  # noqa: BLE001
            result = type(exc).__name__
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    # Every pair of these windows shares 2025-08-05
    windows = [("2025-08-01", "2025-08-05"), ("2025-08-03", "2025-08-07"), ("2025-08-05", "2025-08-06"), ("2025-08-04", "2025-08-05")]
    threads = [threading.Thread(target=attempt, args=w) for w in windows]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == 4
    # Losers are told about the conflict, never about an aborted transaction
    assert set(outcomes) <= {"ok", "conflict"}, outcomes
    assert outcomes.count("ok") <= 1

    with SessionLocal() as s:
        windows_left = blocking(cache_windows(s, seed["car_id"]))
        assert len(windows_left) == outcomes.count("ok")
        assert windows_left == blocking(ledger_windows(s, seed["car_id"]))


# Two first-time bookings from the same new guest: the guest is created once and the car window decides
def test_concurrent_bookings_from_same_new_guest(seed):
    outcomes: list[str] = []
    lock = threading.Lock()
    start = threading.Barrier(2)

    def attempt(pickup: str, ret: str) -> None:
        session = SessionLocal()
        try:
            start.wait()
            payload = schemas.BookingCreate(
                **booking_payload(seed["car_id"], pickup, ret, email="newguest@example.com", customer="New Guest")
            )
            create_reservation(session, payload)
            result = "ok"
        except ConflictError:
            result = "conflict"
        except Exception as exc:  # noqa: BLE001
            result = type(exc).__name__
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [
        threading.Thread(target=attempt, args=("2025-08-01", "2025-08-05")),
        threading.Thread(target=attempt, args=("2025-08-03", "2025-08-07")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict", "ok"]

    with SessionLocal() as s:
        guests = s.query(models.User).filter(models.User.email == "newguest@example.com").all()
        assert len(guests) == 1
        assert guests[0].is_guest
        bookings = s.query(models.Booking).filter(models.Booking.car_id == seed["car_id"]).all()
        assert [b.user_id for b in bookings] == [guests[0].id]


# HTTP: conflict answers 409 with the blocking return date
def test_http_conflict_response_shape(client: TestClient, seed):
    r = client.post("/api/v1/bookings", json=booking_payload(seed["car_id"], "2025-07-01", "2025-07-05"))
    assert r.status_code == 201, r.text
    assert r.json()["status"] == "pending"

    r = client.post("/api/v1/bookings", json=booking_payload(seed["car_id"], "2025-07-04", "2025-07-06"))
    assert r.status_code == 409, r.text
    detail = r.json()["detail"]
    assert detail["error"] == "conflict"
    assert detail["blocked_until"] == "2025-07-05"


def test_http_validation_error_names_field(client: TestClient, seed):
    r = client.post("/api/v1/bookings", json=booking_payload(seed["car_id"], "2025-07-05", "2025-07-01"))
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["field"] == "return_date"

    r = client.post("/api/v1/bookings", json=booking_payload(9999, "2025-07-01", "2025-07-02"))
    assert r.status_code == 404, r.text


# Anonymous bookings provision a guest identity from the contact e-mail
def test_guest_booking_and_lookup(client: TestClient, seed):
    payload = booking_payload(seed["car_id"], "2025-07-01", "2025-07-02", email="Guest@Example.com", customer="Gus")
    r = client.post("/api/v1/bookings", json=payload)
    assert r.status_code == 201, r.text
    booking = r.json()
    assert booking["email"] == "guest@example.com"

    with SessionLocal() as s:
        guest = s.get(models.User, booking["user_id"])
        assert guest.is_guest is True
        assert guest.email == "guest@example.com"

    r = client.get("/api/v1/bookings/lookup", params={"email": "guest@example.com", "booking_id": booking["id"]})
    assert r.status_code == 200, r.text
    assert r.json()["id"] == booking["id"]

    r = client.get("/api/v1/bookings/lookup", params={"email": "alice@example.com", "booking_id": booking["id"]})
    assert r.status_code == 404


# Authorization: owners read and cancel; only their company's admins manage
def test_authorization_rules(client: TestClient, seed):
    tokens = seed["tokens"]
    r = client.post(
        "/api/v1/bookings",
        headers=auth_headers(tokens["customer"]),
        json=booking_payload(seed["car_id"], "2025-07-01", "2025-07-05"),
    )
    assert r.status_code == 201, r.text
    booking_id = r.json()["id"]
    assert r.json()["user_id"] == seed["customer_id"]

    # Owner can read; strangers and other companies cannot
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["customer"])).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["stranger"])).status_code == 403
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["zoom_admin"])).status_code == 403
    assert client.get(f"/api/v1/bookings/{booking_id}").status_code == 401

    # Customers cannot activate or edit, but can cancel their own booking
    r = client.patch(f"/api/v1/bookings/{booking_id}/status", headers=auth_headers(tokens["customer"]), json={"status": "active"})
    assert r.status_code == 403
    r = client.put(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["customer"]), json={"phone": "1"})
    assert r.status_code == 403
    r = client.patch(f"/api/v1/bookings/{booking_id}/status", headers=auth_headers(tokens["customer"]), json={"status": "cancelled"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "cancelled"
    assert r.json()["cancel_reason"] == "cancelled"

    # The owning company's admin can manage; another company's admin cannot delete
    r = client.delete(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["zoom_admin"]))
    assert r.status_code == 403
    r = client.delete(f"/api/v1/bookings/{booking_id}", headers=auth_headers(tokens["admin"]))
    assert r.status_code == 200, r.text
    assert r.json()["booking_id"] == booking_id


# Listings are scoped to the caller and support filters and pagination
def test_listing_scopes_filters_and_pages(client: TestClient, seed):
    tokens = seed["tokens"]
    for pickup, ret, car in (
        ("2025-07-01", "2025-07-02", seed["car_id"]),
        ("2025-07-05", "2025-07-06", seed["car_id"]),
        ("2025-07-01", "2025-07-02", seed["other_car_id"]),
        ("2025-07-01", "2025-07-02", seed["foreign_car_id"]),
    ):
        r = client.post("/api/v1/bookings", headers=auth_headers(tokens["customer"]), json=booking_payload(car, pickup, ret))
        assert r.status_code == 201, r.text

    r = client.get("/api/v1/bookings", headers=auth_headers(tokens["admin"]))
    assert r.status_code == 200, r.text
    page = r.json()
    assert page["total"] == 3
    assert {b["company_id"] for b in page["data"]} == {seed["acme_id"]}

    r = client.get("/api/v1/bookings", headers=auth_headers(tokens["root"]), params={"limit": 3, "page": 2})
    page = r.json()
    assert (page["total"], page["pages"], page["page"], len(page["data"])) == (4, 2, 2, 1)

    r = client.get("/api/v1/bookings", headers=auth_headers(tokens["root"]), params={"search": "myvi"})
    assert r.json()["total"] == 2

    r = client.get(
        "/api/v1/bookings",
        headers=auth_headers(tokens["root"]),
        params={"date_from": "2025-07-03", "car_id": seed["car_id"]},
    )
    assert [b["pickup_date"] for b in r.json()["data"]] == ["2025-07-05"]

    r = client.get("/api/v1/bookings", headers=auth_headers(tokens["zoom_admin"]), params={"company_id": seed["acme_id"]})
    assert r.status_code == 403

    r = client.get("/api/v1/bookings", headers=auth_headers(tokens["stranger"]))
    assert r.json()["total"] == 0

    r = client.get("/api/v1/bookings/me", headers=auth_headers(tokens["customer"]))
    assert len(r.json()) == 4


# Car endpoints attach availability computed for today
def test_car_availability_endpoint(client: TestClient, seed):
    today = utc_today()
    r = client.post(
        "/api/v1/bookings",
        json=booking_payload(seed["car_id"], str(today), str(today + timedelta(days=2))),
    )
    assert r.status_code == 201, r.text
    r = client.post(
        "/api/v1/bookings",
        json=booking_payload(seed["other_car_id"], str(today + timedelta(days=4)), str(today + timedelta(days=6))),
    )
    assert r.status_code == 201, r.text

    r = client.get(f"/api/v1/cars/{seed['car_id']}")
    assert r.status_code == 200, r.text
    car = r.json()
    assert car["status"] == "rented"
    assert car["availability"] == {
        "state": "booked",
        "until": str(today + timedelta(days=2)),
        "next_start": None,
        "days": None,
    }

    r = client.get("/api/v1/cars", params={"company_id": seed["acme_id"]})
    by_id = {c["id"]: c for c in r.json()}
    assert by_id[seed["other_car_id"]]["status"] == "available"
    assert by_id[seed["other_car_id"]]["availability"]["state"] == "available_until"
    assert by_id[seed["other_car_id"]]["availability"]["days"] == 4
    assert seed["foreign_car_id"] not in by_id

    assert client.get("/api/v1/cars/9999").status_code == 404
