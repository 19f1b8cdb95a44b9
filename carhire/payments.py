# Payments module: Stripe integration and reconciliation of payment confirmations.
# Exposes endpoints to open PaymentIntents for new reservations, fetch client secrets, confirm from the
# client, and receive Stripe webhooks. When no Stripe key is set, intents are deterministic and offline
# so local/dev and CI flows run without network access.
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import stripe
from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import directory, models, schemas
from .auth import get_current_user_optional
from .availability import BLOCKING_STATUSES
from .db import get_db, transaction
from .errors import (
    AuthorizationError,
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    ReservationError,
    SignatureError,
    ValidationError,
)
from .locks import car_locks
from .reservations import create_reservation, get_reservation, lookup_reservation, read_reservation

logger = logging.getLogger("carhire.payments")

router = APIRouter()

# Environment configuration (a blank secret key switches intents to offline mode)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
# Shared secret for client-side confirmations; defaults to the Stripe secret key
PAYMENT_CONFIRMATION_SECRET = os.getenv("PAYMENT_CONFIRMATION_SECRET", "").strip() or STRIPE_SECRET_KEY
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

# Stripe's "captured" signal for automatic-capture PaymentIntents
CAPTURED_EVENT = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"

# Conditional-update attempts before giving up on a moving target
_CAS_ATTEMPTS = 3


def stripe_enabled() -> bool:
    """True only when STRIPE_SECRET_KEY is set; otherwise intents are synthesized offline."""
    return bool(STRIPE_SECRET_KEY)


def _init_stripe() -> None:
    stripe.api_key = STRIPE_SECRET_KEY


def create_payment_intent(
    amount_minor: int,
    currency: str,
    booking: models.Booking,
    idempotency_key: str,
) -> Tuple[str, str]:
    """
    Create a PaymentIntent correlated to `booking` and return (payment_intent_id, client_secret).

    The idempotency key is derived from booking id and version, so a retried request for the
    same booking returns the same intent instead of charging twice.
    """
    if not stripe_enabled():
        return f"pi_test_{booking.id}", f"test_client_secret_{booking.id}"

    _init_stripe()
    pi = stripe.PaymentIntent.create(
        amount=int(amount_minor),
        currency=currency.lower(),
        metadata={
            "booking_id": str(booking.id),
            "car_id": str(booking.car_id),
            "pickup_date": booking.pickup_date.isoformat(),
            "return_date": booking.return_date.isoformat(),
        },
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        # Some flows omit the secret on create; fetch it explicitly
        pi = stripe.PaymentIntent.retrieve(pi.id)
        client_secret = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return pi.id, client_secret


def retrieve_client_secret(payment_intent_id: str) -> str:
    if not stripe_enabled():
        return f"test_client_secret_{payment_intent_id}"

    _init_stripe()
    pi = stripe.PaymentIntent.retrieve(payment_intent_id)
    client_secret: Optional[str] = getattr(pi, "client_secret", None)
    if not client_secret:
        raise RuntimeError("Stripe PaymentIntent missing client_secret")
    return client_secret


# Signatures

def confirmation_signature(intent_id: str, payment_id: str) -> str:
    """HMAC-SHA256 over "{intent_id}|{payment_id}" with the shared confirmation secret (hex)."""
    message = f"{intent_id}|{payment_id}".encode("utf-8")
    return hmac.new(PAYMENT_CONFIRMATION_SECRET.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_client_signature(intent_id: str, payment_id: str, signature: str) -> None:
    if not PAYMENT_CONFIRMATION_SECRET:
        raise SignatureError("Payment confirmation secret not configured")
    expected = confirmation_signature(intent_id, payment_id)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureError("Payment signature mismatch")


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> dict:
    """Verify the Stripe-Signature header over the raw body and return the decoded event."""
    if not STRIPE_WEBHOOK_SECRET:
        raise SignatureError("Webhook secret not configured")
    if not sig_header:
        raise SignatureError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureError("Webhook payload is not UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError(f"Invalid webhook signature: {exc}") from exc
    try:
        return json.loads(body)
    except ValueError as exc:
        raise ValidationError("payload", "Webhook payload is not valid JSON") from exc


# Confirmation state machine

@dataclass(frozen=True)
class PaymentState:
    status: str
    payment_status: str
    payment_id: Optional[str] = None


def apply_confirmation(state: PaymentState, confirmation_id: str) -> Optional[PaymentState]:
    """
    The single transition for a captured payment, shared by the webhook and client paths.

    Returns the new state, or None when the payment is already recorded (no-op). A reservation
    that still blocks its car becomes active; cancelled/completed ones keep their status but
    the captured payment is still recorded.
    """
    if state.payment_status == "paid":
        return None
    new_status = "active" if state.status in BLOCKING_STATUSES else state.status
    return PaymentState(status=new_status, payment_status="paid", payment_id=confirmation_id)


def _already_applied(booking: models.Booking, confirmation_id: str) -> str:
    if booking.payment_id == confirmation_id:
        return "already_confirmed"
    logger.warning(
        "Booking %s already paid by %s; refusing second confirmation %s",
        booking.id, booking.payment_id, confirmation_id,
    )
    raise ConflictError("Booking already paid with a different payment")


def confirm_payment(
    db: Session,
    booking_id: int,
    confirmation_id: str,
    source: str,
    *,
    intent_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Tuple[str, models.Booking]:
    """
    Record a captured payment exactly once.

    The transition is written with a conditional UPDATE that only matches while the booking is
    not yet paid, so racing webhook/client confirmations converge on the first accepted
    confirmation id. Returns ("confirmed" | "already_confirmed", booking).
    """
    booking = get_reservation(db, booking_id)
    signature = confirmation_signature(intent_id, confirmation_id) if intent_id and PAYMENT_CONFIRMATION_SECRET else None

    with car_locks(booking.car_id):
        with transaction(db):
            if event_id and db.query(models.PaymentEvent).filter(models.PaymentEvent.event_id == event_id).first():
                db.refresh(booking)
                return _already_applied(booking, confirmation_id), booking

            outcome = None
            for _ in range(_CAS_ATTEMPTS):
                db.refresh(booking)
                current = PaymentState(booking.status, booking.payment_status, booking.payment_id)
                target = apply_confirmation(current, confirmation_id)
                if target is None:
                    outcome = _already_applied(booking, confirmation_id)
                    break

                values: dict[str, Any] = {
                    "status": target.status,
                    "payment_status": target.payment_status,
                    "payment_id": target.payment_id,
                    "payment_signature": signature,
                    "version": models.Booking.version + 1,
                }
                if intent_id and not booking.payment_intent_id:
                    values["payment_intent_id"] = intent_id
                result = db.execute(
                    update(models.Booking)
                    .where(
                        models.Booking.id == booking.id,
                        models.Booking.payment_status != "paid",
                        models.Booking.status == current.status,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    db.add(models.PaymentEvent(
                        event_id=event_id or f"{source}:{confirmation_id}",
                        booking_id=booking.id,
                        confirmation_id=confirmation_id,
                        source=source,
                    ))
                    db.flush()
                    db.refresh(booking)
                    directory.resync(db, [booking.car_id])
                    outcome = "confirmed"
                    break
            if outcome is None:
                raise ConflictError("Booking changed while confirming payment; retry")
        db.refresh(booking)

    logger.info("Payment %s for booking %s via %s: %s", confirmation_id, booking.id, source, outcome)
    return outcome, booking


def _find_booking_for_intent(db: Session, intent_id: str, metadata: dict) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.payment_intent_id == intent_id).first()
    if booking:
        return booking
    # Intent id persistence is best-effort; fall back to the correlation metadata
    raw_id = str(metadata.get("booking_id") or "")
    if raw_id.isdigit():
        booking = db.get(models.Booking, int(raw_id))
        if booking and booking.payment_intent_id in (None, intent_id):
            return booking
    raise NotFoundError("Booking not found for payment intent")


def handle_webhook(db: Session, payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verify and process one Stripe webhook delivery.

    Returns a small status dict; successful processing and safe no-ops both answer 200 so the
    provider stops retrying. Bad signatures and unknown intents raise.
    """
    event = verify_webhook(payload, sig_header)
    event_type: str = event.get("type") or ""
    obj: dict = (event.get("data") or {}).get("object") or {}

    if event_type == CAPTURED_EVENT:
        intent_id = obj.get("id")
        if not intent_id:
            raise ValidationError("data.object.id", "Missing payment_intent id")
        booking = _find_booking_for_intent(db, intent_id, obj.get("metadata") or {})
        charge = obj.get("latest_charge")
        if isinstance(charge, dict):
            charge = charge.get("id")
        confirmation_id = charge or intent_id
        try:
            outcome, booking = confirm_payment(
                db, booking.id, confirmation_id, "webhook", intent_id=intent_id, event_id=event.get("id"),
            )
        except ConflictError:
            return {"status": "duplicate_payment", "booking_id": booking.id}
        return {"status": outcome, "booking_id": booking.id}

    if event_type == FAILED_EVENT:
        logger.info("Payment failed for intent %s", obj.get("id"))
        return {"status": "payment_failed_observed"}

    return {"status": "ignored"}


def confirm_from_client(db: Session, payload: schemas.ClientConfirmRequest) -> Tuple[str, models.Booking]:
    """
    Advisory confirmation sent by the client after checkout.

    The signature must match the one recomputed from the provider identifiers; an already
    recorded confirmation with the same id succeeds without modification.
    """
    verify_client_signature(payload.intent_id, payload.payment_id, payload.signature)
    booking = db.query(models.Booking).filter(models.Booking.payment_intent_id == payload.intent_id).first()
    if not booking:
        raise NotFoundError("Booking not found for payment intent")
    return confirm_payment(
        db, booking.id, payload.payment_id, "client",
        intent_id=payload.intent_id, event_id=f"client:{payload.payment_id}",
    )


# Intents

def _mark_provider_failure(db: Session, booking_id: int) -> None:
    """Compensating step after the reservation committed but the provider failed: release the car."""
    try:
        booking = get_reservation(db, booking_id)
        with car_locks(booking.car_id):
            with transaction(db):
                booking.status = "cancelled"
                booking.payment_status = "failed"
                booking.cancel_reason = "payment_provider_error"
                booking.version = (booking.version or 1) + 1
                db.add(booking)
                directory.resync(db, [booking.car_id])
    except (ReservationError, SQLAlchemyError):
        logger.exception("Could not mark booking %s as failed after provider error", booking_id)


def _persist_intent_id(db: Session, booking_id: int, intent_id: str) -> None:
    """Best-effort: the reservation is valid without it and webhooks fall back to metadata."""
    try:
        with transaction(db):
            db.query(models.Booking).filter(
                models.Booking.id == booking_id,
                models.Booking.payment_intent_id.is_(None),
            ).update({models.Booking.payment_intent_id: intent_id}, synchronize_session=False)
    except (ReservationError, SQLAlchemyError):
        logger.exception("Could not persist payment intent %s for booking %s", intent_id, booking_id)


def open_intent(
    db: Session,
    payload: schemas.BookingCreate,
    actor: Optional[models.User] = None,
) -> schemas.IntentCreateResponse:
    """
    Reserve the car (pending, unpaid) and open a provider intent for it.

    The reservation commits first, inside its own transaction with the Conflict Guard; the
    provider call happens after commit. On provider failure the booking is marked
    cancelled/failed and ExternalProviderError carries its id.
    """
    booking = create_reservation(db, payload, actor)
    idem_key = f"booking:{booking.id}:v{booking.version or 1}"
    try:
        intent_id, client_secret = create_payment_intent(
            amount_minor=booking.amount_cents,
            currency=booking.currency,
            booking=booking,
            idempotency_key=idem_key,
        )
    except (stripe.StripeError, RuntimeError) as exc:
        logger.error("Payment provider failed for booking %s: %s", booking.id, exc)
        _mark_provider_failure(db, booking.id)
        raise ExternalProviderError("Payment provider unavailable; retry intent creation", booking_id=booking.id) from exc

    _persist_intent_id(db, booking.id, intent_id)
    return schemas.IntentCreateResponse(
        booking_id=booking.id,
        intent_id=intent_id,
        client_secret=client_secret,
        amount=booking.amount_cents,
        currency=booking.currency,
    )


def ensure_intent(db: Session, booking: models.Booking) -> schemas.PaymentInfoResponse:
    """
    Return the intent of a booking awaiting payment, creating it if the earlier write was lost.

    The idempotency key carries the booking version: an unchanged booking gets back the intent
    opened at creation, while an edited one (new amount or currency) gets a fresh intent.
    """
    if booking.payment_status == "paid":
        raise ValidationError("payment_status", "Booking is already paid")
    if booking.status not in BLOCKING_STATUSES or booking.payment_status == "failed":
        raise ValidationError("status", "Booking is not awaiting payment")

    try:
        if booking.payment_intent_id:
            intent_id = booking.payment_intent_id
            client_secret = retrieve_client_secret(intent_id)
        else:
            intent_id, client_secret = create_payment_intent(
                amount_minor=booking.amount_cents,
                currency=booking.currency,
                booking=booking,
                idempotency_key=f"booking:{booking.id}:v{booking.version or 1}",
            )
    except (stripe.StripeError, RuntimeError) as exc:
        raise ExternalProviderError("Payment provider unavailable; retry shortly", booking_id=booking.id) from exc

    if not booking.payment_intent_id:
        _persist_intent_id(db, booking.id, intent_id)

    return schemas.PaymentInfoResponse(
        booking_id=booking.id,
        intent_id=intent_id,
        client_secret=client_secret,
        amount=booking.amount_cents,
        currency=booking.currency,
    )


# Routes

@router.post(
    "/api/v1/payments/intents",
    response_model=schemas.IntentCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_intent(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_current_user_optional),
) -> schemas.IntentCreateResponse:
    return open_intent(db, payload, user)


@router.get("/api/v1/bookings/{booking_id}/payment_info", response_model=schemas.PaymentInfoResponse)
def get_payment_info(
    booking_id: int,
    email: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_current_user_optional),
) -> schemas.PaymentInfoResponse:
    """
    Ensure a PaymentIntent exists for a booking awaiting payment and return its client secret.

    Authenticated callers go through the usual access rules; guests prove ownership with the
    contact e-mail the booking was made with.
    """
    if user is not None:
        booking = read_reservation(db, booking_id, user)
    elif email:
        booking = lookup_reservation(db, email, booking_id)
    else:
        raise AuthorizationError("Authentication or booking e-mail required")
    return ensure_intent(db, booking)


@router.post("/api/v1/payments/confirm", response_model=schemas.ConfirmationResponse)
def confirm_payment_from_client(
    payload: schemas.ClientConfirmRequest,
    db: Session = Depends(get_db),
) -> schemas.ConfirmationResponse:
    outcome, booking = confirm_from_client(db, payload)
    return schemas.ConfirmationResponse(status=outcome, booking=schemas.BookingRead.model_validate(booking))


@router.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> dict:
    """Verify the raw body against Stripe-Signature and reconcile captured payments idempotently."""
    payload = await request.body()
    return await run_in_threadpool(handle_webhook, db, payload, stripe_signature)
