# Caller identity: verifies bearer tokens issued by the identity service and provisions guest users.
# Token issuance (signup/login) lives in the identity service; this module only consumes it.
from __future__ import annotations

import logging
import os
import time
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from . import models
from .db import get_db
from .errors import TransactionAbortedError

logger = logging.getLogger("carhire.auth")

JWT_SECRET: str = os.getenv("CARHIRE_JWT_SECRET", "dev-secret-change-me")
JWT_ALG: str = "HS256"
JWT_TTL_SECONDS: int = 60 * 60 * 24 * 7  # 7 days


def create_access_token(*, user: models.User) -> str:
    """Mint a token the same way the identity service does (used by tooling and tests)."""
    now = int(time.time())
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": now,
        "exp": now + JWT_TTL_SECONDS,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def bearer_token_from_auth_header(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization header missing")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization header")
    return parts[1]


def _user_from_token(db: Session, token: str) -> Optional[models.User]:
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not str(user_id).isdigit():
        return None
    return db.get(models.User, int(user_id))


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> models.User:
    token = bearer_token_from_auth_header(authorization)
    user = _user_from_token(db, token)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user_optional(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Optional[models.User]:
    """
    Returns the current user if a valid Bearer token is present, otherwise None.
    Guest checkout relies on this: anonymous callers are identified by contact e-mail instead.
    """
    if not authorization:
        return None
    try:
        token = bearer_token_from_auth_header(authorization)
        return _user_from_token(db, token)
    except HTTPException:
        return None


def _user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()


def provision_guest(db: Session, email: str, name: Optional[str] = None) -> models.User:
    """
    Find the identity registered under `email`, or create a guest identity for it.

    Commits its own short transaction, so callers run it before opening theirs. When a
    concurrent request registers the same e-mail first, the unique index rejects this insert
    and the winner's row is returned instead.
    """
    email = email.strip().lower()
    user = _user_by_email(db, email)
    if user:
        return user

    db.add(models.User(email=email, name=name, role="customer", is_guest=True))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        user = _user_by_email(db, email)
        if user is None:
            raise
        logger.info("Guest %s was provisioned by a concurrent request", email)
        return user
    except OperationalError as exc:
        db.rollback()
        logger.warning("Guest provisioning aborted by the store: %s", exc)
        raise TransactionAbortedError("The store aborted the transaction; retry the request") from exc
    return _user_by_email(db, email)
