import logging
import os
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import TransactionAbortedError

logger = logging.getLogger("carhire.db")

# DATABASE_URL defaults to a local SQLite file at ./data.db.
# Override via the DATABASE_URL environment variable for staging/production.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")

# Upper bound (seconds) a transaction may wait on locks before it is aborted.
TX_TIMEOUT_SECONDS = float(os.getenv("TX_TIMEOUT_SECONDS", "5"))

# Build the SQLAlchemy engine with backend-specific settings.
# - SQLite (dev/local): allow cross-thread access; the busy timeout bounds lock waits.
# - Server DBs (e.g., Postgres): enable safe pooling to avoid stale or dropped connections under load.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": TX_TIMEOUT_SECONDS},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        pool_timeout=TX_TIMEOUT_SECONDS,
    )

# Session factory: one session per request; autocommit and autoflush disabled for explicit transaction control
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models declared via SQLAlchemy's declarative API
Base = declarative_base()


def get_db() -> Generator:
    """
    FastAPI dependency.

    Yields a database session for the lifetime of the request and guarantees it
    is closed afterwards, even if an exception is raised.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_sqlite(db: Session) -> bool:
    return str(db.get_bind().dialect.name) == "sqlite"


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run the enclosed block as one unit of work: commit on success, roll back on any error.

    Lock-wait and statement timeouts surface from the driver as OperationalError; those are
    rolled back and re-raised as a retryable TransactionAbortedError so the caller never
    observes a partial write.
    """
    try:
        if str(db.get_bind().dialect.name) == "postgresql":
            timeout_ms = int(TX_TIMEOUT_SECONDS * 1000)
            db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
            db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        yield db
        db.commit()
    except OperationalError as exc:
        db.rollback()
        logger.warning("Transaction aborted by the store: %s", exc)
        raise TransactionAbortedError("The store aborted the transaction; retry the request") from exc
    except IntegrityError as exc:
        # A concurrent request inserted the same unique key first
        db.rollback()
        logger.warning("Transaction lost a unique-key race: %s", exc)
        raise TransactionAbortedError("A concurrent request changed the same records; retry the request") from exc
    except Exception:
        db.rollback()
        raise
