# Application entrypoint: configures logging, middleware, error rendering, startup routines, and API routers.
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Base, engine
from .errors import BusyError, ReservationError
from .routes.bookings import router as bookings_router
from .routes.cars import router as cars_router
from .payments import router as payments_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("carhire")


# Parse CORS origins from a comma-separated env var.
# Note: '*' cannot be used with allow_credentials=True; we fall back to explicit localhost origins for dev.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    # Map '*' to explicit localhost origins so credentialed requests remain allowed
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="Carhire Reservation API", version="0.1.0")
allow_list = _parse_cors_origins(os.getenv("CORS_ORIGINS"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError) -> JSONResponse:
    """Render domain errors as {"detail": {...}} with the status code the error carries."""
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, BusyError) else None
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


@app.on_event("startup")
def on_startup() -> None:
    # For local SQLite, auto-create tables; production DBs rely on Alembic migrations.
    if os.getenv("DATABASE_URL", "sqlite:///./data.db").startswith("sqlite"):
        Base.metadata.create_all(bind=engine)


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


# Mount application routers (payments carry their own full paths, including the webhook)
app.include_router(payments_router, prefix="", tags=["payments"])
app.include_router(cars_router, prefix="/api/v1", tags=["cars"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
