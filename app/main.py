import asyncio
import time
from contextlib import asynccontextmanager, suppress
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import app.models  # noqa: F401

from app.core.config import settings
from app.core.db import create_all
from app.core.logging import configure_logging
from app.tasks.order_sweeper import order_sweeper_loop

# Routers
from app.routers.payments import router as payments_router
from app.routers.discounts import router as discounts_router
from app.routers.orders import router as orders_router
from app.routers.enrollments import router as enrollments_router


logger = structlog.get_logger(component="app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON or settings.is_production)
    logger.info("server_starting", env=settings.ENV)

    if settings.DB_CREATE_ALL:
        await create_all()

    sweeper = asyncio.create_task(order_sweeper_loop())

    yield

    logger.info("server_shutting_down")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(title="Course Checkout API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Request id on every log line and response; unexpected errors become a bare 500."""
    request_id = request.headers.get("X-Request-ID") or str(uuid4())[:8]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception("unhandled_error", method=request.method)
        response = JSONResponse(
            status_code=500,
            content={"detail": {"code": "INTERNAL_ERROR", "message": "Internal server error."}},
        )

    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    response.headers["X-Request-ID"] = request_id
    return response


# Payments
app.include_router(payments_router)

# Discounts
app.include_router(discounts_router)

# Orders & enrollments
app.include_router(orders_router)
app.include_router(enrollments_router)
