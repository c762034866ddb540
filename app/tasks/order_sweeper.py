from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.db import SessionLocal
from app.services.orders import cancel_stale_orders


logger = structlog.get_logger(component="order_sweeper")


async def sweep_once(
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    *,
    older_than: timedelta | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Cancel every PENDING order older than the threshold. One transaction, own session."""
    older_than = older_than or timedelta(minutes=settings.STALE_ORDER_MINUTES)

    async with session_factory() as db:
        try:
            canceled = await cancel_stale_orders(db, older_than=older_than, now=now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if canceled:
        logger.info("stale_orders_canceled", count=len(canceled), order_ids=canceled)
    return canceled


async def order_sweeper_loop(session_factory: async_sessionmaker[AsyncSession] = SessionLocal) -> None:
    """
    Runs for the lifetime of the app. Abandoned checkouts never get a webhook,
    so this is what moves them out of PENDING.
    """
    logger.info(
        "order_sweeper_started",
        interval=settings.ORDER_SWEEP_INTERVAL_SECONDS,
        stale_minutes=settings.STALE_ORDER_MINUTES,
        enabled=settings.ORDER_SWEEP_ENABLED,
    )

    if not settings.ORDER_SWEEP_ENABLED:
        logger.info("order_sweeper_disabled")
        return

    while True:
        try:
            await sweep_once(session_factory)
        except Exception:
            logger.exception("order_sweeper_error")

        await asyncio.sleep(settings.ORDER_SWEEP_INTERVAL_SECONDS)
