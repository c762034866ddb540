from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import BigInteger, Integer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


# One engine + session factory per process; handed to request handlers via get_db
engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def create_all() -> None:
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def insert_ignoring_conflicts(db: AsyncSession, model, *, index_elements: list[str]):
    """
    INSERT ... ON CONFLICT (index_elements) DO NOTHING for the session's dialect.

    Callers add .values(...).returning(...) and treat "no row returned" as
    "already there". Only postgresql and sqlite are supported; any other
    dialect is a configuration error and raises ValueError.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise ValueError(f"ON CONFLICT insert not supported for dialect {dialect!r}")

    return insert(model).on_conflict_do_nothing(index_elements=index_elements)
