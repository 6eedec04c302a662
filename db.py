"""Database module for PostgreSQL operations using SQLAlchemy async."""

from contextlib import asynccontextmanager
import logging
import operator
import os
from typing import AsyncIterator, Iterable

from sqlalchemy import BigInteger, Boolean, Index, String, Text, true
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

import config

logger = logging.getLogger(__name__)

# Platform ids are unsigned 64-bit; the schema stores them as signed BIGINT.
DB_ID_MAX = 2**63 - 1


class StoreError(Exception):
    """Raised when a statement against the database fails."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Base(DeclarativeBase):
    pass


class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    welcome_message: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    goodbye_message: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    advertise: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    admin_chan: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    poll_chans: Mapped[list[int] | None] = mapped_column(
        ARRAY(BigInteger), nullable=True
    )
    priv_manager: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), nullable=False, default=list
    )
    priv_admin: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), nullable=False, default=list
    )
    priv_event: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), nullable=False, default=list
    )


class Slap(Base):
    __tablename__ = "slaps"
    __table_args__ = (Index("ix_slaps_guild_offender", "guild", "offender"),)

    sentence: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=False
    )
    guild: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offender: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # NULL means the slap was voted by the community
    enforcer: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)


def to_db_id(value: int) -> int:
    """Convert a platform identifier to the value stored in a BIGINT column.

    Identifiers are unsigned 64-bit integers; only the range that fits in a
    signed BIGINT is accepted so the conversion stays lossless.
    """
    value = operator.index(value)
    if not 0 <= value <= DB_ID_MAX:
        raise ValueError(f"Identifier {value} does not fit in a BIGINT column")
    return value


def from_db_id(value: int) -> int:
    """Convert a stored BIGINT back to a platform identifier."""
    value = operator.index(value)
    if value < 0:
        raise ValueError(f"Stored identifier {value} is negative")
    return value


def to_db_ids(values: Iterable[int]) -> list[int]:
    return [to_db_id(value) for value in values]


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not set. Configure it in the environment before using the database."
        )
    return database_url


def _build_async_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql+psycopg://"):
        return raw_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


async def connect_db() -> None:
    """Create the async engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        raw_url = _require_database_url()
        async_url = _build_async_database_url(raw_url)
        _engine = create_async_engine(
            async_url,
            pool_pre_ping=True,
            pool_size=config.DB_POOL_SIZE,
            echo=config.DB_ECHO,
        )
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("Database engine created (pool_size=%s)", config.DB_POOL_SIZE)


async def close_db() -> None:
    """Dispose the async engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with _get_session() as session:
        yield session


@asynccontextmanager
async def _get_session() -> AsyncIterator[AsyncSession]:
    if _session_factory is None:
        await connect_db()
    if _session_factory is None:
        raise RuntimeError("Database session factory is not initialized")
    async with _session_factory() as session:
        yield session


@asynccontextmanager
async def session_scope(
    session: AsyncSession | None = None, *, commit: bool = False
) -> AsyncIterator[AsyncSession]:
    """Yield ``session`` or a fresh one, translating SQLAlchemy failures.

    A supplied session belongs to the caller: it is never committed or rolled
    back here. An owned session is committed on exit when ``commit`` is set
    and rolled back on any exception, so every statement issued inside one
    scope lands or fails together.

    Any ``SQLAlchemyError`` leaving the scope is re-raised as ``StoreError``.
    """
    try:
        if session is not None:
            yield session
            return
        async with _get_session() as own_session:
            try:
                yield own_session
                if commit:
                    await own_session.commit()
            except Exception:
                await own_session.rollback()
                raise
    except SQLAlchemyError as e:
        logger.warning("Database error (%s): %s", type(e).__name__, e)
        raise StoreError(f"could not execute query: {e}") from e
