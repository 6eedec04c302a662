"""Slap ledger.

A slap is a moderation warning attached to the message it originates from.
It is issued either by a member holding the manager privilege or by a
community vote. Slaps are only ever appended and queried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import distinct, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from db import Slap, from_db_id, session_scope, to_db_id

logger = logging.getLogger(__name__)

# Rows pulled per round-trip by the streaming views.
STREAM_BATCH_SIZE = 100


@dataclass(frozen=True)
class Community:
    """The verdict was issued by popular vote."""


@dataclass(frozen=True)
class Manager:
    """A member with the manager privilege issued the slap."""

    user_id: int


Enforcer = Community | Manager

COMMUNITY = Community()


def enforcer_to_column(enforcer: Enforcer) -> int | None:
    if isinstance(enforcer, Manager):
        return to_db_id(enforcer.user_id)
    if isinstance(enforcer, Community):
        return None
    raise TypeError(f"Unknown enforcer: {enforcer!r}")


def enforcer_from_column(value: int | None) -> Enforcer:
    if value is None:
        return COMMUNITY
    return Manager(from_db_id(value))


@dataclass(frozen=True)
class SlapReport:
    """A single slap.

    ``sentence`` means different things depending on ``enforcer``. For a
    community slap it is the message members collectively reacted to. For a
    manager slap it is the command message that issued it.

    ``reason`` is ``None`` when the slap relied on the default reason.
    """

    sentence: int
    guild_id: int
    offender: int
    enforcer: Enforcer
    reason: str | None = None


def _slap_from_row(row: Mapping[str, Any]) -> SlapReport:
    return SlapReport(
        sentence=from_db_id(row["sentence"]),
        guild_id=from_db_id(row["guild"]),
        offender=from_db_id(row["offender"]),
        enforcer=enforcer_from_column(row["enforcer"]),
        reason=row["reason"],
    )


async def get_slap(
    sentence: int, *, session: AsyncSession | None = None
) -> SlapReport | None:
    """The slap attached to ``sentence``, ``None`` if there is none."""
    async with session_scope(session) as s:
        result = await s.execute(
            select(Slap.__table__).where(Slap.sentence == to_db_id(sentence))
        )
        row = result.first()
        return _slap_from_row(row._mapping) if row else None


async def record_slap(
    guild_id: int,
    offender: int,
    sentence: int,
    enforcer: Enforcer = COMMUNITY,
    reason: str | None = None,
    *,
    session: AsyncSession | None = None,
) -> SlapReport:
    """Add a slap to the ledger and return it.

    A second slap for the same ``sentence`` violates the primary key and
    surfaces as ``StoreError``.
    """
    report = SlapReport(
        sentence=sentence,
        guild_id=guild_id,
        offender=offender,
        enforcer=enforcer,
        reason=reason,
    )
    stmt = insert(Slap.__table__).values(
        sentence=to_db_id(sentence),
        guild=to_db_id(guild_id),
        offender=to_db_id(offender),
        enforcer=enforcer_to_column(enforcer),
        reason=reason,
    )
    async with session_scope(session, commit=True) as s:
        await s.execute(stmt)
    logger.info(
        "Recorded slap %s for user %s in guild %s (%s)",
        sentence,
        offender,
        guild_id,
        "community" if isinstance(enforcer, Community) else f"manager {enforcer.user_id}",
    )
    return report


async def _stream_rows(
    stmt: Select, session: AsyncSession | None
) -> AsyncIterator[Mapping[str, Any]]:
    async with session_scope(session) as s:
        result = await s.stream(stmt.execution_options(yield_per=STREAM_BATCH_SIZE))
        try:
            async for row in result:
                yield row._mapping
        finally:
            await result.close()


async def guild_slaps(
    guild_id: int, *, session: AsyncSession | None = None
) -> AsyncIterator[SlapReport]:
    """Every slap of the guild, fetched lazily.

    The iterator is one-shot. Rows are pulled in batches as it is consumed;
    close it (``contextlib.aclosing``) when stopping early so the cursor is
    released right away.
    """
    stmt = (
        select(Slap.__table__)
        .where(Slap.guild == to_db_id(guild_id))
        .order_by(Slap.sentence)
    )
    async for row in _stream_rows(stmt, session):
        yield _slap_from_row(row)


async def member_slaps(
    guild_id: int, offender: int, *, session: AsyncSession | None = None
) -> AsyncIterator[SlapReport]:
    """Every slap of one guild member, fetched lazily."""
    stmt = (
        select(Slap.__table__)
        .where(Slap.guild == to_db_id(guild_id), Slap.offender == to_db_id(offender))
        .order_by(Slap.sentence)
    )
    async for row in _stream_rows(stmt, session):
        yield _slap_from_row(row)


async def slapped_members(
    guild_id: int, *, session: AsyncSession | None = None
) -> AsyncIterator[tuple[int, int]]:
    """``(guild_id, offender)`` for every member with at least one slap."""
    stmt = (
        select(Slap.offender)
        .where(Slap.guild == to_db_id(guild_id))
        .distinct()
        .order_by(Slap.offender)
    )
    async for row in _stream_rows(stmt, session):
        yield guild_id, from_db_id(row["offender"])


async def count_guild_slaps(
    guild_id: int, *, session: AsyncSession | None = None
) -> int:
    async with session_scope(session) as s:
        result = await s.execute(
            select(func.count(Slap.sentence)).where(Slap.guild == to_db_id(guild_id))
        )
        return int(result.scalar_one())


async def count_member_slaps(
    guild_id: int, offender: int, *, session: AsyncSession | None = None
) -> int:
    async with session_scope(session) as s:
        result = await s.execute(
            select(func.count(Slap.sentence)).where(
                Slap.guild == to_db_id(guild_id),
                Slap.offender == to_db_id(offender),
            )
        )
        return int(result.scalar_one())


async def count_slapped_members(
    guild_id: int, *, session: AsyncSession | None = None
) -> int:
    async with session_scope(session) as s:
        result = await s.execute(
            select(func.count(distinct(Slap.offender))).where(
                Slap.guild == to_db_id(guild_id)
            )
        )
        return int(result.scalar_one())
