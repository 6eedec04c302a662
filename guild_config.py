"""A guild's preferences: welcome/goodbye messages, advertisement policy,
admin channel, poll channels and the bot's privilege system.

Privileges are granted to roles and stored as one role set per privilege on
the guild's row. Holding ``Privilege.ADMIN`` implies holding
``Privilege.MANAGER``; every mutation below keeps that true.

Every coroutine accepts an optional ``session``. When given, statements run
inside the caller's transaction and nothing is committed. When omitted, a
session is opened for the call and committed once all its statements ran.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import MESSAGE_MAX_LENGTH
from db import Guild, from_db_id, session_scope, to_db_id, to_db_ids

logger = logging.getLogger(__name__)


class Privilege(str, Enum):
    """Bot permissions, independent from the platform's own permissions."""

    # Low-level moderation powers such as message deletion.
    MANAGER = "manager"
    # Every feature of the bot but those reserved to EVENT or to owners.
    ADMIN = "admin"
    # Organising events within the guild.
    EVENT = "event"

    @property
    def column(self) -> str:
        return f"priv_{self.value}"


class MessageKind(str, Enum):
    WELCOME = "welcome"
    GOODBYE = "goodbye"

    @property
    def column(self) -> str:
        return f"{self.value}_message"


# Privileges updated first whenever the key privilege is granted or denied.
_CASCADES: dict[Privilege, tuple[Privilege, ...]] = {
    Privilege.ADMIN: (Privilege.MANAGER,),
}

_ALL_PRIVILEGES = (Privilege.MANAGER, Privilege.ADMIN, Privilege.EVENT)


class GuildConfigError(Exception):
    """Base class for guild configuration rule violations."""


class MessageTooLong(GuildConfigError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"`{field}` can't be over {MESSAGE_MAX_LENGTH} characters")


class RoleNoPrivilege(GuildConfigError):
    def __init__(self, role: int, privilege: Privilege):
        self.role = role
        self.privilege = privilege
        super().__init__(f"Role {role} doesn't have privilege {privilege.value}")


class AlreadyExists(GuildConfigError):
    def __init__(self, guild_id: int):
        self.guild_id = guild_id
        super().__init__(f"Guild {guild_id} already has a configuration entry")


class GuildNotFound(GuildConfigError):
    def __init__(self, guild_id: int):
        self.guild_id = guild_id
        super().__init__(f"Guild {guild_id} has no configuration entry")


def _check_message(kind: MessageKind, message: str | None) -> None:
    if message is not None and len(message) > MESSAGE_MAX_LENGTH:
        raise MessageTooLong(kind.column)


@dataclass
class GuildConfigBuilder:
    """Initial values for a new configuration row.

    Meant to be filled when the bot joins a guild, then handed to
    ``create_guild_config``. Defaults: advertisement on, everything else empty.
    """

    guild_id: int
    welcome_message: str | None = None
    goodbye_message: str | None = None
    advertise: bool = True
    admin_chan: int | None = None
    poll_chans: list[int] | None = None
    priv_manager: set[int] = field(default_factory=set)
    priv_admin: set[int] = field(default_factory=set)
    priv_event: set[int] = field(default_factory=set)

    def __post_init__(self) -> None:
        _check_message(MessageKind.WELCOME, self.welcome_message)
        _check_message(MessageKind.GOODBYE, self.goodbye_message)

    def with_welcome_message(self, message: str | None) -> GuildConfigBuilder:
        _check_message(MessageKind.WELCOME, message)
        self.welcome_message = message
        return self

    def with_goodbye_message(self, message: str | None) -> GuildConfigBuilder:
        _check_message(MessageKind.GOODBYE, message)
        self.goodbye_message = message
        return self

    def with_advertise(self, policy: bool) -> GuildConfigBuilder:
        self.advertise = policy
        return self

    def with_admin_chan(self, channel_id: int | None) -> GuildConfigBuilder:
        self.admin_chan = channel_id
        return self

    def with_poll_chans(self, channel_ids: Iterable[int] | None) -> GuildConfigBuilder:
        self.poll_chans = None if channel_ids is None else list(channel_ids)
        return self

    def with_privilege(self, role_id: int, privilege: Privilege) -> GuildConfigBuilder:
        for target in _grant_sequence(privilege):
            getattr(self, target.column).add(role_id)
        return self


def _grant_sequence(privilege: Privilege) -> tuple[Privilege, ...]:
    return (*_CASCADES.get(privilege, ()), privilege)


def _to_role_set(values: Iterable[int] | None) -> frozenset[int]:
    return frozenset(from_db_id(value) for value in values or ())


def _to_role_array(roles: Iterable[int]) -> list[int]:
    # Role sets are stored sorted ascending, without duplicates.
    return sorted({to_db_id(role) for role in roles})


def _privileges_from_sets(
    role_id: int, sets: Mapping[Privilege, frozenset[int]]
) -> list[Privilege]:
    privileges: list[Privilege] = []
    if role_id in sets[Privilege.ADMIN]:
        privileges.extend((Privilege.ADMIN, Privilege.MANAGER))
    elif role_id in sets[Privilege.MANAGER]:
        privileges.append(Privilege.MANAGER)
    if role_id in sets[Privilege.EVENT]:
        privileges.append(Privilege.EVENT)
    return privileges


def _guild_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    poll_chans = row["poll_chans"]
    return {
        "id": from_db_id(row["id"]),
        "welcome_message": row["welcome_message"],
        "goodbye_message": row["goodbye_message"],
        "advertise": row["advertise"],
        "admin_chan": None if row["admin_chan"] is None else from_db_id(row["admin_chan"]),
        "poll_chans": None if poll_chans is None else [from_db_id(c) for c in poll_chans],
        "priv_manager": _to_role_set(row["priv_manager"]),
        "priv_admin": _to_role_set(row["priv_admin"]),
        "priv_event": _to_role_set(row["priv_event"]),
    }


async def _fetch_columns(
    session: AsyncSession,
    guild_id: int,
    *columns: str,
    for_update: bool = False,
) -> Sequence[Any]:
    stmt = select(*(getattr(Guild, column) for column in columns)).where(
        Guild.id == to_db_id(guild_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).first()
    if row is None:
        raise GuildNotFound(guild_id)
    return row


async def _update_columns(
    session: AsyncSession, guild_id: int, **values: Any
) -> None:
    result = await session.execute(
        update(Guild)
        .where(Guild.id == to_db_id(guild_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise GuildNotFound(guild_id)


async def _read_role_sets(
    session: AsyncSession,
    guild_id: int,
    privileges: Sequence[Privilege],
    *,
    for_update: bool = False,
) -> dict[Privilege, frozenset[int]]:
    row = await _fetch_columns(
        session,
        guild_id,
        *(privilege.column for privilege in privileges),
        for_update=for_update,
    )
    return {
        privilege: _to_role_set(values) for privilege, values in zip(privileges, row)
    }


async def _write_role_set(
    session: AsyncSession,
    guild_id: int,
    privilege: Privilege,
    roles: Iterable[int],
) -> None:
    await _update_columns(session, guild_id, **{privilege.column: _to_role_array(roles)})


async def create_guild_config(
    builder: GuildConfigBuilder, *, session: AsyncSession | None = None
) -> dict[str, Any]:
    """Add a new row to the ``guilds`` table.

    Raises ``AlreadyExists`` when the guild already has a row; an existing row
    is never overwritten.
    """
    guild_id = builder.guild_id
    values = {
        "id": to_db_id(guild_id),
        "welcome_message": builder.welcome_message,
        "goodbye_message": builder.goodbye_message,
        "advertise": builder.advertise,
        "admin_chan": None if builder.admin_chan is None else to_db_id(builder.admin_chan),
        "poll_chans": None if builder.poll_chans is None else to_db_ids(builder.poll_chans),
        "priv_manager": _to_role_array(builder.priv_manager | builder.priv_admin),
        "priv_admin": _to_role_array(builder.priv_admin),
        "priv_event": _to_role_array(builder.priv_event),
    }
    async with session_scope(session, commit=True) as s:
        if await guild_config_exists(guild_id, session=s):
            raise AlreadyExists(guild_id)
        stmt = insert(Guild.__table__).values(**values).returning(*Guild.__table__.c)
        try:
            async with s.begin_nested():
                row = (await s.execute(stmt)).one()
        except IntegrityError:
            # Another caller inserted the row between the check and the insert.
            raise AlreadyExists(guild_id)
    logger.info("Created configuration for guild %s", guild_id)
    return _guild_to_dict(row._mapping)


async def guild_config_exists(
    guild_id: int, *, session: AsyncSession | None = None
) -> bool:
    """`True` if the guild has a configuration row."""
    async with session_scope(session) as s:
        result = await s.execute(select(Guild.id).where(Guild.id == to_db_id(guild_id)))
        return result.scalar_one_or_none() is not None


async def get_guild_config(
    guild_id: int, *, session: AsyncSession | None = None
) -> dict[str, Any] | None:
    """Snapshot of the whole configuration row, ``None`` if there is none."""
    async with session_scope(session) as s:
        result = await s.execute(
            select(Guild.__table__).where(Guild.id == to_db_id(guild_id))
        )
        row = result.first()
        return _guild_to_dict(row._mapping) if row else None


async def get_message(
    guild_id: int, kind: MessageKind, *, session: AsyncSession | None = None
) -> str | None:
    async with session_scope(session) as s:
        row = await _fetch_columns(s, guild_id, kind.column)
        return row[0]


async def set_message(
    guild_id: int,
    kind: MessageKind,
    message: str | None,
    *,
    session: AsyncSession | None = None,
) -> None:
    """Change a guild message; ``None`` disables the feature.

    Messages over the platform's length limit raise ``MessageTooLong`` and no
    query is made.
    """
    _check_message(kind, message)
    async with session_scope(session, commit=True) as s:
        await _update_columns(s, guild_id, **{kind.column: message})


async def get_welcome_message(
    guild_id: int, *, session: AsyncSession | None = None
) -> str | None:
    """Message sent to new members when they join. Disabled if ``None``."""
    return await get_message(guild_id, MessageKind.WELCOME, session=session)


async def set_welcome_message(
    guild_id: int, message: str | None, *, session: AsyncSession | None = None
) -> None:
    await set_message(guild_id, MessageKind.WELCOME, message, session=session)


async def get_goodbye_message(
    guild_id: int, *, session: AsyncSession | None = None
) -> str | None:
    return await get_message(guild_id, MessageKind.GOODBYE, session=session)


async def set_goodbye_message(
    guild_id: int, message: str | None, *, session: AsyncSession | None = None
) -> None:
    await set_message(guild_id, MessageKind.GOODBYE, message, session=session)


async def get_advertise(
    guild_id: int, *, session: AsyncSession | None = None
) -> bool:
    async with session_scope(session) as s:
        row = await _fetch_columns(s, guild_id, "advertise")
        return bool(row[0])


async def set_advertise(
    guild_id: int, policy: bool, *, session: AsyncSession | None = None
) -> None:
    """Change the advertisement policy."""
    async with session_scope(session, commit=True) as s:
        await _update_columns(s, guild_id, advertise=policy)


async def get_admin_chan(
    guild_id: int, *, session: AsyncSession | None = None
) -> int | None:
    """Channel where events needing the admins' attention are posted
    (slap notices, upcoming updates, ...)."""
    async with session_scope(session) as s:
        row = await _fetch_columns(s, guild_id, "admin_chan")
        return None if row[0] is None else from_db_id(row[0])


async def set_admin_chan(
    guild_id: int, channel_id: int | None, *, session: AsyncSession | None = None
) -> None:
    value = None if channel_id is None else to_db_id(channel_id)
    async with session_scope(session, commit=True) as s:
        await _update_columns(s, guild_id, admin_chan=value)


async def get_poll_chans(
    guild_id: int, *, session: AsyncSession | None = None
) -> list[int] | None:
    async with session_scope(session) as s:
        row = await _fetch_columns(s, guild_id, "poll_chans")
        return None if row[0] is None else [from_db_id(c) for c in row[0]]


async def set_poll_chans(
    guild_id: int,
    channel_ids: Iterable[int] | None,
    *,
    session: AsyncSession | None = None,
) -> None:
    value = None if channel_ids is None else to_db_ids(channel_ids)
    async with session_scope(session, commit=True) as s:
        await _update_columns(s, guild_id, poll_chans=value)


async def get_roles_with(
    guild_id: int, privilege: Privilege, *, session: AsyncSession | None = None
) -> frozenset[int]:
    """Roles holding ``privilege``."""
    async with session_scope(session) as s:
        sets = await _read_role_sets(s, guild_id, (privilege,))
        return sets[privilege]


async def has_privilege(
    guild_id: int,
    role_id: int,
    privilege: Privilege,
    *,
    session: AsyncSession | None = None,
) -> bool:
    roles = await get_roles_with(guild_id, privilege, session=session)
    return role_id in roles


async def have_privilege(
    guild_id: int,
    role_ids: Iterable[int],
    privilege: Privilege,
    *,
    session: AsyncSession | None = None,
) -> bool:
    """`True` if *every* role holds ``privilege``."""
    roles = await get_roles_with(guild_id, privilege, session=session)
    return all(role_id in roles for role_id in role_ids)


async def privileges_for(
    guild_id: int, role_id: int, *, session: AsyncSession | None = None
) -> list[Privilege]:
    """All privileges of a role, ordered ADMIN, MANAGER, EVENT.

    An admin role is reported as manager too, whatever ``priv_manager`` holds.
    """
    async with session_scope(session) as s:
        sets = await _read_role_sets(s, guild_id, _ALL_PRIVILEGES)
    return _privileges_from_sets(role_id, sets)


async def has_privileges(
    guild_id: int,
    role_id: int,
    privileges: Iterable[Privilege],
    *,
    session: AsyncSession | None = None,
) -> bool:
    """`True` if the role holds *all* of ``privileges``."""
    held = await privileges_for(guild_id, role_id, session=session)
    return all(privilege in held for privilege in privileges)


async def grant_privilege(
    guild_id: int,
    role_id: int,
    privilege: Privilege,
    *,
    session: AsyncSession | None = None,
) -> None:
    """Give a role a privilege.

    Granting ADMIN grants MANAGER to the same role first.
    """
    to_db_id(role_id)
    async with session_scope(session, commit=True) as s:
        for target in _grant_sequence(privilege):
            sets = await _read_role_sets(s, guild_id, (target,), for_update=True)
            await _write_role_set(s, guild_id, target, sets[target] | {role_id})
    logger.info(
        "Granted %s to role %s in guild %s", privilege.value, role_id, guild_id
    )


async def deny_privilege(
    guild_id: int,
    role_id: int,
    privilege: Privilege,
    *,
    session: AsyncSession | None = None,
) -> None:
    """Strip a role of a privilege.

    Denying ADMIN denies MANAGER first, unconditionally; a role already
    lacking MANAGER is left as is. Raises ``RoleNoPrivilege`` if the role
    doesn't hold ``privilege``, after the cascaded denials were stored.
    """
    held = True
    async with session_scope(session, commit=True) as s:
        for cascaded in _CASCADES.get(privilege, ()):
            cascaded_sets = await _read_role_sets(
                s, guild_id, (cascaded,), for_update=True
            )
            if role_id in cascaded_sets[cascaded]:
                await _write_role_set(
                    s, guild_id, cascaded, cascaded_sets[cascaded] - {role_id}
                )
        sets = await _read_role_sets(s, guild_id, (privilege,), for_update=True)
        if role_id in sets[privilege]:
            await _write_role_set(s, guild_id, privilege, sets[privilege] - {role_id})
        else:
            held = False
    if not held:
        raise RoleNoPrivilege(role_id, privilege)
    logger.info(
        "Denied %s to role %s in guild %s", privilege.value, role_id, guild_id
    )


def _canonical_role_arrays(
    manager: Iterable[int] | None,
    admin: Iterable[int] | None,
    event: Iterable[int] | None,
) -> tuple[list[int], list[int], list[int]]:
    admin_set = set(admin or ())
    return (
        sorted(set(manager or ()) | admin_set),
        sorted(admin_set),
        sorted(set(event or ())),
    )


async def repair_privilege_sets(
    *, dry_run: bool = False, session: AsyncSession | None = None
) -> list[int]:
    """Bring every row back to canonical role arrays.

    Rows touched outside this module may hold duplicates, unsorted arrays or
    admin roles missing from ``priv_manager``. Those rows are rewritten (unless
    ``dry_run``) and their guild ids returned.
    """
    repaired: list[int] = []
    async with session_scope(session, commit=not dry_run) as s:
        result = await s.execute(
            select(Guild.id, Guild.priv_manager, Guild.priv_admin, Guild.priv_event)
            .order_by(Guild.id)
            .with_for_update()
        )
        for guild_id, manager, admin, event in result.all():
            current = (list(manager or ()), list(admin or ()), list(event or ()))
            canonical = _canonical_role_arrays(manager, admin, event)
            if current == canonical:
                continue
            repaired.append(guild_id)
            logger.info(
                "Guild %s role sets %s: manager=%s admin=%s event=%s",
                guild_id,
                "need repair" if dry_run else "repaired",
                *canonical,
            )
            if not dry_run:
                await _update_columns(
                    s,
                    guild_id,
                    priv_manager=canonical[0],
                    priv_admin=canonical[1],
                    priv_event=canonical[2],
                )
    return repaired
