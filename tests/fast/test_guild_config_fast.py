import unittest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

try:
    import guild_config
except Exception:
    raise unittest.SkipTest("guild_config dependencies not available")

from guild_config import (
    GuildConfigBuilder,
    MessageKind,
    MessageTooLong,
    Privilege,
    RoleNoPrivilege,
)

GUILD_ID = 5844
ROLE_ID = 77


class _FakeRoleStore:
    """In-memory stand-in for the privilege columns of one guild row."""

    def __init__(self, manager=(), admin=(), event=()) -> None:
        self.sets = {
            Privilege.MANAGER: frozenset(manager),
            Privilege.ADMIN: frozenset(admin),
            Privilege.EVENT: frozenset(event),
        }
        self.reads: list[tuple[tuple[Privilege, ...], bool]] = []
        self.writes: list[tuple[Privilege, frozenset[int]]] = []

    async def read(self, session, guild_id, privileges, *, for_update=False):
        self.reads.append((tuple(privileges), for_update))
        return {privilege: self.sets[privilege] for privilege in privileges}

    async def write(self, session, guild_id, privilege, roles):
        roles = frozenset(roles)
        self.writes.append((privilege, roles))
        self.sets[privilege] = roles


class _GuildConfigFakeCase(unittest.IsolatedAsyncioTestCase):
    def _install(self, store: _FakeRoleStore) -> None:
        self.scopes: list[bool] = []
        self.committed: list[bool] = []

        @asynccontextmanager
        async def _fake_scope(session=None, *, commit=False):
            self.scopes.append(commit)
            yield session or object()
            self.committed.append(commit)

        for name, value in (
            ("session_scope", _fake_scope),
            ("_read_role_sets", store.read),
            ("_write_role_set", store.write),
        ):
            patcher = patch.object(guild_config, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)


class GrantPrivilegeTests(_GuildConfigFakeCase):
    async def test_grant_admin_grants_manager_first(self) -> None:
        store = _FakeRoleStore(manager={1}, admin={2})
        self._install(store)

        await guild_config.grant_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)

        self.assertEqual(
            [
                (Privilege.MANAGER, frozenset({1, ROLE_ID})),
                (Privilege.ADMIN, frozenset({2, ROLE_ID})),
            ],
            store.writes,
        )
        self.assertTrue(all(for_update for _, for_update in store.reads))
        self.assertEqual([True], self.scopes)

    async def test_grant_manager_touches_only_manager(self) -> None:
        store = _FakeRoleStore()
        self._install(store)

        await guild_config.grant_privilege(GUILD_ID, ROLE_ID, Privilege.MANAGER)

        self.assertEqual([(Privilege.MANAGER, frozenset({ROLE_ID}))], store.writes)
        self.assertEqual(frozenset(), store.sets[Privilege.ADMIN])

    async def test_grant_event_has_no_side_effect(self) -> None:
        store = _FakeRoleStore(manager={3})
        self._install(store)

        await guild_config.grant_privilege(GUILD_ID, ROLE_ID, Privilege.EVENT)

        self.assertEqual([(Privilege.EVENT, frozenset({ROLE_ID}))], store.writes)
        self.assertEqual(frozenset({3}), store.sets[Privilege.MANAGER])

    async def test_grant_held_privilege_keeps_membership(self) -> None:
        store = _FakeRoleStore(event={ROLE_ID})
        self._install(store)

        await guild_config.grant_privilege(GUILD_ID, ROLE_ID, Privilege.EVENT)

        self.assertEqual(frozenset({ROLE_ID}), store.sets[Privilege.EVENT])

    async def test_grant_rejects_unstorable_role_before_opening_scope(self) -> None:
        store = _FakeRoleStore()
        self._install(store)

        with self.assertRaises(ValueError):
            await guild_config.grant_privilege(GUILD_ID, 2**64 - 1, Privilege.MANAGER)

        self.assertEqual([], self.scopes)
        self.assertEqual([], store.writes)


class DenyPrivilegeTests(_GuildConfigFakeCase):
    async def test_deny_admin_denies_manager_first(self) -> None:
        store = _FakeRoleStore(manager={ROLE_ID, 1}, admin={ROLE_ID})
        self._install(store)

        await guild_config.deny_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)

        self.assertEqual(
            [
                (Privilege.MANAGER, frozenset({1})),
                (Privilege.ADMIN, frozenset()),
            ],
            store.writes,
        )

    async def test_deny_admin_tolerates_missing_manager(self) -> None:
        store = _FakeRoleStore(manager={1}, admin={ROLE_ID})
        self._install(store)

        await guild_config.deny_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)

        self.assertEqual([(Privilege.ADMIN, frozenset())], store.writes)
        self.assertEqual(frozenset({1}), store.sets[Privilege.MANAGER])

    async def test_deny_admin_on_manager_only_role_keeps_cascade(self) -> None:
        store = _FakeRoleStore(manager={ROLE_ID, 1})
        self._install(store)

        with self.assertRaises(RoleNoPrivilege) as ctx:
            await guild_config.deny_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)

        self.assertEqual(ROLE_ID, ctx.exception.role)
        self.assertIs(Privilege.ADMIN, ctx.exception.privilege)
        self.assertEqual([(Privilege.MANAGER, frozenset({1}))], store.writes)
        self.assertNotIn(ROLE_ID, store.sets[Privilege.MANAGER])
        # The scope exited cleanly, so the cascade was committed.
        self.assertEqual([True], self.committed)

    async def test_deny_manager_on_role_without_it(self) -> None:
        store = _FakeRoleStore(admin={ROLE_ID})
        self._install(store)

        with self.assertRaises(RoleNoPrivilege) as ctx:
            await guild_config.deny_privilege(GUILD_ID, ROLE_ID, Privilege.MANAGER)

        self.assertIs(Privilege.MANAGER, ctx.exception.privilege)
        self.assertEqual([], store.writes)
        self.assertEqual(frozenset({ROLE_ID}), store.sets[Privilege.ADMIN])

    async def test_grant_then_deny_admin_leaves_no_privilege(self) -> None:
        store = _FakeRoleStore()
        self._install(store)

        await guild_config.grant_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)
        self.assertTrue(
            await guild_config.has_privileges(
                GUILD_ID, ROLE_ID, [Privilege.ADMIN, Privilege.MANAGER]
            )
        )
        await guild_config.deny_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)

        self.assertFalse(
            await guild_config.has_privilege(GUILD_ID, ROLE_ID, Privilege.ADMIN)
        )
        self.assertFalse(
            await guild_config.has_privilege(GUILD_ID, ROLE_ID, Privilege.MANAGER)
        )


class PrivilegeQueryTests(_GuildConfigFakeCase):
    async def test_privileges_for_orders_admin_manager_event(self) -> None:
        store = _FakeRoleStore(manager={1, 2}, admin={1}, event={1, 3})
        self._install(store)

        self.assertEqual(
            [Privilege.ADMIN, Privilege.MANAGER, Privilege.EVENT],
            await guild_config.privileges_for(GUILD_ID, 1),
        )
        self.assertEqual([Privilege.MANAGER], await guild_config.privileges_for(GUILD_ID, 2))
        self.assertEqual([Privilege.EVENT], await guild_config.privileges_for(GUILD_ID, 3))
        self.assertEqual([], await guild_config.privileges_for(GUILD_ID, 4))

    async def test_privileges_for_reports_manager_for_inconsistent_admin(self) -> None:
        store = _FakeRoleStore(admin={1})
        self._install(store)

        self.assertEqual(
            [Privilege.ADMIN, Privilege.MANAGER],
            await guild_config.privileges_for(GUILD_ID, 1),
        )
        # One read for all three sets, without locking.
        self.assertEqual(
            [((Privilege.MANAGER, Privilege.ADMIN, Privilege.EVENT), False)],
            store.reads,
        )

    async def test_have_privilege_requires_every_role(self) -> None:
        store = _FakeRoleStore(event={1, 2})
        self._install(store)

        self.assertTrue(
            await guild_config.have_privilege(GUILD_ID, [1, 2], Privilege.EVENT)
        )
        self.assertFalse(
            await guild_config.have_privilege(GUILD_ID, [1, 5], Privilege.EVENT)
        )
        self.assertTrue(await guild_config.have_privilege(GUILD_ID, [], Privilege.EVENT))

    async def test_get_roles_with(self) -> None:
        store = _FakeRoleStore(manager={8, 9})
        self._install(store)

        self.assertEqual(
            frozenset({8, 9}),
            await guild_config.get_roles_with(GUILD_ID, Privilege.MANAGER),
        )


class MessageValidationTests(unittest.IsolatedAsyncioTestCase):
    async def test_too_long_message_fails_before_any_query(self) -> None:
        scope = AsyncMock()
        with patch.object(guild_config, "session_scope", scope):
            with self.assertRaises(MessageTooLong) as ctx:
                await guild_config.set_welcome_message(GUILD_ID, "x" * 2001)
        self.assertEqual("welcome_message", ctx.exception.field)
        scope.assert_not_called()

    async def test_goodbye_field_name(self) -> None:
        with self.assertRaises(MessageTooLong) as ctx:
            await guild_config.set_goodbye_message(GUILD_ID, "x" * 2001)
        self.assertEqual("goodbye_message", ctx.exception.field)

    def test_length_is_counted_in_characters(self) -> None:
        guild_config._check_message(MessageKind.WELCOME, "é" * 2000)
        guild_config._check_message(MessageKind.WELCOME, None)
        with self.assertRaises(MessageTooLong):
            guild_config._check_message(MessageKind.WELCOME, "é" * 2001)


class GuildConfigBuilderTests(unittest.TestCase):
    def test_defaults(self) -> None:
        builder = GuildConfigBuilder(GUILD_ID)
        self.assertIsNone(builder.welcome_message)
        self.assertIsNone(builder.goodbye_message)
        self.assertTrue(builder.advertise)
        self.assertIsNone(builder.admin_chan)
        self.assertIsNone(builder.poll_chans)
        self.assertEqual(set(), builder.priv_manager)
        self.assertEqual(set(), builder.priv_admin)
        self.assertEqual(set(), builder.priv_event)

    def test_rejects_long_messages(self) -> None:
        with self.assertRaises(MessageTooLong):
            GuildConfigBuilder(GUILD_ID, welcome_message="x" * 2001)
        builder = GuildConfigBuilder(GUILD_ID)
        with self.assertRaises(MessageTooLong):
            builder.with_goodbye_message("x" * 2001)
        self.assertIsNone(builder.goodbye_message)

    def test_fluent_setters(self) -> None:
        builder = (
            GuildConfigBuilder(GUILD_ID)
            .with_welcome_message("hello")
            .with_advertise(False)
            .with_admin_chan(87904)
            .with_poll_chans((2323, 664))
            .with_privilege(12, Privilege.ADMIN)
            .with_privilege(13, Privilege.EVENT)
        )
        self.assertEqual("hello", builder.welcome_message)
        self.assertFalse(builder.advertise)
        self.assertEqual(87904, builder.admin_chan)
        self.assertEqual([2323, 664], builder.poll_chans)
        self.assertEqual({12}, builder.priv_manager)
        self.assertEqual({12}, builder.priv_admin)
        self.assertEqual({13}, builder.priv_event)

    def test_builders_do_not_share_sets(self) -> None:
        first = GuildConfigBuilder(1).with_privilege(5, Privilege.MANAGER)
        second = GuildConfigBuilder(2)
        self.assertEqual({5}, first.priv_manager)
        self.assertEqual(set(), second.priv_manager)


class RoleEncodingTests(unittest.TestCase):
    def test_to_role_array_sorts_and_dedupes(self) -> None:
        self.assertEqual([1, 5, 9], guild_config._to_role_array([9, 1, 5, 1]))
        self.assertEqual([], guild_config._to_role_array(set()))
        with self.assertRaises(ValueError):
            guild_config._to_role_array([-3])

    def test_to_role_set_drops_duplicates(self) -> None:
        self.assertEqual(frozenset({1, 2}), guild_config._to_role_set([2, 1, 2]))
        self.assertEqual(frozenset(), guild_config._to_role_set(None))

    def test_canonical_role_arrays(self) -> None:
        manager, admin, event = guild_config._canonical_role_arrays(
            [4, 4, 2], [9, 1], None
        )
        self.assertEqual([1, 2, 4, 9], manager)
        self.assertEqual([1, 9], admin)
        self.assertEqual([], event)

    def test_guild_to_dict(self) -> None:
        row = {
            "id": 5844,
            "welcome_message": "hello",
            "goodbye_message": None,
            "advertise": True,
            "admin_chan": None,
            "poll_chans": [2323, 664],
            "priv_manager": [1, 2],
            "priv_admin": [1],
            "priv_event": [],
        }
        result = guild_config._guild_to_dict(row)
        self.assertEqual(5844, result["id"])
        self.assertIsNone(result["admin_chan"])
        self.assertEqual([2323, 664], result["poll_chans"])
        self.assertEqual(frozenset({1, 2}), result["priv_manager"])
        self.assertEqual(frozenset({1}), result["priv_admin"])
        self.assertEqual(frozenset(), result["priv_event"])

    def test_column_names(self) -> None:
        self.assertEqual("priv_manager", Privilege.MANAGER.column)
        self.assertEqual("priv_admin", Privilege.ADMIN.column)
        self.assertEqual("priv_event", Privilege.EVENT.column)
        self.assertEqual("welcome_message", MessageKind.WELCOME.column)
        self.assertEqual("goodbye_message", MessageKind.GOODBYE.column)
