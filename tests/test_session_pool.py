"""Tests for the session pool."""

import pytest
from fakes import SERVER, FakeGameClient, make_session

from scrapbook_helper.config import MAX_SCOUT_SESSIONS
from scrapbook_helper.models.failure import TransientNetwork
from scrapbook_helper.models.session import Credentials, SessionRole, SessionState
from scrapbook_helper.services.session_pool import ScoutLimitError, SessionPool


class TestAcquireRelease:
    def test_acquire_marks_busy(self, pool: SessionPool) -> None:
        """An acquired session is not handed out again until released."""
        first = pool.acquire(SessionRole.SCOUT, 0.0)
        assert first is not None
        assert first.state == SessionState.BUSY

        others = [pool.acquire(SessionRole.SCOUT, 0.0) for _ in range(2)]
        assert all(s is not None and s is not first for s in others)
        assert pool.acquire(SessionRole.SCOUT, 0.0) is None

    def test_release_respects_next_allowed_at(self, pool: SessionPool) -> None:
        session = pool.acquire(SessionRole.SCOUT, 0.0)
        assert session is not None
        pool.release(session, 10.0)

        for _ in range(2):
            assert pool.acquire(SessionRole.SCOUT, 5.0) is not session
        assert pool.acquire(SessionRole.SCOUT, 5.0) is None
        assert pool.acquire(SessionRole.SCOUT, 10.0) is session

    def test_roles_do_not_mix(self, pool: SessionPool) -> None:
        """Attacks never take a scout, and crawling never takes the primary."""
        hero = pool.add(make_session("hero", role=SessionRole.PRIMARY))

        assert pool.acquire(SessionRole.PRIMARY, 0.0, account="hero") is hero
        assert pool.acquire(SessionRole.PRIMARY, 0.0, account="hero") is None
        assert all(s.role == SessionRole.SCOUT for s in pool.scouts())

    def test_server_filter(self, pool: SessionPool) -> None:
        assert pool.acquire(SessionRole.SCOUT, 0.0, server="elsewhere") is None
        assert pool.acquire(SessionRole.SCOUT, 0.0, server=SERVER) is not None

    def test_earliest_available(self, pool: SessionPool) -> None:
        for at in (5.0, 3.0, 9.0):
            session = pool.acquire(SessionRole.SCOUT, 0.0)
            assert session is not None
            pool.release(session, at)

        assert pool.earliest_available(SessionRole.SCOUT) == 3.0
        assert pool.earliest_available(SessionRole.PRIMARY) is None


class TestDisable:
    def test_disabled_session_leaves_rotation(self, pool: SessionPool) -> None:
        session = pool.acquire(SessionRole.SCOUT, 0.0)
        assert session is not None

        pool.disable(session, "bad password")
        pool.release(session, 0.0)

        assert session.state == SessionState.DISABLED
        assert pool.disabled_count() == 1
        assert session not in [pool.acquire(SessionRole.SCOUT, 0.0) for _ in range(3)]


class TestScoutCeiling:
    def test_ceiling_cannot_exceed_hard_limit(self) -> None:
        with pytest.raises(ScoutLimitError):
            SessionPool(max_scouts=MAX_SCOUT_SESSIONS + 1)

    def test_add_beyond_ceiling_raises(self) -> None:
        pool = SessionPool(max_scouts=2)
        pool.add(make_session("a"))
        pool.add(make_session("b"))

        with pytest.raises(ScoutLimitError):
            pool.add(make_session("c"))

    def test_duplicate_session_rejected(self, pool: SessionPool) -> None:
        with pytest.raises(ValueError, match="already in pool"):
            pool.add(make_session("scout1"))


class TestLogin:
    async def test_ensure_scouts_logs_in_named_scouts(self) -> None:
        """Scouts are named <base><index> with the name reversed as password."""
        client = FakeGameClient()
        pool = SessionPool(max_scouts=3)

        scouts = await pool.ensure_scouts(client, SERVER, 5, base_name="Zed")

        assert [s.name for s in scouts] == ["Zed1", "Zed2", "Zed3"]
        assert scouts[0].credentials == Credentials("Zed1", "1deZ", SERVER)
        assert client.logins == ["Zed1", "Zed2", "Zed3"]

    async def test_refused_login_counts_as_disabled(self) -> None:
        client = FakeGameClient()
        client.refused_logins.add("Zed2")
        pool = SessionPool(max_scouts=3)

        scouts = await pool.ensure_scouts(client, SERVER, 2, base_name="Zed")

        assert [s.name for s in scouts] == ["Zed1", "Zed3"]
        assert pool.disabled_count() == 1

    async def test_ensure_scouts_is_idempotent(self) -> None:
        client = FakeGameClient()
        pool = SessionPool()

        await pool.ensure_scouts(client, SERVER, 2, base_name="Zed")
        await pool.ensure_scouts(client, SERVER, 2, base_name="Zed")

        assert client.logins == ["Zed1", "Zed2"]

    async def test_relogin_replaces_handle(self) -> None:
        client = FakeGameClient()
        pool = SessionPool()
        session = pool.add(make_session("scout1"))
        session.handle = None
        session.consecutive_failures = 7

        assert await pool.relogin(client, session) is True
        assert session.handle == "handle:scout1"
        assert session.consecutive_failures == 0

    async def test_relogin_auth_failure_disables(self) -> None:
        client = FakeGameClient()
        client.refused_logins.add("scout1")
        pool = SessionPool()
        session = pool.add(make_session("scout1"))

        assert await pool.relogin(client, session) is False
        assert session.state == SessionState.DISABLED

    async def test_relogin_transient_failure_keeps_session(self) -> None:
        client = FakeGameClient()
        client.fail("login", "scout1", TransientNetwork())
        pool = SessionPool()
        session = pool.add(make_session("scout1"))

        assert await pool.relogin(client, session) is False
        assert session.state == SessionState.IDLE

    async def test_unexpected_login_error_is_not_fatal(self) -> None:
        """A client error outside the failure taxonomy only costs that scout."""
        client = FakeGameClient()
        client.fail("login", "Zed1", ConnectionError("reset by peer"))
        pool = SessionPool(max_scouts=3)

        scouts = await pool.ensure_scouts(client, SERVER, 2, base_name="Zed")

        assert [s.name for s in scouts] == ["Zed2", "Zed3"]
        assert pool.disabled_count() == 0

    async def test_unexpected_relogin_error_keeps_session(self) -> None:
        client = FakeGameClient()
        client.fail("login", "scout1", ConnectionError("reset by peer"))
        pool = SessionPool()
        session = pool.add(make_session("scout1"))

        assert await pool.relogin(client, session) is False
        assert session.state == SessionState.IDLE
