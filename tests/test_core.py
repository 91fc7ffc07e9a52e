"""Tests for the scrapbook core facade."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fakes import SERVER, FakeClock, FakeGameClient, drive, make_session

from scrapbook_helper.analysis.policy import AttackPolicy
from scrapbook_helper.config import settings
from scrapbook_helper.models.attack import AttackRecord
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.failure import FailureKind, TransientNetwork
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.models.session import Credentials, SessionRole
from scrapbook_helper.services.automation import AutomationState
from scrapbook_helper.services.core import (
    AttackStore,
    AutomationStateChanged,
    CoreEvent,
    CrawlStateChanged,
    Notice,
    RankingChanged,
    ScrapbookCore,
)
from scrapbook_helper.services.crawler import CrawlState
from scrapbook_helper.services.rate_limiter import RateLimiter
from scrapbook_helper.services.session_pool import SessionPool


def scout_pool(count: int = 3) -> SessionPool:
    pool = SessionPool()
    for index in range(1, count + 1):
        pool.add(make_session(f"scout{index}"))
    return pool


class Harness:
    """A core wired to a fake client, recording every event."""

    def __init__(
        self,
        client: FakeGameClient,
        clock: FakeClock | None = None,
        pool: SessionPool | None = None,
        limiter: RateLimiter | None = None,
        attack_store: AttackStore | None = None,
    ):
        self.client = client
        self.clock = clock or FakeClock()
        self.core = ScrapbookCore(
            ServerIdent.from_url(SERVER),
            client,
            pool=scout_pool() if pool is None else pool,
            limiter=limiter or RateLimiter(base_cooldown=0.0),
            clock=self.clock,
            ranking_size=10,
            attack_store=attack_store,
        )
        self.events: list[CoreEvent] = []
        self.core.subscribe(self.events.append)

    def add_hero(self, items: frozenset[str] = frozenset({"A", "B"})) -> None:
        self.core.add_account_session(
            make_session("hero", role=SessionRole.PRIMARY),
            Collection(account="hero", items=items),
        )

    async def run_until(self, condition, max_rounds: int = 500) -> int:
        return await drive(self.core.tick, self.core.wait_idle, self.clock, condition, max_rounds)

    async def run_to_end(self) -> None:
        await self.run_until(lambda: self.core.crawl_state() == CrawlState.EXHAUSTED)
        self.core.tick()

    def of_type(self, kind: type) -> list:
        return [e for e in self.events if isinstance(e, kind)]

    def notice_kinds(self) -> list[FailureKind]:
        return [e.detail.kind for e in self.of_type(Notice)]


@pytest.fixture
def harness(client: FakeGameClient) -> Harness:
    return Harness(client)


class TestCrawlAndRank:
    async def test_crawl_feeds_ranking(self, harness: Harness) -> None:
        """Every crawled snapshot reaches the account's ranking, best first."""
        harness.add_hero()
        harness.core.start_crawl(total_pages=10)

        await harness.run_to_end()

        top = harness.core.top("hero", 5)
        assert [c.character_id for c in top] == [0, 100, 200, 300, 400]
        assert all(c.score == 2 for c in top)
        assert harness.core.known_characters() == 30
        assert harness.core.progress() == (30, 0)

    async def test_crawl_state_events(self, harness: Harness) -> None:
        harness.core.start_crawl(total_pages=10)

        await harness.run_to_end()

        states = [e.state for e in harness.of_type(CrawlStateChanged)]
        assert states[0] == CrawlState.IDLE
        assert states[-1] == CrawlState.EXHAUSTED

    async def test_ranking_events_carry_top(self, harness: Harness) -> None:
        harness.add_hero()
        harness.core.start_crawl(total_pages=1)

        await harness.run_to_end()

        last = harness.of_type(RankingChanged)[-1]
        assert last.account == "hero"
        assert [c.character_id for c in last.top] == [0, 1, 2]

    async def test_every_account_sees_every_snapshot(self, harness: Harness) -> None:
        harness.add_hero()
        harness.core.add_account_session(
            make_session("sidekick", role=SessionRole.PRIMARY),
            Collection(account="sidekick", items=frozenset({"item0"})),
        )
        harness.core.start_crawl(total_pages=1)

        await harness.run_to_end()

        assert len(harness.core.top("hero")) == 3
        assert harness.core.top("sidekick")[0].character_id == 1
        assert sorted(harness.core.accounts()) == ["hero", "sidekick"]

    async def test_account_added_later_sees_known_characters(self, harness: Harness) -> None:
        harness.core.start_crawl(total_pages=1)
        await harness.run_to_end()

        harness.add_hero()

        assert len(harness.core.top("hero")) == 3

    async def test_unknown_account_raises(self, harness: Harness) -> None:
        with pytest.raises(KeyError, match="nobody"):
            harness.core.top("nobody")


class TestPersistence:
    async def test_pause_then_restore_visits_every_page_once(
        self, client: FakeGameClient
    ) -> None:
        """Pause mid-crawl, restore into a new core: every page is fetched once."""
        first = Harness(client)
        first.core.start_crawl(total_pages=10)
        await first.run_until(lambda: len(client.page_requests) >= 3)
        blob = await first.core.pause_crawl()
        assert first.core.crawl_state() == CrawlState.PAUSED

        second_client = FakeGameClient(pages=client.pages)
        second = Harness(second_client)
        second.add_hero()
        assert await second.core.restore(blob) is True
        second.core.start_crawl()
        await second.run_to_end()

        assert client.page_requests + second_client.page_requests == list(range(10))
        requested = sorted(client.detail_requests + second_client.detail_requests)
        assert requested == client.all_names()
        assert second.core.known_characters() == 30

    async def test_restored_candidates_are_not_fresh(self, harness: Harness) -> None:
        harness.core.start_crawl(total_pages=2)
        await harness.run_to_end()
        blob = harness.core.save()

        restored = Harness(FakeGameClient())
        assert await restored.core.restore(blob) is True
        restored.add_hero()

        top = restored.core.top("hero")
        assert len(top) == 6
        assert not any(c.fresh for c in top)
        assert restored.core.crawl_state() == CrawlState.EXHAUSTED

    async def test_corrupt_backup_notifies_once_and_restarts(self, harness: Harness) -> None:
        """A corrupt blob is reported once and the crawl starts over from page 0."""
        harness.core.start_crawl(total_pages=10)
        await harness.run_until(lambda: len(harness.client.page_requests) >= 3)
        await harness.core.pause_crawl()

        assert await harness.core.restore(b"definitely not a backup") is False

        assert harness.notice_kinds() == [FailureKind.CORRUPT_PERSISTED_STATE]
        assert harness.core.backup().cursor.page == 0
        assert harness.core.backup().pending == []

    async def test_backup_of_other_server_is_rejected(self, harness: Harness) -> None:
        other = ScrapbookCore(ServerIdent.from_url("s2.fake.test"), FakeGameClient())

        assert await harness.core.restore(other.save()) is False
        assert harness.notice_kinds() == [FailureKind.CORRUPT_PERSISTED_STATE]


class TestListeners:
    async def test_listener_errors_are_contained(self, harness: Harness) -> None:
        """A failing listener neither raises nor starves the others."""

        def broken(event: CoreEvent) -> None:
            raise RuntimeError("boom")

        harness.core.subscribe(broken)
        received: list[CoreEvent] = []
        harness.core.subscribe(received.append)

        harness.add_hero()

        assert any(isinstance(e, RankingChanged) for e in received)

    async def test_unsubscribe(self, harness: Harness) -> None:
        received: list[CoreEvent] = []
        unsubscribe = harness.core.subscribe(received.append)

        unsubscribe()
        harness.add_hero()

        assert received == []


class TestHealthNotices:
    async def test_stalled_crawl_notifies_once(self, client: FakeGameClient) -> None:
        harness = Harness(client, pool=SessionPool())
        harness.core.start_crawl()

        harness.core.tick()
        harness.core.tick()

        assert harness.notice_kinds() == [FailureKind.AUTH_FAILURE]

    async def test_throttled_crawl_notifies_once(self, client: FakeGameClient) -> None:
        """RateLimited is surfaced once per throttled stretch, not per request."""
        limiter = RateLimiter(base_cooldown=0.0)
        pool = scout_pool()
        harness = Harness(client, pool=pool, limiter=limiter)
        for scout in pool.scouts():
            limiter.record_rate_limited(scout, harness.clock())
        harness.core.start_crawl()

        harness.core.tick()
        harness.core.tick()

        assert harness.notice_kinds() == [FailureKind.RATE_LIMITED]


class TestDriver:
    async def test_idle_core_sleeps_max_interval(self, harness: Harness) -> None:
        assert harness.core.next_tick_delay() == settings.max_tick_interval

    async def test_pending_work_wakes_immediately(self, harness: Harness) -> None:
        harness.core.start_crawl()

        assert harness.core.next_tick_delay() == 0.0

    async def test_run_forever_until_stopped(self, limiter: RateLimiter) -> None:
        """The driver loop crawls on the real clock until stopped."""
        client = FakeGameClient.with_directory(3)
        core = ScrapbookCore(
            ServerIdent.from_url(SERVER),
            client,
            pool=scout_pool(),
            limiter=limiter,
            tick_interval=0.01,
            max_tick_interval=0.02,
        )

        def on_event(event: CoreEvent) -> None:
            if isinstance(event, CrawlStateChanged) and event.state == CrawlState.EXHAUSTED:
                core.stop()

        core.subscribe(on_event)
        core.start_crawl()

        await asyncio.wait_for(core.run_forever(), timeout=10.0)

        assert core.known_characters() == 9
        assert core.crawl_state() == CrawlState.EXHAUSTED


class TestAccounts:
    async def test_add_account_fetches_collection(self, harness: Harness) -> None:
        harness.client.collection = Collection(account="hero", items=frozenset({"A"}))

        state = await harness.core.add_account(Credentials("hero", "oreh", SERVER))

        assert state is not None
        assert state.collection.items == {"A"}
        assert harness.client.logins == ["hero"]
        assert harness.core.accounts() == ["hero"]

    async def test_refused_account_notifies(self, harness: Harness) -> None:
        harness.client.refused_logins.add("hero")

        assert await harness.core.add_account(Credentials("hero", "oreh", SERVER)) is None
        assert harness.notice_kinds() == [FailureKind.AUTH_FAILURE]
        assert harness.core.disabled_sessions() == 1

    async def test_scrapbook_fetch_failure_notifies(self, harness: Harness) -> None:
        harness.client.fail("collection", "hero", TransientNetwork())

        assert await harness.core.add_account(Credentials("hero", "oreh", SERVER)) is None
        assert harness.notice_kinds() == [FailureKind.TRANSIENT_NETWORK]

    async def test_login_scouts(self) -> None:
        client = FakeGameClient()
        core = ScrapbookCore(ServerIdent.from_url(SERVER), client)

        assert await core.login_scouts(2) == 2
        assert len(client.logins) == 2

    async def test_primary_session_required(self, harness: Harness) -> None:
        with pytest.raises(ValueError, match="not a primary session"):
            harness.core.add_account_session(make_session("scout9"), Collection(account="x"))


class TestAutomationCommands:
    async def crawled(self, harness: Harness, pages: int = 1) -> None:
        harness.add_hero()
        harness.core.start_crawl(total_pages=pages)
        await harness.run_to_end()

    async def test_manual_attack_is_logged(self, harness: Harness) -> None:
        await self.crawled(harness)

        assert harness.core.attack("hero", 1) is True
        await harness.core.wait_idle()

        log = harness.core.attack_log("hero")
        assert [r.name for r in log] == ["char1"]
        assert log[0].new_items == ("item1", "shared1")
        assert harness.core.attack_log() == log
        assert harness.core.attack_log("someone-else") == []

    async def test_enabled_automation_attacks(self, harness: Harness) -> None:
        await self.crawled(harness)

        harness.core.enable_automation("hero")
        harness.core.tick()
        await harness.core.wait_idle()

        assert harness.client.attacks == ["char0"]
        states = [e.state for e in harness.of_type(AutomationStateChanged)]
        assert states == [
            AutomationState.ARMED,
            AutomationState.ATTACKING,
            AutomationState.ARMED,
        ]

        harness.core.disable_automation("hero")
        assert harness.core.automation_state("hero") == AutomationState.DISABLED

    async def test_update_policy_reranks(self, harness: Harness) -> None:
        await self.crawled(harness, pages=2)

        harness.core.update_policy("hero", AttackPolicy(max_level=10))

        assert [c.character_id for c in harness.core.top("hero")] == [0, 100]
        assert [c.character_id for c in harness.of_type(RankingChanged)[-1].top] == [0, 100]

    async def test_plan_targets(self, harness: Harness) -> None:
        await self.crawled(harness, pages=2)

        plan = harness.core.plan_targets("hero")

        assert len(plan) == 6
        assert plan[0].score == 2
        assert len(harness.core.plan_targets("hero", limit=2)) == 2

    async def test_attacks_reach_the_attack_store(self, client: FakeGameClient) -> None:
        stored: list[AttackRecord] = []

        async def store(record: AttackRecord) -> None:
            stored.append(record)

        harness = Harness(client, attack_store=store)
        await self.crawled(harness)

        harness.core.attack("hero", 1)
        await harness.core.wait_idle()

        assert stored == harness.core.attack_log("hero")
        assert [r.name for r in stored] == ["char1"]

    async def test_failing_attack_store_is_contained(self, client: FakeGameClient) -> None:
        """A broken store is logged; the fight stays in the in-memory log."""
        store = AsyncMock(side_effect=RuntimeError("database down"))
        harness = Harness(client, attack_store=store)
        await self.crawled(harness)

        harness.core.attack("hero", 1)
        await harness.core.wait_idle()

        store.assert_awaited_once()
        assert [r.name for r in harness.core.attack_log("hero")] == ["char1"]


class TestCrawlCommands:
    async def test_retry_invalid_leaves_exhausted_state(self, client: FakeGameClient) -> None:
        client.fail("page", 1, *[TransientNetwork() for _ in range(4)])
        harness = Harness(client)
        harness.core.start_crawl(total_pages=3)
        await harness.run_to_end()

        harness.core.retry_invalid()

        assert harness.core.crawl_state() != CrawlState.EXHAUSTED
        await harness.run_to_end()
        assert harness.core.known_characters() == 9

    async def test_level_window_holds_back_and_releases(self, client: FakeGameClient) -> None:
        harness = Harness(client)
        harness.core.set_crawl_level_range(1, 10)
        harness.core.start_crawl(total_pages=2)
        await harness.run_to_end()
        assert harness.core.known_characters() == 2

        harness.core.set_crawl_level_range(1, None)

        assert harness.of_type(CrawlStateChanged)[-1].state != CrawlState.EXHAUSTED
        await harness.run_to_end()
        assert harness.core.known_characters() == 6
