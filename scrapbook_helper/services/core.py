"""
Scrapbook core: the one object a presentation layer talks to.

Owns the session pool, the rate limiter, the crawler of one server and, per
primary account, a ranking and an automation loop. The presentation layer
only issues commands and reads queries; it learns about changes through
`subscribe()`.

Driving:
    core = ScrapbookCore(ServerIdent.from_url(url), client)
    await core.login_scouts(5)
    await core.add_account(credentials)
    core.start_crawl()
    await core.run_forever()

INVARIANTS:
- Every account's ranking sees every snapshot the crawler produces
- A corrupt backup is reported once and the crawl restarts from page 0
- Listener errors never reach the crawler or the automation loop
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from scrapbook_helper.analysis.planner import plan_targets
from scrapbook_helper.analysis.policy import AttackPolicy
from scrapbook_helper.analysis.ranking import RankingStore
from scrapbook_helper.config import PLAN_MAX_STEPS, settings
from scrapbook_helper.models.attack import AttackRecord
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.failure import (
    CorruptPersistedState,
    FailureDetail,
    FailureKind,
    KnownError,
    create_notice,
)
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.models.session import Credentials, Session, SessionRole
from scrapbook_helper.models.snapshot import CharacterSnapshot, ScoredCandidate
from scrapbook_helper.parsers.backup import (
    CrawlBackup,
    build_backup,
    decode_backup,
    encode_backup,
    restore_snapshots,
)
from scrapbook_helper.services.automation import AutomationLoop, AutomationState
from scrapbook_helper.services.crawler import Crawler, CrawlState
from scrapbook_helper.services.game_client import GameClient
from scrapbook_helper.services.rate_limiter import RateLimiter
from scrapbook_helper.services.session_pool import SessionPool

logger = logging.getLogger(__name__)


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class RankingChanged:
    account: str
    top: tuple[ScoredCandidate, ...]


@dataclass(frozen=True)
class AutomationStateChanged:
    account: str
    previous: AutomationState
    state: AutomationState


@dataclass(frozen=True)
class CrawlStateChanged:
    server: str
    previous: CrawlState
    state: CrawlState


@dataclass(frozen=True)
class Notice:
    """A failure worth showing to the user."""

    detail: FailureDetail


CoreEvent = RankingChanged | AutomationStateChanged | CrawlStateChanged | Notice
Listener = Callable[[CoreEvent], None]
AttackStore = Callable[[AttackRecord], Awaitable[None]]


@dataclass
class AccountState:
    """Everything the core keeps for one primary account."""

    account: str
    ranking: RankingStore
    automation: AutomationLoop

    @property
    def collection(self) -> Collection:
        return self.ranking.collection


class ScrapbookCore:
    """Command/query facade over crawler, rankings, and automation."""

    def __init__(
        self,
        server: ServerIdent,
        client: GameClient,
        pool: SessionPool | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        ranking_size: int = settings.ranking_size,
        tick_interval: float = settings.tick_interval,
        max_tick_interval: float = settings.max_tick_interval,
        attack_store: AttackStore | None = None,
    ):
        """
        Args:
            attack_store: Optional coroutine that persists each attack record,
                e.g. `db.operations.log_attack`. Failures are logged and never
                reach the automation loop.
        """
        self.server = server
        self._client = client
        self._pool = pool or SessionPool()
        self._limiter = limiter or RateLimiter()
        self._clock = clock
        self._ranking_size = ranking_size
        self._tick_interval = tick_interval
        self._max_tick_interval = max_tick_interval

        self._listeners: list[Listener] = []
        self._accounts: dict[str, AccountState] = {}
        self._known: dict[int, CharacterSnapshot] = {}
        self._restored: set[int] = set()
        self._attack_log: list[AttackRecord] = []
        self._attack_store = attack_store
        self._store_tasks: set[asyncio.Task[None]] = set()

        self._crawler = Crawler(
            server=server.url,
            client=client,
            pool=self._pool,
            limiter=self._limiter,
            on_snapshot=self._on_snapshot,
            on_notice=self._notice,
            clock=clock,
        )
        self._crawl_state = self._crawler.state
        self._throttled = False
        self._stalled = False
        self._stop = asyncio.Event()

    # --- Events ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register `listener` for core events.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: CoreEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s", type(event).__name__)

    def _notice(self, detail: FailureDetail) -> None:
        logger.info("Notice: %s (%s)", detail.message, detail.detail)
        self._emit(Notice(detail=detail))

    # --- Accounts and sessions ---

    async def login_scouts(self, count: int) -> int:
        """
        Log in up to `count` scouting characters on this server.

        Returns:
            Number of usable scouts
        """
        scouts = await self._pool.ensure_scouts(self._client, self.server.url, count)
        if len(scouts) < count:
            logger.warning("Only %d of %d scouts could log in", len(scouts), count)
        return len(scouts)

    async def add_account(self, credentials: Credentials) -> AccountState | None:
        """
        Log a primary account in and fetch its scrapbook.

        Returns:
            The account state, or None if the account could not be set up
        """
        session = await self._pool.login(self._client, credentials, SessionRole.PRIMARY)
        if session is None:
            self._notice(create_notice(FailureKind.AUTH_FAILURE, f"account {credentials.name}"))
            return None
        try:
            collection = await self._client.fetch_collection(session.handle, credentials.name)
        except KnownError as e:
            logger.warning("Could not fetch the scrapbook of %s: %s", credentials.name, e.message)
            self._notice(e.to_detail())
            return None
        return self.add_account_session(session, collection)

    def add_account_session(self, session: Session, collection: Collection) -> AccountState:
        """Register an already logged-in primary session with its scrapbook."""
        if session.role != SessionRole.PRIMARY:
            raise ValueError(f"{session.name} is not a primary session")
        if session not in self._pool.sessions():
            self._pool.add(session)

        account = session.name
        ranking = RankingStore(collection, AttackPolicy())
        for snapshot in self._known.values():
            ranking.add_snapshot(snapshot, fresh=snapshot.character_id not in self._restored)
        automation = AutomationLoop(
            account=account,
            client=self._client,
            pool=self._pool,
            limiter=self._limiter,
            ranking=ranking,
            clock=self._clock,
            on_state=lambda previous, state: self._emit(
                AutomationStateChanged(account=account, previous=previous, state=state)
            ),
            on_attack=self._attack_logged,
            on_notice=self._notice,
            on_ranking=lambda: self._ranking_changed(account),
        )
        state = AccountState(account=account, ranking=ranking, automation=automation)
        self._accounts[account] = state
        self._ranking_changed(account)
        return state

    def _account(self, account: str) -> AccountState:
        state = self._accounts.get(account)
        if state is None:
            raise KeyError(f"Unknown account {account!r}")
        return state

    # --- Crawl commands ---

    def start_crawl(self, total_pages: int | None = None) -> None:
        self._crawler.start(total_pages)
        self._sync_crawl_state()

    async def pause_crawl(self) -> bytes:
        """
        Stop issuing crawl requests, let in-flight ones finish, then save.

        Returns:
            The backup blob taken at the resulting consistent boundary
        """
        self._crawler.pause()
        self._sync_crawl_state()
        await self._crawler.wait_idle()
        return self.save()

    def resume_crawl(self) -> None:
        self._crawler.resume()
        self._sync_crawl_state()

    def restart_crawl(self, total_pages: int | None = None) -> None:
        self._crawler.restart(total_pages)
        self._sync_crawl_state()

    def retry_invalid(self) -> None:
        self._crawler.retry_invalid()
        self._sync_crawl_state()

    def set_crawl_level_range(self, min_level: int, max_level: int | None) -> None:
        """Only crawl details of characters listed within the level window."""
        self._crawler.set_level_range(min_level, max_level)
        self._sync_crawl_state()

    # --- Automation commands ---

    def enable_automation(self, account: str) -> None:
        self._account(account).automation.enable()

    def disable_automation(self, account: str) -> None:
        self._account(account).automation.disable()

    def attack(self, account: str, character_id: int) -> bool:
        """Manually attack a ranked character; returns True if the attack was issued."""
        return self._account(account).automation.attack(character_id)

    def update_policy(self, account: str, policy: AttackPolicy) -> None:
        state = self._account(account)
        state.ranking.set_policy(policy)
        self._ranking_changed(account)

    def plan_targets(self, account: str, limit: int = PLAN_MAX_STEPS) -> list[ScoredCandidate]:
        state = self._account(account)
        return plan_targets(
            self._known.values(), state.collection, state.ranking.policy, limit=limit
        )

    # --- Persistence ---

    def save(self) -> bytes:
        """Serialize the crawl position and every known snapshot."""
        return encode_backup(self.backup())

    def backup(self) -> CrawlBackup:
        return build_backup(self._crawler.checkpoint(), self._known.values())

    async def restore(self, blob: bytes) -> bool:
        """
        Load a backup blob.

        A corrupt blob is reported once as a notice and the crawl restarts
        from page 0; it never raises.

        Returns:
            True if the backup was restored
        """
        try:
            backup = decode_backup(blob)
            if backup.server != self.server.url:
                raise CorruptPersistedState(
                    detail=f"backup of {backup.server!r}, expected {self.server.url!r}"
                )
        except CorruptPersistedState as e:
            logger.error("Discarding backup of %s: %s", self.server, e.detail)
            self._notice(e.to_detail())
            self._crawler.restart()
            self._sync_crawl_state()
            return False
        return await self.restore_backup(backup)

    async def restore_backup(self, backup: CrawlBackup) -> bool:
        self._crawler.reload(backup.to_queue())
        restored = await restore_snapshots(backup.snapshots, self._restore_snapshot)
        for account in self._accounts:
            self._ranking_changed(account)
        self._sync_crawl_state()
        logger.info(
            "Restored %d characters of %s at page %d",
            restored,
            self.server,
            backup.cursor.page,
        )
        return True

    def _restore_snapshot(self, snapshot: CharacterSnapshot) -> None:
        if self._remember(snapshot):
            self._restored.add(snapshot.character_id)
            for state in self._accounts.values():
                state.ranking.add_snapshot(snapshot, fresh=False)

    # --- Queries ---

    def top(self, account: str, n: int | None = None) -> list[ScoredCandidate]:
        return self._account(account).ranking.top(self._ranking_size if n is None else n)

    def crawl_state(self) -> CrawlState:
        return self._crawler.state

    def automation_state(self, account: str) -> AutomationState:
        return self._account(account).automation.state

    def disabled_sessions(self) -> int:
        return self._pool.disabled_count()

    def progress(self) -> tuple[int, int]:
        """(characters crawled, characters remaining) of the current crawl."""
        return self._crawler.progress()

    def attack_log(self, account: str | None = None) -> list[AttackRecord]:
        if account is None:
            return list(self._attack_log)
        return [record for record in self._attack_log if record.account == account]

    def accounts(self) -> list[str]:
        return list(self._accounts)

    def known_characters(self) -> int:
        return len(self._known)

    # --- Driver ---

    def tick(self) -> None:
        """One scheduling round: feed the crawler, then every armed automation loop."""
        self._crawler.step()
        for state in self._accounts.values():
            state.automation.tick()
        self._sync_crawl_state()
        self._check_crawl_health()

    def next_tick_delay(self) -> float:
        """Seconds the driver may sleep before the next tick has anything to do."""
        now = self._clock()
        waits = [self._crawler.next_wakeup(now)]
        waits.extend(state.automation.next_wakeup(now) for state in self._accounts.values())
        delays = [w for w in waits if w is not None]
        attacking = any(
            state.automation.state == AutomationState.ATTACKING
            for state in self._accounts.values()
        )
        if self._crawler.in_flight or attacking:
            # Completed requests free their sessions without waking the driver.
            delays.append(self._tick_interval)
        if not delays:
            return self._max_tick_interval
        return min(max(min(delays), 0.0), self._max_tick_interval)

    async def run_forever(self) -> None:
        """Tick until `stop()`, then wait for in-flight requests to finish."""
        self._stop.clear()
        logger.info("Driving %s", self.server)
        while not self._stop.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.next_tick_delay())
            except TimeoutError:
                pass
        await self.wait_idle()
        logger.info("Stopped driving %s", self.server)

    def stop(self) -> None:
        self._stop.set()

    async def wait_idle(self) -> None:
        """Wait for every in-flight crawl request and attack."""
        await self._crawler.wait_idle()
        for state in self._accounts.values():
            await state.automation.wait_idle()
        while self._store_tasks:
            await asyncio.gather(*list(self._store_tasks), return_exceptions=True)

    # --- Internals ---

    def _remember(self, snapshot: CharacterSnapshot) -> bool:
        known = self._known.get(snapshot.character_id)
        if known is not None and known.captured_at > snapshot.captured_at:
            return False
        self._known[snapshot.character_id] = snapshot
        return True

    def _on_snapshot(self, snapshot: CharacterSnapshot) -> None:
        if not self._remember(snapshot):
            return
        self._restored.discard(snapshot.character_id)
        for account, state in self._accounts.items():
            was_ranked = snapshot.character_id in state.ranking
            entry = state.ranking.add_snapshot(snapshot)
            if entry is not None or was_ranked:
                self._ranking_changed(account)

    def _ranking_changed(self, account: str) -> None:
        state = self._accounts.get(account)
        if state is None:
            return
        self._emit(
            RankingChanged(account=account, top=tuple(state.ranking.top(self._ranking_size)))
        )

    def _attack_logged(self, record: AttackRecord) -> None:
        self._attack_log.append(record)
        if self._attack_store is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._store_attack(self._attack_store, record)
        )
        self._store_tasks.add(task)
        task.add_done_callback(self._store_tasks.discard)

    async def _store_attack(self, store: AttackStore, record: AttackRecord) -> None:
        try:
            await store(record)
        except Exception as e:
            logger.error("Error storing attack of %s on %s: %s", record.account, record.name, e)

    def _sync_crawl_state(self) -> None:
        state = self._crawler.state
        if state == self._crawl_state:
            return
        previous, self._crawl_state = self._crawl_state, state
        logger.info("Crawl of %s: %s -> %s", self.server, previous.value, state.value)
        self._emit(CrawlStateChanged(server=self.server.url, previous=previous, state=state))

    def _check_crawl_health(self) -> None:
        throttled = self._crawler.is_throttled()
        if throttled and not self._throttled:
            self._notice(create_notice(FailureKind.RATE_LIMITED, f"server {self.server.url}"))
        self._throttled = throttled

        stalled = self._crawler.is_stalled()
        if stalled and not self._stalled:
            self._notice(
                create_notice(
                    FailureKind.AUTH_FAILURE,
                    f"no usable scouting session on {self.server.url}",
                )
            )
        self._stalled = stalled
