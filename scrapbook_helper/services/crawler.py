"""
Hall of Fame crawler.

Walks a server's character directory page by page with the scouting
sessions and fetches every listed character's equipment.

The crawler is stepped, not looped: the driver calls `step()` once per
scheduling tick and `step()` issues as many requests as there are idle
scouts, permits, and work. Each request runs as an asyncio task that holds
its session until it completes.

INVARIANTS:
- One page in flight at a time. Pages are requested in increasing order;
  failed pages put back by retry_invalid() go first, without moving the cursor
- The cursor advances only after the page's characters are enqueued
- A checkpoint always lies on a page boundary: in-flight characters are
  saved as pending, an in-flight page is saved as not yet fetched
- A single failed request never aborts the crawl
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any

from scrapbook_helper.config import settings
from scrapbook_helper.models.cursor import CrawlQueue, DirectoryCursor
from scrapbook_helper.models.failure import (
    AuthFailure,
    FailureDetail,
    FailureKind,
    KnownError,
    RateLimited,
    create_notice,
)
from scrapbook_helper.models.session import Session, SessionRole
from scrapbook_helper.models.snapshot import CharacterRef, CharacterSnapshot
from scrapbook_helper.services.game_client import GameClient
from scrapbook_helper.services.rate_limiter import RateLimiter, Wait
from scrapbook_helper.services.session_pool import SessionPool

logger = logging.getLogger(__name__)


class CrawlState(str, Enum):
    IDLE = "idle"
    PAGING = "paging"
    FETCHING_DETAIL = "fetching_detail"
    PAUSED = "paused"
    EXHAUSTED = "exhausted"


SnapshotSink = Callable[[CharacterSnapshot], None]
NoticeSink = Callable[[FailureDetail], None]


def _level_window(min_level: int, max_level: int | None) -> tuple[int, int | None]:
    """Clamp a level window: the minimum is at least 1, the maximum at least the minimum."""
    low = max(1, min_level)
    return low, None if max_level is None else max(max_level, low)


class Crawler:
    """Resumable, rate-limited crawl of one server's Hall of Fame."""

    def __init__(
        self,
        server: str,
        client: GameClient,
        pool: SessionPool,
        limiter: RateLimiter,
        on_snapshot: SnapshotSink,
        on_notice: NoticeSink | None = None,
        queue: CrawlQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_detail_retries: int = settings.max_detail_retries,
        max_page_retries: int = settings.max_page_retries,
        relogin_after_failures: int = settings.relogin_after_failures,
        min_level: int = settings.crawl_min_level,
        max_level: int | None = settings.crawl_max_level,
    ):
        self.server = server
        self._client = client
        self._pool = pool
        self._limiter = limiter
        self._on_snapshot = on_snapshot
        self._on_notice = on_notice
        self._clock = clock
        self._max_detail_retries = max_detail_retries
        self._max_page_retries = max_page_retries
        self._relogin_after_failures = relogin_after_failures
        self._min_level, self._max_level = _level_window(min_level, max_level)

        self._generation = 0
        # A new crawler starts paused; start() or resume() lets step() issue requests.
        self._paused = True
        self._tasks: set[asyncio.Task[None]] = set()
        self._page_in_flight: int | None = None
        self._characters_in_flight: dict[str, CharacterRef] = {}
        self._page_failures: dict[int, int] = {}
        self._detail_failures: dict[str, int] = {}
        self._crawled = 0
        self._load(queue or CrawlQueue(cursor=DirectoryCursor(server=server)))

    def _load(self, queue: CrawlQueue) -> None:
        if queue.cursor.server != self.server:
            raise ValueError(f"Queue belongs to {queue.cursor.server}, not {self.server}")
        self._cursor = DirectoryCursor(
            server=queue.cursor.server,
            page=queue.cursor.page,
            total_pages=queue.cursor.total_pages,
        )
        self._pending: deque[CharacterRef] = deque()
        self._queued: set[str] = set()
        self._level_skipped: dict[str, CharacterRef] = {}
        # Skipped characters are sorted again against the current window.
        for ref in [*queue.pending, *queue.level_skipped]:
            self._enqueue(ref)
        self._invalid_pages = list(queue.invalid_pages)
        self._invalid_characters = list(queue.invalid_characters)
        self._retry_pages = sorted(set(queue.retry_pages))

    # --- Commands ---

    def start(self, total_pages: int | None = None) -> None:
        """Begin (or continue) crawling; `total_pages` seeds the cursor when known."""
        if total_pages is not None and self._cursor.total_pages is None:
            self._cursor.total_pages = total_pages
        self._paused = False

    def pause(self) -> None:
        """
        Stop issuing new requests.

        Requests already in flight complete normally; await `wait_idle()`
        before taking a checkpoint meant to be final.
        """
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def restart(self, total_pages: int | None = None) -> None:
        """
        Throw away all progress and start again from page 0.

        Results of requests still in flight are discarded on arrival.
        """
        self.reload(CrawlQueue(cursor=DirectoryCursor(server=self.server, total_pages=total_pages)))
        logger.info("Crawl of %s restarted from page 0", self.server)

    def reload(self, queue: CrawlQueue) -> None:
        """
        Replace the crawl position, e.g. with one read from a backup.

        Results of requests still in flight are discarded on arrival.
        """
        if queue.cursor.server != self.server:
            raise ValueError(f"Queue belongs to {queue.cursor.server}, not {self.server}")
        self._generation += 1
        self._page_in_flight = None
        self._characters_in_flight.clear()
        self._page_failures.clear()
        self._detail_failures.clear()
        self._crawled = 0
        self._load(queue)

    def retry_invalid(self) -> None:
        """Move characters and pages that exhausted their retries back into the queue."""
        for name in self._invalid_characters:
            self._detail_failures.pop(name, None)
            self._enqueue(CharacterRef(server=self.server, name=name))
        self._invalid_characters.clear()
        for page in self._invalid_pages:
            self._page_failures.pop(page, None)
        self._retry_pages = sorted(set(self._retry_pages) | set(self._invalid_pages))
        self._invalid_pages.clear()

    def set_level_range(self, min_level: int, max_level: int | None) -> None:
        """
        Only fetch details of characters listed within [min_level, max_level].

        Characters outside the window are kept aside and queued again as soon
        as a later window includes them. Characters listed without a level are
        always fetched. Requests already in flight are not affected.
        """
        self._min_level, self._max_level = _level_window(min_level, max_level)
        waiting = [*self._pending, *self._level_skipped.values()]
        self._pending.clear()
        self._level_skipped.clear()
        for ref in waiting:
            self._queued.discard(ref.name)
            self._enqueue(ref)
        logger.info(
            "Crawl level window of %s is %d..%s: %d queued, %d held back",
            self.server,
            self._min_level,
            self._max_level,
            len(self._pending),
            len(self._level_skipped),
        )

    # --- Queries ---

    @property
    def cursor(self) -> DirectoryCursor:
        return self._cursor

    @property
    def state(self) -> CrawlState:
        if self.is_exhausted():
            return CrawlState.EXHAUSTED
        if self._paused:
            return CrawlState.PAUSED
        if self._page_in_flight is not None:
            return CrawlState.PAGING
        if self._characters_in_flight:
            return CrawlState.FETCHING_DETAIL
        return CrawlState.IDLE

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def is_exhausted(self) -> bool:
        return (
            self._cursor.is_exhausted()
            and not self._retry_pages
            and not self._pending
            and not self._characters_in_flight
            and self._page_in_flight is None
        )

    def is_throttled(self) -> bool:
        """True when there is work, yet every usable scout is backing off."""
        if self._paused or self.is_exhausted():
            return False
        scouts = [s for s in self._pool.usable_scouts() if s.server == self.server]
        return bool(scouts) and all(self._limiter.is_backing_off(s) for s in scouts)

    def is_stalled(self) -> bool:
        """True when there is work but no usable scout at all."""
        if self._paused or self.is_exhausted():
            return False
        return not any(s.server == self.server for s in self._pool.usable_scouts())

    @property
    def level_window(self) -> tuple[int, int | None]:
        return self._min_level, self._max_level

    def level_skipped(self) -> int:
        """Number of listed characters held back by the level window."""
        return len(self._level_skipped)

    def progress(self) -> tuple[int, int]:
        """(characters crawled in this run, characters known to be remaining)."""
        return self._crawled, len(self._pending) + len(self._characters_in_flight)

    def checkpoint(self) -> CrawlQueue:
        """Consistent copy of the crawl position, safe to persist at any time."""
        pending = list(self._characters_in_flight.values()) + list(self._pending)
        return CrawlQueue(
            cursor=DirectoryCursor(
                server=self._cursor.server,
                page=self._cursor.page,
                total_pages=self._cursor.total_pages,
            ),
            pending=pending,
            invalid_pages=list(self._invalid_pages),
            invalid_characters=list(self._invalid_characters),
            retry_pages=list(self._retry_pages),
            level_skipped=list(self._level_skipped.values()),
        )

    def next_wakeup(self, now: float) -> float | None:
        """Seconds until a scout becomes available, or None if nothing is waiting."""
        if self._paused or not self._has_work():
            return None
        earliest = self._pool.earliest_available(SessionRole.SCOUT, server=self.server)
        if earliest is None:
            return None
        return max(0.0, earliest - now)

    async def wait_idle(self) -> None:
        """Wait until every in-flight request has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Scheduling ---

    def step(self) -> int:
        """
        Issue requests while scouts, permits, and work are all available.

        Must be called from a running event loop.

        Returns:
            Number of requests issued
        """
        if self._paused:
            return 0
        now = self._clock()
        issued = 0
        while self._has_work():
            session = self._pool.acquire(SessionRole.SCOUT, now, server=self.server)
            if session is None:
                break
            decision = self._limiter.permit(session, now)
            if isinstance(decision, Wait):
                self._pool.release(session, now + decision.duration)
                continue
            if not self._issue(session):
                self._pool.release(session, now)
                break
            issued += 1
        return issued

    def _has_work(self) -> bool:
        if self._pending:
            return True
        if self._page_in_flight is not None:
            return False
        return bool(self._retry_pages) or not self._cursor.is_exhausted()

    def _issue(self, session: Session) -> bool:
        while self._pending:
            ref = self._pending.popleft()
            if not ref.is_lookupable():
                self._queued.discard(ref.name)
                self._invalid_characters.append(ref.name)
                logger.debug("Skipping unlookupable name %r", ref.name)
                continue
            self._characters_in_flight[ref.name] = ref
            self._spawn(self._fetch_character(session, ref, self._generation))
            return True

        if self._page_in_flight is not None:
            return False
        if self._retry_pages:
            # A retried page stays listed until it succeeds or fails for good.
            page, retry = self._retry_pages[0], True
        elif not self._cursor.is_exhausted():
            page, retry = self._cursor.page, False
        else:
            return False
        self._page_in_flight = page
        self._spawn(self._fetch_page(session, page, retry, self._generation))
        return True

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _enqueue(self, ref: CharacterRef) -> None:
        if ref.name in self._queued:
            return
        self._level_skipped.pop(ref.name, None)
        if not self._in_window(ref):
            self._level_skipped[ref.name] = ref
            return
        self._queued.add(ref.name)
        self._pending.append(ref)

    def _in_window(self, ref: CharacterRef) -> bool:
        if ref.level is None:
            return True
        if ref.level < self._min_level:
            return False
        return self._max_level is None or ref.level <= self._max_level

    # --- Requests ---

    async def _fetch_page(
        self, session: Session, page: int, retry: bool, generation: int
    ) -> None:
        try:
            refs = await self._client.fetch_directory_page(session.handle, self.server, page)
        except RateLimited as e:
            self._rate_limited(session, e)
        except AuthFailure as e:
            self._auth_failed(session, e)
        except Exception as e:
            if generation == self._generation:
                self._page_failed(page, retry, e)
            await self._count_failure(session)
        else:
            self._succeeded(session)
            if generation == self._generation:
                self._page_listed(page, retry, refs)
        finally:
            if generation == self._generation:
                self._page_in_flight = None
            self._release(session)

    async def _fetch_character(self, session: Session, ref: CharacterRef, generation: int) -> None:
        try:
            snapshot = await self._client.fetch_character_detail(session.handle, ref)
        except RateLimited as e:
            self._rate_limited(session, e)
            if generation == self._generation:
                self._requeue_front(ref)
        except AuthFailure as e:
            self._auth_failed(session, e)
            if generation == self._generation:
                self._requeue_front(ref)
        except Exception as e:
            if generation == self._generation:
                self._character_failed(ref, e)
            await self._count_failure(session)
        else:
            self._succeeded(session)
            if generation == self._generation:
                self._characters_in_flight.pop(ref.name, None)
                self._queued.discard(ref.name)
                self._detail_failures.pop(ref.name, None)
                self._crawled += 1
                self._on_snapshot(snapshot)
        finally:
            self._release(session)

    # --- Outcome handling ---

    def _requeue_front(self, ref: CharacterRef) -> None:
        self._characters_in_flight.pop(ref.name, None)
        self._pending.appendleft(ref)

    def _page_listed(self, page: int, retry: bool, refs: list[CharacterRef]) -> None:
        self._page_failures.pop(page, None)
        for ref in refs:
            self._enqueue(ref)
        if retry:
            self._retry_pages.remove(page)
            logger.info(
                "Retried page %d of %s listed %d characters", page, self.server, len(refs)
            )
        elif refs:
            self._cursor.advance()
            logger.debug("Page %d of %s listed %d characters", page, self.server, len(refs))
        else:
            self._cursor.mark_end(page)
            logger.info("Directory of %s ends at page %d", self.server, page)

    def _page_failed(self, page: int, retry: bool, error: Exception) -> None:
        failures = self._page_failures.get(page, 0) + 1
        self._page_failures[page] = failures
        if failures <= self._max_page_retries:
            logger.debug("Page %d of %s failed (%d): %s", page, self.server, failures, error)
            return
        logger.warning(
            "Skipping page %d of %s after %d failures: %s", page, self.server, failures, error
        )
        self._page_failures.pop(page, None)
        self._invalid_pages.append(page)
        if retry:
            self._retry_pages.remove(page)
        else:
            self._cursor.advance()

    def _character_failed(self, ref: CharacterRef, error: Exception) -> None:
        self._characters_in_flight.pop(ref.name, None)
        failures = self._detail_failures.get(ref.name, 0) + 1
        self._detail_failures[ref.name] = failures
        if failures <= self._max_detail_retries:
            self._pending.append(ref)
            return
        logger.warning("Skipping character %s after %d failures: %s", ref.name, failures, error)
        self._detail_failures.pop(ref.name, None)
        self._queued.discard(ref.name)
        self._invalid_characters.append(ref.name)

    def _rate_limited(self, session: Session, error: RateLimited) -> None:
        backoff = self._limiter.record_rate_limited(session, self._clock(), error.retry_after)
        logger.debug("Scout %s rate limited, backing off %.1fs", session.name, backoff)

    def _auth_failed(self, session: Session, error: KnownError) -> None:
        self._pool.disable(session, error.message)
        if self._on_notice is not None:
            self._on_notice(create_notice(FailureKind.AUTH_FAILURE, f"scout {session.name}"))

    def _succeeded(self, session: Session) -> None:
        session.consecutive_failures = 0
        self._limiter.record_success(session)

    async def _count_failure(self, session: Session) -> None:
        session.consecutive_failures += 1
        if session.consecutive_failures >= self._relogin_after_failures:
            await self._pool.relogin(self._client, session)

    def _release(self, session: Session) -> None:
        self._pool.release(
            session, max(self._clock(), self._limiter.next_allowed_at(session))
        )
