"""
Automation loop: attacks the best candidate whenever the primary session may fight.

State machine:
    DISABLED -> ARMED -> ATTACKING -> ARMED ... -> DISABLED

INVARIANTS:
- At most one attack in flight per account: the primary session is BUSY
  from acquire until the outcome has been handled and the session released
- An unreachable candidate is removed and never attacked again
- After every completed fight the ranking is recomputed against the
  (possibly new) Collection
- A tick with no session or cooldown available does nothing
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum

from scrapbook_helper.analysis.matcher import new_items
from scrapbook_helper.analysis.ranking import RankingStore
from scrapbook_helper.config import settings
from scrapbook_helper.models.attack import AttackOutcome, AttackRecord
from scrapbook_helper.models.failure import (
    AuthFailure,
    FailureDetail,
    FailureKind,
    RateLimited,
    create_notice,
)
from scrapbook_helper.models.session import Session, SessionRole
from scrapbook_helper.models.snapshot import ScoredCandidate
from scrapbook_helper.services.game_client import GameClient
from scrapbook_helper.services.rate_limiter import RateLimiter, Wait
from scrapbook_helper.services.session_pool import SessionPool

logger = logging.getLogger(__name__)


class AutomationState(str, Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    ATTACKING = "attacking"


StateSink = Callable[[AutomationState, AutomationState], None]
AttackSink = Callable[[AttackRecord], None]
NoticeSink = Callable[[FailureDetail], None]
RankingSink = Callable[[], None]


class AutomationLoop:
    """Scheduler that fights the top-ranked opponent for one account."""

    def __init__(
        self,
        account: str,
        client: GameClient,
        pool: SessionPool,
        limiter: RateLimiter,
        ranking: RankingStore,
        clock: Callable[[], float] = time.monotonic,
        attack_cooldown: float = settings.attack_cooldown,
        min_fresh_ratio: float = settings.automation_min_fresh_ratio,
        on_state: StateSink | None = None,
        on_attack: AttackSink | None = None,
        on_notice: NoticeSink | None = None,
        on_ranking: RankingSink | None = None,
    ):
        self.account = account
        self._client = client
        self._pool = pool
        self._limiter = limiter
        self._ranking = ranking
        self._clock = clock
        self._attack_cooldown = attack_cooldown
        self._min_fresh_ratio = min_fresh_ratio
        self._on_state = on_state
        self._on_attack = on_attack
        self._on_notice = on_notice
        self._on_ranking = on_ranking

        self._state = AutomationState.DISABLED
        self._after_attack = AutomationState.DISABLED
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> AutomationState:
        return self._state

    # --- Commands ---

    def enable(self) -> None:
        if self._state == AutomationState.ATTACKING:
            self._after_attack = AutomationState.ARMED
            return
        self._set_state(AutomationState.ARMED)

    def disable(self) -> None:
        """Stop attacking; a fight already in flight still completes."""
        if self._state == AutomationState.ATTACKING:
            self._after_attack = AutomationState.DISABLED
            return
        self._set_state(AutomationState.DISABLED)

    def tick(self) -> bool:
        """
        Attack the best candidate if automation is armed and the session may fight.

        Returns:
            True if an attack was issued
        """
        if self._state != AutomationState.ARMED:
            return False
        target = self._choose_target()
        if target is None:
            return False
        return self._try_attack(target)

    def attack(self, character_id: int) -> bool:
        """
        Manually attack a ranked character, whether or not automation is armed.

        Returns:
            True if the attack was issued
        """
        if self._state == AutomationState.ATTACKING:
            return False
        target = self._ranking.get(character_id)
        if target is None:
            logger.warning("Character %d is not ranked for %s", character_id, self.account)
            return False
        return self._try_attack(target)

    # --- Queries ---

    def next_wakeup(self, now: float) -> float | None:
        """Seconds until the primary session may fight again, if automation is armed."""
        if self._state != AutomationState.ARMED or self._choose_target() is None:
            return None
        earliest = self._pool.earliest_available(SessionRole.PRIMARY, account=self.account)
        if earliest is None:
            return None
        return max(0.0, earliest - now)

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)

    # --- Internals ---

    def _choose_target(self) -> ScoredCandidate | None:
        if self._min_fresh_ratio <= 0:
            return self._ranking.first()
        # Restored candidates may be out of date; wait until most are refetched.
        if self._ranking.fresh_ratio() < self._min_fresh_ratio:
            return None
        return self._ranking.first(fresh_only=True)

    def _try_attack(self, target: ScoredCandidate) -> bool:
        now = self._clock()
        session = self._pool.acquire(SessionRole.PRIMARY, now, account=self.account)
        if session is None:
            return False
        decision = self._limiter.permit(session, now)
        if isinstance(decision, Wait):
            self._pool.release(session, now + decision.duration)
            return False

        self._after_attack = self._state
        self._set_state(AutomationState.ATTACKING)
        self._task = asyncio.get_running_loop().create_task(self._attack(session, target))
        return True

    async def _attack(self, session: Session, target: ScoredCandidate) -> None:
        snapshot = target.snapshot
        logger.info(
            "%s attacks %s (level %d, %d new items)",
            self.account,
            snapshot.name,
            snapshot.level,
            target.score,
        )
        retry_now = False
        next_allowed_at = self._clock()
        try:
            outcome = await self._client.attack(session.handle, snapshot.ref)
        except RateLimited as e:
            self._limiter.record_rate_limited(session, self._clock(), e.retry_after)
            next_allowed_at = self._limiter.next_allowed_at(session)
        except AuthFailure as e:
            self._pool.disable(session, e.message)
            self._after_attack = AutomationState.DISABLED
            self._notice(FailureKind.AUTH_FAILURE, f"account {self.account}")
        except Exception as e:
            logger.warning("Attack on %s failed, dropping candidate: %s", snapshot.name, e)
            self._ranking.policy.mark_unreachable(snapshot.character_id)
            self._ranking.remove(snapshot.character_id)
            self._ranking_changed()
            retry_now = True
        else:
            self._limiter.record_success(session)
            self._handle_outcome(target, outcome)
            cooldown = self._attack_cooldown if outcome.cooldown is None else outcome.cooldown
            next_allowed_at = max(
                self._clock() + cooldown, self._limiter.next_allowed_at(session)
            )
        finally:
            self._pool.release(session, next_allowed_at)
            self._set_state(self._after_attack)

        if retry_now:
            self.tick()

    def _handle_outcome(self, target: ScoredCandidate, outcome: AttackOutcome) -> None:
        snapshot = target.snapshot
        before = self._ranking.collection
        if outcome.won:
            collection = outcome.collection or before.with_items(snapshot.items)
        else:
            collection = outcome.collection or before
            self._ranking.policy.record_loss(snapshot.character_id)

        gained = tuple(sorted(new_items(snapshot, before) & collection.items))
        logger.info(
            "%s %s against %s, %d new items",
            self.account,
            "won" if outcome.won else "lost",
            snapshot.name,
            len(gained),
        )
        self._ranking.invalidate_all(collection)
        self._ranking_changed()
        if self._on_attack is not None:
            self._on_attack(
                AttackRecord(
                    account=self.account,
                    character_id=snapshot.character_id,
                    name=snapshot.name,
                    won=outcome.won,
                    new_items=gained,
                )
            )

    def _set_state(self, state: AutomationState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        if self._on_state is not None:
            self._on_state(previous, state)

    def _notice(self, kind: FailureKind, detail: str) -> None:
        if self._on_notice is not None:
            self._on_notice(create_notice(kind, detail))

    def _ranking_changed(self) -> None:
        if self._on_ranking is not None:
            self._on_ranking()
