"""
Rate Limiter: per-session cooldowns and a per-server request ceiling.

Every outbound request asks `permit()` first. The answer is either Ok or
Wait(duration); the limiter never sleeps and never raises.

INVARIANTS:
- A session's cooldown never decreases across consecutive RateLimited signals
- Cooldown decays only after `decay_after` consecutive successes
- Decaying below `initial_backoff` returns the session to `base_cooldown`
- Cooldown never exceeds `max_backoff`
- The server ceiling is a token bucket shared by all sessions on that server

Crawling slows down instead of failing: a throttled server only ever makes
permits come back as Wait.
"""

import logging
from dataclasses import dataclass, field

from scrapbook_helper.config import settings
from scrapbook_helper.models.session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    """The request may be issued now."""


@dataclass(frozen=True)
class Wait:
    """The request may be issued after `duration` seconds."""

    duration: float


PermitDecision = Ok | Wait


@dataclass
class _SessionThrottle:
    cooldown: float
    ready_at: float = 0.0
    success_streak: int = 0
    backoffs: int = 0


@dataclass
class _ServerBucket:
    tokens: float
    updated_at: float


@dataclass
class RateLimiter:
    """
    Shared throttle for all sessions of the process.

    Times are plain floats from the caller's clock, so tests can drive the
    limiter without sleeping.
    """

    base_cooldown: float = settings.session_base_cooldown
    initial_backoff: float = settings.rate_limit_initial_backoff
    backoff_factor: float = settings.rate_limit_backoff_factor
    max_backoff: float = settings.rate_limit_max_backoff
    decay_after: int = settings.rate_limit_decay_after
    server_rate: float = settings.server_requests_per_second
    server_burst: int = settings.server_burst

    _sessions: dict[tuple[str, str], _SessionThrottle] = field(default_factory=dict)
    _servers: dict[str, _ServerBucket] = field(default_factory=dict)

    def _throttle(self, session: Session) -> _SessionThrottle:
        throttle = self._sessions.get(session.key)
        if throttle is None:
            throttle = _SessionThrottle(cooldown=self.base_cooldown)
            self._sessions[session.key] = throttle
        return throttle

    def _bucket(self, server: str, now: float) -> _ServerBucket:
        bucket = self._servers.get(server)
        if bucket is None:
            bucket = _ServerBucket(tokens=float(self.server_burst), updated_at=now)
            self._servers[server] = bucket
            return bucket
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(float(self.server_burst), bucket.tokens + elapsed * self.server_rate)
        bucket.updated_at = now
        return bucket

    def permit(self, session: Session, now: float) -> PermitDecision:
        """
        Decide whether `session` may issue a request at `now`.

        An Ok consumes one server token and starts the session's cooldown.
        """
        throttle = self._throttle(session)
        if now < throttle.ready_at:
            return Wait(throttle.ready_at - now)

        bucket = self._bucket(session.server, now)
        if bucket.tokens < 1.0:
            if self.server_rate <= 0:
                return Wait(self.max_backoff)
            return Wait((1.0 - bucket.tokens) / self.server_rate)

        bucket.tokens -= 1.0
        throttle.ready_at = now + throttle.cooldown
        return Ok()

    def record_success(self, session: Session) -> None:
        """Count a successful request; decay the cooldown after a streak."""
        throttle = self._throttle(session)
        throttle.success_streak += 1
        if throttle.cooldown <= self.base_cooldown:
            return
        if throttle.success_streak < self.decay_after:
            return
        decayed = throttle.cooldown / self.backoff_factor
        # Below the first backoff step the session is back to normal.
        if decayed < self.initial_backoff:
            decayed = self.base_cooldown
        throttle.cooldown = max(self.base_cooldown, decayed)
        throttle.success_streak = 0
        if throttle.cooldown == self.base_cooldown:
            throttle.backoffs = 0
        logger.debug("Cooldown of %s decayed to %.2fs", session.name, throttle.cooldown)

    def record_rate_limited(
        self, session: Session, now: float, retry_after: float | None = None
    ) -> float:
        """
        Back off after a RateLimited signal.

        Returns:
            The new cooldown in seconds
        """
        throttle = self._throttle(session)
        throttle.success_streak = 0
        throttle.backoffs += 1
        grown = max(throttle.cooldown * self.backoff_factor, self.initial_backoff)
        if retry_after is not None:
            grown = max(grown, retry_after)
        throttle.cooldown = min(grown, self.max_backoff)
        throttle.ready_at = max(throttle.ready_at, now + throttle.cooldown)
        logger.info(
            "RATE_LIMITED",
            extra={"session": session.name, "cooldown": throttle.cooldown},
        )
        return throttle.cooldown

    def cooldown(self, session: Session) -> float:
        return self._throttle(session).cooldown

    def next_allowed_at(self, session: Session) -> float:
        return self._throttle(session).ready_at

    def is_backing_off(self, session: Session) -> bool:
        return self._throttle(session).backoffs > 0

    def forget(self, session: Session) -> None:
        self._sessions.pop(session.key, None)
