"""
Session Pool: owns every authenticated character handle.

INVARIANTS:
- At most one in-flight request per session (acquire marks it BUSY)
- At most MAX_SCOUT_SESSIONS scouting sessions exist at once
- A session that fails authentication is DISABLED and never handed out again

acquire() never blocks: it returns None when nothing eligible is idle.
"""

import logging
from dataclasses import dataclass, field

from scrapbook_helper.config import MAX_SCOUT_SESSIONS, settings
from scrapbook_helper.models.failure import AuthFailure, KnownError
from scrapbook_helper.models.session import Credentials, Session, SessionRole, SessionState
from scrapbook_helper.services.game_client import GameClient

logger = logging.getLogger(__name__)


class ScoutLimitError(ValueError):
    """Raised when more scouting sessions are requested than allowed."""


@dataclass
class SessionPool:
    """Owns the user's primary sessions and the scouting sessions."""

    max_scouts: int = settings.max_scouts
    _sessions: list[Session] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_scouts > MAX_SCOUT_SESSIONS:
            raise ScoutLimitError(
                f"max_scouts={self.max_scouts} exceeds the ceiling of {MAX_SCOUT_SESSIONS}"
            )

    # --- Membership ---

    def add(self, session: Session) -> Session:
        """Put a logged-in session into rotation."""
        if session.role == SessionRole.SCOUT and len(self.usable_scouts()) >= self.max_scouts:
            raise ScoutLimitError(f"Scout ceiling of {self.max_scouts} reached")
        if any(s.key == session.key for s in self._sessions):
            raise ValueError(f"Session {session.name}@{session.server} already in pool")
        if session.state != SessionState.DISABLED:
            session.state = SessionState.IDLE
        self._sessions.append(session)
        return session

    def sessions(self) -> list[Session]:
        return list(self._sessions)

    def scouts(self) -> list[Session]:
        return [s for s in self._sessions if s.role == SessionRole.SCOUT]

    def primary(self, account: str) -> Session | None:
        for session in self._sessions:
            if session.role == SessionRole.PRIMARY and session.name == account:
                return session
        return None

    # --- Rotation ---

    def acquire(
        self,
        role: SessionRole,
        now: float,
        account: str | None = None,
        server: str | None = None,
    ) -> Session | None:
        """
        Take an idle session of `role` whose cooldown has passed.

        Args:
            role: SCOUT for crawling, PRIMARY for attacks
            now: Current time on the caller's clock
            account: For PRIMARY, the account name to use
            server: Only consider sessions on this server

        Returns:
            The session, now BUSY, or None if nothing is available
        """
        candidates = [
            s
            for s in self._sessions
            if s.role == role
            and (account is None or s.name == account)
            and (server is None or s.server == server)
            and s.is_available(now)
        ]
        if not candidates:
            return None
        session = min(candidates, key=lambda s: s.next_allowed_at)
        session.state = SessionState.BUSY
        return session

    def release(self, session: Session, next_allowed_at: float) -> None:
        """Return a session to the idle set; it may be used again at `next_allowed_at`."""
        if session.state == SessionState.DISABLED:
            return
        session.state = SessionState.IDLE
        session.next_allowed_at = next_allowed_at

    def disable(self, session: Session, reason: str | None = None) -> None:
        """Remove a session from rotation after an authentication failure."""
        if session.state == SessionState.DISABLED:
            return
        session.state = SessionState.DISABLED
        logger.warning("Session %s disabled: %s", session.name, reason or "auth failure")

    def disabled_count(self) -> int:
        return sum(1 for s in self._sessions if s.state == SessionState.DISABLED)

    def usable_scouts(self) -> list[Session]:
        return [s for s in self.scouts() if s.state != SessionState.DISABLED]

    def earliest_available(
        self, role: SessionRole, account: str | None = None, server: str | None = None
    ) -> float | None:
        """Earliest next_allowed_at among idle sessions of `role`, if any."""
        times = [
            s.next_allowed_at
            for s in self._sessions
            if s.role == role
            and (account is None or s.name == account)
            and (server is None or s.server == server)
            and s.state == SessionState.IDLE
        ]
        return min(times) if times else None

    # --- Login ---

    async def login(
        self, client: GameClient, credentials: Credentials, role: SessionRole
    ) -> Session | None:
        """
        Log a character in and add it to the pool.

        A refused login still adds the session, DISABLED, so the failure shows
        up in disabled_count().

        Returns:
            The new session, or None if login failed (failure is logged)
        """
        try:
            handle = await client.login(credentials)
        except AuthFailure as e:
            logger.warning("Login of %s refused: %s", credentials.name, e.message)
            self.add(
                Session(
                    name=credentials.name,
                    server=credentials.server,
                    role=role,
                    handle=None,
                    credentials=credentials,
                    state=SessionState.DISABLED,
                )
            )
            return None
        except KnownError as e:
            logger.warning("Login of %s failed: %s", credentials.name, e.message)
            return None
        except Exception as e:
            logger.warning("Login of %s failed: %s", credentials.name, e)
            return None
        session = Session(
            name=credentials.name,
            server=credentials.server,
            role=role,
            handle=handle,
            credentials=credentials,
        )
        return self.add(session)

    async def ensure_scouts(
        self,
        client: GameClient,
        server: str,
        count: int,
        base_name: str = settings.scout_base_name,
    ) -> list[Session]:
        """
        Log in scouting characters until `count` are usable (capped at max_scouts).

        Scouts are named <base_name>1, <base_name>2, ...

        Returns:
            The usable scouts on `server`
        """
        count = min(count, self.max_scouts)
        index = 0
        while len([s for s in self.usable_scouts() if s.server == server]) < count:
            index += 1
            if index > self.max_scouts or len(self.usable_scouts()) >= self.max_scouts:
                break
            credentials = Credentials.for_scout(base_name, index, server)
            if any(s.key == (server, credentials.name) for s in self._sessions):
                continue
            await self.login(client, credentials, SessionRole.SCOUT)
        return [s for s in self.usable_scouts() if s.server == server]

    async def relogin(self, client: GameClient, session: Session) -> bool:
        """
        Log an existing session in again after repeated failures.

        The session stays BUSY while logging in. AuthFailure disables it.

        Returns:
            True if the session has a fresh handle
        """
        if session.credentials is None:
            self.disable(session, "no credentials to log in again")
            return False
        logger.info("Logging in %s again", session.name)
        try:
            session.handle = await client.login(session.credentials)
        except AuthFailure as e:
            self.disable(session, e.message)
            return False
        except KnownError as e:
            logger.warning("Relogin of %s failed: %s", session.name, e.message)
            return False
        except Exception as e:
            logger.warning("Relogin of %s failed: %s", session.name, e)
            return False
        session.consecutive_failures = 0
        return True
