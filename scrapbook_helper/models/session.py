from dataclasses import dataclass
from enum import Enum
from typing import Any


class SessionRole(str, Enum):
    """What a session may be used for."""

    PRIMARY = "primary"  # the user's real account, used for attacks
    SCOUT = "scout"  # disposable character, read-only directory/profile requests


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DISABLED = "disabled"


@dataclass(frozen=True)
class Credentials:
    """Login data for one character on one server."""

    name: str
    password: str
    server: str

    @classmethod
    def for_scout(cls, base_name: str, index: int, server: str) -> "Credentials":
        """Scout characters use their name reversed as password."""
        name = f"{base_name}{index}"
        return cls(name=name, password=name[::-1], server=server)


@dataclass
class Session:
    """
    An authenticated handle to one in-game character.

    `handle` is whatever the game client returned from login; the engine never
    looks inside it. Role is a plain tag: scouts and primaries share every
    capability, only the pool decides who may use which.
    """

    name: str
    server: str
    role: SessionRole
    handle: Any
    credentials: Credentials | None = None
    state: SessionState = SessionState.IDLE
    next_allowed_at: float = 0.0
    consecutive_failures: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.server, self.name)

    def is_available(self, now: float) -> bool:
        return self.state == SessionState.IDLE and self.next_allowed_at <= now

    def __repr__(self) -> str:
        return f"<Session({self.role.value} {self.name}@{self.server}, {self.state.value})>"
