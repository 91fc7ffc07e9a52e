"""
Interface to the game protocol.

The wire format is not part of this project. Anything that implements
GameClient can drive the crawler and the automation loop. Each method
classifies its failures by raising one of the KnownError subclasses from
scrapbook_helper.models.failure:

- AuthFailure: the handle is not logged in (or login was refused)
- RateLimited: the server throttled the request
- TransientNetwork: timeout, connection error, garbled response
- TargetUnreachable: the requested character does not exist / cannot be fought

Any other exception is treated as TransientNetwork by the engine.
"""

from typing import Any, Protocol

from scrapbook_helper.models.attack import AttackOutcome
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.session import Credentials
from scrapbook_helper.models.snapshot import CharacterRef, CharacterSnapshot


class GameClient(Protocol):
    async def login(self, credentials: Credentials) -> Any:
        """Log a character in and return an opaque session handle."""
        ...

    async def fetch_directory_page(
        self, handle: Any, server: str, index: int
    ) -> list[CharacterRef]:
        """Return the characters listed on one Hall of Fame page (empty past the end)."""
        ...

    async def fetch_character_detail(self, handle: Any, ref: CharacterRef) -> CharacterSnapshot:
        """Return the current equipment snapshot of one character."""
        ...

    async def attack(self, handle: Any, target: CharacterRef) -> AttackOutcome:
        """Fight `target` with the session behind `handle`."""
        ...

    async def fetch_collection(self, handle: Any, account: str) -> Collection:
        """Re-fetch the scrapbook of the account behind `handle`."""
        ...
