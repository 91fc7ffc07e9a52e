from dataclasses import dataclass, field
from datetime import UTC, datetime

from scrapbook_helper.models.collection import Collection


@dataclass(frozen=True)
class AttackOutcome:
    """
    Result of one fight, as reported by the game client.

    `cooldown` is how long the primary session must wait before the next
    fight, when the game reports it. `collection` is the refreshed scrapbook
    when the client re-fetched the user's own profile after the fight.
    """

    won: bool
    cooldown: float | None = None
    collection: Collection | None = None


@dataclass(frozen=True)
class AttackRecord:
    """One entry of the attack log."""

    account: str
    character_id: int
    name: str
    won: bool
    new_items: tuple[str, ...] = ()
    at: datetime = field(default_factory=lambda: datetime.now(UTC))
