from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime


@dataclass(frozen=True)
class CharacterRef:
    """
    A character listed in the Hall of Fame directory.

    `level` is the level shown in the listing, when the page carries one.
    """

    server: str
    name: str
    level: int | None = None

    def is_lookupable(self) -> bool:
        """
        Names made only of digits cannot be requested by name.

        The game reads them as numeric character ids and returns someone else.
        """
        return bool(self.name) and not self.name.isdigit()


@dataclass(frozen=True)
class CharacterSnapshot:
    """
    Equipped items of one opponent at a point in time.

    Immutable once captured. A newer snapshot of the same character replaces
    the old one instead of modifying it.

    `strength` is the sum of base and bonus attributes, None when unknown.
    """

    character_id: int
    name: str
    server: str
    level: int
    items: tuple[str, ...] = ()
    captured_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    strength: int | None = None

    @classmethod
    def capture(
        cls,
        character_id: int,
        name: str,
        server: str,
        level: int,
        items: Iterable[str],
        strength: int | None = None,
    ) -> "CharacterSnapshot":
        """Build a snapshot, dropping duplicate items while keeping slot order."""
        return cls(
            character_id=character_id,
            name=name,
            server=server,
            level=level,
            items=tuple(dict.fromkeys(items)),
            strength=strength,
        )

    @property
    def ref(self) -> CharacterRef:
        return CharacterRef(server=self.server, name=self.name, level=self.level)

    def item_set(self) -> frozenset[str]:
        return frozenset(self.items)


@dataclass(frozen=True)
class ScoredCandidate:
    """
    A snapshot paired with its score against one specific Collection.

    `freshness` increases with every upsert into a ranking store. `fresh` is
    False for candidates restored from a backup instead of fetched in this run.
    """

    snapshot: CharacterSnapshot
    score: int
    freshness: int = 0
    fresh: bool = True

    @property
    def character_id(self) -> int:
        return self.snapshot.character_id

    def sort_key(self) -> tuple[int, int, int]:
        """Best first: score descending, then lower level, then character id."""
        return (-self.score, self.snapshot.level, self.snapshot.character_id)
