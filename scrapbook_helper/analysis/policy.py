"""
Attack eligibility.

Decides which characters may appear in the ranking at all. Characters above
the configured level or strength ceiling, characters that beat the user
`blacklist_threshold` times, and characters that could not be reached are
left out. A character whose strength is unknown passes the strength ceiling.
"""

import logging
from dataclasses import dataclass, field

from scrapbook_helper.config import settings
from scrapbook_helper.models.snapshot import CharacterSnapshot

logger = logging.getLogger(__name__)


@dataclass
class AttackPolicy:
    """Level and strength ceilings plus per-character loss and reachability bookkeeping."""

    max_level: int | None = settings.max_level
    max_strength: int | None = settings.max_strength
    blacklist_threshold: int = settings.blacklist_threshold
    losses: dict[int, int] = field(default_factory=dict)
    unreachable: set[int] = field(default_factory=set)

    def allows(self, snapshot: CharacterSnapshot) -> bool:
        if self.max_level is not None and snapshot.level > self.max_level:
            return False
        if (
            self.max_strength is not None
            and snapshot.strength is not None
            and snapshot.strength > self.max_strength
        ):
            return False
        if snapshot.character_id in self.unreachable:
            return False
        return not self.is_blacklisted(snapshot.character_id)

    def is_blacklisted(self, character_id: int) -> bool:
        return self.losses.get(character_id, 0) >= max(1, self.blacklist_threshold)

    def record_loss(self, character_id: int) -> bool:
        """
        Count a lost fight.

        Returns:
            True if the character is now blacklisted
        """
        self.losses[character_id] = self.losses.get(character_id, 0) + 1
        blacklisted = self.is_blacklisted(character_id)
        if blacklisted:
            logger.info(
                "Character %d blacklisted after %d losses",
                character_id,
                self.losses[character_id],
            )
        return blacklisted

    def mark_unreachable(self, character_id: int) -> None:
        self.unreachable.add(character_id)
