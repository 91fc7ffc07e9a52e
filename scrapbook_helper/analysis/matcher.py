"""
Scrapbook matching.

Pure functions: no state is kept between calls. Scores must be recomputed
whenever the Collection changes, since every won fight can add items.
"""

from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.snapshot import CharacterSnapshot


def new_items(snapshot: CharacterSnapshot, collection: Collection) -> frozenset[str]:
    """Items the character wears that are missing from the scrapbook."""
    return snapshot.item_set() - collection.items


def score(snapshot: CharacterSnapshot, collection: Collection) -> int:
    """
    Count the items `snapshot` wears that `collection` does not contain.

    A character with no readable equipment scores 0.
    """
    if not snapshot.items:
        return 0
    return len(new_items(snapshot, collection))
