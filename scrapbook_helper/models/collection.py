from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Collection:
    """
    A user's scrapbook state.

    Items are stored as opaque identifiers. A Collection is never mutated;
    acquiring items produces a new Collection so anything scored against the
    old one can tell it is stale.
    """

    account: str
    items: frozenset[str] = field(default_factory=frozenset)

    def owns(self, item: str) -> bool:
        """Check if the scrapbook already contains an item."""
        return item in self.items

    def with_items(self, new_items: Iterable[str]) -> "Collection":
        """Return a copy of this collection that also contains `new_items`."""
        return Collection(account=self.account, items=self.items | frozenset(new_items))

    def unique_items(self) -> int:
        """Number of collected items."""
        return len(self.items)
