"""
Ranking Store: live best-candidates view for one account.

Keeps every known snapshot and an ordered index of the eligible ones, best
first by (score desc, level asc, character_id asc).

INVARIANTS:
- One entry per character id; a newer snapshot replaces the old one
- Every served score was computed against the current Collection
- Score-0 and policy-ineligible characters are never ranked
- Out-of-order upserts are tolerated: an older snapshot never replaces a newer one
- Freshness is assigned on upsert and survives rescoring
"""

import bisect
import itertools
import logging
from collections.abc import Iterable

from scrapbook_helper.analysis.matcher import score
from scrapbook_helper.analysis.policy import AttackPolicy
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.snapshot import CharacterSnapshot, ScoredCandidate

logger = logging.getLogger(__name__)

SortKey = tuple[int, int, int]


class RankingStore:
    """
    Ordered, mutation-safe ranking of opponents for one Collection.

    The index is a sorted list of keys maintained with bisect, so an upsert
    touches one position instead of re-sorting everything.
    """

    def __init__(self, collection: Collection, policy: AttackPolicy | None = None):
        self._collection = collection
        self._policy = policy or AttackPolicy()
        self._snapshots: dict[int, CharacterSnapshot] = {}
        self._fresh: dict[int, bool] = {}
        self._arrival: dict[int, int] = {}
        self._entries: dict[int, ScoredCandidate] = {}
        self._index: list[SortKey] = []
        self._freshness = itertools.count(1)

    @property
    def collection(self) -> Collection:
        return self._collection

    @property
    def policy(self) -> AttackPolicy:
        return self._policy

    # --- Mutation ---

    def upsert(self, candidate: ScoredCandidate) -> ScoredCandidate | None:
        """
        Insert or replace the entry for `candidate`'s character.

        The score is recomputed against the store's current Collection, so a
        candidate scored elsewhere can never bring a stale score in.

        Returns:
            The ranked entry, or None if the character is not ranked
        """
        snapshot = candidate.snapshot
        character_id = snapshot.character_id
        known = self._snapshots.get(character_id)
        if known is not None and known.captured_at > snapshot.captured_at:
            logger.debug("Ignoring older snapshot of %s", snapshot.name)
            return self._entries.get(character_id)

        self._snapshots[character_id] = snapshot
        self._fresh[character_id] = candidate.fresh
        self._arrival[character_id] = next(self._freshness)
        return self._rank(character_id)

    def add_snapshot(
        self, snapshot: CharacterSnapshot, fresh: bool = True
    ) -> ScoredCandidate | None:
        """Score `snapshot` against the current Collection and upsert it."""
        candidate = ScoredCandidate(
            snapshot=snapshot,
            score=score(snapshot, self._collection),
            fresh=fresh,
        )
        return self.upsert(candidate)

    def remove(self, character_id: int) -> bool:
        """
        Drop a character from the ranking and forget its snapshot.

        Returns:
            True if the character was known
        """
        self._unindex(character_id)
        self._fresh.pop(character_id, None)
        self._arrival.pop(character_id, None)
        return self._snapshots.pop(character_id, None) is not None

    def invalidate_all(self, collection: Collection | None = None) -> None:
        """
        Recompute every score, optionally against a new Collection, and re-sort.

        Called whenever the user's scrapbook changes.
        """
        if collection is not None:
            self._collection = collection
        self._entries.clear()
        self._index.clear()
        for character_id in list(self._snapshots):
            self._rank(character_id, insort=False)
        self._index.sort()

    def set_policy(self, policy: AttackPolicy) -> None:
        self._policy = policy
        self.invalidate_all()

    def clear(self) -> None:
        self._snapshots.clear()
        self._fresh.clear()
        self._arrival.clear()
        self._entries.clear()
        self._index.clear()

    # --- Queries ---

    def top(self, n: int) -> list[ScoredCandidate]:
        """The first `n` ranked candidates, best first."""
        return [self._entries[key[2]] for key in self._index[: max(0, n)]]

    def first(self, fresh_only: bool = False) -> ScoredCandidate | None:
        for key in self._index:
            entry = self._entries[key[2]]
            if not fresh_only or entry.fresh:
                return entry
        return None

    def get(self, character_id: int) -> ScoredCandidate | None:
        return self._entries.get(character_id)

    def snapshot_of(self, character_id: int) -> CharacterSnapshot | None:
        return self._snapshots.get(character_id)

    def snapshots(self) -> Iterable[CharacterSnapshot]:
        """Every known snapshot, ranked or not."""
        return self._snapshots.values()

    def fresh_ratio(self) -> float:
        """Share of ranked candidates fetched in this run (0.0 when empty)."""
        if not self._entries:
            return 0.0
        fresh = sum(1 for entry in self._entries.values() if entry.fresh)
        return fresh / len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._entries

    # --- Internals ---

    def _rank(self, character_id: int, insort: bool = True) -> ScoredCandidate | None:
        self._unindex(character_id)
        snapshot = self._snapshots[character_id]
        points = score(snapshot, self._collection)
        if points <= 0 or not self._policy.allows(snapshot):
            return None
        entry = ScoredCandidate(
            snapshot=snapshot,
            score=points,
            freshness=self._arrival[character_id],
            fresh=self._fresh.get(character_id, True),
        )
        self._entries[character_id] = entry
        if insort:
            bisect.insort(self._index, entry.sort_key())
        else:
            self._index.append(entry.sort_key())
        return entry

    def _unindex(self, character_id: int) -> None:
        entry = self._entries.pop(character_id, None)
        if entry is None:
            return
        key = entry.sort_key()
        position = bisect.bisect_left(self._index, key)
        if position < len(self._index) and self._index[position] == key:
            del self._index[position]
