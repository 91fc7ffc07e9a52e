"""
Greedy attack plan.

Builds the order in which to fight characters so that each fight brings as
many new items as possible, assuming every fight is won: pick the best
character, pretend its items are collected, repeat.

An item -> holders index keeps each step proportional to the items of the
chosen character instead of rescoring everyone.
"""

from collections import defaultdict
from collections.abc import Iterable

from scrapbook_helper.analysis.policy import AttackPolicy
from scrapbook_helper.config import PLAN_MAX_STEPS
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.snapshot import CharacterSnapshot, ScoredCandidate


def plan_targets(
    snapshots: Iterable[CharacterSnapshot],
    collection: Collection,
    policy: AttackPolicy | None = None,
    limit: int = PLAN_MAX_STEPS,
) -> list[ScoredCandidate]:
    """
    Plan a sequence of fights that completes as much of the scrapbook as possible.

    Args:
        snapshots: Known opponent snapshots
        collection: The user's current scrapbook
        policy: Eligibility rules (level ceiling, blacklist)
        limit: Maximum number of steps

    Returns:
        Candidates in attack order; each score counts only items not already
        gained by earlier steps
    """
    policy = policy or AttackPolicy()
    eligible = {s.character_id: s for s in snapshots if policy.allows(s)}

    holders: dict[str, set[int]] = defaultdict(set)
    counts: dict[int, int] = {}
    for character_id, snapshot in eligible.items():
        missing = snapshot.item_set() - collection.items
        counts[character_id] = len(missing)
        for item in missing:
            holders[item].add(character_id)

    collected = set(collection.items)
    plan: list[ScoredCandidate] = []
    while len(plan) < limit and counts:
        best_id = min(
            counts,
            key=lambda cid: (-counts[cid], eligible[cid].level, cid),
        )
        best_count = counts.pop(best_id)
        if best_count <= 0:
            break
        snapshot = eligible[best_id]
        plan.append(ScoredCandidate(snapshot=snapshot, score=best_count, freshness=len(plan) + 1))

        for item in snapshot.items:
            if item in collected:
                continue
            collected.add(item)
            for holder in holders.pop(item, ()):
                if holder in counts:
                    counts[holder] -= 1

    return plan


def plan_names(plan: list[ScoredCandidate]) -> str:
    """Plan as a '/'-separated list of names, ready to paste into the game."""
    return "/".join(candidate.snapshot.name for candidate in plan)
