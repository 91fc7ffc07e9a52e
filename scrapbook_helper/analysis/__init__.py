from scrapbook_helper.analysis.matcher import new_items, score
from scrapbook_helper.analysis.planner import plan_names, plan_targets
from scrapbook_helper.analysis.policy import AttackPolicy
from scrapbook_helper.analysis.ranking import RankingStore

__all__ = [
    "AttackPolicy",
    "RankingStore",
    "new_items",
    "plan_names",
    "plan_targets",
    "score",
]
