"""
Scrapbook helper services.

Session handling, rate limiting, crawling, and automation.
"""

from scrapbook_helper.services.automation import AutomationLoop, AutomationState
from scrapbook_helper.services.core import (
    AccountState,
    AutomationStateChanged,
    CoreEvent,
    CrawlStateChanged,
    Notice,
    RankingChanged,
    ScrapbookCore,
)
from scrapbook_helper.services.crawler import Crawler, CrawlState
from scrapbook_helper.services.game_client import GameClient
from scrapbook_helper.services.rate_limiter import Ok, PermitDecision, RateLimiter, Wait
from scrapbook_helper.services.session_pool import ScoutLimitError, SessionPool

__all__ = [
    "AccountState",
    "AutomationLoop",
    "AutomationState",
    "AutomationStateChanged",
    "CoreEvent",
    "CrawlState",
    "CrawlStateChanged",
    "Crawler",
    "GameClient",
    "Notice",
    "Ok",
    "PermitDecision",
    "RankingChanged",
    "RateLimiter",
    "ScoutLimitError",
    "ScrapbookCore",
    "SessionPool",
    "Wait",
]
