import random
import string

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _random_base_name() -> str:
    """Random scout base name: one capital letter followed by 6-7 letters or digits."""
    rng = random.Random()
    alphabet = string.ascii_lowercase + string.digits
    tail = "".join(rng.choice(alphabet) for _ in range(rng.randint(6, 7)))
    return rng.choice(string.ascii_uppercase) + tail


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="SCRAPBOOK_")

    app_name: str = "ScrapbookHelper"
    debug: bool = False

    database_url: str = "sqlite+aiosqlite:///scrapbook.db"

    hof_cache_url: str = "https://hof-cache.marenga.dev"
    fetch_online_backups: bool = True

    # Scouting characters
    scout_base_name: str = Field(default_factory=_random_base_name)
    max_scouts: int = 10

    # Rate limiting
    session_base_cooldown: float = 0.05
    rate_limit_initial_backoff: float = 2.0
    rate_limit_backoff_factor: float = 2.0
    rate_limit_max_backoff: float = 300.0
    rate_limit_decay_after: int = 10
    server_requests_per_second: float = 20.0
    server_burst: int = 10

    # Crawling
    max_detail_retries: int = 3
    max_page_retries: int = 3
    relogin_after_failures: int = 10
    crawl_min_level: int = 1
    crawl_max_level: int | None = None

    # Automation
    attack_cooldown: float = 600.0
    max_level: int | None = None
    max_strength: int | None = None
    blacklist_threshold: int = 1
    automation_min_fresh_ratio: float = 0.9

    # Scheduling
    tick_interval: float = 1.0
    max_tick_interval: float = 5.0
    ranking_size: int = 100


settings = Settings()


# =============================================================================
# HARD LIMITS
# =============================================================================

# Scouting sessions held at once, across the whole process
MAX_SCOUT_SESSIONS = 10

# Upper bound on the greedy target plan
PLAN_MAX_STEPS = 300
