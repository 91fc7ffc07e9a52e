import pytest
from fakes import SERVER, FakeClock, FakeGameClient, make_session

from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.session import SessionRole
from scrapbook_helper.services.rate_limiter import RateLimiter
from scrapbook_helper.services.session_pool import SessionPool


@pytest.fixture
def clock() -> FakeClock:
    """Frozen clock; tests advance it explicitly."""
    return FakeClock()


@pytest.fixture
def limiter() -> RateLimiter:
    """Limiter with no per-session cooldown, so a frozen clock never blocks."""
    return RateLimiter(base_cooldown=0.0, server_rate=1000.0, server_burst=1000)


@pytest.fixture
def pool() -> SessionPool:
    """Pool with three idle scouts on the fake server."""
    pool = SessionPool()
    for index in range(1, 4):
        pool.add(make_session(f"scout{index}"))
    return pool


@pytest.fixture
def hero_pool() -> SessionPool:
    """Pool holding only the primary account 'hero'."""
    pool = SessionPool()
    pool.add(make_session("hero", role=SessionRole.PRIMARY))
    return pool


@pytest.fixture
def collection() -> Collection:
    return Collection(account="hero", items=frozenset({"A", "B"}))


@pytest.fixture
def client() -> FakeGameClient:
    """Ten directory pages of three characters each."""
    return FakeGameClient.with_directory(10, server=SERVER)
