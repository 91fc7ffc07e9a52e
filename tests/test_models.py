"""Tests for domain models."""

import pytest
from fakes import make_snapshot

from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.cursor import DirectoryCursor
from scrapbook_helper.models.failure import (
    STANDARD_MESSAGES,
    AuthFailure,
    FailureKind,
    RateLimited,
    create_notice,
)
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.models.session import Credentials
from scrapbook_helper.models.snapshot import CharacterRef


class TestServerIdent:
    @pytest.mark.parametrize(
        "url",
        ["s7.sfgame.eu", "https://s7.sfgame.eu/", "  S7.SFGAME.EU  ", "https://s7.sfgame.eu"],
    )
    def test_normalizes_url(self, url: str) -> None:
        ident = ServerIdent.from_url(url)

        assert ident.url == "s7.sfgame.eu"
        assert ident.ident == "s7sfgameeu"
        assert str(ident) == "s7sfgameeu"

    def test_empty_url_raises(self) -> None:
        with pytest.raises(ValueError, match="Invalid server url"):
            ServerIdent.from_url("https://")


class TestCredentials:
    def test_scout_password_is_reversed_name(self) -> None:
        credentials = Credentials.for_scout("Zed", 12, "s1.fake.test")

        assert credentials.name == "Zed12"
        assert credentials.password == "21deZ"
        assert credentials.server == "s1.fake.test"


class TestCharacterRef:
    @pytest.mark.parametrize(
        ("name", "lookupable"),
        [("Hero", True), ("Hero42", True), ("42", False), ("", False)],
    )
    def test_is_lookupable(self, name: str, lookupable: bool) -> None:
        assert CharacterRef(server="s", name=name).is_lookupable() is lookupable


class TestSnapshot:
    def test_capture_drops_duplicate_items(self) -> None:
        snapshot = make_snapshot(1, ["A", "B", "A", "C"])

        assert snapshot.items == ("A", "B", "C")
        assert snapshot.item_set() == {"A", "B", "C"}

    def test_ref(self) -> None:
        snapshot = make_snapshot(1, [], name="Hero")

        assert snapshot.ref == CharacterRef(
            server=snapshot.server, name="Hero", level=snapshot.level
        )


class TestCollection:
    def test_with_items_returns_new_collection(self) -> None:
        collection = Collection(account="hero", items=frozenset({"A"}))

        grown = collection.with_items(["B", "A"])

        assert grown.items == {"A", "B"}
        assert collection.items == {"A"}
        assert grown.account == "hero"


class TestDirectoryCursor:
    def test_unknown_total_is_never_exhausted(self) -> None:
        cursor = DirectoryCursor(server="s", page=50)

        assert not cursor.is_exhausted()

    def test_mark_end(self) -> None:
        cursor = DirectoryCursor(server="s", page=4)

        cursor.mark_end(4)

        assert cursor.is_exhausted()
        assert cursor.total_pages == 4


class TestFailures:
    def test_known_error_uses_standard_message(self) -> None:
        detail = AuthFailure(detail="scout3").to_detail()

        assert detail.kind == FailureKind.AUTH_FAILURE
        assert detail.message == STANDARD_MESSAGES[FailureKind.AUTH_FAILURE]
        assert detail.detail == "scout3"
        assert detail.suggestion

    def test_rate_limited_keeps_hint(self) -> None:
        error = RateLimited(retry_after=12.5)

        assert error.retry_after == 12.5
        assert error.kind == FailureKind.RATE_LIMITED

    def test_create_notice(self) -> None:
        notice = create_notice(FailureKind.CORRUPT_PERSISTED_STATE, "zlib error")

        assert notice.message == STANDARD_MESSAGES[FailureKind.CORRUPT_PERSISTED_STATE]
        assert notice.detail == "zlib error"
