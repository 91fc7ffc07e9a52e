from dataclasses import dataclass, field

from scrapbook_helper.models.snapshot import CharacterRef


@dataclass
class DirectoryCursor:
    """
    Position within a server's paginated Hall of Fame.

    `page` is the next page to request. Everything before it has been listed
    and enqueued. `total_pages` is None until it is known, and is refined when
    an empty page marks the end of the directory.
    """

    server: str
    page: int = 0
    total_pages: int | None = None

    def is_exhausted(self) -> bool:
        return self.total_pages is not None and self.page >= self.total_pages

    def advance(self) -> None:
        self.page += 1

    def mark_end(self, page: int) -> None:
        """Record that `page` was empty, so the directory has `page` pages."""
        self.total_pages = page


@dataclass
class CrawlQueue:
    """Everything needed to resume a crawl exactly where it stopped."""

    cursor: DirectoryCursor
    pending: list[CharacterRef] = field(default_factory=list)
    invalid_pages: list[int] = field(default_factory=list)
    invalid_characters: list[str] = field(default_factory=list)
    # Failed pages put back by retry_invalid(), fetched before the cursor page
    retry_pages: list[int] = field(default_factory=list)
    # Characters outside the crawl level window
    level_skipped: list[CharacterRef] = field(default_factory=list)
