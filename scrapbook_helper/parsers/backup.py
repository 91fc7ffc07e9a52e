"""
Crawl backup format.

A backup is a zlib-compressed JSON document holding the directory cursor,
the pending character queue, the characters/pages that failed or are
held back by the level window, and every known snapshot. Files use the
`.zhof` extension and are named after the server ident, e.g. `s7sfgameeu.zhof`.

Decoding fails closed: anything that is not a valid backup raises
CorruptPersistedState, never a raw zlib/JSON/validation error.
"""

import asyncio
import logging
import zlib
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from scrapbook_helper.models.cursor import CrawlQueue, DirectoryCursor
from scrapbook_helper.models.failure import CorruptPersistedState
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.models.snapshot import CharacterRef, CharacterSnapshot

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".zhof"

# Restoring yields to the event loop after this many snapshots
RESTORE_YIELD_EVERY = 10_000


class CrawlBackup(BaseModel):
    """Serializable state of one server's crawl."""

    server: str
    cursor: DirectoryCursor
    pending: list[CharacterRef] = Field(default_factory=list)
    invalid_pages: list[int] = Field(default_factory=list)
    invalid_characters: list[str] = Field(default_factory=list)
    retry_pages: list[int] = Field(default_factory=list)
    level_skipped: list[CharacterRef] = Field(default_factory=list)
    snapshots: list[CharacterSnapshot] = Field(default_factory=list)
    export_time: datetime | None = None

    def to_queue(self) -> CrawlQueue:
        return CrawlQueue(
            cursor=DirectoryCursor(
                server=self.cursor.server,
                page=self.cursor.page,
                total_pages=self.cursor.total_pages,
            ),
            pending=list(self.pending),
            invalid_pages=list(self.invalid_pages),
            invalid_characters=list(self.invalid_characters),
            retry_pages=list(self.retry_pages),
            level_skipped=list(self.level_skipped),
        )


def build_backup(
    queue: CrawlQueue,
    snapshots: Iterable[CharacterSnapshot],
    export_time: datetime | None = None,
) -> CrawlBackup:
    """Assemble a backup from a crawl checkpoint and the known snapshots."""
    return CrawlBackup(
        server=queue.cursor.server,
        cursor=queue.cursor,
        pending=list(queue.pending),
        invalid_pages=list(queue.invalid_pages),
        invalid_characters=list(queue.invalid_characters),
        retry_pages=list(queue.retry_pages),
        level_skipped=list(queue.level_skipped),
        snapshots=list(snapshots),
        export_time=export_time or datetime.now(UTC),
    )


def encode_backup(backup: CrawlBackup) -> bytes:
    """Serialize a backup to its compressed blob form."""
    return zlib.compress(backup.model_dump_json().encode("utf-8"))


def decode_backup(blob: bytes) -> CrawlBackup:
    """
    Parse a compressed backup blob.

    Raises:
        CorruptPersistedState: If the blob is not a valid backup
    """
    try:
        raw = zlib.decompress(blob)
        backup = CrawlBackup.model_validate_json(raw)
    except (zlib.error, ValidationError, UnicodeDecodeError) as e:
        raise CorruptPersistedState(detail=f"{type(e).__name__}: {e}") from e
    if backup.cursor.server != backup.server:
        raise CorruptPersistedState(
            detail=f"cursor server {backup.cursor.server!r} != backup server {backup.server!r}"
        )
    return backup


def load(blob: bytes) -> tuple[DirectoryCursor, list[CharacterRef], list[CharacterSnapshot]]:
    """
    Decode a blob into (cursor, pending queue, known snapshots).

    Raises:
        CorruptPersistedState: If the blob is not a valid backup
    """
    backup = decode_backup(blob)
    return backup.cursor, list(backup.pending), list(backup.snapshots)


async def restore_snapshots(
    snapshots: Iterable[CharacterSnapshot],
    sink: Callable[[CharacterSnapshot], None],
) -> int:
    """
    Feed restored snapshots to `sink` without blocking the event loop for long.

    Returns:
        Number of snapshots restored
    """
    count = 0
    for count, snapshot in enumerate(snapshots, start=1):
        sink(snapshot)
        if count % RESTORE_YIELD_EVERY == 0:
            await asyncio.sleep(0)
    return count


# --- Files ---


def backup_path(directory: Path, server_ident: str) -> Path:
    return directory / f"{server_ident}{BACKUP_SUFFIX}"


def write_backup_file(directory: Path, backup: CrawlBackup) -> Path:
    """Write `backup` to `<directory>/<ident>.zhof` and return the path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = backup_path(directory, ServerIdent.from_url(backup.server).ident)
    path.write_bytes(encode_backup(backup))
    logger.info(
        "Wrote backup of %s (%d characters) to %s", backup.server, len(backup.snapshots), path
    )
    return path


def read_backup_file(directory: Path, server_ident: str) -> CrawlBackup | None:
    """
    Read `<directory>/<ident>.zhof`.

    Returns:
        The backup, or None if the file does not exist

    Raises:
        CorruptPersistedState: If the file exists but is not a valid backup
    """
    path = backup_path(directory, server_ident)
    if not path.exists():
        return None
    return decode_backup(path.read_bytes())
