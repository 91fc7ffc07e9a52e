"""
Database CRUD operations.

Provides async functions for storing crawl backups and the attack log.
"""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from scrapbook_helper.db.database import get_session
from scrapbook_helper.models.attack import AttackRecord
from scrapbook_helper.models.db import AttackLogDB, CrawlBackupDB

# --- Backup Operations ---


async def get_backup(session: AsyncSession, server_ident: str) -> CrawlBackupDB | None:
    """
    Get the stored backup row of a server.

    Returns None if no backup exists for this server.
    """
    result = await session.execute(
        select(CrawlBackupDB).where(CrawlBackupDB.server == server_ident)
    )
    return result.scalar_one_or_none()


async def save_backup(
    session: AsyncSession, server_ident: str, blob: bytes, characters: int = 0
) -> CrawlBackupDB:
    """
    Store the newest backup blob of a server.

    Replaces any existing backup of the same server.
    """
    existing = await get_backup(session, server_ident)

    if existing:
        existing.blob = blob
        existing.characters = characters
        await session.flush()
        return existing

    backup = CrawlBackupDB(server=server_ident, blob=blob, characters=characters)
    session.add(backup)
    await session.flush()
    return backup


async def load_backup(session: AsyncSession, server_ident: str) -> bytes | None:
    """Get the stored backup blob of a server, or None."""
    backup = await get_backup(session, server_ident)
    return backup.blob if backup else None


async def delete_backup(session: AsyncSession, server_ident: str) -> bool:
    """
    Delete the stored backup of a server.

    Returns True if a backup was deleted, False if none existed.
    """
    result = await session.execute(
        delete(CrawlBackupDB).where(CrawlBackupDB.server == server_ident)
    )
    # rowcount is available on DELETE results; type stubs incomplete for async
    return int(result.rowcount) > 0  # type: ignore[attr-defined]


# --- Attack Log Operations ---


async def record_attack(session: AsyncSession, record: AttackRecord) -> AttackLogDB:
    """Append one fight to the attack log."""
    entry = AttackLogDB(
        account=record.account,
        character_id=record.character_id,
        name=record.name,
        won=record.won,
        new_items=list(record.new_items),
        at=record.at,
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_attack_log(
    session: AsyncSession, account: str, limit: int | None = None
) -> list[AttackLogDB]:
    """
    Get the fights of an account, newest first.

    Args:
        session: Database session
        account: Primary account name
        limit: Maximum number of entries (all if None)
    """
    query = (
        select(AttackLogDB)
        .where(AttackLogDB.account == account)
        .order_by(AttackLogDB.at.desc(), AttackLogDB.id.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def log_attack(record: AttackRecord) -> None:
    """Record one fight in its own transaction."""
    async with get_session() as session:
        await record_attack(session, record)


def record_to_model(entry: AttackLogDB) -> AttackRecord:
    """Convert a database attack log entry to a domain model."""
    return AttackRecord(
        account=entry.account,
        character_id=entry.character_id,
        name=entry.name,
        won=entry.won,
        new_items=tuple(entry.new_items),
        at=entry.at,
    )
