"""
SQLAlchemy ORM models for persistent storage.

Backups are stored as opaque compressed blobs; the attack log mirrors the
AttackRecord dataclass.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    LargeBinary,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CrawlBackupDB(Base):
    """
    Newest crawl backup of one server.

    One row per server; saving again replaces the blob.
    """

    __tablename__ = "crawl_backups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    blob: Mapped[bytes] = mapped_column(LargeBinary)
    characters: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CrawlBackupDB(server={self.server}, characters={self.characters})>"


class AttackLogDB(Base):
    """One fight fought by a primary account."""

    __tablename__ = "attack_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account: Mapped[str] = mapped_column(String(255), index=True)
    character_id: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(255))
    won: Mapped[bool] = mapped_column(Boolean)
    new_items: Mapped[list[Any]] = mapped_column(JSON, default=list)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<AttackLogDB(account={self.account}, name={self.name}, won={self.won})>"
