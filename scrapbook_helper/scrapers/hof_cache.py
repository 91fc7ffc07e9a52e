"""
Public Hall of Fame cache client.

The cache publishes one crawl backup per server:
    <base>/<ident>.version  - RFC 2822 date of the newest backup
    <base>/<ident>.zhof     - the backup blob

A downloaded backup is only used when it is newer than the local one.
"""

import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path

import httpx

from scrapbook_helper.config import settings
from scrapbook_helper.models.failure import CorruptPersistedState
from scrapbook_helper.parsers.backup import backup_path, decode_backup

logger = logging.getLogger(__name__)

USER_AGENT = "ScrapbookHelper/0.1"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


async def fetch_backup_version(
    server_ident: str,
    client: httpx.AsyncClient,
    base_url: str = settings.hof_cache_url,
) -> datetime:
    """
    Fetch the export date of the newest cached backup of a server.

    Raises:
        httpx.HTTPError: If the request fails
        ValueError: If the response is not an RFC 2822 date
    """
    response = await client.get(f"{base_url}/{server_ident}.version")
    response.raise_for_status()
    try:
        return _as_utc(parsedate_to_datetime(response.text.strip()))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid backup version {response.text!r}") from e


async def fetch_backup(
    server_ident: str,
    client: httpx.AsyncClient,
    base_url: str = settings.hof_cache_url,
) -> bytes:
    """
    Download the cached backup blob of a server.

    Raises:
        httpx.HTTPError: If the request fails
    """
    response = await client.get(f"{base_url}/{server_ident}.zhof")
    response.raise_for_status()
    return response.content


def _local_export_time(blob: bytes) -> datetime | None:
    try:
        export_time = decode_backup(blob).export_time
    except CorruptPersistedState:
        logger.warning("Local backup is unreadable, preferring the online copy")
        return None
    return _as_utc(export_time) if export_time else None


async def get_newest_backup(
    server_ident: str,
    directory: Path,
    fetch_online: bool = settings.fetch_online_backups,
    client: httpx.AsyncClient | None = None,
    base_url: str = settings.hof_cache_url,
) -> bytes | None:
    """
    Return the newest backup blob of a server, local or online.

    The online copy replaces the local `<ident>.zhof` file when its version
    date is newer than the local backup's export time, or when there is no
    local backup. Network failures fall back to the local file.

    Returns:
        The backup blob, or None if neither copy exists
    """
    path = backup_path(directory, server_ident)
    local = path.read_bytes() if path.exists() else None
    if not fetch_online:
        return local

    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=30.0, headers={"User-Agent": USER_AGENT}, follow_redirects=True
    )
    try:
        try:
            online_time = await fetch_backup_version(server_ident, http, base_url)
        except (httpx.HTTPError, ValueError) as e:
            logger.info("No online backup version for %s: %s", server_ident, e)
            return local

        local_time = _local_export_time(local) if local is not None else None
        if local_time is not None and local_time >= online_time:
            return local

        try:
            blob = await fetch_backup(server_ident, http, base_url)
        except httpx.HTTPError as e:
            logger.warning("Could not download backup of %s: %s", server_ident, e)
            return local
    finally:
        if owns_client:
            await http.aclose()

    logger.info("Fetched online backup of %s from %s", server_ident, online_time.isoformat())
    directory.mkdir(parents=True, exist_ok=True)
    path.write_bytes(blob)
    return blob
