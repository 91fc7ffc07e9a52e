"""
Headless Hall of Fame crawl.

Crawls one server without any UI and keeps the result as a `.zhof` backup
(and in the database). The crawl resumes from the newest local or online
backup, and a backup is written when the directory is exhausted or the job
is interrupted.

The game protocol client is loaded by dotted path:
    python -m scrapbook_helper.jobs.crawl_server \\
        --server s7.sfgame.eu --client mygame.client:create_client --scouts 5
"""

import argparse
import asyncio
import importlib
import logging
from collections.abc import Callable
from pathlib import Path

from scrapbook_helper.config import MAX_SCOUT_SESSIONS, settings
from scrapbook_helper.db.database import get_session, init_db
from scrapbook_helper.db.operations import save_backup
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.parsers.backup import encode_backup, write_backup_file
from scrapbook_helper.scrapers.hof_cache import get_newest_backup
from scrapbook_helper.services.core import CoreEvent, CrawlStateChanged, Notice, ScrapbookCore
from scrapbook_helper.services.crawler import CrawlState
from scrapbook_helper.services.game_client import GameClient

logger = logging.getLogger(__name__)

DEFAULT_SCOUTS = 5


def load_client_factory(path: str) -> Callable[[], GameClient]:
    """
    Import a game client factory given as `package.module:callable`.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Client factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"{path!r} is not callable")
    return factory  # type: ignore[no-any-return]


async def store_backup(core: ScrapbookCore, backup_dir: Path, use_db: bool = True) -> Path:
    """Write the core's crawl to `<backup_dir>/<ident>.zhof` and the database."""
    backup = core.backup()
    path = write_backup_file(backup_dir, backup)
    if use_db:
        try:
            async with get_session() as session:
                await save_backup(
                    session,
                    core.server.ident,
                    encode_backup(backup),
                    characters=len(backup.snapshots),
                )
        except Exception as e:
            logger.error("Error storing backup of %s in the database: %s", core.server, e)
    return path


async def run_crawl(
    server_url: str,
    client: GameClient,
    scouts: int = DEFAULT_SCOUTS,
    backup_dir: Path = Path("."),
    fetch_online: bool = settings.fetch_online_backups,
    use_db: bool = True,
) -> int:
    """
    Crawl a server until its directory is exhausted or the job is cancelled.

    Args:
        server_url: Server address, e.g. "s7.sfgame.eu"
        client: Game protocol client
        scouts: Number of scouting characters to log in
        backup_dir: Directory holding `.zhof` backups
        fetch_online: Whether to consider the public HoF cache
        use_db: Whether to also keep the backup in the database

    Returns:
        Number of characters known when the crawl stopped
    """
    server = ServerIdent.from_url(server_url)
    core = ScrapbookCore(server, client)

    def on_event(event: CoreEvent) -> None:
        if isinstance(event, Notice):
            logger.warning("%s (%s)", event.detail.message, event.detail.detail)
        elif isinstance(event, CrawlStateChanged) and event.state == CrawlState.EXHAUSTED:
            logger.info("Directory of %s exhausted", server)
            core.stop()

    core.subscribe(on_event)

    if use_db:
        await init_db()

    blob = await get_newest_backup(server.ident, backup_dir, fetch_online=fetch_online)
    if blob is not None:
        await core.restore(blob)
    if core.crawl_state() == CrawlState.EXHAUSTED:
        logger.info("Backup of %s is complete, starting a new pass", server)
        core.restart_crawl()

    usable = await core.login_scouts(scouts)
    if usable == 0:
        logger.error("No scouting character could log in on %s", server)
        return core.known_characters()

    core.start_crawl()
    try:
        await core.run_forever()
    finally:
        await core.pause_crawl()
        path = await store_backup(core, backup_dir, use_db=use_db)
        crawled, remaining = core.progress()
        logger.info(
            "Saved %d characters of %s to %s (%d crawled, %d pending)",
            core.known_characters(),
            server,
            path,
            crawled,
            remaining,
        )
    return core.known_characters()


def main() -> None:
    """CLI entry point for a headless crawl."""
    parser = argparse.ArgumentParser(description="Crawl a server's Hall of Fame")
    parser.add_argument("--server", required=True, help="Server address (e.g., s7.sfgame.eu)")
    parser.add_argument(
        "--client",
        required=True,
        help="Game client factory as module:callable",
    )
    parser.add_argument(
        "--scouts",
        type=int,
        default=DEFAULT_SCOUTS,
        choices=range(1, MAX_SCOUT_SESSIONS + 1),
        metavar=f"1-{MAX_SCOUT_SESSIONS}",
        help=f"Scouting characters to use (default: {DEFAULT_SCOUTS})",
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=Path("."),
        help="Directory for .zhof backups (default: current directory)",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not look for a newer backup in the public HoF cache",
    )
    parser.add_argument(
        "--no-db",
        action="store_true",
        help="Only write the .zhof file, not the database",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    client = load_client_factory(args.client)()
    try:
        asyncio.run(
            run_crawl(
                args.server,
                client,
                scouts=args.scouts,
                backup_dir=args.backup_dir,
                fetch_online=not args.offline and settings.fetch_online_backups,
                use_db=not args.no_db,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted, backup written")


if __name__ == "__main__":
    main()
