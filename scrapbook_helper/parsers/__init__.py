from scrapbook_helper.parsers.backup import (
    CrawlBackup,
    build_backup,
    decode_backup,
    encode_backup,
    load,
    read_backup_file,
    restore_snapshots,
    write_backup_file,
)

__all__ = [
    "CrawlBackup",
    "build_backup",
    "decode_backup",
    "encode_backup",
    "load",
    "read_backup_file",
    "restore_snapshots",
    "write_backup_file",
]
