from scrapbook_helper.db.database import get_session, init_db
from scrapbook_helper.db.operations import (
    delete_backup,
    get_attack_log,
    get_backup,
    load_backup,
    log_attack,
    record_attack,
    record_to_model,
    save_backup,
)

__all__ = [
    "delete_backup",
    "get_attack_log",
    "get_backup",
    "get_session",
    "init_db",
    "load_backup",
    "log_attack",
    "record_attack",
    "record_to_model",
    "save_backup",
]
