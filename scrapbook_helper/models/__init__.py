from scrapbook_helper.models.attack import AttackOutcome, AttackRecord
from scrapbook_helper.models.collection import Collection
from scrapbook_helper.models.cursor import CrawlQueue, DirectoryCursor
from scrapbook_helper.models.failure import (
    STANDARD_MESSAGES,
    STANDARD_SUGGESTIONS,
    AuthFailure,
    CorruptPersistedState,
    FailureDetail,
    FailureKind,
    KnownError,
    RateLimited,
    TargetUnreachable,
    TransientNetwork,
    create_notice,
)
from scrapbook_helper.models.server import ServerIdent
from scrapbook_helper.models.session import Credentials, Session, SessionRole, SessionState
from scrapbook_helper.models.snapshot import CharacterRef, CharacterSnapshot, ScoredCandidate

__all__ = [
    "AttackOutcome",
    "AttackRecord",
    "AuthFailure",
    "CharacterRef",
    "CharacterSnapshot",
    "Collection",
    "CorruptPersistedState",
    "CrawlQueue",
    "Credentials",
    "DirectoryCursor",
    "FailureDetail",
    "FailureKind",
    "KnownError",
    "RateLimited",
    "STANDARD_MESSAGES",
    "STANDARD_SUGGESTIONS",
    "ScoredCandidate",
    "ServerIdent",
    "Session",
    "SessionRole",
    "SessionState",
    "TargetUnreachable",
    "TransientNetwork",
    "create_notice",
]
