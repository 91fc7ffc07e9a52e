"""
Failure classification for game requests and engine state.

Every request made through the game client ends in one of these outcomes.
The client raises the matching KnownError subclass; the engine catches it
at the request boundary and turns it into a cooldown, a retry, a skipped
character, or a user-visible notice.

INVARIANT: No failure classified here is fatal to the process.

Kinds:
- AuthFailure: session can no longer be used, removed from rotation
- RateLimited: absorbed by backoff, surfaced only as a transient status
- TransientNetwork: bounded retry, then skip with a warning
- TargetUnreachable: candidate removed from the ranking
- CorruptPersistedState: backup ignored, crawl restarts from page 0
"""

from enum import Enum

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """Classification of failure types."""

    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    TARGET_UNREACHABLE = "target_unreachable"
    CORRUPT_PERSISTED_STATE = "corrupt_persisted_state"

    INVALID_INPUT = "invalid_input"

    UNKNOWN = "unknown"


class FailureDetail(BaseModel):
    """User-visible description of a failure."""

    kind: FailureKind = Field(
        ...,
        description="Classification of the failure",
    )
    message: str = Field(
        ...,
        description="User-appropriate explanation of what went wrong",
    )
    detail: str | None = Field(
        default=None,
        description="Additional technical detail (optional)",
    )
    suggestion: str | None = Field(
        default=None,
        description="Suggested action for the user",
    )


# Standard messages, one per kind

STANDARD_MESSAGES: dict[FailureKind, str] = {
    FailureKind.AUTH_FAILURE: "A game session could not log in and was disabled.",
    FailureKind.RATE_LIMITED: "The server is throttling requests. Crawling has slowed down.",
    FailureKind.TRANSIENT_NETWORK: "A request failed because of a network problem.",
    FailureKind.TARGET_UNREACHABLE: "The opponent could not be reached.",
    FailureKind.CORRUPT_PERSISTED_STATE: "The saved crawl could not be read.",
    FailureKind.INVALID_INPUT: "The request was not valid.",
    FailureKind.UNKNOWN: "Something failed and the cause is unknown.",
}

STANDARD_SUGGESTIONS: dict[FailureKind, str] = {
    FailureKind.AUTH_FAILURE: "Check the account credentials. Other sessions keep working.",
    FailureKind.RATE_LIMITED: "No action needed. Requests resume once the server allows it.",
    FailureKind.TRANSIENT_NETWORK: "No action needed. The request is retried automatically.",
    FailureKind.TARGET_UNREACHABLE: "The next best opponent is used instead.",
    FailureKind.CORRUPT_PERSISTED_STATE: "The crawl was restarted from the first page.",
    FailureKind.INVALID_INPUT: "Check the command and try again.",
    FailureKind.UNKNOWN: "If this persists, restart the crawl.",
}


class KnownError(Exception):
    """
    Base class for exceptions that represent known, explainable failures.

    Subclass this for errors where the system knows exactly what went wrong.
    """

    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        detail: str | None = None,
        suggestion: str | None = None,
    ):
        self.message = message or STANDARD_MESSAGES[self.kind]
        self.detail = detail
        self.suggestion = suggestion or STANDARD_SUGGESTIONS[self.kind]
        super().__init__(self.message)

    def to_detail(self) -> FailureDetail:
        """Convert to a FailureDetail."""
        return FailureDetail(
            kind=self.kind,
            message=self.message,
            detail=self.detail,
            suggestion=self.suggestion,
        )


class AuthFailure(KnownError):
    """The session is not (or no longer) logged in."""

    kind = FailureKind.AUTH_FAILURE


class RateLimited(KnownError):
    """
    The server refused the request because too many were made.

    `retry_after` is the server's hint in seconds, when it sends one.
    """

    kind = FailureKind.RATE_LIMITED

    def __init__(
        self,
        message: str | None = None,
        detail: str | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message=message, detail=detail)


class TransientNetwork(KnownError):
    """Timeout, dropped connection, or an unparseable response."""

    kind = FailureKind.TRANSIENT_NETWORK


class TargetUnreachable(KnownError):
    """The character vanished, was renamed, or cannot be fought."""

    kind = FailureKind.TARGET_UNREACHABLE


class CorruptPersistedState(KnownError):
    """A backup blob could not be decoded or failed validation."""

    kind = FailureKind.CORRUPT_PERSISTED_STATE


def create_notice(kind: FailureKind, detail: str | None = None) -> FailureDetail:
    """
    Create a user-visible notice with the standard wording for `kind`.

    Args:
        kind: The classification of the failure
        detail: Technical description of what went wrong (not user-facing prose)

    Returns:
        FailureDetail with standardized message and suggestion
    """
    return FailureDetail(
        kind=kind,
        message=STANDARD_MESSAGES[kind],
        detail=detail,
        suggestion=STANDARD_SUGGESTIONS[kind],
    )
