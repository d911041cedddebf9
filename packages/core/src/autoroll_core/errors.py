"""AutoRoll exception hierarchy.

Components raise; only the roller decides whether an error is a warning,
an error, or fatal for the tick.
"""

from __future__ import annotations

from autoroll_store.base import StorageError
from autoroll_store.models import RollValidationError

__all__ = [
    "AutoRollError",
    "ConfigError",
    "MergeMethodError",
    "ReviewSystemError",
    "RevisionInvariantError",
    "RollValidationError",
    "StorageError",
    "TickInProgressError",
    "TransientSyncError",
    "UnknownRevisionError",
    "is_sync_error",
]


class AutoRollError(Exception):
    """Base exception for all roller errors."""


class ConfigError(AutoRollError, ValueError):
    """Raised when the roller configuration is invalid."""


class ReviewSystemError(AutoRollError):
    """Raised when Gerrit or GitHub rejects or fails a request.

    ``status_code`` carries the HTTP status when one is known, so callers can
    tell a 409 conflict from a server error.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class MergeMethodError(AutoRollError):
    """Raised when the merge method override cannot be fetched or is invalid."""


class RevisionInvariantError(AutoRollError):
    """Raised when the repo manager reports an inconsistent set of revisions."""


class TransientSyncError(AutoRollError):
    """Raised by repo managers for sync failures expected to clear by themselves."""


class TickInProgressError(AutoRollError):
    """Raised when a tick is requested while another is still running."""

    def __init__(self) -> None:
        super().__init__("A roller tick is already in progress.")


class UnknownRevisionError(AutoRollError):
    """Raised when a revision ID cannot be resolved."""

    def __init__(self, rev_id: str) -> None:
        self.rev_id = rev_id
        super().__init__(f"Unknown revision: {rev_id}")


# Messages from git and googlesource frontends which mean "the mirror is
# behind", not "something is broken". Repo managers that wrap subprocesses
# can't always raise TransientSyncError, so we still match on text.
_SYNC_ERROR_SUBSTRINGS = (
    "Invalid revision range",
    "The remote end hung up unexpectedly",
    "remote error: internal server error",
    "The requested URL returned error: 502",
    "fatal: bad object",
)


def is_sync_error(err: BaseException) -> bool:
    """Return True if err is a transient sync failure."""
    cause: BaseException | None = err
    while cause is not None:
        if isinstance(cause, TransientSyncError):
            return True
        cause = cause.__cause__
    msg = str(err)
    return any(s in msg for s in _SYNC_ERROR_SUBSTRINGS)
