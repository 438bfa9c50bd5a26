# termhist/errors.py
"""
Error taxonomy for the history engine.

None of these are allowed to escape the lifecycle/sync boundary: callers
there catch them and return a neutral value (None / False / []).
"""

from typing import Optional

E_CONFIG_MISSING = "E_CONFIG_MISSING"
E_REMOTE_UNAVAILABLE = "E_REMOTE_UNAVAILABLE"
E_SYNC_ABORTED = "E_SYNC_ABORTED"
E_USER_NOT_FOUND = "E_USER_NOT_FOUND"


class HistoryError(Exception):
    """Base class; ``code`` mirrors the error codes used in API payloads."""

    code = "E_INTERNAL"


class ConfigMissing(HistoryError):
    """No usable remote configuration was found. The engine goes offline."""

    code = E_CONFIG_MISSING


class RemoteUnavailable(HistoryError):
    """A single network or store operation failed."""

    code = E_REMOTE_UNAVAILABLE

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}" if message else f"{operation} failed")


class BatchSyncAborted(HistoryError):
    """A fail-fast sync stopped at ``index``; entries from there on were not attempted."""

    code = E_SYNC_ABORTED

    def __init__(self, index: int, cause: Optional[BaseException] = None):
        self.index = index
        self.cause = cause
        super().__init__(f"sync aborted at entry {index}: {cause}")


class UserResolutionFailed(HistoryError):
    code = E_USER_NOT_FOUND

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"USER_NOT_FOUND:{username}")
