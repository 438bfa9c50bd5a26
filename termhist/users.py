# termhist/users.py
from typing import Any, Dict, Optional

from termhist import monitoring
from termhist.errors import RemoteUnavailable, UserResolutionFailed
from termhist.models import DEFAULT_USER_SCOPE
from termhist.remote_client import HistoryClient

logger = monitoring.logger


class UserResolver:
    """
    Maps a username to the store's internal user id once per process and
    scopes the client to it. An unknown user, or a store failure during the
    lookup, falls back to the default scope; this is logged, never raised.
    """

    def __init__(self, client: HistoryClient):
        self.client = client
        self._cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self.current: Optional[Dict[str, Any]] = None

    @property
    def scope(self) -> str:
        return self.current["id"] if self.current else DEFAULT_USER_SCOPE

    async def resolve_user(self, username: Optional[str]) -> Optional[Dict[str, Any]]:
        if not username or username == DEFAULT_USER_SCOPE:
            return self._apply(None)
        if username in self._cache:
            return self._apply(self._cache[username])

        try:
            info = await self.client.find_user(username)
        except RemoteUnavailable as e:
            logger.warning("User lookup failed, using default scope", extra={"username": username, "error": str(e)})
            # not cached: a later call may reach the store
            return self._apply(None)

        if info is None and not self.client.offline:
            err = UserResolutionFailed(username)
            logger.warning("User not found, using default scope",
                           extra={"username": username, "error_code": err.code, "error": str(err)})
        self._cache[username] = info
        return self._apply(info)

    def _apply(self, info: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        self.current = info
        self.client.set_scope(info["id"] if info else None)
        return info
