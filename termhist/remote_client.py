# termhist/remote_client.py
"""
Transport-level access to the shared history store.

RemoteHistoryClient wraps one cached SQLAlchemy engine (the connection handle
shared by every call). Each operation runs its blocking SQLAlchemy work in a
worker thread, so the calling task suspends at the await and other tasks keep
running. There is no business logic here and no retry: any store or network
failure surfaces as RemoteUnavailable.

OfflineHistoryClient has the same surface and does nothing.
"""

import asyncio
import platform
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from termhist import monitoring
from termhist.config import RemoteConfig
from termhist.db import init_db, make_engine, make_session_factory, parse_ts, utcnow
from termhist.errors import RemoteUnavailable
from termhist.models import DEFAULT_USER_SCOPE, STATUS_PENDING, HistoryRecord, User

# Columns an update may touch; command/request_id/timestamp are immutable
UPDATABLE_FIELDS = ("response", "status", "updated_at", "completed_at", "synced", "synced_at")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class HistoryClient(Protocol):
    offline: bool
    scope: str

    async def connect(self) -> None: ...
    def set_scope(self, user_id: Optional[str]) -> None: ...
    async def save(self, command: str, response: Optional[str], metadata: Dict[str, Any]) -> Optional[int]: ...
    async def update(self, entry_id: int, fields: Dict[str, Any],
                     expected_version: Optional[int] = None) -> bool: ...
    async def get(self, entry_id: int) -> Optional[Dict[str, Any]]: ...
    async def query(self, request_id: str) -> Optional[Dict[str, Any]]: ...
    async def search(self, text: str, limit: int, source: Optional[str] = None) -> List[Dict[str, Any]]: ...
    async def list(self, limit: int) -> List[Dict[str, Any]]: ...
    async def find_user(self, username: str) -> Optional[Dict[str, Any]]: ...
    async def create_user(self, username: str, name: Optional[str] = None,
                          email: Optional[str] = None) -> Optional[Dict[str, Any]]: ...
    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...
    async def close(self) -> None: ...


class OfflineHistoryClient:
    """No-op client used when no remote store is configured or reachable."""

    offline = True

    def __init__(self):
        self.scope = DEFAULT_USER_SCOPE

    async def connect(self) -> None:
        return None

    def set_scope(self, user_id: Optional[str]) -> None:
        self.scope = user_id or DEFAULT_USER_SCOPE

    async def save(self, command, response, metadata) -> Optional[int]:
        return None

    async def update(self, entry_id, fields, expected_version=None) -> bool:
        return False

    async def get(self, entry_id) -> Optional[Dict[str, Any]]:
        return None

    async def query(self, request_id) -> Optional[Dict[str, Any]]:
        return None

    async def search(self, text, limit, source=None) -> List[Dict[str, Any]]:
        return []

    async def list(self, limit) -> List[Dict[str, Any]]:
        return []

    async def find_user(self, username) -> Optional[Dict[str, Any]]:
        return None

    async def create_user(self, username, name=None, email=None) -> Optional[Dict[str, Any]]:
        return None

    async def execute(self, sql, params=None) -> List[Dict[str, Any]]:
        return []

    async def close(self) -> None:
        return None


class RemoteHistoryClient:
    offline = False

    def __init__(self, config: RemoteConfig, machine_id: Optional[str] = None):
        self.config = config
        self.machine_id = machine_id or platform.node() or None
        self.scope = DEFAULT_USER_SCOPE
        self._engine = None
        self._sessions = None

    # ------------------------------------------------------------------
    # connection
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Build the engine handle and run the handshake (SELECT 1 + schema)."""
        try:
            self._engine = make_engine(self.config.url, self.config.token)
        except SQLAlchemyError as e:
            raise RemoteUnavailable("connect", str(e)) from e
        self._sessions = make_session_factory(self._engine)
        await self._run("connect", self._handshake)

    def _handshake(self):
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        if self.config.ensure_schema:
            init_db(self._engine)

    async def close(self) -> None:
        if self._engine is not None:
            engine, self._engine, self._sessions = self._engine, None, None
            await asyncio.to_thread(engine.dispose)

    def set_scope(self, user_id: Optional[str]) -> None:
        self.scope = user_id or DEFAULT_USER_SCOPE

    async def _run(self, operation: str, fn, *args):
        if self._sessions is None:
            raise RemoteUnavailable(operation, "client is not connected")
        start = time.time()
        try:
            result = await asyncio.to_thread(fn, *args)
        except (SQLAlchemyError, OSError) as e:
            monitoring.observe_store_op(start, operation, "error")
            raise RemoteUnavailable(operation, str(e)) from e
        monitoring.observe_store_op(start, operation, "ok")
        return result

    # ------------------------------------------------------------------
    # history CRUD
    # ------------------------------------------------------------------
    async def save(self, command: str, response: Optional[str], metadata: Dict[str, Any]) -> Optional[int]:
        """
        Insert one entry and return its store-assigned id.
        metadata may carry: status, request_id, session_id, source, timestamp,
        updated_at, completed_at, synced, synced_at.
        """
        return await self._run("save", self._save, command, response, dict(metadata or {}))

    def _save(self, command, response, metadata):
        with self._sessions() as db:
            rec = HistoryRecord(
                user_id=self.scope,
                machine_id=metadata.get("machine_id") or self.machine_id,
                command=command,
                response=response,
                status=metadata.get("status") or STATUS_PENDING,
                request_id=metadata.get("request_id"),
                session_id=metadata.get("session_id"),
                source=metadata.get("source"),
                timestamp=parse_ts(metadata.get("timestamp")) or utcnow(),
                updated_at=parse_ts(metadata.get("updated_at")),
                completed_at=parse_ts(metadata.get("completed_at")),
                synced=bool(metadata.get("synced", False)),
                synced_at=parse_ts(metadata.get("synced_at")),
            )
            db.add(rec)
            db.commit()
            return rec.id

    async def update(self, entry_id: int, fields: Dict[str, Any],
                     expected_version: Optional[int] = None) -> bool:
        """
        Apply ``fields`` to one entry as a single write and bump its version.
        With ``expected_version`` the write only applies if the stored version
        still matches. Returns True if a row was changed.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        return await self._run("update", self._update, entry_id, dict(fields), expected_version)

    def _update(self, entry_id, fields, expected_version):
        stmt = update(HistoryRecord).where(
            HistoryRecord.id == entry_id,
            HistoryRecord.user_id == self.scope,
        )
        if expected_version is not None:
            stmt = stmt.where(HistoryRecord.version == expected_version)
        stmt = stmt.values(version=HistoryRecord.version + 1, **fields)
        with self._sessions() as db:
            res = db.execute(stmt)
            db.commit()
            return res.rowcount > 0

    async def get(self, entry_id: int) -> Optional[Dict[str, Any]]:
        return await self._run("get", self._get, entry_id)

    def _get(self, entry_id):
        with self._sessions() as db:
            rec = db.execute(
                select(HistoryRecord).where(
                    HistoryRecord.id == entry_id,
                    HistoryRecord.user_id == self.scope,
                )
            ).scalars().first()
            return rec.to_dict() if rec else None

    async def query(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Most recently created entry for ``request_id`` (timestamp DESC, id DESC)."""
        return await self._run("query", self._query, request_id)

    def _query(self, request_id):
        with self._sessions() as db:
            rec = db.execute(
                select(HistoryRecord)
                .where(HistoryRecord.request_id == request_id, HistoryRecord.user_id == self.scope)
                .order_by(HistoryRecord.timestamp.desc(), HistoryRecord.id.desc())
                .limit(1)
            ).scalars().first()
            return rec.to_dict() if rec else None

    async def search(self, text: str, limit: int, source: Optional[str] = None) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on command or response, newest first."""
        if limit <= 0:
            return []
        return await self._run("search", self._search, text or "", limit, source)

    def _search(self, needle, limit, source):
        pattern = f"%{_escape_like(needle)}%"
        stmt = select(HistoryRecord).where(
            HistoryRecord.user_id == self.scope,
            or_(
                HistoryRecord.command.ilike(pattern, escape="\\"),
                HistoryRecord.response.ilike(pattern, escape="\\"),
            ),
        )
        if source:
            stmt = stmt.where(HistoryRecord.source == source)
        stmt = stmt.order_by(HistoryRecord.timestamp.desc(), HistoryRecord.id.desc()).limit(limit)
        with self._sessions() as db:
            return [r.to_dict() for r in db.execute(stmt).scalars().all()]

    async def list(self, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return await self._run("list", self._list, limit)

    def _list(self, limit):
        stmt = (
            select(HistoryRecord)
            .where(HistoryRecord.user_id == self.scope)
            .order_by(HistoryRecord.timestamp.desc(), HistoryRecord.id.desc())
            .limit(limit)
        )
        with self._sessions() as db:
            return [r.to_dict() for r in db.execute(stmt).scalars().all()]

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    async def find_user(self, username: str) -> Optional[Dict[str, Any]]:
        return await self._run("find_user", self._find_user, username)

    def _find_user(self, username):
        with self._sessions() as db:
            user = db.execute(
                select(User).where(User.username == username, User.is_active.is_(True))
            ).scalars().first()
            return user.to_dict() if user else None

    async def create_user(self, username: str, name: Optional[str] = None,
                          email: Optional[str] = None) -> Dict[str, Any]:
        return await self._run("create_user", self._create_user, username, name, email)

    def _create_user(self, username, name, email):
        with self._sessions() as db:
            user = User(id=uuid.uuid4().hex, username=username, name=name, email=email)
            db.add(user)
            db.commit()
            return user.to_dict()

    # ------------------------------------------------------------------
    # raw queries
    # ------------------------------------------------------------------
    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a raw SQL statement with named parameters; returns rows as dicts."""
        return await self._run("execute", self._execute, sql, dict(params or {}))

    def _execute(self, sql, params):
        with self._engine.begin() as conn:
            res = conn.execute(text(sql), params)
            if not res.returns_rows:
                return []
            return [dict(row._mapping) for row in res]
