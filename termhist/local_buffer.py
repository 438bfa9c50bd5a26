# termhist/local_buffer.py
"""
On-disk buffer for entries that never reached the remote store (offline mode
or a failed remote save). Same table layout as the remote store; the
``synced`` flag flips once HistoryEngine.sync_local_buffer pushed a row, and
flips back when a later status/response change lands locally.

Failures here are logged and reported as None/False/[]; the buffer must never
break the command flow.
"""

import os
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from termhist import monitoring
from termhist.db import init_db, make_engine, make_session_factory, utcnow
from termhist.models import DEFAULT_USER_SCOPE, STATUS_PENDING, HistoryRecord

logger = monitoring.logger


def _ensure_sqlite_dir(url: str):
    try:
        parsed = make_url(url)
    except ArgumentError:
        return
    if parsed.drivername.startswith("sqlite") and parsed.database and parsed.database != ":memory:":
        parent = os.path.dirname(os.path.abspath(os.path.expanduser(parsed.database)))
        os.makedirs(parent, exist_ok=True)


class LocalHistoryBuffer:
    def __init__(self, url: str, machine_id: Optional[str] = None):
        self.url = url
        self.machine_id = machine_id
        _ensure_sqlite_dir(url)
        self.engine = make_engine(url)
        self.SessionLocal = make_session_factory(self.engine)
        init_db(self.engine)

    def append(self, command: str, request_id: str, session_id: Optional[str] = None,
               source: Optional[str] = None, status: str = STATUS_PENDING,
               response: Optional[str] = None) -> Optional[int]:
        """Record one entry locally. Returns the local id or None on error."""
        try:
            with self.SessionLocal() as db:
                rec = HistoryRecord(
                    user_id=DEFAULT_USER_SCOPE,
                    machine_id=self.machine_id,
                    command=command,
                    response=response,
                    status=status,
                    request_id=request_id,
                    session_id=session_id,
                    source=source,
                    timestamp=utcnow(),
                    synced=False,
                )
                db.add(rec)
                db.commit()
                return rec.id
        except SQLAlchemyError as e:
            logger.error("Local buffer save error", extra={"request_id": request_id, "error": str(e)})
            return None

    def update_by_request_id(self, request_id: str, fields: Dict[str, Any]) -> bool:
        """
        Apply a status/response change to the buffered copy, if there is one.
        The row goes back to unsynced so the change reaches the remote store
        even if an earlier state was already pushed.
        """
        values = {"synced": False, "synced_at": None, **fields}
        try:
            with self.SessionLocal() as db:
                res = db.execute(
                    update(HistoryRecord)
                    .where(HistoryRecord.request_id == request_id)
                    .values(version=HistoryRecord.version + 1, **values)
                )
                db.commit()
                return res.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Local buffer update error", extra={"request_id": request_id, "error": str(e)})
            return False

    def get_by_request_id(self, request_id: str) -> Optional[Dict[str, Any]]:
        try:
            with self.SessionLocal() as db:
                rec = db.execute(
                    select(HistoryRecord)
                    .where(HistoryRecord.request_id == request_id)
                    .order_by(HistoryRecord.timestamp.desc(), HistoryRecord.id.desc())
                ).scalars().first()
                return rec.to_dict() if rec else None
        except SQLAlchemyError as e:
            logger.error("Local buffer read error", extra={"request_id": request_id, "error": str(e)})
            return None

    def unsynced(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Oldest-first batch of entries not yet pushed."""
        try:
            with self.SessionLocal() as db:
                rows = db.execute(
                    select(HistoryRecord)
                    .where(HistoryRecord.synced.is_(False))
                    .order_by(HistoryRecord.timestamp.asc(), HistoryRecord.id.asc())
                    .limit(limit)
                ).scalars().all()
                return [r.to_dict() for r in rows]
        except SQLAlchemyError as e:
            logger.error("Local buffer read error", extra={"error": str(e)})
            return []

    def mark_synced(self, entries: Iterable[Dict[str, Any]]) -> int:
        """
        Flag pushed rows as synced. Each entry is a dict from unsynced(); a row
        whose version moved since it was read changed after the push and stays
        unsynced.
        """
        entries = list(entries)
        if not entries:
            return 0
        now = utcnow()
        try:
            with self.SessionLocal() as db:
                marked = 0
                for entry in entries:
                    res = db.execute(
                        update(HistoryRecord)
                        .where(HistoryRecord.id == entry["id"], HistoryRecord.version == entry["version"])
                        .values(synced=True, synced_at=now)
                    )
                    marked += res.rowcount
                db.commit()
                return marked
        except SQLAlchemyError as e:
            logger.error("Local buffer update error", extra={"error": str(e)})
            return 0

    def close(self):
        self.engine.dispose()
