# termhist/sync.py
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from termhist import monitoring
from termhist.db import parse_ts, to_iso, utcnow
from termhist.errors import BatchSyncAborted, RemoteUnavailable
from termhist.models import DEFAULT_SOURCE, STATUS_PENDING, TERMINAL_STATUSES
from termhist.remote_client import HistoryClient

logger = monitoring.logger


@dataclass
class SyncReport:
    synced: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[BatchSyncAborted] = None

    @property
    def aborted(self) -> bool:
        return self.error is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "synced": len(self.synced),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "aborted": self.aborted,
            "error": str(self.error) if self.error else None,
        }


class SyncEngine:
    """
    Pushes local-only entries to the remote store and reads history back.

    sync_history is fail-fast by default: the first remote error aborts the
    batch, entries after it are left unsynced and unattempted, and entries
    already pushed stay pushed. isolate_failures=True attempts every entry
    and collects the failures instead. Entries are keyed by request id, so
    pushing an entry again updates its remote row instead of duplicating it.
    """

    def __init__(self, client: HistoryClient, source: str = DEFAULT_SOURCE, isolate_failures: bool = False):
        self.client = client
        self.source = source
        self.isolate_failures = isolate_failures

    @property
    def offline(self) -> bool:
        return self.client.offline

    async def sync_history(self, local_entries: List[Dict[str, Any]],
                           isolate_failures: Optional[bool] = None) -> SyncReport:
        report = SyncReport()
        if self.offline or not local_entries:
            return report
        isolate = self.isolate_failures if isolate_failures is None else isolate_failures

        for index, entry in enumerate(local_entries):
            sync_time = utcnow()
            try:
                remote_id = await self._push(entry, sync_time)
            except RemoteUnavailable as e:
                entry["synced"] = False
                if isolate:
                    logger.warning("Sync failed for entry", extra={"index": index, "error": str(e)})
                    report.failed.append(entry)
                    continue
                report.failed.append(entry)
                for rest in local_entries[index + 1:]:
                    rest.setdefault("synced", False)
                    report.skipped.append(rest)
                report.error = BatchSyncAborted(index, e)
                logger.warning("Sync aborted", extra={
                    "index": index,
                    "pushed": len(report.synced),
                    "unattempted": len(report.skipped),
                    "error_code": report.error.code,
                    "error": str(e),
                })
                break

            entry["synced"] = True
            entry["synced_at"] = to_iso(sync_time)
            entry["remote_id"] = remote_id
            report.synced.append(entry)

        monitoring.inc_sync("synced", len(report.synced))
        monitoring.inc_sync("failed", len(report.failed))
        monitoring.inc_sync("skipped", len(report.skipped))
        logger.info("Sync finished", extra=report.as_dict())
        return report

    async def _push(self, entry: Dict[str, Any], sync_time: datetime.datetime):
        """
        Insert the entry, or update the remote row already holding its
        request id (an earlier push of the same entry). A remote row that is
        already terminal never goes back to pending.
        """
        request_id = entry.get("request_id")
        existing = await self.client.query(request_id) if request_id else None
        if existing is None:
            return await self.client.save(
                entry["command"],
                entry.get("response"),
                self._metadata(entry, sync_time),
            )

        status = entry.get("status") or STATUS_PENDING
        fields: Dict[str, Any] = {"synced": True, "synced_at": sync_time}
        if not (status == STATUS_PENDING and existing.get("status") in TERMINAL_STATUSES):
            fields.update({
                "status": status,
                "response": entry.get("response"),
                "updated_at": parse_ts(entry.get("updated_at")),
                "completed_at": parse_ts(entry.get("completed_at")),
            })
        await self.client.update(existing["id"], fields)
        return existing["id"]

    def _metadata(self, entry: Dict[str, Any], sync_time: datetime.datetime) -> Dict[str, Any]:
        return {
            "status": entry.get("status") or STATUS_PENDING,
            "request_id": entry.get("request_id"),
            "session_id": entry.get("session_id"),
            "source": entry.get("source") or self.source,
            "machine_id": entry.get("machine_id"),
            "timestamp": entry.get("timestamp"),
            "updated_at": entry.get("updated_at"),
            "completed_at": entry.get("completed_at"),
            "synced": True,
            "synced_at": sync_time,
        }

    async def search_history(self, query: str, limit: int = 10) -> List[str]:
        """Commands of entries whose command or response contains ``query`` (case-insensitive)."""
        if self.offline:
            return []
        try:
            results = await self.client.search(query, limit, source=self.source)
        except RemoteUnavailable as e:
            logger.warning("History search failed", extra={"query": query, "error": str(e)})
            return []
        return [r["command"] for r in results]

    async def get_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        if self.offline:
            return []
        try:
            return await self.client.list(limit)
        except RemoteUnavailable as e:
            logger.warning("Fetching history failed", extra={"error": str(e)})
            return []
