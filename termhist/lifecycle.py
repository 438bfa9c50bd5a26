# termhist/lifecycle.py
"""
Entry lifecycle: pending -> completed | cancelled.

Every question is written as a pending entry tagged with a request id before
the AI provider is consulted. Completions and cancellations arrive later, in
any order, and are matched back by entry id or by request id, never by
submission order.

Writes are independent single updates. In the default mode nothing serializes
a cancellation against a completion for the same entry: whichever update
commits last is the stored state. With strict=True cancellation is
authoritative: every other write is a compare-and-swap on the entry version
and is dropped once the entry is cancelled.

All store failures are logged and turned into neutral return values.
"""

import uuid
from typing import Any, Dict, Optional

from termhist import monitoring
from termhist.db import utcnow
from termhist.errors import RemoteUnavailable
from termhist.models import (
    CANCELLED_RESPONSE,
    DEFAULT_SOURCE,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUSES,
    TERMINAL_STATUSES,
)
from termhist.remote_client import HistoryClient

logger = monitoring.logger

UNKNOWN_STATUS = "unknown"


def new_request_id() -> str:
    return uuid.uuid4().hex


def new_session_id() -> str:
    return uuid.uuid4().hex


class LifecycleManager:
    def __init__(self, client: HistoryClient, session_id: Optional[str] = None,
                 source: str = DEFAULT_SOURCE, strict: bool = False, max_cas_attempts: int = 3):
        self.client = client
        self.session_id = session_id or new_session_id()
        self.source = source
        self.strict = strict
        self.max_cas_attempts = max_cas_attempts

    @property
    def offline(self) -> bool:
        return self.client.offline

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    async def save_question(self, command: str) -> Optional[int]:
        """Persist a pending entry under a fresh request id. None when offline or on failure."""
        return await self.save_question_with_request_id(command, new_request_id())

    async def save_question_with_request_id(self, command: str, request_id: str,
                                            status: str = STATUS_PENDING) -> Optional[int]:
        """
        Same as save_question, but the caller owns the correlation key so a
        completion handler holding only ``request_id`` can find the entry.
        """
        if self.offline:
            return None
        if status not in STATUSES:
            logger.warning("Refusing to save entry with unknown status", extra={"status": status})
            return None
        metadata = {
            "status": status,
            "request_id": request_id,
            "session_id": self.session_id,
            "source": self.source,
        }
        try:
            entry_id = await self.client.save(command, None, metadata)
        except RemoteUnavailable as e:
            logger.warning("Saving question failed", extra={"request_id": request_id, "error": str(e)})
            monitoring.inc_transition(status, "error")
            return None
        monitoring.inc_transition(status, "ok")
        logger.debug("Question saved", extra={"entry_id": entry_id, "request_id": request_id, "status": status})
        return entry_id

    # ------------------------------------------------------------------
    # transitions by entry id
    # ------------------------------------------------------------------
    async def update_with_response(self, entry_id: int, response: str) -> bool:
        now = utcnow()
        return await self._transition(entry_id, {
            "response": response,
            "status": STATUS_COMPLETED,
            "updated_at": now,
            "completed_at": now,
        })

    async def update_status(self, entry_id: int, status: str) -> bool:
        return await self._transition(entry_id, {"status": status, "updated_at": utcnow()})

    async def update_with_response_and_status(self, entry_id: int, response: str, status: str) -> bool:
        if status not in TERMINAL_STATUSES:
            # a response only ever accompanies a terminal status
            logger.warning("Response update needs a terminal status", extra={"entry_id": entry_id, "status": status})
            return False
        now = utcnow()
        return await self._transition(entry_id, {
            "response": response,
            "status": status,
            "completed_at": now,
            "updated_at": now,
        })

    async def mark_as_cancelled(self, entry_id: int) -> bool:
        now = utcnow()
        return await self._transition(entry_id, {
            "status": STATUS_CANCELLED,
            "response": CANCELLED_RESPONSE,
            "updated_at": now,
            "completed_at": now,
        })

    # ------------------------------------------------------------------
    # transitions by request id
    # ------------------------------------------------------------------
    async def update_status_by_request_id(self, request_id: str, status: str) -> bool:
        """Overwrite status/updated_at of the most recent entry for ``request_id``."""
        entry = await self.get_entry_by_request_id(request_id)
        if entry is None:
            logger.info("No entry for request id", extra={"request_id": request_id, "status": status})
            return False
        return await self._transition(entry["id"], {"status": status, "updated_at": utcnow()}, current=entry)

    async def complete_by_request_id(self, request_id: str, response: str) -> bool:
        entry = await self.get_entry_by_request_id(request_id)
        if entry is None:
            return False
        return await self.update_with_response_and_status(entry["id"], response, STATUS_COMPLETED)

    async def cancel_by_request_id(self, request_id: str) -> bool:
        entry = await self.get_entry_by_request_id(request_id)
        if entry is None:
            return False
        return await self.mark_as_cancelled(entry["id"])

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    async def get_entry_by_request_id(self, request_id: str) -> Optional[Dict[str, Any]]:
        if self.offline or not request_id:
            return None
        try:
            return await self.client.query(request_id)
        except RemoteUnavailable as e:
            logger.warning("Request id lookup failed", extra={"request_id": request_id, "error": str(e)})
            return None

    async def get_status_by_request_id(self, request_id: str) -> str:
        entry = await self.get_entry_by_request_id(request_id)
        if entry is None:
            return UNKNOWN_STATUS
        return entry.get("status") or UNKNOWN_STATUS

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    async def _transition(self, entry_id, fields: Dict[str, Any],
                          current: Optional[Dict[str, Any]] = None) -> bool:
        if self.offline or entry_id is None:
            return False
        status = fields.get("status")
        if status not in STATUSES:
            logger.warning("Refusing unknown status", extra={"entry_id": entry_id, "status": status})
            monitoring.inc_transition(str(status), "rejected")
            return False

        try:
            if status == STATUS_PENDING:
                current = current or await self.client.get(entry_id)
                if current is None or current.get("status") in TERMINAL_STATUSES:
                    logger.warning("Refusing to move entry back to pending", extra={"entry_id": entry_id})
                    monitoring.inc_transition(status, "rejected")
                    return False
            if self.strict and status != STATUS_CANCELLED:
                ok = await self._guarded_write(entry_id, fields)
            else:
                ok = await self.client.update(entry_id, fields)
        except RemoteUnavailable as e:
            logger.warning("History update failed", extra={"entry_id": entry_id, "status": status, "error": str(e)})
            monitoring.inc_transition(status, "error")
            return False

        monitoring.inc_transition(status, "ok" if ok else "rejected")
        return ok

    async def _guarded_write(self, entry_id, fields: Dict[str, Any]) -> bool:
        for _ in range(self.max_cas_attempts):
            current = await self.client.get(entry_id)
            if current is None:
                return False
            if current.get("status") == STATUS_CANCELLED:
                logger.info("Entry already cancelled, dropping write",
                            extra={"entry_id": entry_id, "status": fields.get("status")})
                return False
            if await self.client.update(entry_id, fields, expected_version=current.get("version")):
                return True
        logger.warning("Giving up after version conflicts", extra={"entry_id": entry_id})
        return False
