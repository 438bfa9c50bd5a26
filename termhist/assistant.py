# termhist/assistant.py
import asyncio
from typing import Awaitable, Callable, Dict, Optional

from termhist import monitoring
from termhist.db import utcnow
from termhist.engine import HistoryEngine
from termhist.lifecycle import UNKNOWN_STATUS, new_request_id
from termhist.models import CANCELLED_RESPONSE, STATUS_CANCELLED, STATUS_COMPLETED

logger = monitoring.logger

# AI model provider: command -> response text (may raise)
Provider = Callable[[str], Awaitable[str]]
# Shortcut matcher: command -> canned response, or None to ask the provider
Matcher = Callable[[str], Optional[str]]


class CommandAssistant:
    """
    Submit/cancel flow between the terminal front end and the history engine.

    1. submit: persist a pending entry under a fresh request id (local buffer
       if the remote store gave no id)
    2. consult the provider in a background task, unless the matcher answers
    3. record the response as completed, correlated by request id
    cancel() records a cancellation; it does not stop the provider call.
    """

    def __init__(self, engine: HistoryEngine, provider: Provider, matcher: Optional[Matcher] = None):
        self.engine = engine
        self.provider = provider
        self.matcher = matcher
        self._entries: Dict[str, Optional[int]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _make_request_id(self) -> str:
        return new_request_id()

    async def submit(self, command: str) -> str:
        request_id = self._make_request_id()
        entry_id = await self.engine.lifecycle.save_question_with_request_id(command, request_id)
        self._entries[request_id] = entry_id
        if entry_id is None and self.engine.local_buffer is not None:
            await asyncio.to_thread(
                self.engine.local_buffer.append,
                command,
                request_id,
                session_id=self.engine.session_id,
                source=self.engine.settings.source,
            )

        shortcut = self._match(command)
        if shortcut is not None:
            logger.debug("Matcher answered command", extra={"request_id": request_id})
            await self._finish(request_id, shortcut)
            return request_id

        task = asyncio.create_task(self._consult(request_id, command))
        self._tasks[request_id] = task
        task.add_done_callback(lambda _t, r=request_id: self._tasks.pop(r, None))
        return request_id

    def _match(self, command: str) -> Optional[str]:
        if self.matcher is None:
            return None
        try:
            return self.matcher(command)
        except Exception as e:
            logger.warning("Pattern matcher failed", extra={"error": str(e)})
            return None

    async def _consult(self, request_id: str, command: str) -> str:
        try:
            response = await self.provider(command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("AI provider failed", extra={"request_id": request_id, "error": str(e)})
            response = f"[Error] {e}"
        await self._finish(request_id, response)
        return response

    async def _finish(self, request_id: str, response: str):
        # later cancels correlate through the store or the buffer
        entry_id = self._entries.pop(request_id, None)
        if entry_id is not None:
            await self.engine.lifecycle.update_with_response_and_status(entry_id, response, STATUS_COMPLETED)
            return
        now = utcnow()
        await self._update_buffer(request_id, {
            "response": response,
            "status": STATUS_COMPLETED,
            "updated_at": now,
            "completed_at": now,
        })

    async def cancel(self, request_id: str) -> bool:
        if request_id in self._entries:
            entry_id = self._entries[request_id]
            if entry_id is not None:
                return await self.engine.lifecycle.mark_as_cancelled(entry_id)
            return await self._cancel_buffered(request_id)
        # finished or not submitted here
        if await self.engine.lifecycle.cancel_by_request_id(request_id):
            return True
        return await self._cancel_buffered(request_id)

    async def _cancel_buffered(self, request_id: str) -> bool:
        now = utcnow()
        return await self._update_buffer(request_id, {
            "response": CANCELLED_RESPONSE,
            "status": STATUS_CANCELLED,
            "updated_at": now,
            "completed_at": now,
        })

    async def _update_buffer(self, request_id: str, fields) -> bool:
        if self.engine.local_buffer is None:
            return False
        return await asyncio.to_thread(self.engine.local_buffer.update_by_request_id, request_id, fields)

    async def wait(self, request_id: str) -> Optional[str]:
        """Wait for a still-running provider task of ``request_id``; its response, or None if there is none."""
        task = self._tasks.get(request_id)
        if task is None:
            return None
        return await task

    async def drain(self):
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def status(self, request_id: str) -> str:
        status = await self.engine.lifecycle.get_status_by_request_id(request_id)
        if status == UNKNOWN_STATUS and self.engine.local_buffer is not None:
            entry = await asyncio.to_thread(self.engine.local_buffer.get_by_request_id, request_id)
            if entry:
                return entry["status"]
        return status
