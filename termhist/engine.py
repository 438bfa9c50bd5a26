# termhist/engine.py
"""
HistoryEngine: the one object a front end constructs.

It owns the remote client (real or offline, chosen once in initialize()),
the user resolver, the lifecycle manager, the sync engine and the optional
local buffer. Initialization never raises: a missing config, a client that
cannot be built or a failed/timed-out handshake all end in offline mode.
"""

import asyncio
import contextlib
from typing import Optional

from termhist import monitoring
from termhist.config import EngineSettings, RemoteConfig, load_remote_config, load_settings
from termhist.errors import ConfigMissing
from termhist.lifecycle import LifecycleManager, new_session_id
from termhist.local_buffer import LocalHistoryBuffer
from termhist.remote_client import HistoryClient, OfflineHistoryClient, RemoteHistoryClient
from termhist.sync import SyncEngine, SyncReport
from termhist.users import UserResolver

logger = monitoring.logger

DEFAULT_HANDSHAKE_TIMEOUT = 5.0


class HistoryEngine:
    def __init__(self, config: Optional[RemoteConfig] = None,
                 settings: Optional[EngineSettings] = None,
                 client: Optional[HistoryClient] = None,
                 local_buffer: Optional[LocalHistoryBuffer] = None,
                 local_buffer_url: Optional[str] = None,
                 session_id: Optional[str] = None,
                 use_config_gate: bool = True):
        self.settings = settings or EngineSettings()
        self.session_id = session_id or new_session_id()
        self.local_buffer = local_buffer
        self._config = config
        self._injected_client = client
        self._local_buffer_url = local_buffer_url
        self._use_config_gate = use_config_gate
        self._sync_task: Optional[asyncio.Task] = None
        self.initialized = False

        self.client = OfflineHistoryClient()
        self.users = UserResolver(self.client)
        self._build()

    @classmethod
    def from_environment(cls) -> "HistoryEngine":
        """Engine configured from .env / environment / config file; call initialize() before use."""
        settings = load_settings()
        return cls(settings=settings, local_buffer_url=settings.local_db_url)

    @property
    def offline(self) -> bool:
        return self.client.offline

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._lifecycle

    @property
    def sync(self) -> SyncEngine:
        return self._sync

    def _build(self):
        self._lifecycle = LifecycleManager(
            self.client,
            session_id=self.session_id,
            source=self.settings.source,
            strict=self.settings.strict_cancellation,
        )
        self._sync = SyncEngine(
            self.client,
            source=self.settings.source,
            isolate_failures=self.settings.isolate_sync_failures,
        )

    # ------------------------------------------------------------------
    # startup / shutdown
    # ------------------------------------------------------------------
    async def initialize(self) -> bool:
        """Connect (or fall back to offline) and resolve the user. Returns True when online."""
        self._open_local_buffer()
        client = await self._connect()

        self.client = client
        self.users = UserResolver(client)
        if not client.offline:
            await self.users.resolve_user(self.settings.username)
        self._build()
        self.initialized = True

        monitoring.set_offline(client.offline)
        logger.info("History engine initialized", extra={
            "offline": client.offline,
            "user_scope": client.scope,
            "session_id": self.session_id,
        })
        return not client.offline

    async def _connect(self):
        client = self._injected_client
        if client is None:
            config = self._config
            if config is None:
                if not self._use_config_gate:
                    return OfflineHistoryClient()
                try:
                    config = load_remote_config()
                except ConfigMissing as e:
                    logger.info("Remote history not configured, running offline",
                                extra={"error_code": e.code, "reason": str(e)})
                    return OfflineHistoryClient()
            client = RemoteHistoryClient(config)

        if client.offline:
            return client

        timeout = getattr(getattr(client, "config", None), "handshake_timeout", DEFAULT_HANDSHAKE_TIMEOUT)
        try:
            await asyncio.wait_for(client.connect(), timeout=timeout)
        except Exception as e:
            logger.warning("Remote history unreachable, running offline",
                           extra={"error": str(e) or type(e).__name__})
            await self._close_quietly(client)
            return OfflineHistoryClient()
        return client

    def _open_local_buffer(self):
        if self.local_buffer is not None or not self._local_buffer_url:
            return
        try:
            self.local_buffer = LocalHistoryBuffer(self._local_buffer_url)
        except Exception as e:
            logger.warning("Local history buffer unavailable", extra={"url": self._local_buffer_url, "error": str(e)})
            self.local_buffer = None

    async def _close_quietly(self, client):
        try:
            await client.close()
        except Exception as e:
            logger.debug("Closing history client failed", extra={"error": str(e)})

    async def resolve_user(self, username: Optional[str]):
        self.settings.username = username
        return await self.users.resolve_user(username)

    async def close(self):
        await self.stop_periodic_sync()
        await self._close_quietly(self.client)
        if self.local_buffer is not None:
            self.local_buffer.close()

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------
    async def sync_local_buffer(self, limit: int = 100) -> SyncReport:
        """Push buffered local-only entries and flag the pushed ones as synced."""
        if self.local_buffer is None or self.offline:
            return SyncReport()
        entries = await asyncio.to_thread(self.local_buffer.unsynced, limit)
        if not entries:
            return SyncReport()
        report = await self.sync.sync_history(entries)
        await asyncio.to_thread(self.local_buffer.mark_synced, report.synced)
        return report

    def start_periodic_sync(self, interval: Optional[float] = None) -> Optional[asyncio.Task]:
        interval = self.settings.sync_interval if interval is None else interval
        if interval <= 0 or self._sync_task is not None:
            return self._sync_task
        self._sync_task = asyncio.create_task(self._periodic_sync(interval))
        return self._sync_task

    async def stop_periodic_sync(self):
        task, self._sync_task = self._sync_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _periodic_sync(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_local_buffer()
            except Exception:
                logger.exception("Periodic history sync failed")
