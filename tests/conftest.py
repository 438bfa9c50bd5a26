"""
Shared fixtures. Every test gets disposable SQLite files under tmp_path: one
playing the remote store, one playing the local buffer.
"""
import asyncio

import pytest

from termhist.config import RemoteConfig
from termhist.errors import RemoteUnavailable
from termhist.local_buffer import LocalHistoryBuffer
from termhist.remote_client import RemoteHistoryClient


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch, tmp_path):
    """Keep the developer's real config/env out of the tests."""
    for var in ("TERMHIST_DB_URL", "TERMHIST_DB_TOKEN", "TURSO_DATABASE_URL", "TURSO_AUTH_TOKEN",
                "TERMHIST_USERNAME", "TERMHIST_LOCAL_DB", "TERMHIST_SYNC_INTERVAL",
                "TERMHIST_STRICT_CANCEL", "TERMHIST_SYNC_ISOLATE", "TERMHIST_SOURCE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TERMHIST_CONFIG", str(tmp_path / "missing-config.json"))
    yield


@pytest.fixture
def remote_config(tmp_path):
    return RemoteConfig(url=f"sqlite:///{tmp_path / 'remote.db'}", token="test-token")


@pytest.fixture
def remote(remote_config):
    client = RemoteHistoryClient(remote_config, machine_id="test-machine")
    asyncio.run(client.connect())
    yield client
    asyncio.run(client.close())


@pytest.fixture
def local_buffer(tmp_path):
    buf = LocalHistoryBuffer(f"sqlite:///{tmp_path / 'local' / 'buffer.db'}", machine_id="test-machine")
    yield buf
    buf.close()


class GatedClient:
    """
    Wraps a real client and holds each update until the gate registered for
    its status is opened. Records the order in which updates committed.
    """

    def __init__(self, inner):
        self.inner = inner
        self.gates = {}
        self.commits = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def update(self, entry_id, fields, expected_version=None):
        gate = self.gates.get(fields.get("status"))
        if gate is not None:
            await gate.wait()
        ok = await self.inner.update(entry_id, fields, expected_version)
        if ok:
            self.commits.append(fields.get("status"))
        return ok


class FlakyClient:
    """
    Wraps a real client; save() fails for the listed commands, on every
    attempt or only on the first ``fail_times`` attempts per command.
    """

    def __init__(self, inner, failing_commands, fail_times=None):
        self.inner = inner
        self.failing = set(failing_commands)
        self.fail_times = fail_times
        self.attempted = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def save(self, command, response, metadata):
        self.attempted.append(command)
        if command in self.failing and (
            self.fail_times is None or self.attempted.count(command) <= self.fail_times
        ):
            raise RemoteUnavailable("save", "connection reset")
        return await self.inner.save(command, response, metadata)
