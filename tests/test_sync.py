"""
Sync engine: fail-fast batch push, opt-in per-item isolation, search and
recent-history reads.
"""
import asyncio

from conftest import FlakyClient
from termhist.lifecycle import LifecycleManager
from termhist.remote_client import OfflineHistoryClient
from termhist.sync import SyncEngine


def run(coro):
    return asyncio.run(coro)


def local_entries(*commands):
    return [
        {"command": c, "response": None, "status": "pending", "request_id": f"local-{c}", "synced": False}
        for c in commands
    ]


def test_sync_pushes_and_tags_entries(remote):
    engine = SyncEngine(remote)
    entries = local_entries("a", "b")
    report = run(engine.sync_history(entries))

    assert not report.aborted
    assert [e["synced"] for e in entries] == [True, True]
    assert all(e["synced_at"] for e in entries)
    stored = run(remote.query("local-a"))
    assert stored["synced"] is True
    assert stored["synced_at"] is not None
    assert stored["source"] == "ink-interface"


def test_sync_is_fail_fast(remote):
    flaky = FlakyClient(remote, failing_commands={"b"})
    engine = SyncEngine(flaky)
    a, b, c = entries = local_entries("a", "b", "c")

    report = run(engine.sync_history(entries))

    assert a["synced"] is True
    assert b["synced"] is False
    assert c["synced"] is False
    # c was never attempted
    assert flaky.attempted == ["a", "b"]
    assert report.aborted
    assert report.error.index == 1
    assert report.error.code == "E_SYNC_ABORTED"
    assert report.failed == [b]
    assert report.skipped == [c]
    # nothing rolled back
    assert run(remote.query("local-a")) is not None
    assert run(remote.query("local-c")) is None


def test_sync_with_isolation_attempts_everything(remote):
    flaky = FlakyClient(remote, failing_commands={"b"})
    engine = SyncEngine(flaky, isolate_failures=True)
    a, b, c = entries = local_entries("a", "b", "c")

    report = run(engine.sync_history(entries))

    assert flaky.attempted == ["a", "b", "c"]
    assert (a["synced"], b["synced"], c["synced"]) == (True, False, True)
    assert not report.aborted
    assert report.failed == [b]


def test_sync_offline_is_noop():
    engine = SyncEngine(OfflineHistoryClient())
    entries = local_entries("a")
    report = run(engine.sync_history(entries))
    assert report.synced == [] and not report.aborted
    assert entries[0]["synced"] is False
    assert run(engine.search_history("a")) == []
    assert run(engine.get_history(5)) == []


def test_search_history_matches_command_or_response(remote):
    lm = LifecycleManager(remote)

    async def seed():
        for i in range(12):
            await lm.save_question(f"docker run image-{i}")
        entry_id = await lm.save_question("why is my container down")
        await lm.update_with_response(entry_id, "Run `Docker logs` first")
        await lm.save_question("git rebase -i")

    run(seed())
    engine = SyncEngine(remote)
    results = run(engine.search_history("docker", 10))

    assert len(results) == 10
    assert "git rebase -i" not in results
    assert all(isinstance(r, str) for r in results)
    # newest first, so the response match is included
    assert results[0] == "why is my container down"


def test_search_history_is_user_scoped(remote):
    lm = LifecycleManager(remote)
    remote.set_scope("user-a")
    run(lm.save_question("docker ps"))
    remote.set_scope("user-b")
    run(lm.save_question("docker images"))

    assert run(SyncEngine(remote).search_history("docker", 10)) == ["docker images"]


def test_get_history_newest_first(remote):
    lm = LifecycleManager(remote)

    async def seed():
        for c in ("one", "two", "three"):
            await lm.save_question(c)

    run(seed())
    entries = run(SyncEngine(remote).get_history(2))
    assert [e["command"] for e in entries] == ["three", "two"]


def rows_for(remote, request_id):
    return run(remote.execute(
        "SELECT status, response FROM history_user WHERE request_id = :rid", {"rid": request_id}
    ))


def test_sync_again_updates_the_same_remote_row(remote):
    engine = SyncEngine(remote)
    (entry,) = local_entries("deploy")
    run(engine.sync_history([entry]))
    first_id = entry["remote_id"]

    entry.update({"status": "completed", "response": "deployed", "completed_at": "2026-01-01T00:00:00Z"})
    report = run(engine.sync_history([entry]))

    assert report.synced == [entry]
    assert entry["remote_id"] == first_id
    assert rows_for(remote, "local-deploy") == [{"status": "completed", "response": "deployed"}]
    assert run(remote.query("local-deploy"))["synced"] is True


def test_sync_never_moves_remote_entry_back_to_pending(remote):
    lm = LifecycleManager(remote)
    run(lm.save_question_with_request_id("deploy", "local-deploy"))
    run(lm.cancel_by_request_id("local-deploy"))

    (entry,) = local_entries("deploy")
    report = run(SyncEngine(remote).sync_history([entry]))

    assert len(report.synced) == 1
    stored = run(remote.query("local-deploy"))
    assert stored["status"] == "cancelled"
    assert stored["response"] == "[Cancelled by user]"
    assert stored["synced"] is True
