import asyncio

from conftest import FlakyClient
from termhist.assistant import CommandAssistant
from termhist.config import EngineSettings
from termhist.engine import HistoryEngine
from termhist.remote_client import RemoteHistoryClient


def run(coro):
    return asyncio.run(coro)


def online_engine(remote_config, **settings):
    return HistoryEngine(config=remote_config, settings=EngineSettings(**settings))


async def echo(command):
    return f"answer to {command}"


def test_submit_records_completed_response(remote, remote_config):
    engine = online_engine(remote_config)

    async def scenario():
        await engine.initialize()
        assistant = CommandAssistant(engine, echo)
        request_id = await assistant.submit("how do I list files")
        response = await assistant.wait(request_id)
        return request_id, response, await assistant.status(request_id)

    request_id, response, status = run(scenario())
    assert response == "answer to how do I list files"
    assert status == "completed"
    entry = run(remote.query(request_id))
    assert entry["response"] == response
    assert entry["completed_at"] is not None


def test_provider_error_is_recorded(remote, remote_config):
    engine = online_engine(remote_config)

    async def broken(command):
        raise RuntimeError("boom")

    async def scenario():
        await engine.initialize()
        assistant = CommandAssistant(engine, broken)
        request_id = await assistant.submit("explode")
        await assistant.wait(request_id)
        return request_id

    request_id = run(scenario())
    entry = run(remote.query(request_id))
    assert entry["status"] == "completed"
    assert entry["response"] == "[Error] boom"


def test_matcher_shortcut_skips_provider(remote, remote_config):
    engine = online_engine(remote_config)
    called = []

    async def provider(command):
        called.append(command)
        return "from provider"

    def matcher(command):
        return "ls -la" if command == "list files" else None

    async def scenario():
        await engine.initialize()
        assistant = CommandAssistant(engine, provider, matcher=matcher)
        shortcut = await assistant.submit("list files")
        other = await assistant.submit("something else")
        await assistant.drain()
        return shortcut, other

    shortcut, other = run(scenario())
    assert called == ["something else"]
    assert run(remote.query(shortcut))["response"] == "ls -la"
    assert run(remote.query(other))["response"] == "from provider"


def cancel_while_thinking(remote_config, strict):
    engine = online_engine(remote_config, strict_cancellation=strict)

    async def scenario():
        gate = asyncio.Event()

        async def slow(command):
            await gate.wait()
            return "late answer"

        await engine.initialize()
        assistant = CommandAssistant(engine, slow)
        request_id = await assistant.submit("docker compose up")
        cancelled = await assistant.cancel(request_id)
        gate.set()
        await assistant.wait(request_id)
        return request_id, cancelled

    return run(scenario())


def test_cancel_is_advisory_late_response_wins(remote, remote_config):
    request_id, cancelled = cancel_while_thinking(remote_config, strict=False)
    assert cancelled is True
    entry = run(remote.query(request_id))
    assert entry["status"] == "completed"
    assert entry["response"] == "late answer"


def test_strict_mode_keeps_cancellation(remote, remote_config):
    request_id, cancelled = cancel_while_thinking(remote_config, strict=True)
    assert cancelled is True
    entry = run(remote.query(request_id))
    assert entry["status"] == "cancelled"
    assert entry["response"] == "[Cancelled by user]"


def test_cancel_unknown_request_correlates_through_store(remote, remote_config):
    engine = online_engine(remote_config)

    async def scenario():
        await engine.initialize()
        await engine.lifecycle.save_question_with_request_id("tail -f log", "from-elsewhere")
        assistant = CommandAssistant(engine, echo)
        return await assistant.cancel("from-elsewhere"), await assistant.cancel("never-seen")

    assert run(scenario()) == (True, False)
    assert run(remote.query("from-elsewhere"))["status"] == "cancelled"


def test_offline_submit_is_buffered_then_synced(remote, remote_config, local_buffer):
    offline = HistoryEngine(local_buffer=local_buffer, use_config_gate=False)

    async def offline_session():
        gate = asyncio.Event()

        async def provider(command):
            if command == "changed my mind":
                await gate.wait()
            return await echo(command)

        await offline.initialize()
        assistant = CommandAssistant(offline, provider)
        done = await assistant.submit("offline question")
        await assistant.wait(done)
        dropped = await assistant.submit("changed my mind")
        await assistant.cancel(dropped)
        gate.set()
        await assistant.drain()
        return done, dropped, await assistant.status(done)

    done, dropped, status = run(offline_session())
    assert status == "completed"
    assert local_buffer.get_by_request_id(done)["response"] == "answer to offline question"
    # the buffered cancel is advisory too; the answer arrived afterwards
    assert local_buffer.get_by_request_id(dropped)["status"] == "completed"
    assert run(remote.query(done)) is None

    online = HistoryEngine(config=remote_config, local_buffer=local_buffer)

    async def online_session():
        await online.initialize()
        report = await online.sync_local_buffer()
        await online.close()
        return report

    report = run(online_session())
    assert len(report.synced) == 2
    pushed = run(remote.query(done))
    assert pushed["status"] == "completed"
    assert pushed["response"] == "answer to offline question"


def test_finished_requests_are_released(remote, remote_config):
    engine = online_engine(remote_config)

    async def scenario():
        await engine.initialize()
        assistant = CommandAssistant(engine, echo, matcher=lambda c: "pwd" if c == "where am I" else None)
        request_id = await assistant.submit("list files")
        task = assistant._tasks[request_id]
        await assistant.submit("where am I")
        await asyncio.wait({task})
        await asyncio.sleep(0)
        return assistant, request_id

    assistant, request_id = run(scenario())
    assert assistant._tasks == {}
    assert assistant._entries == {}
    assert run(remote.query(request_id))["status"] == "completed"


def test_cancel_after_completion_still_correlates(remote, remote_config):
    engine = online_engine(remote_config)

    async def scenario():
        await engine.initialize()
        assistant = CommandAssistant(engine, echo)
        request_id = await assistant.submit("ls")
        await assistant.wait(request_id)
        return request_id, await assistant.cancel(request_id)

    request_id, cancelled = run(scenario())
    assert cancelled is True
    assert run(remote.query(request_id))["status"] == "cancelled"


def buffered_then_resolved(remote_config, local_buffer, resolve):
    """
    Submit while the remote save fails (entry lands in the local buffer), sync
    while the provider is still thinking, then resolve and sync again.
    """
    inner = RemoteHistoryClient(remote_config, machine_id="test-machine")
    client = FlakyClient(inner, failing_commands={"docker compose up"}, fail_times=1)
    engine = HistoryEngine(client=client, local_buffer=local_buffer)

    async def scenario():
        gate = asyncio.Event()

        async def slow(command):
            await gate.wait()
            return "late answer"

        await engine.initialize()
        assistant = CommandAssistant(engine, slow)
        request_id = await assistant.submit("docker compose up")
        first = await engine.sync_local_buffer()
        await resolve(assistant, request_id, gate)
        second = await engine.sync_local_buffer()
        gate.set()
        await assistant.drain()
        await engine.stop_periodic_sync()
        return request_id, first, second

    return run(scenario())


def remote_rows(remote, request_id):
    return run(remote.execute(
        "SELECT status, response FROM history_user WHERE request_id = :rid", {"rid": request_id}
    ))


def test_buffered_completion_reaches_remote_after_earlier_push(remote, remote_config, local_buffer):
    async def complete(assistant, request_id, gate):
        gate.set()
        await assistant.wait(request_id)

    request_id, first, second = buffered_then_resolved(remote_config, local_buffer, complete)

    assert len(first.synced) == 1
    assert len(second.synced) == 1
    assert remote_rows(remote, request_id) == [{"status": "completed", "response": "late answer"}]
    assert local_buffer.unsynced() == []


def test_buffered_cancel_reaches_remote_after_earlier_push(remote, remote_config, local_buffer):
    async def cancel(assistant, request_id, gate):
        assert await assistant.cancel(request_id) is True

    request_id, _, second = buffered_then_resolved(remote_config, local_buffer, cancel)

    assert len(second.synced) == 1
    assert remote_rows(remote, request_id) == [{"status": "cancelled", "response": "[Cancelled by user]"}]
