import asyncio

from termhist.errors import RemoteUnavailable
from termhist.lifecycle import LifecycleManager
from termhist.users import UserResolver


def run(coro):
    return asyncio.run(coro)


def test_known_user_scopes_client(remote):
    alice = run(remote.create_user("alice"))
    resolver = UserResolver(remote)

    info = run(resolver.resolve_user("alice"))
    assert info["id"] == alice["id"]
    assert remote.scope == alice["id"]
    assert resolver.scope == alice["id"]

    entry_id = run(LifecycleManager(remote).save_question("ls"))
    assert run(remote.get(entry_id))["user_id"] == alice["id"]


def test_unknown_user_falls_back_to_default_scope(remote):
    resolver = UserResolver(remote)
    assert run(resolver.resolve_user("unknown-user")) is None
    assert remote.scope == "default"

    lm = LifecycleManager(remote)
    entry_id = run(lm.save_question_with_request_id("ls", "after-unknown"))
    assert entry_id is not None
    assert run(lm.get_status_by_request_id("after-unknown")) == "pending"


def test_resolution_is_cached(remote):
    run(remote.create_user("carol"))
    resolver = UserResolver(remote)
    calls = []
    original = remote.find_user

    async def counting(username):
        calls.append(username)
        return await original(username)

    remote.find_user = counting
    run(resolver.resolve_user("carol"))
    run(resolver.resolve_user("carol"))
    assert calls == ["carol"]


def test_store_failure_during_lookup_does_not_raise(remote):
    async def broken(username):
        raise RemoteUnavailable("find_user", "timeout")

    remote.find_user = broken
    resolver = UserResolver(remote)
    assert run(resolver.resolve_user("alice")) is None
    assert remote.scope == "default"


def test_empty_username_uses_default_scope(remote):
    remote.set_scope("someone")
    assert run(UserResolver(remote).resolve_user(None)) is None
    assert remote.scope == "default"
