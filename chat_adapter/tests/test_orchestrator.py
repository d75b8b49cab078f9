import asyncio

import pytest

from chat_adapter.domain.exceptions import (
    ChatCancelledError,
    ChatTimeoutError,
    NetworkError,
    NotFoundError,
    StorageError,
)
from chat_adapter.domain.models import SamplingParameters
from chat_adapter.engine.manager import CreateConversationArgs
from chat_adapter.tests.conftest import SettingsStub, StubProvider, make_orchestrator


def _roles(conv):
    return [(m.role, m.content) for m in conv.messages]


@pytest.mark.asyncio
async def test_chat_turn_appends_both_messages(manager):
    conv = await manager.create(CreateConversationArgs(model="m", system_prompt="S"))
    provider = StubProvider(["He", "llo"])
    orch = make_orchestrator(manager, provider)

    text = await orch.chat(conv.id, "hi")

    assert text == "Hello"
    loaded = await manager.get(conv.id)
    assert _roles(loaded) == [("system", "S"), ("user", "hi"), ("assistant", "Hello")]
    sent = provider.requests[0]
    assert sent.model == "m"
    assert [(m.role, m.content) for m in sent.messages] == [("system", "S"), ("user", "hi")]
    assert orch.active_tasks == []


@pytest.mark.asyncio
async def test_parameters_resolved_per_field(manager):
    conv = await manager.create(
        CreateConversationArgs(parameters=SamplingParameters(temperature=0.2, top_p=0.5))
    )
    provider = StubProvider(["ok"])
    orch = make_orchestrator(manager, provider)

    await orch.chat(conv.id, "hi", overrides=SamplingParameters(top_p=0.9, max_tokens=64))

    params = provider.requests[0].parameters
    assert params.temperature == 0.2
    assert params.top_p == 0.9
    assert params.max_tokens == 64
    assert params.frequency_penalty == 0.0
    assert params.presence_penalty == 0.0


@pytest.mark.asyncio
async def test_progress_sequence(manager):
    conv = await manager.create(CreateConversationArgs())
    events = []
    orch = make_orchestrator(manager, StubProvider(["x"] * 60))

    await orch.chat(conv.id, "hi", report_progress=events.append)

    progress = [e["progress"] for e in events]
    assert all(e["total"] == 100 for e in events)
    assert progress[0] == 0
    assert progress[1:10] == list(range(31, 40))
    assert progress[10:18] == [40, 45, 50, 55, 60, 65, 70, 75]
    # 计数器到 80 后不再增长，流结束后补发 80，落盘后 100
    assert progress[18:] == [80, 80, 100]


@pytest.mark.asyncio
async def test_async_progress_reporter(manager):
    conv = await manager.create(CreateConversationArgs())
    seen = []

    async def report(event):
        seen.append(event["progress"])

    await make_orchestrator(manager, StubProvider(["a", "b"])).chat(conv.id, "hi", report_progress=report)
    assert seen == [0, 31, 32, 80, 100]


@pytest.mark.asyncio
async def test_missing_conversation_never_calls_remote(manager):
    provider = StubProvider(["x"])
    orch = make_orchestrator(manager, provider)
    with pytest.raises(NotFoundError):
        await orch.chat("77", "hi")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_user_append_failure_aborts_before_remote(manager, store, monkeypatch):
    conv = await manager.create(CreateConversationArgs())
    provider = StubProvider(["x"])

    async def fail(c):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "write", fail)
    with pytest.raises(StorageError):
        await make_orchestrator(manager, provider).chat(conv.id, "hi")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_stream_failure_discards_partial_output(manager):
    conv = await manager.create(CreateConversationArgs(system_prompt="S"))
    provider = StubProvider(["par", "tial", "never"], fail_after=2, error=NetworkError("connection reset"))

    with pytest.raises(NetworkError):
        await make_orchestrator(manager, provider).chat(conv.id, "hi")

    loaded = await manager.get(conv.id)
    assert _roles(loaded) == [("system", "S"), ("user", "hi")]


@pytest.mark.asyncio
async def test_timeout_discards_partial_output(manager):
    conv = await manager.create(CreateConversationArgs())
    settings = SettingsStub()
    settings.chat_timeout = 0.05
    provider = StubProvider(["a", "b", "c"], hang_after=1)

    with pytest.raises(ChatTimeoutError) as exc:
        await make_orchestrator(manager, provider, settings).chat(conv.id, "hi")

    assert not isinstance(exc.value, ChatCancelledError)
    loaded = await manager.get(conv.id)
    assert [m.role for m in loaded.messages] == ["user"]


@pytest.mark.asyncio
async def test_explicit_cancel(manager):
    conv = await manager.create(CreateConversationArgs())
    provider = StubProvider(["a", "b"], hang_after=1)
    orch = make_orchestrator(manager, provider)

    turn = asyncio.create_task(orch.chat(conv.id, "hi"))
    await asyncio.wait_for(provider.started.wait(), timeout=1)
    assert orch.cancel(conv.id) == 1

    with pytest.raises(ChatCancelledError):
        await turn
    loaded = await manager.get(conv.id)
    assert [m.role for m in loaded.messages] == ["user"]
    assert orch.active_tasks == []


@pytest.mark.asyncio
async def test_assistant_append_failure_is_error(manager, store, monkeypatch):
    conv = await manager.create(CreateConversationArgs())
    calls = {"n": 0}
    real_write = store.write

    async def flaky(c):
        calls["n"] += 1
        if calls["n"] == 2:
            raise StorageError("disk full")
        await real_write(c)

    monkeypatch.setattr(store, "write", flaky)
    with pytest.raises(StorageError):
        await make_orchestrator(manager, StubProvider(["ok"])).chat(conv.id, "hi")

    loaded = await manager.get(conv.id)
    assert [m.role for m in loaded.messages] == ["user"]


@pytest.mark.asyncio
async def test_turns_on_different_conversations_run_concurrently(manager):
    a = await manager.create(CreateConversationArgs())
    b = await manager.create(CreateConversationArgs())
    orch = make_orchestrator(manager, StubProvider(["x", "y"]))

    results = await asyncio.gather(orch.chat(a.id, "one"), orch.chat(b.id, "two"))
    assert results == ["xy", "xy"]
    assert [m.content for m in (await manager.get(a.id)).messages] == ["one", "xy"]
    assert [m.content for m in (await manager.get(b.id)).messages] == ["two", "xy"]
