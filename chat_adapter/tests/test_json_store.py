import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from chat_adapter.domain.conversation import Conversation
from chat_adapter.domain.exceptions import NotFoundError, StorageError
from chat_adapter.domain.models import ChatMessage, SamplingParameters
from chat_adapter.infrastructure.storage.json_store import JsonConversationStore, parse_conversation_id


def _conv(cid: str, updated_offset: int = 0, **kw) -> Conversation:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Conversation(
        id=cid,
        model=kw.get("model", "m"),
        created_at=now,
        updated_at=now + timedelta(minutes=updated_offset),
        parameters=SamplingParameters(0.5, 100, 0.9, 0.1, 0.2),
        messages=kw.get("messages", [ChatMessage("system", "S")]),
        metadata=kw.get("metadata", {"title": "t", "tags": ["a"], "custom": {"x": 1}}),
    )


def test_parse_conversation_id():
    assert parse_conversation_id("1") == 1
    assert parse_conversation_id("0") == 0
    assert parse_conversation_id("42") == 42
    assert parse_conversation_id("007") is None
    assert parse_conversation_id("3a") is None
    assert parse_conversation_id("-1") is None
    assert parse_conversation_id("") is None


@pytest.mark.asyncio
async def test_allocate_first_id_on_empty_store(tmp_path):
    store = JsonConversationStore(root=tmp_path / "missing")
    assert await store.allocate_next_id() == "1"
    assert (tmp_path / "missing" / "1.json").exists()


@pytest.mark.asyncio
async def test_allocate_ignores_non_numeric_and_leading_zero_names(tmp_path):
    root = tmp_path / "convos"
    root.mkdir()
    for name in ["3.json", "010.json", "7b.json", "notes.json", "12.txt"]:
        (root / name).write_text("{}", encoding="utf-8")
    store = JsonConversationStore(root=root)
    assert await store.allocate_next_id() == "4"


@pytest.mark.asyncio
async def test_concurrent_allocations_are_distinct(store):
    ids = await asyncio.gather(*(store.allocate_next_id() for _ in range(10)))
    assert sorted(ids, key=int) == [str(i) for i in range(1, 11)]


@pytest.mark.asyncio
async def test_write_read_round_trip(store):
    conv = _conv("1")
    await store.write(conv)
    loaded = await store.read("1")
    assert loaded == conv


@pytest.mark.asyncio
async def test_write_overwrites_wholesale(store):
    await store.write(_conv("1", messages=[ChatMessage("system", "a"), ChatMessage("user", "b")]))
    await store.write(_conv("1", messages=[]))
    loaded = await store.read("1")
    assert loaded.messages == []
    # 没有残留的临时文件
    assert [p.name for p in store.root.iterdir()] == ["1.json"]


@pytest.mark.asyncio
async def test_written_file_layout(store):
    await store.write(_conv("5"))
    data = json.loads((store.root / "5.json").read_text(encoding="utf-8"))
    assert data["id"] == "5"
    assert data["created_at"] == "2024-01-01T00:00:00Z"
    assert data["parameters"]["max_tokens"] == 100
    assert data["messages"] == [{"role": "system", "content": "S"}]
    assert data["metadata"]["custom"] == {"x": 1}


@pytest.mark.asyncio
async def test_read_missing_raises_not_found(store):
    with pytest.raises(NotFoundError) as exc:
        await store.read("99")
    assert exc.value.conversation_id == "99"


@pytest.mark.asyncio
async def test_read_malformed_raises_not_found(store):
    store.root.mkdir(parents=True)
    (store.root / "2.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(NotFoundError):
        await store.read("2")


@pytest.mark.asyncio
async def test_read_rejects_path_like_ids(store):
    with pytest.raises(NotFoundError):
        await store.read("../etc/passwd")


@pytest.mark.asyncio
async def test_list_sorted_by_updated_desc_and_skips_bad_files(store):
    await store.write(_conv("1", updated_offset=1))
    await store.write(_conv("2", updated_offset=5))
    await store.write(_conv("3", updated_offset=3))
    (store.root / "4.json").write_text("garbage", encoding="utf-8")
    (store.root / "5.json").write_text(json.dumps({"id": "5"}), encoding="utf-8")

    items = await store.list()
    assert [m.id for m in items] == ["2", "3", "1"]
    assert items[0].message_count == 1
    assert items[0].title == "t"
    assert items[0].tags == ["a"]
    assert await store.count() == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("parameters", [[1], "x", 3])
async def test_list_skips_file_with_non_object_parameters(store, parameters):
    await store.write(_conv("1"))
    bad = _conv("2").to_dict()
    bad["parameters"] = parameters
    (store.root / "2.json").write_text(json.dumps(bad), encoding="utf-8")

    items = await store.list()
    assert [m.id for m in items] == ["1"]
    with pytest.raises(NotFoundError):
        await store.read("2")


@pytest.mark.asyncio
async def test_list_on_missing_directory_is_empty(tmp_path):
    store = JsonConversationStore(root=tmp_path / "nothing")
    assert await store.list() == []


@pytest.mark.asyncio
async def test_delete(store):
    await store.write(_conv("1"))
    assert await store.delete("1") is True
    assert await store.delete("1") is False
    with pytest.raises(NotFoundError):
        await store.read("1")


@pytest.mark.asyncio
async def test_delete_wraps_os_errors(store, monkeypatch):
    await store.write(_conv("1"))

    def boom(self, *a, **kw):
        raise PermissionError("denied")

    monkeypatch.setattr("pathlib.Path.unlink", boom)
    with pytest.raises(StorageError) as exc:
        await store.delete("1")
    assert "denied" in exc.value.message


@pytest.mark.asyncio
async def test_write_wraps_os_errors(store, monkeypatch):
    def boom(*a, **kw):
        raise OSError("disk full")

    monkeypatch.setattr("chat_adapter.infrastructure.storage.json_store.os.replace", boom)
    with pytest.raises(StorageError) as exc:
        await store.write(_conv("1"))
    assert "disk full" in exc.value.message
