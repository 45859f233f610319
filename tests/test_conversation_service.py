"""Tests for ConversationService — index/record persistence and the bounded cache."""

import asyncio
from unittest.mock import patch

import pytest

from convomem.conversations.models import Message
from convomem.conversations.service import (
    ConversationService,
    ServiceState,
    generate_title,
    is_placeholder_title,
    placeholder_title,
)


def _messages(count: int, prefix: str = "message") -> list[dict[str, str]]:
    roles = ("user", "assistant")
    return [{"role": roles[i % 2], "content": f"{prefix} {i}"} for i in range(count)]


async def _fresh_service(records) -> ConversationService:
    s = ConversationService(records, cleanup_interval_seconds=0)
    await s.initialize()
    return s


# -- initialize ----------------------------------------------------------------


async def test_initialize_is_idempotent(records) -> None:
    first = await _fresh_service(records)
    await first.create_conversation(_messages(2))

    s = ConversationService(records, cleanup_interval_seconds=0)
    await s.initialize()
    once = [c.id for c in await s.get_all_conversations()]
    await s.initialize()
    twice = [c.id for c in await s.get_all_conversations()]

    assert once == twice
    assert s.state is ServiceState.INITIALIZED
    # Only the two explicit initialize() calls on distinct instances hit the index
    assert records.calls["load_index"] == 2


async def test_concurrent_first_calls_load_index_once(file_records) -> None:
    first = await _fresh_service(file_records)
    conversation_id = await first.create_conversation(_messages(2))
    await first.destroy()

    s = ConversationService(file_records, cleanup_interval_seconds=0)
    with patch.object(file_records, "load_index", wraps=file_records.load_index) as load_index:
        listed = await asyncio.gather(
            s.get_all_conversations(),
            s.get_all_conversations(),
            s.initialize(),
        )

    assert [c.id for c in listed[0]] == [conversation_id]
    assert [c.id for c in listed[1]] == [conversation_id]
    assert load_index.await_count == 1
    assert [c.id for c in await s.get_all_conversations()] == [conversation_id]
    await s.destroy()


async def test_load_failure_yields_empty_list(records) -> None:
    records.fail_reads = True
    s = ConversationService(records, cleanup_interval_seconds=0)
    await s.initialize()

    assert await s.get_all_conversations() == []
    assert s.state is ServiceState.INITIALIZED


async def test_malformed_index_entries_are_skipped(records) -> None:
    records.index = [
        {"id": "1", "title": "Good", "created_at": "2025-01-01T00:00:00+00:00",
         "updated_at": "2025-01-01T00:00:00+00:00", "message_count": 0},
        {"title": "no id"},
    ]
    s = await _fresh_service(records)

    conversations = await s.get_all_conversations()
    assert [c.id for c in conversations] == ["1"]


# -- create_conversation -------------------------------------------------------


async def test_create_writes_record_and_index(service: ConversationService, records) -> None:
    conversation_id = await service.create_conversation(_messages(3))

    listed = await service.get_all_conversations()
    assert len(listed) == 1
    assert listed[0].id == conversation_id
    assert listed[0].message_count == 3
    assert listed[0].messages == []

    conversation = await service.get_conversation(conversation_id)
    assert conversation is not None
    assert len(conversation.messages) == 3

    assert conversation_id in records.records
    assert records.index[0]["id"] == conversation_id
    assert records.index[0]["message_count"] == 3


async def test_create_sets_current_conversation(service: ConversationService) -> None:
    conversation_id = await service.create_conversation(_messages(1))
    assert service.current_conversation_id == conversation_id


async def test_ids_increase_monotonically(service: ConversationService) -> None:
    ids = [await service.create_conversation(_messages(1)) for _ in range(5)]
    numeric = [int(i) for i in ids]
    assert numeric == sorted(numeric)
    assert len(set(numeric)) == 5


async def test_newest_conversation_listed_first(service: ConversationService) -> None:
    first = await service.create_conversation(_messages(1, "first"))
    second = await service.create_conversation(_messages(1, "second"))

    listed = await service.get_all_conversations()
    assert [c.id for c in listed] == [second, first]


async def test_creating_sixty_keeps_newest_fifty(service: ConversationService, records) -> None:
    ids = [await service.create_conversation(_messages(1, f"chat {n}")) for n in range(60)]

    listed = await service.get_all_conversations()
    assert len(listed) == 50
    listed_ids = {c.id for c in listed}
    assert listed_ids == set(ids[10:])
    # Dropped conversations lose their record files too
    for dropped in ids[:10]:
        assert dropped not in records.records
    assert len(records.index) == 50


async def test_create_survives_write_failure(service: ConversationService, records) -> None:
    records.fail_writes = True
    conversation_id = await service.create_conversation(_messages(2))

    listed = await service.get_all_conversations()
    assert [c.id for c in listed] == [conversation_id]
    conversation = await service.get_conversation(conversation_id)
    assert len(conversation.messages) == 2


async def test_create_accepts_message_models(service: ConversationService) -> None:
    conversation_id = await service.create_conversation(
        [Message(role="user", content="typed message", usage={"input_tokens": 4})]
    )
    conversation = await service.get_conversation(conversation_id)
    assert conversation.messages[0].usage == {"input_tokens": 4}


# -- titles --------------------------------------------------------------------


def test_title_from_first_user_message() -> None:
    title = generate_title(
        [Message(role="assistant", content="hi"), Message(role="user", content="  Plan a trip  ")]
    )
    assert title == "Plan a trip"


def test_long_title_is_truncated() -> None:
    title = generate_title([Message(role="user", content="x" * 80)])
    assert title == "x" * 47 + "..."
    assert len(title) == 50


def test_title_placeholder_without_user_message() -> None:
    title = generate_title([Message(role="assistant", content="Welcome")])
    assert title == placeholder_title()
    assert is_placeholder_title(title)


def test_user_text_starting_with_chat_is_not_placeholder() -> None:
    assert not is_placeholder_title("Chat about databases")


async def test_placeholder_title_is_regenerated(service: ConversationService) -> None:
    conversation_id = await service.create_conversation([])
    assert is_placeholder_title((await service.get_all_conversations())[0].title)

    await service.update_conversation(
        conversation_id, [{"role": "user", "content": "Recipe ideas"}]
    )

    listed = await service.get_all_conversations()
    assert listed[0].title == "Recipe ideas"


async def test_custom_title_is_kept(service: ConversationService) -> None:
    conversation_id = await service.create_conversation(
        [{"role": "user", "content": "Original question"}]
    )

    await service.update_conversation(
        conversation_id, [{"role": "user", "content": "Something else entirely"}]
    )

    listed = await service.get_all_conversations()
    assert listed[0].title == "Original question"


# -- update_conversation -------------------------------------------------------


async def test_update_replaces_messages_and_persists(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(2))
    before = (await service.get_all_conversations())[0].updated_at

    await service.update_conversation(conversation_id, _messages(4))

    conversation = await service.get_conversation(conversation_id)
    assert len(conversation.messages) == 4
    assert conversation.updated_at >= before
    assert len(records.records[conversation_id]["messages"]) == 4
    assert records.index[0]["message_count"] == 4


async def test_update_unknown_id_is_noop(service: ConversationService, records) -> None:
    await service.update_conversation("does-not-exist", _messages(2))

    assert records.calls["save_record"] == 0
    assert records.calls["save_index"] == 0


# -- get_conversation ----------------------------------------------------------


async def test_lazy_hydration_loads_once(records) -> None:
    writer = await _fresh_service(records)
    conversation_id = await writer.create_conversation(_messages(4))
    await writer.destroy()

    reader = await _fresh_service(records)
    listed = await reader.get_all_conversations()
    assert listed[0].messages == []
    assert listed[0].message_count == 4

    loads_before = records.calls["load_record"]
    first = await reader.get_conversation(conversation_id)
    assert len(first.messages) == 4
    assert records.calls["load_record"] == loads_before + 1

    second = await reader.get_conversation(conversation_id)
    assert len(second.messages) == 4
    assert records.calls["load_record"] == loads_before + 1


async def test_indexed_conversation_without_record_stays_empty(records) -> None:
    writer = await _fresh_service(records)
    conversation_id = await writer.create_conversation(_messages(2))
    del records.records[conversation_id]

    reader = await _fresh_service(records)
    conversation = await reader.get_conversation(conversation_id)

    assert conversation is not None
    assert conversation.messages == []
    assert [c.id for c in await reader.get_all_conversations()] == [conversation_id]


async def test_get_unknown_conversation_returns_none(service: ConversationService) -> None:
    assert await service.get_conversation("missing") is None


async def test_returned_conversation_is_a_copy(service: ConversationService) -> None:
    conversation_id = await service.create_conversation(_messages(2))

    conversation = await service.get_conversation(conversation_id)
    conversation.messages.clear()

    again = await service.get_conversation(conversation_id)
    assert len(again.messages) == 2


# -- delete / clear ------------------------------------------------------------


async def test_delete_conversation(service: ConversationService, records) -> None:
    keep = await service.create_conversation(_messages(1, "keep"))
    drop = await service.create_conversation(_messages(1, "drop"))

    await service.delete_conversation(drop)

    assert [c.id for c in await service.get_all_conversations()] == [keep]
    assert drop not in records.records
    assert [e["id"] for e in records.index] == [keep]
    assert service.current_conversation_id is None


async def test_delete_unknown_id_is_noop(service: ConversationService, records) -> None:
    await service.delete_conversation("missing")
    assert records.calls["save_index"] == 0


async def test_clear_all_history(service: ConversationService, records) -> None:
    for _ in range(3):
        await service.create_conversation(_messages(1))
    records.records["orphan"] = {"id": "orphan"}

    await service.clear_all_history()

    assert await service.get_all_conversations() == []
    assert records.records == {}
    assert records.index == []


# -- tools hash ----------------------------------------------------------------


async def test_tools_hash_round_trip(service: ConversationService, records) -> None:
    conversation_id = await service.create_conversation(_messages(1))
    assert await service.get_tools_hash(conversation_id) is None

    await service.set_tools_hash(conversation_id, "deadbeef")

    assert await service.get_tools_hash(conversation_id) == "deadbeef"
    assert records.index[0]["tools_hash"] == "deadbeef"


async def test_tools_hash_survives_hydration(records) -> None:
    writer = await _fresh_service(records)
    conversation_id = await writer.create_conversation(_messages(2))
    await writer.set_tools_hash(conversation_id, "cafebabe")

    reader = await _fresh_service(records)
    await reader.get_conversation(conversation_id)
    assert await reader.get_tools_hash(conversation_id) == "cafebabe"


async def test_should_send_tools_only_on_change(service: ConversationService) -> None:
    conversation_id = await service.create_conversation(_messages(1))
    tools = [{"name": "search", "description": "Web search", "parameters": {}}]

    assert await service.should_send_tools(conversation_id, tools) is True
    assert await service.should_send_tools(conversation_id, tools) is False

    changed = [{"name": "search", "description": "Web search", "parameters": {"q": "str"}}]
    assert await service.should_send_tools(conversation_id, changed) is True


# -- cleanup -------------------------------------------------------------------


async def test_cleanup_trims_memory_without_writing(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    writes_before = records.calls["save_record"], records.calls["save_index"]

    await service.cleanup_memory()

    conversation = await service.get_conversation(conversation_id)
    assert len(conversation.messages) == 200
    assert conversation.messages[0].content == "message 50"
    assert conversation.message_count == 250
    assert (records.calls["save_record"], records.calls["save_index"]) == writes_before
    assert len(records.records[conversation_id]["messages"]) == 250


async def test_update_after_cleanup_persists_full_history(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    await service.cleanup_memory()

    window = (await service.get_conversation(conversation_id)).messages
    extended = [*window, Message(role="user", content="new question"),
                Message(role="assistant", content="new answer")]
    await service.update_conversation(conversation_id, extended)

    persisted = records.records[conversation_id]["messages"]
    assert len(persisted) == 252
    assert persisted[0]["content"] == "message 0"
    assert persisted[-1]["content"] == "new answer"
    assert records.index[0]["message_count"] == 252


async def test_update_after_cleanup_keeps_hidden_prefix(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    await service.cleanup_memory()

    await service.update_conversation(conversation_id, _messages(3, "fresh"))

    persisted = [m["content"] for m in records.records[conversation_id]["messages"]]
    assert len(persisted) == 53
    assert persisted[:2] == ["message 0", "message 1"]
    assert persisted[-3:] == ["fresh 0", "fresh 1", "fresh 2"]
    conversation = await service.get_conversation(conversation_id)
    assert [m.content for m in conversation.messages] == ["fresh 0", "fresh 1", "fresh 2"]
    assert conversation.message_count == 53


async def test_update_after_cleanup_with_regenerated_reply(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    await service.cleanup_memory()

    window = (await service.get_conversation(conversation_id)).messages
    regenerated = [*window[:-1], Message(role="assistant", content="regenerated")]
    await service.update_conversation(conversation_id, regenerated)

    persisted = records.records[conversation_id]["messages"]
    assert len(persisted) == 250
    assert persisted[0]["content"] == "message 0"
    assert persisted[-2]["content"] == "message 248"
    assert persisted[-1]["content"] == "regenerated"
    assert records.index[0]["message_count"] == 250


async def test_update_with_whole_history_after_cleanup_is_not_doubled(
    service: ConversationService, records
) -> None:
    history = [Message.model_validate(m) for m in _messages(250)]
    conversation_id = await service.create_conversation(history)
    await service.cleanup_memory()

    extended = [*history, Message(role="user", content="new question"),
                Message(role="assistant", content="new answer")]
    await service.update_conversation(conversation_id, extended)

    persisted = [m["content"] for m in records.records[conversation_id]["messages"]]
    assert len(persisted) == 252
    assert persisted[:2] == ["message 0", "message 1"]
    assert persisted[-1] == "new answer"
    conversation = await service.get_conversation(conversation_id)
    assert len(conversation.messages) == 252
    assert conversation.message_count == 252


async def test_repeated_cleanup_and_updates_keep_full_history(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    await service.cleanup_memory()

    window = (await service.get_conversation(conversation_id)).messages
    await service.update_conversation(conversation_id, [*window, *_messages(60, "more")])
    await service.cleanup_memory()
    window = (await service.get_conversation(conversation_id)).messages
    assert len(window) == 200
    await service.update_conversation(conversation_id, [*window, *_messages(2, "last")])

    persisted = [m["content"] for m in records.records[conversation_id]["messages"]]
    assert len(persisted) == 312
    assert persisted[0] == "message 0"
    assert persisted[249] == "message 249"
    assert persisted[250] == "more 0"
    assert persisted[-1] == "last 1"


async def test_update_after_cleanup_without_record_is_not_saved(
    service: ConversationService, records
) -> None:
    conversation_id = await service.create_conversation(_messages(250))
    await service.cleanup_memory()
    del records.records[conversation_id]
    saves_before = records.calls["save_record"]

    await service.update_conversation(conversation_id, _messages(2, "fresh"))

    assert records.calls["save_record"] == saves_before
    assert conversation_id not in records.records


async def test_cleanup_evicts_conversations_beyond_limit(records) -> None:
    records.index = [
        {
            "id": str(n),
            "title": f"Chat {n}",
            "created_at": "2025-01-01T00:00:00+00:00",
            "updated_at": "2025-01-01T00:00:00+00:00",
            "message_count": 1,
        }
        for n in range(55, 0, -1)
    ]
    records.records = {str(n): {"id": str(n), "title": f"Chat {n}"} for n in range(1, 56)}
    s = await _fresh_service(records)
    assert len(await s.get_all_conversations()) == 55

    await s.cleanup_memory()

    assert len(await s.get_all_conversations()) == 50
    # Records of evicted conversations are only removed with the next index write
    assert "1" in records.records

    await s.delete_conversation("55")

    for evicted in ("1", "2", "3", "4", "5"):
        assert evicted not in records.records
    assert "6" in records.records
    assert len(records.index) == 49


# -- lifecycle -----------------------------------------------------------------


async def test_cleanup_job_lifecycle(records) -> None:
    s = ConversationService(records, cleanup_interval_seconds=300)
    assert s.state is ServiceState.UNINITIALIZED

    await s.initialize()
    assert s.cleanup_scheduled is True

    await s.destroy()
    assert s.cleanup_scheduled is False
    assert s.state is ServiceState.DESTROYED


async def test_reinitialize_after_destroy(records) -> None:
    s = await _fresh_service(records)
    conversation_id = await s.create_conversation(_messages(1))
    await s.destroy()

    await s.initialize()
    assert [c.id for c in await s.get_all_conversations()] == [conversation_id]


async def test_initialize_runs_legacy_migration(records, tmp_path) -> None:
    legacy = tmp_path / "conversation-history.json"
    legacy.write_text(
        '[{"id": "42", "title": "Legacy chat", "createdAt": "2024-05-01T10:00:00Z",'
        ' "updatedAt": "2024-05-01T10:05:00Z",'
        ' "messages": [{"role": "user", "content": "old", "timestamp": "2024-05-01T10:00:00Z"}]}]',
        encoding="utf-8",
    )
    s = ConversationService(records, cleanup_interval_seconds=0, legacy_history_path=legacy)
    await s.initialize()

    conversation = await s.get_conversation("42")
    assert conversation is not None
    assert conversation.title == "Legacy chat"
    assert conversation.messages[0].content == "old"
    await s.destroy()


@pytest.mark.parametrize("count", [0, 1])
async def test_message_count_matches_created(service: ConversationService, count: int) -> None:
    conversation_id = await service.create_conversation(_messages(count))
    conversation = await service.get_conversation(conversation_id)
    assert conversation.message_count == count
    assert len(conversation.messages) == count
