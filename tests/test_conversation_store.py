"""Unit tests for the in-memory conversation store."""
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from ci_memory.core.exceptions import StorageError
from ci_memory.core.models import Message, MessageMetadata, MessageRole
from ci_memory.services.conversation_store import InMemoryConversationStore


def _message(conversation_id: str, build: int, index: int = 0,
             role: MessageRole = MessageRole.SOURCE, category: str = "build_log_data") -> Message:
    return Message(
        conversation_id=conversation_id,
        build_number=build,
        role=role,
        content={"type": category, "index": index},
        metadata=MessageMetadata(build_number=build, category=category),
    )


def test_append_assigns_id_and_logged_at(store):
    stored = store.append("job-a", _message("job-a", 1))

    assert stored.is_persisted
    assert stored.logged_at is not None
    assert stored.created_at is not None
    assert store.recent("job-a", 10) == [stored]


def test_append_rejects_foreign_or_persisted_messages(store):
    stored = store.append("job-a", _message("job-a", 1))

    with pytest.raises(StorageError):
        store.append("job-a", stored)
    with pytest.raises(StorageError):
        store.append("job-b", _message("job-a", 1))
    with pytest.raises(StorageError):
        store.append("", _message("", 1))


def test_logged_at_never_goes_backwards():
    times = iter([
        datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
        datetime(2025, 1, 1, 11, 0, tzinfo=timezone.utc),  # clock stepped back
    ])
    store = InMemoryConversationStore(clock=lambda: next(times))

    first = store.append("job-a", _message("job-a", 1, 0))
    second = store.append("job-a", _message("job-a", 1, 1))

    assert second.logged_at >= first.logged_at
    assert [m.id for m in store.recent("job-a", 2)] == [first.id, second.id]


def test_recent_returns_newest_window_oldest_first(store):
    ids = [store.append("job-a", _message("job-a", 1, i)).id for i in range(10)]

    window = store.recent("job-a", 4)

    assert [m.id for m in window] == ids[-4:]
    assert store.recent("job-a", 0) == []
    assert store.recent("unknown", 5) == []


def test_recent_is_bounded_by_limit(store):
    for i in range(30):
        store.append("job-a", _message("job-a", i // 5 + 1, i))

    for limit in (1, 7, 30, 100):
        assert len(store.recent("job-a", limit)) == min(limit, 30)


def test_prune_keeps_newest(store):
    for i in range(12):
        store.append("job-a", _message("job-a", 1, i))
    before = [m.id for m in store.recent("job-a", 5)]

    removed = store.prune("job-a", 5)

    assert removed == 7
    assert [m.id for m in store.recent("job-a", 5)] == before
    assert [m.id for m in store.recent("job-a", 6)] == before


def test_prune_with_fewer_messages_is_noop(store):
    store.append("job-a", _message("job-a", 1))

    assert store.prune("job-a", 100) == 0
    assert store.prune("unknown", 100) == 0
    assert len(store.recent("job-a", 10)) == 1


def test_scenario_c_prune_250_messages_across_20_builds(store):
    appended = []
    for i in range(250):
        build = i * 20 // 250 + 1
        appended.append(store.append("job-y", _message("job-y", build, i)).id)

    removed = store.prune("job-y", 100)

    assert removed == 150
    remaining = store.recent("job-y", 100)
    assert [m.id for m in remaining] == appended[-100:]
    assert len(store.recent("job-y", 250)) == 100


def test_prune_does_not_touch_other_conversations(store):
    for i in range(5):
        store.append("job-a", _message("job-a", 1, i))
        store.append("job-b", _message("job-b", 1, i))

    store.prune("job-a", 1)

    assert len(store.recent("job-a", 10)) == 1
    assert len(store.recent("job-b", 10)) == 5


def test_build_queries(store):
    store.append("job-a", _message("job-a", 1, category="build_log_data"))
    store.append("job-a", _message("job-a", 1, category="build_log_data"))
    store.append("job-a", _message("job-a", 1, category="code_changes"))
    store.append("job-a", _message("job-a", 2, category="build_log_data"))

    assert store.count_by_category("job-a", 1, "build_log_data") == 2
    assert store.count_by_category("job-a", 2, "code_changes") == 0
    assert len(store.messages_for_build("job-a", 1)) == 3
    assert not store.has_analysis("job-a", 1)

    store.append("job-a", _message("job-a", 1, role=MessageRole.ANALYSIS, category="analysis"))

    assert store.has_analysis("job-a", 1)
    assert not store.has_analysis("job-a", 2)
    assert store.latest_source("job-a", 1).content["type"] == "code_changes"


def test_list_and_delete_conversations(store):
    store.append("job-a", _message("job-a", 1))
    store.append("job-b", _message("job-b", 1))
    store.append("job-b", _message("job-b", 2))

    assert store.list_conversations() == {"job-a", "job-b"}
    assert store.delete_conversation("job-b") == 2
    assert store.list_conversations() == {"job-a"}
    assert store.delete_conversation("job-b") == 0


def test_oversized_content_is_truncated():
    store = InMemoryConversationStore(max_content_length=200)
    message = Message(
        conversation_id="job-a",
        build_number=1,
        role=MessageRole.SOURCE,
        content={"type": "build_log_data", "payload": {"raw_log": "x" * 5000}},
        metadata=MessageMetadata(build_number=1, category="build_log_data"),
    )

    stored = store.append("job-a", message)

    assert stored.content["type"] == "build_log_data"
    assert stored.content["payload"]["truncated"] is True
    assert stored.content["payload"]["excerpt"].startswith('{"type": "build_log_data"')
    assert len(json.dumps(stored.content)) <= 200


def test_truncated_content_with_escaped_characters_fits_limit():
    store = InMemoryConversationStore(max_content_length=500)
    message = Message(
        conversation_id="job-a",
        build_number=1,
        role=MessageRole.SOURCE,
        content={"type": "build_log_data", "jobName": "job-a",
                 "payload": {"raw_log": '"quoted" \\path\n' * 400}},
        metadata=MessageMetadata(build_number=1, category="build_log_data"),
    )

    stored = store.append("job-a", message)

    assert stored.content["jobName"] == "job-a"
    assert stored.content["payload"]["truncated"] is True
    assert 0 < len(stored.content["payload"]["excerpt"])
    assert len(json.dumps(stored.content)) <= 500


def test_concurrent_appends_keep_total_order(store):
    def writer(offset):
        for i in range(50):
            store.append("job-a", _message("job-a", 1, offset + i))

    threads = [threading.Thread(target=writer, args=(n * 100,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    history = store.recent("job-a", 500)
    assert len(history) == 200
    assert [m.id for m in history] == sorted(m.id for m in history)
    assert all(a.logged_at <= b.logged_at for a, b in zip(history, history[1:]))


def test_prune_concurrent_with_appends_keeps_newest(store):
    appended = []
    done = threading.Event()
    windows = []

    def writer():
        for i in range(300):
            appended.append(store.append("job-a", _message("job-a", 1, i)).id)
        done.set()

    def pruner():
        while not done.is_set():
            store.prune("job-a", 20)
            windows.append([m.id for m in store.recent("job-a", 50)])

    threads = [threading.Thread(target=writer), threading.Thread(target=pruner)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    survivors = [m.id for m in store.recent("job-a", 1000)]
    assert survivors == appended[len(appended) - len(survivors):]
    assert appended[-20:] == survivors[-20:]
    for window in windows:
        if window:
            assert window == list(range(window[0], window[0] + len(window)))

    assert store.prune("job-a", 20) == max(len(survivors) - 20, 0)
    assert [m.id for m in store.recent("job-a", 1000)] == appended[-20:]


def test_created_at_is_preserved(store):
    event_time = datetime.now(timezone.utc) - timedelta(minutes=3)
    message = _message("job-a", 1).model_copy(update={"created_at": event_time})

    stored = store.append("job-a", message)

    assert stored.created_at == event_time
