"""PostgresConversationStore against a scripted fake connection."""
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2
import pytest
from psycopg2.extras import Json

from ci_memory.core.exceptions import StorageError
from ci_memory.core.models import Message, MessageMetadata, MessageRole
from ci_memory.services.conversation_store import PostgresConversationStore


LOGGED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rowcount = 0

    def execute(self, sql, params=None):
        if self.connection.error:
            raise self.connection.error
        self.connection.executed.append((" ".join(sql.split()), params))
        self.rowcount = self.connection.rowcount

    def fetchone(self):
        return self.connection.rows[0] if self.connection.rows else None

    def fetchall(self):
        return list(self.connection.rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, rows=None, rowcount=0, error=None):
        self.rows = rows or []
        self.rowcount = rowcount
        self.error = error
        self.executed = []

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)


def _factory(connection):
    @contextmanager
    def connect():
        yield connection
    return connect


def _row(message_id=1, role="SOURCE", build=3, content=None):
    return {
        "id": message_id,
        "conversation_id": "job-a",
        "build_number": build,
        "message_type": role,
        "content": content or {"type": "build_log_data"},
        "metadata": {"category": "build_log_data"},
        "created_at": LOGGED_AT,
        "logged_at": LOGGED_AT,
    }


def test_append_locks_conversation_and_returns_stored_row():
    connection = FakeConnection(rows=[_row()])
    store = PostgresConversationStore(connection_factory=_factory(connection))
    message = Message(
        conversation_id="job-a",
        build_number=3,
        role=MessageRole.SOURCE,
        content={"type": "build_log_data"},
        metadata=MessageMetadata(build_number=3, category="build_log_data"),
    )

    stored = store.append("job-a", message)

    lock_sql, lock_params = connection.executed[0]
    assert "pg_advisory_xact_lock" in lock_sql
    assert lock_params == ("job-a",)
    insert_sql, insert_params = connection.executed[1]
    assert insert_sql.startswith("INSERT INTO chat_messages")
    assert "GREATEST(clock_timestamp()" in insert_sql
    assert isinstance(insert_params[3], Json)
    assert stored.id == 1
    assert stored.metadata.build_number == 3
    assert stored.logged_at == LOGGED_AT


def test_recent_orders_newest_window_ascending():
    connection = FakeConnection(rows=[_row(1), _row(2, role="ANALYSIS")])
    store = PostgresConversationStore(connection_factory=_factory(connection))

    messages = store.recent("job-a", 50)

    sql, params = connection.executed[0]
    assert "ORDER BY logged_at DESC, id DESC LIMIT %s" in sql
    assert sql.endswith("ORDER BY logged_at ASC, id ASC")
    assert params == ("job-a", 50)
    assert [m.role for m in messages] == [MessageRole.SOURCE, MessageRole.ANALYSIS]


def test_recent_with_zero_limit_skips_query():
    connection = FakeConnection()
    store = PostgresConversationStore(connection_factory=_factory(connection))

    assert store.recent("job-a", 0) == []
    assert connection.executed == []


def test_prune_returns_deleted_count():
    connection = FakeConnection(rowcount=150)
    store = PostgresConversationStore(connection_factory=_factory(connection))

    assert store.prune("job-y", 100) == 150
    sql, params = connection.executed[1]
    assert sql.startswith("DELETE FROM chat_messages")
    assert params == ("job-y", "job-y", 100)


def test_json_text_columns_are_decoded():
    row = _row(content='{"type": "code_changes"}')
    row["metadata"] = '{"category": "code_changes", "fingerprint": "code_changes:1"}'
    store = PostgresConversationStore(connection_factory=_factory(FakeConnection(rows=[row])))

    message = store.messages_for_build("job-a", 3)[0]

    assert message.content == {"type": "code_changes"}
    assert message.metadata.fingerprint == "code_changes:1"


def test_database_errors_become_storage_errors():
    connection = FakeConnection(error=psycopg2.OperationalError("connection refused"))
    store = PostgresConversationStore(connection_factory=_factory(connection))
    message = Message(
        conversation_id="job-a",
        build_number=1,
        role=MessageRole.SOURCE,
        content={},
        metadata=MessageMetadata(build_number=1),
    )

    with pytest.raises(StorageError):
        store.append("job-a", message)
    with pytest.raises(StorageError):
        store.recent("job-a", 10)
    with pytest.raises(StorageError):
        store.prune("job-a", 10)
    with pytest.raises(StorageError):
        store.list_conversations()
