"""Durable per-job conversation history

Messages are appended, read back as a bounded most-recent window and pruned
with a keep-N-newest policy. Ordering everywhere is (logged_at, id).
"""
import itertools
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

import psycopg2
from psycopg2.extras import Json

from ci_memory.core.config import Settings, get_settings
from ci_memory.core.database import get_db_connection, get_db_cursor
from ci_memory.core.exceptions import StorageError
from ci_memory.core.models import Message, MessageMetadata, MessageRole


logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """Base class for conversation stores"""

    def __init__(self, max_content_length: int = 10_000_000):
        self.max_content_length = max_content_length

    @abstractmethod
    def append(self, conversation_id: str, message: Message) -> Message:
        """Persist one message and return it with id and logged_at assigned"""

    @abstractmethod
    def recent(self, conversation_id: str, limit: int) -> List[Message]:
        """At most `limit` newest messages, oldest first"""

    @abstractmethod
    def prune(self, conversation_id: str, keep: int) -> int:
        """Delete everything except the `keep` newest messages"""

    @abstractmethod
    def list_conversations(self) -> Set[str]:
        pass

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> int:
        pass

    @abstractmethod
    def has_analysis(self, conversation_id: str, build_number: int) -> bool:
        pass

    @abstractmethod
    def count_by_category(self, conversation_id: str, build_number: int, category: str) -> int:
        pass

    @abstractmethod
    def messages_for_build(self, conversation_id: str, build_number: int) -> List[Message]:
        pass

    def latest_source(self, conversation_id: str, build_number: int) -> Optional[Message]:
        """Most recent SOURCE message of a build, used to re-dispatch it"""
        sources = [m for m in self.messages_for_build(conversation_id, build_number)
                   if m.role == MessageRole.SOURCE]
        return sources[-1] if sources else None

    def _check_append(self, conversation_id: str, message: Message) -> Dict:
        if not conversation_id:
            raise StorageError("Conversation ID must not be empty")
        if message.is_persisted:
            raise StorageError(f"Message {message.id} is already persisted")
        if message.conversation_id != conversation_id:
            raise StorageError(
                f"Message belongs to {message.conversation_id}, not {conversation_id}"
            )
        return self._bounded_content(conversation_id, message.content)

    def _bounded_content(self, conversation_id: str, content: Dict) -> Dict:
        serialized = json.dumps(content, default=str)
        if len(serialized) <= self.max_content_length:
            return content
        logger.warning(f"Truncating content for {conversation_id} from {len(serialized)} "
                       f"to {self.max_content_length} characters")
        bounded = {k: v for k, v in content.items() if k != "payload"}
        bounded["payload"] = {"truncated": True, "excerpt": ""}
        budget = self.max_content_length - len(json.dumps(bounded, default=str))
        if budget < 0:
            bounded = {"payload": {"truncated": True, "excerpt": ""}}
            budget = self.max_content_length - len(json.dumps(bounded))

        # escaping can grow the excerpt, so shrink until the encoded form fits
        excerpt = serialized[:max(budget, 0)]
        overflow = len(json.dumps(excerpt)) - 2 - budget
        while overflow > 0 and excerpt:
            excerpt = excerpt[:len(excerpt) - overflow]
            overflow = len(json.dumps(excerpt)) - 2 - budget
        bounded["payload"]["excerpt"] = excerpt
        return bounded


class InMemoryConversationStore(ConversationStore):
    """Process-local store with the same ordering and atomicity guarantees"""

    def __init__(self, max_content_length: int = 10_000_000,
                 clock: Optional[Callable[[], datetime]] = None):
        super().__init__(max_content_length)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._messages: Dict[str, List[Message]] = defaultdict(list)
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._ids = itertools.count(1)

    def _lock(self, conversation_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[conversation_id]

    def append(self, conversation_id: str, message: Message) -> Message:
        content = self._check_append(conversation_id, message)
        with self._lock(conversation_id):
            history = self._messages[conversation_id]
            now = self._clock()
            if history and history[-1].logged_at > now:
                now = history[-1].logged_at
            stored = message.model_copy(update={
                "id": next(self._ids),
                "content": content,
                "logged_at": now,
                "created_at": message.created_at or now,
            })
            history.append(stored)
        logger.debug(f"Stored {stored.role.value} message {stored.id} for {conversation_id}")
        return stored

    def recent(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        with self._lock(conversation_id):
            return list(self._messages.get(conversation_id, [])[-limit:])

    def prune(self, conversation_id: str, keep: int) -> int:
        keep = max(keep, 0)
        with self._lock(conversation_id):
            history = self._messages.get(conversation_id, [])
            removed = max(len(history) - keep, 0)
            if removed:
                del history[:removed]
        return removed

    def list_conversations(self) -> Set[str]:
        with self._registry_lock:
            return {cid for cid, msgs in list(self._messages.items()) if msgs}

    def delete_conversation(self, conversation_id: str) -> int:
        with self._lock(conversation_id):
            removed = len(self._messages.get(conversation_id, []))
            self._messages.pop(conversation_id, None)
        return removed

    def has_analysis(self, conversation_id: str, build_number: int) -> bool:
        return any(m.role == MessageRole.ANALYSIS
                   for m in self.messages_for_build(conversation_id, build_number))

    def count_by_category(self, conversation_id: str, build_number: int, category: str) -> int:
        return sum(1 for m in self.messages_for_build(conversation_id, build_number)
                   if m.role == MessageRole.SOURCE and m.category == category)

    def messages_for_build(self, conversation_id: str, build_number: int) -> List[Message]:
        with self._lock(conversation_id):
            return [m for m in self._messages.get(conversation_id, [])
                    if m.build_number == build_number]


_COLUMNS = "id, conversation_id, build_number, message_type, content, metadata, created_at, logged_at"


class PostgresConversationStore(ConversationStore):
    """chat_messages table backed store

    Writes for one conversation are serialized by a transaction-scoped
    advisory lock so a prune never races an append on the same key.
    """

    def __init__(self, max_content_length: int = 10_000_000, connection_factory=None):
        super().__init__(max_content_length)
        self._connection = connection_factory or get_db_connection

    def append(self, conversation_id: str, message: Message) -> Message:
        content = self._check_append(conversation_id, message)
        try:
            with self._connection() as conn:
                with get_db_cursor(conn) as cur:
                    self._lock_conversation(cur, conversation_id)
                    # logged_at never goes backwards within a conversation
                    cur.execute(f"""
                        INSERT INTO chat_messages (
                            conversation_id, build_number, message_type,
                            content, metadata, created_at, logged_at
                        ) VALUES (
                            %s, %s, %s, %s, %s, COALESCE(%s, clock_timestamp()),
                            GREATEST(clock_timestamp(), COALESCE(
                                (SELECT MAX(logged_at) FROM chat_messages WHERE conversation_id = %s),
                                '-infinity'::timestamptz))
                        )
                        RETURNING {_COLUMNS}
                    """, (
                        conversation_id,
                        message.build_number,
                        message.role.value,
                        Json(content),
                        Json(message.metadata.model_dump(mode="json")),
                        message.created_at,
                        conversation_id,
                    ))
                    row = cur.fetchone()
        except psycopg2.Error as e:
            logger.error(f"❌ Failed to append message for {conversation_id}: {e}")
            raise StorageError(f"append failed for {conversation_id}: {e}") from e
        return self._to_message(row)

    def recent(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        rows = self._query(f"""
            SELECT * FROM (
                SELECT {_COLUMNS} FROM chat_messages
                WHERE conversation_id = %s
                ORDER BY logged_at DESC, id DESC
                LIMIT %s
            ) window_rows
            ORDER BY logged_at ASC, id ASC
        """, (conversation_id, limit))
        logger.debug(f"Retrieved {len(rows)} messages for {conversation_id}")
        return [self._to_message(r) for r in rows]

    def prune(self, conversation_id: str, keep: int) -> int:
        keep = max(keep, 0)
        try:
            with self._connection() as conn:
                with get_db_cursor(conn) as cur:
                    self._lock_conversation(cur, conversation_id)
                    cur.execute("""
                        DELETE FROM chat_messages
                        WHERE conversation_id = %s AND id NOT IN (
                            SELECT id FROM chat_messages
                            WHERE conversation_id = %s
                            ORDER BY logged_at DESC, id DESC
                            LIMIT %s
                        )
                    """, (conversation_id, conversation_id, keep))
                    return cur.rowcount
        except psycopg2.Error as e:
            raise StorageError(f"prune failed for {conversation_id}: {e}") from e

    def list_conversations(self) -> Set[str]:
        rows = self._query("SELECT DISTINCT conversation_id FROM chat_messages", ())
        return {r["conversation_id"] for r in rows}

    def delete_conversation(self, conversation_id: str) -> int:
        try:
            with self._connection() as conn:
                with get_db_cursor(conn) as cur:
                    self._lock_conversation(cur, conversation_id)
                    cur.execute("DELETE FROM chat_messages WHERE conversation_id = %s",
                                (conversation_id,))
                    return cur.rowcount
        except psycopg2.Error as e:
            raise StorageError(f"delete failed for {conversation_id}: {e}") from e

    def has_analysis(self, conversation_id: str, build_number: int) -> bool:
        rows = self._query("""
            SELECT EXISTS (
                SELECT 1 FROM chat_messages
                WHERE conversation_id = %s AND build_number = %s AND message_type = %s
            ) AS found
        """, (conversation_id, build_number, MessageRole.ANALYSIS.value))
        return bool(rows and rows[0]["found"])

    def count_by_category(self, conversation_id: str, build_number: int, category: str) -> int:
        rows = self._query("""
            SELECT COUNT(*) AS total FROM chat_messages
            WHERE conversation_id = %s AND build_number = %s
              AND message_type = %s AND content ->> 'type' = %s
        """, (conversation_id, build_number, MessageRole.SOURCE.value, category))
        return int(rows[0]["total"]) if rows else 0

    def messages_for_build(self, conversation_id: str, build_number: int) -> List[Message]:
        rows = self._query(f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE conversation_id = %s AND build_number = %s
            ORDER BY logged_at ASC, id ASC
        """, (conversation_id, build_number))
        return [self._to_message(r) for r in rows]

    @staticmethod
    def _lock_conversation(cur, conversation_id: str):
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (conversation_id,))

    def _query(self, sql: str, params: tuple) -> List[Dict]:
        try:
            with self._connection() as conn:
                with get_db_cursor(conn) as cur:
                    cur.execute(sql, params)
                    return cur.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"query failed: {e}") from e

    @staticmethod
    def _to_message(row: Dict) -> Message:
        content = row["content"]
        if isinstance(content, str):
            content = json.loads(content)
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        metadata.setdefault("build_number", row["build_number"])
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            build_number=row["build_number"],
            role=MessageRole(row["message_type"]),
            content=content,
            metadata=MessageMetadata.model_validate(metadata),
            created_at=row["created_at"],
            logged_at=row["logged_at"],
        )


def create_conversation_store(settings: Optional[Settings] = None) -> ConversationStore:
    """Factory function selecting the configured store backend"""
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        logger.info("Using in-memory conversation store")
        return InMemoryConversationStore(max_content_length=settings.max_content_length)
    logger.info("Using PostgreSQL conversation store")
    return PostgresConversationStore(max_content_length=settings.max_content_length)
