"""DuckDB-backed durable storage for conversations and messages.

The store is the single source of truth: every REST read and every event
payload is built from rows read here, so a client that missed events can
always recover by refetching.

Database Schema:
    conversations: one row per conversation. ``direct_key`` holds the
        normalized participant pair of a direct conversation and is UNIQUE,
        which is what makes direct conversations singletons.
    participants: (conversation_id, user_id) membership with role/active flag.
    messages: message rows; ``seq`` comes from a sequence and breaks
        ``created_at`` ties.
    receipts: one read marker per (message, recipient).
    reactions: at most one reaction per (message, user).

Thread Safety:
    A DuckDB connection is NOT thread-safe. All access goes through one
    re-entrant lock, so the FastAPI event loop thread and test threads can
    share the singleton.

Usage:
    store = ChatStore.get_instance()
    conversation = store.get_conversation(conversation_id)
"""
import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

import duckdb

from chatrelay.conversations.schemas import (
    Conversation,
    ConversationType,
    Participant,
    ParticipantRole,
)
from chatrelay.errors import Conflict
from chatrelay.messages.schemas import Message, MessageType, Reaction, ReadMarker

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS message_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS reaction_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id              VARCHAR PRIMARY KEY,
        type            VARCHAR NOT NULL,
        direct_key      VARCHAR UNIQUE,
        name            VARCHAR,
        description     VARCHAR,
        avatar          VARCHAR,
        created_by      VARCHAR NOT NULL,
        created_at      DOUBLE NOT NULL,
        last_message_id VARCHAR,
        last_message_at DOUBLE,
        is_active       BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participants (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        role            VARCHAR NOT NULL DEFAULT 'member',
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        joined_at       DOUBLE NOT NULL,
        position        INTEGER NOT NULL,
        PRIMARY KEY (conversation_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT NOT NULL,
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        message_type    VARCHAR NOT NULL DEFAULT 'text',
        payload         VARCHAR,
        reply_to        VARCHAR,
        forwarded       BOOLEAN NOT NULL DEFAULT FALSE,
        forwarded_from  VARCHAR,
        is_edited       BOOLEAN NOT NULL DEFAULT FALSE,
        edited_at       DOUBLE,
        is_deleted      BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at      DOUBLE,
        created_at      DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receipts (
        message_id      VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        conversation_id VARCHAR NOT NULL,
        is_read         BOOLEAN NOT NULL DEFAULT FALSE,
        read_at         DOUBLE,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reactions (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        emoji      VARCHAR NOT NULL,
        reacted_at DOUBLE NOT NULL,
        position   BIGINT NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id)",
]

_MESSAGE_COLUMNS = [
    "id", "seq", "conversation_id", "sender_id", "content", "message_type",
    "payload", "reply_to", "forwarded", "forwarded_from", "is_edited",
    "edited_at", "is_deleted", "deleted_at", "created_at",
]

_CONVERSATION_COLUMNS = [
    "id", "type", "direct_key", "name", "description", "avatar",
    "created_by", "created_at", "last_message_id", "last_message_at", "is_active",
]


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for the participant pair of a direct conversation."""
    first, second = sorted((user_a, user_b))
    return f"{first}|{second}"


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class ChatStore:
    """Singleton DuckDB store for conversations, messages, receipts and reactions.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file (``:memory:`` in tests).
    """

    _instance: Optional["ChatStore"] = None
    _default_db_path: str = "chatrelay.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._lock = threading.RLock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        logger.info("[ChatStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton. Used by tests."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block atomically: all statements commit or none do."""
        with self._lock:
            self._conn.execute("BEGIN TRANSACTION")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except Exception:
                try:
                    self._conn.execute("ROLLBACK")
                except duckdb.TransactionException:
                    # A failed COMMIT may already have ended the transaction.
                    logger.debug("[ChatStore] No open transaction to roll back")
                raise

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def insert_conversation(
        self, conversation: Conversation, pair_key: Optional[str] = None
    ) -> Conversation:
        """Persist a conversation and its participants.

        Raises:
            Conflict: ``pair_key`` is already taken by another direct conversation.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations
                      (id, type, direct_key, name, description, avatar,
                       created_by, created_at, last_message_id, last_message_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                    """,
                    [
                        conversation.id, conversation.type.value, pair_key,
                        conversation.name, conversation.description,
                        conversation.avatar, conversation.createdBy,
                        conversation.createdAt,
                    ],
                )
                for position, participant in enumerate(conversation.participants):
                    conn.execute(
                        """
                        INSERT INTO participants
                          (conversation_id, user_id, role, is_active, joined_at, position)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            conversation.id, participant.userId,
                            participant.role.value, participant.isActive,
                            participant.joinedAt, position,
                        ],
                    )
        except duckdb.ConstraintException as exc:
            raise Conflict(f"Conversation key already exists: {pair_key}") from exc
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
            if row is None:
                return None
            return self._conversations_from_rows([row])[0]

    def find_direct(self, pair_key: str) -> Optional[Conversation]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations "
                "WHERE direct_key = ?",
                [pair_key],
            ).fetchone()
            if row is None:
                return None
            return self._conversations_from_rows([row])[0]

    def list_conversations_for_user(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[Conversation]:
        """Active conversations of a user, most recent activity first."""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {', '.join('c.' + col for col in _CONVERSATION_COLUMNS)}
                FROM conversations c
                JOIN participants p ON p.conversation_id = c.id
                WHERE p.user_id = ? AND p.is_active AND c.is_active
                ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id
                LIMIT ? OFFSET ?
                """,
                [user_id, limit, offset],
            ).fetchall()
            return self._conversations_from_rows(rows)

    def count_conversations_for_user(self, user_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) FROM participants p
                JOIN conversations c ON c.id = p.conversation_id
                WHERE p.user_id = ? AND p.is_active AND c.is_active
                """,
                [user_id],
            ).fetchone()
            return int(row[0])

    def update_details(
        self,
        conversation_id: str,
        name: Optional[str],
        description: Optional[str],
        avatar: Optional[str],
    ) -> Optional[Conversation]:
        with self._lock:
            self._conn.execute(
                "UPDATE conversations SET name = ?, description = ?, avatar = ? WHERE id = ?",
                [name, description, avatar, conversation_id],
            )
            return self.get_conversation(conversation_id)

    def add_participant(
        self, conversation_id: str, user_id: str, joined_at: float
    ) -> None:
        """Append a member, or reactivate one who left or was removed.

        A reactivated member keeps their role and position in the list.
        """
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM participants WHERE conversation_id = ? AND user_id = ?",
                [conversation_id, user_id],
            ).fetchone()
            if existing is not None:
                conn.execute(
                    """
                    UPDATE participants SET is_active = TRUE, joined_at = ?
                    WHERE conversation_id = ? AND user_id = ?
                    """,
                    [joined_at, conversation_id, user_id],
                )
                return
            position = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM participants WHERE conversation_id = ?",
                [conversation_id],
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO participants
                  (conversation_id, user_id, role, is_active, joined_at, position)
                VALUES (?, ?, ?, TRUE, ?, ?)
                """,
                [conversation_id, user_id, ParticipantRole.MEMBER.value, joined_at, position],
            )

    def deactivate_participant(self, conversation_id: str, user_id: str) -> bool:
        """Mark a member inactive. When nobody active is left the conversation
        itself becomes inactive. Returns False if the user was not active."""
        with self._transaction() as conn:
            changed = conn.execute(
                """
                UPDATE participants SET is_active = FALSE
                WHERE conversation_id = ? AND user_id = ? AND is_active
                RETURNING user_id
                """,
                [conversation_id, user_id],
            ).fetchall()
            if not changed:
                return False
            remaining = conn.execute(
                "SELECT COUNT(*) FROM participants WHERE conversation_id = ? AND is_active",
                [conversation_id],
            ).fetchone()[0]
            if remaining == 0:
                conn.execute(
                    "UPDATE conversations SET is_active = FALSE WHERE id = ?",
                    [conversation_id],
                )
                logger.info("[ChatStore] Conversation %s has no active members left", conversation_id)
        return True

    def _conversations_from_rows(self, rows: List[tuple]) -> List[Conversation]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        participant_rows = self._conn.execute(
            f"""
            SELECT conversation_id, user_id, role, is_active, joined_at
            FROM participants
            WHERE conversation_id IN ({_placeholders(ids)})
            ORDER BY conversation_id, position
            """,
            ids,
        ).fetchall()
        participants: Dict[str, List[Participant]] = {cid: [] for cid in ids}
        for conversation_id, user_id, role, is_active, joined_at in participant_rows:
            participants[conversation_id].append(Participant(
                userId=user_id,
                role=ParticipantRole(role),
                isActive=is_active,
                joinedAt=joined_at,
            ))

        conversations = []
        for row in rows:
            d = dict(zip(_CONVERSATION_COLUMNS, row))
            conversations.append(Conversation(
                id=d["id"],
                type=ConversationType(d["type"]),
                participants=participants[d["id"]],
                name=d["name"],
                description=d["description"],
                avatar=d["avatar"],
                createdBy=d["created_by"],
                createdAt=d["created_at"],
                lastMessageId=d["last_message_id"],
                lastMessageAt=d["last_message_at"],
                isActive=d["is_active"],
            ))
        return conversations

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(self, message: Message, recipients: List[str]) -> Message:
        """Persist a message, its unread markers and the latest-message pointer.

        All three writes happen in one transaction. Returns the stored message
        with its ``seq`` and read markers filled in.
        """
        with self._transaction() as conn:
            seq = conn.execute("SELECT nextval('message_seq')").fetchone()[0]
            conn.execute(
                f"""
                INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)})
                VALUES ({_placeholders(_MESSAGE_COLUMNS)})
                """,
                [
                    message.id, seq, message.conversationId, message.senderId,
                    message.content, message.messageType.value,
                    json.dumps(message.payload) if message.payload is not None else None,
                    message.replyTo, message.forwarded, message.forwardedFrom,
                    False, None, False, None, message.createdAt,
                ],
            )
            for user_id in recipients:
                conn.execute(
                    """
                    INSERT INTO receipts (message_id, user_id, conversation_id, is_read, read_at)
                    VALUES (?, ?, ?, FALSE, NULL)
                    """,
                    [message.id, user_id, message.conversationId],
                )
            conn.execute(
                """
                UPDATE conversations
                SET last_message_id = ?, last_message_at = ?
                WHERE id = ?
                """,
                [message.id, message.createdAt, message.conversationId],
            )
        stored = self.get_message(message.id)
        logger.debug("[ChatStore] Appended message %s seq=%s", message.id, seq)
        return stored

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages WHERE id = ?",
                [message_id],
            ).fetchone()
            if row is None:
                return None
            return self._messages_from_rows([row])[0]

    def list_messages(
        self,
        conversation_id: str,
        limit: int,
        before: Optional[Message] = None,
    ) -> List[Message]:
        """Page of messages in creation order (oldest first).

        Returns the ``limit`` most recent messages strictly older than
        ``before`` (by ``(createdAt, seq)``), or the most recent ones when no
        cursor is given.
        """
        params: list = [conversation_id]
        cursor_clause = ""
        if before is not None:
            cursor_clause = "AND (created_at < ? OR (created_at = ? AND seq < ?))"
            params += [before.createdAt, before.createdAt, before.seq]
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM (
                    SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages
                    WHERE conversation_id = ? {cursor_clause}
                    ORDER BY created_at DESC, seq DESC
                    LIMIT ?
                ) ORDER BY created_at ASC, seq ASC
                """,
                params,
            ).fetchall()
            return self._messages_from_rows(rows)

    def update_content(self, message_id: str, content: str, edited_at: float) -> Optional[Message]:
        with self._lock:
            self._conn.execute(
                "UPDATE messages SET content = ?, is_edited = TRUE, edited_at = ? WHERE id = ?",
                [content, edited_at, message_id],
            )
            return self.get_message(message_id)

    def soft_delete(self, message_id: str, tombstone: str, deleted_at: float) -> Optional[Message]:
        """Replace content with ``tombstone``; the original is not kept."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET content = ?, payload = NULL, is_deleted = TRUE, deleted_at = ?
                WHERE id = ? AND NOT is_deleted
                """,
                [tombstone, deleted_at, message_id],
            )
            return self.get_message(message_id)

    def _messages_from_rows(self, rows: List[tuple]) -> List[Message]:
        if not rows:
            return []
        ids = [row[0] for row in rows]

        receipts: Dict[str, List[ReadMarker]] = {mid: [] for mid in ids}
        for message_id, user_id, is_read, read_at in self._conn.execute(
            f"""
            SELECT message_id, user_id, is_read, read_at FROM receipts
            WHERE message_id IN ({_placeholders(ids)})
            ORDER BY message_id, user_id
            """,
            ids,
        ).fetchall():
            receipts[message_id].append(ReadMarker(userId=user_id, isRead=is_read, readAt=read_at))

        reactions: Dict[str, List[Reaction]] = {mid: [] for mid in ids}
        for message_id, user_id, emoji, reacted_at in self._conn.execute(
            f"""
            SELECT message_id, user_id, emoji, reacted_at FROM reactions
            WHERE message_id IN ({_placeholders(ids)})
            ORDER BY message_id, position
            """,
            ids,
        ).fetchall():
            reactions[message_id].append(Reaction(userId=user_id, emoji=emoji, reactedAt=reacted_at))

        messages = []
        for row in rows:
            d = dict(zip(_MESSAGE_COLUMNS, row))
            messages.append(Message(
                id=d["id"],
                conversationId=d["conversation_id"],
                senderId=d["sender_id"],
                content=d["content"],
                messageType=MessageType(d["message_type"]),
                payload=json.loads(d["payload"]) if d["payload"] else None,
                replyTo=d["reply_to"],
                forwarded=d["forwarded"],
                forwardedFrom=d["forwarded_from"],
                isEdited=d["is_edited"],
                editedAt=d["edited_at"],
                isDeleted=d["is_deleted"],
                deletedAt=d["deleted_at"],
                readBy=receipts[d["id"]],
                reactions=reactions[d["id"]],
                createdAt=d["created_at"],
                seq=d["seq"],
            ))
        return messages

    # -----------------------------------------------------------------------
    # Read markers
    # -----------------------------------------------------------------------

    def mark_read(self, message_id: str, user_id: str, read_at: float) -> bool:
        """Flip one unread marker to read. Returns False if nothing changed."""
        with self._lock:
            changed = self._conn.execute(
                """
                UPDATE receipts SET is_read = TRUE, read_at = ?
                WHERE message_id = ? AND user_id = ? AND NOT is_read
                RETURNING message_id
                """,
                [read_at, message_id, user_id],
            ).fetchall()
            return bool(changed)

    def mark_conversation_read(
        self, conversation_id: str, user_id: str, read_at: float
    ) -> List[str]:
        """Flip every unread marker of ``user_id`` in a conversation.

        Returns the ids of the messages that transitioned, in creation order.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT r.message_id FROM receipts r
                JOIN messages m ON m.id = r.message_id
                WHERE r.conversation_id = ? AND r.user_id = ? AND NOT r.is_read
                ORDER BY m.created_at, m.seq
                """,
                [conversation_id, user_id],
            ).fetchall()
            if rows:
                conn.execute(
                    """
                    UPDATE receipts SET is_read = TRUE, read_at = ?
                    WHERE conversation_id = ? AND user_id = ? AND NOT is_read
                    """,
                    [read_at, conversation_id, user_id],
                )
        return [row[0] for row in rows]

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) FROM receipts
                WHERE conversation_id = ? AND user_id = ? AND NOT is_read
                """,
                [conversation_id, user_id],
            ).fetchone()
            return int(row[0])

    def senders_of(self, message_ids: List[str]) -> List[str]:
        if not message_ids:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"SELECT DISTINCT sender_id FROM messages WHERE id IN ({_placeholders(message_ids)})",
                message_ids,
            ).fetchall()
            return sorted(row[0] for row in rows)

    # -----------------------------------------------------------------------
    # Reactions
    # -----------------------------------------------------------------------

    def upsert_reaction(self, message_id: str, user_id: str, emoji: str, reacted_at: float) -> None:
        """Insert or replace the single reaction of ``user_id`` on a message.

        A replaced reaction keeps its original position in the list.
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reactions (message_id, user_id, emoji, reacted_at, position)
                VALUES (?, ?, ?, ?, nextval('reaction_seq'))
                ON CONFLICT (message_id, user_id)
                DO UPDATE SET emoji = excluded.emoji, reacted_at = excluded.reacted_at
                """,
                [message_id, user_id, emoji, reacted_at],
            )

    def delete_reaction(self, message_id: str, user_id: str) -> bool:
        with self._lock:
            result = self._conn.execute(
                "DELETE FROM reactions WHERE message_id = ? AND user_id = ? RETURNING message_id",
                [message_id, user_id],
            ).fetchone()
            return result is not None
