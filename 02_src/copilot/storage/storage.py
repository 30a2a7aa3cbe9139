"""SQLite storage implementation."""

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite
import numpy as np

from ..config import resolve_db_path
from ..exceptions import ConversationNotFoundError, InvalidTransitionError
from ..logging_config import get_logger
from ..models import (
    Attachment,
    ContentType,
    ContextType,
    Conversation,
    ConversationContext,
    ConversationStatus,
    ImageFile,
    Message,
    MessageStatus,
    SenderType,
    TechnicianProfile,
    ToolCall,
    ToolCallStatus,
    TraceEvent,
)

logger = get_logger(__name__)

# Allowed conversation status changes
_CONVERSATION_TRANSITIONS = {
    ConversationStatus.ACTIVE: {ConversationStatus.CLOSED, ConversationStatus.ARCHIVED},
    ConversationStatus.CLOSED: set(),
    ConversationStatus.ARCHIVED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(value: str | None, default):
    if value is None:
        return default
    return json.loads(value)


def cosine_distance(a: list[float], b: list[float]) -> float:
    """Cosine distance (1 - cosine similarity) between two vectors."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 1.0
    return 1.0 - float(np.dot(va, vb)) / denom


class IStorage(Protocol):
    """Persistent storage for conversations, messages, tool calls and images."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Conversations
    async def get_or_create_conversation(
        self,
        user_id: str | None,
        job_id: str,
        channel_type: str = "MESSAGING",
        members: list[str] | None = None,
        metadata: dict | None = None,
    ) -> tuple[Conversation, bool]:
        """Return the ACTIVE conversation for (user, job), creating it if absent."""
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        ...

    async def update_conversation_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> Conversation:
        """Move a conversation to a new status."""
        ...

    # Messages
    async def create_with_conversation_update(self, message: Message) -> Message:
        """Insert a message and bump the conversation's updated_at atomically."""
        ...

    async def get_message(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        ...

    async def get_last_messages(
        self, conversation_id: str, count: int
    ) -> list[Message]:
        """Get the most recent non-deleted messages, oldest first."""
        ...

    # Tool calls
    async def record_tool_call(
        self, message_id: str, tool_name: str, tool_input: dict | None = None
    ) -> ToolCall:
        """Record a new PENDING tool call."""
        ...

    async def mark_tool_call_running(self, tool_call_id: str) -> ToolCall:
        """Mark a tool call RUNNING."""
        ...

    async def complete_tool_call(self, tool_call_id: str, output: dict) -> ToolCall:
        """Mark a tool call COMPLETED with its output."""
        ...

    async def fail_tool_call(self, tool_call_id: str, error: str) -> ToolCall:
        """Mark a tool call FAILED with an error."""
        ...

    # Images
    async def save_image_files(self, images: list[ImageFile]) -> None:
        """Save image file rows."""
        ...

    async def get_recent_image_files(
        self, conversation_id: str, limit: int
    ) -> list[ImageFile]:
        """Get image files newest first."""
        ...

    # Profiles
    async def get_technician_profile(self, user_id: str) -> TechnicianProfile | None:
        """Get the technician profile for a user."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")

        # Read and execute schema
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers on the shared connection; commit or roll back."""
        conn = self._require_conn()
        async with self._write_lock:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _fetchone(self, query: str, params=()) -> aiosqlite.Row | None:
        cursor = await self._require_conn().execute(query, params)
        return await cursor.fetchone()

    async def _fetchall(self, query: str, params=()) -> list[aiosqlite.Row]:
        cursor = await self._require_conn().execute(query, params)
        return list(await cursor.fetchall())

    # Conversations
    @staticmethod
    def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            job_id=row["job_id"],
            channel_type=row["channel_type"],
            status=ConversationStatus(row["status"]),
            members=_load_json(row["members"], []),
            metadata=_load_json(row["metadata"], {}),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def get_or_create_conversation(
        self,
        user_id: str | None,
        job_id: str,
        channel_type: str = "MESSAGING",
        members: list[str] | None = None,
        metadata: dict | None = None,
    ) -> tuple[Conversation, bool]:
        """Return the ACTIVE conversation for (user, job), creating it if absent.

        The insert is conditional on no ACTIVE row existing, and the partial
        unique index rejects a concurrent duplicate, so callers never end up
        with two ACTIVE conversations for the same pair.
        """
        now = _now()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            job_id=str(job_id),
            channel_type=channel_type,
            members=list(dict.fromkeys(members or ([user_id] if user_id else []))),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO conversations
                    (id, user_id, job_id, channel_type, status, members, metadata,
                     created_at, updated_at)
                    SELECT ?, ?, ?, ?, 'ACTIVE', ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM conversations
                        WHERE user_id IS ? AND job_id = ? AND status = 'ACTIVE'
                    )
                    """,
                    (
                        conversation.id,
                        conversation.user_id,
                        conversation.job_id,
                        conversation.channel_type,
                        json.dumps(conversation.members),
                        json.dumps(conversation.metadata),
                        _ts(now),
                        _ts(now),
                        conversation.user_id,
                        conversation.job_id,
                    ),
                )
                created = cursor.rowcount == 1
        except aiosqlite.IntegrityError:
            created = False

        if created:
            logger.info(
                "Conversation created",
                extra={"context": {"conversation_id": conversation.id, "job_id": job_id}},
            )
            return conversation, True

        existing = await self.get_active_conversation(user_id, str(job_id))
        if existing is None:
            raise RuntimeError(
                f"Active conversation for job {job_id} vanished during get-or-create"
            )
        return existing, False

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        row = await self._fetchone(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        return self._row_to_conversation(row) if row else None

    async def get_active_conversation(
        self, user_id: str | None, job_id: str
    ) -> Conversation | None:
        """Get the ACTIVE conversation for a (user, job) pair."""
        row = await self._fetchone(
            """
            SELECT * FROM conversations
            WHERE user_id IS ? AND job_id = ? AND status = 'ACTIVE'
            """,
            (user_id, str(job_id)),
        )
        return self._row_to_conversation(row) if row else None

    async def update_conversation_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> Conversation:
        """Move a conversation to a new status.

        Only ACTIVE -> CLOSED/ARCHIVED is allowed.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT status FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise ConversationNotFoundError(conversation_id)
            current = ConversationStatus(row["status"])
            if status not in _CONVERSATION_TRANSITIONS[current]:
                raise InvalidTransitionError("Conversation", current.value, status.value)
            await conn.execute(
                "UPDATE conversations SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _ts(_now()), conversation_id),
            )
        return await self.get_conversation(conversation_id)

    async def _update_members(self, conversation_id: str, update) -> Conversation:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT members FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise ConversationNotFoundError(conversation_id)
            members = update(_load_json(row["members"], []))
            await conn.execute(
                "UPDATE conversations SET members = ?, updated_at = ? WHERE id = ?",
                (json.dumps(members), _ts(_now()), conversation_id),
            )
        return await self.get_conversation(conversation_id)

    async def add_member(self, conversation_id: str, member_id: str) -> Conversation:
        """Add a member, keeping order and uniqueness."""
        return await self._update_members(
            conversation_id, lambda members: list(dict.fromkeys([*members, member_id]))
        )

    async def remove_member(self, conversation_id: str, member_id: str) -> Conversation:
        """Remove a member if present."""
        return await self._update_members(
            conversation_id, lambda members: [m for m in members if m != member_id]
        )

    # Messages
    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_type=SenderType(row["sender_type"]),
            sender_id=row["sender_id"],
            content=row["content"],
            content_type=ContentType(row["content_type"]),
            attachments=[
                Attachment.from_dict(item) for item in _load_json(row["attachments"], [])
            ],
            metadata=_load_json(row["metadata"], {}),
            status=MessageStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def create_with_conversation_update(self, message: Message) -> Message:
        """Insert a message and bump the conversation's updated_at atomically.

        Raises:
            ConversationNotFoundError: conversation does not exist; nothing is written
        """
        message.id = message.id or str(uuid.uuid4())
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO messages
                    (id, conversation_id, sender_type, sender_id, content,
                     content_type, attachments, metadata, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.sender_type.value,
                        message.sender_id,
                        message.content,
                        message.content_type.value,
                        json.dumps([a.to_dict() for a in message.attachments]),
                        json.dumps(message.metadata, default=str),
                        message.status.value,
                        _ts(message.created_at),
                    ),
                )
                cursor = await conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?",
                    (_ts(_now()), message.conversation_id),
                )
                if cursor.rowcount == 0:
                    raise ConversationNotFoundError(message.conversation_id)
        except aiosqlite.IntegrityError as e:
            if "FOREIGN KEY" not in str(e):
                raise
            raise ConversationNotFoundError(message.conversation_id) from e
        return message

    async def get_message(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        row = await self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._row_to_message(row) if row else None

    async def list_messages(
        self,
        conversation_id: str,
        limit: int = 50,
        before: datetime | None = None,
        include_deleted: bool = False,
    ) -> list[Message]:
        """List messages oldest first, optionally only those before a timestamp."""
        conditions = ["conversation_id = ?"]
        params: list = [conversation_id]
        if before:
            conditions.append("created_at < ?")
            params.append(_ts(before))
        if not include_deleted:
            conditions.append("status != 'DELETED'")
        params.append(limit)
        rows = await self._fetchall(
            f"""
            SELECT * FROM (
                SELECT *, rowid AS _seq FROM messages
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at DESC, _seq DESC
                LIMIT ?
            ) ORDER BY created_at ASC, _seq ASC
            """,
            params,
        )
        return [self._row_to_message(row) for row in rows]

    async def get_last_messages(
        self, conversation_id: str, count: int
    ) -> list[Message]:
        """Get the most recent non-deleted messages, oldest first."""
        if count <= 0:
            return []
        return await self.list_messages(conversation_id, limit=count)

    async def update_message_content(self, message_id: str, content: str) -> Message:
        """Replace message content and mark it EDITED."""
        return await self._update_message(
            message_id,
            "content = ?, status = 'EDITED'",
            (content,),
        )

    async def update_message_metadata(self, message_id: str, updates: dict) -> Message:
        """Merge keys into a message's metadata."""
        message = await self.get_message(message_id)
        if message is None:
            raise LookupError(f"Message not found: {message_id}")
        merged = {**message.metadata, **updates}
        return await self._update_message(
            message_id, "metadata = ?", (json.dumps(merged, default=str),)
        )

    async def set_message_status(
        self, message_id: str, status: MessageStatus
    ) -> Message:
        """Set a delivery status (DELIVERED, READ, FAILED, ...)."""
        return await self._update_message(message_id, "status = ?", (status.value,))

    async def soft_delete_message(self, message_id: str) -> Message:
        """Mark a message DELETED; it disappears from listings and history."""
        return await self.set_message_status(message_id, MessageStatus.DELETED)

    async def _update_message(self, message_id: str, assignments: str, params) -> Message:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE messages SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, _ts(_now()), message_id),
            )
            if cursor.rowcount == 0:
                raise LookupError(f"Message not found: {message_id}")
        return await self.get_message(message_id)

    async def find_last_user_image_message(
        self, conversation_id: str
    ) -> Message | None:
        """Get the newest non-deleted IMAGE message sent by a user."""
        row = await self._fetchone(
            """
            SELECT *, rowid AS _seq FROM messages
            WHERE conversation_id = ? AND sender_type = 'USER'
              AND content_type = 'IMAGE' AND status != 'DELETED'
            ORDER BY created_at DESC, _seq DESC
            LIMIT 1
            """,
            (conversation_id,),
        )
        return self._row_to_message(row) if row else None

    async def get_recent_image_messages(
        self, conversation_id: str, limit: int
    ) -> list[Message]:
        """Get non-deleted IMAGE messages newest first."""
        rows = await self._fetchall(
            """
            SELECT *, rowid AS _seq FROM messages
            WHERE conversation_id = ? AND content_type = 'IMAGE'
              AND status != 'DELETED'
            ORDER BY created_at DESC, _seq DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    # Tool calls
    @staticmethod
    def _row_to_tool_call(row: aiosqlite.Row) -> ToolCall:
        return ToolCall(
            id=row["id"],
            message_id=row["message_id"],
            tool_name=row["tool_name"],
            tool_input=_load_json(row["tool_input"], {}),
            tool_output=_load_json(row["tool_output"], None),
            status=ToolCallStatus(row["status"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
        )

    async def record_tool_call(
        self, message_id: str, tool_name: str, tool_input: dict | None = None
    ) -> ToolCall:
        """Record a new PENDING tool call."""
        tool_call = ToolCall(
            id=str(uuid.uuid4()),
            message_id=message_id,
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            started_at=_now(),
        )
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO tool_calls
                (id, message_id, tool_name, tool_input, status, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    tool_call.id,
                    tool_call.message_id,
                    tool_call.tool_name,
                    json.dumps(tool_call.tool_input, default=str),
                    tool_call.status.value,
                    _ts(tool_call.started_at),
                ),
            )
        return tool_call

    async def get_tool_call(self, tool_call_id: str) -> ToolCall | None:
        """Get a tool call by ID."""
        row = await self._fetchone(
            "SELECT * FROM tool_calls WHERE id = ?", (tool_call_id,)
        )
        return self._row_to_tool_call(row) if row else None

    async def get_tool_calls(self, message_id: str) -> list[ToolCall]:
        """Get tool calls of a message in start order."""
        rows = await self._fetchall(
            "SELECT * FROM tool_calls WHERE message_id = ? ORDER BY started_at ASC",
            (message_id,),
        )
        return [self._row_to_tool_call(row) for row in rows]

    async def _finish_tool_call(
        self,
        tool_call_id: str,
        status: ToolCallStatus,
        output: dict | None = None,
        error: str | None = None,
    ) -> ToolCall:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT * FROM tool_calls WHERE id = ?", (tool_call_id,)
            )
            row = await cursor.fetchone()
            if not row:
                raise LookupError(f"Tool call not found: {tool_call_id}")
            current = self._row_to_tool_call(row)
            if current.is_terminal:
                raise InvalidTransitionError(
                    "ToolCall", current.status.value, status.value
                )

            if status == ToolCallStatus.RUNNING:
                await conn.execute(
                    "UPDATE tool_calls SET status = ? WHERE id = ?",
                    (status.value, tool_call_id),
                )
            else:
                completed_at = _now()
                duration_ms = int(
                    (completed_at - current.started_at).total_seconds() * 1000
                )
                await conn.execute(
                    """
                    UPDATE tool_calls
                    SET status = ?, tool_output = ?, error = ?,
                        completed_at = ?, duration_ms = ?
                    WHERE id = ?
                    """,
                    (
                        status.value,
                        json.dumps(output, default=str) if output is not None else None,
                        error,
                        _ts(completed_at),
                        duration_ms,
                        tool_call_id,
                    ),
                )
        return await self.get_tool_call(tool_call_id)

    async def mark_tool_call_running(self, tool_call_id: str) -> ToolCall:
        """Mark a tool call RUNNING."""
        return await self._finish_tool_call(tool_call_id, ToolCallStatus.RUNNING)

    async def complete_tool_call(self, tool_call_id: str, output: dict) -> ToolCall:
        """Mark a tool call COMPLETED with its output."""
        return await self._finish_tool_call(
            tool_call_id, ToolCallStatus.COMPLETED, output=output
        )

    async def fail_tool_call(self, tool_call_id: str, error: str) -> ToolCall:
        """Mark a tool call FAILED with an error."""
        return await self._finish_tool_call(
            tool_call_id, ToolCallStatus.FAILED, error=error
        )

    # Images
    @staticmethod
    def _row_to_image_file(row: aiosqlite.Row) -> ImageFile:
        return ImageFile(
            id=row["id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            storage_key=row["storage_key"],
            mime_type=row["mime_type"],
            filename=row["filename"],
            size=row["size"],
            embedding=_load_json(row["embedding"], None),
            created_at=_parse_ts(row["created_at"]),
        )

    async def save_image_files(self, images: list[ImageFile]) -> None:
        """Save image file rows."""
        if not images:
            return
        async with self._transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO image_files
                (id, conversation_id, message_id, storage_key, mime_type,
                 filename, size, embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        image.id or str(uuid.uuid4()),
                        image.conversation_id,
                        image.message_id,
                        image.storage_key,
                        image.mime_type,
                        image.filename,
                        image.size,
                        json.dumps(image.embedding) if image.embedding else None,
                        _ts(image.created_at),
                    )
                    for image in images
                ],
            )

    async def update_image_embedding(
        self, image_id: str, embedding: list[float]
    ) -> None:
        """Attach an embedding to an image file."""
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE image_files SET embedding = ? WHERE id = ?",
                (json.dumps(embedding), image_id),
            )

    async def get_recent_image_files(
        self, conversation_id: str, limit: int
    ) -> list[ImageFile]:
        """Get image files newest first."""
        rows = await self._fetchall(
            """
            SELECT *, rowid AS _seq FROM image_files
            WHERE conversation_id = ?
            ORDER BY created_at DESC, _seq DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        )
        return [self._row_to_image_file(row) for row in rows]

    async def get_image_files_by_ids(
        self, conversation_id: str, image_ids: list[str]
    ) -> list[ImageFile]:
        """Get image files by ID, scoped to a conversation, in the order given."""
        if not image_ids:
            return []
        placeholders = ",".join("?" * len(image_ids))
        rows = await self._fetchall(
            f"""
            SELECT * FROM image_files
            WHERE conversation_id = ? AND id IN ({placeholders})
            """,
            (conversation_id, *image_ids),
        )
        by_id = {row["id"]: self._row_to_image_file(row) for row in rows}
        return [by_id[i] for i in image_ids if i in by_id]

    async def find_images_by_embedding(
        self, conversation_id: str, query_embedding: list[float], limit: int
    ) -> list[ImageFile]:
        """Get embedded image files ranked by ascending cosine distance."""
        rows = await self._fetchall(
            """
            SELECT * FROM image_files
            WHERE conversation_id = ? AND embedding IS NOT NULL
            """,
            (conversation_id,),
        )
        images = [self._row_to_image_file(row) for row in rows]
        images.sort(key=lambda image: cosine_distance(image.embedding, query_embedding))
        return images[:limit]

    # Contexts
    @staticmethod
    def _row_to_context(row: aiosqlite.Row) -> ConversationContext:
        return ConversationContext(
            id=row["id"],
            conversation_id=row["conversation_id"],
            context_type=ContextType(row["context_type"]),
            content=row["content"],
            embedding=_load_json(row["embedding"], None),
            token_count=row["token_count"],
            metadata=_load_json(row["metadata"], {}),
            expires_at=_parse_ts(row["expires_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    async def create_context(self, context: ConversationContext) -> ConversationContext:
        """Insert a context entry."""
        context.id = context.id or str(uuid.uuid4())
        async with self._transaction() as conn:
            await self._insert_context(conn, context)
        return context

    @staticmethod
    async def _insert_context(
        conn: aiosqlite.Connection, context: ConversationContext
    ) -> None:
        await conn.execute(
            """
            INSERT INTO conversation_contexts
            (id, conversation_id, context_type, content, embedding, token_count,
             metadata, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                context.id,
                context.conversation_id,
                context.context_type.value,
                context.content,
                json.dumps(context.embedding) if context.embedding else None,
                context.token_count,
                json.dumps(context.metadata, default=str),
                _ts(context.expires_at),
                _ts(context.created_at),
            ),
        )

    async def get_contexts(
        self, conversation_id: str, context_type: ContextType | None = None
    ) -> list[ConversationContext]:
        """Get unexpired context entries newest first."""
        conditions = [
            "conversation_id = ?",
            "(expires_at IS NULL OR expires_at > ?)",
        ]
        params: list = [conversation_id, _ts(_now())]
        if context_type:
            conditions.append("context_type = ?")
            params.append(context_type.value)
        rows = await self._fetchall(
            f"""
            SELECT *, rowid AS _seq FROM conversation_contexts
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC, _seq DESC
            """,
            params,
        )
        return [self._row_to_context(row) for row in rows]

    async def get_latest_context(
        self, conversation_id: str, context_type: ContextType
    ) -> ConversationContext | None:
        """Get the newest unexpired entry of a type."""
        contexts = await self.get_contexts(conversation_id, context_type)
        return contexts[0] if contexts else None

    async def upsert_context_by_type(
        self,
        conversation_id: str,
        context_type: ContextType,
        content: str,
        token_count: int = 0,
        metadata: dict | None = None,
        expires_at: datetime | None = None,
    ) -> ConversationContext:
        """Replace the current entry of a type with a new one.

        MEMORY entries are append-only; use store_memory for them.
        """
        if context_type == ContextType.MEMORY:
            raise ValueError("MEMORY contexts are append-only; use store_memory")

        context = ConversationContext(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            context_type=context_type,
            content=content,
            token_count=token_count,
            metadata=dict(metadata or {}),
            expires_at=expires_at,
            created_at=_now(),
        )
        async with self._transaction() as conn:
            await conn.execute(
                """
                DELETE FROM conversation_contexts
                WHERE conversation_id = ? AND context_type = ?
                """,
                (conversation_id, context_type.value),
            )
            await self._insert_context(conn, context)
        return context

    async def store_memory(
        self,
        conversation_id: str,
        content: str,
        token_count: int = 0,
        metadata: dict | None = None,
    ) -> ConversationContext:
        """Append a MEMORY entry."""
        return await self.create_context(
            ConversationContext(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                context_type=ContextType.MEMORY,
                content=content,
                token_count=token_count,
                metadata=dict(metadata or {}),
                created_at=_now(),
            )
        )

    async def delete_expired_contexts(self) -> int:
        """Purge expired context entries. Returns the number removed."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                DELETE FROM conversation_contexts
                WHERE expires_at IS NOT NULL AND expires_at <= ?
                """,
                (_ts(_now()),),
            )
            return cursor.rowcount

    # Profiles
    async def save_technician_profile(self, profile: TechnicianProfile) -> None:
        """Save a technician profile."""
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO technician_profiles
                (user_id, first_name, last_name, role)
                VALUES (?, ?, ?, ?)
                """,
                (profile.user_id, profile.first_name, profile.last_name, profile.role),
            )

    async def get_technician_profile(self, user_id: str) -> TechnicianProfile | None:
        """Get the technician profile for a user."""
        row = await self._fetchone(
            "SELECT * FROM technician_profiles WHERE user_id = ?", (user_id,)
        )
        if not row:
            return None
        return TechnicianProfile(
            user_id=row["user_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
        )

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO trace_events (id, event_type, actor, data, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id or str(uuid.uuid4()),
                    event.event_type,
                    event.actor,
                    json.dumps(event.data, default=str),
                    _ts(event.timestamp),
                ),
            )

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        # Build query dynamically
        conditions = []
        params: list = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_ts(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        rows = await self._fetchall(query, params)

        return [
            TraceEvent(
                id=row["id"],
                event_type=row["event_type"],
                actor=row["actor"],
                data=json.loads(row["data"]),
                timestamp=_parse_ts(row["timestamp"]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        tables = [
            "tool_calls",
            "messages",
            "image_files",
            "conversation_contexts",
            "conversations",
            "technician_profiles",
            "trace_events",
        ]

        async with self._transaction() as conn:
            for table in tables:
                await conn.execute(f"DELETE FROM {table}")
