"""Data access repositories over SQLiteDB.

Each repo takes a SQLiteDB instance via dependency injection. Repositories
are the single entry point for all persistence; there is no direct DB access from
the ingestion pipeline or API routes. Together they form the record store:
get / list / filter by client and date range / upsert.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ContextManager

from chatkpi.db.models import ChatRecord, Client, Conversation, UploadRecord, UploadStatus
from chatkpi.db.sqlite import SQLiteDB
from chatkpi.ingestion.timestamps import from_iso, to_iso

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    """Return the current UTC time as a storage timestamp."""
    return to_iso(datetime.now(timezone.utc))


def _new_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def _bool_to_db(value: bool | None) -> int | None:
    return None if value is None else int(value)


def _bool_from_db(value: int | None) -> bool | None:
    return None if value is None else bool(value)


def _range_clause(
    column: str,
    client_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> tuple[str, list[Any]]:
    """Build a WHERE clause for the optional client / inclusive date bounds."""
    clauses: list[str] = []
    params: list[Any] = []
    if client_id is not None:
        clauses.append("client_id = ?")
        params.append(client_id)
    if start is not None:
        clauses.append(f"{column} >= ?")
        params.append(to_iso(start))
    if end is not None:
        clauses.append(f"{column} <= ?")
        params.append(to_iso(end))
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class ClientRepo:
    """Repository for clients. Deleting a client cascades to its data."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def create(
        self,
        name: str,
        description: str | None = None,
        color: str | None = None,
    ) -> Client:
        """Create a new client and return it."""
        client_id = _new_id()
        self._db.execute(
            "INSERT INTO clients (id, name, description, color, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (client_id, name, description, color, _now_iso()),
        )
        return self.get(client_id)  # type: ignore[return-value]

    def get(self, client_id: str) -> Client | None:
        """Get a client by ID."""
        row = self._db.fetchone("SELECT * FROM clients WHERE id = ?", (client_id,))
        return Client(**row) if row else None

    def list_all(self) -> list[Client]:
        """List all clients, oldest first."""
        rows = self._db.fetchall("SELECT * FROM clients ORDER BY created_at")
        return [Client(**row) for row in rows]

    def update(
        self,
        client_id: str,
        name: str | None = None,
        description: str | None = None,
        color: str | None = None,
    ) -> Client | None:
        """Apply a partial update and return the client (None if unknown)."""
        client = self.get(client_id)
        if client is None:
            return None
        self._db.execute(
            "UPDATE clients SET name = ?, description = ?, color = ? WHERE id = ?",
            (
                name if name is not None else client.name,
                description if description is not None else client.description,
                color if color is not None else client.color,
                client_id,
            ),
        )
        return self.get(client_id)

    def clear_data(self, client_id: str) -> None:
        """Delete the client's conversations, messages and uploads."""
        with self._db.transaction():
            for table in ("conversations", "messages", "uploads"):
                self._db.execute(f"DELETE FROM {table} WHERE client_id = ?", (client_id,))
        logger.info("Cleared data for client %s", client_id)

    def delete(self, client_id: str) -> bool:
        """Delete a client and everything tagged with it."""
        with self._db.transaction():
            cursor = self._db.execute("DELETE FROM clients WHERE id = ?", (client_id,))
            if cursor.rowcount == 0:
                return False
            self.clear_data(client_id)
        logger.info("Deleted client %s", client_id)
        return True

    def count(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) AS n FROM clients")
        return row["n"] if row else 0


class UploadRepo:
    """Repository for upload audit entries."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    @staticmethod
    def _from_row(row: dict[str, Any]) -> UploadRecord:
        warnings = row.pop("warnings")
        return UploadRecord(**row, warnings=json.loads(warnings) if warnings else None)

    def create(self, client_id: str, filename: str, file_size: int) -> UploadRecord:
        """Create an upload entry in PROCESSING state."""
        upload_id = _new_id()
        self._db.execute(
            "INSERT INTO uploads "
            "(id, client_id, filename, file_size, records_count, uploaded_at, status) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                upload_id,
                client_id,
                filename,
                file_size,
                0,
                _now_iso(),
                UploadStatus.PROCESSING.value,
            ),
        )
        return self.get(upload_id)  # type: ignore[return-value]

    def get(self, upload_id: str) -> UploadRecord | None:
        """Get an upload entry by ID."""
        row = self._db.fetchone("SELECT * FROM uploads WHERE id = ?", (upload_id,))
        return self._from_row(row) if row else None

    def _transition(self, upload_id: str, status: UploadStatus, **fields: Any) -> UploadRecord:
        current = self.get(upload_id)
        if current is None:
            raise ValueError(f"Upload not found: {upload_id}")
        if current.status.is_terminal:
            raise ValueError(
                f"Upload {upload_id} is already {current.status}; cannot move to {status}"
            )
        assignments = ", ".join(f"{name} = ?" for name in ("status", *fields))
        self._db.execute(
            f"UPDATE uploads SET {assignments} WHERE id = ?",
            (status.value, *fields.values(), upload_id),
        )
        return self.get(upload_id)  # type: ignore[return-value]

    def mark_success(
        self,
        upload_id: str,
        records_count: int,
        warnings: list[str] | None = None,
    ) -> UploadRecord:
        """Move a PROCESSING upload to SUCCESS."""
        return self._transition(
            upload_id,
            UploadStatus.SUCCESS,
            records_count=records_count,
            warnings=json.dumps(warnings) if warnings else None,
        )

    def mark_failed(self, upload_id: str, error_message: str) -> UploadRecord:
        """Move a PROCESSING upload to FAILED with the captured error text."""
        return self._transition(upload_id, UploadStatus.FAILED, error_message=error_message)

    def list_by_client(self, client_id: str) -> list[UploadRecord]:
        """Uploads for one client, newest first."""
        rows = self._db.fetchall(
            "SELECT * FROM uploads WHERE client_id = ? ORDER BY uploaded_at DESC",
            (client_id,),
        )
        return [self._from_row(row) for row in rows]

    def list_all(self) -> list[UploadRecord]:
        """All uploads, newest first."""
        rows = self._db.fetchall("SELECT * FROM uploads ORDER BY uploaded_at DESC")
        return [self._from_row(row) for row in rows]

    def count(self, client_id: str | None = None) -> int:
        where, params = _range_clause("uploaded_at", client_id, None, None)
        row = self._db.fetchone(f"SELECT COUNT(*) AS n FROM uploads{where}", params)
        return row["n"] if row else 0


class MessageRepo:
    """Append-only store of canonical chat records."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    @staticmethod
    def _from_row(row: dict[str, Any]) -> ChatRecord:
        return ChatRecord(
            conversation_id=row["conversation_id"],
            tenant_id=row["tenant_id"],
            timestamp=from_iso(row["timestamp"]),
            role=row["role"],
            message=row["message"],
            response_time_ms=row["response_time_ms"],
            resolved=_bool_from_db(row["resolved"]),
            satisfaction_score=row["satisfaction_score"],
            client_id=row["client_id"],
            upload_id=row["upload_id"],
        )

    def append(self, records: list[ChatRecord]) -> int:
        """Store records (batch insert). Returns the number of records stored."""
        rows = [
            (
                r.upload_id,
                r.client_id,
                r.conversation_id,
                r.tenant_id,
                to_iso(r.timestamp),
                r.role.value,
                r.message,
                r.response_time_ms,
                _bool_to_db(r.resolved),
                r.satisfaction_score,
            )
            for r in records
        ]
        self._db.executemany(
            "INSERT INTO messages "
            "(upload_id, client_id, conversation_id, tenant_id, timestamp, role, "
            "message, response_time_ms, resolved, satisfaction_score) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        return len(rows)

    def query(
        self,
        client_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ChatRecord]:
        """Records filtered by client and inclusive timestamp bounds, in time order."""
        where, params = _range_clause("timestamp", client_id, start, end)
        rows = self._db.fetchall(
            f"SELECT * FROM messages{where} ORDER BY timestamp, id", params
        )
        return [self._from_row(row) for row in rows]

    def get_by_conversation(
        self,
        conversation_id: str,
        upload_id: str | None = None,
    ) -> list[ChatRecord]:
        """Records of one conversation, optionally restricted to one upload batch."""
        sql = "SELECT * FROM messages WHERE conversation_id = ?"
        params: list[Any] = [conversation_id]
        if upload_id is not None:
            sql += " AND upload_id = ?"
            params.append(upload_id)
        sql += " ORDER BY timestamp, id"
        return [self._from_row(row) for row in self._db.fetchall(sql, params)]

    def count(self, client_id: str | None = None) -> int:
        where, params = _range_clause("timestamp", client_id, None, None)
        row = self._db.fetchone(f"SELECT COUNT(*) AS n FROM messages{where}", params)
        return row["n"] if row else 0

    def unique_tenants(self, client_id: str | None = None) -> list[str]:
        where, params = _range_clause("timestamp", client_id, None, None)
        rows = self._db.fetchall(
            f"SELECT DISTINCT tenant_id FROM messages{where} ORDER BY tenant_id", params
        )
        return [row["tenant_id"] for row in rows]

    def time_range(self, client_id: str | None = None) -> tuple[datetime, datetime] | None:
        """Earliest and latest message timestamps, or None without messages."""
        where, params = _range_clause("timestamp", client_id, None, None)
        row = self._db.fetchone(
            f"SELECT MIN(timestamp) AS first, MAX(timestamp) AS last FROM messages{where}",
            params,
        )
        if row is None or row["first"] is None:
            return None
        return from_iso(row["first"]), from_iso(row["last"])


class ConversationRepo:
    """Conversation aggregates keyed by conversation_id (last write wins)."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    @staticmethod
    def _from_row(row: dict[str, Any]) -> Conversation:
        return Conversation(
            conversation_id=row["conversation_id"],
            tenant_id=row["tenant_id"],
            start_time=from_iso(row["start_time"]),
            end_time=from_iso(row["end_time"]),
            message_count=row["message_count"],
            resolved=bool(row["resolved"]),
            satisfaction_score=row["satisfaction_score"],
            duration=row["duration"],
            client_id=row["client_id"],
            upload_id=row["upload_id"],
        )

    def upsert(self, conversation: Conversation) -> None:
        """Insert or wholesale replace the conversation with the same id."""
        c = conversation
        self._db.execute(
            "INSERT OR REPLACE INTO conversations "
            "(conversation_id, client_id, upload_id, tenant_id, start_time, end_time, "
            "message_count, resolved, satisfaction_score, duration) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                c.conversation_id,
                c.client_id,
                c.upload_id,
                c.tenant_id,
                to_iso(c.start_time),
                to_iso(c.end_time),
                c.message_count,
                int(c.resolved),
                c.satisfaction_score,
                c.duration,
            ),
        )

    def get(self, conversation_id: str) -> Conversation | None:
        row = self._db.fetchone(
            "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
        )
        return self._from_row(row) if row else None

    def query(
        self,
        client_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Conversation]:
        """Conversations filtered by client and inclusive start_time bounds."""
        where, params = _range_clause("start_time", client_id, start, end)
        rows = self._db.fetchall(
            f"SELECT * FROM conversations{where} ORDER BY start_time", params
        )
        return [self._from_row(row) for row in rows]

    def page(
        self,
        limit: int,
        offset: int,
        client_id: str | None = None,
    ) -> list[Conversation]:
        """One page of conversations, most recent start_time first."""
        where, params = _range_clause("start_time", client_id, None, None)
        rows = self._db.fetchall(
            f"SELECT * FROM conversations{where} "
            "ORDER BY start_time DESC, conversation_id LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [self._from_row(row) for row in rows]

    def count(self, client_id: str | None = None) -> int:
        where, params = _range_clause("start_time", client_id, None, None)
        row = self._db.fetchone(f"SELECT COUNT(*) AS n FROM conversations{where}", params)
        return row["n"] if row else 0


@dataclass
class Repositories:
    """Container for all repository instances sharing one SQLiteDB."""

    clients: ClientRepo
    uploads: UploadRepo
    messages: MessageRepo
    conversations: ConversationRepo
    db: SQLiteDB

    @classmethod
    def from_db(cls, db: SQLiteDB) -> "Repositories":
        return cls(
            clients=ClientRepo(db),
            uploads=UploadRepo(db),
            messages=MessageRepo(db),
            conversations=ConversationRepo(db),
            db=db,
        )

    def transaction(self) -> ContextManager[SQLiteDB]:
        """Group writes across repositories into one atomic unit."""
        return self.db.transaction()

    def stats(self, client_id: str | None = None) -> dict[str, int]:
        """Store-wide (or per-client) counts."""
        return {
            "clientsCount": self.clients.count(),
            "conversationsCount": self.conversations.count(client_id),
            "messagesCount": self.messages.count(client_id),
            "uploadsCount": self.uploads.count(client_id),
            "uniqueTenants": len(self.messages.unique_tenants(client_id)),
        }
