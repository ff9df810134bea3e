from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any
from uuid import uuid4

from consult_relay.models import (
    ConsultationSession,
    DeliveryState,
    Message,
    MessageKind,
    Role,
    SessionKind,
    SessionStatus,
    utc_now,
)


class SqliteRecordStore:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def create_session(self, session: ConsultationSession) -> None:
        now = utc_now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sessions (
                    id, kind, status, scheduled_at, started_at, ended_at,
                    rating_unlocked, participants_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.kind.value,
                    session.status.value,
                    session.scheduled_at,
                    session.started_at,
                    session.ended_at,
                    1 if session.rating_unlocked else 0,
                    json.dumps({uid: role.value for uid, role in session.participant_roles.items()}),
                    now,
                    now,
                ),
            )
            self._conn.commit()

    async def read_session(self, session_id: str) -> ConsultationSession | None:
        return await asyncio.to_thread(self._read_session, session_id)

    async def compare_and_set_status(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_status: SessionStatus,
        *,
        started_at: str | None = None,
        ended_at: str | None = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._compare_and_set_status, session_id, expected_status, new_status, started_at, ended_at
        )

    async def append_message(self, session_id: str, message: Message) -> tuple[str, int]:
        return await asyncio.to_thread(self._append_message, session_id, message)

    async def backfill_messages(
        self,
        session_id: str,
        since_seq: int = 0,
        until_seq: int | None = None,
    ) -> list[Message]:
        return await asyncio.to_thread(self._backfill_messages, session_id, since_seq, until_seq)

    async def latest_message_seq(self, session_id: str) -> int:
        return await asyncio.to_thread(self._latest_message_seq, session_id)

    async def get_message(self, message_id: str) -> Message | None:
        return await asyncio.to_thread(self._get_message, message_id)

    async def mark_message_read(self, message_id: str, reader_id: str, read_at: str) -> bool:
        return await asyncio.to_thread(self._mark_message_read, message_id, reader_id, read_at)

    async def delete_message(self, message_id: str) -> bool:
        return await asyncio.to_thread(self._delete_message, message_id)

    def _read_session(self, session_id: str) -> ConsultationSession | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE id = ? LIMIT 1",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return ConsultationSession(
            id=row["id"],
            kind=SessionKind(row["kind"]),
            status=SessionStatus(row["status"]),
            scheduled_at=row["scheduled_at"],
            participant_roles={
                uid: Role(role) for uid, role in json.loads(row["participants_json"]).items()
            },
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            rating_unlocked=bool(row["rating_unlocked"]),
        )

    def _compare_and_set_status(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_status: SessionStatus,
        started_at: str | None,
        ended_at: str | None,
    ) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE sessions
                SET status = ?,
                    started_at = CASE WHEN ? IN ('IN_PROGRESS', 'COMPLETED')
                        THEN COALESCE(?, started_at) ELSE NULL END,
                    ended_at = COALESCE(?, ended_at),
                    rating_unlocked = CASE WHEN ? = 'COMPLETED' THEN 1 ELSE rating_unlocked END,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    new_status.value,
                    new_status.value,
                    started_at,
                    ended_at,
                    new_status.value,
                    utc_now(),
                    session_id,
                    expected_status.value,
                ),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def _append_message(self, session_id: str, message: Message) -> tuple[str, int]:
        with self._lock:
            existing = self._conn.execute(
                "SELECT id, seq FROM messages WHERE session_id = ? AND correlation_id = ? LIMIT 1",
                (session_id, message.correlation_id),
            ).fetchone()
            if existing is not None:
                return str(existing["id"]), int(existing["seq"])

            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_seq = int(row["max_seq"]) + 1
            message_id = str(uuid4())
            self._conn.execute(
                """
                INSERT INTO messages (
                    id, session_id, seq, correlation_id, sender_id, kind, body,
                    attachment_ref, reply_to, sent_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    session_id,
                    next_seq,
                    message.correlation_id,
                    message.sender_id,
                    message.kind.value,
                    message.body,
                    message.attachment_ref,
                    message.reply_to,
                    message.sent_at,
                    utc_now(),
                ),
            )
            self._conn.commit()
            return message_id, next_seq

    def _backfill_messages(self, session_id: str, since_seq: int, until_seq: int | None) -> list[Message]:
        query = """
            SELECT *
            FROM messages
            WHERE session_id = ? AND seq > ? AND deleted_at IS NULL
        """
        params: list[Any] = [session_id, max(0, since_seq)]
        if until_seq is not None:
            query += " AND seq <= ?"
            params.append(until_seq)
        query += " ORDER BY seq ASC"
        with self._lock:
            rows = self._conn.execute(query, tuple(params)).fetchall()
            return [self._row_to_message(row) for row in rows]

    def _latest_message_seq(self, session_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return int(row["max_seq"])

    def _get_message(self, message_id: str) -> Message | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE id = ? LIMIT 1",
                (message_id,),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_message(row)

    def _mark_message_read(self, message_id: str, reader_id: str, read_at: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO message_reads (message_id, reader_id, read_at)
                VALUES (?, ?, ?)
                """,
                (message_id, reader_id, read_at),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def _delete_message(self, message_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE messages SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utc_now(), message_id),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        # Caller holds the lock.
        reads = self._conn.execute(
            "SELECT reader_id, read_at FROM message_reads WHERE message_id = ?",
            (row["id"],),
        ).fetchall()
        return Message(
            correlation_id=row["correlation_id"],
            session_id=row["session_id"],
            sender_id=row["sender_id"],
            kind=MessageKind(row["kind"]),
            body=row["body"],
            sent_at=row["sent_at"],
            attachment_ref=row["attachment_ref"],
            reply_to=row["reply_to"],
            server_id=row["id"],
            store_seq=int(row["seq"]),
            delivery_state=DeliveryState.DELIVERED,
            read_by={r["reader_id"]: r["read_at"] for r in reads},
            deleted=row["deleted_at"] is not None,
        )

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL CHECK (kind IN ('AUDIO_VIDEO', 'TEXT')),
                status TEXT NOT NULL CHECK (status IN ('SCHEDULED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')),
                scheduled_at TEXT NOT NULL,
                started_at TEXT NULL,
                ended_at TEXT NULL,
                rating_unlocked INTEGER NOT NULL DEFAULT 0 CHECK (rating_unlocked IN (0, 1)),
                participants_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((started_at IS NOT NULL) = (status IN ('IN_PROGRESS', 'COMPLETED'))),
                CHECK ((ended_at IS NOT NULL) = (status IN ('COMPLETED', 'CANCELLED')))
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                correlation_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('TEXT', 'IMAGE', 'FILE')),
                body TEXT NOT NULL DEFAULT '',
                attachment_ref TEXT NULL,
                reply_to TEXT NULL REFERENCES messages(id) ON DELETE SET NULL,
                sent_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                deleted_at TEXT NULL,
                UNIQUE(session_id, seq),
                UNIQUE(session_id, correlation_id)
            );

            CREATE TABLE IF NOT EXISTS message_reads (
                message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                reader_id TEXT NOT NULL,
                read_at TEXT NOT NULL,
                PRIMARY KEY (message_id, reader_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_message_reads_reader
                ON message_reads(reader_id);
            """
        )
        self._conn.commit()
