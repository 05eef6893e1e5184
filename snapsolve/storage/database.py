"""SQLite persistence for problems and their follow-up conversations."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from snapsolve.agents.state import STATUS_SOLVED, ChatMessage, Problem
from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS math_problems (
    id TEXT PRIMARY KEY,
    original_input TEXT NOT NULL,
    extracted_text TEXT,
    latex_format TEXT,
    solution TEXT,
    step_by_step_explanation TEXT,
    title TEXT,
    created_at TEXT NOT NULL,
    input_type TEXT NOT NULL,
    status TEXT NOT NULL,
    image_base64 TEXT
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id TEXT PRIMARY KEY,
    problem_id TEXT NOT NULL REFERENCES math_problems(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    is_user INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_problems_created_at ON math_problems(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_problem_id ON chat_messages(problem_id);
CREATE INDEX IF NOT EXISTS idx_messages_created_at ON chat_messages(created_at);
"""

_PROBLEM_COLUMNS = (
    "id",
    "original_input",
    "extracted_text",
    "latex_format",
    "solution",
    "step_by_step_explanation",
    "title",
    "created_at",
    "input_type",
    "status",
    "image_base64",
)


class StorageError(RuntimeError):
    pass


class ProblemDatabase:
    """Thread-safe SQLite store with an asyncio facade.

    Blocking calls run on worker threads through :func:`asyncio.to_thread`;
    a single connection is shared and serialized by a lock.
    """

    def __init__(self, database_path: str) -> None:
        self.database_path = database_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.database_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if self.database_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        cursor = self._conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'")
        if not cursor.fetchone():
            cursor.executescript(SCHEMA)
            cursor.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            self._conn.commit()
            logger.info("database_initialized path=%s schema_version=%s", self.database_path, SCHEMA_VERSION)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database connection not initialized")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount

    def _fetchall(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return list(self.conn.execute(sql, params).fetchall())

    def _fetchone(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # Synchronous API

    def save_problem_sync(self, problem: Problem) -> None:
        placeholders = ", ".join("?" for _ in _PROBLEM_COLUMNS)
        self._execute(
            "INSERT OR REPLACE INTO math_problems ({}) VALUES ({})".format(", ".join(_PROBLEM_COLUMNS), placeholders),
            tuple(getattr(problem, column) for column in _PROBLEM_COLUMNS),
        )

    def update_problem_sync(self, problem: Problem) -> None:
        columns = [column for column in _PROBLEM_COLUMNS if column != "id"]
        assignments = ", ".join("{} = ?".format(column) for column in columns)
        updated = self._execute(
            "UPDATE math_problems SET {} WHERE id = ?".format(assignments),
            tuple(getattr(problem, column) for column in columns) + (problem.id,),
        )
        if updated == 0:
            raise StorageError("Cannot update unknown problem {}".format(problem.id))

    def get_problem_sync(self, problem_id: str) -> Optional[Problem]:
        row = self._fetchone("SELECT * FROM math_problems WHERE id = ?", (problem_id,))
        return _row_to_problem(row) if row is not None else None

    def list_recent_sync(self, limit: int = 50) -> List[Problem]:
        rows = self._fetchall(
            "SELECT * FROM math_problems ORDER BY created_at DESC LIMIT ?",
            (max(1, int(limit)),),
        )
        return [_row_to_problem(row) for row in rows]

    def search_sync(self, query: str) -> List[Problem]:
        pattern = "%{}%".format(query.strip())
        rows = self._fetchall(
            "SELECT * FROM math_problems "
            "WHERE original_input LIKE ? OR extracted_text LIKE ? OR solution LIKE ? "
            "ORDER BY created_at DESC",
            (pattern, pattern, pattern),
        )
        return [_row_to_problem(row) for row in rows]

    def delete_problem_sync(self, problem_id: str) -> bool:
        with self._lock:
            # Explicit delete keeps the cascade even where foreign keys are off.
            self.conn.execute("DELETE FROM chat_messages WHERE problem_id = ?", (problem_id,))
            cursor = self.conn.execute("DELETE FROM math_problems WHERE id = ?", (problem_id,))
            self.conn.commit()
            return cursor.rowcount > 0

    def save_chat_message_sync(self, message: ChatMessage) -> None:
        self._execute(
            "INSERT INTO chat_messages (id, problem_id, message, is_user, created_at) VALUES (?, ?, ?, ?, ?)",
            (message.id, message.problem_id, message.message, int(message.is_user), message.created_at),
        )

    def list_chat_messages_sync(self, problem_id: str) -> List[ChatMessage]:
        rows = self._fetchall(
            "SELECT * FROM chat_messages WHERE problem_id = ? ORDER BY created_at ASC",
            (problem_id,),
        )
        return [
            ChatMessage(
                id=row["id"],
                problem_id=row["problem_id"],
                message=row["message"],
                is_user=bool(row["is_user"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def stats_sync(self) -> Dict[str, int]:
        row = self._fetchone(
            "SELECT COUNT(*) AS total, "
            "SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS solved "
            "FROM math_problems",
            (STATUS_SOLVED,),
        )
        messages = self._fetchone("SELECT COUNT(*) AS total FROM chat_messages")
        return {
            "total_problems": int(row["total"] or 0) if row else 0,
            "solved_problems": int(row["solved"] or 0) if row else 0,
            "total_messages": int(messages["total"] or 0) if messages else 0,
        }

    # Async API consumed by the orchestrator

    async def save_problem(self, problem: Problem) -> None:
        await asyncio.to_thread(self.save_problem_sync, problem)

    async def update_problem(self, problem: Problem) -> None:
        await asyncio.to_thread(self.update_problem_sync, problem)

    async def get_problem(self, problem_id: str) -> Optional[Problem]:
        return await asyncio.to_thread(self.get_problem_sync, problem_id)

    async def list_recent(self, limit: int = 50) -> List[Problem]:
        return await asyncio.to_thread(self.list_recent_sync, limit)

    async def search(self, query: str) -> List[Problem]:
        return await asyncio.to_thread(self.search_sync, query)

    async def delete_problem(self, problem_id: str) -> bool:
        return await asyncio.to_thread(self.delete_problem_sync, problem_id)

    async def save_chat_message(self, message: ChatMessage) -> None:
        await asyncio.to_thread(self.save_chat_message_sync, message)

    async def list_chat_messages(self, problem_id: str) -> List[ChatMessage]:
        return await asyncio.to_thread(self.list_chat_messages_sync, problem_id)

    async def stats(self) -> Dict[str, int]:
        return await asyncio.to_thread(self.stats_sync)


def _row_to_problem(row: sqlite3.Row) -> Problem:
    return Problem(**{column: row[column] for column in _PROBLEM_COLUMNS})
