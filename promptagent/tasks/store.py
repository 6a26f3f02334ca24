# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Task stores — one interface, in-memory and SQLite implementations.

The orchestrator talks only to ``TaskStore``; swapping the backend never
changes orchestration logic. Each task id has a single writer, so plain
last-write-wins upserts are enough.
"""
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiosqlite

from promptagent.tasks.models import TaskRecord, TaskStatus, TaskType

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    type TEXT,
    status TEXT,
    created_at REAL,
    updated_at REAL,
    record TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, created_at);

CREATE TABLE IF NOT EXISTS checkpoints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT REFERENCES tasks(task_id),
    state TEXT,
    created_at REAL
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_task ON checkpoints(task_id, id);
"""


class TaskStore(ABC):
    """Key-scoped durable store for task records and checkpoints.

    Records are keyed by task id. ``put`` takes the key from ``record.id``
    rather than a separate argument, so a record can never be stored under
    an id other than its own.
    """

    @abstractmethod
    async def put(self, record: TaskRecord) -> None:
        """Insert or replace the record under ``record.id``."""

    @abstractmethod
    async def get(self, task_id: str) -> Optional[TaskRecord]:
        """Return the record or None."""

    @abstractmethod
    async def list(
        self,
        status: Optional[TaskStatus] = None,
        type: Optional[TaskType] = None,
    ) -> List[TaskRecord]:
        """Records matching the filters, newest first."""

    @abstractmethod
    async def save_checkpoint(self, task_id: str, state: Dict[str, Any]) -> None:
        """Append a resumable state snapshot for ``task_id``."""

    @abstractmethod
    async def latest_checkpoint(self, task_id: str) -> Optional[Dict[str, Any]]:
        """The most recent snapshot, or None."""

    @abstractmethod
    async def cleanup(self, older_than_s: float) -> int:
        """Delete terminal tasks last updated before ``older_than_s`` ago."""

    async def close(self) -> None:
        return None


class MemoryTaskStore(TaskStore):
    """Volatile store; records are copied in and out."""

    def __init__(self) -> None:
        self._tasks: Dict[str, TaskRecord] = {}
        self._checkpoints: Dict[str, List[Dict[str, Any]]] = {}

    async def put(self, record: TaskRecord) -> None:
        self._tasks[record.id] = record.model_copy(deep=True)

    async def get(self, task_id: str) -> Optional[TaskRecord]:
        record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    async def list(self, status=None, type=None) -> List[TaskRecord]:
        records = [
            r for r in self._tasks.values()
            if (status is None or r.status == status) and (type is None or r.type == type)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    async def save_checkpoint(self, task_id: str, state: Dict[str, Any]) -> None:
        self._checkpoints.setdefault(task_id, []).append(json.loads(json.dumps(state)))

    async def latest_checkpoint(self, task_id: str) -> Optional[Dict[str, Any]]:
        snapshots = self._checkpoints.get(task_id)
        if not snapshots:
            return None
        return json.loads(json.dumps(snapshots[-1]))

    async def cleanup(self, older_than_s: float) -> int:
        cutoff = time.time() - older_than_s
        expired = [
            tid for tid, r in self._tasks.items()
            if r.status.is_terminal and r.updated_at < cutoff
        ]
        for tid in expired:
            self._tasks.pop(tid, None)
            self._checkpoints.pop(tid, None)
        return len(expired)


class SQLiteTaskStore(TaskStore):
    """Async SQLite task store; survives process restart."""

    def __init__(self, db_path: str = "~/.promptagent/tasks.db") -> None:
        self._db_path = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open database and create tables."""
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.init()
        return self._db

    async def put(self, record: TaskRecord) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT OR REPLACE INTO tasks (task_id, type, status, created_at, updated_at, record) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.id, record.type.value, record.status.value,
                record.created_at, record.updated_at, record.model_dump_json(),
            ),
        )
        await db.commit()

    async def get(self, task_id: str) -> Optional[TaskRecord]:
        db = await self._ensure_db()
        cursor = await db.execute("SELECT record FROM tasks WHERE task_id = ?", (task_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return TaskRecord.model_validate_json(row[0])

    async def list(self, status=None, type=None) -> List[TaskRecord]:
        db = await self._ensure_db()
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        if type is not None:
            clauses.append("type = ?")
            params.append(TaskType(type).value)
        sql = "SELECT record FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        cursor = await db.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        return [TaskRecord.model_validate_json(r[0]) for r in rows]

    async def save_checkpoint(self, task_id: str, state: Dict[str, Any]) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO checkpoints (task_id, state, created_at) VALUES (?, ?, ?)",
            (task_id, json.dumps(state, ensure_ascii=False), time.time()),
        )
        await db.commit()

    async def latest_checkpoint(self, task_id: str) -> Optional[Dict[str, Any]]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT state FROM checkpoints WHERE task_id = ? ORDER BY id DESC LIMIT 1",
            (task_id,),
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def cleanup(self, older_than_s: float) -> int:
        db = await self._ensure_db()
        cutoff = time.time() - older_than_s
        terminal = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)
        await db.execute(
            "DELETE FROM checkpoints WHERE task_id IN "
            "(SELECT task_id FROM tasks WHERE status IN (?, ?) AND updated_at < ?)",
            terminal + (cutoff,),
        )
        cursor = await db.execute(
            "DELETE FROM tasks WHERE status IN (?, ?) AND updated_at < ?",
            terminal + (cutoff,),
        )
        await db.commit()
        deleted = cursor.rowcount
        if deleted:
            logger.info("Cleaned up %d old tasks", deleted)
        return deleted
