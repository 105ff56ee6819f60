# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Lifecycle Record Store: durable sandbox records and their dependent rows."""

import asyncio
import hashlib
import json
import sqlite3
import time
from functools import partial
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

import anyio
from loguru import logger

from coreason_devbox.exceptions import InvalidTransitionError, SandboxNotFoundError
from coreason_devbox.models import ChatHistory, FileSnapshot, SandboxRecord, SandboxStatus, UsageType

T = TypeVar("T")

DEFAULT_GRACE_WINDOW = 15 * 60.0

TERMINAL_STATUSES = (SandboxStatus.STOPPED, SandboxStatus.ERROR)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sandboxes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sandbox_id TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    project_id TEXT,
    name TEXT NOT NULL,
    url TEXT,
    status TEXT NOT NULL,
    started_at REAL NOT NULL,
    last_active_at REAL NOT NULL,
    auto_stop_at REAL NOT NULL,
    is_temporary INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sandboxes_owner ON sandboxes (owner_id);
CREATE INDEX IF NOT EXISTS idx_sandboxes_project ON sandboxes (project_id);
CREATE INDEX IF NOT EXISTS idx_sandboxes_status ON sandboxes (status, auto_stop_at);

CREATE TABLE IF NOT EXISTS file_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sandbox_ref INTEGER NOT NULL,
    project_id TEXT,
    file_path TEXT NOT NULL,
    content TEXT NOT NULL,
    hash TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_sandbox ON file_snapshots (sandbox_ref);

CREATE TABLE IF NOT EXISTS chat_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sandbox_ref INTEGER NOT NULL,
    owner_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    messages_json TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chat_sandbox ON chat_history (sandbox_ref);

CREATE TABLE IF NOT EXISTS usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount REAL NOT NULL,
    timestamp REAL NOT NULL,
    metadata_json TEXT
);
CREATE INDEX IF NOT EXISTS idx_usage_owner ON usage (owner_id, timestamp);
"""


@runtime_checkable
class RecordStore(Protocol):
    """The record operations the orchestrator and the reaper rely on."""

    async def create(
        self,
        owner_id: str,
        sandbox_id: str,
        name: str,
        project_id: str | None = None,
        is_temporary: bool = False,
    ) -> int: ...

    async def get(self, sandbox_id: str) -> SandboxRecord: ...

    async def set_status(self, sandbox_id: str, status: SandboxStatus, url: str | None = None) -> SandboxRecord: ...

    async def touch(self, sandbox_id: str) -> SandboxRecord: ...

    async def list_expired(self, now: float | None = None) -> list[SandboxRecord]: ...

    async def delete(self, sandbox_id: str) -> int: ...

    async def list_for_owner(self, owner_id: str, active_only: bool = False) -> list[SandboxRecord]: ...

    async def track_usage(
        self, owner_id: str, usage_type: UsageType, amount: float, metadata: dict[str, Any] | None = None
    ) -> int: ...

    async def purge_orphans(self) -> int: ...


class SandboxLocks:
    """One advisory asyncio lock per sandbox id, so updates to a record serialize."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_sandbox(self, sandbox_id: str) -> asyncio.Lock:
        lock = self._locks.get(sandbox_id)
        if lock is None:
            lock = self._locks[sandbox_id] = asyncio.Lock()
        return lock

    def discard(self, sandbox_id: str) -> None:
        lock = self._locks.get(sandbox_id)
        if lock is not None and not lock.locked():
            del self._locks[sandbox_id]


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def _to_record(row: sqlite3.Row) -> SandboxRecord:
    return SandboxRecord(
        id=row["id"],
        sandbox_id=row["sandbox_id"],
        owner_id=row["owner_id"],
        project_id=row["project_id"],
        name=row["name"],
        status=SandboxStatus(row["status"]),
        url=row["url"],
        started_at=row["started_at"],
        last_active_at=row["last_active_at"],
        auto_stop_at=row["auto_stop_at"],
        is_temporary=bool(row["is_temporary"]),
    )


class SQLiteRecordStore:
    """SQLite implementation of the RecordStore protocol.

    Each operation opens its own connection in a worker thread. Every write
    that observes activity re-derives ``last_active_at`` and ``auto_stop_at``
    from a single clock reading.
    """

    def __init__(
        self,
        db_path: str | Path = "devbox.db",
        grace_window: float = DEFAULT_GRACE_WINDOW,
        clock: Callable[[], float] = time.time,
        locks: SandboxLocks | None = None,
    ):
        """Initializes the store and creates the schema if needed.

        Args:
            db_path: Path of the SQLite database file.
            grace_window: Seconds between last activity and the auto-stop deadline.
            clock: Source of the current time (epoch seconds).
            locks: Shared per-sandbox lock registry.
        """
        self.db_path = str(db_path)
        self.grace_window = grace_window
        self.clock = clock
        self.locks = locks or SandboxLocks()
        if self.db_path == ":memory:":
            raise ValueError("SQLiteRecordStore requires a file-backed database")
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = _connect(self.db_path)
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await anyio.to_thread.run_sync(partial(func, *args))

    # Sandboxes

    def _create_sync(
        self, owner_id: str, sandbox_id: str, name: str, project_id: str | None, is_temporary: bool
    ) -> int:
        now = self.clock()
        conn = _connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute(
                    "INSERT INTO sandboxes (sandbox_id, owner_id, project_id, name, status, started_at,"
                    " last_active_at, auto_stop_at, is_temporary) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        sandbox_id,
                        owner_id,
                        project_id,
                        name,
                        SandboxStatus.CREATING.value,
                        now,
                        now,
                        now + self.grace_window,
                        int(is_temporary),
                    ),
                )
            return int(cursor.lastrowid or 0)
        finally:
            conn.close()

    async def create(
        self,
        owner_id: str,
        sandbox_id: str,
        name: str,
        project_id: str | None = None,
        is_temporary: bool = False,
    ) -> int:
        """Insert a record in ``creating`` status.

        Returns:
            int: The internal record id.
        """
        record_id = await self._run(self._create_sync, owner_id, sandbox_id, name, project_id, is_temporary)
        logger.info("Sandbox record created", sandbox_id=sandbox_id, owner_id=owner_id, record_id=record_id)
        return record_id

    def _fetch(self, conn: sqlite3.Connection, sandbox_id: str) -> SandboxRecord:
        row = conn.execute("SELECT * FROM sandboxes WHERE sandbox_id = ?", (sandbox_id,)).fetchone()
        if row is None:
            raise SandboxNotFoundError(sandbox_id)
        return _to_record(row)

    def _get_sync(self, sandbox_id: str) -> SandboxRecord:
        conn = _connect(self.db_path)
        try:
            return self._fetch(conn, sandbox_id)
        finally:
            conn.close()

    async def get(self, sandbox_id: str) -> SandboxRecord:
        """Look up a record by its remote sandbox id.

        Raises:
            SandboxNotFoundError: If no record matches.
        """
        return await self._run(self._get_sync, sandbox_id)

    def _set_status_sync(self, sandbox_id: str, status: SandboxStatus, url: str | None) -> SandboxRecord:
        conn = _connect(self.db_path)
        try:
            current = self._fetch(conn, sandbox_id)
            if not current.status.can_transition_to(status):
                raise InvalidTransitionError(sandbox_id, current.status.value, status.value)

            now = self.clock()
            with conn:
                cursor = conn.execute(
                    "UPDATE sandboxes SET status = ?, url = COALESCE(?, url), last_active_at = ?, auto_stop_at = ?"
                    " WHERE id = ? AND status = ?",
                    (status.value, url, now, now + self.grace_window, current.id, current.status.value),
                )
            if cursor.rowcount == 0:
                # Changed underneath us (another process); report against the fresh state.
                fresh = self._fetch(conn, sandbox_id)
                raise InvalidTransitionError(sandbox_id, fresh.status.value, status.value)
            return self._fetch(conn, sandbox_id)
        finally:
            conn.close()

    async def set_status(self, sandbox_id: str, status: SandboxStatus, url: str | None = None) -> SandboxRecord:
        """Move a record to ``status``, optionally recording its server URL.

        Raises:
            SandboxNotFoundError: If no record matches.
            InvalidTransitionError: If the move would go backwards.
        """
        async with self.locks.for_sandbox(sandbox_id):
            record = await self._run(self._set_status_sync, sandbox_id, SandboxStatus(status), url)
        if record.status in TERMINAL_STATUSES:
            self.locks.discard(sandbox_id)
        logger.info(f"Sandbox {sandbox_id} is now {record.status.value}")
        return record

    def _touch_sync(self, sandbox_id: str) -> SandboxRecord:
        now = self.clock()
        conn = _connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute(
                    "UPDATE sandboxes SET last_active_at = ?, auto_stop_at = ? WHERE sandbox_id = ?",
                    (now, now + self.grace_window, sandbox_id),
                )
            if cursor.rowcount == 0:
                raise SandboxNotFoundError(sandbox_id)
            return self._fetch(conn, sandbox_id)
        finally:
            conn.close()

    async def touch(self, sandbox_id: str) -> SandboxRecord:
        """Record activity: push the auto-stop deadline one grace window past now.

        Raises:
            SandboxNotFoundError: If no record matches.
        """
        async with self.locks.for_sandbox(sandbox_id):
            return await self._run(self._touch_sync, sandbox_id)

    def _query_sync(self, sql: str, params: tuple[Any, ...]) -> list[SandboxRecord]:
        conn = _connect(self.db_path)
        try:
            return [_to_record(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    async def list_expired(self, now: float | None = None) -> list[SandboxRecord]:
        """Running records whose auto-stop deadline is strictly before ``now``."""
        now = self.clock() if now is None else now
        return await self._run(
            self._query_sync,
            "SELECT * FROM sandboxes WHERE status = ? AND auto_stop_at < ? ORDER BY auto_stop_at",
            (SandboxStatus.RUNNING.value, now),
        )

    async def list_for_owner(self, owner_id: str, active_only: bool = False) -> list[SandboxRecord]:
        if active_only:
            return await self._run(
                self._query_sync,
                "SELECT * FROM sandboxes WHERE owner_id = ? AND status IN (?, ?) ORDER BY started_at DESC, id DESC",
                (owner_id, SandboxStatus.CREATING.value, SandboxStatus.RUNNING.value),
            )
        return await self._run(
            self._query_sync,
            "SELECT * FROM sandboxes WHERE owner_id = ? ORDER BY started_at DESC, id DESC",
            (owner_id,),
        )

    async def list_for_project(self, project_id: str) -> list[SandboxRecord]:
        return await self._run(
            self._query_sync,
            "SELECT * FROM sandboxes WHERE project_id = ? ORDER BY started_at DESC, id DESC",
            (project_id,),
        )

    def _delete_sync(self, sandbox_id: str) -> int:
        conn = _connect(self.db_path)
        try:
            record = self._fetch(conn, sandbox_id)
            # Children first, each committed on its own; a crash part-way leaves
            # orphans that readers filter out and purge_orphans() removes.
            with conn:
                conn.execute("DELETE FROM file_snapshots WHERE sandbox_ref = ?", (record.id,))
            with conn:
                conn.execute("DELETE FROM chat_history WHERE sandbox_ref = ?", (record.id,))
            with conn:
                conn.execute("DELETE FROM sandboxes WHERE id = ?", (record.id,))
            return record.id
        finally:
            conn.close()

    async def delete(self, sandbox_id: str) -> int:
        """Delete a record together with its snapshots and chat history.

        Returns:
            int: The internal id of the deleted record.

        Raises:
            SandboxNotFoundError: If no record matches.
        """
        async with self.locks.for_sandbox(sandbox_id):
            record_id = await self._run(self._delete_sync, sandbox_id)
        self.locks.discard(sandbox_id)
        logger.info(f"Sandbox record {sandbox_id} deleted")
        return record_id

    # Dependent rows

    def _execute_sync(self, sql: str, params: tuple[Any, ...]) -> int:
        conn = _connect(self.db_path)
        try:
            with conn:
                cursor = conn.execute(sql, params)
            return int(cursor.lastrowid or 0)
        finally:
            conn.close()

    async def add_snapshot(
        self, sandbox_id: str, file_path: str, content: str, project_id: str | None = None
    ) -> int:
        record = await self.get(sandbox_id)
        encoded = content.encode("utf-8")
        return await self._run(
            self._execute_sync,
            "INSERT INTO file_snapshots (sandbox_ref, project_id, file_path, content, hash, size, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                project_id or record.project_id,
                file_path,
                content,
                hashlib.sha256(encoded).hexdigest(),
                len(encoded),
                self.clock(),
            ),
        )

    def _rows_sync(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        conn = _connect(self.db_path)
        try:
            return list(conn.execute(sql, params).fetchall())
        finally:
            conn.close()

    async def list_snapshots(self, sandbox_id: str) -> list[FileSnapshot]:
        rows = await self._run(
            self._rows_sync,
            "SELECT f.* FROM file_snapshots f JOIN sandboxes s ON s.id = f.sandbox_ref"
            " WHERE s.sandbox_id = ? ORDER BY f.id",
            (sandbox_id,),
        )
        return [FileSnapshot(**dict(row)) for row in rows]

    async def add_chat_history(
        self, sandbox_id: str, owner_id: str, session_id: str, messages: list[dict[str, Any]]
    ) -> int:
        record = await self.get(sandbox_id)
        now = self.clock()
        return await self._run(
            self._execute_sync,
            "INSERT INTO chat_history (sandbox_ref, owner_id, session_id, messages_json, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (record.id, owner_id, session_id, json.dumps(messages), now, now),
        )

    async def list_chat_history(self, sandbox_id: str) -> list[ChatHistory]:
        rows = await self._run(
            self._rows_sync,
            "SELECT c.* FROM chat_history c JOIN sandboxes s ON s.id = c.sandbox_ref"
            " WHERE s.sandbox_id = ? ORDER BY c.id",
            (sandbox_id,),
        )
        return [
            ChatHistory(
                id=row["id"],
                sandbox_ref=row["sandbox_ref"],
                owner_id=row["owner_id"],
                session_id=row["session_id"],
                messages=json.loads(row["messages_json"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def _purge_orphans_sync(self) -> int:
        conn = _connect(self.db_path)
        try:
            with conn:
                removed = conn.execute(
                    "DELETE FROM file_snapshots WHERE sandbox_ref NOT IN (SELECT id FROM sandboxes)"
                ).rowcount
                removed += conn.execute(
                    "DELETE FROM chat_history WHERE sandbox_ref NOT IN (SELECT id FROM sandboxes)"
                ).rowcount
            return int(removed)
        finally:
            conn.close()

    async def purge_orphans(self) -> int:
        """Remove snapshots and chat history whose parent record is gone."""
        removed = await self._run(self._purge_orphans_sync)
        if removed:
            logger.info(f"Purged {removed} orphaned child records")
        return removed

    # Usage

    async def track_usage(
        self, owner_id: str, usage_type: UsageType, amount: float, metadata: dict[str, Any] | None = None
    ) -> int:
        return await self._run(
            self._execute_sync,
            "INSERT INTO usage (owner_id, type, amount, timestamp, metadata_json) VALUES (?, ?, ?, ?, ?)",
            (owner_id, UsageType(usage_type).value, amount, self.clock(), json.dumps(metadata or {})),
        )

    async def usage_summary(self, owner_id: str, since: float = 0.0) -> dict[str, float]:
        """Total usage per type for ``owner_id`` since ``since`` (epoch seconds)."""
        rows = await self._run(
            self._rows_sync,
            "SELECT type, SUM(amount) AS total FROM usage WHERE owner_id = ? AND timestamp >= ? GROUP BY type",
            (owner_id, since),
        )
        summary = {usage_type.value: 0.0 for usage_type in UsageType}
        summary.update({row["type"]: float(row["total"]) for row in rows})
        return summary
