"""Record store: deployment records and feedback entries (aiosqlite).

Two tables share one SQLite file:

  deployments (
      idempotency_key       TEXT PRIMARY KEY,   -- UNIQUE: one record per request key
      saga_state            TEXT NOT NULL,      -- running | committed | compensating | rolled_back
      steps_completed       TEXT NOT NULL,      -- JSON array of step names
      external_workflow_id  TEXT,               -- engine workflow id once created
      status                TEXT NOT NULL,      -- draft | active | inactive
      graph_json            TEXT NOT NULL,
      created_at            REAL NOT NULL,
      updated_at            REAL NOT NULL
  )

  feedback (
      id             INTEGER PRIMARY KEY AUTOINCREMENT,
      kind           TEXT NOT NULL,   -- graceful_failure | capability_gap | saga_rolled_back | unmatched_request
      user_id        TEXT,
      intent         TEXT,            -- Intent.to_dict() JSON
      graph_shape    TEXT,            -- WorkflowGraph.shape() JSON
      diagnosis      TEXT,            -- JSON (diagnoses, issues, alternatives)
      attempt_count  INTEGER DEFAULT 0,
      message        TEXT,
      created_at     REAL NOT NULL
  )

Every call is bounded by the store timeout; asyncio.TimeoutError propagates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any

from autoflow_agent.agent.errors import DuplicateIdempotencyKeyError

logger = logging.getLogger("autoflow_agent.persistence.records")

_CREATE_DEPLOYMENTS = """
CREATE TABLE IF NOT EXISTS deployments (
    idempotency_key      TEXT PRIMARY KEY,
    saga_state           TEXT NOT NULL,
    steps_completed      TEXT NOT NULL DEFAULT '[]',
    external_workflow_id TEXT,
    status               TEXT NOT NULL DEFAULT 'draft',
    graph_json           TEXT NOT NULL DEFAULT '{}',
    created_at           REAL NOT NULL,
    updated_at           REAL NOT NULL
)
"""

_CREATE_FEEDBACK = """
CREATE TABLE IF NOT EXISTS feedback (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    kind          TEXT    NOT NULL,
    user_id       TEXT,
    intent        TEXT,
    graph_shape   TEXT,
    diagnosis     TEXT,
    attempt_count INTEGER DEFAULT 0,
    message       TEXT,
    created_at    REAL    NOT NULL
)
"""

_CREATE_FEEDBACK_INDEX = """
CREATE INDEX IF NOT EXISTS idx_feedback_kind ON feedback (kind, created_at)
"""

_DEPLOYMENT_COLUMNS = (
    "idempotency_key, saga_state, steps_completed, external_workflow_id, "
    "status, graph_json, created_at, updated_at"
)

FEEDBACK_KINDS: tuple[str, ...] = (
    "graceful_failure", "capability_gap", "saga_rolled_back", "unmatched_request",
)


@dataclass
class DeploymentRecord:
    idempotency_key: str
    saga_state: str = "running"
    steps_completed: list[str] = field(default_factory=list)
    external_workflow_id: str | None = None
    status: str = "draft"
    graph_json: str = "{}"
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def committed(self) -> bool:
        return self.saga_state == "committed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "saga_state": self.saga_state,
            "steps_completed": list(self.steps_completed),
            "external_workflow_id": self.external_workflow_id,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class FeedbackEntry:
    kind: str
    message: str
    user_id: str | None = None
    intent: dict[str, Any] | None = None
    graph_shape: dict[str, Any] | None = None
    diagnosis: dict[str, Any] | None = None
    attempt_count: int = 0
    id: int | None = None
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "user_id": self.user_id,
            "intent": self.intent,
            "graph_shape": self.graph_shape,
            "diagnosis": self.diagnosis,
            "attempt_count": self.attempt_count,
            "message": self.message,
            "created_at": self.created_at,
        }


class RecordStore:
    """Async SQLite store for DeploymentRecords and Feedback entries.

    Lifecycle:
        store = await RecordStore.open(db_path)
        ...
        await store.close()
    """

    def __init__(self, db_path: str, timeout: float = 10.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._conn = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute(_CREATE_DEPLOYMENTS)
        await self._conn.execute(_CREATE_FEEDBACK)
        await self._conn.execute(_CREATE_FEEDBACK_INDEX)
        await self._conn.commit()
        logger.info("[RecordStore] Ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str, timeout: float = 10.0) -> "RecordStore":
        store = cls(db_path, timeout=timeout)
        await store.setup()
        return store

    def _require_conn(self):
        if not self._conn:
            raise RuntimeError("RecordStore.setup() not called")
        return self._conn

    async def _write(self, sql: str, params: tuple) -> int:
        conn = self._require_conn()

        async def _run() -> int:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.lastrowid or 0

        return await asyncio.wait_for(_run(), timeout=self._timeout)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    async def insert_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        """Insert a new record; DuplicateIdempotencyKeyError if the key exists."""
        now = time.time()
        record.created_at = record.created_at or now
        record.updated_at = now
        try:
            await self._write(
                f"INSERT INTO deployments ({_DEPLOYMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.idempotency_key,
                    record.saga_state,
                    json.dumps(record.steps_completed),
                    record.external_workflow_id,
                    record.status,
                    record.graph_json,
                    record.created_at,
                    record.updated_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            await self._require_conn().rollback()
            raise DuplicateIdempotencyKeyError(record.idempotency_key) from e
        logger.debug("[RecordStore] Inserted deployment %s", record.idempotency_key)
        return record

    async def update_deployment(self, record: DeploymentRecord) -> None:
        record.updated_at = time.time()
        await self._write(
            "UPDATE deployments SET saga_state = ?, steps_completed = ?, external_workflow_id = ?, "
            "status = ?, graph_json = ?, updated_at = ? WHERE idempotency_key = ?",
            (
                record.saga_state,
                json.dumps(record.steps_completed),
                record.external_workflow_id,
                record.status,
                record.graph_json,
                record.updated_at,
                record.idempotency_key,
            ),
        )

    async def delete_deployment(self, idempotency_key: str) -> None:
        await self._write("DELETE FROM deployments WHERE idempotency_key = ?", (idempotency_key,))
        logger.debug("[RecordStore] Deleted deployment %s", idempotency_key)

    async def get_deployment(self, idempotency_key: str) -> DeploymentRecord | None:
        conn = self._require_conn()

        async def _read() -> Any:
            async with conn.execute(
                f"SELECT {_DEPLOYMENT_COLUMNS} FROM deployments WHERE idempotency_key = ?",
                (idempotency_key,),
            ) as cur:
                return await cur.fetchone()

        row = await asyncio.wait_for(_read(), timeout=self._timeout)
        if row is None:
            return None
        return DeploymentRecord(
            idempotency_key=row["idempotency_key"],
            saga_state=row["saga_state"],
            steps_completed=json.loads(row["steps_completed"] or "[]"),
            external_workflow_id=row["external_workflow_id"],
            status=row["status"],
            graph_json=row["graph_json"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record(self, entry: FeedbackEntry) -> int:
        """Persist one feedback entry and return its id."""
        if entry.kind not in FEEDBACK_KINDS:
            raise ValueError(f"Unknown feedback kind: {entry.kind!r}")
        entry.created_at = entry.created_at or time.time()
        entry.id = await self._write(
            "INSERT INTO feedback (kind, user_id, intent, graph_shape, diagnosis, "
            "attempt_count, message, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.kind,
                entry.user_id,
                _dumps(entry.intent),
                _dumps(entry.graph_shape),
                _dumps(entry.diagnosis),
                entry.attempt_count,
                entry.message,
                entry.created_at,
            ),
        )
        logger.info("[Feedback] Recorded %s entry #%s", entry.kind, entry.id)
        return entry.id

    async def list_feedback(self, kind: str | None = None, limit: int = 50) -> list[FeedbackEntry]:
        conn = self._require_conn()
        sql = (
            "SELECT id, kind, user_id, intent, graph_shape, diagnosis, attempt_count, message, "
            "created_at FROM feedback"
        )
        params: tuple = ()
        if kind:
            sql += " WHERE kind = ?"
            params = (kind,)
        sql += " ORDER BY id DESC LIMIT ?"
        params = params + (limit,)

        async def _read() -> list[Any]:
            async with conn.execute(sql, params) as cur:
                return list(await cur.fetchall())

        rows = await asyncio.wait_for(_read(), timeout=self._timeout)
        return [
            FeedbackEntry(
                id=row["id"],
                kind=row["kind"],
                user_id=row["user_id"],
                intent=_loads(row["intent"]),
                graph_shape=_loads(row["graph_shape"]),
                diagnosis=_loads(row["diagnosis"]),
                attempt_count=row["attempt_count"] or 0,
                message=row["message"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]


def _dumps(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None
