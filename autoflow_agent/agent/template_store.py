"""Template library: persistent store of verified workflow graphs.

After every committed deployment the pipeline saves the request's intent
and the deployed graph.  The Template Matcher ranks these candidates for
later requests; a confident match skips generation entirely.

Table schema:
    templates (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        name                TEXT NOT NULL,
        request_text        TEXT NOT NULL,     -- original free-text request
        integrations        TEXT NOT NULL,     -- space-separated integration names (LIKE prefilter)
        action              TEXT NOT NULL,
        trigger_kind        TEXT NOT NULL,
        domain              TEXT NOT NULL,
        complexity_score    INTEGER DEFAULT 0,
        graph_json          TEXT NOT NULL,     -- WorkflowGraph.to_dict() JSON
        created_at          REAL NOT NULL,     -- Unix timestamp
        success_count       INTEGER DEFAULT 1, -- times deployed successfully
        node_types          TEXT DEFAULT '',   -- JSON array of node types in the graph
        catalog_fingerprint TEXT DEFAULT '',   -- catalog snapshot fingerprint at save time
        last_used_at        REAL DEFAULT NULL  -- last time the template short-circuited generation
    )
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from autoflow_agent.agent.compiler import GraphParseError, WorkflowGraph
from autoflow_agent.agent.intent import Intent

logger = logging.getLogger("autoflow_agent.agent.template_store")


@dataclass
class TemplateCandidate:
    """A previously verified graph, described by the intent that produced it."""

    id: int
    name: str
    integrations: tuple[str, ...]
    action: str
    trigger_kind: str
    domain: str
    popularity: int
    complexity_score: int
    graph: WorkflowGraph = field(default_factory=WorkflowGraph)

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "integrations": list(self.integrations),
            "action": self.action,
            "trigger_kind": self.trigger_kind,
            "domain": self.domain,
            "popularity": self.popularity,
            "complexity_score": self.complexity_score,
            "node_types": self.graph.node_types(),
        }


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS templates (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT    NOT NULL,
    request_text        TEXT    NOT NULL,
    integrations        TEXT    NOT NULL,
    action              TEXT    NOT NULL,
    trigger_kind        TEXT    NOT NULL,
    domain              TEXT    NOT NULL,
    complexity_score    INTEGER DEFAULT 0,
    graph_json          TEXT    NOT NULL,
    created_at          REAL    NOT NULL,
    success_count       INTEGER DEFAULT 1,
    node_types          TEXT    DEFAULT '',
    catalog_fingerprint TEXT    DEFAULT '',
    last_used_at        REAL    DEFAULT NULL
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_templates_integrations ON templates (integrations)
"""

_SELECT_COLUMNS = (
    "id, name, integrations, action, trigger_kind, domain, success_count, "
    "complexity_score, graph_json"
)


class TemplateStore:
    """Async SQLite-backed library of verified workflow graphs.

    Lifecycle:
        store = await TemplateStore.open(db_path)
        ...
        await store.close()

    Or create manually:
        store = TemplateStore(db_path)
        await store.setup()
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Open the SQLite connection and create the templates table."""
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute(_CREATE_TABLE)
        await self._conn.execute(_CREATE_INDEX)
        await self._conn.commit()
        logger.info("[TemplateStore] Ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str) -> "TemplateStore":
        """Factory: create + setup in one call."""
        store = cls(db_path)
        await store.setup()
        return store

    def _require_conn(self):
        if not self._conn:
            raise RuntimeError("TemplateStore.setup() not called")
        return self._conn

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def save_template(
        self,
        name: str,
        intent: Intent,
        graph: WorkflowGraph,
        catalog_fingerprint: str = "",
    ) -> int:
        """Save a verified graph together with the intent that produced it.

        Returns the new template ID.
        """
        conn = self._require_conn()
        cur = await conn.execute(
            """
            INSERT INTO templates
                (name, request_text, integrations, action, trigger_kind, domain,
                 complexity_score, graph_json, created_at, node_types, catalog_fingerprint)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                intent.text,
                " ".join(intent.integrations),
                intent.action,
                intent.trigger_kind,
                intent.domain,
                intent.complexity_score,
                json.dumps(graph.to_dict()),
                time.time(),
                json.dumps(graph.node_types()),
                catalog_fingerprint,
            ),
        )
        await conn.commit()
        template_id = cur.lastrowid
        logger.info(
            "[TemplateStore] Saved template id=%d name=%r integrations=%s",
            template_id, name, list(intent.integrations),
        )
        return template_id  # type: ignore[return-value]

    async def increment_success(self, template_id: int) -> None:
        """Bump success_count and last_used_at (called when a template is redeployed)."""
        conn = self._require_conn()
        await conn.execute(
            "UPDATE templates SET success_count = success_count + 1, last_used_at = ? "
            "WHERE id = ?",
            (time.time(), template_id),
        )
        await conn.commit()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_candidates(
        self, integrations: list[str] | tuple[str, ...], limit: int = 20
    ) -> list[TemplateCandidate]:
        """Templates sharing at least one integration with the request.

        Ranked by the number of shared integrations, then success_count.
        With no integrations, the most popular templates are returned.
        """
        conn = self._require_conn()
        words = [w.lower().strip() for w in integrations if w.strip()]

        if words:
            like_clauses = " + ".join(
                "(CASE WHEN (' ' || lower(integrations) || ' ') LIKE ? THEN 1 ELSE 0 END)"
                for _ in words
            )
            query = f"""
                SELECT {_SELECT_COLUMNS}, ({like_clauses}) AS match_score
                FROM templates
                WHERE match_score > 0
                ORDER BY match_score DESC, success_count DESC
                LIMIT ?
            """
            params: list[Any] = [f"% {w} %" for w in words] + [limit]
        else:
            query = f"""
                SELECT {_SELECT_COLUMNS}, 0 AS match_score
                FROM templates
                ORDER BY success_count DESC, created_at DESC
                LIMIT ?
            """
            params = [limit]

        async with conn.execute(query, params) as cur:
            rows = await cur.fetchall()

        candidates = [c for c in (_row_to_candidate(row) for row in rows) if c is not None]
        logger.debug(
            "[TemplateStore] list_candidates(%s) -> %d candidates", words, len(candidates)
        )
        return candidates

    async def list_templates(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recently saved templates as summary dicts."""
        conn = self._require_conn()
        async with conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM templates ORDER BY created_at DESC LIMIT ?",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()
        return [c.to_summary() for c in (_row_to_candidate(row) for row in rows) if c is not None]


def _row_to_candidate(row: Any) -> TemplateCandidate | None:
    try:
        graph = WorkflowGraph.from_json(row[8])
    except GraphParseError as e:
        logger.warning("[TemplateStore] Skipping template id=%s: %s", row[0], e)
        return None
    return TemplateCandidate(
        id=row[0],
        name=row[1],
        integrations=tuple((row[2] or "").split()),
        action=row[3],
        trigger_kind=row[4],
        domain=row[5],
        popularity=int(row[6] or 0),
        complexity_score=int(row[7] or 0),
        graph=graph,
    )
