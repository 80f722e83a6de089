"""CapabilityCatalog: process-wide registry of engine node types.

Three sources, in order of preference:
  1. Live introspection of the engine (EngineClient.list_node_types).
  2. The last good live snapshot persisted to disk (cache + .meta.json
     fingerprint), reused across restarts.
  3. The bundled static fallback (knowledge/fallback_catalog.json).

Readers call current() and get an immutable CatalogSnapshot without waiting.
refresh() builds a brand-new snapshot and swaps the reference; an existing
snapshot is never mutated.  A failed refresh is logged and the previous
snapshot stays in place.

The full catalog is never injected into prompts.  grounding_context() returns
a slim subset for the node types a request actually needs.
"""

from __future__ import annotations

import asyncio
import copy
import datetime
import difflib
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from autoflow_agent.client.engine_client import error_message, is_engine_error

logger = logging.getLogger("autoflow_agent.knowledge.catalog")

_FALLBACK_PATH = Path(__file__).parent / "fallback_catalog.json"

HTTP_REQUEST_TYPE = "n8n-nodes-base.httpRequest"

CATEGORIES: tuple[str, ...] = (
    "trigger", "fetch", "notification", "storage", "transform", "ai", "flow", "utility",
)

# Local node names (after the package prefix) that always route to "flow".
_FLOW_TYPES: frozenset[str] = frozenset({
    "if", "switch", "merge", "splitinbatches", "wait", "filter", "noop", "loop",
})

# Substring keyword table; first match wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("notification", ("email", "gmail", "slack", "discord", "telegram", "teams",
                      "twilio", "sms", "mattermost", "whatsapp", "pushover")),
    ("storage", ("sheets", "airtable", "notion", "postgres", "mysql", "mongo",
                 "s3", "drive", "dropbox", "supabase", "redis")),
    ("ai", ("openai", "anthropic", "langchain", "gemini", "mistral")),
    ("transform", ("set", "code", "function", "itemlists", "datetime", "html",
                   "xml", "markdown", "crypto")),
    ("fetch", ("http", "weather", "rss", "github", "stripe", "hubspot",
               "salesforce", "shopify", "jira", "trello")),
)

# Node types whose cycles are legal (batch loops feed back into themselves).
_LOOP_KEYWORDS: tuple[str, ...] = ("splitinbatches", "loop")

# n8n property types that only render UI hints and carry no value.
_NON_VALUE_PROPERTY_TYPES: frozenset[str] = frozenset({"notice", "hidden", "button"})

_EMPTY_BY_TYPE: dict[str, Any] = {
    "string": "",
    "number": 0,
    "boolean": False,
    "json": "{}",
    "collection": {},
    "fixedCollection": {},
    "multiOptions": [],
}


def local_name(node_type: str) -> str:
    """'n8n-nodes-base.openWeatherMap' -> 'openWeatherMap'."""
    return node_type.rsplit(".", 1)[-1]


def infer_category(node_type: str, trigger: bool = False) -> str:
    """Best-effort category for a node type from its name."""
    if trigger or local_name(node_type).lower().endswith("trigger"):
        return "trigger"
    lowered = local_name(node_type).lower()
    if lowered in _FLOW_TYPES:
        return "flow"
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return "utility"


# ---------------------------------------------------------------------------
# Schema types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParamSpec:
    """One parameter of a node type.

    type is the engine's property type: string, number, boolean, options,
    multiOptions, json, collection, fixedCollection (others are accepted and
    treated as untyped).
    """

    name: str
    type: str = "string"
    default: Any = None
    options: tuple[Any, ...] = ()

    def fallback_value(self) -> Any:
        """The default, else the first option, else an empty value of the declared type."""
        if self.default is not None:
            return copy.deepcopy(self.default)
        if self.options:
            return self.options[0]
        return copy.deepcopy(_EMPTY_BY_TYPE.get(self.type, ""))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "type": self.type}
        if self.default is not None:
            d["default"] = self.default
        if self.options:
            d["options"] = list(self.options)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ParamSpec":
        return cls(
            name=d["name"],
            type=d.get("type") or "string",
            default=d.get("default"),
            options=tuple(d.get("options") or ()),
        )


@dataclass(frozen=True)
class CapabilitySchema:
    """Per node-type descriptor.

    inputs / outputs list declared port names, one entry per port index
    (e.g. an "if" node has outputs ("main", "main")).  Trigger nodes declare
    no inputs.
    """

    node_type: str
    display_name: str = ""
    category: str = "utility"
    required_params: tuple[ParamSpec, ...] = ()
    optional_params: tuple[ParamSpec, ...] = ()
    inputs: tuple[str, ...] = ("main",)
    outputs: tuple[str, ...] = ("main",)
    credentials: tuple[str, ...] = ()
    trigger: bool = False
    loop: bool = False

    @property
    def all_params(self) -> tuple[ParamSpec, ...]:
        return self.required_params + self.optional_params

    def param(self, name: str) -> ParamSpec | None:
        return next((p for p in self.all_params if p.name == name), None)

    def is_required(self, name: str) -> bool:
        return any(p.name == name for p in self.required_params)

    def has_output(self, port: str, index: int) -> bool:
        return 0 <= index < self.outputs.count(port)

    def has_input(self, port: str, index: int) -> bool:
        return 0 <= index < self.inputs.count(port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.node_type,
            "display_name": self.display_name,
            "category": self.category,
            "trigger": self.trigger,
            "loop": self.loop,
            "required": [p.to_dict() for p in self.required_params],
            "optional": [p.to_dict() for p in self.optional_params],
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "credentials": list(self.credentials),
        }

    def to_grounding(self) -> dict[str, Any]:
        """Slim form for prompts: required params in full, optional by name."""
        return {
            "type": self.node_type,
            "category": self.category,
            "trigger": self.trigger,
            "required": [p.to_dict() for p in self.required_params],
            "optional": [p.name for p in self.optional_params],
            "outputs": len(self.outputs),
            "credentials": list(self.credentials),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CapabilitySchema":
        node_type = d["type"]
        trigger = bool(d.get("trigger", False))
        return cls(
            node_type=node_type,
            display_name=d.get("display_name") or local_name(node_type),
            category=d.get("category") or infer_category(node_type, trigger),
            required_params=tuple(ParamSpec.from_dict(p) for p in d.get("required") or ()),
            optional_params=tuple(ParamSpec.from_dict(p) for p in d.get("optional") or ()),
            inputs=tuple(d.get("inputs", () if trigger else ("main",))),
            outputs=tuple(d.get("outputs", ("main",))),
            credentials=tuple(d.get("credentials") or ()),
            trigger=trigger,
            loop=bool(d.get("loop", False)),
        )


def normalize_node_description(raw: dict[str, Any]) -> CapabilitySchema:
    """Convert one live n8n node-type description into a CapabilitySchema.

    Raises KeyError / TypeError on descriptions without a usable name.
    """
    node_type = raw["name"]
    if not isinstance(node_type, str) or not node_type:
        raise TypeError("node description has no name")
    groups = [str(g).lower() for g in raw.get("group") or ()]
    trigger = "trigger" in groups or local_name(node_type).lower().endswith("trigger")

    required: list[ParamSpec] = []
    optional: list[ParamSpec] = []
    seen: set[str] = set()
    for prop in raw.get("properties") or ():
        if not isinstance(prop, dict) or not prop.get("name"):
            continue
        ptype = prop.get("type") or "string"
        if ptype in _NON_VALUE_PROPERTY_TYPES or prop["name"] in seen:
            continue
        seen.add(prop["name"])
        options = tuple(
            o.get("value", o.get("name")) if isinstance(o, dict) else o
            for o in prop.get("options") or ()
            if ptype in ("options", "multiOptions")
        )
        spec = ParamSpec(
            name=prop["name"],
            type=ptype,
            default=prop.get("default"),
            options=options,
        )
        (required if prop.get("required") else optional).append(spec)

    credentials = tuple(
        c["name"] for c in raw.get("credentials") or ()
        if isinstance(c, dict) and c.get("name") and c.get("required")
    )

    codex_categories = [
        str(c).lower() for c in (raw.get("codex") or {}).get("categories") or ()
    ]
    if trigger:
        category = "trigger"
    elif any("communication" in c for c in codex_categories):
        category = "notification"
    elif any("data & storage" in c for c in codex_categories):
        category = "storage"
    elif any(c in ("ai", "langchain") for c in codex_categories):
        category = "ai"
    else:
        category = infer_category(node_type)

    return CapabilitySchema(
        node_type=node_type,
        display_name=raw.get("displayName") or local_name(node_type),
        category=category,
        required_params=tuple(required),
        optional_params=tuple(optional),
        inputs=() if trigger else _ports(raw.get("inputs")),
        outputs=_ports(raw.get("outputs")),
        credentials=credentials,
        trigger=trigger,
        loop=any(k in local_name(node_type).lower() for k in _LOOP_KEYWORDS),
    )


def _ports(value: Any) -> tuple[str, ...]:
    # Newer engines emit [{"type": "main", ...}]; dynamic ports arrive as an
    # expression string and fall back to a single main port.
    if not isinstance(value, list) or not value:
        return ("main",)
    ports = []
    for p in value:
        if isinstance(p, dict):
            ports.append(str(p.get("type") or "main"))
        else:
            ports.append(str(p))
    return tuple(ports)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of the catalog at one point in time.

    source: "live", "cache" or "fallback".
    """

    schemas: Mapping[str, CapabilitySchema]
    source: str
    fetched_at: float
    fingerprint: str
    _lower: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def build(
        cls, schemas: Iterable[CapabilitySchema], source: str, fetched_at: float
    ) -> "CatalogSnapshot":
        index = {s.node_type: s for s in schemas}
        return cls(
            schemas=MappingProxyType(index),
            source=source,
            fetched_at=fetched_at,
            fingerprint=_fingerprint(index.values()),
            _lower=MappingProxyType({k.lower(): k for k in index}),
        )

    def get(self, node_type: str) -> CapabilitySchema | None:
        """Exact match first, then case-insensitive."""
        schema = self.schemas.get(node_type)
        if schema is not None:
            return schema
        canonical = self._lower.get(node_type.lower())
        return self.schemas.get(canonical) if canonical else None

    def __contains__(self, node_type: object) -> bool:
        return isinstance(node_type, str) and node_type in self.schemas

    def __len__(self) -> int:
        return len(self.schemas)

    @property
    def node_types(self) -> list[str]:
        return sorted(self.schemas)

    def by_category(self, category: str) -> list[CapabilitySchema]:
        return [s for s in self.schemas.values() if s.category == category]


def _serialize(schemas: Iterable[CapabilitySchema]) -> bytes:
    payload = [s.to_dict() for s in sorted(schemas, key=lambda s: s.node_type)]
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def _fingerprint(schemas: Iterable[CapabilitySchema]) -> str:
    return hashlib.sha256(_serialize(schemas)).hexdigest()


def _load_schema_file(path: Path) -> list[CapabilitySchema]:
    entries = json.loads(path.read_text(encoding="utf-8"))
    return [CapabilitySchema.from_dict(e) for e in entries]


# ---------------------------------------------------------------------------
# CapabilityCatalog
# ---------------------------------------------------------------------------


class CapabilityCatalog:
    """Live / cached / fallback node-type registry with copy-on-write refresh.

    Lifecycle:
      - The first current() call loads the disk cache, or the bundled
        fallback when no readable cache exists.
      - When the snapshot is older than ttl, current() schedules at most one
        background refresh and returns immediately.
      - refresh() / fetch() perform the live call inline (bounded by timeout).
    """

    def __init__(
        self,
        client=None,
        cache_path: Path | None = None,
        fallback_path: Path = _FALLBACK_PATH,
        ttl: float = 3600.0,
        timeout: float = 10.0,
        clock=time.time,
    ) -> None:
        self._client = client
        self._cache_path = Path(cache_path) if cache_path else None
        self._fallback_path = Path(fallback_path)
        self._ttl = ttl
        self._timeout = timeout
        self._clock = clock
        self._snapshot: CatalogSnapshot | None = None
        self._refreshed_at: float = 0.0
        self._refresh_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def _meta_path(self) -> Path | None:
        if self._cache_path is None:
            return None
        return self._cache_path.with_name(self._cache_path.stem + ".meta.json")

    def _load_initial(self) -> CatalogSnapshot:
        cached = self._load_cache()
        if cached is not None:
            return cached
        schemas = _load_schema_file(self._fallback_path)
        logger.info(
            "[Catalog] Loaded %d node types from bundled fallback %s",
            len(schemas), self._fallback_path.name,
        )
        return CatalogSnapshot.build(schemas, source="fallback", fetched_at=0.0)

    def _load_cache(self) -> CatalogSnapshot | None:
        if self._cache_path is None or not self._cache_path.exists():
            return None
        try:
            raw_bytes = self._cache_path.read_bytes()
            fetched_at = 0.0
            meta_path = self._meta_path
            if meta_path is not None and meta_path.exists():
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                stored = meta.get("fingerprint")
                if stored and hashlib.sha256(raw_bytes).hexdigest() != stored:
                    logger.warning(
                        "[Catalog] Fingerprint mismatch on %s; cache may be externally "
                        "modified. Proceeding with on-disk content.",
                        self._cache_path,
                    )
                fetched_at = float(meta.get("fetched_at") or 0.0)
            schemas = [CapabilitySchema.from_dict(e) for e in json.loads(raw_bytes)]
        except (OSError, ValueError, KeyError, TypeError):
            logger.exception("[Catalog] Failed to load cache %s; using fallback", self._cache_path)
            return None
        if not schemas:
            return None
        logger.info("[Catalog] Loaded %d node types from cache", len(schemas))
        return CatalogSnapshot.build(schemas, source="cache", fetched_at=fetched_at)

    def _persist(self, snapshot: CatalogSnapshot) -> None:
        """Write the snapshot to the cache file and its fingerprint to the meta file."""
        if self._cache_path is None:
            return
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            content = _serialize(snapshot.schemas.values())
            self._cache_path.write_bytes(content)
            meta = {
                "fingerprint": hashlib.sha256(content).hexdigest(),
                "generated_at": datetime.datetime.now(datetime.timezone.utc)
                .isoformat().replace("+00:00", "Z"),
                "fetched_at": snapshot.fetched_at,
                "node_count": len(snapshot),
                "source": snapshot.source,
            }
            self._meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")
        except OSError:
            logger.exception("[Catalog] Failed to persist cache to %s", self._cache_path)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def _ensure_loaded(self) -> CatalogSnapshot:
        if self._snapshot is None:
            self._snapshot = self._load_initial()
            self._refreshed_at = self._snapshot.fetched_at
        return self._snapshot

    def current(self) -> CatalogSnapshot:
        """Return the current snapshot without waiting on any I/O."""
        self._ensure_loaded()
        if self.is_stale():
            self._schedule_refresh()
        return self._snapshot

    def is_stale(self) -> bool:
        return self._clock() - self._refreshed_at >= self._ttl

    def _schedule_refresh(self) -> None:
        if self._client is None:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refresh_task = loop.create_task(self.refresh())
        logger.debug("[Catalog] Background refresh scheduled")

    async def refresh(self) -> CatalogSnapshot:
        """Try a live introspection call; swap in the result on success.

        On any failure the current snapshot is kept and returned.
        """
        previous = self._ensure_loaded()
        if self._client is None:
            return previous
        # Failed attempts also restart the TTL window.
        self._refreshed_at = self._clock()
        try:
            raw = await asyncio.wait_for(self._client.list_node_types(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[Catalog] Live refresh timed out after %.1fs; keeping %s snapshot",
                self._timeout, previous.source,
            )
            return previous
        if is_engine_error(raw):
            logger.warning(
                "[Catalog] Live refresh failed (%s); keeping %s snapshot",
                error_message(raw), previous.source,
            )
            return previous
        if not isinstance(raw, list):
            logger.warning("[Catalog] Unexpected introspection payload %s", type(raw).__name__)
            return previous

        schemas: list[CapabilitySchema] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                schemas.append(normalize_node_description(entry))
            except (KeyError, TypeError) as e:
                logger.debug("[Catalog] Skipping node description: %s", e)
        if not schemas:
            logger.warning("[Catalog] Live refresh returned no node types; keeping snapshot")
            return previous

        snapshot = CatalogSnapshot.build(schemas, source="live", fetched_at=self._clock())
        self._snapshot = snapshot
        self._persist(snapshot)
        logger.info(
            "[Catalog] Refreshed %d node types from engine (fingerprint %s)",
            len(snapshot), snapshot.fingerprint[:12],
        )
        return snapshot

    async def fetch(self) -> list[CapabilitySchema]:
        """Refresh from the engine when possible and return every schema."""
        snapshot = await self.refresh()
        return list(snapshot.schemas.values())

    async def aclose(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get(self, node_type: str) -> CapabilitySchema | None:
        return self.current().get(node_type)

    def suggest_alternatives(
        self, node_type: str, limit: int = 4, snapshot: CatalogSnapshot | None = None
    ) -> list[str]:
        """Catalog node types that could stand in for an unknown one.

        Close name matches first, then nodes of the same inferred category,
        then the generic HTTP request node.  Never empty.
        """
        if snapshot is None:
            snapshot = self.current()
        by_local = {local_name(t).lower(): t for t in snapshot.schemas}
        wanted = local_name(node_type).lower()

        suggestions: list[str] = []
        for close in difflib.get_close_matches(wanted, list(by_local), n=limit, cutoff=0.6):
            suggestions.append(by_local[close])

        category = infer_category(node_type)
        if category not in ("utility", "trigger"):
            for schema in sorted(snapshot.by_category(category), key=lambda s: s.node_type):
                if schema.node_type not in suggestions and not schema.trigger:
                    suggestions.append(schema.node_type)

        suggestions = [s for s in suggestions if s != HTTP_REQUEST_TYPE][: max(limit - 1, 1)]
        suggestions.append(HTTP_REQUEST_TYPE)
        return suggestions

    def grounding_context(self, node_types: Iterable[str]) -> list[dict[str, Any]]:
        """Slim schemas for the given node types only (unknown types skipped)."""
        snapshot = self.current()
        out: list[dict[str, Any]] = []
        seen: set[str] = set()
        for t in node_types:
            schema = snapshot.get(t)
            if schema is None or schema.node_type in seen:
                continue
            seen.add(schema.node_type)
            out.append(schema.to_grounding())
        return out

    def summary(self) -> dict[str, Any]:
        """Catalog metadata plus a compact node list (for the /catalog endpoint)."""
        snapshot = self.current()
        return {
            "source": snapshot.source,
            "fingerprint": snapshot.fingerprint,
            "node_count": len(snapshot),
            "stale": self.is_stale(),
            "nodes": [
                {
                    "type": s.node_type,
                    "display_name": s.display_name,
                    "category": s.category,
                    "trigger": s.trigger,
                }
                for s in sorted(snapshot.schemas.values(), key=lambda s: s.node_type)
            ],
        }
