"""Capability catalog: sources, copy-on-write refresh, cache persistence, alternatives."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoflow_agent.knowledge.catalog import (
    HTTP_REQUEST_TYPE,
    CapabilityCatalog,
    CapabilitySchema,
    ParamSpec,
    infer_category,
    local_name,
    normalize_node_description,
)


def _live_description(name: str = "n8n-nodes-base.microsoftTeams") -> dict:
    return {
        "name": name,
        "displayName": "Microsoft Teams",
        "group": ["output"],
        "codex": {"categories": ["Communication"]},
        "inputs": ["main"],
        "outputs": ["main"],
        "credentials": [{"name": "microsoftTeamsOAuth2Api", "required": True}],
        "properties": [
            {"name": "resource", "type": "options", "required": True, "default": "channelMessage",
             "options": [{"name": "Channel Message", "value": "channelMessage"}]},
            {"name": "notice", "type": "notice", "default": ""},
            {"name": "message", "type": "string", "required": True, "default": ""},
            {"name": "options", "type": "collection", "default": {}},
        ],
    }


def _client(result) -> MagicMock:
    client = MagicMock()
    client.list_node_types = AsyncMock(return_value=result)
    return client


class _Clock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestNaming:
    def test_local_name(self):
        assert local_name("n8n-nodes-base.openWeatherMap") == "openWeatherMap"
        assert local_name("plain") == "plain"

    @pytest.mark.parametrize("node_type,expected", [
        ("n8n-nodes-base.stripeTrigger", "trigger"),
        ("n8n-nodes-base.if", "flow"),
        ("n8n-nodes-base.microsoftTeams", "notification"),
        ("n8n-nodes-base.postgres", "storage"),
        ("n8n-nodes-base.openAi", "ai"),
        ("n8n-nodes-base.hubspot", "fetch"),
        ("n8n-nodes-base.somethingElse", "utility"),
    ])
    def test_infer_category(self, node_type, expected):
        assert infer_category(node_type) == expected


class TestParamSpec:
    def test_fallback_prefers_default_then_option_then_empty(self):
        assert ParamSpec("a", default="x", options=("y",)).fallback_value() == "x"
        assert ParamSpec("a", type="options", options=("y", "z")).fallback_value() == "y"
        assert ParamSpec("a", type="number").fallback_value() == 0
        assert ParamSpec("a", type="collection").fallback_value() == {}

    def test_fallback_is_a_copy(self):
        spec = ParamSpec("a", type="collection", default={"k": []})
        spec.fallback_value()["k"].append(1)
        assert spec.default == {"k": []}


class TestNormalize:
    def test_live_description(self):
        schema = normalize_node_description(_live_description())
        assert schema.display_name == "Microsoft Teams"
        assert schema.category == "notification"
        assert [p.name for p in schema.required_params] == ["resource", "message"]
        assert [p.name for p in schema.optional_params] == ["options"]
        assert schema.param("resource").options == ("channelMessage",)
        assert schema.credentials == ("microsoftTeamsOAuth2Api",)
        assert schema.trigger is False

    def test_trigger_has_no_inputs(self):
        schema = normalize_node_description(
            {"name": "n8n-nodes-base.githubTrigger", "group": ["trigger"], "properties": []}
        )
        assert schema.trigger is True
        assert schema.category == "trigger"
        assert schema.inputs == ()

    def test_object_ports_and_dynamic_ports(self):
        schema = normalize_node_description({
            "name": "n8n-nodes-base.if",
            "outputs": [{"type": "main"}, {"type": "main"}],
            "inputs": "={{ dynamic }}",
        })
        assert schema.outputs == ("main", "main")
        assert schema.inputs == ("main",)
        assert schema.has_output("main", 1)
        assert not schema.has_output("main", 2)

    def test_nameless_description_rejected(self):
        with pytest.raises(KeyError):
            normalize_node_description({"displayName": "x"})

    def test_from_dict_trigger_defaults(self):
        schema = CapabilitySchema.from_dict({"type": "n8n-nodes-base.manualTrigger", "trigger": True})
        assert schema.inputs == ()
        assert schema.category == "trigger"
        assert schema.display_name == "manualTrigger"


# ---------------------------------------------------------------------------
# Snapshot sources
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_fallback_loaded_without_client(self, catalog):
        snap = catalog.current()
        assert snap.source == "fallback"
        assert "n8n-nodes-base.openWeatherMap" in snap
        assert "n8n-nodes-base.microsoftTeams" not in snap
        assert len(snap.fingerprint) == 64

    def test_case_insensitive_get_but_exact_contains(self, catalog):
        snap = catalog.current()
        assert snap.get("N8N-NODES-BASE.SLACK").node_type == "n8n-nodes-base.slack"
        assert "N8N-NODES-BASE.SLACK" not in snap

    def test_snapshot_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog.current().schemas["x"] = None  # type: ignore[index]

    def test_fingerprint_stable_across_loads(self):
        assert CapabilityCatalog().current().fingerprint == CapabilityCatalog().current().fingerprint

    def test_by_category(self, catalog):
        names = {s.node_type for s in catalog.current().by_category("storage")}
        assert "n8n-nodes-base.googleSheets" in names


class TestRefresh:
    @pytest.mark.asyncio
    async def test_live_refresh_swaps_snapshot_and_persists(self, tmp_path):
        cache = tmp_path / "catalog.json"
        clock = _Clock()
        cat = CapabilityCatalog(
            client=_client([_live_description()]), cache_path=cache, ttl=1e9, clock=clock
        )
        before = cat.current()

        snap = await cat.refresh()

        assert snap.source == "live"
        assert snap is not before
        assert "n8n-nodes-base.microsoftTeams" in snap
        assert before.source == "fallback"
        assert cache.exists()
        meta = json.loads((tmp_path / "catalog.meta.json").read_text())
        assert meta["node_count"] == 1
        assert meta["fetched_at"] == clock.now

    @pytest.mark.asyncio
    async def test_cache_reused_on_restart(self, tmp_path):
        cache = tmp_path / "catalog.json"
        clock = _Clock()
        first = CapabilityCatalog(
            client=_client([_live_description()]), cache_path=cache, ttl=1e9, clock=clock
        )
        live = await first.refresh()

        second = CapabilityCatalog(cache_path=cache, clock=clock)
        snap = second.current()
        assert snap.source == "cache"
        assert snap.fingerprint == live.fingerprint
        assert not second.is_stale()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [
        {"error": "HTTP 500", "status_code": 500},
        {"unexpected": "shape"},
        [],
        [{"displayName": "no name"}],
    ])
    async def test_failed_refresh_keeps_previous(self, tmp_path, result):
        cat = CapabilityCatalog(
            client=_client(result), cache_path=tmp_path / "c.json", ttl=1e9, clock=_Clock()
        )
        before = cat.current()
        after = await cat.refresh()
        assert after is before
        assert not (tmp_path / "c.json").exists()

    @pytest.mark.asyncio
    async def test_timeout_keeps_previous(self):
        async def slow():
            await asyncio.sleep(1)
            return [_live_description()]

        client = MagicMock()
        client.list_node_types = slow
        cat = CapabilityCatalog(client=client, ttl=1e9, timeout=0.01, clock=_Clock())
        before = cat.current()
        assert await cat.refresh() is before

    @pytest.mark.asyncio
    async def test_refresh_without_client_is_noop(self, catalog):
        assert await catalog.refresh() is catalog.current()

    @pytest.mark.asyncio
    async def test_stale_current_schedules_one_background_refresh(self):
        client = _client([_live_description()])
        cat = CapabilityCatalog(client=client, ttl=60, clock=_Clock())
        # Fallback snapshot has fetched_at 0, so it is stale immediately.
        assert cat.current().source == "fallback"
        cat.current()
        await cat._refresh_task
        assert client.list_node_types.await_count == 1
        assert cat.current().source == "live"
        await cat.aclose()

    @pytest.mark.asyncio
    async def test_fetch_returns_schemas(self):
        cat = CapabilityCatalog(client=_client([_live_description()]), ttl=1e9, clock=_Clock())
        schemas = await cat.fetch()
        assert [s.node_type for s in schemas] == ["n8n-nodes-base.microsoftTeams"]


# ---------------------------------------------------------------------------
# Alternatives, grounding, summary
# ---------------------------------------------------------------------------


class TestAlternatives:
    def test_unknown_notification_node(self, catalog):
        alts = catalog.suggest_alternatives("n8n-nodes-base.microsoftTeams")
        assert alts[-1] == HTTP_REQUEST_TYPE
        assert len(alts) <= 4
        assert all(catalog.current().get(a).category == "notification" for a in alts[:-1])

    def test_close_name_match_first(self, catalog):
        alts = catalog.suggest_alternatives("n8n-nodes-base.slak")
        assert alts[0] == "n8n-nodes-base.slack"

    def test_never_empty(self, catalog):
        assert catalog.suggest_alternatives("zzz.qqq") == [HTTP_REQUEST_TYPE]

    def test_grounding_context_is_slim_and_deduplicated(self, catalog):
        ctx = catalog.grounding_context([
            "n8n-nodes-base.openWeatherMap",
            "n8n-nodes-base.openweathermap",
            "n8n-nodes-base.unknown",
        ])
        assert len(ctx) == 1
        assert ctx[0]["optional"] == ["format", "locationSelection"]
        assert ctx[0]["required"][0]["name"] == "operation"

    def test_summary(self, catalog):
        s = catalog.summary()
        assert s["source"] == "fallback"
        assert s["node_count"] == len(s["nodes"])
        assert s["stale"] is True
