"""Intent extraction: deterministic keyword rules, no external calls.

extract("send me a daily 8am email with today's weather") returns:

    Intent(action="send", integrations=("weather", "email"),
           trigger_kind="schedule", schedule="0 8 * * *",
           node_types=("n8n-nodes-base.openWeatherMap", "n8n-nodes-base.emailSend"),
           domain="productivity", complexity_score=4, ...)

The complexity score is a ranking signal only.  is_complex is reported as a
diagnostic and never gates the pipeline.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Pattern tables (ordered; first match wins where noted)
# ---------------------------------------------------------------------------

# Ordered action table: first matching row wins.
_ACTIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("create", ("create", "build", "make", "set up", "setup", "generate", "add")),
    ("send", ("send", "notify", "alert", "email me", "message", "post", "remind", "text me")),
    ("fetch", ("fetch", "get", "retrieve", "pull", "download", "scrape", "check", "monitor", "watch")),
    ("transform", ("transform", "convert", "format", "clean", "parse", "map", "enrich")),
    ("analyze", ("analyze", "analyse", "summarize", "summarise", "report", "classify", "score")),
    ("sync", ("sync", "synchronize", "synchronise", "mirror", "copy", "backup", "back up", "replicate")),
)

# (integration, keywords, node type).  Several integrations may match one request.
_KNOWN_INTEGRATIONS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("weather", ("weather", "forecast", "temperature"), "n8n-nodes-base.openWeatherMap"),
    ("email", ("email", "e-mail", "smtp"), "n8n-nodes-base.emailSend"),
    ("gmail", ("gmail",), "n8n-nodes-base.gmail"),
    ("slack", ("slack",), "n8n-nodes-base.slack"),
    ("discord", ("discord",), "n8n-nodes-base.discord"),
    ("telegram", ("telegram",), "n8n-nodes-base.telegram"),
    ("microsoft_teams", ("microsoft teams", "ms teams"), "n8n-nodes-base.microsoftTeams"),
    ("twilio", ("twilio", "sms"), "n8n-nodes-base.twilio"),
    ("google_sheets", ("google sheet", "google sheets", "spreadsheet"), "n8n-nodes-base.googleSheets"),
    ("airtable", ("airtable",), "n8n-nodes-base.airtable"),
    ("notion", ("notion",), "n8n-nodes-base.notion"),
    ("github", ("github", "pull request", "repository"), "n8n-nodes-base.github"),
    ("stripe", ("stripe",), "n8n-nodes-base.stripeTrigger"),
    ("salesforce", ("salesforce",), "n8n-nodes-base.salesforce"),
    ("hubspot", ("hubspot",), "n8n-nodes-base.hubspot"),
    ("rss", ("rss", "news feed", "blog feed"), "n8n-nodes-base.rssFeedRead"),
    ("openai", ("openai", "chatgpt", "gpt", "summarize", "summarise"), "n8n-nodes-base.openAi"),
    ("http", ("http", "api", "endpoint", "url"), "n8n-nodes-base.httpRequest"),
)

_WEBHOOK_KEYWORDS = ("webhook", "http post", "incoming request", "form submission")
_SCHEDULE_KEYWORDS = (
    "daily", "hourly", "weekly", "monthly", "every day", "every hour", "every week",
    "every month", "every morning", "every evening", "every night", "each morning",
    "each day", "each week", "cron", "schedule", "scheduled",
)
_EVENT_KEYWORDS = ("when", "whenever", "on new", "new order", "as soon as")

_DOMAINS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("finance", ("invoice", "payment", "stripe", "expense", "billing", "revenue")),
    ("sales", ("crm", "deal", "lead", "salesforce", "hubspot", "pipeline")),
    ("marketing", ("campaign", "newsletter", "social", "seo", "subscriber")),
    ("devops", ("github", "deploy", "build", "incident", "pull request", "server")),
    ("support", ("ticket", "support", "customer", "complaint", "helpdesk")),
    ("data", ("spreadsheet", "database", "sync", "backup", "csv", "report")),
    ("productivity", ("weather", "reminder", "calendar", "todo", "task", "email", "news")),
)

_CONDITIONAL_KEYWORDS = ("if", "unless", "otherwise", "only when", "in case")
_LOOP_KEYWORDS = ("for each", "every item", "each row", "batch", "loop")
_SEQUENCE_KEYWORDS = ("then", "after that", "afterwards", "and also", "next")

_WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")

_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b")
_TIME_24_RE = re.compile(r"\bat\s+(\d{1,2}):(\d{2})\b")
_EVERY_MINUTES_RE = re.compile(r"\bevery\s+(\d{1,2})\s*min(?:ute)?s?\b")
_EVERY_HOURS_RE = re.compile(r"\bevery\s+(\d{1,2})\s*hours?\b")


def _has(text: str, phrase: str) -> bool:
    """Whole-word / whole-phrase containment."""
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


# ---------------------------------------------------------------------------
# Intent
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Intent:
    """Structured reading of a free-text automation request."""

    action: str
    integrations: tuple[str, ...]
    trigger_kind: str
    complexity_score: int
    domain: str
    text: str = ""
    schedule: str | None = None
    node_types: tuple[str, ...] = ()
    is_complex: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["integrations"] = list(self.integrations)
        d["node_types"] = list(self.node_types)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Intent":
        return cls(
            action=d.get("action", "create"),
            integrations=tuple(d.get("integrations") or ()),
            trigger_kind=d.get("trigger_kind", "manual"),
            complexity_score=int(d.get("complexity_score", 0)),
            domain=d.get("domain", "general"),
            text=d.get("text", ""),
            schedule=d.get("schedule"),
            node_types=tuple(d.get("node_types") or ()),
            is_complex=bool(d.get("is_complex", False)),
        )


class IntentExtractor:
    """Rule-based intent extraction.

    complexity_threshold: score at or above which is_complex is set.
    """

    def __init__(self, complexity_threshold: int = 7) -> None:
        self._complexity_threshold = complexity_threshold

    def extract(self, text: str) -> Intent:
        lowered = " ".join(text.lower().split())
        integrations: list[str] = []
        node_types: list[str] = []
        for name, keywords, node_type in _KNOWN_INTEGRATIONS:
            if any(_has(lowered, k) for k in keywords):
                integrations.append(name)
                if node_type not in node_types:
                    node_types.append(node_type)

        trigger_kind = _trigger_kind(lowered)
        complexity = _complexity(lowered, integrations, trigger_kind)
        return Intent(
            action=_action(lowered),
            integrations=tuple(integrations),
            trigger_kind=trigger_kind,
            complexity_score=complexity,
            domain=_domain(lowered),
            text=text.strip(),
            schedule=cron_for(lowered) if trigger_kind == "schedule" else None,
            node_types=tuple(node_types),
            is_complex=complexity >= self._complexity_threshold,
        )


def _action(text: str) -> str:
    for action, keywords in _ACTIONS:
        if any(_has(text, k) for k in keywords):
            return action
    return "create"


def _trigger_kind(text: str) -> str:
    if any(_has(text, k) for k in _WEBHOOK_KEYWORDS):
        return "webhook"
    if any(_has(text, k) for k in _SCHEDULE_KEYWORDS) or _TIME_RE.search(text):
        return "schedule"
    if _EVERY_MINUTES_RE.search(text) or _EVERY_HOURS_RE.search(text):
        return "schedule"
    if any(_has(text, d) for d in _WEEKDAYS):
        return "schedule"
    if any(_has(text, k) for k in _EVENT_KEYWORDS):
        return "event"
    return "manual"


def _domain(text: str) -> str:
    for domain, keywords in _DOMAINS:
        if any(_has(text, k) for k in keywords):
            return domain
    return "general"


def _complexity(text: str, integrations: list[str], trigger_kind: str) -> int:
    score = 1.5 * len(integrations)
    if trigger_kind != "manual":
        score += 1
    score += 2 * sum(1 for k in _CONDITIONAL_KEYWORDS if _has(text, k))
    score += 2 * sum(1 for k in _LOOP_KEYWORDS if _has(text, k))
    score += sum(1 for k in _SEQUENCE_KEYWORDS if _has(text, k))
    if len(text.split()) > 30:
        score += 1
    return max(0, min(10, round(score)))


def cron_for(text: str) -> str:
    """Derive a five-field cron expression from schedule phrasing.

    Defaults to 09:00 when no time of day is given.
    """
    m = _EVERY_MINUTES_RE.search(text)
    if m:
        return f"*/{max(1, min(59, int(m.group(1))))} * * * *"
    m = _EVERY_HOURS_RE.search(text)
    if m:
        return f"0 */{max(1, min(23, int(m.group(1))))} * * *"
    if _has(text, "hourly") or _has(text, "every hour"):
        return "0 * * * *"

    hour, minute = 9, 0
    m = _TIME_RE.search(text)
    if m:
        hour = int(m.group(1)) % 12
        minute = int(m.group(2) or 0)
        if m.group(3) == "pm":
            hour += 12
    else:
        m = _TIME_24_RE.search(text)
        if m:
            hour, minute = int(m.group(1)) % 24, int(m.group(2)) % 60
    if _has(text, "morning") and not m:
        hour = 8
    if _has(text, "evening") and not m:
        hour = 18

    for index, day in enumerate(_WEEKDAYS):
        if _has(text, day):
            return f"{minute} {hour} * * {index}"
    if _has(text, "weekly") or _has(text, "every week"):
        return f"{minute} {hour} * * 1"
    if _has(text, "monthly") or _has(text, "every month"):
        return f"{minute} {hour} 1 * *"
    return f"{minute} {hour} * * *"
