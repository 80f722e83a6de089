"""LLM abstraction layer: model-agnostic generation providers.

Two layers:

  ReasoningEngine     one LLM backend (Claude, OpenAI).  complete() sends a
                      conversation and returns text.
  GenerationProvider  what the Generation Orchestrator calls:
                      generate(prompt, schema_context, timeout) -> raw output.
                      LLMProvider adapts any ReasoningEngine; the deterministic
                      BlueprintProvider (agent/blueprint.py) needs no LLM.

New providers implement GenerationProvider and plug into the orchestrator's
priority list without touching orchestration logic.

Also owns ReasoningSettings (provider priority, models, keys, temperature).
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("autoflow_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn. role: "user" | "assistant"."""

    role: str
    content: str | None = None


@dataclass
class EngineResponse:
    content: str | None
    stop_reason: str = "end_turn"  # "end_turn" | "max_tokens"


# ---------------------------------------------------------------------------
# Abstract interfaces
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM backend."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string, e.g. 'anthropic/claude-sonnet-4-6'."""
        ...


class GenerationProvider(ABC):
    """Anything that can turn a prompt plus schema context into workflow JSON text.

    Implementations return raw text; parsing and contract checks belong to
    the Generation Orchestrator.  Raising any exception (or exceeding
    timeout) counts as a provider failure.
    """

    @property
    @abstractmethod
    def provider_id(self) -> str:
        ...

    @abstractmethod
    async def generate(
        self, prompt: str, schema_context: list[dict[str, Any]], timeout: float
    ) -> str:
        ...


# ---------------------------------------------------------------------------
# Provider SDKs (optional extras)
# ---------------------------------------------------------------------------


def _load_sdk(module: str, extra: str) -> Any:
    """Import an optional provider SDK or explain which extra installs it."""
    try:
        return importlib.import_module(module)
    except ImportError as e:
        raise ImportError(
            f"The '{module}' package is required for the {extra} provider. "
            f"Install it with: pip install 'autoflow-agent[{extra}]'"
        ) from e


def _require_key(api_key: str, env_var: str) -> str:
    if not api_key:
        raise ValueError(f"{env_var} is not set; the provider cannot authenticate.")
    return api_key


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Claude via the Anthropic Messages API.

    Requires: pip install 'autoflow-agent[claude]'
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6", max_tokens: int = 8192) -> None:
        sdk = _load_sdk("anthropic", "claude")
        self._client = sdk.AsyncAnthropic(api_key=_require_key(api_key, "ANTHROPIC_API_KEY"))
        self._model = model
        self._max_tokens = max_tokens
        logger.info("[Reasoning] Claude engine ready: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        request: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": temperature,
            "messages": [{"role": m.role, "content": m.content or ""} for m in messages],
        }
        if system:
            request["system"] = system

        logger.debug(
            "[Reasoning] %s: %d messages, ~%d prompt chars",
            self.model_id, len(messages), len(json.dumps(request, default=str)),
        )
        response = await self._client.messages.create(**request)
        text = "".join(block.text for block in response.content if block.type == "text")
        return EngineResponse(
            content=text or None,
            stop_reason="max_tokens" if response.stop_reason == "max_tokens" else "end_turn",
        )


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """OpenAI chat completions in JSON-object mode.

    Requires: pip install 'autoflow-agent[openai]'
    """

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        sdk = _load_sdk("openai", "openai")
        self._client = sdk.AsyncOpenAI(api_key=_require_key(api_key, "OPENAI_API_KEY"))
        self._model = model
        logger.info("[Reasoning] OpenAI engine ready: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        chat = [{"role": "system", "content": system}] if system else []
        chat += [{"role": m.role, "content": m.content or ""} for m in messages]

        logger.debug("[Reasoning] %s: %d messages", self.model_id, len(messages))
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=chat,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        first = response.choices[0]
        return EngineResponse(
            content=first.message.content,
            stop_reason="max_tokens" if first.finish_reason == "length" else "end_turn",
        )


# ---------------------------------------------------------------------------
# LLM-backed generation provider
# ---------------------------------------------------------------------------


_SYSTEM_PROMPT = """\
You generate automation workflows for an n8n-compatible engine.

Respond with ONE JSON object and nothing else:
{"name": str,
 "nodes": [{"id": str, "name": str, "type": str, "typeVersion": int,
            "position": [x, y], "parameters": {...}}],
 "connections": {"<source node name>": {"main": [[{"node": "<target node name>", "type": "main", "index": 0}]]}}}

Rules:
- Use ONLY node types listed in NODE SCHEMAS. Any other type is rejected.
- Start with exactly one trigger node.
- Fill every required parameter; prefer the listed default when unsure.
- Node ids and names must be unique. No cycles.

NODE SCHEMAS:
{schemas}
"""


class LLMProvider(GenerationProvider):
    """Adapts a ReasoningEngine to the GenerationProvider contract."""

    def __init__(self, engine: ReasoningEngine, temperature: float = 0.1) -> None:
        self._engine = engine
        self._temperature = temperature

    @property
    def provider_id(self) -> str:
        return self._engine.model_id

    async def generate(
        self, prompt: str, schema_context: list[dict[str, Any]], timeout: float
    ) -> str:
        system = _SYSTEM_PROMPT.replace("{schemas}", json.dumps(schema_context, indent=1))
        response = await asyncio.wait_for(
            self._engine.complete(
                [Message(role="user", content=prompt)],
                system=system,
                temperature=self._temperature,
            ),
            timeout=timeout,
        )
        if not response.content:
            raise ValueError(f"{self.provider_id} returned an empty response")
        if response.stop_reason == "max_tokens":
            raise ValueError(f"{self.provider_id} output was truncated (max_tokens)")
        return response.content


# ---------------------------------------------------------------------------
# Reasoning settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the generation provider chain.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      REASONING_PROVIDERS          comma-separated priority list (default: "claude,openai")
      REASONING_MODEL_CLAUDE       Claude model (default: claude-sonnet-4-6)
      REASONING_MODEL_OPENAI       OpenAI model (default: gpt-4o)
      ANTHROPIC_API_KEY            enables the "claude" provider
      OPENAI_API_KEY               enables the "openai" provider
      REASONING_TEMPERATURE        sampling temperature 0.0–1.0 (default: 0.1)
      REASONING_BLUEPRINT_FALLBACK append the deterministic blueprint provider (default: true)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    providers: str = Field(default="claude,openai", validation_alias="REASONING_PROVIDERS")
    model_claude: str = Field(default="claude-sonnet-4-6", validation_alias="REASONING_MODEL_CLAUDE")
    model_openai: str = Field(default="gpt-4o", validation_alias="REASONING_MODEL_OPENAI")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.1, validation_alias="REASONING_TEMPERATURE")
    blueprint_fallback: bool = Field(default=True, validation_alias="REASONING_BLUEPRINT_FALLBACK")

    @field_validator("providers", mode="before")
    @classmethod
    def lowercase_providers(cls, v: object) -> str:
        return str(v or "").lower()

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @property
    def provider_order(self) -> list[str]:
        return [p.strip() for p in self.providers.split(",") if p.strip()]

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_engine(name: str, settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate one named reasoning engine from ReasoningSettings."""
    match name:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model_claude,
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model_openai,
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {name!r} "
                f"(expected one of: claude, openai)"
            )


def create_providers(settings: ReasoningSettings) -> list[GenerationProvider]:
    """Build the priority-ordered provider list.

    Providers whose key or package is missing are skipped with a warning.
    The deterministic blueprint provider is appended last when enabled.
    """
    providers: list[GenerationProvider] = []
    for name in settings.provider_order:
        try:
            engine = create_engine(name, settings)
        except (ImportError, ValueError) as e:
            logger.warning("Generation provider %r unavailable: %s", name, e)
            continue
        providers.append(LLMProvider(engine, temperature=settings.temperature))

    if settings.blueprint_fallback:
        from autoflow_agent.agent.blueprint import BlueprintProvider  # local to avoid circular import
        providers.append(BlueprintProvider())

    if not providers:
        raise ValueError(
            "No generation providers configured. Set ANTHROPIC_API_KEY or OPENAI_API_KEY, "
            "or enable REASONING_BLUEPRINT_FALLBACK."
        )
    logger.info("Generation providers: %s", [p.provider_id for p in providers])
    return providers
