"""Configuration for the automation engine HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class EngineSettings:
    """Immutable settings loaded from environment variables."""

    api_key: str = field(repr=False)
    api_endpoint: str = "http://localhost:5678"
    timeout: int = 30
    node_types_path: str = "/node-types"
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> EngineSettings:
        api_key = os.getenv("N8N_API_KEY", "")
        api_endpoint = os.getenv("N8N_API_ENDPOINT", "http://localhost:5678").rstrip("/")
        timeout = int(os.getenv("N8N_TIMEOUT", "30"))
        node_types_path = os.getenv("N8N_NODE_TYPES_PATH", "/node-types")
        log_level = os.getenv("AUTOFLOW_LOG_LEVEL", "WARNING").upper()
        return cls(
            api_key=api_key,
            api_endpoint=api_endpoint,
            timeout=timeout,
            node_types_path=node_types_path,
            log_level=log_level,
        )

    @property
    def base_url(self) -> str:
        return f"{self.api_endpoint}/api/v1"

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["X-N8N-API-KEY"] = self.api_key
        return h
