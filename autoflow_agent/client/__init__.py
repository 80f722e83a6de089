"""Automation engine HTTP client."""

from autoflow_agent.client.config import EngineSettings
from autoflow_agent.client.engine_client import (
    EngineClient,
    EngineError,
    error_message,
    is_engine_error,
    raise_for_engine_error,
)

__all__ = [
    "EngineClient",
    "EngineError",
    "EngineSettings",
    "error_message",
    "is_engine_error",
    "raise_for_engine_error",
]
