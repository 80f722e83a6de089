"""Pipeline policy settings (pydantic-settings).

Every tunable number the pipeline uses lives here: matcher weights and
threshold, complexity threshold, breaker limits, timeouts, saga retry bounds,
worker pool size, catalog TTL, and storage paths.

Environment variables (all optional):
  AUTOFLOW_MATCH_MIN_CONFIDENCE   template shortcut threshold 0..1 (default: 0.75)
  AUTOFLOW_MATCH_WEIGHTS          JSON object overriding matcher weights
  AUTOFLOW_COMPLEXITY_THRESHOLD   score at which an intent is flagged complex (default: 7)
  AUTOFLOW_BREAKER_THRESHOLD      consecutive provider failures that open a breaker (default: 3)
  AUTOFLOW_BREAKER_COOLDOWN       seconds a breaker stays open (default: 60)
  AUTOFLOW_PROVIDER_TIMEOUT       per-call generation timeout in seconds (default: 60)
  AUTOFLOW_ENGINE_TIMEOUT         per-call engine timeout for dry-run / simulation (default: 30)
  AUTOFLOW_STORE_TIMEOUT          per-call store timeout (default: 10)
  AUTOFLOW_SAGA_MAX_ATTEMPTS      attempts per saga step (default: 3)
  AUTOFLOW_SAGA_COMPENSATION_ATTEMPTS attempts per compensation (default: 3)
  AUTOFLOW_SAGA_INITIAL_DELAY     first backoff delay in seconds (default: 0.5)
  AUTOFLOW_SAGA_MAX_DELAY         backoff cap in seconds (default: 10)
  AUTOFLOW_SAGA_STEP_TIMEOUT      per-attempt step timeout in seconds (default: 30)
  AUTOFLOW_IDEMPOTENCY_WINDOW     seconds a committed deployment is reused (default: 86400)
  AUTOFLOW_MAX_WORKERS            concurrent pipeline runs (default: 4)
  AUTOFLOW_CATALOG_TTL            catalog refresh TTL in seconds (default: 3600)
  AUTOFLOW_CATALOG_TIMEOUT        live introspection timeout in seconds (default: 10)
  AUTOFLOW_CATALOG_CACHE          path of the persisted catalog snapshot
  AUTOFLOW_DB_PATH                SQLite database for records and templates
  AUTOFLOW_DRY_RUN_ENABLED        run the engine dry run stage (default: true)
  AUTOFLOW_SIMULATION_ENABLED     run the execution simulation stage (default: true)
  AUTOFLOW_SIMULATION_POLLS       execution polls before giving up (default: 10)
  AUTOFLOW_SIMULATION_POLL_INTERVAL seconds between polls (default: 1.0)
  AUTOFLOW_RECORD_UNMATCHED       log unmatched requests as feedback (default: true)
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autoflow_agent.agent.matcher import MatchWeights
from autoflow_agent.agent.resilience import RetryPolicy


class PipelineSettings(BaseSettings):
    """Policy knobs for the generation and validation pipeline.

    Instantiate directly (PipelineSettings()) to read the environment / .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    match_min_confidence: float = Field(default=0.75, validation_alias="AUTOFLOW_MATCH_MIN_CONFIDENCE")
    match_weights: dict[str, float] = Field(default_factory=dict, validation_alias="AUTOFLOW_MATCH_WEIGHTS")
    complexity_threshold: int = Field(default=7, validation_alias="AUTOFLOW_COMPLEXITY_THRESHOLD")

    breaker_threshold: int = Field(default=3, validation_alias="AUTOFLOW_BREAKER_THRESHOLD")
    breaker_cooldown: float = Field(default=60.0, validation_alias="AUTOFLOW_BREAKER_COOLDOWN")
    provider_timeout: float = Field(default=60.0, validation_alias="AUTOFLOW_PROVIDER_TIMEOUT")
    engine_timeout: float = Field(default=30.0, validation_alias="AUTOFLOW_ENGINE_TIMEOUT")
    store_timeout: float = Field(default=10.0, validation_alias="AUTOFLOW_STORE_TIMEOUT")

    saga_max_attempts: int = Field(default=3, validation_alias="AUTOFLOW_SAGA_MAX_ATTEMPTS")
    saga_compensation_attempts: int = Field(default=3, validation_alias="AUTOFLOW_SAGA_COMPENSATION_ATTEMPTS")
    saga_initial_delay: float = Field(default=0.5, validation_alias="AUTOFLOW_SAGA_INITIAL_DELAY")
    saga_max_delay: float = Field(default=10.0, validation_alias="AUTOFLOW_SAGA_MAX_DELAY")
    saga_step_timeout: float = Field(default=30.0, validation_alias="AUTOFLOW_SAGA_STEP_TIMEOUT")
    idempotency_window: float = Field(default=86_400.0, validation_alias="AUTOFLOW_IDEMPOTENCY_WINDOW")

    max_workers: int = Field(default=4, validation_alias="AUTOFLOW_MAX_WORKERS")

    catalog_ttl: float = Field(default=3600.0, validation_alias="AUTOFLOW_CATALOG_TTL")
    catalog_timeout: float = Field(default=10.0, validation_alias="AUTOFLOW_CATALOG_TIMEOUT")
    catalog_cache_path: str = Field(
        default=".autoflow/catalog.snapshot.json", validation_alias="AUTOFLOW_CATALOG_CACHE"
    )
    db_path: str = Field(default=".autoflow/autoflow.db", validation_alias="AUTOFLOW_DB_PATH")

    dry_run_enabled: bool = Field(default=True, validation_alias="AUTOFLOW_DRY_RUN_ENABLED")
    simulation_enabled: bool = Field(default=True, validation_alias="AUTOFLOW_SIMULATION_ENABLED")
    simulation_polls: int = Field(default=10, validation_alias="AUTOFLOW_SIMULATION_POLLS")
    simulation_poll_interval: float = Field(default=1.0, validation_alias="AUTOFLOW_SIMULATION_POLL_INTERVAL")
    record_unmatched: bool = Field(default=True, validation_alias="AUTOFLOW_RECORD_UNMATCHED")

    @field_validator("match_min_confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @field_validator("max_workers", "saga_max_attempts", "saga_compensation_attempts",
                     "breaker_threshold", "simulation_polls")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("match_weights", mode="before")
    @classmethod
    def empty_weights(cls, v: Any) -> Any:
        return v or {}

    @classmethod
    def from_env(cls) -> PipelineSettings:
        return cls()

    # ------------------------------------------------------------------
    # Derived policy objects
    # ------------------------------------------------------------------

    def weights(self) -> MatchWeights:
        """MatchWeights with any AUTOFLOW_MATCH_WEIGHTS overrides applied."""
        known = set(MatchWeights.__dataclass_fields__)
        overrides = {k: v for k, v in self.match_weights.items() if k in known}
        return MatchWeights(**overrides)

    def step_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.saga_max_attempts,
            initial_delay=self.saga_initial_delay,
            max_delay=self.saga_max_delay,
            attempt_timeout=self.saga_step_timeout,
        )

    def compensation_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.saga_compensation_attempts,
            initial_delay=self.saga_initial_delay,
            max_delay=self.saga_max_delay,
            attempt_timeout=self.saga_step_timeout,
        )
