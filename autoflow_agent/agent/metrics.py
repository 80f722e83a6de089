"""Per-stage timing and counters for one pipeline run.

StageMetrics     frozen snapshot of one stage's counters and duration.
MetricsCollector async context manager; read .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("generate") as m:
        graph = await orchestrator.generate(intent, context, attempts)
        m.provider_calls = len(attempts)
    return {"metrics": [m.to_dict()]}

Pipeline nodes append m.to_dict() to state["metrics"] through their return
dict; the collector never writes to state itself.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


@dataclasses.dataclass(frozen=True)
class StageMetrics:
    """Timing and counter snapshot for one pipeline stage.

    stage:          pipeline node name ("generate", "dry_run", "deploy", ...).
    duration_ms:    (end_ts - start_ts) * 1000.
    provider_calls: generation provider calls made in the stage.
    engine_calls:   automation engine requests issued in the stage.
    issues:         blocking issues found (validation stages).
    failed:         True when the stage exited with an exception.
    """

    stage: str
    start_ts: float
    end_ts: float
    duration_ms: float
    provider_calls: int = 0
    engine_calls: int = 0
    issues: int = 0
    failed: bool = False


class MetricsCollector:
    """Async context manager that records per-stage timing and counters."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self.provider_calls: int = 0
        self.engine_calls: int = 0
        self.issues: int = 0
        self._start_ts: float = 0.0
        self._result: StageMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, *_args: object) -> None:
        end_ts = time.time()
        self._result = StageMetrics(
            stage=self.stage,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            provider_calls=self.provider_calls,
            engine_calls=self.engine_calls,
            issues=self.issues,
            failed=exc_type is not None,
        )

    @property
    def result(self) -> StageMetrics | None:
        """Finalized StageMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        """Finalized StageMetrics as a JSON-serialisable dict ({} before exit)."""
        return dataclasses.asdict(self._result) if self._result is not None else {}
