"""Template matcher: weighted scoring of verified templates against an intent.

Score components (default weights, decreasing):
    exact_integration     35   same integration set
    partial_integration   25   x Jaccard overlap (only when not exact)
    action                20
    trigger               15
    domain                12
    popularity            10   x log1p(popularity) / log1p(saturation), capped at 1
    complexity             8   / (1 + |complexity difference|)

Partial and exact integration credit are mutually exclusive, so the maximum
possible score is the sum of every weight except partial_integration.
Confidence = top score / maximum possible score.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from autoflow_agent.agent.intent import Intent
from autoflow_agent.agent.template_store import TemplateCandidate

logger = logging.getLogger("autoflow_agent.agent.matcher")


@dataclass(frozen=True)
class MatchWeights:
    exact_integration: float = 35.0
    partial_integration: float = 25.0
    action: float = 20.0
    trigger: float = 15.0
    domain: float = 12.0
    popularity: float = 10.0
    complexity: float = 8.0
    popularity_saturation: int = 100

    @property
    def max_score(self) -> float:
        integration = max(self.exact_integration, self.partial_integration)
        return (
            integration + self.action + self.trigger + self.domain
            + self.popularity + self.complexity
        )


@dataclass(frozen=True)
class RankedTemplate:
    candidate: TemplateCandidate
    score: float
    confidence: float
    breakdown: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.candidate.to_summary(),
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 3),
            "breakdown": {k: round(v, 2) for k, v in self.breakdown.items()},
        }


class TemplateMatcher:
    """Ranks template candidates for an intent.

    min_confidence: at or above this, the top template may replace generation.
    """

    def __init__(self, weights: MatchWeights | None = None, min_confidence: float = 0.75) -> None:
        self.weights = weights or MatchWeights()
        self.min_confidence = min_confidence

    def score(self, intent: Intent, candidate: TemplateCandidate) -> dict[str, float]:
        """Per-component score breakdown for one candidate."""
        w = self.weights
        wanted = set(intent.integrations)
        have = set(candidate.integrations)
        breakdown: dict[str, float] = {}

        exact = bool(wanted) and wanted == have
        if exact:
            breakdown["exact_integration"] = w.exact_integration
        elif wanted and have:
            jaccard = len(wanted & have) / len(wanted | have)
            if jaccard:
                breakdown["partial_integration"] = w.partial_integration * jaccard

        if intent.action == candidate.action:
            breakdown["action"] = w.action
        if intent.trigger_kind == candidate.trigger_kind:
            breakdown["trigger"] = w.trigger
        if intent.domain == candidate.domain:
            breakdown["domain"] = w.domain

        if candidate.popularity > 0:
            scale = math.log1p(candidate.popularity) / math.log1p(max(1, w.popularity_saturation))
            breakdown["popularity"] = w.popularity * min(1.0, scale)

        diff = abs(intent.complexity_score - candidate.complexity_score)
        breakdown["complexity"] = w.complexity / (1 + diff)
        return breakdown

    def match(self, intent: Intent, candidates: list[TemplateCandidate]) -> list[RankedTemplate]:
        """Score every candidate and return them sorted by score, descending."""
        max_score = self.weights.max_score or 1.0
        ranked: list[RankedTemplate] = []
        for candidate in candidates:
            breakdown = self.score(intent, candidate)
            total = sum(breakdown.values())
            ranked.append(RankedTemplate(
                candidate=candidate,
                score=total,
                confidence=min(1.0, total / max_score),
                breakdown=breakdown,
            ))
        ranked.sort(key=lambda r: (r.score, r.candidate.popularity), reverse=True)
        if ranked:
            logger.debug(
                "[Matcher] %d candidates, top=%r confidence=%.3f",
                len(ranked), ranked[0].candidate.name, ranked[0].confidence,
            )
        return ranked

    @staticmethod
    def confidence(ranked: list[RankedTemplate]) -> float:
        return ranked[0].confidence if ranked else 0.0

    def shortcut(self, ranked: list[RankedTemplate]) -> RankedTemplate | None:
        """The top template when its confidence clears min_confidence, else None."""
        if ranked and ranked[0].confidence >= self.min_confidence:
            return ranked[0]
        return None
