"""Answerability guardrail for Groundwork RAG.

Decides from retrieval scores alone whether the evidence is strong enough
to let the LLM answer. When it is not, the orchestrator returns a fixed
"I don't know" response instead of calling the model.

The decision is a pure function of the evidence set, the query's tenant
and the configured thresholds.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from groundwork.core.config import GuardrailConfig, GuardrailThresholds
from groundwork.core.types import (
    EvidenceSet,
    GuardrailDecision,
    Query,
    ReasonCode,
    ScoreStats,
)

_MEAN_WEIGHT = 0.4
_MAX_WEIGHT = 0.3
_CONSISTENCY_WEIGHT = 0.2
_COUNT_WEIGHT = 0.1

# Score range at which consistency reaches zero.
_SPREAD_CEILING = 0.8
# Result count at which the count signal saturates.
_COUNT_SATURATION = 5

_IDK_TEMPLATES: dict[ReasonCode, tuple[str, list[str]]] = {
    ReasonCode.NO_RELEVANT_DOCS: (
        "I couldn't find any relevant information in the knowledge base to "
        "answer your question.",
        [
            "Try rephrasing your question with different keywords",
            "Check if your question is within the scope of the available knowledge base",
            "Consider breaking down complex questions into simpler parts",
        ],
    ),
    ReasonCode.LOW_CONFIDENCE: (
        "I don't have enough confidence in the available information to "
        "provide a reliable answer to your question.",
        [
            "Try being more specific in your question",
            "Include additional context or details",
            "Verify that the information you're looking for is available in the knowledge base",
        ],
    ),
    ReasonCode.INSUFFICIENT_EVIDENCE: (
        "The available information doesn't provide a clear answer to your question.",
        [
            "Try rephrasing your question more specifically",
            "Consider asking about related topics that might be covered",
        ],
    ),
}


def score_stats(scores: list[float]) -> ScoreStats:
    if not scores:
        return ScoreStats()
    return ScoreStats(
        mean=sum(scores) / len(scores),
        max=max(scores),
        min=min(scores),
        count=len(scores),
    )


def compute_confidence(stats: ScoreStats) -> float:
    """Blend mean, top score, spread and count into a value in [0, 1]."""
    if stats.count == 0:
        return 0.0

    spread = stats.max - stats.min
    consistency = max(0.0, 1.0 - spread / _SPREAD_CEILING) if spread > 0 else 1.0
    count_signal = min(stats.count / _COUNT_SATURATION, 1.0)

    confidence = (
        min(stats.mean, 1.0) * _MEAN_WEIGHT
        + min(stats.max, 1.0) * _MAX_WEIGHT
        + consistency * _CONSISTENCY_WEIGHT
        + count_signal * _COUNT_WEIGHT
    )
    return round(max(0.0, min(1.0, confidence)), 6)


def load_tenant_overrides(
    path: str | Path,
    base: GuardrailThresholds,
) -> dict[str, GuardrailThresholds]:
    """Load per-tenant thresholds from YAML.

    The file holds a ``tenants`` mapping of tenant id to threshold fields;
    fields a tenant omits are taken from *base*::

        tenants:
          zenithfall:
            min_confidence: 0.75
    """
    with open(path) as fh:
        config = yaml.safe_load(fh) or {}

    return {
        tenant_id: GuardrailThresholds(**{**base.model_dump(), **(fields or {})})
        for tenant_id, fields in config.get("tenants", {}).items()
    }


def _reasoning(stats: ScoreStats, thresholds: GuardrailThresholds) -> str:
    issues: list[str] = []
    if stats.count == 0:
        issues.append("no results found")
    if stats.count and stats.mean < thresholds.min_mean_score:
        issues.append("low average relevance")
    if stats.count and stats.max < thresholds.min_top_score:
        issues.append("low maximum relevance")
    if stats.count < thresholds.min_result_count:
        issues.append("insufficient result count")
    if not issues:
        return "Sufficient confidence in search results"
    return "Low confidence due to: " + ", ".join(issues)


class AnswerabilityGuardrail:
    """Scores evidence and decides whether synthesis may proceed.

    Args:
        config: GuardrailConfig with default and per-tenant thresholds.
    """

    def __init__(self, config: GuardrailConfig | None = None) -> None:
        self.config = config or GuardrailConfig()
        self._overrides: dict[str, GuardrailThresholds] = {}
        if self.config.tenant_overrides_file:
            self._overrides = load_tenant_overrides(
                self.config.tenant_overrides_file, self.config.defaults()
            )
        self._overrides.update(self.config.tenant_overrides)

    def thresholds_for(self, tenant_id: str) -> GuardrailThresholds:
        return self._overrides.get(tenant_id) or self.config.defaults()

    def decide(self, evidence: EvidenceSet, query: Query) -> GuardrailDecision:
        thresholds = self.thresholds_for(query.tenant_id)
        stats = score_stats(evidence.scores())
        confidence = compute_confidence(stats)

        if stats.count == 0:
            return self._reject(ReasonCode.NO_RELEVANT_DOCS, confidence, stats, thresholds)

        if not thresholds.enabled:
            return GuardrailDecision(
                is_answerable=True,
                confidence=confidence,
                reason_code=ReasonCode.GUARDRAIL_DISABLED,
                reasoning="Guardrail disabled",
                score_stats=stats,
            )

        if confidence < thresholds.min_confidence:
            return self._reject(ReasonCode.LOW_CONFIDENCE, confidence, stats, thresholds)

        if (
            stats.count < thresholds.min_result_count
            or stats.max < thresholds.min_top_score
            or stats.mean < thresholds.min_mean_score
        ):
            return self._reject(
                ReasonCode.INSUFFICIENT_EVIDENCE, confidence, stats, thresholds
            )

        return GuardrailDecision(
            is_answerable=True,
            confidence=confidence,
            reason_code=ReasonCode.ANSWERABLE,
            reasoning=_reasoning(stats, thresholds),
            score_stats=stats,
        )

    @staticmethod
    def _reject(
        code: ReasonCode,
        confidence: float,
        stats: ScoreStats,
        thresholds: GuardrailThresholds,
    ) -> GuardrailDecision:
        message, suggestions = _IDK_TEMPLATES[code]
        return GuardrailDecision(
            is_answerable=False,
            confidence=confidence,
            reason_code=code,
            reasoning=_reasoning(stats, thresholds),
            score_stats=stats,
            message=message,
            suggestions=list(suggestions),
        )
