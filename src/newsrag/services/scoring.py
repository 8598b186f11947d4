"""Confidence grading of a retrieval and answer pair."""

from __future__ import annotations

from dataclasses import dataclass

from newsrag.models import ConfidenceGrade, GenerationResult, PromptContext, RetrievalResult


@dataclass(frozen=True)
class ScoringConfig:
    high_confidence_min_fragments: int = 3
    strong_match_threshold: float = 0.75


@dataclass(frozen=True)
class ConfidenceAssessment:
    grade: ConfidenceGrade
    reason: str


class ConfidenceScorer:
    """Grades evidence as none, medium or high.

    ``none`` is checked first: a decline is never reported as positive
    confidence, whatever the retrieval strength.
    """

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self._config = config or ScoringConfig()

    def grade(
        self,
        retrieval: RetrievalResult,
        context: PromptContext,
        generation: GenerationResult | None,
    ) -> ConfidenceAssessment:
        if retrieval.is_empty:
            return ConfidenceAssessment(ConfidenceGrade.NONE, "No fragments cleared the similarity floor")
        if context.is_empty:
            return ConfidenceAssessment(ConfidenceGrade.NONE, "No fragment fit in the context budget")
        if generation is None or generation.insufficient_evidence:
            return ConfidenceAssessment(ConfidenceGrade.NONE, "Model reported insufficient evidence")
        if not generation.text.strip():
            return ConfidenceAssessment(ConfidenceGrade.NONE, "Model returned an empty answer")

        strong = [f for f in retrieval.fragments if f.score >= self._config.strong_match_threshold]
        if len(retrieval) >= self._config.high_confidence_min_fragments and strong:
            return ConfidenceAssessment(
                ConfidenceGrade.HIGH,
                f"Found {len(retrieval)} relevant sources, {len(strong)} strong matches",
            )
        return ConfidenceAssessment(
            ConfidenceGrade.MEDIUM,
            f"Found {len(retrieval)} relevant sources, but confidence is limited",
        )
