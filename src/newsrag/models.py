"""Shared domain models used across the newsrag pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence


@dataclass(frozen=True)
class Fragment:
    """Scored excerpt of an indexed newsletter, as returned by similarity search."""

    fragment_id: str
    document_id: str
    publisher: str
    published_at: datetime | None
    text: str
    score: float
    ordinal: int = 0
    subject: str | None = None


@dataclass(frozen=True)
class RetrievalResult:
    """Fragments that cleared the similarity floor, highest score first."""

    fragments: tuple[Fragment, ...] = ()
    candidates_found: int = 0
    attempts: int = 1

    def __len__(self) -> int:
        return len(self.fragments)

    @property
    def is_empty(self) -> bool:
        return not self.fragments


@dataclass(frozen=True)
class PromptContext:
    """Rendered context block plus the index used to resolve citations."""

    text: str = ""
    fragments_by_index: Mapping[int, Fragment] = field(default_factory=dict)
    dropped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.fragments_by_index


@dataclass(frozen=True)
class GenerationRequest:
    """Parameters for one generation call; a value, not a connection."""

    query: str
    context: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class TokenUsage:
    """Token counts and derived cost for one generation call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls()


@dataclass(frozen=True)
class GenerationResult:
    text: str
    usage: TokenUsage
    model: str
    provider: str
    insufficient_evidence: bool = False


@dataclass(frozen=True)
class Citation:
    """Resolved mapping from an inline ``[n]`` marker to its source fragment."""

    citation_index: int
    fragment: Fragment
    preview: str


class ConfidenceGrade(str, Enum):
    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class PhaseTiming:
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class AnswerResult:
    """Final, self-contained answer returned to callers."""

    query_id: str
    query: str
    answer: str
    confidence: ConfidenceGrade
    citations: Sequence[Citation]
    usage: TokenUsage
    timing: PhaseTiming
    model: str
    provider: str
    diagnostics: Mapping[str, Any] = field(default_factory=dict)


def rank_key(fragment: Fragment) -> tuple[float, float, str, str]:
    """Sort key: score desc, then most recent first, then document id, then fragment id."""

    recency = fragment.published_at.timestamp() if fragment.published_at else float("-inf")
    return (-fragment.score, -recency, fragment.document_id, fragment.fragment_id)
