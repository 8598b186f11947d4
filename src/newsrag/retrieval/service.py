"""Retrieval orchestration built on top of the fragment store."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from newsrag.embeddings import FragmentStore
from newsrag.errors import InvalidQuery, RetrievalUnavailable
from newsrag.metrics.observability import get_logger
from newsrag.models import Fragment, RetrievalResult, rank_key

_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "from", "as", "is", "was", "are", "were", "been", "be", "have", "has", "had", "do", "does",
        "did", "will", "would", "should", "could", "may", "might", "must", "can", "what", "which",
        "latest", "about",
    }
)
_CONTEXT_WINDOW = 50
_STRONG_CONTEXT_CHARS = 70


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 10
    max_top_k: int | None = 20
    min_similarity: float = 0.5
    relevance_check: bool = False
    min_relevance: float = 0.5
    dataset_id: str | None = None


class Retriever(Protocol):
    """Retrieve relevant fragments for a query string."""

    def retrieve(self, query: str, k: int | None = None) -> RetrievalResult:
        """Return at most ``k`` fragments above the similarity floor."""


class FragmentRetriever:
    """Retriever that applies the similarity floor and deterministic ordering to store hits."""

    def __init__(self, store: FragmentStore, config: RetrievalConfig | None = None) -> None:
        self._store = store
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    def retrieve(self, query: str, k: int | None = None) -> RetrievalResult:
        text = (query or "").strip()
        if not text:
            raise InvalidQuery("Query is required and must be a non-empty string.")
        limit = self._config.top_k if k is None else k
        if limit < 1:
            raise InvalidQuery(f"k must be >= 1, got {limit}")
        if self._config.max_top_k:
            limit = min(limit, self._config.max_top_k)
        try:
            hits = list(self._store.similarity_search(text, top_k=limit, dataset_id=self._config.dataset_id))
        except Exception as exc:
            raise RetrievalUnavailable(str(exc) or exc.__class__.__name__) from exc

        kept = [fragment for fragment in hits if fragment.score >= self._config.min_similarity]
        if self._config.relevance_check:
            kept = [
                fragment
                for fragment in kept
                if keyword_relevance(text, fragment) > self._config.min_relevance
            ]
        kept.sort(key=rank_key)
        fragments = tuple(kept[:limit])
        if len(fragments) < len(hits):
            self._logger.debug(
                "retrieval.filtered",
                candidates=len(hits),
                kept=len(fragments),
                min_similarity=self._config.min_similarity,
            )
        return RetrievalResult(fragments=fragments, candidates_found=len(hits))


def keyword_relevance(query: str, fragment: Fragment) -> float:
    """Score 0-1 for how well the fragment covers the query's content terms.

    Up to 0.6 for the share of terms found in the body or subject, 0.3 when a
    term sits inside substantial prose, 0.1 for a subject-line match. Queries
    without content terms fall back to the similarity score.
    """

    terms = _content_terms(query)
    if not terms:
        return fragment.score
    text = _normalize(fragment.text)
    subject = _normalize(fragment.subject or "")

    matched = [term for term in terms if term in text or term in subject]
    score = 0.6 * len(matched) / len(terms)
    if any(_has_strong_context(text, term) for term in terms):
        score += 0.3
    if any(term in subject for term in terms):
        score += 0.1
    return min(1.0, score)


def _normalize(value: str) -> str:
    return value.lower().replace("’", "'").replace("‘", "'")


def _content_terms(query: str) -> list[str]:
    terms = []
    for raw in _normalize(query).split():
        term = re.sub(r"'s$", "", raw)
        term = re.sub(r"[^\w']+$", "", term)
        if len(term) > 3 and term not in _STOP_WORDS:
            terms.append(term)
    return terms


def _has_strong_context(text: str, term: str) -> bool:
    index = text.find(term)
    if index == -1:
        return False
    start = max(0, index - _CONTEXT_WINDOW)
    end = min(len(text), index + _CONTEXT_WINDOW)
    return end - start > _STRONG_CONTEXT_CHARS
