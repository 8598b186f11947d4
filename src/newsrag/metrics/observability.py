"""Observability helpers for newsrag."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_configured_level: int | None = None
_SECRET_KEYS = frozenset({"api_key", "openai_api_key", "authorization", "x-api-key"})


def configure_logging(level: int | str | None = None) -> None:
    """Emit one JSON object per line through stdlib logging.

    Called lazily by ``get_logger``; an explicit ``level`` reconfigures.
    """

    global _configured_level  # noqa: PLW0603 - module-level guard
    if level is None and _configured_level is not None:
        return
    numeric = _level_number(level if level is not None else logging.INFO)
    logging.basicConfig(level=numeric, format="%(message)s")
    logging.getLogger().setLevel(numeric)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_secrets,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured_level = numeric


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"unknown log level '{level}'")
    return number


def _redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = "***"
    return event_dict


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "newsrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    retrieval_latency = Histogram(
        "newsrag_retrieval_duration_seconds",
        "Time spent retrieving fragments, retries included.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_fragment_count = Histogram(
        "newsrag_retrieved_fragment_count",
        "Number of fragments that cleared the similarity floor.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    grounding_score = Histogram(
        "newsrag_grounding_score",
        "Similarity scores of retrieved fragments.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "newsrag_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    generation_tokens = Counter(
        "newsrag_generation_tokens_total",
        "Tokens consumed by generation calls.",
        ["direction"],
    )
    generation_cost = Counter(
        "newsrag_generation_cost_usd_total",
        "Estimated generation spend in USD.",
        ["provider", "model"],
    )
    answers = Counter(
        "newsrag_answers_total",
        "Answers produced, by confidence grade.",
        ["confidence"],
    )
    dangling_citations = Counter(
        "newsrag_dangling_citations_total",
        "Inline citation markers that matched no context fragment.",
    )
    failures = Counter(
        "newsrag_query_failures_total",
        "Queries that ended in the FAILED state.",
        ["phase", "error"],
    )

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        fragment_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_fragment_count.observe(fragment_count)
        for score in scores:
            cls.grounding_score.observe(min(1.0, max(0.0, score)))

    @classmethod
    def observe_generation(
        cls,
        duration_seconds: float,
        *,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float,
    ) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.generation_tokens.labels(direction="input").inc(input_tokens)
        cls.generation_tokens.labels(direction="output").inc(output_tokens)
        cls.generation_cost.labels(provider=provider, model=model).inc(cost_usd)

    @classmethod
    def observe_answer(cls, confidence: str, dangling_markers: int = 0) -> None:
        cls.answers.labels(confidence=confidence).inc()
        if dangling_markers:
            cls.dangling_citations.inc(dangling_markers)

    @classmethod
    def observe_failure(cls, phase: str, error: str) -> None:
        cls.failures.labels(phase=phase, error=error).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
