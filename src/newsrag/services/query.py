"""Query orchestration combining retrieval, context assembly, generation and grading."""

from __future__ import annotations

import time
from concurrent import futures
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar
from uuid import uuid4

from newsrag.config import Settings
from newsrag.errors import InvalidQuery, QueryTimeout, RetrievalUnavailable, UpstreamError
from newsrag.metrics.observability import PipelineMetrics, get_logger
from newsrag.models import (
    AnswerResult,
    ConfidenceGrade,
    GenerationRequest,
    GenerationResult,
    PhaseTiming,
    PromptContext,
    RetrievalResult,
    TokenUsage,
)
from newsrag.retrieval.service import Retriever
from newsrag.services.citations import CitationFormatter
from newsrag.services.context import ContextAssembler, ContextConfig
from newsrag.services.generation import DECLINE_MESSAGE, ModelProvider
from newsrag.services.scoring import ConfidenceScorer, ScoringConfig

T = TypeVar("T")


class PipelineState(str, Enum):
    RECEIVED = "received"
    RETRIEVING = "retrieving"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    SCORING = "scoring"
    FORMATTING = "formatting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryConfig:
    """Configuration for one pipeline run."""

    top_k: int = 10
    max_context_chars: int = 12000
    system_prompt: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    retrieval_max_attempts: int = 2
    retrieval_retry_delay_seconds: float = 0.5
    timeout_seconds: float | None = None
    max_workers: int = 8


class _Run:
    """Per-query state; never shared between executions."""

    def __init__(self, query_id: str, timeout_seconds: float | None, logger) -> None:
        self.query_id = query_id
        self.state = PipelineState.RECEIVED
        self.started = time.perf_counter()
        self.deadline = self.started + timeout_seconds if timeout_seconds else None
        self._logger = logger

    def advance(self, state: PipelineState) -> None:
        self._logger.debug("pipeline.transition", query_id=self.query_id, source=self.state.value, target=state.value)
        self.state = state

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class QueryService:
    """Orchestrates retrieval and generation for incoming questions.

    The provider (and its SDK client) is built once at the composition root
    and shared read-only; every call to ``answer`` keeps its state in a
    private ``_Run``, so independent queries may run concurrently.
    """

    def __init__(
        self,
        retriever: Retriever,
        provider: ModelProvider,
        *,
        assembler: ContextAssembler | None = None,
        scorer: ConfidenceScorer | None = None,
        formatter: CitationFormatter | None = None,
        config: QueryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retriever = retriever
        self._provider = provider
        self._assembler = assembler or ContextAssembler()
        self._scorer = scorer or ConfidenceScorer()
        self._formatter = formatter or CitationFormatter()
        self._config = config or QueryConfig()
        self._sleep = sleep
        # Generation calls running past a deadline never occupy retrieval workers.
        self._retrieval_pool = futures.ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="newsrag-retrieval",
        )
        self._generation_pool = futures.ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="newsrag-generation",
        )
        self._logger = get_logger("query")

    def close(self) -> None:
        for pool in (self._retrieval_pool, self._generation_pool):
            pool.shutdown(wait=False, cancel_futures=True)

    def answer(
        self,
        query: str,
        *,
        top_k: int | None = None,
        timeout_seconds: float | None = None,
    ) -> AnswerResult:
        text = (query or "").strip()
        if not text:
            raise InvalidQuery("Query is required and must be a non-empty string.")
        run = _Run(uuid4().hex, timeout_seconds or self._config.timeout_seconds, self._logger)
        try:
            return self._execute(run, text, top_k or self._config.top_k)
        except UpstreamError as exc:
            exc.phase = exc.phase or run.state.value
            run.advance(PipelineState.FAILED)
            PipelineMetrics.observe_failure(exc.phase, exc.code)
            self._logger.error(
                "query.failed",
                query_id=run.query_id,
                phase=exc.phase,
                dependency=exc.dependency,
                error=exc.code,
                detail=exc.detail,
            )
            raise

    def _execute(self, run: _Run, query: str, top_k: int) -> AnswerResult:
        run.advance(PipelineState.RETRIEVING)
        retrieval_start = time.perf_counter()
        retrieval = self._retrieve_with_retry(run, query, top_k)
        retrieval_seconds = time.perf_counter() - retrieval_start
        PipelineMetrics.observe_retrieval(
            retrieval_seconds,
            len(retrieval),
            (fragment.score for fragment in retrieval.fragments),
        )
        self._logger.info(
            "retrieval.complete",
            query_id=run.query_id,
            fragment_count=len(retrieval),
            candidates=retrieval.candidates_found,
            attempts=retrieval.attempts,
            duration_seconds=retrieval_seconds,
        )

        run.advance(PipelineState.ASSEMBLING)
        context = self._assembler.assemble(retrieval.fragments, self._config.max_context_chars)
        if retrieval.is_empty or context.is_empty:
            return self._short_circuit(run, query, retrieval, context, retrieval_seconds * 1000)

        run.advance(PipelineState.GENERATING)
        request = GenerationRequest(
            query=query,
            context=context.text,
            system_prompt=self._config.system_prompt,
            temperature=self._config.temperature,
            max_output_tokens=self._config.max_output_tokens,
            timeout_seconds=run.remaining(),
        )
        generation_start = time.perf_counter()
        generation = self._call(
            run,
            self._generation_pool,
            self._provider.generate_answer,
            request,
            dependency=self._provider.name,
        )
        generation_seconds = time.perf_counter() - generation_start
        PipelineMetrics.observe_generation(
            generation_seconds,
            provider=generation.provider,
            model=generation.model,
            input_tokens=generation.usage.input_tokens,
            output_tokens=generation.usage.output_tokens,
            cost_usd=generation.usage.estimated_cost_usd,
        )
        self._logger.info(
            "generation.complete",
            query_id=run.query_id,
            provider=generation.provider,
            model=generation.model,
            duration_seconds=generation_seconds,
            input_tokens=generation.usage.input_tokens,
            output_tokens=generation.usage.output_tokens,
            cost_usd=generation.usage.estimated_cost_usd,
        )

        run.advance(PipelineState.SCORING)
        assessment = self._scorer.grade(retrieval, context, generation)

        run.advance(PipelineState.FORMATTING)
        if assessment.grade is ConfidenceGrade.NONE:
            answer, citations, dropped = DECLINE_MESSAGE, (), ()
        else:
            formatted = self._formatter.format(generation.text, context)
            answer, citations, dropped = formatted.answer, formatted.citations, formatted.dropped_markers
            if dropped:
                self._logger.warning("citations.dangling", query_id=run.query_id, markers=list(dropped))

        run.advance(PipelineState.DONE)
        PipelineMetrics.observe_answer(assessment.grade.value, len(dropped))
        return AnswerResult(
            query_id=run.query_id,
            query=query,
            answer=answer,
            confidence=assessment.grade,
            citations=citations,
            usage=generation.usage,
            timing=PhaseTiming(
                retrieval_ms=retrieval_seconds * 1000,
                generation_ms=generation_seconds * 1000,
                total_ms=run.elapsed_ms(),
            ),
            model=generation.model,
            provider=generation.provider,
            diagnostics={
                "fragments_found": retrieval.candidates_found,
                "fragments_used": len(context.fragments_by_index),
                "dropped_markers": list(dropped),
                "reason": assessment.reason,
            },
        )

    def _short_circuit(
        self,
        run: _Run,
        query: str,
        retrieval: RetrievalResult,
        context: PromptContext,
        retrieval_ms: float,
    ) -> AnswerResult:
        assessment = self._scorer.grade(retrieval, context, None)
        self._logger.info("query.short_circuit", query_id=run.query_id, reason=assessment.reason)
        run.advance(PipelineState.DONE)
        PipelineMetrics.observe_answer(assessment.grade.value)
        return AnswerResult(
            query_id=run.query_id,
            query=query,
            answer=DECLINE_MESSAGE,
            confidence=assessment.grade,
            citations=(),
            usage=TokenUsage.zero(),
            timing=PhaseTiming(retrieval_ms=retrieval_ms, generation_ms=0.0, total_ms=run.elapsed_ms()),
            model=self._provider.model,
            provider=self._provider.name,
            diagnostics={
                "fragments_found": retrieval.candidates_found,
                "fragments_used": 0,
                "dropped_markers": [],
                "reason": assessment.reason,
            },
        )

    def _retrieve_with_retry(self, run: _Run, query: str, top_k: int) -> RetrievalResult:
        attempts = max(1, self._config.retrieval_max_attempts)
        delay = self._config.retrieval_retry_delay_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._call(
                    run,
                    self._retrieval_pool,
                    self._retriever.retrieve,
                    query,
                    top_k,
                    dependency="vector-store",
                )
            except RetrievalUnavailable as exc:
                if attempt >= attempts:
                    raise
                remaining = run.remaining()
                if remaining is not None and remaining <= delay:
                    raise QueryTimeout(
                        f"deadline leaves no room to retry retrieval: {exc.detail}",
                        phase=run.state.value,
                    ) from exc
                self._logger.warning(
                    "retrieval.retry",
                    query_id=run.query_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    detail=exc.detail,
                )
                self._sleep(delay)
                continue
            return RetrievalResult(
                fragments=result.fragments,
                candidates_found=result.candidates_found,
                attempts=attempt,
            )

    def _call(
        self,
        run: _Run,
        pool: futures.ThreadPoolExecutor,
        fn: Callable[..., T],
        *args,
        dependency: str,
    ) -> T:
        remaining = run.remaining()
        if remaining is None:
            return fn(*args)
        if remaining <= 0:
            raise QueryTimeout("deadline expired before call started", dependency=dependency, phase=run.state.value)
        future = pool.submit(fn, *args)
        try:
            return future.result(timeout=remaining)
        except futures.TimeoutError as exc:
            future.cancel()
            raise QueryTimeout(
                f"{dependency} call exceeded deadline",
                dependency=dependency,
                phase=run.state.value,
            ) from exc


def build_query_service(settings: Settings, retriever: Retriever, provider: ModelProvider) -> QueryService:
    """Wire a ``QueryService`` from settings around an existing retriever and provider."""

    return QueryService(
        retriever,
        provider,
        assembler=ContextAssembler(
            ContextConfig(max_context_chars=settings.max_context_chars, max_excerpt_chars=settings.max_excerpt_chars)
        ),
        scorer=ConfidenceScorer(
            ScoringConfig(
                high_confidence_min_fragments=settings.high_confidence_min_fragments,
                strong_match_threshold=settings.strong_match_threshold,
            )
        ),
        formatter=CitationFormatter(preview_chars=settings.preview_chars),
        config=QueryConfig(
            top_k=settings.max_fragments,
            max_context_chars=settings.max_context_chars,
            temperature=settings.generator_temperature,
            max_output_tokens=settings.generator_max_output_tokens,
            retrieval_max_attempts=settings.retrieval_max_attempts,
            retrieval_retry_delay_seconds=settings.retrieval_retry_delay_seconds,
            timeout_seconds=settings.query_timeout_seconds,
        ),
    )
