from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Sequence

import pytest

from newsrag.config import DEFAULT_PRICE_TABLE, Settings
from newsrag.errors import GenerationFailed, InvalidQuery, QueryTimeout, RetrievalUnavailable
from newsrag.models import ConfidenceGrade, Fragment, GenerationRequest, GenerationResult, TokenUsage
from newsrag.retrieval import FragmentRetriever
from newsrag.services import (
    DECLINE_MESSAGE,
    GenerationConfig,
    PriceTable,
    QueryConfig,
    QueryService,
    TemplateProvider,
    build_query_service,
)


def _fragment(fragment_id: str, score: float, text: str, publisher: str = "Tech Policy Weekly") -> Fragment:
    return Fragment(
        fragment_id=fragment_id,
        document_id=fragment_id,
        publisher=publisher,
        published_at=datetime(2024, 5, 2),
        text=text,
        score=score,
    )


AI_REGULATION = [
    _fragment("f1", 0.88, "The EU AI Act entered into force in August. Obligations phase in over two years."),
    _fragment("f2", 0.79, "US agencies published draft guidance on AI procurement.", "Capitol Tech"),
    _fragment("f3", 0.66, "The UK opted for a sector-led approach to AI oversight.", "London Letter"),
    _fragment("f4", 0.61, "China updated its rules for generative AI services.", "Asia Markets"),
    _fragment("f5", 0.55, "Industry groups asked for clearer compliance timelines.", "Policy Digest"),
]


class StubStore:
    def __init__(self, fragments: Sequence[Fragment], failures: int = 0) -> None:
        self.fragments = list(fragments)
        self.failures = failures
        self.calls = 0

    def similarity_search(self, query: str, *, top_k: int = 5, dataset_id: str | None = None):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("vector store unreachable")
        return self.fragments[:top_k]

    def count(self) -> int:
        return len(self.fragments)


class RecordingProvider:
    name = "stub"
    model = "stub-model"

    def __init__(self, text: str = "The AI Act entered into force [1].", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.requests: list[GenerationRequest] = []

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.error:
            raise self.error
        return GenerationResult(
            text=self.text,
            usage=TokenUsage(input_tokens=100, output_tokens=10, total_tokens=110, estimated_cost_usd=0.001),
            model=self.model,
            provider=self.name,
        )


class DecliningProvider(RecordingProvider):
    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        result = super().generate_answer(request)
        return GenerationResult(
            text=result.text,
            usage=result.usage,
            model=result.model,
            provider=result.provider,
            insufficient_evidence=True,
        )


class SlowProvider(RecordingProvider):
    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        time.sleep(0.5)
        return super().generate_answer(request)


class StalledBackendProvider(RecordingProvider):
    """Times out like an SDK (just after the request timeout) until marked healthy."""

    def __init__(self) -> None:
        super().__init__()
        self.healthy = threading.Event()

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        if not self.healthy.is_set():
            self.requests.append(request)
            self.healthy.wait(request.timeout_seconds + 0.05)
            raise GenerationFailed("read timed out", dependency=self.name)
        return super().generate_answer(request)


class WedgedProvider(RecordingProvider):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        self.release.wait(5)
        return super().generate_answer(request)


class TopicStore(StubStore):
    def __init__(self, topics: Sequence[str]) -> None:
        super().__init__([])
        self.by_query = {
            topic: [
                _fragment(f"{topic}-1", 0.9, f"First note on {topic}."),
                _fragment(f"{topic}-2", 0.8, f"Second note on {topic}."),
            ]
            for topic in topics
        }

    def similarity_search(self, query: str, *, top_k: int = 5, dataset_id: str | None = None):
        return self.by_query[query][:top_k]


class EchoProvider(RecordingProvider):
    def __init__(self, parties: int) -> None:
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        self.barrier.wait()
        result = super().generate_answer(request)
        return GenerationResult(
            text=f"On {request.query}: see [1] and [2].",
            usage=result.usage,
            model=result.model,
            provider=result.provider,
        )


def _template_provider() -> TemplateProvider:
    return TemplateProvider(
        GenerationConfig(model="template"),
        prices=PriceTable.from_config(DEFAULT_PRICE_TABLE, "gemini-2.5-flash-lite"),
    )


def _service(store: StubStore, provider, **config) -> QueryService:
    return QueryService(FragmentRetriever(store), provider, config=QueryConfig(**config))


def test_strong_evidence_yields_high_confidence_with_citations():
    service = _service(StubStore(AI_REGULATION), _template_provider())
    result = service.answer("What are the latest developments in AI regulation?")

    assert result.confidence is ConfidenceGrade.HIGH
    assert result.answer
    assert 0 < len(result.citations) <= 5
    assert [citation.citation_index for citation in result.citations] == [1, 2, 3]
    assert result.citations[0].fragment.fragment_id == "f1"
    assert result.provider == "template"
    assert result.usage.output_tokens > 0
    assert result.timing.total_ms >= result.timing.retrieval_ms
    assert result.diagnostics["fragments_found"] == 5
    assert result.diagnostics["fragments_used"] == 5
    service.close()


def test_no_matching_fragments_short_circuits_without_model_call():
    provider = RecordingProvider()
    unrelated = [_fragment("x", 0.2, "Recipe for sourdough bread.")]
    service = _service(StubStore(unrelated), provider)
    result = service.answer("cryptocurrency blockchain Web3 DeFi")

    assert result.confidence is ConfidenceGrade.NONE
    assert result.answer == DECLINE_MESSAGE
    assert result.citations == ()
    assert result.usage.output_tokens == 0
    assert result.usage.estimated_cost_usd == 0.0
    assert result.timing.generation_ms == 0.0
    assert provider.requests == []
    service.close()


def test_model_decline_reports_none_without_citations():
    declining = DecliningProvider(text=DECLINE_MESSAGE)
    service = _service(StubStore(AI_REGULATION), declining)
    result = service.answer("What are the latest developments in AI regulation?")
    assert result.confidence is ConfidenceGrade.NONE
    assert result.answer == DECLINE_MESSAGE
    assert result.citations == ()
    assert result.usage.output_tokens == 10
    service.close()


def test_retrieval_retry_recovers_and_counts_delay():
    store = StubStore(AI_REGULATION, failures=1)
    service = _service(store, RecordingProvider(), retrieval_retry_delay_seconds=0.05)
    result = service.answer("AI regulation")

    assert store.calls == 2
    assert result.confidence is not ConfidenceGrade.NONE
    assert result.timing.retrieval_ms >= 50
    service.close()


def test_retrieval_gives_up_after_two_attempts():
    store = StubStore(AI_REGULATION, failures=5)
    sleeps: list[float] = []
    service = QueryService(
        FragmentRetriever(store),
        RecordingProvider(),
        config=QueryConfig(retrieval_retry_delay_seconds=0.5),
        sleep=sleeps.append,
    )
    with pytest.raises(RetrievalUnavailable) as excinfo:
        service.answer("AI regulation")
    assert store.calls == 2
    assert sleeps == [0.5]
    assert excinfo.value.phase == "retrieving"
    service.close()


def test_generation_failure_is_not_retried():
    provider = RecordingProvider(error=GenerationFailed("quota exceeded", dependency="stub"))
    service = _service(StubStore(AI_REGULATION), provider)
    with pytest.raises(GenerationFailed) as excinfo:
        service.answer("AI regulation")
    assert len(provider.requests) == 1
    assert excinfo.value.phase == "generating"
    service.close()


@pytest.mark.parametrize("query", ["", "   ", None])
def test_invalid_query_rejected_before_retrieval(query):
    store = StubStore(AI_REGULATION)
    service = _service(store, RecordingProvider())
    with pytest.raises(InvalidQuery):
        service.answer(query)
    assert store.calls == 0
    service.close()


def test_dangling_markers_are_removed_from_answer():
    provider = RecordingProvider(text="Entered into force [1]. Also see [9].")
    service = _service(StubStore(AI_REGULATION), provider)
    result = service.answer("AI regulation")
    assert "[9]" not in result.answer
    assert [citation.citation_index for citation in result.citations] == [1]
    assert result.diagnostics["dropped_markers"] == [9]
    service.close()


def test_context_budget_limits_fragments_sent_to_model():
    provider = RecordingProvider()
    service = _service(StubStore(AI_REGULATION * 2), provider, max_context_chars=200)
    result = service.answer("AI regulation")
    assert len(provider.requests[0].context) <= 200
    assert result.diagnostics["fragments_used"] < 5
    service.close()


def test_deadline_expiry_raises_query_timeout():
    service = _service(StubStore(AI_REGULATION), SlowProvider())
    with pytest.raises(QueryTimeout) as excinfo:
        service.answer("AI regulation", timeout_seconds=0.1)
    assert excinfo.value.phase == "generating"
    service.close()


CONCURRENT_TOPICS = ["AI regulation", "interest rates", "carbon markets", "chip exports"]


def test_concurrent_queries_do_not_share_state():
    provider = EchoProvider(parties=len(CONCURRENT_TOPICS))
    service = _service(TopicStore(CONCURRENT_TOPICS), provider)
    with ThreadPoolExecutor(max_workers=len(CONCURRENT_TOPICS)) as pool:
        results = list(pool.map(service.answer, CONCURRENT_TOPICS))

    assert len({result.query_id for result in results}) == len(CONCURRENT_TOPICS)
    for topic, result in zip(CONCURRENT_TOPICS, results):
        assert result.query == topic
        assert result.answer == f"On {topic}: see [1] and [2]."
        assert [citation.fragment.fragment_id for citation in result.citations] == [f"{topic}-1", f"{topic}-2"]
    service.close()


def test_retry_skipped_when_deadline_cannot_fit_the_delay():
    store = StubStore(AI_REGULATION, failures=1)
    sleeps: list[float] = []
    service = QueryService(
        FragmentRetriever(store),
        RecordingProvider(),
        config=QueryConfig(retrieval_retry_delay_seconds=0.5),
        sleep=sleeps.append,
    )
    with pytest.raises(QueryTimeout) as excinfo:
        service.answer("AI regulation", timeout_seconds=0.3)
    assert excinfo.value.phase == "retrieving"
    assert store.calls == 1
    assert sleeps == []
    service.close()


def test_generation_receives_remaining_deadline():
    provider = RecordingProvider()
    service = _service(StubStore(AI_REGULATION), provider)
    service.answer("AI regulation", timeout_seconds=2.0)
    assert 0 < provider.requests[0].timeout_seconds <= 2.0
    service.answer("AI regulation")
    assert provider.requests[1].timeout_seconds is None
    service.close()


def test_timed_out_generation_does_not_starve_later_queries():
    provider = StalledBackendProvider()
    service = _service(StubStore(AI_REGULATION), provider, max_workers=2)
    for _ in range(2):
        with pytest.raises(QueryTimeout) as excinfo:
            service.answer("AI regulation", timeout_seconds=0.2)
        assert excinfo.value.phase == "generating"
    assert all(0 < request.timeout_seconds <= 0.2 for request in provider.requests)

    provider.healthy.set()
    result = service.answer("AI regulation", timeout_seconds=1.0)
    assert result.confidence is not ConfidenceGrade.NONE
    service.close()


def test_stuck_generation_leaves_retrieval_available():
    provider = WedgedProvider()
    store = StubStore(AI_REGULATION)
    service = _service(store, provider, max_workers=1)
    try:
        with pytest.raises(QueryTimeout) as excinfo:
            service.answer("AI regulation", timeout_seconds=0.1)
        assert excinfo.value.phase == "generating"

        store.fragments = []
        result = service.answer("AI regulation", timeout_seconds=0.5)
        assert result.confidence is ConfidenceGrade.NONE
        assert store.calls == 2
    finally:
        provider.release.set()
        service.close()


def test_build_query_service_uses_settings():
    settings = Settings(environment="test", provider="template", generator_model="template", max_fragments=2)
    store = StubStore(AI_REGULATION)
    service = build_query_service(settings, FragmentRetriever(store), _template_provider())
    result = service.answer("AI regulation")
    assert result.diagnostics["fragments_found"] == 2
    assert result.confidence is ConfidenceGrade.MEDIUM
    service.close()
