"""CLI for evaluating newsrag confidence grading against golden queries."""

from __future__ import annotations

import argparse
import json
import re
import statistics
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Sequence
from uuid import uuid4

import chromadb

from newsrag.config import Settings, load_settings
from newsrag.embeddings import ChromaFragmentStore, EmbeddingConfig, HashEmbeddingBackend
from newsrag.errors import NewsRAGError
from newsrag.models import AnswerResult, Fragment
from newsrag.retrieval import FragmentRetriever, RetrievalConfig
from newsrag.services import build_provider, build_query_service

_MARKER = re.compile(r"\[(\d+)\]")
# Evaluation runs offline against the deterministic template generator.
OFFLINE_OVERRIDES: dict[str, object] = {"provider": "template", "generator_model": "template"}


@dataclass(frozen=True)
class QueryFixture:
    query: str
    expected_confidence: str
    description: str = ""


@dataclass(frozen=True)
class EvaluationResult:
    total_queries: int
    matches: int
    accuracy: float
    citation_violations: int
    total_cost_usd: float
    average_latency_ms: float
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "matches": self.matches,
            "accuracy": self.accuracy,
            "citation_violations": self.citation_violations,
            "total_cost_usd": self.total_cost_usd,
            "average_latency_ms": self.average_latency_ms,
            "details": self.details,
        }


def load_dataset(path: Path) -> tuple[list[Fragment], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    fragments = [
        Fragment(
            fragment_id=item["id"],
            document_id=item.get("document_id", item["id"]),
            publisher=item.get("publisher", ""),
            published_at=datetime.fromisoformat(item["date"]) if item.get("date") else None,
            text=item["text"],
            score=0.0,
            ordinal=int(item.get("ordinal", 0)),
            subject=item.get("subject"),
        )
        for item in data["fragments"]
    ]
    queries = [
        QueryFixture(
            query=item["query"],
            expected_confidence=item.get("expected_confidence", "medium"),
            description=item.get("description", ""),
        )
        for item in data["queries"]
    ]
    return fragments, queries


def citation_violations(answer: AnswerResult, corpus_ids: set[str]) -> int:
    """Count citations that break the marker or membership invariants."""

    cited = {citation.citation_index for citation in answer.citations}
    markers = {int(token) for token in _MARKER.findall(answer.answer)}
    violations = len(markers - cited)
    violations += sum(1 for c in answer.citations if c.fragment.fragment_id not in corpus_ids)
    if answer.confidence.value == "none" and answer.citations:
        violations += 1
    return violations


def run_evaluation(
    dataset_path: Path,
    *,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    settings = (settings or load_settings(OFFLINE_OVERRIDES)).model_copy(update=OFFLINE_OVERRIDES)
    fragments, queries = load_dataset(dataset_path)
    corpus_ids = {fragment.fragment_id for fragment in fragments}

    store = ChromaFragmentStore(
        HashEmbeddingBackend(EmbeddingConfig(dim=settings.embedding_dim)),
        collection_name=f"evaluation-{uuid4().hex[:8]}",
        client=chromadb.EphemeralClient(),
    )
    store.upsert(fragments)
    retriever = FragmentRetriever(
        store,
        RetrievalConfig(
            top_k=settings.max_fragments,
            max_top_k=settings.max_top_k,
            min_similarity=settings.min_similarity,
            relevance_check=settings.relevance_check,
            min_relevance=settings.min_relevance,
        ),
    )
    service = build_query_service(settings, retriever, build_provider(settings))

    matches = 0
    violations = 0
    costs: list[float] = []
    latencies: list[float] = []
    details: list[dict] = []
    try:
        for fixture in queries:
            try:
                answer = service.answer(fixture.query)
            except NewsRAGError as exc:
                details.append({"query": fixture.query, "expected": fixture.expected_confidence, "error": str(exc)})
                continue
            query_violations = citation_violations(answer, corpus_ids)
            violations += query_violations
            matched = answer.confidence.value == fixture.expected_confidence
            matches += int(matched)
            costs.append(answer.usage.estimated_cost_usd)
            latencies.append(answer.timing.total_ms)
            details.append(
                {
                    "query": fixture.query,
                    "expected": fixture.expected_confidence,
                    "actual": answer.confidence.value,
                    "matched": matched,
                    "citations": len(answer.citations),
                    "violations": query_violations,
                    "cost_usd": answer.usage.estimated_cost_usd,
                    "latency_ms": answer.timing.total_ms,
                    "reason": answer.diagnostics.get("reason"),
                },
            )
    finally:
        service.close()

    total = len(queries)
    result = EvaluationResult(
        total_queries=total,
        matches=matches,
        accuracy=matches / total if total else 0.0,
        citation_violations=violations,
        total_cost_usd=sum(costs),
        average_latency_ms=statistics.fmean(latencies) if latencies else 0.0,
        details=details,
    )
    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# newsrag Evaluation Report",
        "",
        f"- Total queries: {result.total_queries}",
        f"- Confidence matches: {result.matches}",
        f"- Accuracy: {result.accuracy:.2f}",
        f"- Citation violations: {result.citation_violations}",
        f"- Total cost (USD): {result.total_cost_usd:.6f}",
        f"- Avg latency (ms): {result.average_latency_ms:.2f}",
        "",
        "| Query | Expected | Actual |",
        "| --- | --- | --- |",
    ]
    for item in result.details:
        lines.append(f"| {item['query']} | {item['expected']} | {item.get('actual', 'error')} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate newsrag confidence grading on golden queries.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/golden.json"),
        help="Path to a JSON file with 'fragments' and 'queries'.",
    )
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-accuracy", type=float, default=None, help="Override accuracy threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = load_settings(OFFLINE_OVERRIDES)
    min_accuracy = args.min_accuracy if args.min_accuracy is not None else settings.evaluation_min_accuracy

    result = run_evaluation(
        args.dataset,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if result.accuracy < min_accuracy or result.citation_violations:
        print(
            f"Evaluation failed (accuracy {result.accuracy:.2f} vs {min_accuracy}, "
            f"{result.citation_violations} citation violations)",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
