from __future__ import annotations

import json
from pathlib import Path

import pytest

from newsrag.config import Settings
from newsrag.errors import ConfigurationError
from newsrag.eval.cli import citation_violations, load_dataset, main, parse_args, run_evaluation
from newsrag.models import AnswerResult, Citation, ConfidenceGrade, Fragment, PhaseTiming, TokenUsage

DATASET = Path(__file__).resolve().parents[1] / "evaluations" / "golden.json"


def _settings() -> Settings:
    return Settings(
        environment="test",
        provider="template",
        generator_model="template",
        min_similarity=0.05,
        relevance_check=True,
    )


def test_load_dataset_parses_fragments_and_queries():
    fragments, queries = load_dataset(DATASET)
    assert len(fragments) == 5
    assert fragments[0].publisher == "Tech Policy Weekly"
    assert fragments[0].published_at.year == 2024
    assert fragments[1].ordinal == 1
    assert [fixture.expected_confidence for fixture in queries] == ["high", "medium", "none"]


def test_run_evaluation_writes_reports(tmp_path: Path):
    json_out = tmp_path / "report.json"
    markdown_out = tmp_path / "report.md"
    result = run_evaluation(DATASET, settings=_settings(), json_out=json_out, markdown_out=markdown_out)

    assert result.total_queries == 3
    assert result.citation_violations == 0
    assert result.total_cost_usd == 0.0
    crypto = next(item for item in result.details if item["query"].startswith("cryptocurrency"))
    assert crypto["actual"] == "none"
    assert crypto["citations"] == 0

    report = json.loads(json_out.read_text(encoding="utf-8"))
    assert report["total_queries"] == 3
    assert "# newsrag Evaluation Report" in markdown_out.read_text(encoding="utf-8")


def test_citation_violations_counts_unresolved_markers():
    fragment = Fragment(
        fragment_id="f1",
        document_id="d1",
        publisher="Publisher",
        published_at=None,
        text="text",
        score=0.9,
    )
    answer = AnswerResult(
        query_id="q",
        query="question",
        answer="Claim [1]. Another claim [2].",
        confidence=ConfidenceGrade.MEDIUM,
        citations=(Citation(citation_index=1, fragment=fragment, preview="text"),),
        usage=TokenUsage.zero(),
        timing=PhaseTiming(),
        model="template",
        provider="template",
    )
    assert citation_violations(answer, {"f1"}) == 1
    assert citation_violations(answer, set()) == 2


def test_parse_args_defaults():
    args = parse_args([])
    assert args.dataset == Path("evaluations/golden.json")
    assert args.min_accuracy is None


def test_main_fails_below_accuracy_threshold(monkeypatch, capsys):
    monkeypatch.setattr("newsrag.eval.cli.load_settings", lambda override=None: _settings())
    exit_code = main(["--dataset", str(DATASET), "--min-accuracy", "1.01"])
    assert exit_code == 1
    assert "Evaluation failed" in capsys.readouterr().err


def test_main_rejects_badly_typed_environment(monkeypatch):
    monkeypatch.setenv("NEWSRAG_MIN_SIMILARITY", "high")
    with pytest.raises(ConfigurationError):
        main(["--dataset", str(DATASET)])
