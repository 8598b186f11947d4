"""Runtime configuration for the newsrag services."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from newsrag.errors import ConfigurationError

_PER_MILLION = 1_000_000

# USD per token.
DEFAULT_PRICE_TABLE: dict[str, dict[str, float]] = {
    "gemini-1.5-flash-001": {"input": 0.075 / _PER_MILLION, "output": 0.30 / _PER_MILLION},
    "gemini-1.5-pro-001": {"input": 1.25 / _PER_MILLION, "output": 5.00 / _PER_MILLION},
    "gemini-2.5-flash-lite": {"input": 0.075 / _PER_MILLION, "output": 0.30 / _PER_MILLION},
    "gemini-2.5-pro": {"input": 1.25 / _PER_MILLION, "output": 5.00 / _PER_MILLION},
    "template": {"input": 0.0, "output": 0.0},
}

KNOWN_PROVIDERS = ("gemini", "openai", "template")


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="newsrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Vertex AI identifiers
    project_id: str | None = None
    location: str = "us-central1"

    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "newsletter-fragments"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    dataset_id: str | None = None

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    use_model_embeddings: bool = False

    provider: str = "gemini"
    generator_model: str = "gemini-2.5-flash-lite"
    generator_temperature: float = 0.3
    generator_max_output_tokens: int = 4096
    openai_api_key: SecretStr | None = None

    # Retrieval and context budgets
    max_fragments: int = 10
    max_top_k: int = 20
    max_context_chars: int = 12000
    max_excerpt_chars: int = 1500
    preview_chars: int = 200
    min_similarity: float = 0.5
    relevance_check: bool = False
    min_relevance: float = 0.5

    # Confidence grading
    high_confidence_min_fragments: int = 3
    strong_match_threshold: float = 0.75

    # Resilience
    retrieval_max_attempts: int = 2
    retrieval_retry_delay_seconds: float = 0.5
    query_timeout_seconds: float | None = None

    # Pricing (USD per token)
    price_table: dict[str, dict[str, float]] = dict(DEFAULT_PRICE_TABLE)
    price_default_model: str = "gemini-2.5-flash-lite"

    evaluation_min_accuracy: float = 0.6

    @property
    def openai_api_key_value(self) -> str | None:
        return self.openai_api_key.get_secret_value() if self.openai_api_key else None


def validate_settings(settings: Settings) -> Settings:
    """Reject configuration that would make the service unable to answer queries."""

    problems: list[str] = []
    provider = settings.provider.lower()
    if provider not in KNOWN_PROVIDERS:
        problems.append(f"unknown provider '{settings.provider}' (expected one of {', '.join(KNOWN_PROVIDERS)})")
    if provider == "gemini" and not (settings.project_id or "").strip():
        problems.append("project_id is required for the gemini provider")
    if provider == "openai" and not settings.openai_api_key_value:
        problems.append("openai_api_key is required for the openai provider")
    if not settings.generator_model.strip():
        problems.append("generator_model must not be empty")
    if not settings.chroma_collection.strip():
        problems.append("chroma_collection must not be empty")

    problems.extend(_validate_price_table(settings.price_table, settings.price_default_model))

    for name in ("min_similarity", "min_relevance", "strong_match_threshold", "evaluation_min_accuracy"):
        value = getattr(settings, name)
        if not 0.0 <= value <= 1.0:
            problems.append(f"{name} must be within [0, 1], got {value}")
    for name in (
        "max_fragments",
        "max_top_k",
        "max_context_chars",
        "max_excerpt_chars",
        "preview_chars",
        "high_confidence_min_fragments",
        "retrieval_max_attempts",
        "generator_max_output_tokens",
    ):
        value = getattr(settings, name)
        if value < 1:
            problems.append(f"{name} must be >= 1, got {value}")
    if settings.retrieval_retry_delay_seconds < 0:
        problems.append("retrieval_retry_delay_seconds must not be negative")
    if settings.query_timeout_seconds is not None and settings.query_timeout_seconds <= 0:
        problems.append("query_timeout_seconds must be positive when set")

    if problems:
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
    return settings


def _validate_price_table(table: Mapping[str, Mapping[str, float]], default_model: str) -> list[str]:
    problems: list[str] = []
    if not table:
        return ["price_table must contain at least one model"]
    if default_model not in table:
        problems.append(f"price_default_model '{default_model}' has no entry in price_table")
    for model, entry in table.items():
        if not isinstance(entry, Mapping) or "input" not in entry or "output" not in entry:
            problems.append(f"price_table entry for '{model}' needs 'input' and 'output'")
            continue
        if entry["input"] < 0 or entry["output"] < 0:
            problems.append(f"price_table entry for '{model}' must not be negative")
    return problems


def load_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Build and validate settings, surfacing every failure as ``ConfigurationError``."""

    try:
        settings = Settings(**(override or {}))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    return validate_settings(settings)

