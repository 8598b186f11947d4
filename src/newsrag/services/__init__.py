"""Service layer orchestrations for newsrag."""

from .citations import CitationFormatter, FormattedCitations
from .context import ContextAssembler, ContextConfig
from .generation import (
    DECLINE_MESSAGE,
    GeminiProvider,
    GenerationConfig,
    ModelPrice,
    ModelProvider,
    OpenAIProvider,
    PriceTable,
    PromptingProvider,
    TemplateProvider,
    build_provider,
    create_backend_client,
)
from .query import PipelineState, QueryConfig, QueryService, build_query_service
from .scoring import ConfidenceAssessment, ConfidenceScorer, ScoringConfig

__all__ = [
    "DECLINE_MESSAGE",
    "CitationFormatter",
    "ConfidenceAssessment",
    "ConfidenceScorer",
    "ContextAssembler",
    "ContextConfig",
    "FormattedCitations",
    "GeminiProvider",
    "GenerationConfig",
    "ModelPrice",
    "ModelProvider",
    "OpenAIProvider",
    "PipelineState",
    "PriceTable",
    "PromptingProvider",
    "QueryConfig",
    "QueryService",
    "ScoringConfig",
    "TemplateProvider",
    "build_provider",
    "build_query_service",
    "create_backend_client",
]
