"""Pydantic models for the newsrag query API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    query: str = Field(..., description="Free-text question; must be non-empty after trimming")
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Optional deadline for the whole pipeline run",
    )


class CitationMetadata(BaseModel):
    fragment_id: str
    document_id: str
    publisher: str
    date: Optional[str] = Field(default=None, description="ISO date the newsletter was sent")
    subject: Optional[str] = None
    score: float = Field(..., ge=0.0, le=1.0, description="Similarity of the cited fragment to the query")


class CitationModel(BaseModel):
    citation_index: int = Field(..., ge=1)
    metadata: CitationMetadata
    preview: str


class UsageModel(BaseModel):
    inputTokens: int
    outputTokens: int
    totalTokens: int
    estimatedCostUSD: float


class TimingModel(BaseModel):
    retrieval_ms: float
    generation_ms: float
    total_ms: Optional[float] = None


class QueryResponse(BaseModel):
    query_id: str
    answer: str
    confidence: Literal["none", "medium", "high"]
    citations: List[CitationModel]
    usage: UsageModel
    timing: TimingModel
    model: str
    provider: str


class ErrorDetail(BaseModel):
    kind: Literal["client_error", "upstream_error", "internal_error"]
    code: str
    message: str
    correlation_id: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
