"""FastAPI application exposing the newsrag query contract."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from newsrag.api.schemas import (
    CitationMetadata,
    CitationModel,
    ErrorDetail,
    ErrorResponse,
    QueryRequest,
    QueryResponse,
    TimingModel,
    UsageModel,
)
from newsrag.config import Settings, load_settings, validate_settings
from newsrag.embeddings import ChromaFragmentStore, EmbeddingConfig, FragmentStore, HuggingFaceEmbeddingBackend
from newsrag.errors import InvalidQuery, NewsRAGError, QueryTimeout, UpstreamError
from newsrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from newsrag.models import AnswerResult
from newsrag.retrieval import FragmentRetriever, RetrievalConfig
from newsrag.services import QueryService, build_provider, build_query_service, create_backend_client


@dataclass(frozen=True)
class AppDependencies:
    store: FragmentStore
    query_service: QueryService


def _build_dependencies(settings: Settings) -> AppDependencies:
    """Composition root: one store, one backend client and one provider per process."""

    embedding_backend = HuggingFaceEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
            normalize=True,
        ),
    )
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    store = ChromaFragmentStore(
        embedding_backend,
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    retriever = FragmentRetriever(
        store,
        RetrievalConfig(
            top_k=settings.max_fragments,
            max_top_k=settings.max_top_k,
            min_similarity=settings.min_similarity,
            relevance_check=settings.relevance_check,
            min_relevance=settings.min_relevance,
            dataset_id=settings.dataset_id,
        ),
    )
    provider = build_provider(settings, create_backend_client(settings))
    return AppDependencies(store=store, query_service=build_query_service(settings, retriever, provider))


def _error_status(exc: NewsRAGError) -> int:
    if isinstance(exc, InvalidQuery):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, QueryTimeout):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, UpstreamError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_response(status_code: int, kind: str, code: str, message: str, correlation_id: str) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(kind=kind, code=code, message=message, correlation_id=correlation_id),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _to_response(answer: AnswerResult) -> QueryResponse:
    citations = [
        CitationModel(
            citation_index=citation.citation_index,
            metadata=CitationMetadata(
                fragment_id=citation.fragment.fragment_id,
                document_id=citation.fragment.document_id,
                publisher=citation.fragment.publisher,
                date=citation.fragment.published_at.date().isoformat() if citation.fragment.published_at else None,
                subject=citation.fragment.subject,
                score=citation.fragment.score,
            ),
            preview=citation.preview,
        )
        for citation in answer.citations
    ]
    return QueryResponse(
        query_id=answer.query_id,
        answer=answer.answer,
        confidence=answer.confidence.value,
        citations=citations,
        usage=UsageModel(
            inputTokens=answer.usage.input_tokens,
            outputTokens=answer.usage.output_tokens,
            totalTokens=answer.usage.total_tokens,
            estimatedCostUSD=answer.usage.estimated_cost_usd,
        ),
        timing=TimingModel(
            retrieval_ms=answer.timing.retrieval_ms,
            generation_ms=answer.timing.generation_ms,
            total_ms=answer.timing.total_ms,
        ),
        model=answer.model,
        provider=answer.provider,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    """App factory; serve with ``uvicorn newsrag.api.app:create_app --factory``."""

    settings = validate_settings(settings) if settings is not None else load_settings()
    configure_logging(settings.log_level)
    deps = dependencies or _build_dependencies(settings)

    logger = get_logger("api")
    app = FastAPI(title="newsrag API", version="0.1.0")
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _correlation_id(request: Request) -> str:
        return getattr(request.state, "correlation_id", None) or uuid4().hex

    @app.exception_handler(NewsRAGError)
    async def handle_pipeline_error(request: Request, exc: NewsRAGError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        if isinstance(exc, UpstreamError):
            logger.error(
                "query.upstream_error",
                correlation_id=correlation_id,
                code=exc.code,
                phase=exc.phase,
                dependency=exc.dependency,
                detail=exc.detail,
            )
        else:
            logger.warning("query.rejected", correlation_id=correlation_id, code=exc.code, detail=str(exc))
        return _error_response(_error_status(exc), exc.kind, exc.code, exc.public_message, correlation_id)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.warning("query.malformed", correlation_id=correlation_id, detail=str(exc.errors()))
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "client_error",
            "malformed_request",
            "Request body must be a JSON object with a non-empty 'query' string.",
            correlation_id,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "internal_error",
            "Internal Server Error",
            correlation_id,
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_store(dep: AppDependencies = Depends(get_dependencies)) -> FragmentStore:
        return dep.store

    def get_query_service(dep: AppDependencies = Depends(get_dependencies)) -> QueryService:
        return dep.query_service

    @app.post(
        "/query",
        response_model=QueryResponse,
        responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
    )
    async def query_archive(
        payload: QueryRequest,
        service: QueryService = Depends(get_query_service),
    ) -> QueryResponse:
        answer = await run_in_threadpool(service.answer, payload.query, timeout_seconds=payload.timeout_seconds)
        return _to_response(answer)

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from newsrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(store: FragmentStore = Depends(get_store)) -> JSONResponse:
        try:
            fragments = store.count()
        except Exception as exc:
            logger.error("readiness.failed", detail=str(exc))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error", "detail": "vector store unavailable"},
            )
        return JSONResponse(content={"status": "ready", "fragments": fragments})

    return app
