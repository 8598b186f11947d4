"""Error taxonomy shared by the answer pipeline and its HTTP surface."""

from __future__ import annotations


class NewsRAGError(RuntimeError):
    """Base class for all newsrag failures."""

    kind = "internal_error"
    code = "internal_error"

    @property
    def public_message(self) -> str:
        return "Internal Server Error"


class InvalidQuery(NewsRAGError):
    """Raised when a query is empty or otherwise malformed."""

    kind = "client_error"
    code = "invalid_query"

    @property
    def public_message(self) -> str:
        return str(self) or "Query is required and must be a non-empty string."


class ConfigurationError(NewsRAGError):
    """Raised at startup when mandatory configuration is missing or invalid."""

    code = "configuration_error"


class UpstreamError(NewsRAGError):
    """A dependency of the pipeline failed; carries operator-facing detail."""

    kind = "upstream_error"
    code = "upstream_unavailable"
    default_dependency = "upstream"

    def __init__(self, detail: str, *, dependency: str | None = None, phase: str | None = None) -> None:
        self.detail = detail
        self.dependency = dependency or self.default_dependency
        self.phase = phase
        super().__init__(f"{self.dependency}: {detail}")

    @property
    def public_message(self) -> str:
        return "An upstream dependency is unavailable. Please retry later."


class RetrievalUnavailable(UpstreamError):
    """The vector store could not be reached or returned an error."""

    code = "retrieval_unavailable"
    default_dependency = "vector-store"


class GenerationFailed(UpstreamError):
    """The model backend errored (timeout, quota, malformed response)."""

    code = "generation_failed"
    default_dependency = "model-backend"


class NoCandidateReturned(GenerationFailed):
    """The model backend answered but produced zero completions."""

    code = "no_candidate_returned"


class QueryTimeout(UpstreamError):
    """The caller-supplied deadline expired while a phase was in flight."""

    code = "query_timeout"
    default_dependency = "deadline"

    @property
    def public_message(self) -> str:
        return "The query did not complete before its deadline."


__all__ = [
    "ConfigurationError",
    "GenerationFailed",
    "InvalidQuery",
    "NewsRAGError",
    "NoCandidateReturned",
    "QueryTimeout",
    "RetrievalUnavailable",
    "UpstreamError",
]
