"""Retrieval components."""

from .service import FragmentRetriever, RetrievalConfig, Retriever, keyword_relevance

__all__ = ["FragmentRetriever", "RetrievalConfig", "Retriever", "keyword_relevance"]
