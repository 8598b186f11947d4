"""Embedding services and the fragment store read path."""

from .service import EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, HuggingFaceEmbeddingBackend
from .store import ChromaFragmentStore, FragmentStore

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "FragmentStore",
    "ChromaFragmentStore",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
]
