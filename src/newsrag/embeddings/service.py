"""Query-side embedding backends for the fragment store."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceBgeEmbeddings, HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

LOGGER = logging.getLogger(__name__)

BGE_QUERY_INSTRUCTION = "Represent this sentence for searching relevant passages: "
_TOKEN = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends.

    ``model`` must match the model the indexing job used for stored fragments.
    """

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None
    query_instruction: str | None = None


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        """Embed fragment bodies; used when seeding fixtures."""

    def embed_query(self, query: str) -> Tuple[float, ...]:
        """Return embedding vector for a query string."""


class HashEmbeddingBackend:
    """Signed feature hashing over lowercase word tokens.

    Texts that share vocabulary score close together, which is all offline runs
    and tests need; there is no semantics beyond word overlap.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        return [self._features(text) for text in texts]

    def embed_query(self, query: str) -> Tuple[float, ...]:
        return self._features(query)

    def _features(self, text: str) -> Tuple[float, ...]:
        buckets = [0.0] * self._config.dim
        for token in _TOKEN.findall((text or "").lower()):
            value = int.from_bytes(hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "big")
            buckets[value % self._config.dim] += 1.0 if value >> 63 else -1.0
        if not any(buckets):
            # Chroma cannot rank a zero vector under cosine distance.
            buckets[0] = 1.0
        vector = tuple(buckets)
        return unit_vector(vector) if self._config.normalize else vector


class HuggingFaceEmbeddingBackend:
    """Sentence-embedding backend served through LangChain's HuggingFace wrappers.

    BGE models get their retrieval instruction prepended to queries, matching
    how their fragment vectors are meant to be searched. Without ``use_model``
    the backend answers from ``HashEmbeddingBackend``.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._fallback = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if self._config.use_model:
            self._client = self._load_client()
            LOGGER.info("Loaded embedding model %s", self._config.model)
        else:
            LOGGER.info("Embedding model disabled; using hashed token features.")

    def _load_client(self) -> LangChainEmbeddings:
        options = {
            "model_name": self._config.model,
            "model_kwargs": {"device": self._config.device} if self._config.device else {},
            "encode_kwargs": {"normalize_embeddings": self._config.normalize},
            "cache_folder": self._config.cache_folder,
        }
        if self._config.query_instruction or self._config.model.lower().startswith("baai/bge"):
            return HuggingFaceBgeEmbeddings(
                query_instruction=self._config.query_instruction or BGE_QUERY_INSTRUCTION,
                **options,
            )
        return HuggingFaceEmbeddings(**options)

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        if not texts:
            return []
        if self._client is None:
            return self._fallback.embed_texts(texts)
        vectors = self._client.embed_documents(list(texts))
        if len(vectors) != len(texts):
            raise ValueError(f"embedding model returned {len(vectors)} vectors for {len(texts)} texts")
        return [self._finish(vector) for vector in vectors]

    def embed_query(self, query: str) -> Tuple[float, ...]:
        if self._client is None:
            return self._fallback.embed_query(query)
        return self._finish(self._client.embed_query(query))

    def _finish(self, raw: Sequence[float]) -> Tuple[float, ...]:
        vector = tuple(float(value) for value in raw)
        if len(vector) != self._config.dim:
            LOGGER.warning("Embedding dim mismatch: configured=%d, actual=%d", self._config.dim, len(vector))
        return unit_vector(vector) if self._config.normalize else vector


def unit_vector(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)
