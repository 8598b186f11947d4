"""Vector store read path for indexed newsletter fragments."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterator, Mapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import QueryResult

from newsrag.embeddings.service import EmbeddingBackend
from newsrag.models import Fragment


class FragmentStore(Protocol):
    """Protocol for the similarity-search backend."""

    def similarity_search(self, query: str, *, top_k: int = 5, dataset_id: str | None = None) -> Sequence[Fragment]:
        """Return up to ``top_k`` fragments nearest to the query string."""

    def count(self) -> int:
        """Return total number of stored fragments."""


def open_client(persist_directory: str | Path | None = None) -> ClientAPI:
    """Local Chroma client: on disk when a directory is given, in memory otherwise."""

    if persist_directory is None:
        return chromadb.EphemeralClient()
    return chromadb.PersistentClient(path=str(persist_directory))


def similarity_from_distance(distance: float | None) -> float:
    """Cosine distance to a 0-1 similarity; unknown distances rank last."""

    if distance is None:
        return 0.0
    return min(1.0, max(0.0, 1.0 - float(distance)))


class ChromaFragmentStore:
    """Fragments held in a Chroma collection using cosine space.

    The indexing job owns writes. ``upsert`` mirrors its metadata layout so
    fixtures and the evaluation CLI can seed a collection.
    """

    def __init__(
        self,
        embedding_backend: EmbeddingBackend,
        collection_name: str = "newsletter-fragments",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        self._embedder = embedding_backend
        chroma = client if client is not None else open_client(persist_directory)
        self._collection = chroma.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, fragments: Sequence[Fragment], *, dataset_id: str | None = None) -> list[str]:
        if not fragments:
            return []
        bodies = [fragment.text for fragment in fragments]
        self._collection.upsert(
            ids=[fragment.fragment_id for fragment in fragments],
            documents=bodies,
            embeddings=[list(vector) for vector in self._embedder.embed_texts(bodies)],
            metadatas=[fragment_metadata(fragment, dataset_id) for fragment in fragments],
        )
        return [fragment.fragment_id for fragment in fragments]

    def similarity_search(self, query: str, *, top_k: int = 5, dataset_id: str | None = None) -> list[Fragment]:
        if top_k < 1:
            return []
        result = self._collection.query(
            query_embeddings=[list(self._embedder.embed_query(query))],
            n_results=top_k,
            where={"dataset_id": dataset_id} if dataset_id else None,
            include=["documents", "metadatas", "distances"],
        )
        return list(_fragments_from(result))

    def count(self) -> int:
        return self._collection.count()


def fragment_metadata(fragment: Fragment, dataset_id: str | None = None) -> dict[str, str | int]:
    """Chroma metadata for a fragment; Chroma rejects ``None`` values so blanks are empty strings."""

    metadata: dict[str, str | int] = {
        "document_id": fragment.document_id,
        "publisher": fragment.publisher or "",
        "published_at": fragment.published_at.isoformat() if fragment.published_at else "",
        "ordinal": fragment.ordinal,
        "subject": fragment.subject or "",
    }
    if dataset_id:
        metadata["dataset_id"] = dataset_id
    return metadata


def _fragments_from(result: QueryResult) -> Iterator[Fragment]:
    # Chroma nests every field per query embedding; one embedding was sent.
    ids = (result.get("ids") or [[]])[0]
    documents = (result.get("documents") or [[]])[0] or []
    metadatas = (result.get("metadatas") or [[]])[0] or []
    distances = (result.get("distances") or [[]])[0] or []
    for position, fragment_id in enumerate(ids):
        metadata: Mapping[str, object] = (metadatas[position] if position < len(metadatas) else None) or {}
        yield Fragment(
            fragment_id=fragment_id,
            document_id=str(metadata.get("document_id") or fragment_id),
            publisher=str(metadata.get("publisher") or ""),
            published_at=_parse_timestamp(metadata.get("published_at")),
            text=(documents[position] if position < len(documents) else None) or "",
            score=similarity_from_distance(distances[position] if position < len(distances) else None),
            ordinal=int(metadata.get("ordinal") or 0),
            subject=str(metadata.get("subject") or "") or None,
        )


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


__all__ = ["ChromaFragmentStore", "FragmentStore", "fragment_metadata", "open_client", "similarity_from_distance"]
