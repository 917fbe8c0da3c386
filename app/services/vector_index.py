"""Vector index service: OpenAI embeddings stored in a ChromaDB collection."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings
from openai import AsyncOpenAI

from app.config import settings
from app.exceptions import ConfigurationException, VectorIndexException
from app.models.vector_models import VectorMatch, VectorRecord
from app.utils.text_cleaning import normalize_for_embedding

logger = logging.getLogger(__name__)

EMBED_MODES = ("query", "passage")


def build_where_clause(filters: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Translate an equality filter into a ChromaDB ``where`` clause.

    ChromaDB requires ``$and`` when there is more than one condition.

    Args:
        filters: Mapping of metadata key to required value; None values are ignored

    Returns:
        Where clause, or None when there is nothing to filter on
    """
    conditions = [{k: {"$eq": v}} for k, v in (filters or {}).items() if v is not None]
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop empty keys and None values; ChromaDB rejects null metadata values."""
    if not isinstance(metadata, dict):
        return None
    out = {k: v for k, v in metadata.items() if k and v is not None}
    return out or None


class VectorIndexService:
    """Service for embedding text and querying/upserting question vectors."""

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        vector_db_client: Optional[Any] = None,
        collection_name: Optional[str] = None,
    ):
        """
        Initialize vector index service.

        The OpenAI client is created lazily so the service can be built
        without credentials; embedding then raises ConfigurationException.

        Args:
            openai_client: AsyncOpenAI client instance
            vector_db_client: ChromaDB client instance
            collection_name: Collection to use, defaults to settings
        """
        self._client = openai_client
        self.embedding_model = settings.embedding_model

        if vector_db_client is not None:
            self.vector_db = vector_db_client
        else:
            self.vector_db = chromadb.PersistentClient(
                path=str(settings.vector_db_path),
                settings=ChromaSettings(anonymized_telemetry=False),
            )

        self.collection = self.vector_db.get_or_create_collection(
            name=collection_name or settings.vector_collection_name,
            metadata={"hnsw:space": "cosine", "embedding_model": self.embedding_model},
        )

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ConfigurationException(
                    "OpenAI API key is not configured",
                    details={"setting": "OPENAI_API_KEY"},
                )
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def embed(self, texts: Sequence[str], mode: str = "passage") -> List[List[float]]:
        """
        Generate embedding vectors for texts.

        OpenAI embedding models are symmetric, so ``mode`` only documents the
        caller's intent (stored passage vs. lookup query).

        Args:
            texts: Texts to embed
            mode: "query" or "passage"

        Returns:
            One vector per input text, in order

        Raises:
            ValueError: If mode is unknown
            ConfigurationException: If no API key is configured
            VectorIndexException: If the embedding call fails
        """
        if mode not in EMBED_MODES:
            raise ValueError(f"mode must be one of {EMBED_MODES}, got {mode!r}")
        inputs = [normalize_for_embedding(t) or " " for t in texts or []]
        if not inputs:
            return []

        client = self.client
        try:
            response = await client.embeddings.create(model=self.embedding_model, input=inputs)
        except Exception as e:
            raise VectorIndexException(
                f"Failed to generate embeddings: {str(e)}",
                details={"mode": mode, "count": len(inputs)},
            ) from e

        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]

    async def query_by_vector(
        self,
        vector: Sequence[float],
        top_k: int = 3,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        """
        Query nearest neighbours of a vector.

        Args:
            vector: Query vector
            top_k: Number of matches to return
            filters: Equality filter on stored metadata

        Returns:
            Matches sorted by score (descending), score = 1 - cosine distance

        Raises:
            VectorIndexException: If the query fails
        """
        if not vector:
            return []

        query_kwargs: Dict[str, Any] = {
            "query_embeddings": [list(vector)],
            "n_results": max(1, int(top_k)),
            "include": ["metadatas", "distances"],
        }
        where_clause = build_where_clause(filters)
        if where_clause:
            query_kwargs["where"] = where_clause

        try:
            results = await asyncio.to_thread(self.collection.query, **query_kwargs)
        except Exception as e:
            raise VectorIndexException(f"Vector query failed: {str(e)}") from e

        matches: List[VectorMatch] = []
        ids = results.get("ids") or [[]]
        if ids and ids[0]:
            distances = (results.get("distances") or [[]])[0]
            metadatas = (results.get("metadatas") or [[]])[0] or []
            for i, record_id in enumerate(ids[0]):
                metadata = metadatas[i] if i < len(metadatas) else None
                matches.append(
                    VectorMatch(
                        id=str(record_id),
                        score=1.0 - float(distances[i]),
                        metadata=metadata or {},
                    )
                )

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    async def upsert_vectors(self, records: Sequence[VectorRecord]) -> int:
        """
        Insert or replace vectors by id.

        Args:
            records: Records to write

        Returns:
            Number of records written

        Raises:
            VectorIndexException: If the write fails
        """
        with_meta = []
        without_meta = []
        for record in records:
            metadata = sanitize_metadata(record.metadata)
            if metadata:
                with_meta.append((record, metadata))
            else:
                without_meta.append(record)

        try:
            if with_meta:
                await asyncio.to_thread(
                    self.collection.upsert,
                    ids=[r.id for r, _ in with_meta],
                    embeddings=[list(r.values) for r, _ in with_meta],
                    metadatas=[m for _, m in with_meta],
                )
            if without_meta:
                await asyncio.to_thread(
                    self.collection.upsert,
                    ids=[r.id for r in without_meta],
                    embeddings=[list(r.values) for r in without_meta],
                )
        except Exception as e:
            raise VectorIndexException(f"Vector upsert failed: {str(e)}") from e

        written = len(with_meta) + len(without_meta)
        logger.debug(f"Upserted {written} vector(s)")
        return written
