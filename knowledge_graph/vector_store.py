"""
Vector Store

ChromaDB integration for storing and querying entity embeddings. Vectors are
keyed by entity id; scores are cosine similarities (1 - cosine distance).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import chromadb
from chromadb.config import Settings

from knowledge_graph.embedding_service import EmbeddingProvider
from knowledge_graph.exceptions import ValidationError
from knowledge_graph.models import VectorMatch

logger = logging.getLogger(__name__)


class SimilarityStore(ABC):
    """Capability interface of the similarity store."""

    @abstractmethod
    async def upsert_vector(self, entity_id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None: ...

    @abstractmethod
    async def find_similar(self, vector: List[float], limit: int = 10) -> List[VectorMatch]:
        """k nearest stored vectors, most similar first."""

    @abstractmethod
    async def semantic_search(self, text: str, limit: int = 10) -> List[VectorMatch]:
        """Embed the text, then run find_similar."""

    @abstractmethod
    async def delete_vector(self, entity_id: str) -> None: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def reset(self) -> None: ...


def _clean_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Chroma metadata values must be scalars
    cleaned = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        elif isinstance(value, (list, tuple, set)):
            cleaned[key] = ", ".join(str(v) for v in value)
        else:
            cleaned[key] = str(value)
    return cleaned or None


class ChromaSimilarityStore(SimilarityStore):
    """
    ChromaDB-based similarity store.

    Args:
        embedding_provider: Used by semantic_search to embed query text
        client: Existing Chroma client (e.g. chromadb.EphemeralClient() in tests)
        persist_directory: Directory for a persistent client when no client is given
        collection_name: Collection holding the entity vectors
    """

    def __init__(
        self,
        embedding_provider: Optional[EmbeddingProvider] = None,
        client=None,
        persist_directory: Optional[str] = None,
        collection_name: str = "shopping_knowledge",
    ):
        self.embedding_provider = embedding_provider
        if client is None:
            persist_path = Path(persist_directory or "./chroma_db")
            persist_path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=str(persist_path),
                settings=Settings(anonymized_telemetry=False, allow_reset=True),
            )
        self.client = client
        self.collection_name = collection_name
        self.collection = self._get_collection()

    def _get_collection(self):
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "description": "Knowledge entity embeddings"},
        )

    async def upsert_vector(self, entity_id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        """Store or update the vector of an entity. An existing vector is replaced."""
        if not vector:
            raise ValidationError("Vector cannot be empty", field="vector")
        kwargs = {"ids": [entity_id], "embeddings": [list(vector)]}
        cleaned = _clean_metadata(metadata)
        if cleaned:
            kwargs["metadatas"] = [cleaned]
        await asyncio.to_thread(self.collection.upsert, **kwargs)
        logger.debug(f"Vector upserted: {entity_id}")

    async def find_similar(self, vector: List[float], limit: int = 10) -> List[VectorMatch]:
        if not vector or limit <= 0:
            return []
        total = await self.count()
        if total == 0:
            return []

        similar = await asyncio.to_thread(
            self.collection.query,
            query_embeddings=[list(vector)],
            n_results=min(limit, total),
            include=["distances", "metadatas"],
        )

        ids = similar["ids"][0]
        distances = similar["distances"][0]
        metadatas = (similar.get("metadatas") or [[None] * len(ids)])[0]
        matches = [
            VectorMatch(entity_id=entity_id, score=1.0 - float(distance), metadata=dict(metadata or {}))
            for entity_id, distance, metadata in zip(ids, distances, metadatas)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    async def semantic_search(self, text: str, limit: int = 10) -> List[VectorMatch]:
        if self.embedding_provider is None:
            raise ValidationError("No embedding provider configured for semantic search")
        embedding = await self.embedding_provider.embed(text)
        return await self.find_similar(embedding.vector, limit)

    async def delete_vector(self, entity_id: str) -> None:
        """Delete the vector of an entity (no-op when absent)."""
        await asyncio.to_thread(self.collection.delete, ids=[entity_id])
        logger.debug(f"Vector deleted: {entity_id}")

    async def count(self) -> int:
        """Get total number of vectors in the collection"""
        return await asyncio.to_thread(self.collection.count)

    async def reset(self) -> None:
        """Delete all vectors"""
        await asyncio.to_thread(self.client.delete_collection, self.collection_name)
        self.collection = await asyncio.to_thread(self._get_collection)
        logger.info(f"Vector collection reset: {self.collection_name}")
