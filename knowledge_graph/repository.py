"""
Hybrid Repository

One logical knowledge base over three stores:

- record store: authoritative, every write commits here first and failures propagate
- relationship store: best-effort mirror (entity nodes and typed edges)
- similarity store: best-effort mirror (one vector per entity id)

Mirror writes run concurrently after the record commit. A failing mirror is
logged as a PartialSyncWarning and recorded in the returned write result; it
never fails the operation. Reads that fan out to the secondary stores degrade
to an empty contribution when a store errors or exceeds its deadline.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from knowledge_graph.embedding_service import EmbeddingProvider
from knowledge_graph.exceptions import NotFoundError, PartialSyncWarning, ValidationError
from knowledge_graph.graph_store import RelationshipStore
from knowledge_graph.models import (
    GRAPH_STORE,
    VECTOR_STORE,
    EntityInsights,
    EntityType,
    KnowledgeEntity,
    KnowledgeRelationship,
    RelatedEntity,
    RelationshipWriteResult,
    RelationType,
    RemoveResult,
    ScoredEntity,
    SearchFilters,
    SecondaryWriteResult,
    VectorMatch,
    WriteResult,
)
from knowledge_graph.record_store import RecordStore
from knowledge_graph.similarity import keyword_overlap
from knowledge_graph.vector_store import SimilarityStore

logger = logging.getLogger(__name__)

# Fields whose change makes a stored embedding stale
_TEXT_FIELDS = ("name", "description", "properties")


def vector_metadata(entity: KnowledgeEntity) -> Dict[str, Any]:
    return {
        "type": entity.type.value,
        "name": entity.name,
        "category": entity.category,
        "brand": entity.brand,
        "price": entity.price,
    }


class HybridRepository:
    """
    Orchestrates writes and fuses reads across the record, relationship and
    similarity stores. The entity id assigned by the record store is the only
    key shared between them.
    """

    def __init__(
        self,
        record_store: RecordStore,
        graph_store: RelationshipStore,
        vector_store: SimilarityStore,
        embedding_provider: Optional[EmbeddingProvider] = None,
        source_timeout: float = 5.0,
        semantic_threshold: float = 0.3,
        hybrid_limit: int = 20,
    ):
        self.record = record_store
        self.graph = graph_store
        self.vector = vector_store
        self.embedding_provider = embedding_provider
        self.source_timeout = source_timeout
        self.semantic_threshold = semantic_threshold
        self.hybrid_limit = hybrid_limit

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(entity: KnowledgeEntity) -> None:
        if not isinstance(entity, KnowledgeEntity):
            raise ValidationError("Expected a KnowledgeEntity")
        if not entity.name or not str(entity.name).strip():
            raise ValidationError("Entity name cannot be blank", field="name")
        if not isinstance(entity.properties, dict):
            raise ValidationError("Entity properties must be a mapping", field="properties")
        if entity.vector is not None and not all(isinstance(v, (int, float)) for v in entity.vector):
            raise ValidationError("Entity vector must contain numbers", field="vector")

    def _sync_failed(self, store: str, entity_id: str, exc: BaseException) -> SecondaryWriteResult:
        warning = PartialSyncWarning(store, entity_id, exc)
        logger.warning(str(warning))
        return SecondaryWriteResult(store=store, ok=False, error=str(exc))

    async def _mirror_graph(self, entity: KnowledgeEntity) -> SecondaryWriteResult:
        try:
            await self.graph.create_entity_node(entity)
        except Exception as exc:
            return self._sync_failed(GRAPH_STORE, entity.id, exc)
        return SecondaryWriteResult(store=GRAPH_STORE, ok=True)

    async def _mirror_vector(
        self, entity: KnowledgeEntity, reembed: bool = False
    ) -> Tuple[SecondaryWriteResult, Optional[KnowledgeEntity]]:
        """
        Upsert the entity's vector, embedding it first when it has none (or
        when reembed is set) and a provider is configured. A freshly computed
        vector is written back to the record store; the updated record is
        returned alongside the result.
        """
        updated = None
        try:
            vector = entity.vector
            if (reembed or not vector) and self.embedding_provider is not None:
                embedding = await self.embedding_provider.embed(entity.content_text())
                vector = embedding.vector
                updated = await self.record.update(entity.id, {"vector": vector})
            if not vector:
                logger.debug(f"No vector for {entity.id}, similarity store not updated")
                return SecondaryWriteResult(store=VECTOR_STORE, ok=False, skipped=True), updated
            await self.vector.upsert_vector(entity.id, vector, vector_metadata(entity))
        except Exception as exc:
            return self._sync_failed(VECTOR_STORE, entity.id, exc), updated
        return SecondaryWriteResult(store=VECTOR_STORE, ok=True), updated

    async def _mirror(self, entity: KnowledgeEntity, reembed: bool = False) -> WriteResult:
        graph_result, (vector_result, updated) = await asyncio.gather(
            self._mirror_graph(entity),
            self._mirror_vector(entity, reembed=reembed),
        )
        return WriteResult(primary=updated or entity, secondary_results=[graph_result, vector_result])

    async def create(self, entity: KnowledgeEntity) -> WriteResult:
        """
        Create an entity. The record store commit must succeed; the graph and
        vector mirrors are attempted concurrently afterwards.
        """
        self._validate(entity)
        stored = await self.record.create(entity)
        result = await self._mirror(stored)
        logger.debug(f"Entity created: {stored.id} sync={result.sync_status.to_dict()}")
        return result

    async def update(self, entity_id: str, patch: Dict[str, Any]) -> Optional[WriteResult]:
        """Patch an entity. Returns None when the id does not exist."""
        stored = await self.record.update(entity_id, patch)
        if stored is None:
            return None
        reembed = "vector" not in patch and any(f in patch for f in _TEXT_FIELDS)
        return await self._mirror(stored, reembed=reembed)

    async def remove(self, entity_id: str) -> RemoveResult:
        """Remove from the record store, then best-effort from both mirrors."""
        removed = await self.record.remove(entity_id)
        if not removed:
            return RemoveResult(entity_id=entity_id, removed=False)

        async def _drop(store: str, call: Awaitable) -> SecondaryWriteResult:
            try:
                await call
            except Exception as exc:
                return self._sync_failed(store, entity_id, exc)
            return SecondaryWriteResult(store=store, ok=True)

        results = await asyncio.gather(
            _drop(GRAPH_STORE, self.graph.delete_entity(entity_id)),
            _drop(VECTOR_STORE, self.vector.delete_vector(entity_id)),
        )
        return RemoveResult(entity_id=entity_id, removed=True, secondary_results=list(results))

    async def sync_entity(self, entity_id: str) -> WriteResult:
        """Re-mirror one entity into both secondary stores (manual repair)."""
        entity = await self.record.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError("entity", entity_id)
        result = await self._mirror(entity)
        logger.info(f"Entity resynced: {entity_id} sync={result.sync_status.to_dict()}")
        return result

    async def create_relationship(self, relationship: KnowledgeRelationship) -> RelationshipWriteResult:
        """
        Create or strengthen an edge. Both endpoints must exist in the record
        store; the relationship store write itself is best-effort.
        """
        if not relationship.from_entity_id or not relationship.to_entity_id:
            raise ValidationError("Relationship endpoints are required")
        if relationship.weight < 0:
            raise ValidationError("Relationship weight cannot be negative", field="weight")
        found = {e.id for e in await self.record.find_by_ids([relationship.from_entity_id, relationship.to_entity_id])}
        for endpoint in (relationship.from_entity_id, relationship.to_entity_id):
            if endpoint not in found:
                raise NotFoundError("entity", endpoint)

        try:
            stored = await self.graph.create_relationship(relationship)
        except Exception as exc:
            self._sync_failed(GRAPH_STORE, relationship.from_entity_id, exc)
            return RelationshipWriteResult(relationship=relationship, synced=False, error=str(exc))
        return RelationshipWriteResult(relationship=stored, synced=True)

    async def delete_relationship(self, from_id: str, to_id: str, relation_type: RelationType) -> SecondaryWriteResult:
        """Drop one edge by its dedup tuple; best-effort like every graph write."""
        try:
            await self.graph.delete_relationship(from_id, to_id, relation_type)
        except Exception as exc:
            return self._sync_failed(GRAPH_STORE, from_id, exc)
        return SecondaryWriteResult(store=GRAPH_STORE, ok=True)

    # ------------------------------------------------------------------
    # Point lookups (record store only)
    # ------------------------------------------------------------------

    async def find_by_id(self, entity_id: str) -> Optional[KnowledgeEntity]:
        return await self.record.find_by_id(entity_id)

    async def find_by_type(self, entity_type: EntityType) -> List[KnowledgeEntity]:
        return await self.record.find_by_type(entity_type)

    async def find_by_name(self, pattern: str) -> List[KnowledgeEntity]:
        return await self.record.find_by_name(pattern)

    async def find_by_properties(self, filters: Dict[str, Any]) -> List[KnowledgeEntity]:
        return await self.record.find_by_properties(filters)

    async def find_by_category(self, category: str) -> List[KnowledgeEntity]:
        return await self.record.find_by_properties({"category": category})

    async def find_by_brand(self, brand: str) -> List[KnowledgeEntity]:
        return await self.record.find_by_properties({"brand": brand})

    # ------------------------------------------------------------------
    # Secondary-store reads
    # ------------------------------------------------------------------

    async def _degrade(self, store: str, call: Awaitable, default=None):
        """Await a secondary-store read under the source deadline; errors become the default."""
        try:
            return await asyncio.wait_for(call, timeout=self.source_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{store} store read timed out after {self.source_timeout}s")
        except Exception as exc:
            logger.warning(f"{store} store read failed: {exc}")
        return [] if default is None else default

    async def _resolve_matches(self, matches: Iterable[VectorMatch], threshold: Optional[float] = None) -> List[ScoredEntity]:
        best: Dict[str, float] = {}
        for match in matches:
            if threshold is not None and match.score < threshold:
                continue
            if match.score > best.get(match.entity_id, float("-inf")):
                best[match.entity_id] = match.score
        # ids missing from the record store are sync drift and are dropped
        entities = await self.record.find_by_ids(best)
        scored = [ScoredEntity(entity=e, score=best[e.id], sources={VECTOR_STORE}) for e in entities]
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    async def find_similar(self, vector: List[float], limit: int = 10) -> List[ScoredEntity]:
        matches = await self._degrade(VECTOR_STORE, self.vector.find_similar(vector, limit))
        return (await self._resolve_matches(matches))[:limit]

    async def semantic_search(self, query: str, limit: int = 10) -> List[ScoredEntity]:
        """
        Entities semantically close to the query text.

        At most limit results, each scoring at least the semantic threshold,
        sorted by descending score, without repeated ids.
        """
        if not query or not query.strip():
            return []
        matches = await self._degrade(VECTOR_STORE, self.vector.semantic_search(query, limit))
        results = await self._resolve_matches(matches, threshold=self.semantic_threshold)
        logger.debug(f"Semantic search '{query}': {len(results)} results")
        return results[:limit]

    async def find_related(
        self, entity_id: str, hops: int = 2, entity_type: Optional[EntityType] = None
    ) -> List[RelatedEntity]:
        """Graph neighbours within N hops, enriched with their full records."""
        related = await self._degrade(GRAPH_STORE, self.graph.find_related_entities(entity_id, hops, entity_type))
        if not related:
            return []
        records = {e.id: e for e in await self.record.find_by_ids(r.entity.id for r in related)}
        return [
            RelatedEntity(entity=records[r.entity.id], distance=r.distance)
            for r in related
            if r.entity.id in records
        ]

    async def find_relationships(self, entity_id: str) -> List[KnowledgeRelationship]:
        return await self._degrade(GRAPH_STORE, self.graph.find_relationships(entity_id))

    async def degree(self, entity_id: str) -> int:
        return await self._degrade(GRAPH_STORE, self.graph.degree(entity_id), default=0)

    async def find_entity_neighbors(
        self, entity_id: str, relation_type: Optional[RelationType] = None, limit: int = 10
    ) -> List[Tuple[KnowledgeEntity, float]]:
        """Graph neighbours by edge weight; node snapshots, not full records."""
        return await self._degrade(GRAPH_STORE, self.graph.find_entity_neighbors(entity_id, relation_type, limit))

    async def hybrid_search(self, query: str, filters: Optional[SearchFilters] = None) -> List[ScoredEntity]:
        """
        Merge semantic hits, name/description matches and (optionally) graph
        neighbours of those hits. Results are unique by id, satisfy every
        filter, and are ordered with vector-bearing entities first, then by name.
        """
        filters = filters or SearchFilters()
        query = (query or "").strip()
        if not query:
            return []

        semantic_matches, keyword_hits = await asyncio.gather(
            self._degrade(VECTOR_STORE, self.vector.semantic_search(query, self.hybrid_limit)),
            self.record.search_text(query, entity_type=filters.type, limit=self.hybrid_limit),
        )

        merged: Dict[str, ScoredEntity] = {}

        def _add(entity: KnowledgeEntity, score: float, source: str) -> None:
            current = merged.get(entity.id)
            if current is None:
                merged[entity.id] = ScoredEntity(entity=entity, score=score, sources={source})
                return
            current.sources.add(source)
            if score > current.score:
                current.score = score

        for scored in await self._resolve_matches(semantic_matches, threshold=self.semantic_threshold):
            _add(scored.entity, scored.score, VECTOR_STORE)
        for entity in keyword_hits:
            _add(entity, keyword_overlap(query, entity.content_text()), "record")

        if filters.include_related and merged:
            seeds = sorted(merged.values(), key=lambda s: s.score, reverse=True)[:3]
            related_lists = await asyncio.gather(
                *(self.find_related(s.entity.id, hops=1, entity_type=filters.type) for s in seeds)
            )
            for seed, related in zip(seeds, related_lists):
                for r in related:
                    _add(r.entity, seed.score * 0.5 / r.distance, GRAPH_STORE)

        results = [s for s in merged.values() if filters.matches(s.entity)]
        # keep the best-scoring hits, then present them vector-first by name
        results.sort(key=lambda s: (-s.score, s.entity.id))
        results = results[: self.hybrid_limit]
        results.sort(key=lambda s: (not s.entity.has_vector, s.entity.name.lower(), s.entity.id))
        logger.info(f"Hybrid search '{query}': {len(results)} results")
        return results

    async def entity_insights(self, entity_id: str, limit: int = 5) -> EntityInsights:
        """Similar entities, purchased-with neighbours and popular same-category entities."""
        entity = await self.record.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError("entity", entity_id)

        async def _similar() -> List[KnowledgeEntity]:
            if not entity.has_vector:
                return []
            hits = await self.find_similar(entity.vector, limit + 1)
            return [s.entity for s in hits if s.entity.id != entity_id][:limit]

        async def _purchased_with() -> List[KnowledgeEntity]:
            neighbours = await self.find_entity_neighbors(entity_id, RelationType.PURCHASED_WITH, limit)
            return await self.record.find_by_ids(n.id for n, _ in neighbours)

        async def _popular() -> List[KnowledgeEntity]:
            if not entity.category:
                return []
            peers = [e for e in await self.find_by_category(entity.category) if e.id != entity_id]
            peers.sort(
                key=lambda e: (float(e.properties.get("rating") or 0), int(e.properties.get("sales_count") or 0)),
                reverse=True,
            )
            return peers[:limit]

        similar, purchased_with, popular = await asyncio.gather(_similar(), _purchased_with(), _popular())
        return EntityInsights(
            entity_id=entity_id,
            category=entity.category,
            similar=similar,
            purchased_with=purchased_with,
            popular_in_category=popular,
        )
