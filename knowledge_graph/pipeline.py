"""
Knowledge Graph Pipeline

Builds the knowledge graph from a batch of catalog items.

Pipeline flow:
1. Validate the feed (pydantic CatalogItem)
2. Generate embedding text and vectors, bounded by a semaphore
3. Create or merge one product entity per item
4. Create Category and Brand entities with productCount taken from the record
   store, link products to them with BelongsTo and drop links that went stale
5. Score every pair of built entities and add SimilarTo edges above the threshold

update_relationships() re-derives the edges of a single entity and is safe to
run repeatedly.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import pydantic

from models import CatalogItem
from knowledge_graph.embedding_service import EmbeddingProvider, create_embedding_text
from knowledge_graph.exceptions import NotFoundError, ValidationError
from knowledge_graph.models import (
    BuildReport,
    EntityType,
    KnowledgeEntity,
    KnowledgeRelationship,
    RelationType,
    normalize_name,
)
from knowledge_graph.repository import HybridRepository
from knowledge_graph.similarity import calculate_similarity_score, common_tags, normalize_tags, tag_overlap

logger = logging.getLogger(__name__)

DedupKey = Tuple[str, str, RelationType]


def product_entity_id(item: CatalogItem) -> str:
    return f"product_{item.source_id}"


def category_entity_id(name: str) -> str:
    return f"category_{normalize_name(name)}"


def brand_entity_id(name: str) -> str:
    return f"brand_{normalize_name(name)}"


def feature_entity_id(tag: str) -> str:
    return f"feature_{normalize_name(tag)}"


def item_properties(item: CatalogItem) -> Dict[str, Any]:
    """Domain attributes carried in the entity's property map."""
    properties = dict(item.extra)
    properties.update({
        "source_id": item.source_id,
        "category": item.category,
        "brand": item.brand,
        "price": item.price,
        "tags": list(item.tags),
        "rating": item.rating,
        "sales_count": item.sales_count,
        "is_active": item.is_active,
        "is_featured": item.is_featured,
        "slug": item.slug,
    })
    return {k: v for k, v in properties.items() if v is not None}


class KnowledgeGraphBuilder:
    """
    Orchestrates knowledge graph creation for catalog items.

    All writes go through the hybrid repository, so the record store stays
    authoritative and graph/vector mirroring stays best-effort.
    """

    def __init__(
        self,
        repository: HybridRepository,
        embedding_provider: Optional[EmbeddingProvider] = None,
        concurrency: int = 4,
        similarity_threshold: float = 0.6,
        feature_threshold: float = 0.3,
    ):
        self.repository = repository
        self.embedding_provider = embedding_provider
        self.concurrency = max(1, concurrency)
        self.similarity_threshold = similarity_threshold
        self.feature_threshold = feature_threshold

    # ----- helpers -----

    @staticmethod
    def _validate_items(items: Iterable[Union[CatalogItem, Dict[str, Any]]]) -> List[CatalogItem]:
        validated = []
        for index, item in enumerate(items):
            if isinstance(item, CatalogItem):
                validated.append(item)
                continue
            try:
                validated.append(CatalogItem.model_validate(item))
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid catalog item at index {index}: {exc}") from exc
        return validated

    async def _embed_all(self, items: List[CatalogItem], report: BuildReport) -> List[Optional[List[float]]]:
        if self.embedding_provider is None:
            return [None] * len(items)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _embed(item: CatalogItem) -> Optional[List[float]]:
            async with semaphore:
                try:
                    result = await self.embedding_provider.embed(create_embedding_text(item))
                    return result.vector
                except Exception as exc:
                    # stored without a vector, the repository may retry on a later sync
                    logger.warning(f"Embedding failed for item {item.source_id}: {exc}")
                    report.failures.append(f"embedding:{item.source_id}")
                    return None

        return list(await asyncio.gather(*(_embed(item) for item in items)))

    async def _existing_keys(self, entity_id: str) -> Set[DedupKey]:
        return {r.dedup_key for r in await self.repository.find_relationships(entity_id)}

    async def _link(
        self,
        keys: Set[DedupKey],
        from_id: str,
        to_id: str,
        rel_type: RelationType,
        weight: float = 1.0,
        properties: Optional[Dict[str, Any]] = None,
        both_directions: bool = False,
    ) -> bool:
        """Create an edge unless its dedup tuple (or the reverse, if asked) already exists."""
        if (from_id, to_id, rel_type) in keys:
            return False
        if both_directions and (to_id, from_id, rel_type) in keys:
            return False
        result = await self.repository.create_relationship(
            KnowledgeRelationship(
                from_entity_id=from_id,
                to_entity_id=to_id,
                type=rel_type,
                weight=weight,
                properties=properties or {},
            )
        )
        if not result.synced:
            return False
        keys.add((from_id, to_id, rel_type))
        return True

    async def _group_counts(self) -> Counter:
        """productCount per category/brand id, counted from the record store."""
        counts: Counter = Counter()
        for product in await self.repository.find_by_type(EntityType.PRODUCT):
            if product.category:
                counts[category_entity_id(product.category)] += 1
            if product.brand:
                counts[brand_entity_id(product.brand)] += 1
        return counts

    @staticmethod
    def _groups_of(entity: KnowledgeEntity) -> List[Tuple[str, EntityType, str]]:
        groups = []
        if entity.category:
            groups.append((category_entity_id(entity.category), EntityType.CATEGORY, entity.category))
        if entity.brand:
            groups.append((brand_entity_id(entity.brand), EntityType.BRAND, entity.brand))
        return groups

    async def _ensure_group_entity(
        self, entity_id: str, entity_type: EntityType, name: str, count: int
    ) -> Tuple[KnowledgeEntity, bool]:
        """Create a category/brand entity or bring its productCount up to date. Returns (entity, created)."""
        existing = await self.repository.find_by_id(entity_id)
        if existing is None:
            result = await self.repository.create(
                KnowledgeEntity(
                    id=entity_id,
                    type=entity_type,
                    name=name,
                    description=f"{entity_type.value.title()}: {name}",
                    properties={"productCount": count},
                )
            )
            return result.entity, True
        if existing.properties.get("productCount") != count:
            result = await self.repository.update(entity_id, {"properties": {"productCount": count}})
            existing = result.entity if result else existing
        return existing, False

    async def _refresh_group_count(self, entity_id: str, counts: Counter) -> None:
        existing = await self.repository.find_by_id(entity_id)
        if existing is not None and existing.properties.get("productCount") != counts[entity_id]:
            await self.repository.update(entity_id, {"properties": {"productCount": counts[entity_id]}})

    async def _prune(
        self, keys: Set[DedupKey], entity_id: str, rel_type: RelationType, wanted: Set[DedupKey]
    ) -> List[str]:
        """Delete outgoing edges of one type that are no longer derived. Returns their target ids."""
        stale = sorted(k for k in keys if k[0] == entity_id and k[2] == rel_type and k not in wanted)
        removed = []
        for key in stale:
            result = await self.repository.delete_relationship(*key)
            if result.ok:
                keys.discard(key)
                removed.append(key[1])
        return removed

    async def _ensure_feature_entity(self, tag: str) -> Tuple[KnowledgeEntity, bool]:
        entity_id = feature_entity_id(tag)
        existing = await self.repository.find_by_id(entity_id)
        if existing is not None:
            return existing, False
        result = await self.repository.create(
            KnowledgeEntity(
                id=entity_id,
                type=EntityType.FEATURE,
                name=tag.replace("_", " "),
                description=f"Feature: {tag.replace('_', ' ')}",
                properties={"tag": normalize_name(tag)},
            )
        )
        return result.entity, True

    async def _upsert_product(
        self, item: CatalogItem, vector: Optional[List[float]]
    ) -> Tuple[KnowledgeEntity, Optional[KnowledgeEntity]]:
        """Create or replace the product for an item. Returns (entity, previous state or None)."""
        entity_id = product_entity_id(item)
        properties = item_properties(item)
        existing = await self.repository.find_by_id(entity_id)
        if existing is None:
            result = await self.repository.create(
                KnowledgeEntity(
                    id=entity_id,
                    type=EntityType.PRODUCT,
                    name=item.name,
                    description=item.description or "",
                    properties=properties,
                    vector=vector,
                )
            )
            return result.entity, None

        # attributes the feed no longer carries are cleared
        cleared = {key: None for key in existing.properties if key not in properties}
        patch: Dict[str, Any] = {
            "name": item.name,
            "description": item.description or "",
            "properties": {**cleared, **properties},
        }
        if vector:
            patch["vector"] = vector
        result = await self.repository.update(entity_id, patch)
        return (result.entity if result else existing), existing

    def _count_created(self, report: BuildReport, entity_type: EntityType) -> None:
        if entity_type == EntityType.CATEGORY:
            report.categories += 1
        else:
            report.brands += 1

    # ----- build -----

    async def build(self, items: Iterable[Union[CatalogItem, Dict[str, Any]]]) -> BuildReport:
        """
        Build or extend the graph from a batch of catalog items.

        Items already present are replaced by their feed state, and their
        BelongsTo edges follow a changed category or brand.

        Raises:
            ValidationError: an item fails feed validation (nothing is written)
        """
        catalog = self._validate_items(items)
        report = BuildReport()
        if not catalog:
            return report

        logger.info(f"Building knowledge graph from {len(catalog)} items")
        vectors = await self._embed_all(catalog, report)

        entities: List[KnowledgeEntity] = []
        groups: Dict[str, Tuple[EntityType, str]] = {}
        previous_groups: Set[str] = set()

        for item, vector in zip(catalog, vectors):
            entity, previous = await self._upsert_product(item, vector)
            entities.append(entity)
            report.entities += 1
            if previous is not None:
                previous_groups.update(group_id for group_id, _, _ in self._groups_of(previous))
            for group_id, entity_type, name in self._groups_of(entity):
                groups.setdefault(group_id, (entity_type, name))

        counts = await self._group_counts()
        for group_id, (entity_type, name) in groups.items():
            _, created = await self._ensure_group_entity(group_id, entity_type, name, counts[group_id])
            if created:
                self._count_created(report, entity_type)
        for group_id in sorted(previous_groups - set(groups)):
            await self._refresh_group_count(group_id, counts)

        keys_by_entity: Dict[str, Set[DedupKey]] = {}
        for entity in entities:
            keys = await self._existing_keys(entity.id)
            keys_by_entity[entity.id] = keys
            wanted = {(entity.id, group_id, RelationType.BELONGS_TO) for group_id, _, _ in self._groups_of(entity)}
            report.removed_relationships += len(await self._prune(keys, entity.id, RelationType.BELONGS_TO, wanted))
            for group_id, _, _ in self._groups_of(entity):
                if await self._link(keys, entity.id, group_id, RelationType.BELONGS_TO):
                    report.relationships += 1

        # one SimilarTo edge per unordered pair, from the earlier entity to the later one
        for i, a in enumerate(entities):
            for b in entities[i + 1:]:
                if a.type != b.type or a.id == b.id:
                    continue
                score = calculate_similarity_score(a, b)
                if score <= self.similarity_threshold:
                    continue
                if await self._link(
                    keys_by_entity[a.id], a.id, b.id, RelationType.SIMILAR_TO, weight=score,
                    properties={"score": score}, both_directions=True,
                ):
                    report.relationships += 1
                    report.similarity_edges += 1

        logger.info(f"Knowledge graph built: {report.to_dict()}")
        return report

    # ----- incremental re-derivation -----

    async def update_relationships(self, entity_id: str) -> BuildReport:
        """
        Re-derive category/brand, similarity, tag-overlap and feature edges of
        one entity. BelongsTo and HasFeature edges that no longer follow from
        the entity are deleted; edges whose dedup tuple already exists are left
        untouched, so repeated calls converge on the same edge set.
        """
        entity = await self.repository.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError("entity", entity_id)

        report = BuildReport(entities=1)
        keys = await self._existing_keys(entity_id)
        counts = await self._group_counts()

        groups = self._groups_of(entity)
        for group_id, entity_type, name in groups:
            _, created = await self._ensure_group_entity(group_id, entity_type, name, counts[group_id])
            if created:
                self._count_created(report, entity_type)

        wanted = {(entity_id, group_id, RelationType.BELONGS_TO) for group_id, _, _ in groups}
        for stale_id in await self._prune(keys, entity_id, RelationType.BELONGS_TO, wanted):
            report.removed_relationships += 1
            await self._refresh_group_count(stale_id, counts)
        for group_id, _, _ in groups:
            if await self._link(keys, entity_id, group_id, RelationType.BELONGS_TO):
                report.relationships += 1

        peers = [e for e in await self.repository.find_by_type(entity.type) if e.id != entity_id]
        for other in peers:
            score = calculate_similarity_score(entity, other)
            if score > self.similarity_threshold and await self._link(
                keys, entity_id, other.id, RelationType.SIMILAR_TO, weight=score,
                properties={"score": score}, both_directions=True,
            ):
                report.relationships += 1
                report.similarity_edges += 1

            overlap = tag_overlap(entity.tags, other.tags)
            if overlap > self.feature_threshold and await self._link(
                keys, entity_id, other.id, RelationType.RELATED_TO, weight=overlap,
                properties={"common_tags": common_tags(entity.tags, other.tags)}, both_directions=True,
            ):
                report.relationships += 1

        tags = normalize_tags(entity.tags)
        wanted = {(entity_id, feature_entity_id(tag), RelationType.HAS_FEATURE) for tag in tags}
        report.removed_relationships += len(await self._prune(keys, entity_id, RelationType.HAS_FEATURE, wanted))
        for tag in tags:
            feature, created = await self._ensure_feature_entity(tag)
            report.features += int(created)
            if await self._link(keys, entity_id, feature.id, RelationType.HAS_FEATURE):
                report.relationships += 1

        logger.debug(f"Relationships updated for {entity_id}: {report.to_dict()}")
        return report
