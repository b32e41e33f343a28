"""
Tests for knowledge_graph/pipeline.py
Graph building from catalog items and incremental relationship derivation.
"""

import pytest

from conftest import FailingGraphStore, make_product
from knowledge_graph.exceptions import NotFoundError, ValidationError
from knowledge_graph.models import EntityType, RelationType
from knowledge_graph.pipeline import KnowledgeGraphBuilder
from knowledge_graph.repository import HybridRepository
from knowledge_graph.similarity import calculate_similarity_score

WATCHES = [
    {"id": 1, "name": "Acme Field Watch", "category": "Watches", "brand": "Acme", "price": 100,
     "tags": ["waterproof", "gps"]},
    {"id": 2, "name": "Acme Dive Watch", "category": "Watches", "brand": "Acme", "price": 110,
     "tags": ["waterproof", "dive"]},
]


def edges_of_type(graph_store, rel_type):
    return [(u, v) for u, v, k in graph_store.graph.edges(keys=True) if k == rel_type.value]


def edge_snapshot(graph_store):
    return sorted(
        (u, v, k, round(d["weight"], 9)) for u, v, k, d in graph_store.graph.edges(keys=True, data=True)
    )


class TestBuild:
    """Test build()."""

    async def test_similar_pair_gets_exactly_one_edge(self, kb, graph_store):
        """Test two near-identical watches produce one SimilarTo edge."""
        report = await kb.builder.build(WATCHES)

        similar = edges_of_type(graph_store, RelationType.SIMILAR_TO)
        assert similar == [("product_1", "product_2")]
        assert report.similarity_edges == 1
        assert report.entities == 2
        assert report.categories == 1
        assert report.brands == 1

    async def test_category_and_brand_entities(self, kb, graph_store):
        await kb.builder.build(WATCHES)

        category = await kb.repository.find_by_id("category_watches")
        brand = await kb.repository.find_by_id("brand_acme")
        assert category.type == EntityType.CATEGORY
        assert category.properties["productCount"] == 2
        assert brand.properties["productCount"] == 2
        belongs = set(edges_of_type(graph_store, RelationType.BELONGS_TO))
        assert belongs == {
            ("product_1", "category_watches"), ("product_1", "brand_acme"),
            ("product_2", "category_watches"), ("product_2", "brand_acme"),
        }

    async def test_product_properties_and_vectors(self, kb):
        await kb.builder.build(WATCHES)
        product = await kb.repository.find_by_id("product_1")
        assert product.type == EntityType.PRODUCT
        assert product.price == 100
        assert product.tags == ["waterproof", "gps"]
        assert product.properties["is_active"] is True
        assert product.has_vector

    async def test_edges_only_above_threshold(self, kb, graph_store):
        items = WATCHES + [
            {"id": 3, "name": "Hide Office Bag", "category": "Bags", "brand": "Hide", "price": 900},
            {"id": 4, "name": "Peak Trail Shoe", "category": "Shoes", "brand": "Peak", "price": 20},
        ]
        await kb.builder.build(items)

        for u, v in edges_of_type(graph_store, RelationType.SIMILAR_TO):
            a = await kb.repository.find_by_id(u)
            b = await kb.repository.find_by_id(v)
            assert calculate_similarity_score(a, b) > 0.6
        assert ("product_3", "product_4") not in edges_of_type(graph_store, RelationType.SIMILAR_TO)

    async def test_rebuild_does_not_duplicate(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        before = edge_snapshot(graph_store)
        report = await kb.builder.build(WATCHES)

        assert edge_snapshot(graph_store) == before
        assert report.similarity_edges == 0
        assert (await kb.repository.find_by_id("category_watches")).properties["productCount"] == 2

    async def test_invalid_item_writes_nothing(self, kb):
        with pytest.raises(ValidationError):
            await kb.builder.build([WATCHES[0], {"id": 9, "name": "", "price": -1}])
        assert await kb.repository.find_by_type(EntityType.PRODUCT) == []

    async def test_embedding_failure_still_stores_entity(self, kb, embedding_provider):
        embedding_provider.fail = True
        report = await kb.builder.build(WATCHES[:1])

        product = await kb.repository.find_by_id("product_1")
        assert product is not None
        assert not product.has_vector
        assert "embedding:1" in report.failures

    async def test_empty_feed(self, kb):
        report = await kb.builder.build([])
        assert report.entities == 0


class TestUpdateRelationships:
    """Test update_relationships()."""

    async def test_idempotent(self, kb, graph_store):
        """Test two successive calls leave the same edge set and weights."""
        await kb.builder.build(WATCHES)

        await kb.builder.update_relationships("product_1")
        first = edge_snapshot(graph_store)
        report = await kb.builder.update_relationships("product_1")

        assert edge_snapshot(graph_store) == first
        assert report.relationships == 0
        keys = [(u, v, k) for u, v, k, _ in first]
        assert len(keys) == len(set(keys))

    async def test_feature_entities_and_edges(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        report = await kb.builder.update_relationships("product_1")

        assert report.features == 2
        feature = await kb.repository.find_by_id("feature_waterproof")
        assert feature.type == EntityType.FEATURE
        assert set(edges_of_type(graph_store, RelationType.HAS_FEATURE)) == {
            ("product_1", "feature_waterproof"), ("product_1", "feature_gps"),
        }

    async def test_tag_overlap_edge(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        await kb.builder.update_relationships("product_1")

        related = [
            d for u, v, k, d in graph_store.graph.edges(keys=True, data=True)
            if k == RelationType.RELATED_TO.value
        ]
        assert len(related) == 1
        assert related[0]["weight"] == pytest.approx(0.5)

    async def test_creates_missing_category(self, kb, graph_store):
        await kb.repository.create(make_product("solo", "Solo Lamp", category="Lighting"))

        await kb.builder.update_relationships("solo")

        assert (await kb.repository.find_by_id("category_lighting")).properties["productCount"] == 1
        assert ("solo", "category_lighting") in edges_of_type(graph_store, RelationType.BELONGS_TO)

    async def test_missing_entity(self, kb):
        with pytest.raises(NotFoundError):
            await kb.builder.update_relationships("missing")


class TestFeedChanges:
    """Test that rebuilding follows a changed feed."""

    async def test_moved_category_replaces_edge_and_counts(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        moved = dict(WATCHES[0], category="Bags")

        report = await kb.builder.build([moved])
        await kb.builder.update_relationships("product_1")

        targets = sorted(v for u, v in edges_of_type(graph_store, RelationType.BELONGS_TO) if u == "product_1")
        assert targets == ["brand_acme", "category_bags"]
        assert report.removed_relationships == 1
        assert (await kb.repository.find_by_id("category_watches")).properties["productCount"] == 1
        assert (await kb.repository.find_by_id("category_bags")).properties["productCount"] == 1
        assert (await kb.repository.find_by_id("brand_acme")).properties["productCount"] == 2

    async def test_dropped_brand_clears_property_and_edge(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        without_brand = {k: v for k, v in WATCHES[0].items() if k != "brand"}

        await kb.builder.build([without_brand])

        product = await kb.repository.find_by_id("product_1")
        assert product.brand is None
        assert "brand" not in product.properties
        assert ("product_1", "brand_acme") not in edges_of_type(graph_store, RelationType.BELONGS_TO)
        assert (await kb.repository.find_by_id("brand_acme")).properties["productCount"] == 1

    async def test_dropped_tag_removes_feature_edge(self, kb, graph_store):
        await kb.builder.build(WATCHES)
        await kb.builder.update_relationships("product_1")

        await kb.builder.build([dict(WATCHES[0], tags=["waterproof"])])
        report = await kb.builder.update_relationships("product_1")

        assert report.removed_relationships == 1
        assert set(edges_of_type(graph_store, RelationType.HAS_FEATURE)) == {("product_1", "feature_waterproof")}


class TestGraphOutage:
    """Test that an unreachable relationship store leaves record state stable."""

    async def test_repeated_updates_keep_product_count(self, record_store, vector_store, embedding_provider):
        repository = HybridRepository(record_store, FailingGraphStore(), vector_store, embedding_provider)
        builder = KnowledgeGraphBuilder(repository, embedding_provider)
        await builder.build(WATCHES[:1])

        for _ in range(3):
            await builder.update_relationships("product_1")

        assert (await repository.find_by_id("category_watches")).properties["productCount"] == 1
        assert (await repository.find_by_id("brand_acme")).properties["productCount"] == 1
