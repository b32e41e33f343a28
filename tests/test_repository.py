"""
Tests for knowledge_graph/repository.py
Write fan-out, partial-sync tolerance and read fusion.
"""

import uuid

import pytest

from conftest import FailingGraphStore, FailingVectorStore, make_product
from knowledge_graph.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from knowledge_graph.models import (
    EntityType,
    KnowledgeRelationship,
    RelationType,
    SearchFilters,
)
from knowledge_graph.record_store import SqlRecordStore
from knowledge_graph.repository import HybridRepository


class UnreachableRecordStore(SqlRecordStore):
    async def create(self, entity):
        raise StoreUnavailableError("record", ConnectionError("db down"))


async def seed_catalog(repository):
    await repository.create(make_product("dive", "Waterproof Dive Watch", category="Watches", brand="Acme", price=100))
    await repository.create(make_product("trail", "Trail Watch", description="GPS watch", category="Watches", brand="Acme", price=110))
    await repository.create(make_product("bag", "Leather Office Bag", category="Bags", brand="Hide", price=80))
    await repository.create(make_product("shoe", "Waterproof Hiking Shoe", category="Shoes", brand="Peak", price=90))


class TestWritePath:
    """Test create / update / remove fan-out."""

    async def test_create_mirrors_into_both_stores(self, repository, graph_store, vector_store):
        result = await repository.create(make_product("p1", "Trail Watch", category="Watches"))

        assert result.sync_status.graph_synced is True
        assert result.sync_status.vector_synced is True
        assert result.entity.has_vector
        assert (await repository.find_by_id("p1")).has_vector
        assert await vector_store.count() == 1
        assert await graph_store.degree("p1") == 0
        assert "p1" in graph_store.graph

    async def test_graph_failure_does_not_fail_create(self, record_store, vector_store, embedding_provider):
        """Test a throwing relationship store leaves the entity retrievable with graphSynced false."""
        repository = HybridRepository(record_store, FailingGraphStore(), vector_store, embedding_provider)

        result = await repository.create(make_product("p1", "Trail Watch"))

        assert result.sync_status.to_dict() == {"graphSynced": False, "vectorSynced": True}
        failed = [r for r in result.secondary_results if not r.ok]
        assert failed[0].store == "graph"
        assert "offline" in failed[0].error
        assert (await repository.find_by_id("p1")).name == "Trail Watch"

    async def test_vector_failure_does_not_fail_create(self, record_store, graph_store, chroma_client, embedding_provider):
        vector_store = FailingVectorStore(embedding_provider, client=chroma_client, collection_name=f"f_{uuid.uuid4().hex}")
        repository = HybridRepository(record_store, graph_store, vector_store, embedding_provider)

        result = await repository.create(make_product("p1", "Trail Watch"))

        assert result.sync_status.graph_synced is True
        assert result.sync_status.vector_synced is False
        assert await repository.find_by_id("p1") is not None

    async def test_provider_failure_reports_vector_unsynced(self, repository, embedding_provider):
        embedding_provider.fail = True
        result = await repository.create(make_product("p1", "Trail Watch"))
        assert result.sync_status.vector_synced is False
        assert not (await repository.find_by_id("p1")).has_vector

    async def test_without_provider_vector_is_skipped(self, record_store, graph_store, vector_store):
        repository = HybridRepository(record_store, graph_store, vector_store)
        result = await repository.create(make_product("p1", "Trail Watch"))
        vector_result = [r for r in result.secondary_results if r.store == "vector"][0]
        assert vector_result.skipped is True
        assert result.sync_status.vector_synced is False

    async def test_record_failure_propagates(self, graph_store, vector_store):
        repository = HybridRepository(UnreachableRecordStore(None), graph_store, vector_store)
        with pytest.raises(StoreUnavailableError):
            await repository.create(make_product("p1", "Trail Watch"))
        assert "p1" not in graph_store.graph

    async def test_blank_name_rejected(self, repository):
        with pytest.raises(ValidationError):
            await repository.create(make_product("p1", "  "))

    async def test_update_missing_returns_none(self, repository):
        assert await repository.update("missing", {"name": "x"}) is None

    async def test_update_reembeds_changed_text(self, repository, embedding_provider):
        first = await repository.create(make_product("p1", "Trail Watch"))
        updated = await repository.update("p1", {"description": "Now with solar charging"})
        assert updated.entity.description == "Now with solar charging"
        assert updated.entity.vector != first.entity.vector
        assert "solar" in embedding_provider.calls[-1].lower()

    async def test_remove_clears_all_stores(self, repository, graph_store, vector_store):
        await repository.create(make_product("p1", "Trail Watch"))
        result = await repository.remove("p1")

        assert result.removed is True
        assert result.sync_status.graph_synced and result.sync_status.vector_synced
        assert await repository.find_by_id("p1") is None
        assert "p1" not in graph_store.graph
        assert await vector_store.count() == 0

    async def test_remove_missing(self, repository):
        result = await repository.remove("missing")
        assert result.removed is False
        assert result.secondary_results == []

    async def test_sync_entity_repairs_graph(self, record_store, vector_store, embedding_provider):
        graph_store = FailingGraphStore()
        repository = HybridRepository(record_store, graph_store, vector_store, embedding_provider)
        await repository.create(make_product("p1", "Trail Watch"))

        graph_store.fail_writes = False
        result = await repository.sync_entity("p1")

        assert result.sync_status.graph_synced is True
        assert "p1" in graph_store.graph

    async def test_sync_entity_missing(self, repository):
        with pytest.raises(NotFoundError):
            await repository.sync_entity("missing")


class TestRelationships:
    """Test relationship creation through the repository."""

    async def test_requires_existing_endpoints(self, repository):
        await repository.create(make_product("p1", "A"))
        with pytest.raises(NotFoundError):
            await repository.create_relationship(KnowledgeRelationship("p1", "ghost", RelationType.SIMILAR_TO))

    async def test_negative_weight_rejected(self, repository):
        with pytest.raises(ValidationError):
            await repository.create_relationship(KnowledgeRelationship("a", "b", RelationType.SIMILAR_TO, weight=-1))

    async def test_created_twice_single_record(self, repository):
        await repository.create(make_product("p1", "A"))
        await repository.create(make_product("p2", "B"))
        first = await repository.create_relationship(KnowledgeRelationship("p1", "p2", RelationType.PURCHASED_WITH))
        second = await repository.create_relationship(KnowledgeRelationship("p1", "p2", RelationType.PURCHASED_WITH))

        assert second.synced is True
        assert second.relationship.weight > first.relationship.weight
        assert len(await repository.find_relationships("p1")) == 1

    async def test_graph_failure_reported(self, record_store, vector_store):
        repository = HybridRepository(record_store, FailingGraphStore(), vector_store)
        await repository.create(make_product("p1", "A"))
        await repository.create(make_product("p2", "B"))
        result = await repository.create_relationship(KnowledgeRelationship("p1", "p2", RelationType.SIMILAR_TO))
        assert result.synced is False
        assert result.error


class TestReadPath:
    """Test lookups, semantic search and hybrid search."""

    async def test_semantic_search_results(self, repository):
        """Test at most limit results, all above threshold, sorted, unique."""
        await seed_catalog(repository)

        results = await repository.semantic_search("waterproof watch", 5)

        assert len(results) <= 5
        assert all(r.score >= repository.semantic_threshold for r in results)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        ids = [r.entity.id for r in results]
        assert len(ids) == len(set(ids))
        assert "dive" in ids

    async def test_semantic_search_drops_ids_missing_from_records(self, repository, vector_store, embedding_provider):
        await repository.create(make_product("dive", "Waterproof Dive Watch"))
        ghost = await embedding_provider.embed("waterproof watch")
        await vector_store.upsert_vector("ghost", ghost.vector)

        results = await repository.semantic_search("waterproof watch", 5)

        assert [r.entity.id for r in results] == ["dive"]

    async def test_semantic_search_degrades_when_store_fails(self, record_store, graph_store, chroma_client, embedding_provider):
        vector_store = FailingVectorStore(embedding_provider, client=chroma_client, collection_name=f"f_{uuid.uuid4().hex}")
        repository = HybridRepository(record_store, graph_store, vector_store, embedding_provider)
        assert await repository.semantic_search("waterproof watch", 5) == []

    async def test_find_related_enriched_and_degraded(self, record_store, vector_store):
        graph_store = FailingGraphStore(fail_writes=False)
        repository = HybridRepository(record_store, graph_store, vector_store)
        await repository.create(make_product("p1", "A", price=5))
        await repository.create(make_product("p2", "B", price=7))
        await repository.create_relationship(KnowledgeRelationship("p1", "p2", RelationType.SIMILAR_TO))

        related = await repository.find_related("p1", hops=1)
        assert [r.entity.properties["price"] for r in related] == [7]

        graph_store.fail_reads = True
        assert await repository.find_related("p1") == []

    async def test_lookup_helpers(self, repository):
        await seed_catalog(repository)
        assert {e.id for e in await repository.find_by_category("Watches")} == {"dive", "trail"}
        assert [e.id for e in await repository.find_by_brand("Peak")] == ["shoe"]
        assert len(await repository.find_by_type(EntityType.PRODUCT)) == 4
        assert [e.id for e in await repository.find_by_name("bag")] == ["bag"]

    async def test_hybrid_search_dedup_and_order(self, record_store, graph_store, vector_store, embedding_provider):
        repository = HybridRepository(record_store, graph_store, vector_store)
        with_vector = (await embedding_provider.embed("waterproof watch")).vector
        await repository.create(make_product("v2", "Zeta Watch", vector=with_vector))
        await repository.create(make_product("v1", "Alpha Watch", vector=with_vector))
        await repository.create(make_product("n1", "Beta Watch"))

        results = await repository.hybrid_search("watch")

        ids = [r.entity.id for r in results]
        assert len(ids) == len(set(ids))
        assert ids == ["v1", "v2", "n1"]

    async def test_hybrid_search_filters_intersect(self, repository):
        await seed_catalog(repository)
        results = await repository.hybrid_search(
            "waterproof", SearchFilters(category="Watches", min_price=50, max_price=105)
        )
        assert [r.entity.id for r in results] == ["dive"]

    async def test_hybrid_search_filters_ignore_case(self, repository):
        await seed_catalog(repository)
        results = await repository.hybrid_search("watch", SearchFilters(category="watches", brand="ACME"))
        assert {r.entity.id for r in results} == {e.id for e in await repository.find_by_category("watches")}

    async def test_hybrid_search_limit_keeps_best_scores(self, record_store, graph_store, vector_store):
        """Test truncation drops the weakest hit even when its name sorts first."""
        repository = HybridRepository(record_store, graph_store, vector_store, hybrid_limit=2)
        await repository.create(make_product("y", "Yew strap"))
        await repository.create(make_product("z", "Zinc strap"))
        await repository.create(make_product("a", "Amber band"))
        await repository.create_relationship(KnowledgeRelationship("y", "a", RelationType.RELATED_TO))

        results = await repository.hybrid_search("strap", SearchFilters(include_related=True))

        assert [r.entity.id for r in results] == ["y", "z"]

    async def test_hybrid_search_include_related(self, repository):
        await seed_catalog(repository)
        await repository.create_relationship(KnowledgeRelationship("dive", "bag", RelationType.PURCHASED_WITH))
        results = await repository.hybrid_search("dive", SearchFilters(include_related=True))
        by_id = {r.entity.id: r for r in results}
        assert "bag" in by_id
        assert "dive" in by_id

    async def test_entity_insights(self, repository):
        await seed_catalog(repository)
        await repository.create_relationship(KnowledgeRelationship("dive", "bag", RelationType.PURCHASED_WITH))

        insights = await repository.entity_insights("dive")

        assert insights.category == "Watches"
        assert [e.id for e in insights.purchased_with] == ["bag"]
        assert [e.id for e in insights.popular_in_category] == ["trail"]
        assert all(e.id != "dive" for e in insights.similar)

    async def test_entity_insights_missing(self, repository):
        with pytest.raises(NotFoundError):
            await repository.entity_insights("missing")
