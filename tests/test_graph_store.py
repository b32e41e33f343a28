"""
Tests for knowledge_graph/graph_store.py
networkx relationship store: upserts, traversal, analytics, persistence.
"""

import pytest

from conftest import make_product
from knowledge_graph.graph_store import NetworkxRelationshipStore, accumulate_weight
from knowledge_graph.models import EntityType, KnowledgeEntity, KnowledgeRelationship, RelationType


def rel(a, b, rel_type=RelationType.SIMILAR_TO, weight=1.0):
    return KnowledgeRelationship(from_entity_id=a, to_entity_id=b, type=rel_type, weight=weight)


@pytest.fixture
async def chain(graph_store):
    """a - b - c - d plus an isolated e; names chosen so name order differs from id order."""
    for entity_id, name in (("a", "Alpha"), ("b", "Zulu"), ("x", "Bravo"), ("c", "Charlie"), ("d", "Delta"), ("e", "Echo")):
        await graph_store.create_entity_node(make_product(entity_id, name))
    await graph_store.create_relationship(rel("a", "b"))
    await graph_store.create_relationship(rel("x", "a", RelationType.RELATED_TO))
    await graph_store.create_relationship(rel("b", "c"))
    await graph_store.create_relationship(rel("c", "d"))
    return graph_store


class TestWeightAccumulation:
    """Test the soft-capped weight formula."""

    def test_monotone_and_capped(self):
        w = 1.0
        for _ in range(50):
            nxt = accumulate_weight(w, 1.0, 5.0)
            assert nxt >= w
            assert nxt <= 5.0
            w = nxt
        assert w == pytest.approx(5.0, abs=0.01)

    def test_at_cap_stays(self):
        assert accumulate_weight(5.0, 3.0, 5.0) == 5.0


class TestRelationshipUpsert:
    """Test idempotent relationship creation."""

    async def test_creating_twice_strengthens_single_edge(self, graph_store):
        """Test the second create increases weight without a second edge."""
        first = await graph_store.create_relationship(rel("p1", "p2", weight=1.0))
        second = await graph_store.create_relationship(rel("p1", "p2", weight=1.0))

        assert second.weight > first.weight
        matching = [r for r in await graph_store.find_relationships("p1") if r.dedup_key == ("p1", "p2", RelationType.SIMILAR_TO)]
        assert len(matching) == 1
        assert matching[0].weight == pytest.approx(second.weight)

    async def test_different_type_is_separate_edge(self, graph_store):
        await graph_store.create_relationship(rel("p1", "p2", RelationType.SIMILAR_TO))
        await graph_store.create_relationship(rel("p1", "p2", RelationType.PURCHASED_WITH))
        assert len(await graph_store.find_relationships("p1")) == 2

    async def test_placeholder_nodes_for_unknown_endpoints(self, graph_store):
        await graph_store.create_relationship(rel("p1", "p2"))
        related = await graph_store.find_related_entities("p1", hops=1)
        assert [r.entity.id for r in related] == ["p2"]

    async def test_batch(self, graph_store):
        stored = await graph_store.create_relationships_batch([rel("a", "b"), rel("a", "b"), rel("b", "c")])
        assert len(stored) == 3
        assert len(await graph_store.find_relationships("b")) == 2

    async def test_properties_merge(self, graph_store):
        await graph_store.create_relationship(KnowledgeRelationship("a", "b", RelationType.RELATED_TO, properties={"x": 1}))
        merged = await graph_store.create_relationship(KnowledgeRelationship("a", "b", RelationType.RELATED_TO, properties={"y": 2}))
        assert merged.properties == {"x": 1, "y": 2}


class TestTraversal:
    """Test N-hop traversal and paths."""

    async def test_related_ordered_by_distance_then_name(self, chain):
        related = await chain.find_related_entities("a", hops=2)
        assert [(r.entity.id, r.distance) for r in related] == [("x", 1), ("b", 1), ("c", 2)]

    async def test_hops_limit(self, chain):
        assert [r.entity.id for r in await chain.find_related_entities("a", hops=1)] == ["x", "b"]

    async def test_type_filter(self, chain):
        await chain.create_entity_node(KnowledgeEntity(id="cat", type=EntityType.CATEGORY, name="Watches"))
        await chain.create_relationship(rel("a", "cat", RelationType.BELONGS_TO))
        related = await chain.find_related_entities("a", hops=3, entity_type=EntityType.CATEGORY)
        assert [r.entity.id for r in related] == ["cat"]

    async def test_unknown_entity(self, chain):
        assert await chain.find_related_entities("missing") == []
        assert await chain.find_relationships("missing") == []

    async def test_shortest_path(self, chain):
        path = await chain.find_shortest_path("a", "d")
        assert path.entity_ids == ["a", "b", "c", "d"]
        assert path.length == 3

    async def test_no_path(self, chain):
        assert await chain.find_shortest_path("a", "e") is None
        assert await chain.find_shortest_path("a", "missing") is None

    async def test_conceptual_paths(self, chain):
        paths = await chain.find_conceptual_paths("alpha", "delta", max_hops=5)
        assert paths[0].entity_ids == ["a", "b", "c", "d"]
        assert await chain.find_conceptual_paths("alpha", "delta", max_hops=2) == []


class TestDeleteAndAnalytics:
    """Test deletion and analytics."""

    async def test_delete_removes_incident_edges(self, chain):
        assert await chain.delete_entity("b") is True
        assert await chain.find_relationships("a") != []  # x-a remains
        assert all("b" not in (r.from_entity_id, r.to_entity_id) for r in await chain.find_relationships("c"))
        assert await chain.delete_entity("b") is False

    async def test_delete_relationship_by_tuple(self, chain):
        assert await chain.delete_relationship("a", "b", RelationType.SIMILAR_TO) is True
        assert not chain.graph.has_edge("a", "b")
        assert "a" in chain.graph and "b" in chain.graph
        assert await chain.delete_relationship("a", "b", RelationType.SIMILAR_TO) is False
        assert await chain.delete_relationship("x", "a", RelationType.SIMILAR_TO) is False
        assert chain.graph.has_edge("x", "a", key=RelationType.RELATED_TO.value)

    async def test_degree(self, chain):
        assert await chain.degree("b") == 2
        assert await chain.degree("e") == 0
        assert await chain.degree("missing") == 0

    async def test_neighbors_by_weight(self, graph_store):
        await graph_store.create_relationship(rel("a", "b", weight=0.2))
        await graph_store.create_relationship(rel("c", "a", weight=0.9))
        neighbours = await graph_store.find_entity_neighbors("a")
        assert [n.id for n, _ in neighbours] == ["c", "b"]

    async def test_neighbors_filtered_by_type(self, graph_store):
        await graph_store.create_relationship(rel("a", "b", RelationType.PURCHASED_WITH))
        await graph_store.create_relationship(rel("a", "c", RelationType.SIMILAR_TO))
        neighbours = await graph_store.find_entity_neighbors("a", RelationType.PURCHASED_WITH)
        assert [n.id for n, _ in neighbours] == ["b"]

    async def test_entity_similarity_via_common_neighbours(self, graph_store):
        await graph_store.create_relationship(rel("a", "hub", RelationType.BELONGS_TO))
        await graph_store.create_relationship(rel("b", "hub", RelationType.BELONGS_TO))
        similar = await graph_store.find_entity_similarity("a")
        assert similar[0]["entity"].id == "b"
        assert similar[0]["common_neighbors"] == 1

    async def test_components_and_influence(self, chain):
        components = await chain.find_connected_components(EntityType.PRODUCT)
        assert components[0]["entity_ids"] == ["a", "b", "c", "d", "x"]
        assert components[0]["component_id"] == 0
        influential = await chain.find_influential_entities(EntityType.PRODUCT, limit=2)
        assert {r["entity_id"] for r in influential} <= {"a", "b", "c"}
        clusters = await chain.find_entity_clusters(EntityType.PRODUCT)
        assert all(c["entity_id"] != "e" for c in clusters)

    async def test_stats(self, chain):
        stats = {s["entity_type"]: s for s in await chain.get_stats()}
        assert stats["product"]["entity_count"] == 6


class TestPersistence:
    """Test GraphML save / load."""

    async def test_save_and_reload(self, tmp_path):
        path = tmp_path / "graph.graphml"
        store = NetworkxRelationshipStore(persist_path=str(path))
        await store.create_entity_node(make_product("p1", "Trail Watch", tags=["gps"]))
        await store.create_relationship(rel("p1", "p2", weight=0.7))
        await store.save()

        reloaded = NetworkxRelationshipStore(persist_path=str(path))
        rels = await reloaded.find_relationships("p1")
        assert len(rels) == 1
        assert rels[0].type == RelationType.SIMILAR_TO
        assert rels[0].weight == pytest.approx(0.7)
        related = await reloaded.find_related_entities("p2", hops=1)
        assert related[0].entity.name == "Trail Watch"
        assert related[0].entity.properties == {"tags": ["gps"]}
