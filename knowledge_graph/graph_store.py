"""
Relationship Store

Typed, weighted, directed edges between entity ids, with N-hop traversal,
shortest paths and simple analytics. The networkx implementation keeps one
MultiDiGraph whose edge key is the relation type, so an edge is addressed by
exactly its dedup tuple (from, to, type). Nodes carry a small snapshot of the
entity (type, name, description, properties) and never reference each other.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import networkx as nx

from knowledge_graph.models import (
    EntityType,
    GraphPath,
    KnowledgeEntity,
    KnowledgeRelationship,
    RelatedEntity,
    RelationType,
    utcnow,
)

logger = logging.getLogger(__name__)


class RelationshipStore(ABC):
    """Capability interface of the graph store."""

    @abstractmethod
    async def create_entity_node(self, entity: KnowledgeEntity) -> None:
        """Create or update the node for an entity (idempotent)."""

    @abstractmethod
    async def update_entity_properties(self, entity_id: str, properties: Dict[str, Any]) -> bool: ...

    @abstractmethod
    async def create_relationship(self, relationship: KnowledgeRelationship) -> KnowledgeRelationship:
        """Upsert on (from, to, type); an existing edge accumulates weight."""

    @abstractmethod
    async def create_relationships_batch(
        self, relationships: Iterable[KnowledgeRelationship]
    ) -> List[KnowledgeRelationship]: ...

    @abstractmethod
    async def find_related_entities(
        self, entity_id: str, hops: int = 2, entity_type: Optional[EntityType] = None
    ) -> List[RelatedEntity]:
        """Distinct entities within N hops, ordered by distance then name."""

    @abstractmethod
    async def find_relationships(self, entity_id: str) -> List[KnowledgeRelationship]:
        """All edges incident to the entity, in either direction."""

    @abstractmethod
    async def find_shortest_path(self, from_id: str, to_id: str) -> Optional[GraphPath]: ...

    @abstractmethod
    async def delete_entity(self, entity_id: str) -> bool:
        """Remove the node and every incident edge."""

    @abstractmethod
    async def delete_relationship(self, from_id: str, to_id: str, relation_type: RelationType) -> bool:
        """Remove the edge with this dedup tuple. Returns False when there is none."""

    @abstractmethod
    async def degree(self, entity_id: str) -> int: ...

    @abstractmethod
    async def find_entity_neighbors(
        self, entity_id: str, relation_type: Optional[RelationType] = None, limit: int = 10
    ) -> List[Tuple[KnowledgeEntity, float]]: ...

    @abstractmethod
    async def find_entity_similarity(self, entity_id: str, limit: int = 5) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def find_entity_clusters(self, entity_type: EntityType) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def find_connected_components(self, entity_type: EntityType) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def find_influential_entities(self, entity_type: EntityType, limit: int = 10) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get_stats(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def find_conceptual_paths(self, from_text: str, to_text: str, max_hops: int = 5) -> List[GraphPath]: ...


def accumulate_weight(current: float, increment: float, cap: float) -> float:
    """
    Soft-capped accumulation: w + inc * (1 - w / cap).

    Monotone in both arguments, never exceeds cap, and repeated increments
    converge on the cap instead of growing without bound.
    """
    if current >= cap:
        return cap
    return min(cap, current + max(0.0, increment) * (1 - current / cap))


class NetworkxRelationshipStore(RelationshipStore):
    """
    In-process relationship store on networkx.

    Args:
        weight_cap: Soft cap for accumulated edge weights
        persist_path: Optional GraphML file loaded on start and written by save()
    """

    def __init__(self, weight_cap: float = 5.0, persist_path: Optional[str] = None):
        self.weight_cap = weight_cap
        self.persist_path = Path(persist_path) if persist_path else None
        self.graph = nx.MultiDiGraph()
        self._lock = asyncio.Lock()

        if self.persist_path and self.persist_path.exists():
            self.graph = self._load(self.persist_path)
            logger.info(
                f"Loaded relationship graph: {self.graph.number_of_nodes()} nodes, "
                f"{self.graph.number_of_edges()} edges"
            )

    # ----- node / edge mapping -----

    def _node_entity(self, node_id: str) -> KnowledgeEntity:
        data = self.graph.nodes[node_id]
        # Placeholder nodes (created by an edge before their entity was mirrored) have no type
        return KnowledgeEntity(
            id=node_id,
            type=data.get("type") or EntityType.CONCEPT,
            name=data.get("name") or node_id,
            description=data.get("description") or "",
            properties=dict(data.get("properties") or {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    def _edge_relationship(self, u: str, v: str, key: str, data: Dict[str, Any]) -> KnowledgeRelationship:
        return KnowledgeRelationship(
            id=data.get("rel_id"),
            from_entity_id=u,
            to_entity_id=v,
            type=RelationType(key),
            weight=float(data.get("weight", 0.0)),
            properties=dict(data.get("properties") or {}),
            created_at=data.get("created_at"),
        )

    def _undirected(self):
        return self.graph.to_undirected(as_view=True)

    def _node_type(self, node_id: str) -> Optional[EntityType]:
        return self.graph.nodes[node_id].get("type")

    def _incident_edges(self, node_id: str) -> List[Tuple[str, str, str, Dict[str, Any]]]:
        edges = list(self.graph.out_edges(node_id, keys=True, data=True))
        # self-loops already appear in out_edges
        edges += [e for e in self.graph.in_edges(node_id, keys=True, data=True) if e[0] != e[1]]
        return edges

    # ----- writes -----

    async def create_entity_node(self, entity: KnowledgeEntity) -> None:
        async with self._lock:
            existing = self.graph.nodes[entity.id] if entity.id in self.graph else {}
            self.graph.add_node(
                entity.id,
                type=entity.type,
                name=entity.name,
                description=entity.description or "",
                properties=dict(entity.properties or {}),
                created_at=existing.get("created_at") or entity.created_at or utcnow(),
                updated_at=entity.updated_at or utcnow(),
            )
        logger.debug(f"Graph node upserted: {entity.id}")

    async def update_entity_properties(self, entity_id: str, properties: Dict[str, Any]) -> bool:
        async with self._lock:
            if entity_id not in self.graph:
                return False
            node = self.graph.nodes[entity_id]
            node["properties"] = dict(properties or {})
            node["updated_at"] = utcnow()
        return True

    def _upsert_edge(self, rel: KnowledgeRelationship) -> KnowledgeRelationship:
        u, v, key = rel.from_entity_id, rel.to_entity_id, rel.type.value
        for node_id in (u, v):
            if node_id not in self.graph:
                self.graph.add_node(node_id, type=None, name=node_id, properties={})

        if self.graph.has_edge(u, v, key=key):
            data = self.graph.edges[u, v, key]
            data["weight"] = accumulate_weight(float(data.get("weight", 0.0)), rel.weight, self.weight_cap)
            merged = dict(data.get("properties") or {})
            merged.update(rel.properties or {})
            data["properties"] = merged
            data["updated_at"] = utcnow()
        else:
            self.graph.add_edge(
                u,
                v,
                key=key,
                rel_id=rel.id,
                weight=min(float(rel.weight), self.weight_cap),
                properties=dict(rel.properties or {}),
                created_at=rel.created_at or utcnow(),
                updated_at=utcnow(),
            )
        return self._edge_relationship(u, v, key, self.graph.edges[u, v, key])

    async def create_relationship(self, relationship: KnowledgeRelationship) -> KnowledgeRelationship:
        async with self._lock:
            stored = self._upsert_edge(relationship)
        logger.debug(
            f"Relationship upserted: {stored.from_entity_id} -[{stored.type.value}]-> "
            f"{stored.to_entity_id} (weight={stored.weight:.3f})"
        )
        return stored

    async def create_relationships_batch(
        self, relationships: Iterable[KnowledgeRelationship]
    ) -> List[KnowledgeRelationship]:
        async with self._lock:
            stored = [self._upsert_edge(rel) for rel in relationships]
        logger.info(f"Upserted {len(stored)} relationships in batch")
        return stored

    async def delete_entity(self, entity_id: str) -> bool:
        async with self._lock:
            if entity_id not in self.graph:
                logger.warning(f"Graph entity not found: {entity_id}")
                return False
            self.graph.remove_node(entity_id)
        logger.debug(f"Graph entity deleted: {entity_id}")
        return True

    async def delete_relationship(self, from_id: str, to_id: str, relation_type: RelationType) -> bool:
        key = RelationType(relation_type).value
        async with self._lock:
            if not self.graph.has_edge(from_id, to_id, key=key):
                return False
            self.graph.remove_edge(from_id, to_id, key=key)
        logger.debug(f"Relationship deleted: {from_id} -[{key}]-> {to_id}")
        return True

    # ----- traversal -----

    async def find_related_entities(
        self, entity_id: str, hops: int = 2, entity_type: Optional[EntityType] = None
    ) -> List[RelatedEntity]:
        if entity_id not in self.graph or hops < 1:
            return []
        distances = nx.single_source_shortest_path_length(self._undirected(), entity_id, cutoff=hops)
        related = []
        for node_id, distance in distances.items():
            if node_id == entity_id:
                continue
            if entity_type is not None and self._node_type(node_id) != entity_type:
                continue
            related.append(RelatedEntity(entity=self._node_entity(node_id), distance=distance))
        related.sort(key=lambda r: (r.distance, r.entity.name.lower(), r.entity.id))
        return related

    async def find_relationships(self, entity_id: str) -> List[KnowledgeRelationship]:
        if entity_id not in self.graph:
            return []
        return [self._edge_relationship(u, v, k, d) for u, v, k, d in self._incident_edges(entity_id)]

    def _strongest_edge(self, a: str, b: str) -> KnowledgeRelationship:
        candidates = []
        for u, v in ((a, b), (b, a)):
            for key, data in (self.graph.get_edge_data(u, v) or {}).items():
                candidates.append(self._edge_relationship(u, v, key, data))
        return max(candidates, key=lambda r: r.weight)

    def _path_for(self, nodes: List[str]) -> GraphPath:
        rels = [self._strongest_edge(a, b) for a, b in zip(nodes, nodes[1:])]
        return GraphPath(entity_ids=list(nodes), relationships=rels, total_weight=sum(r.weight for r in rels))

    async def find_shortest_path(self, from_id: str, to_id: str) -> Optional[GraphPath]:
        try:
            nodes = nx.shortest_path(self._undirected(), from_id, to_id)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None
        return self._path_for(nodes)

    async def find_conceptual_paths(self, from_text: str, to_text: str, max_hops: int = 5) -> List[GraphPath]:
        def matching(text: str) -> List[str]:
            needle = text.lower()
            return [
                n for n, d in self.graph.nodes(data=True)
                if needle in str(d.get("name") or "").lower() or needle in str(d.get("description") or "").lower()
            ]

        view = self._undirected()
        paths = []
        for src in matching(from_text):
            for dst in matching(to_text):
                if src == dst:
                    continue
                try:
                    nodes = nx.shortest_path(view, src, dst)
                except nx.NetworkXNoPath:
                    continue
                if len(nodes) - 1 <= max_hops:
                    paths.append(self._path_for(nodes))
        paths.sort(key=lambda p: (p.length, -p.total_weight))
        return paths[:10]

    # ----- analytics -----

    async def degree(self, entity_id: str) -> int:
        if entity_id not in self.graph:
            return 0
        return len(self._incident_edges(entity_id))

    async def find_entity_neighbors(
        self, entity_id: str, relation_type: Optional[RelationType] = None, limit: int = 10
    ) -> List[Tuple[KnowledgeEntity, float]]:
        if entity_id not in self.graph:
            return []
        best: Dict[str, float] = {}
        for u, v, key, data in self._incident_edges(entity_id):
            if relation_type is not None and key != RelationType(relation_type).value:
                continue
            other = v if u == entity_id else u
            best[other] = max(best.get(other, 0.0), float(data.get("weight", 0.0)))
        ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [(self._node_entity(node_id), weight) for node_id, weight in ranked]

    async def find_entity_similarity(self, entity_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Entities sharing neighbours with the given one (common neighbours, mean connection weight)."""
        if entity_id not in self.graph:
            return []
        common: Dict[str, List[float]] = defaultdict(list)
        for u1, v1, _, d1 in self._incident_edges(entity_id):
            middle = v1 if u1 == entity_id else u1
            for u2, v2, _, d2 in self._incident_edges(middle):
                other = v2 if u2 == middle else u2
                if other in (entity_id, middle):
                    continue
                common[other].append(float(d1.get("weight", 0.0)) + float(d2.get("weight", 0.0)))
        ranked = sorted(
            common.items(),
            key=lambda item: (len(item[1]), sum(item[1]) / len(item[1])),
            reverse=True,
        )[:limit]
        return [
            {
                "entity": self._node_entity(node_id),
                "common_neighbors": len(weights),
                "avg_connection_weight": sum(weights) / len(weights),
            }
            for node_id, weights in ranked
        ]

    def _nodes_of_type(self, entity_type: EntityType) -> List[str]:
        entity_type = EntityType(entity_type)
        return [n for n, d in self.graph.nodes(data=True) if d.get("type") == entity_type]

    async def find_entity_clusters(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        entity_type = EntityType(entity_type)
        clusters = []
        for node_id in self._nodes_of_type(entity_type):
            edges = self._incident_edges(node_id)
            if not edges:
                continue
            connected_types = [
                (self._node_type(v if u == node_id else u) or EntityType.CONCEPT).value for u, v, _, _ in edges
            ]
            clusters.append({
                "entity_id": node_id,
                "entity_name": self.graph.nodes[node_id].get("name"),
                "connections": len(edges),
                "same_type_connections": sum(1 for t in connected_types if t == entity_type.value),
                "connected_types": connected_types,
            })
        clusters.sort(key=lambda c: (c["connections"], c["same_type_connections"]), reverse=True)
        return clusters

    async def find_connected_components(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        wanted = set(self._nodes_of_type(entity_type))
        components = []
        for component in nx.connected_components(nx.Graph(self._undirected())):
            members = sorted(component & wanted)
            if members:
                components.append({"entity_ids": members, "component_size": len(members)})
        components.sort(key=lambda c: c["component_size"], reverse=True)
        for index, component in enumerate(components):
            component["component_id"] = index
        return components

    async def find_influential_entities(self, entity_type: EntityType, limit: int = 10) -> List[Dict[str, Any]]:
        ranked = []
        for node_id in self._nodes_of_type(entity_type):
            edges = self._incident_edges(node_id)
            if not edges:
                continue
            weights = [float(d.get("weight", 0.0)) for _, _, _, d in edges]
            neighbour_types = {self._node_type(v if u == node_id else u) for u, v, _, _ in edges}
            degree = len(edges)
            avg_weight = sum(weights) / degree
            ranked.append({
                "entity_id": node_id,
                "entity_name": self.graph.nodes[node_id].get("name"),
                "degree": degree,
                "avg_weight": avg_weight,
                "types_diversity": len(neighbour_types),
                "influence": degree * avg_weight * len(neighbour_types),
            })
        ranked.sort(key=lambda r: r["influence"], reverse=True)
        return ranked[:limit]

    async def get_stats(self) -> List[Dict[str, Any]]:
        counts: Dict[str, Dict[str, int]] = defaultdict(lambda: {"entity_count": 0, "relationship_count": 0})
        for node_id, data in self.graph.nodes(data=True):
            key = (data.get("type") or EntityType.CONCEPT).value
            counts[key]["entity_count"] += 1
            counts[key]["relationship_count"] += len(self._incident_edges(node_id))
        stats = [{"entity_type": t, **c} for t, c in counts.items()]
        stats.sort(key=lambda s: s["entity_count"], reverse=True)
        return stats

    # ----- persistence -----

    async def save(self) -> None:
        """Write the graph to persist_path (no-op when persistence is disabled)."""
        if not self.persist_path:
            return
        async with self._lock:
            snapshot = self._to_graphml_graph()
        await asyncio.to_thread(self._write, snapshot, self.persist_path)
        logger.info(f"Saved relationship graph to {self.persist_path}")

    def _to_graphml_graph(self) -> nx.MultiDiGraph:
        # GraphML only holds scalars
        out = nx.MultiDiGraph()
        for node_id, data in self.graph.nodes(data=True):
            out.add_node(
                node_id,
                type=data["type"].value if data.get("type") else "",
                name=data.get("name") or "",
                description=data.get("description") or "",
                properties=json.dumps(data.get("properties") or {}, default=str),
                created_at=_iso(data.get("created_at")),
                updated_at=_iso(data.get("updated_at")),
            )
        for u, v, key, data in self.graph.edges(keys=True, data=True):
            out.add_edge(
                u,
                v,
                key=key,
                rel_id=data.get("rel_id") or "",
                weight=float(data.get("weight", 0.0)),
                properties=json.dumps(data.get("properties") or {}, default=str),
                created_at=_iso(data.get("created_at")),
                updated_at=_iso(data.get("updated_at")),
            )
        return out

    @staticmethod
    def _write(graph: nx.MultiDiGraph, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        nx.write_graphml(graph, str(path))

    @staticmethod
    def _load(path: Path) -> nx.MultiDiGraph:
        raw = nx.read_graphml(str(path), force_multigraph=True)
        graph = nx.MultiDiGraph()
        for node_id, data in raw.nodes(data=True):
            graph.add_node(
                node_id,
                type=EntityType(data["type"]) if data.get("type") else None,
                name=data.get("name") or node_id,
                description=data.get("description") or "",
                properties=json.loads(data.get("properties") or "{}"),
                created_at=_parse_dt(data.get("created_at")),
                updated_at=_parse_dt(data.get("updated_at")),
            )
        for u, v, key, data in raw.edges(keys=True, data=True):
            graph.add_edge(
                u,
                v,
                key=key,
                rel_id=data.get("rel_id") or None,
                weight=float(data.get("weight", 0.0)),
                properties=json.loads(data.get("properties") or "{}"),
                created_at=_parse_dt(data.get("created_at")),
                updated_at=_parse_dt(data.get("updated_at")),
            )
        return graph


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
