"""
Recommendation Engine

Ranks entities related to a seed entity by combining graph neighbours,
vector neighbours and same-type siblings, then scoring each candidate:

    0.4 * rating / 5
  + 0.2 * min(sales / 100, 1)
  + 0.1 * min(degree * 0.1, 1)
  + 0.2 * tag overlap with the seed
  + 0.1 * price proximity to the seed
  + 0.1 if featured, + 0.05 if active
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from knowledge_graph.models import (
    KnowledgeEntity,
    KnowledgeRelationship,
    Recommendation,
    RelationshipWriteResult,
    RelationType,
)
from knowledge_graph.repository import HybridRepository
from knowledge_graph.similarity import price_proximity, tag_overlap

logger = logging.getLogger(__name__)

RATING_WEIGHT = 0.4
SALES_WEIGHT = 0.2
DEGREE_WEIGHT = 0.1
TAG_WEIGHT = 0.2
PRICE_WEIGHT = 0.1
FEATURED_BONUS = 0.1
ACTIVE_BONUS = 0.05

REASON_GRAPH = "graph_neighbor"
REASON_VECTOR = "vector_neighbor"
REASON_SAME_TYPE = "same_type"


def _prop(entity: KnowledgeEntity, *keys: str) -> Any:
    for key in keys:
        if entity.properties.get(key) is not None:
            return entity.properties[key]
    return None


def _number(value: Any) -> float:
    try:
        return float(value) if value is not None and not isinstance(value, bool) else 0.0
    except (TypeError, ValueError):
        return 0.0


def recommendation_score(seed: KnowledgeEntity, candidate: KnowledgeEntity, degree: int) -> float:
    """Composite score of a candidate for the given seed."""
    rating = min(max(_number(_prop(candidate, "rating")), 0.0), 5.0)
    sales = _number(_prop(candidate, "sales_count", "salesCount", "mention_count", "mentionCount"))
    score = RATING_WEIGHT * rating / 5
    score += SALES_WEIGHT * min(sales / 100, 1.0)
    score += DEGREE_WEIGHT * min(degree * 0.1, 1.0)
    score += TAG_WEIGHT * tag_overlap(seed.tags, candidate.tags)
    score += PRICE_WEIGHT * (price_proximity(seed.price, candidate.price) or 0.0)
    if _prop(candidate, "is_featured", "isFeatured"):
        score += FEATURED_BONUS
    if _prop(candidate, "is_active", "isActive"):
        score += ACTIVE_BONUS
    return score


class RecommendationEngine:
    """
    Recommendations for a seed entity.

    Candidates are limited to the seed's entity type. Secondary-store
    failures shrink the candidate pool instead of failing the request.
    """

    def __init__(self, repository: HybridRepository, sibling_limit: int = 50):
        self.repository = repository
        self.sibling_limit = sibling_limit

    async def _graph_candidates(self, seed: KnowledgeEntity) -> List[KnowledgeEntity]:
        related = await self.repository.find_related(seed.id, hops=2, entity_type=seed.type)
        return [r.entity for r in related]

    async def _vector_candidates(self, seed: KnowledgeEntity, limit: int) -> List[KnowledgeEntity]:
        if not seed.has_vector:
            return []
        hits = await self.repository.find_similar(seed.vector, limit + 1)
        return [h.entity for h in hits if h.entity.type == seed.type]

    async def _sibling_candidates(self, seed: KnowledgeEntity) -> List[KnowledgeEntity]:
        return (await self.repository.find_by_type(seed.type))[: self.sibling_limit]

    async def find_recommendations(self, entity_id: str, limit: int = 5) -> List[Recommendation]:
        """
        Ranked recommendations for the entity; [] when the seed does not exist.
        """
        seed = await self.repository.find_by_id(entity_id)
        if seed is None:
            logger.debug(f"No recommendations, seed not found: {entity_id}")
            return []

        pool = max(limit * 4, 20)
        graph, vector, siblings = await asyncio.gather(
            self._graph_candidates(seed),
            self._vector_candidates(seed, pool),
            self._sibling_candidates(seed),
        )

        candidates: Dict[str, KnowledgeEntity] = {}
        reasons: Dict[str, List[str]] = {}
        for reason, batch in ((REASON_GRAPH, graph), (REASON_VECTOR, vector), (REASON_SAME_TYPE, siblings)):
            for entity in batch:
                if entity.id == seed.id:
                    continue
                candidates.setdefault(entity.id, entity)
                if reason not in reasons.setdefault(entity.id, []):
                    reasons[entity.id].append(reason)

        ids = list(candidates)
        degrees = await asyncio.gather(*(self.repository.degree(i) for i in ids))
        recommendations = [
            Recommendation(
                entity=candidates[i],
                score=recommendation_score(seed, candidates[i], degree),
                reasons=reasons[i],
            )
            for i, degree in zip(ids, degrees)
        ]
        recommendations.sort(key=lambda r: (-r.score, r.entity.name.lower(), r.entity.id))
        logger.info(f"Recommendations for {entity_id}: {len(recommendations)} candidates")
        return recommendations[:limit]

    async def record_purchased_together(
        self, entity_id: str, other_id: str, weight: float = 1.0
    ) -> List[RelationshipWriteResult]:
        """Strengthen the PurchasedWith edge in both directions."""
        return list(await asyncio.gather(
            self.repository.create_relationship(
                KnowledgeRelationship(from_entity_id=entity_id, to_entity_id=other_id,
                                      type=RelationType.PURCHASED_WITH, weight=weight)
            ),
            self.repository.create_relationship(
                KnowledgeRelationship(from_entity_id=other_id, to_entity_id=entity_id,
                                      type=RelationType.PURCHASED_WITH, weight=weight)
            ),
        ))

    async def record_recommendation(
        self, customer_id: str, entity_id: str, reason: Optional[str] = None, weight: float = 1.0
    ) -> RelationshipWriteResult:
        """Strengthen the RecommendedFor edge from the entity to the customer."""
        return await self.repository.create_relationship(
            KnowledgeRelationship(
                from_entity_id=entity_id,
                to_entity_id=customer_id,
                type=RelationType.RECOMMENDED_FOR,
                weight=weight,
                properties={"reason": reason} if reason else {},
            )
        )
