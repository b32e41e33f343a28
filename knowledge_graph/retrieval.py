"""
Retrieval & Ranking Engine

Gathers candidate contexts for a free-text shopping query from three sources
(semantic similarity, keyword match, and graph neighbours of brands and
categories named in the query), scores them, and renders the winners into a
prompt section.

Score fusion per candidate:

    base (similarity, keyword overlap or edge strength)
    + personalization  0 .. 0.2   (profile brand/category/feature match)
    + commercial       0 .. 0.1   (candidate intent x query intent)
    + recency          0 .. 0.05  (linear decay over 30 days)
    + length           0 .. 0.02  (longer content)
    capped at 1.0
"""

import asyncio
import logging
import re
import time
from typing import Awaitable, Dict, List, Optional, Tuple

from knowledge_graph.embedding_service import EmbeddingProvider
from knowledge_graph.exceptions import StoreUnavailableError
from knowledge_graph.models import (
    ContextRecord,
    ContextSource,
    EntityType,
    KnowledgeEntity,
    QueryInsights,
    RelationType,
    RetrievalResult,
    UserProfile,
    normalize_name,
    utcnow,
)
from knowledge_graph.pipeline import brand_entity_id, category_entity_id
from knowledge_graph.repository import HybridRepository
from knowledge_graph.similarity import commercial_intent, keyword_overlap, tokenize

logger = logging.getLogger(__name__)

PERSONALIZATION_BOOST = 0.2
COMMERCIAL_BOOST = 0.1
RECENCY_BOOST = 0.05
RECENCY_WINDOW_DAYS = 30
LENGTH_BOOST = 0.02
LENGTH_FULL_CHARS = 500

# Share of the personalization boost per matched preference
_PROFILE_BRAND = 0.5
_PROFILE_CATEGORY = 0.3
_PROFILE_FEATURE = 0.2

_PRICE_RE = re.compile(r"\$?\s*(\d+(?:[.,]\d+)?)")
_UNDER_WORDS = ("under", "below", "less than", "cheaper than", "max", "up to")
_OVER_WORDS = ("over", "above", "more than", "at least", "min")
_COMPARISON_WORDS = ("compare", " vs", "versus", "difference", "better than")
_RECOMMENDATION_WORDS = ("recommend", "suggest", "best", "should i", "top")
_PRICE_WORDS = ("price", "cost", "cheap", "expensive", "how much", "budget", "affordable")


def _mentions(haystack: str, name: str) -> bool:
    name = name.lower().strip()
    if not name:
        return False
    if re.search(rf"\b{re.escape(name)}", haystack):
        return True
    # feature names derived from tags may carry underscores ("heart_rate")
    spaced = name.replace("_", " ")
    return spaced != name and re.search(rf"\b{re.escape(spaced)}", haystack) is not None


def _detect_price_range(query: str) -> Optional[Tuple[float, float]]:
    lower = query.lower()
    numbers = [float(n.replace(",", ".")) for n in _PRICE_RE.findall(lower)]
    if not numbers:
        return None
    if len(numbers) >= 2:
        return (min(numbers), max(numbers))
    value = numbers[0]
    if any(w in lower for w in _UNDER_WORDS):
        return (0.0, value)
    if any(w in lower for w in _OVER_WORDS):
        return (value, float("inf"))
    return (value * 0.8, value * 1.2)


class RetrievalEngine:
    """
    Retrieval-augmented context for shopping queries.

    Args:
        repository: Hybrid repository used for every store access
        embedding_provider: Embeds the query for the semantic source (optional)
        source_timeout: Deadline per source in seconds
    """

    def __init__(
        self,
        repository: HybridRepository,
        embedding_provider: Optional[EmbeddingProvider] = None,
        source_timeout: float = 5.0,
    ):
        self.repository = repository
        self.embedding_provider = embedding_provider
        self.source_timeout = source_timeout

    # ----- query analysis -----

    async def analyze_query(self, query: str) -> QueryInsights:
        """Detect known brands, categories, features, a price range and the search type."""
        lower = (query or "").lower()
        brands, categories, features = await asyncio.gather(
            self.repository.find_by_type(EntityType.BRAND),
            self.repository.find_by_type(EntityType.CATEGORY),
            self.repository.find_by_type(EntityType.FEATURE),
        )
        insights = QueryInsights(
            detected_brands=[e.name for e in brands if _mentions(lower, e.name)],
            detected_categories=[e.name for e in categories if _mentions(lower, e.name)],
            detected_features=[e.name for e in features if _mentions(lower, e.name)],
            detected_price_range=_detect_price_range(lower),
            commercial_intent=commercial_intent(lower),
        )

        if any(w in lower for w in _COMPARISON_WORDS):
            insights.search_type = "comparison"
        elif any(w in lower for w in _RECOMMENDATION_WORDS):
            insights.search_type = "recommendation"
        elif insights.detected_price_range or any(w in lower for w in _PRICE_WORDS):
            insights.search_type = "price_inquiry"
        elif insights.detected_brands or insights.detected_categories or insights.detected_features:
            insights.search_type = "product_search"
        return insights

    # ----- sources -----

    async def _source(self, name: str, call: Awaitable) -> List[ContextRecord]:
        """Run one source under its deadline. Record-store failures still propagate."""
        try:
            return await asyncio.wait_for(call, timeout=self.source_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Context source '{name}' timed out after {self.source_timeout}s")
        except StoreUnavailableError as exc:
            if exc.store == "record":
                raise
            logger.warning(f"Context source '{name}' unavailable: {exc}")
        except Exception as exc:
            logger.warning(f"Context source '{name}' failed: {exc}")
        return []

    @staticmethod
    def _record(source: ContextSource, entity: KnowledgeEntity, score: float, **metadata) -> ContextRecord:
        return ContextRecord(
            source=source,
            content=entity.content_text(),
            score=score,
            entity_id=entity.id,
            metadata={"entity": entity, "type": entity.type.value, **metadata},
        )

    async def _semantic_source(self, query: str, limit: int) -> List[ContextRecord]:
        if self.embedding_provider is None:
            return []
        embedding = await self.embedding_provider.embed(query)
        hits = await self.repository.find_similar(embedding.vector, limit)
        return [self._record(ContextSource.SEMANTIC, h.entity, max(0.0, h.score)) for h in hits]

    async def _keyword_source(self, query: str, limit: int) -> List[ContextRecord]:
        terms = list(dict.fromkeys(tokenize(query)))[:5]
        if not terms:
            return []
        batches = await asyncio.gather(
            *(self.repository.record.search_text(term, limit=limit) for term in terms)
        )
        seen: Dict[str, KnowledgeEntity] = {}
        for batch in batches:
            for entity in batch:
                seen.setdefault(entity.id, entity)
        records = [
            self._record(ContextSource.KEYWORD, e, keyword_overlap(query, e.content_text()))
            for e in seen.values()
        ]
        records.sort(key=lambda r: r.score, reverse=True)
        return records[:limit]

    async def _entity_source(self, query: str, insights: QueryInsights, limit: int) -> List[ContextRecord]:
        anchors = [category_entity_id(c) for c in insights.detected_categories]
        anchors += [brand_entity_id(b) for b in insights.detected_brands]
        if not anchors:
            return []
        neighbour_lists = await asyncio.gather(
            *(self.repository.find_entity_neighbors(a, RelationType.BELONGS_TO, limit) for a in anchors)
        )
        weights: Dict[str, float] = {}
        for neighbours in neighbour_lists:
            for node, weight in neighbours:
                weights[node.id] = max(weights.get(node.id, 0.0), weight)
        records = []
        for entity in await self.repository.record.find_by_ids(weights):
            base = 0.5 * min(weights[entity.id], 1.0) + 0.5 * keyword_overlap(query, entity.content_text())
            records.append(self._record(ContextSource.ENTITY, entity, base))
        return records

    # ----- scoring -----

    @staticmethod
    def _personalization(entity: Optional[KnowledgeEntity], profile: Optional[UserProfile]) -> float:
        if entity is None or profile is None:
            return 0.0
        match = 0.0
        brands = {b.lower() for b in profile.favorite_brands}
        categories = {c.lower() for c in profile.preferred_categories}
        features = {normalize_name(f) for f in profile.frequent_features}
        if entity.brand and entity.brand.lower() in brands:
            match += _PROFILE_BRAND
        if entity.category and entity.category.lower() in categories:
            match += _PROFILE_CATEGORY
        if features & {normalize_name(t) for t in entity.tags}:
            match += _PROFILE_FEATURE
        return PERSONALIZATION_BOOST * min(match, 1.0)

    def score_context(
        self,
        context: ContextRecord,
        insights: QueryInsights,
        user_profile: Optional[UserProfile] = None,
    ) -> float:
        """Fused score of one candidate, in [0, 1]."""
        entity = context.metadata.get("entity")
        score = context.score
        score += self._personalization(entity, user_profile)
        score += COMMERCIAL_BOOST * commercial_intent(context.content) * insights.commercial_intent
        if entity is not None and entity.updated_at is not None:
            age_days = (utcnow() - entity.updated_at).total_seconds() / 86400
            score += RECENCY_BOOST * max(0.0, 1 - age_days / RECENCY_WINDOW_DAYS)
        score += LENGTH_BOOST * min(len(context.content) / LENGTH_FULL_CHARS, 1.0)
        return min(score, 1.0)

    async def _collect(
        self, query: str, limit: int, threshold: float, user_profile: Optional[UserProfile]
    ) -> Tuple[List[ContextRecord], int, QueryInsights]:
        insights = await self.analyze_query(query)
        fetch = max(limit * 2, 10)
        batches = await asyncio.gather(
            self._source("semantic", self._semantic_source(query, fetch)),
            self._source("keyword", self._keyword_source(query, fetch)),
            self._source("entity", self._entity_source(query, insights, fetch)),
        )

        best: Dict[str, ContextRecord] = {}
        for batch in batches:
            for context in batch:
                context.score = self.score_context(context, insights, user_profile)
                current = best.get(context.content_key)
                if current is None or context.score > current.score:
                    best[context.content_key] = context

        kept = [c for c in best.values() if c.score >= threshold]
        kept.sort(key=lambda c: c.score, reverse=True)
        return kept[:limit], len(kept), insights

    async def retrieve_relevant_context(
        self,
        query: str,
        limit: int = 5,
        threshold: float = 0.3,
        user_profile: Optional[UserProfile] = None,
    ) -> List[ContextRecord]:
        """
        Scored, deduplicated contexts for the query.

        At most limit records, each scoring at least threshold, best first.
        """
        if not query or not query.strip():
            return []
        contexts, _, _ = await self._collect(query, limit, threshold, user_profile)
        logger.info(f"Retrieved {len(contexts)} contexts for query '{query}'")
        return contexts

    async def retrieve(
        self,
        query: str,
        limit: int = 5,
        threshold: float = 0.3,
        user_profile: Optional[UserProfile] = None,
    ) -> RetrievalResult:
        started = time.perf_counter()
        if not query or not query.strip():
            contexts, total, insights = [], 0, QueryInsights()
        else:
            contexts, total, insights = await self._collect(query, limit, threshold, user_profile)
        return RetrievalResult(
            query=query,
            contexts=contexts,
            total_found=total,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            insights=insights,
        )

    # ----- prompt building -----

    @staticmethod
    def augment_query_with_context(
        query: str,
        contexts: List[ContextRecord],
        insights: Optional[QueryInsights] = None,
        user_profile: Optional[UserProfile] = None,
    ) -> str:
        """
        Render contexts (best first, with relevance scores) above the original
        query. Returns the query unchanged when there is no context.
        """
        if not contexts:
            return query

        lines = []
        if user_profile is not None:
            prefs = []
            if user_profile.favorite_brands:
                prefs.append(f"favorite brands: {', '.join(user_profile.favorite_brands)}")
            if user_profile.preferred_categories:
                prefs.append(f"preferred categories: {', '.join(user_profile.preferred_categories)}")
            if user_profile.frequent_features:
                prefs.append(f"frequent features: {', '.join(user_profile.frequent_features)}")
            if user_profile.price_range:
                low, high = user_profile.price_range
                prefs.append(f"price range: {low:g}-{high:g}")
            if prefs:
                lines.append(f"Shopper Profile: {'; '.join(prefs)}")

        if insights is not None:
            found = []
            if insights.detected_brands:
                found.append(f"brands: {', '.join(insights.detected_brands)}")
            if insights.detected_categories:
                found.append(f"categories: {', '.join(insights.detected_categories)}")
            if insights.detected_features:
                found.append(f"features: {', '.join(insights.detected_features)}")
            if insights.detected_price_range:
                low, high = insights.detected_price_range
                found.append(f"price: {low:g}-{high:g}")
            found.append(f"search type: {insights.search_type}")
            lines.append(f"Query Insights: {'; '.join(found)}")

        if lines:
            lines.append("")

        lines.append("Relevant Product Context:")
        ordered = sorted(contexts, key=lambda c: c.score, reverse=True)
        for index, context in enumerate(ordered, start=1):
            lines.append(
                f"[Context {index}] (Relevance: {context.score:.2f}, source: {context.source.value}): {context.content}"
            )

        lines.append("")
        lines.append(
            "Instructions: Use the product context above to answer the shopper's query. "
            "Prefer the most relevant items and do not invent products that are not listed."
        )
        lines.append("")
        lines.append(f"User Query: {query}")
        return "\n".join(lines)
