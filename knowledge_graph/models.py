"""
Knowledge Graph Domain Models

Defines the core entities and relationships shared by the record, relationship
and similarity stores, plus the result types returned by the repository and
the retrieval / recommendation engines.
"""

from typing import List, Dict, Any, Optional, Set, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the record store persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_name(value: str) -> str:
    """Lowercase, trim and collapse whitespace to underscores ("Smart Watches" -> "smart_watches")."""
    return "_".join(str(value).strip().lower().split())


class EntityType(str, Enum):
    """Types of entities in the knowledge graph"""
    PRODUCT = "product"
    CATEGORY = "category"
    BRAND = "brand"
    FEATURE = "feature"
    CUSTOMER = "customer"
    CONCEPT = "concept"


class RelationType(str, Enum):
    """Types of relationships between entities"""
    BELONGS_TO = "belongs_to"
    SIMILAR_TO = "similar_to"
    HAS_FEATURE = "has_feature"
    RELATED_TO = "related_to"
    PURCHASED_WITH = "purchased_with"
    RECOMMENDED_FOR = "recommended_for"


@dataclass
class KnowledgeEntity:
    """
    A node of the knowledge base.

    The id is assigned once by the record store and reused verbatim as the
    node id in the relationship store and the key in the similarity store.
    """
    id: str
    type: EntityType
    name: str
    description: str = ""
    properties: Dict[str, Any] = None  # price, category, brand, tags, rating, ...
    vector: Optional[List[float]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.type, EntityType):
            self.type = EntityType(self.type)
        if self.properties is None:
            self.properties = {}
        if self.description is None:
            self.description = ""
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def has_vector(self) -> bool:
        return bool(self.vector)

    @property
    def category(self) -> Optional[str]:
        return self.properties.get("category")

    @property
    def brand(self) -> Optional[str]:
        return self.properties.get("brand")

    @property
    def price(self) -> Optional[float]:
        price = self.properties.get("price")
        return float(price) if isinstance(price, (int, float)) and not isinstance(price, bool) else None

    @property
    def tags(self) -> List[str]:
        tags = self.properties.get("tags") or []
        return [str(t) for t in tags] if isinstance(tags, (list, tuple, set)) else []

    def content_text(self) -> str:
        """Readable text used for keyword matching and prompt contexts."""
        parts = [self.name]
        if self.description:
            parts.append(self.description)
        if self.category:
            parts.append(f"Category: {self.category}")
        if self.brand:
            parts.append(f"Brand: {self.brand}")
        if self.price is not None:
            parts.append(f"Price: {self.price:g}")
        if self.tags:
            parts.append(f"Tags: {', '.join(self.tags)}")
        return ". ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to dictionary for storage"""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "description": self.description,
            "properties": self.properties,
            "vector": self.vector,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class KnowledgeRelationship:
    """
    A typed, directed, weighted edge between two entity ids.

    (from_entity_id, to_entity_id, type) is the dedup tuple: creating the same
    relationship twice strengthens the existing edge instead of adding one.
    """
    from_entity_id: str
    to_entity_id: str
    type: RelationType
    weight: float = 1.0
    properties: Dict[str, Any] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.type, RelationType):
            self.type = RelationType(self.type)
        if self.properties is None:
            self.properties = {}
        if self.id is None:
            self.id = f"{self.from_entity_id}_{self.type.value}_{self.to_entity_id}"
        if self.created_at is None:
            self.created_at = utcnow()

    @property
    def dedup_key(self) -> Tuple[str, str, RelationType]:
        return (self.from_entity_id, self.to_entity_id, self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert relation to dictionary for storage"""
        return {
            "id": self.id,
            "from": self.from_entity_id,
            "to": self.to_entity_id,
            "type": self.type.value,
            "weight": self.weight,
            "properties": self.properties,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class EmbeddingResult:
    """Output of the embedding provider for one text."""
    vector: List[float]
    dimensions: int
    model: str


# ---------------------------------------------------------------------------
# Write results
# ---------------------------------------------------------------------------

GRAPH_STORE = "graph"
VECTOR_STORE = "vector"


@dataclass
class SecondaryWriteResult:
    """Outcome of one best-effort mirror write."""
    store: str  # GRAPH_STORE or VECTOR_STORE
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class SyncStatus:
    graph_synced: bool
    vector_synced: bool

    @classmethod
    def from_results(cls, results: List[SecondaryWriteResult]) -> "SyncStatus":
        by_store = {r.store: r.ok for r in results}
        return cls(
            graph_synced=by_store.get(GRAPH_STORE, False),
            vector_synced=by_store.get(VECTOR_STORE, False),
        )

    def to_dict(self) -> Dict[str, bool]:
        return {"graphSynced": self.graph_synced, "vectorSynced": self.vector_synced}


@dataclass
class WriteResult:
    """Record-store state after a write plus the outcome of every mirror attempt."""
    primary: KnowledgeEntity
    secondary_results: List[SecondaryWriteResult] = field(default_factory=list)

    @property
    def entity(self) -> KnowledgeEntity:
        return self.primary

    @property
    def sync_status(self) -> SyncStatus:
        return SyncStatus.from_results(self.secondary_results)


@dataclass
class RemoveResult:
    entity_id: str
    removed: bool
    secondary_results: List[SecondaryWriteResult] = field(default_factory=list)

    @property
    def sync_status(self) -> SyncStatus:
        return SyncStatus.from_results(self.secondary_results)


@dataclass
class RelationshipWriteResult:
    relationship: KnowledgeRelationship
    synced: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Read results
# ---------------------------------------------------------------------------

@dataclass
class VectorMatch:
    """A k-NN hit from the similarity store. score = cosine similarity."""
    entity_id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RelatedEntity:
    """An entity reached by graph traversal, with its hop distance."""
    entity: KnowledgeEntity
    distance: int


@dataclass
class GraphPath:
    entity_ids: List[str]
    relationships: List[KnowledgeRelationship]
    total_weight: float = 0.0

    @property
    def length(self) -> int:
        return len(self.relationships)


@dataclass
class ScoredEntity:
    entity: KnowledgeEntity
    score: float
    sources: Set[str] = field(default_factory=set)


def _same_text(value: Any, expected: str) -> bool:
    # same case-insensitive rule as record store property filters
    return isinstance(value, str) and value.lower() == expected.lower()


@dataclass
class SearchFilters:
    """Attribute filters for hybrid search; every set field must match."""
    type: Optional[EntityType] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    include_related: bool = False

    def __post_init__(self):
        if self.type is not None and not isinstance(self.type, EntityType):
            self.type = EntityType(self.type)

    def matches(self, entity: KnowledgeEntity) -> bool:
        if self.type is not None and entity.type != self.type:
            return False
        if self.category is not None and not _same_text(entity.category, self.category):
            return False
        if self.brand is not None and not _same_text(entity.brand, self.brand):
            return False
        if self.min_price is not None or self.max_price is not None:
            price = entity.price
            if price is None:
                return False
            if self.min_price is not None and price < self.min_price:
                return False
            if self.max_price is not None and price > self.max_price:
                return False
        return True


@dataclass
class EntityInsights:
    entity_id: str
    category: Optional[str]
    similar: List[KnowledgeEntity] = field(default_factory=list)
    purchased_with: List[KnowledgeEntity] = field(default_factory=list)
    popular_in_category: List[KnowledgeEntity] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Retrieval (RAG)
# ---------------------------------------------------------------------------

class ContextSource(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    ENTITY = "entity"


@dataclass
class UserProfile:
    """Known shopper preferences used for the personalization boost."""
    favorite_brands: List[str] = field(default_factory=list)
    preferred_categories: List[str] = field(default_factory=list)
    frequent_features: List[str] = field(default_factory=list)
    price_range: Optional[Tuple[float, float]] = None


@dataclass
class QueryInsights:
    detected_brands: List[str] = field(default_factory=list)
    detected_categories: List[str] = field(default_factory=list)
    detected_features: List[str] = field(default_factory=list)
    detected_price_range: Optional[Tuple[float, float]] = None
    commercial_intent: float = 0.0
    search_type: str = "general"  # comparison | recommendation | price_inquiry | product_search | general


@dataclass
class ContextRecord:
    source: ContextSource
    content: str
    score: float
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content_key(self) -> str:
        return self.entity_id or self.content[:100]


@dataclass
class RetrievalResult:
    query: str
    contexts: List[ContextRecord]
    total_found: int
    processing_time_ms: float
    insights: QueryInsights


# ---------------------------------------------------------------------------
# Recommendations / graph building
# ---------------------------------------------------------------------------

@dataclass
class Recommendation:
    entity: KnowledgeEntity
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class BuildReport:
    """Summary of one graph augmentation run."""
    entities: int = 0
    categories: int = 0
    brands: int = 0
    features: int = 0
    relationships: int = 0
    similarity_edges: int = 0
    removed_relationships: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": self.entities,
            "categories": self.categories,
            "brands": self.brands,
            "features": self.features,
            "relationships": self.relationships,
            "similarity_edges": self.similarity_edges,
            "removed_relationships": self.removed_relationships,
            "failures": list(self.failures),
        }
