"""
Knowledge base composition root.

Wires the three stores, the embedding provider, the hybrid repository and the
engines from Settings. Nothing here is a module-level singleton; callers own
the returned KnowledgeBase and close it with aclose().
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from config import Settings, settings as default_settings
from database import build_engine, build_session_factory, create_tables
from knowledge_graph.embedding_service import EmbeddingCache, EmbeddingProvider, OpenAIEmbeddingService, RateLimiter
from knowledge_graph.graph_store import NetworkxRelationshipStore, RelationshipStore
from knowledge_graph.pipeline import KnowledgeGraphBuilder
from knowledge_graph.recommendations import RecommendationEngine
from knowledge_graph.record_store import RecordStore, SqlRecordStore
from knowledge_graph.repository import HybridRepository
from knowledge_graph.retrieval import RetrievalEngine
from knowledge_graph.vector_store import ChromaSimilarityStore, SimilarityStore

logger = logging.getLogger(__name__)


@dataclass
class KnowledgeBase:
    record_store: RecordStore
    graph_store: RelationshipStore
    vector_store: SimilarityStore
    embedding_provider: Optional[EmbeddingProvider]
    repository: HybridRepository
    builder: KnowledgeGraphBuilder
    retrieval: RetrievalEngine
    recommendations: RecommendationEngine
    engine: Optional[Engine] = None

    async def aclose(self) -> None:
        """Persist the relationship graph, clear provider state and release the database engine."""
        save = getattr(self.graph_store, "save", None)
        if save is not None:
            await save()
        if isinstance(self.embedding_provider, OpenAIEmbeddingService):
            self.embedding_provider.cache.clear()
            self.embedding_provider.rate_limiter.reset()
            await self.embedding_provider.client.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Knowledge base closed")


def build_embedding_provider(config: Settings) -> OpenAIEmbeddingService:
    return OpenAIEmbeddingService(
        model=config.EMBEDDING_MODEL,
        dimensions=config.EMBEDDING_DIMENSIONS,
        rate_limiter=RateLimiter(config.EMBEDDING_RATE_LIMIT, config.EMBEDDING_RATE_WINDOW),
        cache=EmbeddingCache(config.EMBEDDING_CACHE_SIZE),
        max_retries=config.EMBEDDING_MAX_RETRIES,
        backoff=config.EMBEDDING_RETRY_BACKOFF,
        backoff_max=config.EMBEDDING_RETRY_BACKOFF_MAX,
    )


def assemble_knowledge_base(
    record_store: RecordStore,
    graph_store: RelationshipStore,
    vector_store: SimilarityStore,
    embedding_provider: Optional[EmbeddingProvider] = None,
    config: Optional[Settings] = None,
    engine: Optional[Engine] = None,
) -> KnowledgeBase:
    """Wire a repository and engines around already constructed stores."""
    config = config or default_settings
    repository = HybridRepository(
        record_store,
        graph_store,
        vector_store,
        embedding_provider=embedding_provider,
        source_timeout=config.SOURCE_TIMEOUT,
        semantic_threshold=config.SEMANTIC_THRESHOLD,
        hybrid_limit=config.HYBRID_SEARCH_LIMIT,
    )
    return KnowledgeBase(
        record_store=record_store,
        graph_store=graph_store,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        repository=repository,
        builder=KnowledgeGraphBuilder(
            repository,
            embedding_provider=embedding_provider,
            concurrency=config.EMBEDDING_CONCURRENCY,
            similarity_threshold=config.SIMILARITY_EDGE_THRESHOLD,
            feature_threshold=config.FEATURE_EDGE_THRESHOLD,
        ),
        retrieval=RetrievalEngine(repository, embedding_provider=embedding_provider, source_timeout=config.SOURCE_TIMEOUT),
        recommendations=RecommendationEngine(repository),
        engine=engine,
    )


def build_knowledge_base(
    config: Optional[Settings] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
) -> KnowledgeBase:
    """Create every store from settings and return the wired knowledge base."""
    config = config or default_settings

    engine = build_engine(config.DATABASE_URL)
    create_tables(engine)
    record_store = SqlRecordStore(build_session_factory(engine))

    provider = embedding_provider or build_embedding_provider(config)
    graph_store = NetworkxRelationshipStore(
        weight_cap=config.RELATIONSHIP_WEIGHT_CAP,
        persist_path=config.GRAPH_PATH,
    )
    vector_store = ChromaSimilarityStore(
        embedding_provider=provider,
        persist_directory=config.CHROMA_DB_PATH,
        collection_name=config.CHROMA_COLLECTION,
    )
    logger.info(
        f"Knowledge base ready: db={config.DATABASE_URL} chroma={config.CHROMA_DB_PATH} "
        f"graph={config.GRAPH_PATH or 'memory'}"
    )
    return assemble_knowledge_base(record_store, graph_store, vector_store, provider, config, engine)
