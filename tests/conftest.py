"""
Pytest configuration for the knowledge base test suite.

Configures:
- pytest-asyncio for async test support
- offline stores: SQLite file per test, networkx graph, ephemeral ChromaDB collection
- a deterministic hashing embedding provider
"""

import hashlib
import math
import uuid

import chromadb
import pytest

from database import build_engine, build_session_factory, create_tables
from knowledge_graph.embedding_service import EmbeddingProvider
from knowledge_graph.graph_store import NetworkxRelationshipStore
from knowledge_graph.models import EmbeddingResult, EntityType, KnowledgeEntity
from knowledge_graph.record_store import SqlRecordStore
from knowledge_graph.service import assemble_knowledge_base
from knowledge_graph.similarity import tokenize
from knowledge_graph.vector_store import ChromaSimilarityStore

pytest_plugins = ["pytest_asyncio"]

FAKE_DIMENSIONS = 64


class HashingEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words vectors: texts sharing words get positive cosine similarity."""

    model = "hashing-test"
    dimensions = FAKE_DIMENSIONS

    def __init__(self):
        self.calls = []
        self.fail = False

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        if self.fail:
            from knowledge_graph.exceptions import UpstreamProviderError
            raise UpstreamProviderError("provider down", rate_limited=True)
        vector = [0.0] * FAKE_DIMENSIONS
        for token in tokenize(text):
            index = int(hashlib.md5(token.encode()).hexdigest(), 16) % FAKE_DIMENSIONS
            vector[index] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        vector = [v / norm for v in vector]
        if not any(vector):
            vector[0] = 1.0
        return EmbeddingResult(vector=vector, dimensions=FAKE_DIMENSIONS, model=self.model)


class FailingGraphStore(NetworkxRelationshipStore):
    """Relationship store whose writes and reads can be switched off."""

    def __init__(self, fail_writes: bool = True, fail_reads: bool = False):
        super().__init__()
        self.fail_writes = fail_writes
        self.fail_reads = fail_reads

    async def create_entity_node(self, entity):
        if self.fail_writes:
            raise ConnectionError("graph store offline")
        return await super().create_entity_node(entity)

    async def create_relationship(self, relationship):
        if self.fail_writes:
            raise ConnectionError("graph store offline")
        return await super().create_relationship(relationship)

    async def delete_relationship(self, from_id, to_id, relation_type):
        if self.fail_writes:
            raise ConnectionError("graph store offline")
        return await super().delete_relationship(from_id, to_id, relation_type)

    async def find_related_entities(self, entity_id, hops=2, entity_type=None):
        if self.fail_reads:
            raise ConnectionError("graph store offline")
        return await super().find_related_entities(entity_id, hops, entity_type)


class FailingVectorStore(ChromaSimilarityStore):
    """Similarity store that raises on every read and write."""

    async def upsert_vector(self, entity_id, vector, metadata=None):
        raise ConnectionError("vector store offline")

    async def find_similar(self, vector, limit=10):
        raise ConnectionError("vector store offline")

    async def semantic_search(self, text, limit=10):
        raise ConnectionError("vector store offline")


def make_product(entity_id: str, name: str, **properties) -> KnowledgeEntity:
    description = properties.pop("description", "")
    vector = properties.pop("vector", None)
    return KnowledgeEntity(
        id=entity_id,
        type=EntityType.PRODUCT,
        name=name,
        description=description,
        properties=properties,
        vector=vector,
    )


@pytest.fixture
def embedding_provider():
    return HashingEmbeddingProvider()


@pytest.fixture
def record_store(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'knowledge.db'}")
    create_tables(engine)
    yield SqlRecordStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def graph_store():
    return NetworkxRelationshipStore(weight_cap=5.0)


@pytest.fixture
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture
def vector_store(chroma_client, embedding_provider):
    return ChromaSimilarityStore(
        embedding_provider=embedding_provider,
        client=chroma_client,
        collection_name=f"test_{uuid.uuid4().hex}",
    )


@pytest.fixture
def kb(record_store, graph_store, vector_store, embedding_provider):
    return assemble_knowledge_base(record_store, graph_store, vector_store, embedding_provider)


@pytest.fixture
def repository(kb):
    return kb.repository
