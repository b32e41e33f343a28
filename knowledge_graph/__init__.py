"""
Knowledge Graph Module

Shopping knowledge layer: one logical knowledge base over a record store,
a relationship graph and a vector similarity store, with retrieval and
recommendation engines on top.

Architecture:
- models: Domain models (entities, relationships, result types)
- record_store: Authoritative SQLAlchemy store
- graph_store: networkx relationship store
- vector_store: ChromaDB integration for embeddings
- embedding_service: OpenAI embeddings with rate limiting, caching and retry
- repository: Hybrid repository (write fan-out, read fusion)
- pipeline: Graph builder for catalog feeds
- retrieval: Context retrieval and ranking
- recommendations: Recommendation engine
- service: Composition root
"""

__all__ = []
