import logging
import os
from pathlib import Path
from dotenv import load_dotenv
from typing import Optional

# Load .env robustly (try project root and CWD)
_ROOT = Path(__file__).resolve().parent
_candidates = [
    _ROOT / ".env",
    Path.cwd() / ".env",
]
for p in _candidates:
    if p.exists():
        load_dotenv(p, override=False)

_DATA_DIR_ENV = os.getenv("KNOWLEDGE_DATA_DIR")
if _DATA_DIR_ENV:
    _DATA_DIR = Path(_DATA_DIR_ENV).expanduser()
elif os.path.exists("/var/lib"):
    _DATA_DIR = Path("/var/lib/shopping-knowledge")
else:
    _DATA_DIR = Path("./data")

_DATABASE_URL_ENV = os.getenv("KNOWLEDGE_DATABASE_URL") or os.getenv("DATABASE_URL")
if not _DATABASE_URL_ENV:
    _DATABASE_URL_ENV = f"sqlite:///{_DATA_DIR / 'knowledge.db'}"

_CHROMA_DB_PATH_ENV = os.getenv("CHROMA_DB_PATH") or str(_DATA_DIR / "chroma_db")

# An explicitly empty GRAPH_PATH keeps the relationship graph in memory only
_GRAPH_PATH_ENV = os.getenv("GRAPH_PATH")
if _GRAPH_PATH_ENV is None:
    _GRAPH_PATH_ENV = str(_DATA_DIR / "knowledge_graph.graphml")


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    DATA_DIR: str = str(_DATA_DIR)

    # Record store
    DATABASE_URL: str = _DATABASE_URL_ENV

    # Similarity store (ChromaDB)
    CHROMA_DB_PATH: str = _CHROMA_DB_PATH_ENV
    CHROMA_COLLECTION: str = os.getenv("CHROMA_COLLECTION", "shopping_knowledge")

    # Relationship store (networkx, optionally persisted as GraphML)
    GRAPH_PATH: Optional[str] = _GRAPH_PATH_ENV or None
    RELATIONSHIP_WEIGHT_CAP: float = _env_float("RELATIONSHIP_WEIGHT_CAP", 5.0)

    # Embedding provider
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSIONS: int = _env_int("EMBEDDING_DIMENSIONS", 1536)
    EMBEDDING_CONCURRENCY: int = _env_int("EMBEDDING_CONCURRENCY", 4)
    EMBEDDING_MAX_RETRIES: int = _env_int("EMBEDDING_MAX_RETRIES", 3)
    EMBEDDING_RETRY_BACKOFF: float = _env_float("EMBEDDING_RETRY_BACKOFF", 1.0)
    EMBEDDING_RETRY_BACKOFF_MAX: float = _env_float("EMBEDDING_RETRY_BACKOFF_MAX", 30.0)
    EMBEDDING_RATE_LIMIT: int = _env_int("EMBEDDING_RATE_LIMIT", 0)  # 0 = unlimited
    EMBEDDING_RATE_WINDOW: float = _env_float("EMBEDDING_RATE_WINDOW", 60.0)  # seconds
    EMBEDDING_CACHE_SIZE: int = _env_int("EMBEDDING_CACHE_SIZE", 1024)

    # Retrieval / ranking
    SOURCE_TIMEOUT: float = _env_float("SOURCE_TIMEOUT", 5.0)  # seconds, per read source
    SEMANTIC_THRESHOLD: float = _env_float("SEMANTIC_THRESHOLD", 0.3)
    SIMILARITY_EDGE_THRESHOLD: float = _env_float("SIMILARITY_EDGE_THRESHOLD", 0.6)
    FEATURE_EDGE_THRESHOLD: float = _env_float("FEATURE_EDGE_THRESHOLD", 0.3)
    HYBRID_SEARCH_LIMIT: int = _env_int("HYBRID_SEARCH_LIMIT", 20)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Basic logging setup for scripts. Library modules only create loggers."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
