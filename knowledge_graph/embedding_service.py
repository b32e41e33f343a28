"""
Embedding Service

Generates semantic vector embeddings using OpenAI's embedding models.
Requests go through an optional rate limiter and an LRU cache, and transient
provider failures are retried with jittered exponential backoff.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from typing import List, Optional

import openai
from openai import AsyncOpenAI

from config import settings
from models import CatalogItem
from knowledge_graph.exceptions import UpstreamProviderError, ValidationError
from knowledge_graph.models import EmbeddingResult

logger = logging.getLogger(__name__)

# Transient failures worth another attempt
_RETRYABLE = (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError)


class EmbeddingProvider(ABC):
    """Turns text into a fixed-dimension vector."""

    model: str
    dimensions: int

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingResult: ...

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        return [await self.embed(text) for text in texts]


class RateLimiter:
    """
    Sliding-window limiter: at most max_calls acquisitions per window seconds.

    max_calls <= 0 disables limiting.
    """

    def __init__(self, max_calls: int, window: float = 60.0):
        self.max_calls = max_calls
        self.window = window
        self._calls = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self.max_calls <= 0:
            return
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._calls and now - self._calls[0] >= self.window:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                wait = self.window - (now - self._calls[0])
                logger.debug(f"Embedding rate limit reached, waiting {wait:.2f}s")
                await asyncio.sleep(wait)

    def reset(self) -> None:
        self._calls.clear()


class EmbeddingCache:
    """Bounded LRU cache of embeddings keyed by text."""

    def __init__(self, max_size: int = 1024):
        self.max_size = max_size
        self._items: "OrderedDict[str, EmbeddingResult]" = OrderedDict()

    def get(self, text: str) -> Optional[EmbeddingResult]:
        result = self._items.get(text)
        if result is not None:
            self._items.move_to_end(text)
        return result

    def put(self, text: str, result: EmbeddingResult) -> None:
        if self.max_size <= 0:
            return
        self._items[text] = result
        self._items.move_to_end(text)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


def _retry_after(exc: openai.RateLimitError) -> Optional[float]:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class OpenAIEmbeddingService(EmbeddingProvider):
    """
    Service for generating semantic embeddings with the OpenAI API.

    The client, rate limiter and cache are injectable so tests and scripts
    can supply their own.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[EmbeddingCache] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.model = model or settings.EMBEDDING_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        # SDK-level retries are disabled, this service does its own
        self.client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
        self.rate_limiter = rate_limiter or RateLimiter(settings.EMBEDDING_RATE_LIMIT, settings.EMBEDDING_RATE_WINDOW)
        self.cache = cache if cache is not None else EmbeddingCache(settings.EMBEDDING_CACHE_SIZE)
        self.max_retries = settings.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.backoff = settings.EMBEDDING_RETRY_BACKOFF if backoff is None else backoff
        self.backoff_max = settings.EMBEDDING_RETRY_BACKOFF_MAX if backoff_max is None else backoff_max

    def _delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        delay = min(self.backoff * (2 ** attempt), self.backoff_max)
        return random.uniform(0, delay)

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding vector from text.

        Raises:
            ValidationError: text is empty
            UpstreamProviderError: the provider failed after all retries
        """
        if not text or not text.strip():
            raise ValidationError("Text cannot be empty", field="text")

        cached = self.cache.get(text)
        if cached is not None:
            return cached

        attempt = 0
        while True:
            await self.rate_limiter.acquire()
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=text,
                    dimensions=self.dimensions,
                )
                break
            except _RETRYABLE as exc:
                retry_after = _retry_after(exc) if isinstance(exc, openai.RateLimitError) else None
                if attempt >= self.max_retries:
                    logger.error(f"Embedding failed after {attempt + 1} attempts: {exc}")
                    raise UpstreamProviderError(
                        f"Embedding provider unavailable: {exc}",
                        rate_limited=isinstance(exc, openai.RateLimitError),
                        retry_after=retry_after,
                    ) from exc
                delay = self._delay(attempt, retry_after)
                logger.warning(f"Embedding attempt {attempt + 1} failed ({type(exc).__name__}), retrying in {delay:.2f}s")
                attempt += 1
                await asyncio.sleep(delay)
            except openai.APIError as exc:
                logger.error(f"Embedding request rejected: {exc}")
                raise UpstreamProviderError(f"Embedding request rejected: {exc}") from exc

        vector = list(response.data[0].embedding)
        result = EmbeddingResult(vector=vector, dimensions=len(vector), model=self.model)
        self.cache.put(text, result)
        return result

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        """Embed several texts, one request per uncached text."""
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))


def create_embedding_text(item: CatalogItem) -> str:
    """
    Combine the semantic information of a catalog item into embeddable text.

    Name and description first, then category, brand and up to ten tags.
    """
    parts = [item.name]
    if item.description:
        parts.append(item.description)
    if item.category:
        parts.append(f"Category: {item.category}")
    if item.brand:
        parts.append(f"Brand: {item.brand}")
    if item.tags:
        parts.append(f"Keywords: {', '.join(str(t) for t in item.tags[:10])}")
    return ". ".join(parts)
