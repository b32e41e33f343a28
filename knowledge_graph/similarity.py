"""
Similarity and relevance scoring.

Pure functions shared by the graph builder, the retrieval engine and the
recommendation engine. No I/O.
"""

import re
from typing import Iterable, List, Optional, Sequence

import numpy as np

from knowledge_graph.models import KnowledgeEntity, normalize_name

# Factor weights for calculate_similarity_score
CATEGORY_WEIGHT = 0.4
BRAND_WEIGHT = 0.3
PRICE_WEIGHT = 0.2
VECTOR_WEIGHT = 0.1

COMMERCIAL_KEYWORDS = (
    "buy", "purchase", "order", "cart", "checkout", "payment", "price", "cost",
    "discount", "deal", "sale", "offer", "shipping", "delivery", "warranty",
    "return", "best", "top", "recommend", "review", "rating",
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Normalized dot product in [-1, 1].

    Returns 0.0 for missing vectors, mismatched dimensions or zero norms.
    """
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def price_proximity(price_a: Optional[float], price_b: Optional[float]) -> Optional[float]:
    """max(0, 1 - |a - b| / avg(a, b)), or None when either price is unknown."""
    if price_a is None or price_b is None:
        return None
    avg = (price_a + price_b) / 2
    if avg <= 0:
        return 1.0 if price_a == price_b else 0.0
    return max(0.0, 1 - abs(price_a - price_b) / avg)


def calculate_similarity_score(a: KnowledgeEntity, b: KnowledgeEntity) -> float:
    """
    Weighted average over the factors both entities carry:

        category match 0.4, brand match 0.3, price closeness 0.2, vector cosine 0.1

    The sum of weighted factor scores is divided by the total weight of the
    applicable factors, so two entities that agree on everything they share
    score 1.0 regardless of how many attributes they have.
    """
    score = 0.0
    total_weight = 0.0

    if a.category and b.category:
        score += CATEGORY_WEIGHT * (1.0 if normalize_name(a.category) == normalize_name(b.category) else 0.0)
        total_weight += CATEGORY_WEIGHT

    if a.brand and b.brand:
        score += BRAND_WEIGHT * (1.0 if normalize_name(a.brand) == normalize_name(b.brand) else 0.0)
        total_weight += BRAND_WEIGHT

    proximity = price_proximity(a.price, b.price)
    if proximity is not None:
        score += PRICE_WEIGHT * proximity
        total_weight += PRICE_WEIGHT

    if a.has_vector and b.has_vector and len(a.vector) == len(b.vector):
        # negative cosine counts as no similarity
        score += VECTOR_WEIGHT * max(0.0, cosine_similarity(a.vector, b.vector))
        total_weight += VECTOR_WEIGHT

    return score / total_weight if total_weight > 0 else 0.0


def normalize_tags(tags: Iterable[str]) -> List[str]:
    seen = []
    for tag in tags:
        key = normalize_name(tag)
        if key and key not in seen:
            seen.append(key)
    return seen


def tag_overlap(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """|common| / max(|A|, |B|) over normalized tags; 0.0 when either side is empty."""
    a = normalize_tags(tags_a)
    b = normalize_tags(tags_b)
    if not a or not b:
        return 0.0
    common = set(a) & set(b)
    return len(common) / max(len(a), len(b))


def common_tags(tags_a: Iterable[str], tags_b: Iterable[str]) -> List[str]:
    b = set(normalize_tags(tags_b))
    return [t for t in normalize_tags(tags_a) if t in b]


def tokenize(text: str, min_length: int = 3) -> List[str]:
    """Lowercase word tokens, dropping very short words."""
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if len(t) >= min_length]


def keyword_overlap(query: str, content: str) -> float:
    """Share of query terms that appear in the content, in [0, 1]."""
    terms = list(dict.fromkeys(tokenize(query)))
    if not terms:
        return 0.0
    content_lower = (content or "").lower()
    matches = sum(1 for term in terms if term in content_lower)
    return matches / len(terms)


def commercial_intent(text: str) -> float:
    """Share of commercial keywords present in the text, in [0, 1]."""
    lower = (text or "").lower()
    matches = sum(1 for keyword in COMMERCIAL_KEYWORDS if keyword in lower)
    return min(matches / len(COMMERCIAL_KEYWORDS), 1.0)
