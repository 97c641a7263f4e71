"""Scoring and rank fusion over retrieved candidates.

The keyword scorers (BM25, TF-IDF) work only on the candidates the vector
store already returned. There is no global document-frequency index, so idf
is approximated from an assumed corpus size with every query term treated
as appearing in a single document.
"""

import math
from collections import Counter
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import InvalidInput
from . import text as textutil
from .models import SearchResult, utcnow


# BM25 parameters
BM25_K1 = 1.2
BM25_B = 0.75
ASSUMED_CORPUS_SIZE = 1000
ASSUMED_DOCUMENT_FREQUENCY = 1
DEFAULT_AVG_DOC_LENGTH = 100

# Learning-to-rank blend
LTR_WEIGHTS = {
    "semantic": 0.4,
    "keyword": 0.2,
    "position": 0.2,
    "freshness": 0.1,
    "length": 0.1,
}
FRESHNESS_WINDOW_DAYS = 30
UNDATED_FRESHNESS = 0.5
LENGTH_BONUS_RANGE = (100, 1000)

# Fusion
RRF_K = 60
HYBRID_SEMANTIC_WEIGHT = 0.7
HYBRID_KEYWORD_WEIGHT = 0.3


class RankingAlgorithm(str, Enum):
    SEMANTIC = "semantic"
    BM25 = "bm25"
    TF_IDF = "tf_idf"
    LEARNING_TO_RANK = "learning_to_rank"


class FusionMethod(str, Enum):
    RRF = "rrf"
    WEIGHTED = "weighted"
    MERGE = "merge"


def approximate_idf(document_frequency=ASSUMED_DOCUMENT_FREQUENCY,
                    corpus_size=ASSUMED_CORPUS_SIZE) -> float:
    return math.log(1 + corpus_size / (document_frequency + 1))


class SimpleBM25:
    """BM25 over a small candidate set with an approximate idf."""

    def __init__(self, k1=BM25_K1, b=BM25_B, corpus_size=ASSUMED_CORPUS_SIZE):
        self.k1 = k1  # Term frequency saturation parameter
        self.b = b    # Length normalization parameter
        self.corpus_size = corpus_size
        self.documents: List[Counter] = []
        self.lengths: List[int] = []
        self.avg_doc_length = 0.0

    def index(self, documents: Sequence[str]):
        """Index a list of candidate texts."""
        tokenized = [textutil.keyword_terms(doc) for doc in documents]
        self.documents = [Counter(tokens) for tokens in tokenized]
        self.lengths = [len(tokens) for tokens in tokenized]
        total = sum(self.lengths)
        self.avg_doc_length = total / len(self.lengths) if total else DEFAULT_AVG_DOC_LENGTH

    def idf(self, term: str) -> float:
        return approximate_idf(corpus_size=self.corpus_size)

    def score(self, query: str) -> List[float]:
        """Score every indexed document for a query."""
        query_terms = textutil.keyword_terms(query)
        scores = []
        for counts, length in zip(self.documents, self.lengths):
            score = 0.0
            for term in query_terms:
                tf = counts.get(term, 0)
                if tf == 0:
                    continue
                numerator = self.idf(term) * tf * (self.k1 + 1)
                denominator = tf + self.k1 * (1 - self.b + self.b * length / self.avg_doc_length)
                score += numerator / denominator
            scores.append(score)
        return scores


def _rescored(results: Sequence[SearchResult], scores: Sequence[float]) -> List[SearchResult]:
    rescored = [replace(r, score=s) for r, s in zip(results, scores)]
    # sorted() is stable: equal scores keep retrieval order
    return sorted(rescored, key=lambda r: r.score, reverse=True)


def rank_semantic(results, query, **_):
    return sorted(results, key=lambda r: r.score, reverse=True)


def rank_bm25(results, query, **_):
    bm25 = SimpleBM25()
    bm25.index([r.content for r in results])
    return _rescored(results, bm25.score(query))


def rank_tf_idf(results, query, **_):
    query_terms = textutil.keyword_terms(query)
    idf = approximate_idf()
    scores = []
    for r in results:
        counts = Counter(textutil.keyword_terms(r.content))
        scores.append(sum(counts.get(term, 0) * idf for term in query_terms))
    return _rescored(results, scores)


def freshness_score(created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    if created_at is None:
        return UNDATED_FRESHNESS
    now = now or utcnow()
    days = (now - created_at).total_seconds() / 86400
    return max(0.0, 1 - days / FRESHNESS_WINDOW_DAYS)


def rank_learning_to_rank(results, query, now: Optional[datetime] = None, **_):
    """Fixed linear blend of simple features; a stand-in for a trained model."""
    low, high = LENGTH_BONUS_RANGE
    scores = []
    for r in results:
        length = len(r.content)
        features = {
            "semantic": r.score,
            "keyword": textutil.keyword_overlap(query, r.content),
            "position": 1 / max(r.chunk.index, 1),
            "freshness": freshness_score(r.chunk.created_at, now),
            "length": 1.0 if low < length < high else 0.0,
        }
        scores.append(sum(LTR_WEIGHTS[name] * value for name, value in features.items()))
    return _rescored(results, scores)


RANKERS: Dict[RankingAlgorithm, Callable[..., List[SearchResult]]] = {
    RankingAlgorithm.SEMANTIC: rank_semantic,
    RankingAlgorithm.BM25: rank_bm25,
    RankingAlgorithm.TF_IDF: rank_tf_idf,
    RankingAlgorithm.LEARNING_TO_RANK: rank_learning_to_rank,
}


def rank(results: Sequence[SearchResult], query: str,
         algorithm=RankingAlgorithm.SEMANTIC, **kwargs) -> List[SearchResult]:
    """Re-score and order results with the chosen algorithm."""
    try:
        algorithm = RankingAlgorithm(algorithm)
    except ValueError as e:
        raise InvalidInput(f"Unknown ranking algorithm: {algorithm!r}") from e
    return RANKERS[algorithm](list(results), query, **kwargs)


def assign_ranks(results: Sequence[SearchResult], offset: int = 0) -> List[SearchResult]:
    """Return copies with 1-based ranks (shifted by ``offset``)."""
    return [replace(r, rank=offset + i + 1) for i, r in enumerate(results)]


def _fuse(result_lists, contribution, initial=0.0) -> List[SearchResult]:
    fused: Dict[str, float] = {}
    first_seen: Dict[str, SearchResult] = {}
    for list_index, results in enumerate(result_lists):
        for position, result in enumerate(results):
            if result.id not in first_seen:
                first_seen[result.id] = result
                fused[result.id] = initial
            fused[result.id] = contribution(fused[result.id], list_index, position, result)
    merged = [replace(first_seen[i], score=fused[i]) for i in first_seen]
    return sorted(merged, key=lambda r: r.score, reverse=True)


def reciprocal_rank_fusion(result_lists: Sequence[Sequence[SearchResult]], k: int = RRF_K) -> List[SearchResult]:
    """score(doc) = sum over lists of 1 / (k + rank + 1), with rank 0-based."""
    return _fuse(result_lists, lambda acc, _, position, __: acc + 1 / (k + position + 1))


def weighted_fusion(result_lists: Sequence[Sequence[SearchResult]],
                    weights: Optional[Sequence[float]] = None) -> List[SearchResult]:
    """score(doc) = sum over lists of score * weight. Weights default to 1/n."""
    n = len(result_lists)
    if weights is None:
        weights = [1 / n] * n if n else []
    if len(weights) != n:
        raise InvalidInput(f"Expected {n} fusion weights, got {len(weights)}")
    return _fuse(result_lists, lambda acc, list_index, _, r: acc + r.score * weights[list_index])


def merge_results(result_lists: Sequence[Sequence[SearchResult]]) -> List[SearchResult]:
    """Union of the lists, keeping each document's best score."""
    return _fuse(result_lists, lambda acc, _, __, r: max(acc, r.score), initial=float("-inf"))


def hybrid_fusion(semantic: Sequence[SearchResult], keyword: Sequence[SearchResult],
                  semantic_weight=HYBRID_SEMANTIC_WEIGHT,
                  keyword_weight=HYBRID_KEYWORD_WEIGHT) -> List[SearchResult]:
    return weighted_fusion([semantic, keyword], [semantic_weight, keyword_weight])


def fuse(result_lists, method=FusionMethod.RRF, weights=None) -> List[SearchResult]:
    try:
        method = FusionMethod(method)
    except ValueError as e:
        raise InvalidInput(f"Unknown fusion method: {method!r}") from e
    if method is FusionMethod.RRF:
        return reciprocal_rank_fusion(result_lists)
    if method is FusionMethod.WEIGHTED:
        return weighted_fusion(result_lists, weights)
    return merge_results(result_lists)
