"""Semantic search over a vector store with ranking, fusion and caching."""

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from ..config import MAX_RETRIEVED_DOCUMENTS, RAGConfig
from ..errors import CacheError, InvalidInput, RetrievalFailed
from ..observer import LifecycleObserver, ObserverMixin
from . import text as textutil
from .cache import QueryCache
from .filters import (FilterCondition, FilterExpression, SearchFilters,
                      build_search_filter, combine)
from .interfaces import Embedder, VectorStore
from .models import ConversationTurn, SearchResult, VectorCandidate
from .ranking import (FusionMethod, RankingAlgorithm, assign_ranks, fuse,
                      hybrid_fusion, rank)
from .timeouts import call_with_deadline


logger = logging.getLogger(__name__)

# Over-fetch factors
HYBRID_FETCH_FACTOR = 1.5
CONTEXTUAL_FETCH_FACTOR = 1.2

# Contextual re-ranking
CONTEXT_TURNS = 3
CONTEXT_SCORE_WEIGHT = 0.7
CONTEXT_OVERLAP_WEIGHT = 0.3
QUERY_KEYWORDS = 10

# Streaming
STREAM_BATCH_SIZE = 5
STREAM_MAX_RESULTS = 20


@dataclass(frozen=True)
class SearchOptions:
    """Options for a single search.

    Attributes:
        max_results: Results to return
        ranking_algorithm: Scorer applied to retrieved candidates
        filters: FilterExpression, FilterCondition or SearchFilters
        diversify_results: Keep only the first result per coarse topic
        min_relevance_score: Drop results scoring below this
        skip_cache: Bypass the cache lookup (results are still stored)
        offset: Skip this many results (used by streaming)
        timeout: Per-call deadline in seconds; defaults to the engine config
    """
    max_results: int = MAX_RETRIEVED_DOCUMENTS
    ranking_algorithm: RankingAlgorithm = RankingAlgorithm.SEMANTIC
    filters: Optional[Union[FilterExpression, FilterCondition, SearchFilters]] = None
    diversify_results: bool = False
    min_relevance_score: Optional[float] = None
    skip_cache: bool = False
    offset: int = 0
    timeout: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.max_results, int) or self.max_results <= 0:
            raise InvalidInput(f"max_results must be a positive integer, got {self.max_results!r}")
        if self.offset < 0:
            raise InvalidInput(f"offset must not be negative, got {self.offset!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidInput(f"timeout must be positive, got {self.timeout!r}")
        try:
            object.__setattr__(self, "ranking_algorithm", RankingAlgorithm(self.ranking_algorithm))
        except ValueError as e:
            raise InvalidInput(f"Unknown ranking algorithm: {self.ranking_algorithm!r}") from e

    def cache_payload(self) -> Dict[str, Any]:
        """Fields that affect the result list, in a JSON-friendly form."""
        filter_expr = build_search_filter(self.filters)
        return {
            "max_results": self.max_results,
            "ranking_algorithm": self.ranking_algorithm.value,
            "filters": filter_expr.to_dict() if filter_expr else None,
            "diversify_results": self.diversify_results,
            "min_relevance_score": self.min_relevance_score,
            "offset": self.offset,
        }


class SearchEngine(ObserverMixin):
    """Embeds queries, queries the vector store, ranks and post-processes results.

    Owns its QueryCache and the cache's background sweeper; call close() (or
    use the engine as a context manager) to stop the sweeper.
    """

    def __init__(self, embedder: Embedder, vector_store: VectorStore,
                 config: Optional[RAGConfig] = None,
                 cache: Optional[QueryCache] = None,
                 observer: Optional[LifecycleObserver] = None,
                 background_sweep: bool = True,
                 sleep: Callable[[float], None] = time.sleep):
        self.embedder = embedder
        self.vector_store = vector_store
        self.config = config or RAGConfig()
        self.cache = cache or QueryCache(ttl_seconds=self.config.cache_ttl,
                                         max_size=self.config.cache_max_size)
        self.observer = observer or LifecycleObserver()
        self._sleep = sleep
        self._closed = False
        if background_sweep:
            self.cache.start_sweeper()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Stop the cache sweeper. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.cache.stop_sweeper()

    def default_options(self) -> SearchOptions:
        return SearchOptions(max_results=self.config.max_retrieved_documents,
                             ranking_algorithm=self.config.default_ranking_algorithm)

    def _options(self, options: Optional[SearchOptions]) -> SearchOptions:
        if options is None:
            return self.default_options()
        if not isinstance(options, SearchOptions):
            raise InvalidInput(f"Expected SearchOptions, got {type(options).__name__}")
        return options

    @staticmethod
    def _validate_query(query) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInput("Query must be a non-empty string")
        return query.strip()

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """Run the full search pipeline.

        Args:
            query: Natural-language query
            options: SearchOptions (defaults from the engine config)

        Returns:
            Ranked results with 1-based ranks

        Raises:
            InvalidInput: Empty query or malformed options
            RetrievalFailed: Embedder or vector store error or timeout
        """
        query = self._validate_query(query)
        options = self._options(options)

        key = self._cache_key(query, options)
        if key is not None and not options.skip_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for %r", query)
                return cached

        self._notify("start", "search", query=query, algorithm=options.ranking_algorithm.value)
        start_time = time.perf_counter()
        try:
            results = self._retrieve(query, options)
        except RetrievalFailed as e:
            self._notify("error", "search", query=query, error=str(e))
            raise

        if key is not None:
            self.cache.set(key, results)
        self._notify("complete", "search", query=query, result_count=len(results),
                     elapsed=time.perf_counter() - start_time)
        return results

    def _cache_key(self, query: str, options: SearchOptions):
        try:
            return self.cache.make_key(query, options.cache_payload())
        except CacheError as e:
            logger.warning("Search cache bypassed: %s", e)
            return None

    def _retrieve(self, query: str, options: SearchOptions) -> List[SearchResult]:
        vector = self._embed(query, options.timeout)
        candidates = self._query_store(vector, options.offset + options.max_results,
                                       build_search_filter(options.filters), options.timeout)
        results = rank(self._to_results(candidates), query, options.ranking_algorithm)
        results = self._post_process(results, options)
        window = results[options.offset:options.offset + options.max_results]
        return assign_ranks(window, offset=options.offset)

    def _timeout(self, override: Optional[float]) -> Optional[float]:
        return override if override is not None else self.config.retrieval_timeout

    def _embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        try:
            return call_with_deadline(self.embedder.embed, self._timeout(timeout), text)
        except Exception as e:
            raise RetrievalFailed(f"Embedding failed: {e}", cause=e) from e

    def _query_store(self, vector, top_k: int, filter_expr: Optional[FilterExpression],
                     timeout: Optional[float] = None) -> List[VectorCandidate]:
        try:
            return call_with_deadline(self.vector_store.query, self._timeout(timeout),
                                      vector, top_k, filter_expr, True)
        except Exception as e:
            raise RetrievalFailed(f"Vector store query failed: {e}", cause=e) from e

    @staticmethod
    def _to_results(candidates: Sequence[VectorCandidate]) -> List[SearchResult]:
        return [SearchResult(chunk=c.to_chunk(textutil.estimate_tokens(c.content)), score=c.score)
                for c in candidates]

    def _post_process(self, results: List[SearchResult], options: SearchOptions) -> List[SearchResult]:
        if options.diversify_results:
            results = diversify(results)
        results = deduplicate(results)
        if options.min_relevance_score is not None:
            results = [r for r in results if r.score >= options.min_relevance_score]
        return results

    def hybrid_search(self, query: str, options: Optional[SearchOptions] = None,
                      semantic_weight: float = 0.7, keyword_weight: float = 0.3) -> List[SearchResult]:
        """Fuse a semantic search with a keyword scan of the vector store."""
        query = self._validate_query(query)
        options = self._options(options)
        fetch = math.ceil(options.max_results * HYBRID_FETCH_FACTOR)

        semantic = self.search(query, replace(options, max_results=fetch, offset=0))
        keyword = self._keyword_search(query, options, fetch)
        fused = hybrid_fusion(semantic, keyword, semantic_weight, keyword_weight)
        return assign_ranks(fused[:options.max_results])

    def _keyword_search(self, query: str, options: SearchOptions, limit: int) -> List[SearchResult]:
        keywords = textutil.extract_keywords(query, QUERY_KEYWORDS)
        if not keywords:
            return []
        keyword_filter = FilterExpression.any_of(
            *(FilterCondition("content", "contains", k) for k in keywords))
        filter_expr = combine(keyword_filter, build_search_filter(options.filters))
        candidates = self._query_store(None, limit, filter_expr, options.timeout)
        results = [replace(r, score=textutil.keyword_overlap(query, r.content))
                   for r in self._to_results(candidates)]
        return sorted(results, key=lambda r: r.score, reverse=True)

    def multi_query_search(self, queries: Sequence[str], options: Optional[SearchOptions] = None,
                           fusion: FusionMethod = FusionMethod.RRF,
                           weights: Optional[Sequence[float]] = None) -> List[SearchResult]:
        """Search each query and fuse the ranked lists."""
        if not queries:
            raise InvalidInput("multi_query_search needs at least one query")
        options = self._options(options)
        result_lists = [self.search(q, options) for q in queries]
        fused = fuse(result_lists, fusion, weights)
        return assign_ranks(fused[:options.max_results])

    def contextual_search(self, query: str, history: Sequence[Union[str, ConversationTurn]],
                          options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """Search with the query expanded by recent conversation turns.

        With an empty history this is exactly :meth:`search`.
        """
        turns = list(history or [])[-CONTEXT_TURNS:]
        if not turns:
            return self.search(query, options)

        query = self._validate_query(query)
        options = self._options(options)
        history_text = " ".join(t.query if isinstance(t, ConversationTurn) else str(t) for t in turns)

        terms = []
        for term in (textutil.extract_keywords(query, QUERY_KEYWORDS)
                     + textutil.extract_keywords(history_text, QUERY_KEYWORDS)):
            if term not in terms:
                terms.append(term)
        expanded = " ".join(terms) or query

        fetch = math.ceil(options.max_results * CONTEXTUAL_FETCH_FACTOR)
        results = self.search(expanded, replace(options, max_results=fetch))

        history_terms = set(textutil.keyword_terms(history_text))
        rescored = []
        for r in results:
            result_terms = set(textutil.keyword_terms(r.content))
            overlap = len(result_terms & history_terms) / len(result_terms) if result_terms else 0.0
            rescored.append(replace(r, score=CONTEXT_SCORE_WEIGHT * r.score
                                    + CONTEXT_OVERLAP_WEIGHT * overlap))
        rescored.sort(key=lambda r: r.score, reverse=True)
        return assign_ranks(rescored[:options.max_results])

    def find_similar(self, chunk_id: str, max_results: int = 10,
                     similarity_threshold: Optional[float] = None,
                     exclude_current: bool = True) -> List[SearchResult]:
        """Find chunks whose stored embedding is close to ``chunk_id``'s.

        Raises:
            InvalidInput: Unknown chunk id, or the stored chunk has no embedding
        """
        if max_results <= 0:
            raise InvalidInput("max_results must be positive")
        try:
            stored = call_with_deadline(self.vector_store.get, self._timeout(None), chunk_id)
        except Exception as e:
            raise RetrievalFailed(f"Vector store lookup failed: {e}", cause=e) from e
        if stored is None:
            raise InvalidInput(f"Chunk {chunk_id!r} not found")
        if not stored.embedding:
            raise InvalidInput(f"Chunk {chunk_id!r} has no stored embedding")

        top_k = max_results + 1 if exclude_current else max_results
        candidates = self._query_store(list(stored.embedding), top_k, None)
        results = [r for r in self._to_results(candidates)
                   if not (exclude_current and r.id == chunk_id)]
        if similarity_threshold is not None:
            results = [r for r in results if r.score >= similarity_threshold]
        return assign_ranks(results[:max_results])

    def stream_search(self, query: str, options: Optional[SearchOptions] = None,
                      batch_size: int = STREAM_BATCH_SIZE) -> Iterator[List[SearchResult]]:
        """Yield successive batches of results, pausing between batches.

        The total is capped at ``options.max_results`` (20 when no options are
        given). Each call starts a fresh stream.
        """
        query = self._validate_query(query)
        if batch_size <= 0:
            raise InvalidInput("batch_size must be positive")
        if options is None:
            options = replace(self.default_options(), max_results=STREAM_MAX_RESULTS)
        return self._stream(query, self._options(options), batch_size)

    def _stream(self, query, options, batch_size):
        cap = options.max_results
        produced = 0
        while produced < cap:
            size = min(batch_size, cap - produced)
            batch = self.search(query, replace(options, max_results=size,
                                               offset=options.offset + produced))
            if not batch:
                return
            yield batch
            produced += len(batch)
            if produced < cap:
                self._sleep(self.config.stream_delay)

    def clear_cache(self):
        self.cache.invalidate_all()

    def get_cache_stats(self) -> Dict:
        return self.cache.get_stats()


def diversify(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Keep the first result per coarse topic. Results without a topic are kept."""
    seen = set()
    kept = []
    for r in results:
        topic = textutil.topic_key(r.content)
        if topic and topic in seen:
            continue
        seen.add(topic)
        kept.append(r)
    return kept


def deduplicate(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Drop results whose content hash was already seen."""
    seen = set()
    kept = []
    for r in results:
        digest = textutil.content_hash(r.content)
        if digest in seen:
            continue
        seen.add(digest)
        kept.append(r)
    return kept
