"""Token-budgeted context window assembly.

Chunks are ordered by a relevance strategy, compressed, then packed under the
token budget. A chunk that does not fit is truncated at a word boundary when
at least MIN_TRUNCATION_TOKENS remain; otherwise packing stops. The finished
window never exceeds ``max_tokens``.
"""

import logging
import math
import random
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..config import MAX_CONTEXT_LENGTH
from ..errors import ContextBuildFailed, InvalidInput
from ..observer import LifecycleObserver, ObserverMixin
from . import text as textutil
from .interfaces import Summarizer, TruncatingSummarizer
from .models import Chunk, ContextWindow, SearchResult, utcnow
from .search import deduplicate, diversify


logger = logging.getLogger(__name__)

# Packing
MIN_TRUNCATION_TOKENS = 100

# Compression
SUMMARY_MAX_CHARS = 500
COMPRESSED_KEYWORDS = 20

# Balanced ordering blend
BALANCED_RELEVANCE_WEIGHT = 0.5
BALANCED_RECENCY_WEIGHT = 0.3
BALANCED_RANDOM_WEIGHT = 0.2
RECENCY_HORIZON_DAYS = 365

# Temporal decay
DEFAULT_TIME_WEIGHT = 0.3
EXPONENTIAL_DECAY_DAYS = 30
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Layout
SECTION_SEPARATOR = "---"


class RelevanceStrategy(str, Enum):
    SEMANTIC = "semantic_relevance"
    RECENCY = "recency"
    DIVERSITY = "diversity"
    COVERAGE = "coverage"
    BALANCED = "balanced"


class CompressionMethod(str, Enum):
    NONE = "none"
    SUMMARIZATION = "summarization"
    KEYWORD_EXTRACTION = "keyword_extraction"
    ENTITY_FILTERING = "entity_filtering"
    REDUNDANCY_REMOVAL = "redundancy_removal"


class DecayFunction(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    LOGARITHMIC = "logarithmic"


@dataclass(frozen=True)
class ContextOptions:
    max_tokens: int = MAX_CONTEXT_LENGTH
    query: str = ""
    relevance_strategy: RelevanceStrategy = RelevanceStrategy.SEMANTIC
    compression_method: CompressionMethod = CompressionMethod.NONE
    prioritize_recency: bool = False
    include_metadata: bool = True
    optimize_layout: bool = False
    document_title: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            raise InvalidInput(f"max_tokens must be a positive integer, got {self.max_tokens!r}")
        try:
            object.__setattr__(self, "relevance_strategy", RelevanceStrategy(self.relevance_strategy))
            object.__setattr__(self, "compression_method", CompressionMethod(self.compression_method))
        except ValueError as e:
            raise InvalidInput(str(e)) from e


@dataclass(frozen=True)
class Section:
    """A named part of a hierarchical context.

    Attributes:
        title: Rendered as a "## title" header chunk
        max_tokens: Budget for this section; defaults to an equal share
        priority: Higher priority sections come first
        document_ids: Restrict the section to these documents (empty = all)
    """
    title: str
    max_tokens: Optional[int] = None
    priority: int = 0
    document_ids: Tuple[str, ...] = ()


def _timestamp(result: SearchResult) -> float:
    created = result.chunk.created_at
    return created.timestamp() if created is not None else float("-inf")


def _days_since(created: Optional[datetime], reference: datetime) -> float:
    created = created or EPOCH
    return max(0.0, (reference - created).total_seconds() / 86400)


def linear_decay(days: float) -> float:
    return max(0.0, 1 - days / 365)


def exponential_decay(days: float) -> float:
    return max(0.0, math.exp(-days / EXPONENTIAL_DECAY_DAYS))


def logarithmic_decay(days: float) -> float:
    return max(0.0, 1 - math.log(1 + days / 30) / math.log(365 / 30 + 1))


DECAY_FUNCTIONS = {
    DecayFunction.LINEAR: linear_decay,
    DecayFunction.EXPONENTIAL: exponential_decay,
    DecayFunction.LOGARITHMIC: logarithmic_decay,
}


class ContextBuilder(ObserverMixin):
    """Builds context windows from ranked search results."""

    def __init__(self, summarizer: Optional[Summarizer] = None,
                 token_estimator: Optional[Callable[[str], int]] = None,
                 rng: Optional[random.Random] = None,
                 observer: Optional[LifecycleObserver] = None,
                 clock: Callable[[], datetime] = utcnow):
        """Initialize the builder.

        Args:
            summarizer: Used by the summarization compression method
            token_estimator: Replaces the default ceil(len / 4) estimate
            rng: Random source for the balanced strategy's tie-break
            observer: Receives build_context lifecycle events
            clock: Current time, used for recency scoring
        """
        self.summarizer = summarizer or TruncatingSummarizer()
        self.estimate_tokens = token_estimator or textutil.estimate_tokens
        self.rng = rng or random.Random()
        self.observer = observer or LifecycleObserver()
        self.clock = clock
        self._orderings = {
            RelevanceStrategy.SEMANTIC: self._order_semantic,
            RelevanceStrategy.RECENCY: self._order_recency,
            RelevanceStrategy.DIVERSITY: self._order_diversity,
            RelevanceStrategy.COVERAGE: self._order_coverage,
            RelevanceStrategy.BALANCED: self._order_balanced,
        }
        self._compressors = {
            CompressionMethod.NONE: lambda results, options: list(results),
            CompressionMethod.SUMMARIZATION: self._summarize,
            CompressionMethod.KEYWORD_EXTRACTION: self._keywords_only,
            CompressionMethod.ENTITY_FILTERING: self._filter_entities,
            CompressionMethod.REDUNDANCY_REMOVAL: lambda results, options: deduplicate(results),
        }

    def build_context(self, chunks: Sequence[SearchResult],
                      options: Optional[ContextOptions] = None) -> ContextWindow:
        """Assemble a context window within ``options.max_tokens``.

        Raises:
            InvalidInput: Malformed options
            ContextBuildFailed: Unexpected failure while ordering, compressing or packing
        """
        options = options or ContextOptions()
        if not isinstance(options, ContextOptions):
            raise InvalidInput(f"Expected ContextOptions, got {type(options).__name__}")
        chunks = list(chunks or [])
        start_time = time.perf_counter()
        self._notify("start", "build_context", chunk_count=len(chunks), max_tokens=options.max_tokens)

        try:
            ordered = self._orderings[options.relevance_strategy](chunks, options)
            compressed = self._compressors[options.compression_method](ordered, options)
            if options.optimize_layout:
                compressed = self._decorate(compressed, options)
            packed, truncated = self._pack(compressed, options.max_tokens)
        except Exception as e:
            self._notify("error", "build_context", error=str(e))
            raise ContextBuildFailed(f"Failed to build context: {e}", cause=e) from e

        metadata = {
            "strategy": options.relevance_strategy.value,
            "compression": options.compression_method.value,
            "original_count": len(chunks),
            "final_count": len(packed),
            "truncated": truncated,
            "build_time": time.perf_counter() - start_time,
        }
        if options.include_metadata:
            metadata["sources"] = [r.metadata.get("document_source") or r.chunk.document_id
                                   for r in packed]
        if chunks and not packed:
            logger.warning("No chunk fits a %d token budget; returning empty context", options.max_tokens)
            metadata["fallback"] = "empty_context"

        window = self._window(packed, len(chunks), metadata)
        self._notify("complete", "build_context", total_tokens=window.total_tokens,
                     chunk_count=len(packed))
        return window

    def _window(self, packed: Sequence[SearchResult], original_count: int,
                metadata: Dict) -> ContextWindow:
        return ContextWindow(
            chunks=tuple(packed),
            total_tokens=sum(self.estimate_tokens(r.content) for r in packed),
            total_length=sum(len(r.content) for r in packed),
            compression_ratio=len(packed) / original_count if original_count else 1.0,
            relevance_score=sum(r.score for r in packed) / len(packed) if packed else 0.0,
            metadata=metadata,
        )

    # Ordering

    def _order_semantic(self, results, options):
        if options.prioritize_recency:
            return sorted(results, key=lambda r: (r.score, _timestamp(r)), reverse=True)
        return sorted(results, key=lambda r: r.score, reverse=True)

    def _order_recency(self, results, options):
        return sorted(results, key=_timestamp, reverse=True)

    def _order_diversity(self, results, options):
        return diversify(self._order_semantic(results, options))

    def _order_coverage(self, results, options):
        def coverage(r):
            overlap = textutil.keyword_overlap(options.query, r.content)
            if options.prioritize_recency:
                return overlap, _timestamp(r)
            return overlap
        return sorted(results, key=coverage, reverse=True)

    def _recency_score(self, result: SearchResult) -> float:
        created = result.chunk.created_at
        if created is None:
            return 0.0
        return linear_decay(_days_since(created, self.clock()))

    def _order_balanced(self, results, options):
        scored = [
            (BALANCED_RELEVANCE_WEIGHT * r.score
             + BALANCED_RECENCY_WEIGHT * self._recency_score(r)
             + BALANCED_RANDOM_WEIGHT * self.rng.random(), r)
            for r in results
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [r for _, r in scored]

    # Compression

    def _summarize(self, results, options):
        compressed = []
        for r in results:
            if len(r.content) <= SUMMARY_MAX_CHARS:
                compressed.append(r)
                continue
            summary = self.summarizer.summarize(r.content, SUMMARY_MAX_CHARS)
            compressed.append(self._with_content(r, summary, summarized=True))
        return compressed

    def _keywords_only(self, results, options):
        compressed = []
        for r in results:
            keywords = textutil.extract_keywords(r.content, COMPRESSED_KEYWORDS)
            if keywords:
                compressed.append(self._with_content(r, " ".join(keywords), compression="keywords"))
        return compressed

    def _filter_entities(self, results, options):
        query_entities = set(textutil.capitalized_entities(options.query))
        if not query_entities:
            # Nothing to filter against
            return list(results)
        return [r for r in results
                if query_entities & set(textutil.capitalized_entities(r.content))]

    def _with_content(self, result: SearchResult, content: str, **flags) -> SearchResult:
        metadata = dict(result.chunk.metadata)
        metadata.setdefault("original_length", len(result.chunk.content))
        metadata.update(flags)
        chunk = replace(result.chunk, content=content,
                        token_estimate=self.estimate_tokens(content), metadata=metadata)
        return replace(result, chunk=chunk)

    # Layout

    def _decorate(self, results, options):
        if not results:
            return []
        title = options.document_title or results[0].metadata.get("document_title")
        decorated = []
        for i, r in enumerate(results):
            if i == 0:
                prefix = f"# {title}\n\n" if title else ""
            else:
                prefix = f"{SECTION_SEPARATOR}\n\n"
            if prefix:
                r = replace(r, chunk=replace(r.chunk, content=prefix + r.chunk.content))
            decorated.append(r)
        return decorated

    # Packing

    def _pack(self, results, max_tokens: int) -> Tuple[List[SearchResult], bool]:
        packed = []
        total = 0
        for r in results:
            tokens = self.estimate_tokens(r.content)
            if total + tokens <= max_tokens:
                packed.append(r)
                total += tokens
                continue
            remaining = max_tokens - total
            if remaining >= MIN_TRUNCATION_TOKENS:
                truncated = self._truncate(r, remaining)
                if truncated is not None:
                    packed.append(truncated)
                    return packed, True
            break
        return packed, False

    def _truncate(self, result: SearchResult, budget: int) -> Optional[SearchResult]:
        """Cut at a word boundary so the estimate stays within ``budget``."""
        words = result.content.split()
        low, high = 0, len(words)
        while low < high:
            mid = (low + high + 1) // 2
            if self.estimate_tokens(" ".join(words[:mid])) <= budget:
                low = mid
            else:
                high = mid - 1
        if low == 0:
            return None
        content = " ".join(words[:low])
        metadata = dict(result.chunk.metadata)
        metadata["truncated"] = True
        metadata.setdefault("original_length", len(result.chunk.content))
        chunk = replace(result.chunk, content=content,
                        token_estimate=self.estimate_tokens(content), metadata=metadata)
        return replace(result, chunk=chunk)

    # Variants

    def build_hierarchical_context(self, chunks: Sequence[SearchResult], sections: Sequence[Section],
                                   options: Optional[ContextOptions] = None) -> ContextWindow:
        """Build one sub-window per section, highest priority first.

        Each section is introduced by a "## title" header chunk. Header tokens
        come out of the section's own budget, and the overall window still
        respects ``options.max_tokens``.
        """
        options = options or ContextOptions()
        if not sections:
            raise InvalidInput("build_hierarchical_context needs at least one section")
        chunks = list(chunks or [])
        ordered_sections = sorted(sections, key=lambda s: s.priority, reverse=True)
        default_budget = options.max_tokens // len(sections)

        combined: List[SearchResult] = []
        section_stats = []
        remaining = options.max_tokens
        for position, section in enumerate(ordered_sections):
            members = chunks
            if section.document_ids:
                allowed = set(section.document_ids)
                members = [r for r in chunks if r.chunk.document_id in allowed]
            header = self._section_header(section, position)
            header_tokens = self.estimate_tokens(header.content)
            budget = min(section.max_tokens or default_budget, remaining) - header_tokens
            if not members or budget <= 0:
                continue

            window = self.build_context(members, replace(options, max_tokens=budget,
                                                         optimize_layout=False))
            if not window.chunks:
                continue
            combined.append(header)
            combined.extend(window.chunks)
            used = header_tokens + window.total_tokens
            remaining -= used
            section_stats.append({"title": section.title, "chunk_count": len(window.chunks),
                                  "tokens": used})

        metadata = {
            "strategy": "hierarchical",
            "sections": section_stats,
            "original_count": len(chunks),
        }
        content_chunks = [r for r in combined if not r.metadata.get("section_header")]
        window = self._window(combined, len(chunks), metadata)
        return replace(window, compression_ratio=len(content_chunks) / len(chunks) if chunks else 1.0,
                       relevance_score=(sum(r.score for r in content_chunks) / len(content_chunks)
                                        if content_chunks else 0.0))

    def _section_header(self, section: Section, position: int) -> SearchResult:
        content = f"## {section.title}"
        chunk = Chunk(
            id=f"section:{position}:{section.title}",
            document_id="",
            index=position,
            content=content,
            token_estimate=self.estimate_tokens(content),
            metadata={"section_header": True, "section": section.title},
        )
        return SearchResult(chunk=chunk, score=0.0)

    def build_temporal_context(self, chunks: Sequence[SearchResult],
                               options: Optional[ContextOptions] = None,
                               time_weight: float = DEFAULT_TIME_WEIGHT,
                               decay: DecayFunction = DecayFunction.LINEAR,
                               reference_date: Optional[datetime] = None) -> ContextWindow:
        """Blend scores with a temporal decay, then build with recency tie-breaks.

        Undated chunks are treated as created at the Unix epoch.
        """
        options = options or ContextOptions()
        if not 0.0 <= time_weight <= 1.0:
            raise InvalidInput(f"time_weight must be within [0, 1], got {time_weight!r}")
        try:
            decay_fn = DECAY_FUNCTIONS[DecayFunction(decay)]
        except ValueError as e:
            raise InvalidInput(f"Unknown decay function: {decay!r}") from e
        reference = reference_date or self.clock()
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)

        rescored = []
        for r in chunks or []:
            temporal = decay_fn(_days_since(r.chunk.created_at, reference))
            rescored.append(replace(r, score=(1 - time_weight) * r.score + time_weight * temporal))

        window = self.build_context(rescored, replace(options, prioritize_recency=True))
        metadata = dict(window.metadata)
        metadata.update({"temporal_decay": DecayFunction(decay).value, "time_weight": time_weight})
        return replace(window, metadata=metadata)
