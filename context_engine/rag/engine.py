"""Main RAG engine orchestrating retrieval, context building and generation."""

import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..config import RAGConfig
from ..errors import (ContextBuildFailed, GenerationFailed, InvalidInput, RAGError,
                      RetrievalFailed)
from ..llm.base import GenerationRequest, Generator
from ..observer import LifecycleObserver, ObserverMixin
from . import text as textutil
from .chunking import ChunkingOptions, DocumentChunker
from .context import CompressionMethod, ContextBuilder, ContextOptions, RelevanceStrategy
from .filters import FilterCondition, FilterExpression
from .history import ConversationHistory
from .interfaces import Embedder, VectorStore
from .models import (Chunk, Citation, ContextWindow, ConversationTurn, Document,
                     EvaluationReport, GeneratedResponse, GenerationChunk,
                     ProcessedDocument, RAGMetrics, RAGResponse, SearchResult)
from .search import SearchEngine, SearchOptions
from .timeouts import call_with_deadline


logger = logging.getLogger(__name__)

# Latency split estimates (fractions of total latency, not measured)
RETRIEVAL_LATENCY_SHARE = 0.3
GENERATION_LATENCY_SHARE = 0.6

HISTORY_TURNS_FOR_CONTEXT = 3
RELATED_QUERY_CHARS = 200
RELATED_RESULTS = 3
QUERY_KEYWORDS = 10

SUCCESS_CONFIDENCE = 0.5
HALLUCINATION_THRESHOLD = 0.5

ERROR_ANSWER = "I apologize, but I encountered an error while processing your query: {error}"

INTENT_PATTERNS = (
    ("definition", ("what is", "define")),
    ("explanation", ("how to", "explain")),
    ("comparison", ("compare", "difference")),
    ("causal", ("why", "reason")),
)

CITATION_MARKER = re.compile(r"\s?\[(\d+)\]")
DELETE_SCAN_LIMIT = 10000


class QueryState(str, Enum):
    RECEIVED = "received"
    QUERY_PROCESSED = "query_processed"
    RETRIEVED = "retrieved"
    CONTEXT_BUILT = "context_built"
    GENERATED = "generated"
    HISTORY_UPDATED = "history_updated"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryOptions:
    """Per-query overrides. Unset fields fall back to the engine config.

    Attributes:
        max_results: Chunks to retrieve
        ranking_algorithm: Search ranking algorithm
        filters: FilterExpression, FilterCondition or SearchFilters
        max_context_tokens: Token budget for the context window
        relevance_strategy: Context ordering strategy
        compression_method: Context compression method
        optimize_layout: Add a title heading and separators to the context
        include_related: Run the advisory related-documents search
        generation: Extra generator options (model, temperature, max_tokens, system_prompt)
    """
    max_results: Optional[int] = None
    ranking_algorithm: Optional[str] = None
    filters: Any = None
    max_context_tokens: Optional[int] = None
    relevance_strategy: RelevanceStrategy = RelevanceStrategy.SEMANTIC
    compression_method: CompressionMethod = CompressionMethod.NONE
    optimize_layout: bool = False
    include_related: bool = True
    generation: Dict[str, Any] = field(default_factory=dict)


def detect_intent(query: str) -> str:
    lowered = query.lower()
    for intent, phrases in INTENT_PATTERNS:
        if any(phrase in lowered for phrase in phrases):
            return intent
    return "general"


class RAGEngine(ObserverMixin):
    """Answers queries over a vector store and keeps a bounded conversation history."""

    def __init__(self, embedder: Embedder, vector_store: VectorStore, generator: Generator,
                 config: Optional[RAGConfig] = None,
                 chunker: Optional[DocumentChunker] = None,
                 search_engine: Optional[SearchEngine] = None,
                 context_builder: Optional[ContextBuilder] = None,
                 observer: Optional[LifecycleObserver] = None,
                 background_sweep: bool = True):
        self.config = config or RAGConfig()
        self.embedder = embedder
        self.vector_store = vector_store
        self.generator = generator
        self.observer = observer or LifecycleObserver()
        self.chunker = chunker or DocumentChunker(observer=self.observer)
        self.search_engine = search_engine or SearchEngine(
            embedder, vector_store, config=self.config, observer=self.observer,
            background_sweep=background_sweep)
        self.context_builder = context_builder or ContextBuilder(observer=self.observer)
        self.history = ConversationHistory(self.config.max_conversation_history)

        self._stats_lock = threading.Lock()
        self._stats = {"total_queries": 0, "failed_queries": 0, "total_response_time": 0.0}
        self._started_at = time.time()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.search_engine.close()

    # Ingestion

    def ingest(self, document: Document, chunking_options: Optional[ChunkingOptions] = None,
               index: bool = True) -> List[Chunk]:
        """Chunk a document and (by default) embed and upsert its chunks.

        Args:
            document: Document to ingest
            chunking_options: Strategy and sizes; defaults come from the config
            index: When False, only chunk; the caller handles embedding and storage

        Returns:
            The chunks, with embeddings attached when indexed

        Raises:
            InvalidInput: Malformed document or options
            RetrievalFailed: Embedder or vector store failure
        """
        chunks = self.chunker.chunk(document, chunking_options or self._chunking_defaults())
        if index and chunks:
            chunks = self._index_chunks(chunks)
            self.search_engine.clear_cache()
        logger.info("Ingested document %s as %d chunks", document.id, len(chunks))
        return chunks

    def ingest_batch(self, documents: Sequence[Document],
                     chunking_options: Optional[ChunkingOptions] = None,
                     concurrency: int = 3, on_progress=None) -> List[ProcessedDocument]:
        """Ingest many documents; one failing document does not stop the batch."""
        processed = self.chunker.process_batch(documents, chunking_options or self._chunking_defaults(),
                                               concurrency=concurrency, on_progress=on_progress)
        results = []
        for item in processed:
            if item.success and item.chunks:
                try:
                    item = replace(item, chunks=tuple(self._index_chunks(item.chunks)))
                except RetrievalFailed as e:
                    logger.warning("Indexing document %s failed: %s", item.document.id, e)
                    item = replace(item, success=False, errors=item.errors + (str(e),))
            results.append(item)
        self.search_engine.clear_cache()
        return results

    def _chunking_defaults(self) -> ChunkingOptions:
        return ChunkingOptions(
            strategy=self.config.chunking_strategy,
            chunk_size=self.config.chunk_size,
            chunk_overlap=self.config.chunk_overlap,
            min_chunk_size=self.config.min_chunk_size,
            max_chunk_size=self.config.max_chunk_size,
        )

    def _index_chunks(self, chunks: Sequence[Chunk]) -> List[Chunk]:
        timeout = self.config.retrieval_timeout
        try:
            vectors = call_with_deadline(self.embedder.embed_batch, timeout, [c.content for c in chunks])
        except Exception as e:
            raise RetrievalFailed(f"Embedding chunks failed: {e}", cause=e) from e
        if len(vectors) != len(chunks):
            raise RetrievalFailed(f"Embedder returned {len(vectors)} vectors for {len(chunks)} chunks")
        embedded = [replace(c, embedding=tuple(float(x) for x in v)) for c, v in zip(chunks, vectors)]
        try:
            call_with_deadline(self.vector_store.upsert, timeout, embedded)
        except Exception as e:
            raise RetrievalFailed(f"Storing chunks failed: {e}", cause=e) from e
        return embedded

    def delete_documents(self, document_ids: Sequence[str]) -> int:
        """Remove every stored chunk of the given documents. Returns the chunk count."""
        if not document_ids:
            return 0
        doc_filter = FilterExpression.all_of(FilterCondition("document_id", "in", list(document_ids)))
        try:
            candidates = self.vector_store.query(None, DELETE_SCAN_LIMIT, doc_filter, True)
            ids = [c.id for c in candidates]
            self.vector_store.delete(ids)
        except Exception as e:
            raise RetrievalFailed(f"Deleting documents failed: {e}", cause=e) from e
        self.search_engine.clear_cache()
        logger.info("Deleted %d chunks from %d documents", len(ids), len(document_ids))
        return len(ids)

    # Querying

    def query(self, text: str, options: Optional[QueryOptions] = None) -> RAGResponse:
        """Answer a query.

        Never raises for backend failures: retrieval or generation errors produce
        a degraded response with ``confidence == 0`` and ``metadata["error"]``.

        Raises:
            InvalidInput: Empty query or malformed options
        """
        text, options, search_options, context_options = self._prepare(text, options)
        start_time = time.perf_counter()
        states = [QueryState.RECEIVED]
        self._notify("start", "query", query=text)

        try:
            analysis = self._analyze(text)
            states.append(QueryState.QUERY_PROCESSED)

            retrieved = self._retrieve(text, search_options)
            states.append(QueryState.RETRIEVED)

            window = self._build_context(retrieved, context_options)
            states.append(QueryState.CONTEXT_BUILT)

            generated = self._generate(text, window, options)
            states.append(QueryState.GENERATED)

            answer, citations = self._reconcile_citations(generated, window)
            related = self._related_documents(answer, retrieved) if options.include_related else []

            self.history.append(ConversationTurn(query=text, response=answer,
                                                 context_chunks=window.chunks))
            states.append(QueryState.HISTORY_UPDATED)
        except InvalidInput:
            raise
        except RAGError as e:
            return self._degraded(text, e, states, start_time)
        except Exception as e:
            logger.exception("Unexpected error while answering %r", text)
            return self._degraded(text, e, states, start_time)

        total = time.perf_counter() - start_time
        confidence = min(1.0, max(0.0, generated.confidence))
        metrics = RAGMetrics(
            retrieval_latency=total * RETRIEVAL_LATENCY_SHARE,
            generation_latency=total * GENERATION_LATENCY_SHARE,
            total_latency=total,
            context_utilization=window.total_tokens / context_options.max_tokens,
            response_relevance=confidence,
            hallucination_score=1 - confidence,
            factual_consistency=confidence,
        )
        states.append(QueryState.DONE)
        self._record(total, failed=False)

        metadata = dict(analysis)
        metadata.update({
            "states": [s.value for s in states],
            "processing_time": total,
            "context_tokens": window.total_tokens,
        })
        if window.metadata.get("fallback"):
            metadata["context_fallback"] = window.metadata["fallback"]

        self._notify("complete", "query", query=text, confidence=confidence, elapsed=total)
        return RAGResponse(
            answer=answer,
            sources=tuple(retrieved),
            context=window,
            confidence=confidence,
            citations=tuple(citations),
            follow_up_questions=tuple(generated.follow_up_questions),
            related_documents=tuple(related),
            metrics=metrics,
            metadata=metadata,
        )

    def _prepare(self, text, options) -> Tuple[str, QueryOptions, SearchOptions, ContextOptions]:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Query must be a non-empty string")
        text = text.strip()
        options = options or QueryOptions()
        if not isinstance(options, QueryOptions):
            raise InvalidInput(f"Expected QueryOptions, got {type(options).__name__}")
        search_options = SearchOptions(
            max_results=options.max_results or self.config.max_retrieved_documents,
            ranking_algorithm=options.ranking_algorithm or self.config.default_ranking_algorithm,
            filters=options.filters,
        )
        context_options = ContextOptions(
            max_tokens=options.max_context_tokens or self.config.max_context_length,
            query=text,
            relevance_strategy=options.relevance_strategy,
            compression_method=options.compression_method,
            prioritize_recency=True,
            include_metadata=True,
            optimize_layout=options.optimize_layout,
        )
        return text, options, search_options, context_options

    def _analyze(self, text: str) -> Dict[str, Any]:
        """Intent, entities and keywords; informational only."""
        return {
            "intent": detect_intent(text),
            "entities": textutil.capitalized_entities(text),
            "keywords": textutil.extract_keywords(text, QUERY_KEYWORDS),
        }

    def _retrieve(self, text: str, search_options: SearchOptions) -> List[SearchResult]:
        turns = self.history.recent(HISTORY_TURNS_FOR_CONTEXT)
        try:
            if turns:
                return self.search_engine.contextual_search(text, turns, search_options)
            return self.search_engine.search(text, search_options)
        except (RetrievalFailed, InvalidInput):
            raise
        except Exception as e:
            raise RetrievalFailed(f"Retrieval failed: {e}", cause=e) from e

    def _build_context(self, retrieved, context_options: ContextOptions) -> ContextWindow:
        try:
            return self.context_builder.build_context(retrieved, context_options)
        except ContextBuildFailed as e:
            logger.warning("Context build failed, continuing with empty context: %s", e)
            return ContextWindow.empty(fallback="empty_context", error=str(e))

    def _history_messages(self) -> Tuple[Dict[str, str], ...]:
        messages = []
        for turn in self.history.recent(HISTORY_TURNS_FOR_CONTEXT):
            messages.append({"role": "user", "content": turn.query})
            messages.append({"role": "assistant", "content": turn.response})
        return tuple(messages)

    def _generation_request(self, text: str, window: ContextWindow,
                            options: QueryOptions) -> GenerationRequest:
        generation = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        generation.update(options.generation)
        return GenerationRequest(
            query=text,
            context=tuple(window.texts()),
            conversation_history=self._history_messages(),
            options={k: v for k, v in generation.items() if v is not None},
        )

    def _generate(self, text: str, window: ContextWindow, options: QueryOptions) -> GeneratedResponse:
        request = self._generation_request(text, window, options)
        try:
            generated = call_with_deadline(self.generator.generate, self.config.generation_timeout, request)
        except Exception as e:
            raise GenerationFailed(f"Generation failed: {e}", cause=e) from e
        if not isinstance(generated, GeneratedResponse):
            raise GenerationFailed(f"Generator returned {type(generated).__name__}, expected GeneratedResponse")
        return generated

    def _reconcile_citations(self, generated: GeneratedResponse,
                             window: ContextWindow) -> Tuple[str, List[Citation]]:
        """Keep only citations that point at a context passage (1-based).

        Out-of-range inline markers are removed from the answer text.
        """
        passages = window.chunks
        count = len(passages)

        def in_range(index):
            return 1 <= index <= count

        def source_of(index):
            chunk = passages[index - 1].chunk
            return chunk.metadata.get("document_source") or chunk.document_id

        answer = CITATION_MARKER.sub(
            lambda m: m.group(0) if in_range(int(m.group(1))) else "", generated.answer)

        citations = []
        seen = set()
        for citation in generated.citations:
            if not in_range(citation.index) or citation.index in seen:
                continue
            seen.add(citation.index)
            citations.append(replace(citation, source=citation.source or source_of(citation.index)))
        for match in CITATION_MARKER.finditer(answer):
            index = int(match.group(1))
            if index in seen:
                continue
            seen.add(index)
            result = passages[index - 1]
            citations.append(Citation(index=index, source=source_of(index),
                                      snippet=result.content[:200], relevance_score=result.score))
        citations.sort(key=lambda c: c.index)
        return answer, citations

    def _related_documents(self, answer: str, retrieved: Sequence[SearchResult]) -> List[SearchResult]:
        """Advisory secondary search on the start of the answer; failures are logged only."""
        snippet = answer[:RELATED_QUERY_CHARS].strip()
        if not snippet:
            return []
        seen = {r.id for r in retrieved}
        try:
            results = self.search_engine.search(snippet, SearchOptions(max_results=RELATED_RESULTS + len(seen)))
        except Exception as e:
            logger.warning("Related document search failed: %s", e)
            return []
        return [r for r in results if r.id not in seen][:RELATED_RESULTS]

    def _degraded(self, text: str, error: Exception, states: List[QueryState],
                  start_time: float) -> RAGResponse:
        total = time.perf_counter() - start_time
        kind = getattr(error, "kind", type(error).__name__)
        failed_at = states[-1]
        states = states + [QueryState.FAILED]
        self._record(total, failed=True)
        logger.warning("Query %r failed after %s: %s", text, failed_at.value, error)
        self._notify("error", "query", query=text, error=str(error), kind=kind)
        return RAGResponse(
            answer=ERROR_ANSWER.format(error=error),
            confidence=0.0,
            metrics=RAGMetrics(total_latency=total),
            metadata={
                "error": str(error),
                "error_kind": kind,
                "failed_after": failed_at.value,
                "states": [s.value for s in states],
                "processing_time": total,
            },
        )

    def _record(self, elapsed: float, failed: bool):
        with self._stats_lock:
            self._stats["total_queries"] += 1
            self._stats["total_response_time"] += elapsed
            if failed:
                self._stats["failed_queries"] += 1

    def stream_query(self, text: str, options: Optional[QueryOptions] = None) -> Iterator[GenerationChunk]:
        """Retrieve and build context, then stream the generator's answer.

        Failures yield a single apology chunk with ``done=True``. The full answer
        is added to the history once the stream completes.
        """
        text, options, search_options, context_options = self._prepare(text, options)
        return self._stream(text, options, search_options, context_options)

    def _stream(self, text, options, search_options, context_options):
        start_time = time.perf_counter()
        parts = []
        try:
            retrieved = self._retrieve(text, search_options)
            window = self._build_context(retrieved, context_options)
            request = self._generation_request(text, window, options)
            for piece in self.generator.generate_stream(request):
                parts.append(piece.content)
                yield piece
        except InvalidInput:
            raise
        except Exception as e:
            error = e if isinstance(e, RAGError) else GenerationFailed(str(e), cause=e)
            self._degraded(text, error, [QueryState.RECEIVED], start_time)
            yield GenerationChunk(content=ERROR_ANSWER.format(error=error), done=True)
            return
        self.history.append(ConversationTurn(query=text, response="".join(parts),
                                             context_chunks=window.chunks))
        self._record(time.perf_counter() - start_time, failed=False)

    # History and statistics

    def get_conversation_history(self, limit: Optional[int] = None) -> List[ConversationTurn]:
        return self.history.recent(limit)

    def clear_conversation_history(self):
        self.history.clear()
        logger.debug("Conversation history cleared")

    def get_statistics(self) -> Dict[str, Any]:
        """Query counters, timing averages, cache statistics and uptime."""
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["total_queries"]
        return {
            "total_queries": total,
            "failed_queries": stats["failed_queries"],
            "error_rate": stats["failed_queries"] / total if total else 0.0,
            "average_response_time": stats["total_response_time"] / total if total else 0.0,
            "conversation_turns": len(self.history),
            "max_conversation_history": self.history.max_turns,
            "cache": self.search_engine.get_cache_stats(),
            "supported_languages": list(textutil.SUPPORTED_LANGUAGES),
            "uptime": time.time() - self._started_at,
        }

    def evaluate_performance(self, test_queries: Iterable[Any]) -> EvaluationReport:
        """Run each test query in order and aggregate quality metrics.

        Items are query strings or dicts with a "query" key. Invalid items are
        collected in ``failures`` instead of aborting the run.
        """
        test_queries = list(test_queries)
        responses = []
        failures = []
        for item in test_queries:
            query = item.get("query") if isinstance(item, dict) else item
            try:
                responses.append(self.query(query))
            except InvalidInput as e:
                failures.append((repr(query), str(e)))

        n = len(responses)

        def mean(values):
            values = list(values)
            return sum(values) / len(values) if values else 0.0

        return EvaluationReport(
            total=len(test_queries),
            completed=n,
            average_confidence=mean(r.confidence for r in responses),
            average_latency=mean(r.metrics.total_latency for r in responses),
            average_relevance=mean(r.metrics.response_relevance for r in responses),
            average_factual_consistency=mean(r.metrics.factual_consistency for r in responses),
            success_rate=sum(1 for r in responses if r.confidence > SUCCESS_CONFIDENCE) / n if n else 0.0,
            hallucination_rate=(sum(1 for r in responses
                                    if r.metrics.factual_consistency < HALLUCINATION_THRESHOLD) / n
                                if n else 0.0),
            responses=tuple(responses),
            failures=tuple(failures),
        )
