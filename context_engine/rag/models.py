"""Data models passed between the chunker, search engine, context builder and RAG engine.

All models are frozen dataclasses. Stages that need a changed value (a
truncated chunk, a re-ranked result) build a new one with
``dataclasses.replace`` instead of mutating the original.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_datetime(value) -> Optional[datetime]:
    """Parse a datetime, ISO string or epoch number into an aware datetime.

    Returns None for missing or unparseable values so callers can treat the
    item as undated.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Document:
    """A source document prior to chunking.

    Attributes:
        id: Stable document identifier
        content: Full text
        title: Human readable title
        source: Origin (path, URL, ...)
        metadata: language, type, tags and any custom keys
    """
    id: str
    content: str
    title: str = ""
    source: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Chunk:
    """A bounded fragment of one document."""
    id: str
    document_id: str
    index: int
    content: str
    token_estimate: int
    embedding: Optional[Tuple[float, ...]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def created_at(self) -> Optional[datetime]:
        return coerce_datetime(self.metadata.get("created_at"))


@dataclass(frozen=True)
class SearchResult:
    """A chunk with its algorithm-specific score and 1-based rank.

    ``timestamp`` records retrieval time and is never persisted.
    """
    chunk: Chunk
    score: float
    rank: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.chunk.id

    @property
    def content(self) -> str:
        return self.chunk.content

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.chunk.metadata


@dataclass(frozen=True)
class VectorCandidate:
    """A raw row returned by a VectorStore query."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    content: str = ""
    embedding: Optional[Tuple[float, ...]] = None

    def to_chunk(self, token_estimate: int) -> Chunk:
        meta = dict(self.metadata)
        index = meta.get("chunk_index", 0)
        try:
            index = int(index)
        except (TypeError, ValueError):
            index = 0
        return Chunk(
            id=self.id,
            document_id=str(meta.get("document_id", "")),
            index=index,
            content=self.content,
            token_estimate=token_estimate,
            embedding=tuple(self.embedding) if self.embedding is not None else None,
            metadata=meta,
        )


@dataclass(frozen=True)
class ContextWindow:
    """The token-bounded set of results handed to the generator."""
    chunks: Tuple[SearchResult, ...]
    total_tokens: int
    total_length: int
    compression_ratio: float
    relevance_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    def texts(self) -> List[str]:
        return [r.content for r in self.chunks]

    @classmethod
    def empty(cls, **metadata) -> "ContextWindow":
        return cls(chunks=(), total_tokens=0, total_length=0,
                   compression_ratio=1.0, relevance_score=0.0, metadata=metadata)


@dataclass(frozen=True)
class ConversationTurn:
    query: str
    response: str
    context_chunks: Tuple[SearchResult, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Entity:
    """A regex-detected entity and its character span."""
    text: str
    type: str
    confidence: float
    start: int
    end: int


@dataclass(frozen=True)
class ProcessedDocument:
    """Result of running one document through the ingestion pipeline.

    ``success`` is False when chunking raised; ``errors`` then holds the
    message and ``chunks`` is empty.
    """
    document: Document
    chunks: Tuple[Chunk, ...] = ()
    entities: Tuple[Entity, ...] = ()
    keywords: Tuple[str, ...] = ()
    statistics: Dict[str, Any] = field(default_factory=dict)
    processing_time: float = 0.0
    success: bool = True
    errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Citation:
    """A reference from the answer back to a numbered context passage (1-based)."""
    index: int
    source: str = ""
    snippet: str = ""
    relevance_score: float = 0.0


@dataclass(frozen=True)
class GenerationChunk:
    content: str
    done: bool = False


@dataclass(frozen=True)
class GeneratedResponse:
    answer: str
    confidence: float = 0.0
    citations: Tuple[Citation, ...] = ()
    follow_up_questions: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RAGMetrics:
    """Per-query quality metrics.

    Latencies are in seconds. retrieval_latency and generation_latency are
    fixed fractions of total_latency (0.3 and 0.6), not measured sub-timings.
    """
    retrieval_latency: float = 0.0
    generation_latency: float = 0.0
    total_latency: float = 0.0
    context_utilization: float = 0.0
    response_relevance: float = 0.0
    hallucination_score: float = 0.0
    factual_consistency: float = 0.0


@dataclass(frozen=True)
class RAGResponse:
    answer: str
    sources: Tuple[SearchResult, ...] = ()
    context: Optional[ContextWindow] = None
    confidence: float = 0.0
    citations: Tuple[Citation, ...] = ()
    follow_up_questions: Tuple[str, ...] = ()
    related_documents: Tuple[SearchResult, ...] = ()
    metrics: RAGMetrics = field(default_factory=RAGMetrics)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return "error" in self.metadata


@dataclass(frozen=True)
class EvaluationReport:
    """Aggregates from :meth:`RAGEngine.evaluate_performance`."""
    total: int
    completed: int
    average_confidence: float
    average_latency: float
    average_relevance: float
    average_factual_consistency: float
    success_rate: float
    hallucination_rate: float
    responses: Tuple[RAGResponse, ...] = ()
    failures: Tuple[Tuple[str, str], ...] = ()
