"""Document chunking with selectable splitting strategies."""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ..config import CHUNK_OVERLAP, CHUNK_SIZE, MAX_CHUNK_SIZE, MIN_CHUNK_SIZE
from ..errors import InvalidInput
from ..observer import LifecycleObserver, ObserverMixin
from . import text as textutil
from .models import Chunk, Document, ProcessedDocument


logger = logging.getLogger(__name__)

# Semantic chunking
COHERENCE_THRESHOLD = 0.3
EMPTY_TOPIC_COHERENCE = 0.5
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

# Recursive chunking separators, coarsest first
SEPARATORS = ("\n\n\n", "\n\n", "\n", ". ", " ")

# Ingestion
DOCUMENT_KEYWORDS = 20
DEFAULT_BATCH_CONCURRENCY = 3


class ChunkingStrategy(str, Enum):
    FIXED = "fixed"
    SEMANTIC = "semantic"
    RECURSIVE = "recursive"
    SLIDING = "sliding"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunking parameters.

    Sizes are in characters, except for the sliding strategy where
    ``chunk_size`` and ``chunk_overlap`` count words.
    """
    strategy: ChunkingStrategy = ChunkingStrategy.SEMANTIC
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    min_chunk_size: int = MIN_CHUNK_SIZE
    max_chunk_size: int = MAX_CHUNK_SIZE

    def __post_init__(self):
        try:
            object.__setattr__(self, "strategy", ChunkingStrategy(self.strategy))
        except ValueError as e:
            raise InvalidInput(f"Unknown chunking strategy: {self.strategy!r}") from e
        if self.chunk_size <= 0 or self.max_chunk_size <= 0:
            raise InvalidInput("chunk_size and max_chunk_size must be positive")
        if self.chunk_overlap < 0 or self.min_chunk_size < 0:
            raise InvalidInput("chunk_overlap and min_chunk_size must not be negative")


class DocumentChunker(ObserverMixin):
    """Splits documents into chunks and extracts lightweight metadata."""

    def __init__(self, observer: Optional[LifecycleObserver] = None,
                 token_estimator: Optional[Callable[[str], int]] = None):
        self.observer = observer or LifecycleObserver()
        self.estimate_tokens = token_estimator or textutil.estimate_tokens
        self._strategies = {
            ChunkingStrategy.FIXED: self._fixed_chunks,
            ChunkingStrategy.SEMANTIC: self._semantic_chunks,
            ChunkingStrategy.RECURSIVE: self._recursive_chunks,
            ChunkingStrategy.SLIDING: self._sliding_chunks,
            ChunkingStrategy.HYBRID: self._hybrid_chunks,
        }

    def chunk(self, document: Document, options: Optional[ChunkingOptions] = None) -> List[Chunk]:
        """Split a document into chunks.

        Args:
            document: Document to split
            options: Strategy and sizes (defaults to semantic, 1000/200/200/2000)

        Returns:
            Chunks with contiguous indices starting at 0

        Raises:
            InvalidInput: If the document is malformed
        """
        if not isinstance(document, Document) or not isinstance(document.content, str):
            raise InvalidInput("chunk() expects a Document with string content")
        options = options or ChunkingOptions()

        self._notify("start", "chunk", document_id=document.id, strategy=options.strategy.value)
        try:
            pieces = self._strategies[options.strategy](document.content, options)
            pieces = [p.strip() for p in pieces if p and p.strip()]
            chunks = self._build_chunks(document, pieces)
        except Exception as e:
            self._notify("error", "chunk", document_id=document.id, error=str(e))
            raise
        self._notify("complete", "chunk", document_id=document.id, chunk_count=len(chunks))
        return chunks

    def _build_chunks(self, document: Document, pieces: Sequence[str]) -> List[Chunk]:
        base = dict(document.metadata)
        base.setdefault("language", textutil.detect_language(document.content))
        base.setdefault("type", textutil.detect_document_type(document.content))
        base.update({
            "document_id": document.id,
            "document_title": document.title,
            "document_source": document.source,
            "created_at": document.created_at.isoformat(),
            "total_chunks": len(pieces),
        })
        chunks = []
        for index, content in enumerate(pieces):
            metadata = dict(base)
            metadata["chunk_index"] = index
            metadata["chunk_length"] = len(content)
            chunks.append(Chunk(
                id=f"{document.id}#{index}",
                document_id=document.id,
                index=index,
                content=content,
                token_estimate=self.estimate_tokens(content),
                metadata=metadata,
            ))
        return chunks

    # Strategies return raw text pieces; _build_chunks strips and numbers them.

    def _fixed_chunks(self, content: str, options: ChunkingOptions) -> List[str]:
        pieces = []
        current = ""
        for sentence in textutil.split_sentences(content):
            if current and len(current) + 1 + len(sentence) > options.chunk_size \
                    and len(current) > options.min_chunk_size:
                pieces.append(current)
                current = sentence
            else:
                current = f"{current} {sentence}" if current else sentence
        if current.strip():
            pieces.append(current)
        return pieces

    def _semantic_chunks(self, content: str, options: ChunkingOptions) -> List[str]:
        """Merge paragraphs while their topics stay coherent.

        Coherence is the Jaccard overlap of topic words, a cheap heuristic
        rather than a measure of meaning.
        """
        pieces = []
        current = ""
        current_topic: List[str] = []
        for paragraph in PARAGRAPH_BREAK.split(content):
            if not paragraph.strip():
                continue
            topic = textutil.extract_topic(paragraph)
            if not current:
                current, current_topic = paragraph, topic
                continue
            coherence = self._coherence(current_topic, topic)
            if (coherence < COHERENCE_THRESHOLD or len(current) >= options.chunk_size) \
                    and len(current) > options.min_chunk_size:
                pieces.append(current)
                current, current_topic = paragraph, topic
            else:
                current = f"{current}\n\n{paragraph}"
                if not current_topic:
                    current_topic = topic
        if current.strip():
            pieces.append(current)
        return pieces

    @staticmethod
    def _coherence(topic_a: List[str], topic_b: List[str]) -> float:
        if not topic_a or not topic_b:
            return EMPTY_TOPIC_COHERENCE
        return textutil.jaccard(topic_a, topic_b)

    def _recursive_chunks(self, content: str, options: ChunkingOptions) -> List[str]:
        return self._split_recursive(content, options.chunk_size, 0)

    def _split_recursive(self, content: str, chunk_size: int, level: int) -> List[str]:
        if len(content) <= chunk_size or level >= len(SEPARATORS):
            return [content]

        separator = SEPARATORS[level]
        parts = content.split(separator)
        # Keep each separator attached to the piece before it so nothing is lost
        pieces = [p + separator for p in parts[:-1]] + [parts[-1]]
        pieces = [p for p in pieces if p]
        if len(pieces) <= 1:
            return self._split_recursive(content, chunk_size, level + 1)

        merged = []
        current = ""
        for piece in pieces:
            if current and len(current) + len(piece) > chunk_size:
                merged.append(current)
                current = piece
            else:
                current += piece
        if current:
            merged.append(current)

        result = []
        for piece in merged:
            if len(piece) > chunk_size:
                result.extend(self._split_recursive(piece, chunk_size, level + 1))
            else:
                result.append(piece)
        return result

    def _sliding_chunks(self, content: str, options: ChunkingOptions) -> List[str]:
        words = content.split()
        if not words:
            return []
        step = max(1, options.chunk_size - options.chunk_overlap)
        pieces = []
        covered = 0  # words [0, covered) already emitted
        for start in range(0, len(words), step):
            end = min(start + options.chunk_size, len(words))
            window = " ".join(words[start:end])
            is_last = end >= len(words)
            # A short tail window is still emitted if it carries uncovered words
            if len(window) >= options.min_chunk_size or (is_last and end > covered):
                pieces.append(window)
                covered = end
            if is_last:
                break
        return pieces

    def _hybrid_chunks(self, content: str, options: ChunkingOptions) -> List[str]:
        pieces = []
        for piece in self._semantic_chunks(content, options):
            if len(piece.strip()) > options.max_chunk_size:
                pieces.extend(self._fixed_chunks(piece, options))
            else:
                pieces.append(piece)
        return pieces

    def extract_keywords(self, text: str, limit: int = 10) -> List[str]:
        """Top keywords by frequency; stop-word filtered, approximate."""
        return textutil.extract_keywords(text, limit)

    def extract_entities(self, text: str):
        """Regex-detected emails, URLs and phone numbers. Not a real NER model."""
        return textutil.extract_entities(text)

    def process_document(self, document: Document,
                         options: Optional[ChunkingOptions] = None) -> ProcessedDocument:
        """Chunk a document and collect its entities, keywords and statistics.

        Failures are captured in the returned ProcessedDocument instead of raised.
        """
        start_time = time.perf_counter()
        try:
            chunks = self.chunk(document, options)
            entities = textutil.extract_entities(document.content)
            keywords = textutil.extract_keywords(document.content, DOCUMENT_KEYWORDS)
        except Exception as e:
            logger.warning("Failed to process document %s: %s",
                           getattr(document, "id", "<unknown>"), e)
            return ProcessedDocument(
                document=document,
                statistics=textutil.text_statistics([]),
                processing_time=time.perf_counter() - start_time,
                success=False,
                errors=(str(e),),
            )

        return ProcessedDocument(
            document=document,
            chunks=tuple(chunks),
            entities=tuple(entities),
            keywords=tuple(keywords),
            statistics=textutil.text_statistics([len(c.content) for c in chunks]),
            processing_time=time.perf_counter() - start_time,
        )

    def process_batch(self, documents: Sequence[Document],
                      options: Optional[ChunkingOptions] = None,
                      concurrency: int = DEFAULT_BATCH_CONCURRENCY,
                      on_progress: Optional[Callable[[int, int], None]] = None) -> List[ProcessedDocument]:
        """Process documents in groups of ``concurrency``.

        Results come back in input order. ``on_progress(completed, total)`` is
        called after each group finishes.
        """
        if concurrency <= 0:
            raise InvalidInput(f"concurrency must be positive, got {concurrency}")
        documents = list(documents)
        total = len(documents)
        results: List[ProcessedDocument] = []

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="chunker") as executor:
            for offset in range(0, total, concurrency):
                group = documents[offset:offset + concurrency]
                results.extend(executor.map(lambda d: self.process_document(d, options), group))
                completed = min(offset + concurrency, total)
                if on_progress is not None:
                    try:
                        on_progress(completed, total)
                    except Exception as e:
                        logger.warning("Progress callback raised: %s", e)

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.info("Processed %d documents, %d failed", total, failed)
        return results
