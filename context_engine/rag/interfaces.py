"""Interfaces for the external collaborators the pipeline depends on."""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .filters import FilterExpression
from .models import Chunk, VectorCandidate


class Embedder(ABC):
    """Turns text into vectors. Must be deterministic for identical input."""

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts. Override when the backend supports batching."""
        return [self.embed(t) for t in texts]


class VectorStore(ABC):
    """Persists chunk vectors and answers similarity queries."""

    @abstractmethod
    def query(self, vector: Optional[Sequence[float]], top_k: int,
              filter: Optional[FilterExpression] = None,
              include_metadata: bool = True) -> List[VectorCandidate]:
        """Return up to ``top_k`` candidates ordered by similarity.

        Args:
            vector: Query embedding, or None for a filter-only scan
            top_k: Maximum number of candidates
            filter: Optional AND/OR/NOT filter tree
            include_metadata: Whether candidates carry metadata

        Returns:
            Candidates with their raw similarity score (higher is better)
        """

    @abstractmethod
    def upsert(self, chunks: Sequence[Chunk]):
        """Insert or replace chunks. Each chunk must carry an embedding."""

    @abstractmethod
    def delete(self, ids: Sequence[str]):
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[VectorCandidate]:
        """Fetch one stored chunk (with its embedding), or None if unknown."""


class Summarizer(ABC):
    """Shortens chunk text for the summarization compression method."""

    @abstractmethod
    def summarize(self, text: str, max_chars: int) -> str:
        pass


class TruncatingSummarizer(Summarizer):
    """Placeholder summarizer: cuts text to ``max_chars`` and appends a marker."""

    marker = "... [summarized]"

    def summarize(self, text, max_chars):
        if len(text) <= max_chars:
            return text
        return text[:max_chars] + self.marker
