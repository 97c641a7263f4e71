"""Pytest configuration and shared fakes.

This adds the repository root to `sys.path` so tests can import
`context_engine.*` regardless of the current working directory, and provides
in-memory stand-ins for the embedder, vector store and generator.
"""
from __future__ import annotations

import hashlib
import math
import sys
from pathlib import Path

import pytest

# Resolve repository root (one level above the tests directory)
REPO_ROOT = Path(__file__).resolve().parents[1]
root_str = str(REPO_ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from context_engine.config import RAGConfig  # noqa: E402
from context_engine.llm.base import Generator  # noqa: E402
from context_engine.rag import text as textutil  # noqa: E402
from context_engine.rag.interfaces import Embedder, VectorStore  # noqa: E402
from context_engine.rag.models import (Chunk, GeneratedResponse, SearchResult,  # noqa: E402
                                       VectorCandidate)

EMBEDDING_DIM = 4096


class HashEmbedder(Embedder):
    """Deterministic bag-of-words embedding: each keyword hashes to one dimension."""

    def __init__(self, dim=EMBEDDING_DIM):
        self.dim = dim
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        vector = [0.0] * self.dim
        for term in textutil.keyword_terms(text):
            slot = int(hashlib.md5(term.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[slot] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


class FailingEmbedder(Embedder):
    def embed(self, text):
        raise ConnectionError("embedding backend unavailable")


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed store scoring by cosine similarity of unit vectors."""

    def __init__(self):
        self.rows = {}
        self.query_calls = 0

    def upsert(self, chunks):
        for chunk in chunks:
            metadata = dict(chunk.metadata)
            metadata.setdefault("document_id", chunk.document_id)
            metadata.setdefault("chunk_index", chunk.index)
            self.rows[chunk.id] = (chunk.content, tuple(chunk.embedding), metadata)

    def delete(self, ids):
        for id in ids:
            self.rows.pop(id, None)

    def get(self, id):
        row = self.rows.get(id)
        if row is None:
            return None
        content, embedding, metadata = row
        return VectorCandidate(id=id, score=1.0, metadata=dict(metadata),
                               content=content, embedding=embedding)

    def query(self, vector, top_k, filter=None, include_metadata=True):
        self.query_calls += 1
        candidates = []
        for id, (content, embedding, metadata) in self.rows.items():
            if filter is not None and not filter.matches(metadata, content):
                continue
            score = 1.0 if vector is None else sum(a * b for a, b in zip(vector, embedding))
            candidates.append(VectorCandidate(id=id, score=score,
                                              metadata=dict(metadata) if include_metadata else {},
                                              content=content, embedding=embedding))
        if vector is not None:
            candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:top_k]


class ScriptedGenerator(Generator):
    """Returns a fixed answer (or raises) and records every request."""

    def __init__(self, answer="The answer [1].", confidence=0.8, error=None):
        self.answer = answer
        self.confidence = confidence
        self.error = error
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return GeneratedResponse(answer=self.answer, confidence=self.confidence,
                                 follow_up_questions=("What else should I know?",))


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_result(id, content, score=1.0, document_id=None, **metadata):
    """A SearchResult around a chunk with the default token estimate."""
    chunk = Chunk(
        id=id,
        document_id=document_id or id.split("#")[0],
        index=0,
        content=content,
        token_estimate=textutil.estimate_tokens(content),
        metadata=metadata,
    )
    return SearchResult(chunk=chunk, score=score)


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture
def store():
    return InMemoryVectorStore()


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def config():
    return RAGConfig(retrieval_timeout=None, generation_timeout=None, stream_delay=0.0,
                     min_chunk_size=0, chunk_size=200, chunk_overlap=20)
