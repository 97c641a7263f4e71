"""Engine configuration with environment overrides."""

import os
from dataclasses import dataclass, fields
from typing import Optional

from .errors import InvalidInput


# Retrieval settings
MAX_RETRIEVED_DOCUMENTS = 10
DEFAULT_RANKING_ALGORITHM = "semantic"

# Context / history settings
MAX_CONTEXT_LENGTH = 4000
MAX_CONVERSATION_HISTORY = 10

# Cache settings
CACHE_TTL_SECONDS = 300  # 5 minutes
CACHE_MAX_SIZE = 1000

# Chunking settings
CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200
MIN_CHUNK_SIZE = 200
MAX_CHUNK_SIZE = 2000
DEFAULT_CHUNKING_STRATEGY = "semantic"

# Deadlines (seconds)
RETRIEVAL_TIMEOUT = 30.0
GENERATION_TIMEOUT = 120.0

# Delay between streamed search batches (seconds)
STREAM_DELAY = 0.1

ENV_PREFIX = "CONTEXT_ENGINE_"


@dataclass
class RAGConfig:
    """Settings shared by the search engine, context builder and RAG engine.

    Attributes:
        max_retrieved_documents: Results requested per query
        max_context_length: Token budget for the context window
        max_conversation_history: Turns kept before the oldest is evicted
        cache_ttl: Seconds a cached search result stays valid
        cache_max_size: Entries kept before FIFO eviction
        retrieval_timeout: Deadline for embedder/vector store calls, None disables
        generation_timeout: Deadline for generator calls, None disables
    """
    max_retrieved_documents: int = MAX_RETRIEVED_DOCUMENTS
    default_ranking_algorithm: str = DEFAULT_RANKING_ALGORITHM
    max_context_length: int = MAX_CONTEXT_LENGTH
    max_conversation_history: int = MAX_CONVERSATION_HISTORY
    cache_ttl: float = CACHE_TTL_SECONDS
    cache_max_size: int = CACHE_MAX_SIZE
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    min_chunk_size: int = MIN_CHUNK_SIZE
    max_chunk_size: int = MAX_CHUNK_SIZE
    chunking_strategy: str = DEFAULT_CHUNKING_STRATEGY
    retrieval_timeout: Optional[float] = RETRIEVAL_TIMEOUT
    generation_timeout: Optional[float] = GENERATION_TIMEOUT
    stream_delay: float = STREAM_DELAY
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000

    def __post_init__(self):
        positive = ("max_retrieved_documents", "max_context_length", "max_conversation_history",
                    "cache_ttl", "cache_max_size", "chunk_size", "max_chunk_size", "max_tokens")
        for name in positive:
            if getattr(self, name) <= 0:
                raise InvalidInput(f"{name} must be positive, got {getattr(self, name)!r}")
        for name in ("chunk_overlap", "min_chunk_size", "stream_delay"):
            if getattr(self, name) < 0:
                raise InvalidInput(f"{name} must not be negative, got {getattr(self, name)!r}")
        for name in ("retrieval_timeout", "generation_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise InvalidInput(f"{name} must be positive or None, got {value!r}")
        if not 0.0 <= self.temperature <= 2.0:
            raise InvalidInput(f"temperature must be within [0, 2], got {self.temperature!r}")
        if self.min_chunk_size > self.max_chunk_size:
            raise InvalidInput("min_chunk_size must not exceed max_chunk_size")

    @classmethod
    def from_env(cls, **overrides) -> "RAGConfig":
        """Build a config from CONTEXT_ENGINE_* variables.

        Keyword overrides win over the environment. A timeout variable set to
        "none" or "0" disables that deadline.
        """
        values = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw, f.type)
        values.update(overrides)
        return cls(**values)


def _coerce(name, raw, kind):
    if name in ("retrieval_timeout", "generation_timeout"):
        if raw.strip().lower() in ("none", "off", "0"):
            return None
        return _parse(name, raw, float)
    if kind in (int, float):
        return _parse(name, raw, kind)
    return raw


def _parse(name, raw, kind):
    try:
        return kind(raw)
    except ValueError as e:
        raise InvalidInput(f"{ENV_PREFIX}{name.upper()}={raw!r} is not a valid {kind.__name__}") from e
