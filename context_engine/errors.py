"""Error taxonomy shared by every pipeline stage.

InvalidInput is raised straight back to the caller. RetrievalFailed and
GenerationFailed are converted by RAGEngine into a degraded response.
ContextBuildFailed falls back to an empty context. CacheError is logged and
the cache is bypassed.
"""


class RAGError(Exception):
    """Base class for all context engine errors."""

    kind = "rag_error"

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self):
        return self.message


class InvalidInput(RAGError, ValueError):
    """Malformed query or options, rejected before any backend call."""

    kind = "invalid_input"


class RetrievalFailed(RAGError):
    """Embedder or vector store error or timeout."""

    kind = "retrieval_failed"


class ContextBuildFailed(RAGError):
    kind = "context_build_failed"


class GenerationFailed(RAGError):
    """Generator error or timeout."""

    kind = "generation_failed"


class CacheError(RAGError):
    kind = "cache_error"
