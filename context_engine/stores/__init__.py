"""Vector store adapters."""

from .chroma import ChromaVectorStore, sanitize_metadata, translate_filter

__all__ = [
    'ChromaVectorStore',
    'sanitize_metadata',
    'translate_filter',
]
