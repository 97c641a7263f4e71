"""Retrieval augmented generation context engine.

Chunks documents, searches them through a pluggable vector store, packs the
best results into a token-budgeted context window and asks a generator for a
cited answer.
"""

from .config import RAGConfig
from .errors import (CacheError, ContextBuildFailed, GenerationFailed, InvalidInput,
                     RAGError, RetrievalFailed)
from .logging_utils import get_logger, setup_logging
from .rag import RAGEngine

__version__ = "0.1.0"

__all__ = [
    'RAGConfig',
    'RAGEngine',
    'RAGError',
    'InvalidInput',
    'RetrievalFailed',
    'ContextBuildFailed',
    'GenerationFailed',
    'CacheError',
    'get_logger',
    'setup_logging',
]
