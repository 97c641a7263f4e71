"""RAG (Retrieval Augmented Generation) core: chunking, search, context and orchestration.

Main classes:
    RAGEngine: Orchestrates retrieval, context building and generation
    DocumentChunker: Splits documents with one of five chunking strategies
    SearchEngine: Vector search with ranking, fusion, filters and caching
    ContextBuilder: Packs ranked chunks into a token-budgeted context window
    QueryCache: TTL cache for search results with a background sweeper
    SimpleBM25: Keyword scoring using the BM25 algorithm
    ConversationHistory: Bounded, thread-safe record of recent turns
"""

from .engine import QueryOptions, QueryState, RAGEngine
from .chunking import ChunkingOptions, ChunkingStrategy, DocumentChunker
from .search import SearchEngine, SearchOptions
from .context import (CompressionMethod, ContextBuilder, ContextOptions, DecayFunction,
                      RelevanceStrategy, Section)
from .cache import QueryCache
from .ranking import FusionMethod, RankingAlgorithm, SimpleBM25
from .filters import FilterCondition, FilterExpression, LogicalOperator, SearchFilters
from .history import ConversationHistory
from .interfaces import Embedder, Summarizer, TruncatingSummarizer, VectorStore
from .models import (Chunk, Citation, ContextWindow, ConversationTurn, Document,
                     EvaluationReport, GeneratedResponse, GenerationChunk, ProcessedDocument,
                     RAGMetrics, RAGResponse, SearchResult, VectorCandidate)

__all__ = [
    'RAGEngine',
    'QueryOptions',
    'QueryState',
    'DocumentChunker',
    'ChunkingOptions',
    'ChunkingStrategy',
    'SearchEngine',
    'SearchOptions',
    'ContextBuilder',
    'ContextOptions',
    'RelevanceStrategy',
    'CompressionMethod',
    'DecayFunction',
    'Section',
    'QueryCache',
    'SimpleBM25',
    'RankingAlgorithm',
    'FusionMethod',
    'FilterCondition',
    'FilterExpression',
    'LogicalOperator',
    'SearchFilters',
    'ConversationHistory',
    'Embedder',
    'VectorStore',
    'Summarizer',
    'TruncatingSummarizer',
    'Document',
    'Chunk',
    'SearchResult',
    'VectorCandidate',
    'ContextWindow',
    'ConversationTurn',
    'ProcessedDocument',
    'Citation',
    'GeneratedResponse',
    'GenerationChunk',
    'RAGMetrics',
    'RAGResponse',
    'EvaluationReport',
]
