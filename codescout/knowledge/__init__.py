"""Knowledge layer - chunking, embeddings, indexing, storage, and search.

Provides the pieces behind CodeSearchService:
- Chunkers: split source files into line-anchored chunks (smart, AST, line)
- Embeddings: text to vector conversion, in-process or in worker processes
- Indexer: incremental workspace indexing with change detection
- Store: SQLite persistence for vectors and file hashes
- Search: hybrid semantic + lexical ranking

Usage:
    from codescout.knowledge import CodebaseIndexer, HybridSearch, VectorStore

Dependencies:
    Required: sentence-transformers, numpy, watchdog, tree-sitter-language-pack
    Optional: ollama
"""

from codescout.knowledge.chunker import (
    Chunker,
    LineChunker,
    SmartChunker,
    get_chunker,
    line_chunk,
    smart_chunk,
)
from codescout.knowledge.embeddings import (
    EmbeddingConfig,
    EmbeddingProvider,
    EmbeddingProviderType,
    OllamaEmbeddings,
    SentenceTransformersEmbeddings,
    create_embedding_provider,
)
from codescout.knowledge.indexer import CodebaseIndexer, IndexRunResult
from codescout.knowledge.orchestrator import EmbeddingOrchestrator
from codescout.knowledge.search import HybridSearch, SearchResult, cosine_similarity
from codescout.knowledge.store import VectorStore
from codescout.knowledge.throttle import ResourceThrottle
from codescout.knowledge.tokenizer import ChunkingParams, estimate_tokens, get_chunking_params
from codescout.knowledge.types import (
    ChunkKey,
    ChunkSpan,
    EmbeddedChunk,
    IndexingStatus,
    PendingChunk,
    StoredChunk,
)

__all__ = [
    # Chunking
    "Chunker",
    "LineChunker",
    "SmartChunker",
    "get_chunker",
    "line_chunk",
    "smart_chunk",
    "ChunkingParams",
    "estimate_tokens",
    "get_chunking_params",
    # Embeddings
    "EmbeddingConfig",
    "EmbeddingProvider",
    "EmbeddingProviderType",
    "OllamaEmbeddings",
    "SentenceTransformersEmbeddings",
    "create_embedding_provider",
    "EmbeddingOrchestrator",
    "ResourceThrottle",
    # Indexing and storage
    "CodebaseIndexer",
    "IndexRunResult",
    "VectorStore",
    # Search
    "HybridSearch",
    "SearchResult",
    "cosine_similarity",
    # Types
    "ChunkKey",
    "ChunkSpan",
    "EmbeddedChunk",
    "IndexingStatus",
    "PendingChunk",
    "StoredChunk",
]
