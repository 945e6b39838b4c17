"""Knowledge base module for retrieval-augmented chat.

This module builds the document index of the CV question/answer corpus,
matches questions exactly, embeds and caches documents, and retrieves the
context a chat answer may use.
"""

from cv_rag.knowledge.engine import (
    ContextEngine,
    create_context_engine,
    get_context_engine,
    initialize_context_engine,
)
from cv_rag.knowledge.errors import (
    EmbeddingProviderError,
    EmbeddingProviderNotConfiguredError,
    KnowledgeBaseLoadError,
    KnowledgeError,
)
from cv_rag.knowledge.models import (
    ContextSelection,
    EmbeddingStatus,
    ExactMatch,
    ExpansionMetadata,
    KnowledgeEntry,
    PreviousContext,
    RetrievalResult,
    RetrievalResultSet,
)

__all__ = [
    "ContextEngine",
    "ContextSelection",
    "EmbeddingProviderError",
    "EmbeddingProviderNotConfiguredError",
    "EmbeddingStatus",
    "ExactMatch",
    "ExpansionMetadata",
    "KnowledgeBaseLoadError",
    "KnowledgeEntry",
    "KnowledgeError",
    "PreviousContext",
    "RetrievalResult",
    "RetrievalResultSet",
    "create_context_engine",
    "get_context_engine",
    "initialize_context_engine",
]
