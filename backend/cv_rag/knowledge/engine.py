"""Context engine: the surface the chat handler and re-index endpoint call.

Wires the document index, exact-match lookup, retriever and expansion
controller together around one shared, injectable index.
"""

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from cv_rag.core.config import Settings, get_settings
from cv_rag.knowledge.cache import CacheStore, EmbeddingCache, build_cache_store
from cv_rag.knowledge.embeddings import (
    EmbeddingAdapter,
    EmbeddingProvider,
    build_embedding_provider,
)
from cv_rag.knowledge.exact_match import ExactMatcher, exact_match_result
from cv_rag.knowledge.expansion import QueryExpansionController, extract_previous_context
from cv_rag.knowledge.index import DocumentIndex
from cv_rag.knowledge.loader import build_documents, load_cv_data, load_knowledge_entries
from cv_rag.knowledge.models import (
    ContextSelection,
    EmbeddingStatus,
    ExactMatch,
    KnowledgeEntry,
    PreviousContext,
    RetrievalResult,
    RetrievalResultSet,
)
from cv_rag.knowledge.retriever import KnowledgeRetriever, format_all_context, format_context
from cv_rag.observability import MetricsBackend, expansion_headers, get_metrics_backend

logger = logging.getLogger(__name__)

# Global engine instance
_engine_instance: "ContextEngine | None" = None

_UNSET: Any = object()


class ContextEngine:
    """Selects the supporting context for questions about the knowledge base."""

    def __init__(
        self,
        entries: Iterable[KnowledgeEntry],
        settings: Settings | None = None,
        provider: Optional[EmbeddingProvider] = _UNSET,
        cache_store: Optional[CacheStore] = _UNSET,
        metrics: MetricsBackend | None = None,
        cv_data: Any = None,
    ) -> None:
        """Build the engine.

        Args:
            entries: Knowledge base entries.
            settings: Settings to use (defaults to ``get_settings()``).
            provider: Embedding provider; defaults to the one configured in
                settings. Pass None explicitly for an unconfigured provider.
            cache_store: Embedding cache store; defaults to the configured
                backend. Pass None to run without a cache.
            metrics: Metrics backend (defaults to the global backend).
            cv_data: Optional whole-CV document for ``format_all_context``.
        """
        self.settings = settings or get_settings()
        self.entries = list(entries)
        self.metrics = metrics if metrics is not None else get_metrics_backend()
        self.cv_data = cv_data

        if provider is _UNSET:
            provider = build_embedding_provider(self.settings)
        if cache_store is _UNSET:
            cache_store = build_cache_store(self.settings)

        adapter = EmbeddingAdapter(
            provider,
            batch_size=self.settings.embedding_batch_size,
            fallback_dim=self.settings.embedding_fallback_dim,
            timeout_seconds=self.settings.embedding_timeout_seconds,
            metrics=self.metrics,
        )
        cache = EmbeddingCache(
            cache_store,
            prefix=self.settings.embedding_cache_prefix,
            metrics=self.metrics,
        )
        documents = build_documents(
            self.entries,
            chunk_tokens=self.settings.rag_chunk_tokens,
            overlap_tokens=self.settings.rag_chunk_overlap_tokens,
        )

        self.index = DocumentIndex(documents, adapter, cache)
        self.matcher = ExactMatcher(self.entries, metrics=self.metrics)
        self.retriever = KnowledgeRetriever(
            self.index,
            min_score=self.settings.rag_min_score,
            max_results=self.settings.rag_max_results,
        )
        self.expansion = QueryExpansionController(
            self.retriever,
            weak_score_buffer=self.settings.rag_weak_score_buffer,
            short_message_len=self.settings.rag_short_message_len,
            metrics=self.metrics,
        )

    @property
    def document_count(self) -> int:
        return len(self.index)

    async def find_exact_match(self, question: str) -> Optional[ExactMatch]:
        return await self.matcher.find_exact_match(question)

    async def retrieve(self, query: str) -> list[RetrievalResult]:
        """Single-pass retrieval without expansion."""
        return await self.retriever.retrieve(query)

    async def search(
        self,
        query: str,
        previous: PreviousContext | None = None,
    ) -> RetrievalResultSet:
        """Retrieval with conversational query expansion."""
        return await self.expansion.search(query, previous)

    async def prepare_embeddings(self, force: bool = False) -> EmbeddingStatus:
        return await self.index.prepare_embeddings(force=force)

    async def get_embedding_status(self) -> EmbeddingStatus:
        return await self.index.get_embedding_status()

    async def clear_embeddings(self) -> None:
        await self.index.clear_embeddings()

    def format_context(self, results: Sequence[RetrievalResult]) -> str:
        return format_context(results)

    def format_all_context(self) -> str:
        return format_all_context(self.cv_data)

    async def build_context(
        self,
        question: str,
        messages: Sequence[Mapping[str, Any]] | None = None,
    ) -> ContextSelection:
        """Select the context for the latest question of a conversation.

        Exact matches short-circuit retrieval. A verbatim match is returned
        as the final ``answer`` and carries no context for the model.

        Raises:
            EmbeddingProviderNotConfiguredError: If retrieval is needed and
                no provider is bound.
        """
        match = await self.find_exact_match(question)
        if match is not None and match.verbatim:
            results = RetrievalResultSet()
            return ContextSelection(
                answer=match.context,
                verbatim=True,
                exact_match=True,
                results=results,
                headers=expansion_headers(results, exact_match=True),
            )

        if match is not None:
            results = RetrievalResultSet(results=[exact_match_result(match)])
            return ContextSelection(
                exact_match=True,
                results=results,
                context=match.context,
                headers=expansion_headers(results, exact_match=True),
            )

        previous = extract_previous_context(
            messages or [],
            max_summary_chars=self.settings.rag_summary_max_chars,
        )
        results = await self.search(question, previous)
        return ContextSelection(
            results=results,
            context=format_context(results.results),
            headers=expansion_headers(results),
        )


def create_context_engine(
    settings: Settings | None = None,
    knowledge_base_path: Path | None = None,
    **kwargs: Any,
) -> ContextEngine:
    """Load the knowledge base from disk and build an engine."""
    settings = settings or get_settings()
    path = knowledge_base_path or settings.knowledge_base_path
    entries = load_knowledge_entries(Path(path))
    cv_data = kwargs.pop("cv_data", None) or load_cv_data(settings.cv_data_path)
    return ContextEngine(entries, settings=settings, cv_data=cv_data, **kwargs)


def initialize_context_engine(
    settings: Settings | None = None,
    knowledge_base_path: Path | None = None,
    **kwargs: Any,
) -> ContextEngine:
    """Initialize the global context engine.

    Should be called during application startup.
    """
    global _engine_instance

    _engine_instance = create_context_engine(settings, knowledge_base_path, **kwargs)
    logger.info(
        f"Context engine initialized: {len(_engine_instance.entries)} entries, "
        f"{_engine_instance.document_count} documents"
    )
    return _engine_instance


def get_context_engine() -> ContextEngine | None:
    """Get the global context engine instance.

    Returns:
        The initialized engine, or None if not initialized.
    """
    return _engine_instance
