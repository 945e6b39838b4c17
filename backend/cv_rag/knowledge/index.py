"""Document index with lazily computed, cached embeddings."""

import asyncio
import logging
import time
from typing import Iterable, Sequence

from cv_rag.knowledge.cache import EmbeddingCache
from cv_rag.knowledge.embeddings import EmbeddingAdapter
from cv_rag.knowledge.models import Document, DocumentStatus, EmbeddingStatus

logger = logging.getLogger(__name__)


class DocumentIndex:
    """The fixed document list of the knowledge base and its embeddings.

    Built once at startup and shared by every request. Scoring only reads
    ``(document, embedding)`` snapshots. Filling missing embeddings is
    single-flight: concurrent callers await the same in-flight fill.
    """

    def __init__(
        self,
        documents: Iterable[Document],
        adapter: EmbeddingAdapter,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self._documents: tuple[Document, ...] = tuple(documents)
        self.adapter = adapter
        self.cache = cache or EmbeddingCache(None)
        self._fill_task: asyncio.Task[int] | None = None
        self._lock = asyncio.Lock()

    @property
    def documents(self) -> Sequence[Document]:
        return self._documents

    @property
    def is_empty(self) -> bool:
        return not self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def pending_documents(self) -> list[Document]:
        return [doc for doc in self._documents if not doc.embedding]

    def embedded_documents(self) -> list[tuple[Document, list[float]]]:
        """Snapshot of documents that currently have an embedding."""
        snapshot = []
        for doc in self._documents:
            embedding = doc.embedding
            if embedding:
                snapshot.append((doc, embedding))
        return snapshot

    async def hydrate_from_cache(self) -> int:
        """Load cached embeddings for documents that have none.

        Returns:
            Number of documents hydrated from the cache.
        """
        if not self.cache.enabled:
            return 0

        hydrated = 0
        for doc in self._documents:
            if doc.embedding:
                continue
            if await self.cache.hydrate(doc):
                hydrated += 1
        return hydrated

    async def clear_embeddings(self) -> None:
        """Drop every in-memory embedding and delete every cache entry."""
        if self.cache.enabled:
            await asyncio.gather(*(self.cache.delete(doc.id) for doc in self._documents))
        for doc in self._documents:
            doc.embedding = None

    async def ensure_embeddings(self, force: bool = False) -> int:
        """Make sure every document has an embedding.

        Missing vectors are taken from the cache when its content hash still
        matches, and otherwise computed in batches. Each batch is persisted
        as soon as it is computed. A call made while a fill is running joins
        it instead of starting a second one; a forced call waits for the
        running fill and then rebuilds.

        Args:
            force: Clear all cached embeddings first and recompute everything.

        Returns:
            Number of documents whose embeddings were computed.

        Raises:
            EmbeddingProviderNotConfiguredError: If no provider is bound.
        """
        self.adapter.ensure_configured()

        if not force and not self.pending_documents():
            return 0

        while True:
            async with self._lock:
                task = self._fill_task
                if task is None or task.done():
                    task = asyncio.create_task(self._fill(force))
                    self._fill_task = task
                    break
                if not force:
                    break
            # A forced rebuild must not interleave with a running fill
            await asyncio.gather(asyncio.shield(task), return_exceptions=True)

        return await asyncio.shield(task)

    async def _fill(self, force: bool) -> int:
        if force:
            await self.clear_embeddings()
        else:
            await self.hydrate_from_cache()

        pending = self.pending_documents()
        if not pending:
            return 0

        start_time = time.perf_counter()
        logger.info(f"Generating embeddings for {len(pending)} documents (force: {force})")

        batch_size = self.adapter.batch_size
        for i in range(0, len(pending), batch_size):
            batch = pending[i : i + batch_size]
            embeddings = await self.adapter.embed_texts([doc.text for doc in batch])
            for doc, embedding in zip(batch, embeddings):
                doc.embedding = embedding
            await asyncio.gather(*(self.cache.store(doc) for doc in batch))

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Generated {len(pending)} embeddings in {duration_ms:.0f}ms "
            f"(avg: {duration_ms / len(pending):.2f}ms/doc)"
        )
        return len(pending)

    async def prepare_embeddings(self, force: bool = False) -> EmbeddingStatus:
        """Fill (or, with ``force``, rebuild) all embeddings and report index health."""
        await self.ensure_embeddings(force=force)
        return await self.get_embedding_status()

    async def get_embedding_status(self) -> EmbeddingStatus:
        """Report which documents have embeddings, hydrating from cache first."""
        await self.hydrate_from_cache()

        statuses = [
            DocumentStatus(
                id=doc.id,
                question_id=doc.question_id,
                type=doc.type,
                has_embedding=bool(doc.embedding),
                embedding_length=len(doc.embedding) if doc.embedding else 0,
            )
            for doc in self._documents
        ]
        cached = sum(1 for status in statuses if status.has_embedding)
        return EmbeddingStatus(
            total=len(statuses),
            cached=cached,
            missing=len(statuses) - cached,
            documents=statuses,
        )
