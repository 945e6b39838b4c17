"""Tests for the document index and its embedding lifecycle."""

import asyncio
import json

import pytest

from conftest import BagOfWordsProvider
from cv_rag.knowledge.cache import EmbeddingCache, InMemoryCacheStore
from cv_rag.knowledge.embeddings import EmbeddingAdapter
from cv_rag.knowledge.errors import EmbeddingProviderNotConfiguredError
from cv_rag.knowledge.index import DocumentIndex
from cv_rag.knowledge.loader import build_documents
from cv_rag.knowledge.models import KnowledgeEntry


class YieldingProvider(BagOfWordsProvider):
    """Bag-of-words provider that yields to the event loop on every call."""

    async def embed(self, texts, task_type=None):
        await asyncio.sleep(0.01)
        return await super().embed(texts)


class TestEnsureEmbeddings:
    """Test suite for lazily filling document embeddings."""

    async def test_embeds_every_document_in_batches(self, document_index, provider):
        computed = await document_index.ensure_embeddings()

        assert computed == len(document_index)
        assert document_index.pending_documents() == []
        assert all(len(call) <= 3 for call in provider.calls)
        assert sorted(provider.embedded_texts) == sorted(
            doc.text for doc in document_index.documents
        )

    async def test_concurrent_cold_start_embeds_once(self, knowledge_entries, cache_store):
        provider = YieldingProvider()
        index = DocumentIndex(
            build_documents(knowledge_entries),
            EmbeddingAdapter(provider, batch_size=3),
            EmbeddingCache(cache_store),
        )

        computed = await asyncio.gather(*(index.ensure_embeddings() for _ in range(5)))

        assert computed == [len(index)] * 5
        assert sorted(provider.embedded_texts) == sorted(doc.text for doc in index.documents)
        for doc in index.documents:
            entry = json.loads(await cache_store.get(index.cache.key_for(doc.id)))
            assert entry["hash"] == doc.content_hash
            assert entry["embedding"] == doc.embedding

    async def test_force_waits_for_running_fill(self, knowledge_entries, cache_store):
        provider = YieldingProvider()
        index = DocumentIndex(
            build_documents(knowledge_entries),
            EmbeddingAdapter(provider, batch_size=3),
            EmbeddingCache(cache_store),
        )

        await asyncio.gather(index.ensure_embeddings(), index.ensure_embeddings(force=True))

        assert index.pending_documents() == []
        assert len(provider.embedded_texts) == 2 * len(index)
        assert len(cache_store) == len(index)

    async def test_idempotent(self, document_index, provider):
        await document_index.ensure_embeddings()
        calls = len(provider.calls)

        assert await document_index.ensure_embeddings() == 0
        assert len(provider.calls) == calls

    async def test_each_batch_is_persisted(self, document_index, cache_store):
        await document_index.ensure_embeddings()

        for doc in document_index.documents:
            assert document_index.cache.key_for(doc.id) in cache_store

    async def test_reuses_cache_across_instances(self, knowledge_entries, cache_store):
        first_provider = BagOfWordsProvider()
        first = DocumentIndex(
            build_documents(knowledge_entries),
            EmbeddingAdapter(first_provider),
            EmbeddingCache(cache_store),
        )
        await first.ensure_embeddings()

        second_provider = BagOfWordsProvider()
        second = DocumentIndex(
            build_documents(knowledge_entries),
            EmbeddingAdapter(second_provider),
            EmbeddingCache(cache_store),
        )
        computed = await second.ensure_embeddings()

        assert computed == 0
        assert second_provider.calls == []

    async def test_edited_document_is_re_embedded(self, knowledge_entries, cache_store):
        await DocumentIndex(
            build_documents(knowledge_entries),
            EmbeddingAdapter(BagOfWordsProvider()),
            EmbeddingCache(cache_store),
        ).ensure_embeddings()

        edited = list(knowledge_entries)
        edited[0] = KnowledgeEntry(
            name=edited[0].name,
            context="Rust and Kotlin are my everyday programming languages.",
        )
        provider = BagOfWordsProvider()
        index = DocumentIndex(
            build_documents(edited), EmbeddingAdapter(provider), EmbeddingCache(cache_store)
        )
        await index.ensure_embeddings()

        assert provider.embedded_texts == [
            "Rust and Kotlin are my everyday programming languages."
        ]

    async def test_not_configured(self, knowledge_entries):
        index = DocumentIndex(build_documents(knowledge_entries), EmbeddingAdapter(None))

        with pytest.raises(EmbeddingProviderNotConfiguredError):
            await index.ensure_embeddings()

    async def test_without_cache(self, knowledge_entries, provider):
        index = DocumentIndex(build_documents(knowledge_entries), EmbeddingAdapter(provider))

        assert await index.ensure_embeddings() == len(index)
        assert not index.cache.enabled


class TestPrepareEmbeddings:
    """Tests for the re-indexing entry point."""

    async def test_force_rebuilds_everything(self, document_index, provider):
        await document_index.ensure_embeddings()
        provider.calls.clear()

        status = await document_index.prepare_embeddings(force=True)

        assert status.missing == 0
        assert status.cached == status.total == len(document_index)
        assert len(provider.embedded_texts) == len(document_index)

    async def test_without_force_only_fills_missing(self, document_index, provider):
        await document_index.ensure_embeddings()
        document_index.documents[0].embedding = None
        provider.calls.clear()

        status = await document_index.prepare_embeddings(force=False)

        assert status.missing == 0
        # Restored from the cache rather than recomputed
        assert provider.calls == []

    async def test_clear_embeddings(self, document_index, cache_store):
        await document_index.ensure_embeddings()

        await document_index.clear_embeddings()

        assert len(document_index.pending_documents()) == len(document_index)
        assert len(cache_store) == 0


class TestEmbeddingStatus:
    async def test_status_before_embedding(self, document_index):
        status = await document_index.get_embedding_status()

        assert status.total == len(document_index)
        assert status.cached == 0
        assert status.missing == status.total
        assert all(not doc.has_embedding for doc in status.documents)

    async def test_status_hydrates_from_cache(self, knowledge_entries, cache_store, provider):
        await DocumentIndex(
            build_documents(knowledge_entries), EmbeddingAdapter(provider), EmbeddingCache(cache_store)
        ).ensure_embeddings()

        fresh = DocumentIndex(
            build_documents(knowledge_entries), EmbeddingAdapter(None), EmbeddingCache(cache_store)
        )
        status = await fresh.get_embedding_status()

        assert status.missing == 0
        assert {doc.embedding_length for doc in status.documents} == {512}

    async def test_empty_index(self):
        index = DocumentIndex([], EmbeddingAdapter(None), EmbeddingCache(InMemoryCacheStore()))
        status = await index.get_embedding_status()

        assert index.is_empty
        assert status.total == status.cached == status.missing == 0
