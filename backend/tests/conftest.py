"""Pytest configuration and fixtures for context engine tests."""

import hashlib
import math
import re
from typing import Any

import pytest

from cv_rag.core.config import Settings
from cv_rag.knowledge.cache import EmbeddingCache, InMemoryCacheStore
from cv_rag.knowledge.embeddings import DOCUMENT_TASK_TYPE, EmbeddingAdapter
from cv_rag.knowledge.errors import EmbeddingProviderError
from cv_rag.knowledge.index import DocumentIndex
from cv_rag.knowledge.loader import build_documents
from cv_rag.knowledge.models import KnowledgeEntry
from cv_rag.knowledge.retriever import KnowledgeRetriever
from cv_rag.observability import MetricsCollector

_WORD = re.compile(r"[a-z0-9]+")


# -------------------------------------------------------------------------
# Fake embedding providers
# -------------------------------------------------------------------------


class BagOfWordsProvider:
    """Deterministic provider: hashed bag-of-words vectors.

    Identical texts get identical vectors, texts sharing no words are
    orthogonal (barring hash collisions in 512 dimensions).
    """

    name = "fake"

    def __init__(self, dim: int = 512) -> None:
        self.dim = dim
        self.calls: list[list[str]] = []
        self.task_types: list[str] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dim
        for word in _WORD.findall(text.lower()):
            idx = int(hashlib.sha256(word.encode()).hexdigest(), 16) % self.dim
            vec[idx] += 1.0
        return vec

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        self.calls.append(list(texts))
        self.task_types.append(task_type)
        return {"data": [{"embedding": self.vector(t)} for t in texts]}

    @property
    def embedded_texts(self) -> list[str]:
        return [text for call in self.calls for text in call]


class MappingProvider:
    """Provider returning preset vectors; unknown texts get ``default``."""

    name = "mapping"

    def __init__(self, vectors: dict[str, list[float]], default: list[float]) -> None:
        self.vectors = vectors
        self.default = default
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        self.calls.append(list(texts))
        return [self.vectors.get(t, self.default) for t in texts]


class FailingProvider:
    """Provider whose every call fails."""

    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        self.calls += 1
        raise EmbeddingProviderError("provider unavailable")


def unit(*components: float) -> list[float]:
    norm = math.sqrt(sum(c * c for c in components))
    return [c / norm for c in components]


# -------------------------------------------------------------------------
# Knowledge base fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def knowledge_entries() -> list[KnowledgeEntry]:
    """Small CV knowledge base."""
    return [
        KnowledgeEntry(
            name="What languages do you know?",
            context="Python TypeScript Go and SQL are my everyday programming languages.",
        ),
        KnowledgeEntry(
            name="Where are you currently working?",
            context="Senior backend engineer on the platform team building search APIs.",
        ),
        KnowledgeEntry(
            name="Are you open to relocation?",
            context="Open to remote roles and relocating within Europe.",
            verbatim=True,
        ),
        KnowledgeEntry(
            context="Trail ultramarathons and mentoring junior developers at meetups.",
        ),
    ]


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        embedding_provider=None,
        embedding_cache_backend="memory",
        embedding_timeout_seconds=2.0,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def provider() -> BagOfWordsProvider:
    return BagOfWordsProvider()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def document_index(knowledge_entries, provider, cache_store, metrics) -> DocumentIndex:
    """Index over the sample knowledge base using the bag-of-words provider."""
    adapter = EmbeddingAdapter(provider, batch_size=3, metrics=metrics)
    cache = EmbeddingCache(cache_store, metrics=metrics)
    return DocumentIndex(build_documents(knowledge_entries), adapter, cache)


@pytest.fixture
def retriever(document_index) -> KnowledgeRetriever:
    return KnowledgeRetriever(document_index, min_score=0.6, max_results=5)
