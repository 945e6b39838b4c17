"""Embedding generation for knowledge base documents and queries.

Supports OpenAI (text-embedding-3-small) and Google (text-embedding-004)
models. Provider responses come in several shapes and are normalized to a
list of vectors; provider failures degrade to per-item calls and finally to a
deterministic local vector so retrieval never hard-fails on an outage.
"""

import asyncio
import logging
import math
import time
from typing import Any, Optional, Protocol, Sequence

from cv_rag.core.config import Settings
from cv_rag.knowledge.errors import EmbeddingProviderError, EmbeddingProviderNotConfiguredError
from cv_rag.observability import MetricsBackend

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_FALLBACK_DIM = 128
DEFAULT_TIMEOUT_SECONDS = 10.0

# Task types for models that embed documents and queries asymmetrically
DOCUMENT_TASK_TYPE = "retrieval_document"
QUERY_TASK_TYPE = "retrieval_query"

Vector = list[float]


class EmbeddingProvider(Protocol):
    """External embedding model.

    ``embed`` returns the raw provider response; any shape understood by
    :func:`extract_embeddings` is accepted. Providers without asymmetric
    embeddings ignore ``task_type``.
    """

    name: str

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        ...


class OpenAIEmbeddingProvider:
    """Embeddings via the OpenAI API."""

    name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        self._api_key = api_key
        self.model = model or "text-embedding-3-small"
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key) if self._api_key else AsyncOpenAI()
        return self._client

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        try:
            return await self._get_client().embeddings.create(
                model=self.model,
                input=texts,
            )
        except Exception as e:
            raise EmbeddingProviderError(f"OpenAI embedding failed: {e}") from e


class GoogleEmbeddingProvider:
    """Embeddings via Google's text-embedding model."""

    name = "google"

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        self._api_key = api_key
        self.model = model or "text-embedding-004"
        self._configured = False

    async def embed(self, texts: list[str], task_type: str = DOCUMENT_TASK_TYPE) -> Any:
        import google.generativeai as genai

        if self._api_key and not self._configured:
            genai.configure(api_key=self._api_key)
            self._configured = True

        content: str | list[str] = texts[0] if len(texts) == 1 else texts
        try:
            # The SDK call is blocking; keep it off the event loop.
            result = await asyncio.to_thread(
                genai.embed_content,
                model=f"models/{self.model}",
                content=content,
                task_type=task_type,
            )
        except Exception as e:
            raise EmbeddingProviderError(f"Google embedding failed: {e}") from e
        return result["embedding"]


def build_embedding_provider(settings: Settings) -> Optional[EmbeddingProvider]:
    """Create the embedding provider selected by settings.

    Returns:
        The provider, or None when no provider or API key is configured.

    Raises:
        ValueError: If the provider name is not supported.
    """
    provider = settings.embedding_provider
    if provider is None:
        return None

    if provider == "openai":
        if not settings.openai_api_key:
            logger.warning("EMBEDDING_PROVIDER is 'openai' but OPENAI_API_KEY is not set")
            return None
        return OpenAIEmbeddingProvider(settings.openai_api_key, settings.openai_embedding_model)
    elif provider == "google":
        if not settings.google_ai_api_key:
            logger.warning("EMBEDDING_PROVIDER is 'google' but GOOGLE_AI_API_KEY is not set")
            return None
        return GoogleEmbeddingProvider(settings.google_ai_api_key, settings.google_embedding_model)
    else:
        raise ValueError(f"Unsupported embedding provider: {provider}")


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _as_vector(candidate: Any) -> Optional[Vector]:
    """Return candidate as a list of floats if it is a non-empty numeric vector."""
    if hasattr(candidate, "tolist") and not isinstance(candidate, (list, tuple)):
        candidate = candidate.tolist()
    if not isinstance(candidate, (list, tuple)) or not candidate:
        return None
    first = candidate[0]
    if isinstance(first, bool) or not isinstance(first, (int, float)):
        return None
    return [float(v) for v in candidate]


def extract_embeddings(result: Any, expected: int) -> list[Vector]:
    """Normalize a provider response to one vector per requested text.

    Recognized shapes, in order:

    * a list of ``expected`` vectors
    * a single flat vector (wrapped in a list)
    * ``data``: a list of vectors or of objects with an ``embedding`` vector,
      accepted only when the count equals ``expected``
    * ``embedding``: a single vector (wrapped in a list)

    Anything else yields an empty list; unknown shapes are never guessed at.
    """
    if isinstance(result, (list, tuple)):
        if len(result) == expected and result:
            vectors = [_as_vector(item) for item in result]
            if all(v is not None for v in vectors):
                return vectors  # type: ignore[return-value]

        single = _as_vector(result)
        if single is not None:
            return [single]

    data = _field(result, "data")
    if isinstance(data, (list, tuple)):
        vectors = []
        for item in data:
            vector = _as_vector(item)
            if vector is None:
                vector = _as_vector(_field(item, "embedding"))
            if vector is not None:
                vectors.append(vector)
        if len(vectors) == expected:
            return vectors

    embedding = _as_vector(_field(result, "embedding"))
    if embedding is not None:
        return [embedding][:expected]

    return []


def fallback_embedding(text: str, dim: int = DEFAULT_FALLBACK_DIM) -> Vector:
    """Deterministic low-quality embedding derived from character codes.

    Only keeps the pipeline alive during provider outages; it carries almost
    no semantic signal.
    """
    vec = [0.0] * dim
    if not text:
        return vec
    for i, char in enumerate(text):
        vec[i % dim] += (ord(char) % 97) / 97
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


class EmbeddingAdapter:
    """Calls the embedding provider with batching, retries and fallback vectors."""

    def __init__(
        self,
        provider: EmbeddingProvider | None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        fallback_dim: int = DEFAULT_FALLBACK_DIM,
        timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.fallback_dim = fallback_dim
        self.timeout_seconds = timeout_seconds
        self._metrics = metrics

    @property
    def is_configured(self) -> bool:
        return self.provider is not None

    def ensure_configured(self) -> EmbeddingProvider:
        if self.provider is None:
            raise EmbeddingProviderNotConfiguredError("Embedding provider is not configured.")
        return self.provider

    async def embed_texts(
        self,
        texts: Sequence[str],
        task_type: str = DOCUMENT_TASK_TYPE,
    ) -> list[Vector]:
        """Embed texts, returning exactly one vector per text in input order.

        ``timeout_seconds`` bounds the whole call, retries included. Once it
        has elapsed the remaining texts get fallback vectors.

        Raises:
            EmbeddingProviderNotConfiguredError: If no provider is bound.
        """
        provider = self.ensure_configured()
        texts = list(texts)
        if not texts:
            return []

        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds else None

        try:
            result = await self._call(provider, texts, "batch", task_type, deadline)
            embeddings = extract_embeddings(result, len(texts))
            if len(embeddings) == len(texts):
                return embeddings
            logger.warning(
                f"Batch embedding returned {len(embeddings)} vectors, expected {len(texts)}"
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Batch embedding timed out after {self.timeout_seconds}s, "
                f"using fallback embeddings for {len(texts)} texts"
            )
            return [fallback_embedding(text, self.fallback_dim) for text in texts]
        except Exception as e:
            logger.warning(f"Batch embedding failed: {e}")

        vectors: list[Vector] = []
        fallbacks = 0
        for text in texts:
            vector = None
            if deadline is None or time.monotonic() < deadline:
                vector = await self._embed_single(provider, text, task_type, deadline)
            if vector is None:
                vector = fallback_embedding(text, self.fallback_dim)
                fallbacks += 1
            vectors.append(vector)

        if fallbacks:
            logger.warning(f"Used fallback embeddings for {fallbacks}/{len(texts)} texts")
        return vectors

    async def embed_query(self, text: str) -> Vector:
        """Embed a single query string."""
        vectors = await self.embed_texts([text], task_type=QUERY_TASK_TYPE)
        return vectors[0]

    async def _embed_single(
        self,
        provider: EmbeddingProvider,
        text: str,
        task_type: str,
        deadline: float | None,
    ) -> Optional[Vector]:
        try:
            result = await self._call(provider, [text], "single", task_type, deadline)
        except Exception as e:
            logger.warning(f"Single embedding failed for text {text[:120]!r}: {e!r}")
            return None

        extracted = extract_embeddings(result, 1)
        if len(extracted) == 1:
            return extracted[0]
        logger.warning(f"Single embedding returned empty for text {text[:120]!r}")
        return None

    async def _call(
        self,
        provider: EmbeddingProvider,
        texts: list[str],
        operation: str,
        task_type: str,
        deadline: float | None,
    ) -> Any:
        start_time = time.perf_counter()
        success = False
        try:
            request = provider.embed(texts, task_type=task_type)
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
                result = await asyncio.wait_for(request, remaining)
            else:
                result = await request
            success = True
            return result
        finally:
            if self._metrics:
                duration_ms = (time.perf_counter() - start_time) * 1000
                self._metrics.observe_embedding_call(
                    getattr(provider, "name", "unknown"),
                    operation,
                    success,
                    duration_ms,
                    len(texts),
                )
