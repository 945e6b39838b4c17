"""Persistent embedding cache.

Embeddings are stored per document id together with the hash of the text they
were computed from. A cached vector is only reused while that hash still
matches the document, so editing the knowledge base invalidates stale entries
without an explicit purge.
"""

import json
import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from cv_rag.core.config import Settings
from cv_rag.knowledge.models import CachedEmbedding, Document
from cv_rag.observability import MetricsBackend

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PREFIX = "rag-embedding:"


class CacheStore(Protocol):
    """Simple async key/value store holding string values."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def put(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryCacheStore:
    """Process-local cache store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class RedisCacheStore:
    """Redis-backed cache store (redis.asyncio)."""

    def __init__(self, redis_url: str, ttl_seconds: int | None = None) -> None:
        self._redis_url = redis_url
        self._ttl_seconds = ttl_seconds
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = await self._get_client()
        return await client.get(key)

    async def put(self, key: str, value: str) -> None:
        client = await self._get_client()
        if self._ttl_seconds:
            await client.setex(key, self._ttl_seconds, value)
        else:
            await client.set(key, value)

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        await client.delete(key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_cache_store(settings: Settings) -> CacheStore:
    """Create the cache store selected by settings."""
    if settings.embedding_cache_backend == "redis":
        return RedisCacheStore(settings.redis_url)
    return InMemoryCacheStore()


class EmbeddingCache:
    """Embedding cache keyed by document id.

    Store failures never propagate: a failed read is a miss and a failed
    write or delete is a no-op, so retrieval stays correct with no cache.
    """

    def __init__(
        self,
        store: CacheStore | None,
        prefix: str = DEFAULT_CACHE_PREFIX,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._metrics = metrics

    @property
    def enabled(self) -> bool:
        return self._store is not None

    def key_for(self, document_id: str) -> str:
        return f"{self._prefix}{document_id}"

    async def get(self, document_id: str) -> Optional[CachedEmbedding]:
        """Read a cached embedding; malformed or unreadable entries are absent."""
        if self._store is None:
            return None

        try:
            raw = await self._store.get(self.key_for(document_id))
        except Exception as e:
            logger.warning(f"Failed to read embedding cache for {document_id}: {e}")
            self._observe("get", "error")
            return None

        if not raw:
            self._observe("get", "miss")
            return None

        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")

        try:
            payload = json.loads(raw)
            cached = CachedEmbedding(
                content_hash=payload["hash"],
                embedding=payload["embedding"],
            )
        except (TypeError, KeyError, ValueError, ValidationError):
            logger.debug(f"Ignoring malformed embedding cache entry for {document_id}")
            self._observe("get", "malformed")
            return None

        if not cached.content_hash or not cached.embedding:
            self._observe("get", "malformed")
            return None

        self._observe("get", "hit")
        return cached

    async def put(self, document_id: str, cached: CachedEmbedding) -> None:
        """Overwrite the cache entry for a document."""
        if self._store is None:
            return

        payload = json.dumps({"hash": cached.content_hash, "embedding": cached.embedding})
        try:
            await self._store.put(self.key_for(document_id), payload)
            self._observe("put", "ok")
        except Exception as e:
            logger.warning(f"Failed to persist embedding cache for {document_id}: {e}")
            self._observe("put", "error")

    async def delete(self, document_id: str) -> None:
        if self._store is None:
            return

        try:
            await self._store.delete(self.key_for(document_id))
            self._observe("delete", "ok")
        except Exception as e:
            logger.warning(f"Failed to delete embedding cache for {document_id}: {e}")
            self._observe("delete", "error")

    async def hydrate(self, document: Document) -> bool:
        """Load a document's embedding from cache if its content hash still matches.

        Returns:
            True if the document now has a cached embedding.
        """
        if document.embedding:
            return True

        cached = await self.get(document.id)
        if cached is None:
            return False

        if cached.content_hash != document.content_hash:
            self._observe("hydrate", "stale")
            return False

        document.embedding = list(cached.embedding)
        return True

    async def store(self, document: Document) -> None:
        """Persist a document's current embedding."""
        if not document.embedding:
            return
        await self.put(
            document.id,
            CachedEmbedding(content_hash=document.content_hash, embedding=document.embedding),
        )

    def _observe(self, operation: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.observe_cache(operation, outcome)
