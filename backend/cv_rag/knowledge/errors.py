"""Exceptions raised by the knowledge context engine."""


class KnowledgeError(Exception):
    """Base exception for knowledge engine errors."""

    pass


class KnowledgeBaseLoadError(KnowledgeError):
    """The knowledge base file is missing or malformed."""

    pass


class EmbeddingProviderNotConfiguredError(KnowledgeError):
    """No embedding provider is bound.

    This is a configuration error: it is reported to the caller and never
    degraded to fallback embeddings.
    """

    pass


class EmbeddingProviderError(KnowledgeError):
    """A single embedding provider call failed or returned unusable data."""

    pass
