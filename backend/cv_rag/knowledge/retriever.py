"""Cosine-similarity retriever over the knowledge document index."""

import json
import logging
from typing import Any, Sequence

import numpy as np

from cv_rag.knowledge.index import DocumentIndex
from cv_rag.knowledge.models import RetrievalResult

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.6
DEFAULT_MAX_RESULTS = 5

NO_CONTEXT_MESSAGE = "No relevant context found."


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 for empty vectors, vectors of different dimensionality, or
    a zero-norm vector.
    """
    if vec_a is None or vec_b is None or len(vec_a) == 0 or len(vec_b) == 0:
        return 0.0
    if len(vec_a) != len(vec_b):
        return 0.0

    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(a, b) / (norm_a * norm_b))
    # Rounding can push identical vectors marginally past 1
    return max(-1.0, min(1.0, score))


class KnowledgeRetriever:
    """Ranks knowledge entries against a query by embedding similarity.

    Only the best-scoring document of each question is returned, so a
    question matched on both its name and a context chunk appears once.
    """

    def __init__(
        self,
        index: DocumentIndex,
        min_score: float = DEFAULT_MIN_SCORE,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self.index = index
        self.min_score = min_score
        self.max_results = max_results

    async def retrieve(self, query: str) -> list[RetrievalResult]:
        """Retrieve the most relevant knowledge entries for a query.

        Args:
            query: Search query text.

        Returns:
            Results sorted by score (highest first), at most ``max_results``,
            all scoring at least ``min_score``.

        Raises:
            EmbeddingProviderNotConfiguredError: If no provider is bound.
        """
        if not query or self.index.is_empty:
            return []

        await self.index.ensure_embeddings()

        query_embedding = await self.index.adapter.embed_query(query)
        if not query_embedding:
            return []

        results = self.rank(query_embedding)
        logger.debug(f"Retrieved {len(results)} results for query: {query[:50]}...")
        return results

    def rank(self, query_embedding: Sequence[float]) -> list[RetrievalResult]:
        """Score every embedded document against a query vector."""
        best_by_question: dict[str, RetrievalResult] = {}

        for doc, embedding in self.index.embedded_documents():
            score = cosine_similarity(query_embedding, embedding)
            if score < self.min_score:
                continue

            existing = best_by_question.get(doc.question_id)
            if existing is None or score > existing.score:
                best_by_question[doc.question_id] = RetrievalResult(
                    question_id=doc.question_id,
                    question_name=doc.question_name,
                    context=doc.context,
                    score=score,
                    matched_on=doc.type,
                )

        ranked = sorted(best_by_question.values(), key=lambda r: r.score, reverse=True)
        return ranked[: self.max_results]


def format_context(results: Sequence[RetrievalResult]) -> str:
    """Format retrieval results as context for the prompt.

    Args:
        results: Ranked retrieval results.

    Returns:
        One ``- <question>`` block per result, or a placeholder when empty.
    """
    if not results:
        return NO_CONTEXT_MESSAGE

    return "\n\n".join(
        f"- {result.question_name}\n{result.context}" for result in results if result.context
    )


def format_all_context(cv_data: Any) -> str:
    """Render the whole CV document as pretty-printed JSON."""
    if cv_data is None:
        return ""
    return json.dumps(cv_data, indent=2, ensure_ascii=False)
