"""Exact question matching.

Builds a lookup from the hash of each normalized question name to its stored
answer, so a live question that equals a known question (ignoring case and
surrounding whitespace) skips vector retrieval entirely.
"""

import asyncio
import logging
from typing import Iterable, Optional

from cv_rag.knowledge.loader import normalize_question_text
from cv_rag.knowledge.models import ExactMatch, KnowledgeEntry, RetrievalResult, hash_text
from cv_rag.observability import MetricsBackend

logger = logging.getLogger(__name__)


class ExactMatcher:
    """Hash lookup from normalized question text to its canonical answer.

    The map is built lazily on first use and kept for the lifetime of the
    matcher. Concurrent first callers await the same in-flight build.
    """

    def __init__(
        self,
        entries: Iterable[KnowledgeEntry],
        metrics: MetricsBackend | None = None,
    ) -> None:
        self._entries = list(entries)
        self._metrics = metrics
        self._map: dict[str, ExactMatch] | None = None
        self._build_task: asyncio.Task[dict[str, ExactMatch]] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_built(self) -> bool:
        return self._map is not None

    async def get_map(self) -> dict[str, ExactMatch]:
        """Return the lookup map, building it at most once."""
        if self._map is not None:
            return self._map

        async with self._lock:
            if self._build_task is None:
                self._build_task = asyncio.create_task(self._build())
            task = self._build_task

        return await asyncio.shield(task)

    async def _build(self) -> dict[str, ExactMatch]:
        lookup: dict[str, ExactMatch] = {}
        for entry in self._entries:
            if not entry.name:
                continue
            key = hash_text(normalize_question_text(entry.name))
            # First entry wins for duplicate questions
            lookup.setdefault(
                key,
                ExactMatch(
                    question=entry.name,
                    context=entry.context or "",
                    verbatim=entry.verbatim,
                ),
            )

        self._map = lookup
        logger.info(f"Exact-match lookup built with {len(lookup)} questions")
        return lookup

    async def find_exact_match(self, question: str) -> Optional[ExactMatch]:
        """Find a stored answer whose question equals ``question`` after normalization.

        A returned match with ``verbatim=True`` is the complete user-facing
        answer and must not be forwarded to the generative model.
        """
        if not question:
            return None

        lookup = await self.get_map()
        normalized = normalize_question_text(question)
        if not normalized:
            return None

        match = lookup.get(hash_text(normalized))
        if self._metrics:
            self._metrics.observe_exact_match(match is not None, bool(match and match.verbatim))
        if match is None:
            return None
        return match.model_copy()


def exact_match_result(match: ExactMatch) -> RetrievalResult:
    """Represent a non-verbatim exact match as a single top-scoring result."""
    return RetrievalResult(
        question_id="",
        question_name=match.question,
        context=match.context,
        score=1.0,
        matched_on="exact-match",
    )
