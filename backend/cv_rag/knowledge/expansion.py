"""Two-pass retrieval with conversational query expansion.

Short or context-dependent follow-ups ("yes", "tell me more", "why?") embed
poorly on their own. When the first pass looks weak, retrieval is re-run with
a query that spells out the previous turn, and the better pass is kept.
"""

import logging
import re
import time
from typing import Any, Iterable, Mapping, Sequence

from cv_rag.knowledge.errors import EmbeddingProviderNotConfiguredError
from cv_rag.knowledge.models import (
    ExpansionDecision,
    ExpansionMetadata,
    ExpansionReason,
    PreviousContext,
    RetrievalResult,
    RetrievalResultSet,
)
from cv_rag.knowledge.retriever import DEFAULT_MIN_SCORE, KnowledgeRetriever
from cv_rag.observability import MetricsBackend

logger = logging.getLogger(__name__)

DEFAULT_SHORT_MESSAGE_LEN = 10
DEFAULT_WEAK_SCORE_BUFFER = 1.1  # top score must clear min_score by 10%
DEFAULT_SUMMARY_MAX_CHARS = 300

LOW_SIGNAL_TOKENS = frozenset(
    {
        "yes",
        "yeah",
        "yep",
        "yup",
        "ya",
        "ok",
        "okay",
        "sure",
        "no",
        "nope",
        "nah",
        "more",
        "more info",
        "info",
        "give me more info",
        "tell me more",
        "go on",
        "continue",
        "that",
        "this",
        "it",
        "why",
        "how",
        "what about that",
        "what about it",
        "more details",
        "details",
        "give me more details",
    }
)

_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")


def should_expand(
    query: str,
    first_pass: Sequence[RetrievalResult],
    min_score: float = DEFAULT_MIN_SCORE,
    weak_score_buffer: float = DEFAULT_WEAK_SCORE_BUFFER,
    short_message_len: int = DEFAULT_SHORT_MESSAGE_LEN,
) -> ExpansionDecision:
    """Decide whether a query needs a second, context-enriched pass.

    Rules are checked in order and the first match wins: short message,
    low-signal token, no first-pass results, weak top score.
    """
    trimmed = (query or "").strip()

    if len(trimmed) <= short_message_len:
        return ExpansionDecision(triggered=True, reason=ExpansionReason.SHORT_MESSAGE)

    if trimmed.lower() in LOW_SIGNAL_TOKENS:
        return ExpansionDecision(triggered=True, reason=ExpansionReason.LOW_SIGNAL_TOKEN)

    if not first_pass:
        return ExpansionDecision(triggered=True, reason=ExpansionReason.NO_RESULTS)

    if first_pass[0].score < min_score * weak_score_buffer:
        return ExpansionDecision(triggered=True, reason=ExpansionReason.WEAK_TOP_SCORE)

    return ExpansionDecision(triggered=False)


def summarize_assistant_message(content: str, max_chars: int = DEFAULT_SUMMARY_MAX_CHARS) -> str:
    """Shorten an assistant answer to its first paragraph, at most ``max_chars``.

    Long paragraphs are cut at the last sentence end inside the limit when
    that keeps at least half of it, otherwise hard-cut with an ellipsis.
    """
    if not content:
        return ""

    first_paragraph = content.strip().split("\n\n")[0].strip()
    if len(first_paragraph) <= max_chars:
        return first_paragraph

    window = first_paragraph[: max(0, max_chars - 3)]
    boundaries = [m.end() for m in _SENTENCE_END.finditer(window)]
    if boundaries and boundaries[-1] >= max_chars // 2:
        return window[: boundaries[-1]].strip()
    return f"{window.rstrip()}..."


def extract_previous_context(
    messages: Iterable[Mapping[str, Any]],
    max_summary_chars: int = DEFAULT_SUMMARY_MAX_CHARS,
) -> PreviousContext:
    """Pull the previous turn out of a chat transcript.

    Args:
        messages: Chat messages with ``role`` and ``content``, oldest first;
            the last user message is the current question.

    Returns:
        The second-to-last user message and a summary of the last assistant
        message, or an empty context for transcripts shorter than one turn.
    """
    turns = [
        m
        for m in messages
        if m and m.get("role") in ("user", "assistant") and m.get("content")
    ]
    if len(turns) < 3:
        return PreviousContext()

    user_messages = [m["content"] for m in turns if m["role"] == "user"]
    previous_user_message = user_messages[-2] if len(user_messages) >= 2 else ""

    assistant_messages = [m["content"] for m in turns if m["role"] == "assistant"]
    summary = (
        summarize_assistant_message(assistant_messages[-1], max_summary_chars)
        if assistant_messages
        else ""
    )

    return PreviousContext(
        previous_user_message=previous_user_message,
        previous_assistant_summary=summary,
    )


def build_effective_query(
    query: str,
    previous_user_message: str = "",
    previous_assistant_summary: str = "",
) -> str:
    """Build the expanded second-pass query from the follow-up and prior turn."""
    parts = [f"User follow-up: {query}"]
    if previous_user_message:
        parts.append(f"Refers to previous question: {previous_user_message}")
    if previous_assistant_summary:
        parts.append(f"Previous answer summary: {previous_assistant_summary}")
    return "\n".join(parts)


def select_pass(
    pass1: Sequence[RetrievalResult],
    pass2: Sequence[RetrievalResult],
) -> bool:
    """Return True when the second pass should replace the first."""
    pass1_top = pass1[0].score if pass1 else 0.0
    pass2_top = pass2[0].score if pass2 else 0.0
    return len(pass2) > len(pass1) or pass2_top > pass1_top


class QueryExpansionController:
    """Wraps the retriever with best-of-two-passes query expansion."""

    def __init__(
        self,
        retriever: KnowledgeRetriever,
        weak_score_buffer: float = DEFAULT_WEAK_SCORE_BUFFER,
        short_message_len: int = DEFAULT_SHORT_MESSAGE_LEN,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.retriever = retriever
        self.weak_score_buffer = weak_score_buffer
        self.short_message_len = short_message_len
        self._metrics = metrics

    def should_expand(
        self, query: str, first_pass: Sequence[RetrievalResult]
    ) -> ExpansionDecision:
        return should_expand(
            query,
            first_pass,
            min_score=self.retriever.min_score,
            weak_score_buffer=self.weak_score_buffer,
            short_message_len=self.short_message_len,
        )

    async def search(
        self,
        query: str,
        previous: PreviousContext | None = None,
    ) -> RetrievalResultSet:
        """Retrieve context for a query, expanding it with the prior turn if needed.

        Raises:
            EmbeddingProviderNotConfiguredError: If no provider is bound.
        """
        if not query:
            return RetrievalResultSet()

        previous = previous or PreviousContext()

        start_time = time.perf_counter()
        pass1 = await self.retriever.retrieve(query)
        pass1_ms = (time.perf_counter() - start_time) * 1000

        decision = self.should_expand(query, pass1)
        if not decision.triggered or previous.is_empty:
            self._observe("pass1", decision, len(pass1), pass1_ms)
            return RetrievalResultSet(results=pass1)

        effective_query = build_effective_query(
            query,
            previous.previous_user_message,
            previous.previous_assistant_summary,
        )
        pass2: list[RetrievalResult] | None
        try:
            pass2 = await self.retriever.retrieve(effective_query)
        except EmbeddingProviderNotConfiguredError:
            raise
        except Exception as e:
            logger.warning(f"Expanded retrieval pass failed, keeping first pass: {e}")
            pass2 = None

        pass2_results = pass2 or []
        use_pass2 = pass2 is not None and select_pass(pass1, pass2_results)
        total_ms = (time.perf_counter() - start_time) * 1000

        pass1_top = pass1[0].score if pass1 else 0.0
        pass2_top = pass2_results[0].score if pass2_results else 0.0
        reason = decision.reason.value if decision.reason else "expansion"

        logger.info(
            f"Two-pass retrieval ({total_ms:.0f}ms total) - trigger: {reason}, "
            f"pass1: {len(pass1)} results (top: {pass1_top:.3f}), "
            f"pass2: {len(pass2_results)} results (top: {pass2_top:.3f}), "
            f"using: {'pass2' if use_pass2 else 'pass1'}"
        )

        final = pass2_results if use_pass2 else pass1
        self._observe("pass2" if use_pass2 else "pass1", decision, len(final), total_ms)
        return RetrievalResultSet(
            results=final,
            expansion=ExpansionMetadata(
                triggered=True,
                reason=reason,
                used_pass2=use_pass2,
                pass1_count=len(pass1),
                pass2_count=len(pass2_results),
                pass1_top_score=pass1_top,
                pass2_top_score=pass2_top,
                total_latency_ms=total_ms,
            ),
        )

    def _observe(
        self,
        pass_used: str,
        decision: ExpansionDecision,
        result_count: int,
        duration_ms: float,
    ) -> None:
        if self._metrics:
            self._metrics.observe_retrieval(
                pass_used,
                decision.triggered,
                decision.reason.value if decision.reason else None,
                result_count,
                duration_ms,
            )
