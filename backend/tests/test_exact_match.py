"""Tests for exact question matching."""

import asyncio

import pytest

from cv_rag.knowledge.exact_match import ExactMatcher, exact_match_result
from cv_rag.knowledge.models import KnowledgeEntry


class TestExactMatcher:
    """Test suite for the normalized-question hash lookup."""

    @pytest.mark.parametrize(
        "question",
        [
            "What languages do you know?",
            "what languages do you know?",
            "  WHAT LANGUAGES DO YOU KNOW?  ",
            "\tWhat Languages Do You Know?\n",
        ],
    )
    async def test_match_ignores_case_and_surrounding_whitespace(
        self, knowledge_entries, question
    ):
        matcher = ExactMatcher(knowledge_entries)

        match = await matcher.find_exact_match(question)

        assert match is not None
        assert match.question == "What languages do you know?"
        assert match.context.startswith("Python TypeScript")
        assert match.verbatim is False

    async def test_verbatim_flag(self, knowledge_entries):
        matcher = ExactMatcher(knowledge_entries)

        match = await matcher.find_exact_match("are you open to relocation?")

        assert match is not None
        assert match.verbatim is True
        assert match.context == "Open to remote roles and relocating within Europe."

    @pytest.mark.parametrize("question", ["", "   ", "What languages do you speak?"])
    async def test_no_match(self, knowledge_entries, question):
        matcher = ExactMatcher(knowledge_entries)
        assert await matcher.find_exact_match(question) is None

    async def test_inner_whitespace_is_significant(self, knowledge_entries):
        matcher = ExactMatcher(knowledge_entries)
        assert await matcher.find_exact_match("What  languages do you know?") is None

    async def test_returned_match_is_a_copy(self, knowledge_entries):
        matcher = ExactMatcher(knowledge_entries)

        first = await matcher.find_exact_match("What languages do you know?")
        first.context = "tampered"
        second = await matcher.find_exact_match("What languages do you know?")

        assert second.context != "tampered"

    async def test_first_duplicate_wins(self):
        matcher = ExactMatcher(
            [
                KnowledgeEntry(name="Hobbies?", context="first"),
                KnowledgeEntry(name="hobbies?", context="second"),
            ]
        )
        match = await matcher.find_exact_match("HOBBIES?")
        assert match.context == "first"

    async def test_concurrent_callers_share_one_build(self, knowledge_entries):
        """The lookup is built once even when requested concurrently."""
        matcher = ExactMatcher(knowledge_entries)
        original_build = matcher._build
        build_calls = 0

        async def slow_build():
            nonlocal build_calls
            build_calls += 1
            await asyncio.sleep(0.01)
            return await original_build()

        matcher._build = slow_build
        maps = await asyncio.gather(*(matcher.get_map() for _ in range(10)))

        assert build_calls == 1
        assert all(m is maps[0] for m in maps)
        assert matcher.is_built

    async def test_records_metrics(self, knowledge_entries, metrics):
        matcher = ExactMatcher(knowledge_entries, metrics=metrics)

        await matcher.find_exact_match("What languages do you know?")
        await matcher.find_exact_match("Are you open to relocation?")
        await matcher.find_exact_match("Unknown question")

        output = metrics.render_prometheus()
        assert 'rag_exact_match_total{outcome="hit"} 1' in output
        assert 'rag_exact_match_total{outcome="verbatim"} 1' in output
        assert 'rag_exact_match_total{outcome="miss"} 1' in output


def test_exact_match_result():
    from cv_rag.knowledge.models import ExactMatch

    result = exact_match_result(ExactMatch(question="Q?", context="A.", verbatim=False))

    assert result.score == 1.0
    assert result.matched_on == "exact-match"
    assert result.context == "A."
