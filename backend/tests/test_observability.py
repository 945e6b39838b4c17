"""Tests for metrics and response headers."""

from cv_rag.knowledge.models import ExpansionMetadata, RetrievalResult, RetrievalResultSet
from cv_rag.observability import (
    MetricsCollector,
    PrometheusMetrics,
    _build_metrics_backend,
    expansion_headers,
)


def make_result_set(expansion=None) -> RetrievalResultSet:
    return RetrievalResultSet(
        results=[
            RetrievalResult(
                question_id="question:languages",
                question_name="Languages?",
                context="Python.",
                score=0.8,
                matched_on="name",
            )
        ],
        expansion=expansion,
    )


class TestMetricsCollector:
    def test_histogram_is_cumulative(self):
        collector = MetricsCollector(buckets_ms=[10, 100])
        collector.observe_retrieval("pass1", False, None, 2, 5)
        collector.observe_retrieval("pass1", False, None, 1, 50)
        collector.observe_retrieval("pass1", False, None, 0, 500)

        output = collector.render_prometheus()

        assert 'rag_retrieval_duration_ms_bucket{pass="pass1",le="10"} 1' in output
        assert 'rag_retrieval_duration_ms_bucket{pass="pass1",le="100"} 2' in output
        assert 'rag_retrieval_duration_ms_bucket{pass="pass1",le="+Inf"} 3' in output
        assert 'rag_retrieval_duration_ms_count{pass="pass1"} 3' in output
        assert 'rag_retrieval_results_total{pass="pass1"} 3' in output
        assert 'rag_retrievals_total{pass="pass1",expansion="false",reason="none"} 3' in output

    def test_embedding_and_cache_counters(self):
        collector = MetricsCollector()
        collector.observe_embedding_call("openai", "batch", True, 12.0, items=20)
        collector.observe_embedding_call("openai", "batch", False, 10000.0, items=20)
        collector.observe_cache("get", "hit")

        output = collector.render_prometheus()

        assert 'embedding_calls_total{provider="openai",operation="batch",status="success"} 1' in output
        assert 'embedding_calls_total{provider="openai",operation="batch",status="error"} 1' in output
        assert 'embedding_items_total{provider="openai",operation="batch"} 40' in output
        assert 'embedding_cache_operations_total{operation="get",outcome="hit"} 1' in output


class TestBuildMetricsBackend:
    def test_inmemory(self):
        assert isinstance(_build_metrics_backend("inmemory"), MetricsCollector)

    def test_prometheus(self):
        backend = _build_metrics_backend("prometheus")
        backend.observe_exact_match(hit=True, verbatim=True)
        backend.observe_retrieval("pass2", True, "short-message", 1, 30.0)

        assert isinstance(backend, PrometheusMetrics)
        output = backend.render_prometheus()
        assert 'rag_exact_match_total{outcome="verbatim"} 1.0' in output
        assert "rag_retrieval_duration_ms_bucket" in output


class TestExpansionHeaders:
    def test_without_expansion(self):
        headers = expansion_headers(make_result_set())

        assert headers == {
            "X-RAG-Results": "1",
            "X-Exact-Match": "false",
            "X-RAG-Expansion-Triggered": "false",
        }

    def test_with_expansion(self):
        expansion = ExpansionMetadata(
            triggered=True,
            reason="short-message",
            used_pass2=True,
            pass1_count=0,
            pass2_count=1,
            pass1_top_score=0.0,
            pass2_top_score=0.8,
            total_latency_ms=41.6,
        )

        headers = expansion_headers(make_result_set(expansion))

        assert headers["X-RAG-Expansion-Triggered"] == "true"
        assert headers["X-RAG-Expansion-Reason"] == "short-message"
        assert headers["X-RAG-Pass-Used"] == "pass2"
        assert headers["X-RAG-Latency-Ms"] == "42"

    def test_exact_match(self):
        headers = expansion_headers(RetrievalResultSet(), exact_match=True)

        assert headers["X-Exact-Match"] == "true"
        assert headers["X-RAG-Results"] == "0"
