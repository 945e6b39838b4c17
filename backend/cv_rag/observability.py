"""Lightweight observability helpers (logging + metrics)."""

from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import TYPE_CHECKING, Iterable, Protocol

from cv_rag.core.config import get_settings

if TYPE_CHECKING:
    from cv_rag.knowledge.models import RetrievalResultSet

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS_MS = [50, 100, 250, 500, 1000, 2500, 5000, 10000]


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_embedding_call(
        self,
        provider: str,
        operation: str,
        success: bool,
        duration_ms: float,
        items: int = 0,
    ) -> None:
        ...

    def observe_retrieval(
        self,
        pass_used: str,
        expansion_triggered: bool,
        reason: str | None,
        result_count: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_exact_match(self, hit: bool, verbatim: bool = False) -> None:
        ...

    def observe_cache(self, operation: str, outcome: str) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._embedding_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._embedding_items: dict[tuple[str, str], int] = defaultdict(int)
        self._embedding_duration_sum_ms: dict[tuple[str, str], float] = defaultdict(float)
        self._embedding_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self._embedding_duration_buckets: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._retrieval_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._retrieval_results: dict[str, int] = defaultdict(int)
        self._retrieval_duration_sum_ms: dict[str, float] = defaultdict(float)
        self._retrieval_duration_count: dict[str, int] = defaultdict(int)
        self._retrieval_duration_buckets: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._exact_match_counts: dict[str, int] = defaultdict(int)
        self._cache_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)

    def observe_embedding_call(
        self,
        provider: str,
        operation: str,
        success: bool,
        duration_ms: float,
        items: int = 0,
    ) -> None:
        """Record a single embedding provider call."""
        status = "success" if success else "error"
        duration_key = (provider, operation)
        bucket_key = self._bucket_for(duration_ms)

        with self._lock:
            self._embedding_counts[(provider, operation, status)] += 1
            self._embedding_items[duration_key] += items
            self._embedding_duration_sum_ms[duration_key] += duration_ms
            self._embedding_duration_count[duration_key] += 1
            self._embedding_duration_buckets[duration_key][bucket_key] += 1

    def observe_retrieval(
        self,
        pass_used: str,
        expansion_triggered: bool,
        reason: str | None,
        result_count: int,
        duration_ms: float,
    ) -> None:
        """Record a completed (possibly two-pass) retrieval."""
        count_key = (pass_used, "true" if expansion_triggered else "false", reason or "none")
        bucket_key = self._bucket_for(duration_ms)

        with self._lock:
            self._retrieval_counts[count_key] += 1
            self._retrieval_results[pass_used] += result_count
            self._retrieval_duration_sum_ms[pass_used] += duration_ms
            self._retrieval_duration_count[pass_used] += 1
            self._retrieval_duration_buckets[pass_used][bucket_key] += 1

    def observe_exact_match(self, hit: bool, verbatim: bool = False) -> None:
        """Record an exact-match lookup."""
        if not hit:
            outcome = "miss"
        elif verbatim:
            outcome = "verbatim"
        else:
            outcome = "hit"
        with self._lock:
            self._exact_match_counts[outcome] += 1

    def observe_cache(self, operation: str, outcome: str) -> None:
        """Record an embedding cache operation outcome."""
        with self._lock:
            self._cache_counts[(operation, outcome)] += 1

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = [
            "# HELP embedding_calls_total Embedding provider calls",
            "# TYPE embedding_calls_total counter",
        ]
        with self._lock:
            for (provider, operation, status), count in sorted(self._embedding_counts.items()):
                lines.append(
                    "embedding_calls_total"
                    f'{{provider="{provider}",operation="{operation}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP embedding_items_total Texts sent to the embedding provider",
                    "# TYPE embedding_items_total counter",
                ]
            )
            for (provider, operation), count in sorted(self._embedding_items.items()):
                lines.append(
                    f'embedding_items_total{{provider="{provider}",operation="{operation}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP embedding_call_duration_ms Embedding call duration in milliseconds",
                    "# TYPE embedding_call_duration_ms histogram",
                ]
            )
            for (provider, operation), total in sorted(self._embedding_duration_sum_ms.items()):
                labels = f'provider="{provider}",operation="{operation}"'
                lines.extend(
                    self._render_histogram(
                        "embedding_call_duration_ms",
                        labels,
                        self._embedding_duration_buckets[(provider, operation)],
                        total,
                        self._embedding_duration_count[(provider, operation)],
                    )
                )

            lines.extend(
                [
                    "# HELP rag_retrievals_total Retrievals by selected pass and expansion trigger",
                    "# TYPE rag_retrievals_total counter",
                ]
            )
            for (pass_used, triggered, reason), count in sorted(self._retrieval_counts.items()):
                lines.append(
                    "rag_retrievals_total"
                    f'{{pass="{pass_used}",expansion="{triggered}",reason="{reason}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP rag_retrieval_results_total Results returned by retrieval",
                    "# TYPE rag_retrieval_results_total counter",
                ]
            )
            for pass_used, count in sorted(self._retrieval_results.items()):
                lines.append(f'rag_retrieval_results_total{{pass="{pass_used}"}} {count}')

            lines.extend(
                [
                    "# HELP rag_retrieval_duration_ms Retrieval latency in milliseconds",
                    "# TYPE rag_retrieval_duration_ms histogram",
                ]
            )
            for pass_used, total in sorted(self._retrieval_duration_sum_ms.items()):
                lines.extend(
                    self._render_histogram(
                        "rag_retrieval_duration_ms",
                        f'pass="{pass_used}"',
                        self._retrieval_duration_buckets[pass_used],
                        total,
                        self._retrieval_duration_count[pass_used],
                    )
                )

            lines.extend(
                [
                    "# HELP rag_exact_match_total Exact question match lookups",
                    "# TYPE rag_exact_match_total counter",
                ]
            )
            for outcome, count in sorted(self._exact_match_counts.items()):
                lines.append(f'rag_exact_match_total{{outcome="{outcome}"}} {count}')

            lines.extend(
                [
                    "# HELP embedding_cache_operations_total Embedding cache operations",
                    "# TYPE embedding_cache_operations_total counter",
                ]
            )
            for (operation, outcome), count in sorted(self._cache_counts.items()):
                lines.append(
                    "embedding_cache_operations_total"
                    f'{{operation="{operation}",outcome="{outcome}"}} {count}'
                )
        return "\n".join(lines) + "\n"

    def _render_histogram(
        self,
        name: str,
        labels: str,
        buckets: dict[str, int],
        total: float,
        count: int,
    ) -> list[str]:
        lines: list[str] = []
        cumulative = 0
        for bound in self._buckets_ms:
            cumulative += buckets.get(str(bound), 0)
            lines.append(f'{name}_bucket{{{labels},le="{bound}"}} {cumulative}')
        cumulative += buckets.get("+Inf", 0)
        lines.append(f'{name}_bucket{{{labels},le="+Inf"}} {cumulative}')
        lines.append(f"{name}_sum{{{labels}}} {total:.2f}")
        lines.append(f"{name}_count{{{labels}}} {count}")
        return lines

    def _bucket_for(self, duration_ms: float) -> str:
        for bound in self._buckets_ms:
            if duration_ms <= bound:
                return str(bound)
        return "+Inf"


class PrometheusMetrics:
    """Prometheus client-based metrics backend."""

    def __init__(self, buckets_ms: Iterable[int]) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        self._registry = CollectorRegistry()
        self._buckets_ms = list(buckets_ms)

        self._embedding_calls_total = Counter(
            "embedding_calls_total",
            "Embedding provider calls",
            ["provider", "operation", "status"],
            registry=self._registry,
        )
        self._embedding_items_total = Counter(
            "embedding_items_total",
            "Texts sent to the embedding provider",
            ["provider", "operation"],
            registry=self._registry,
        )
        self._embedding_call_duration_ms = Histogram(
            "embedding_call_duration_ms",
            "Embedding call duration in milliseconds",
            ["provider", "operation"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._rag_retrievals_total = Counter(
            "rag_retrievals_total",
            "Retrievals by selected pass and expansion trigger",
            ["pass", "expansion", "reason"],
            registry=self._registry,
        )
        self._rag_retrieval_results_total = Counter(
            "rag_retrieval_results_total",
            "Results returned by retrieval",
            ["pass"],
            registry=self._registry,
        )
        self._rag_retrieval_duration_ms = Histogram(
            "rag_retrieval_duration_ms",
            "Retrieval latency in milliseconds",
            ["pass"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._rag_exact_match_total = Counter(
            "rag_exact_match_total",
            "Exact question match lookups",
            ["outcome"],
            registry=self._registry,
        )
        self._embedding_cache_operations_total = Counter(
            "embedding_cache_operations_total",
            "Embedding cache operations",
            ["operation", "outcome"],
            registry=self._registry,
        )

    def observe_embedding_call(
        self,
        provider: str,
        operation: str,
        success: bool,
        duration_ms: float,
        items: int = 0,
    ) -> None:
        status = "success" if success else "error"
        self._embedding_calls_total.labels(provider, operation, status).inc()
        if items:
            self._embedding_items_total.labels(provider, operation).inc(items)
        self._embedding_call_duration_ms.labels(provider, operation).observe(duration_ms)

    def observe_retrieval(
        self,
        pass_used: str,
        expansion_triggered: bool,
        reason: str | None,
        result_count: int,
        duration_ms: float,
    ) -> None:
        self._rag_retrievals_total.labels(
            pass_used, "true" if expansion_triggered else "false", reason or "none"
        ).inc()
        if result_count:
            self._rag_retrieval_results_total.labels(pass_used).inc(result_count)
        self._rag_retrieval_duration_ms.labels(pass_used).observe(duration_ms)

    def observe_exact_match(self, hit: bool, verbatim: bool = False) -> None:
        if not hit:
            outcome = "miss"
        elif verbatim:
            outcome = "verbatim"
        else:
            outcome = "hit"
        self._rag_exact_match_total.labels(outcome).inc()

    def observe_cache(self, operation: str, outcome: str) -> None:
        self._embedding_cache_operations_total.labels(operation, outcome).inc()

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Return a cached metrics backend instance."""
    global _metrics_backend
    if _metrics_backend is None:
        settings = get_settings()
        _metrics_backend = _build_metrics_backend(settings.metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        try:
            from prometheus_client import Counter  # noqa: F401

            return PrometheusMetrics(DEFAULT_BUCKETS_MS)
        except Exception:
            logger.warning(
                "Prometheus backend requested but prometheus_client is not available. "
                "Falling back to in-memory metrics."
            )
    return MetricsCollector(DEFAULT_BUCKETS_MS)


def expansion_headers(
    results: "RetrievalResultSet",
    exact_match: bool = False,
) -> dict[str, str]:
    """Build the observability headers the chat handler attaches to a response."""
    headers = {
        "X-RAG-Results": str(len(results)),
        "X-Exact-Match": "true" if exact_match else "false",
    }
    expansion = results.expansion
    if expansion is not None and expansion.triggered:
        headers["X-RAG-Expansion-Triggered"] = "true"
        headers["X-RAG-Expansion-Reason"] = expansion.reason
        headers["X-RAG-Pass-Used"] = "pass2" if expansion.used_pass2 else "pass1"
        headers["X-RAG-Latency-Ms"] = f"{expansion.total_latency_ms:.0f}"
    else:
        headers["X-RAG-Expansion-Triggered"] = "false"
    return headers
