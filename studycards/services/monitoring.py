"""Production monitoring for StudyCards.

Collects request and review metrics and exposes them in Prometheus text
format at /api/metrics.

Tracks:
- Request counts and average latency by route template and method
- Error counts by status code
- Active concurrent requests
- Reviews recorded, labelled by the card's resulting retention bucket
- Progress store failures, labelled by operation
"""

from collections import defaultdict
from threading import Lock

UNMATCHED_PATH = "<unmatched>"


def route_path(scope: dict) -> str:
    """Label a request by the route it matched, e.g. /api/progress/decks/{content_hash}.

    Requests that matched no route share one label so stray URLs cannot add
    new series.
    """
    route = scope.get("route")
    return getattr(route, "path", UNMATCHED_PATH)


class MetricsCollector:
    """Thread-safe metrics collection."""

    def __init__(self):
        self.request_count: dict[tuple[str, str], int] = defaultdict(int)
        self.latency_sum: dict[tuple[str, str], float] = defaultdict(float)
        self.error_count: dict[tuple[str, str, int], int] = defaultdict(int)
        self.reviews: dict[str, int] = defaultdict(int)
        self.storage_failures: dict[str, int] = defaultdict(int)
        self.active_requests: int = 0
        self._lock = Lock()

    def record_request(self, method: str, path: str, status: int, duration: float):
        """Record a completed HTTP request."""
        with self._lock:
            key = (method, path)
            self.request_count[key] += 1
            self.latency_sum[key] += duration
            if status >= 400:
                self.error_count[(method, path, status)] += 1

    def record_review(self, bucket: str):
        """Record a persisted review and the bucket the card landed in."""
        with self._lock:
            self.reviews[bucket] += 1

    def record_storage_failure(self, operation: str):
        with self._lock:
            self.storage_failures[operation] += 1

    def increment_active(self):
        with self._lock:
            self.active_requests += 1

    def decrement_active(self):
        with self._lock:
            self.active_requests -= 1

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        with self._lock:
            lines.append("# HELP studycards_requests_total Total HTTP requests")
            lines.append("# TYPE studycards_requests_total counter")
            for (method, path), count in sorted(self.request_count.items()):
                lines.append(
                    f'studycards_requests_total{{method="{method}",path="{path}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP studycards_request_duration_avg_seconds Average request latency")
            lines.append("# TYPE studycards_request_duration_avg_seconds gauge")
            for (method, path), total in sorted(self.latency_sum.items()):
                avg = total / max(self.request_count[(method, path)], 1)
                lines.append(
                    f'studycards_request_duration_avg_seconds{{method="{method}",path="{path}"}} {avg:.4f}'
                )

            lines.append("")
            lines.append("# HELP studycards_errors_total Total HTTP errors (4xx/5xx)")
            lines.append("# TYPE studycards_errors_total counter")
            for (method, path, status), count in sorted(self.error_count.items()):
                lines.append(
                    f'studycards_errors_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP studycards_reviews_total Reviews recorded by resulting bucket")
            lines.append("# TYPE studycards_reviews_total counter")
            for bucket, count in sorted(self.reviews.items()):
                lines.append(f'studycards_reviews_total{{bucket="{bucket}"}} {count}')

            lines.append("")
            lines.append("# HELP studycards_storage_failures_total Progress store failures")
            lines.append("# TYPE studycards_storage_failures_total counter")
            for operation, count in sorted(self.storage_failures.items()):
                lines.append(
                    f'studycards_storage_failures_total{{operation="{operation}"}} {count}'
                )

            lines.append("")
            lines.append("# HELP studycards_active_requests Current active requests")
            lines.append("# TYPE studycards_active_requests gauge")
            lines.append(f"studycards_active_requests {self.active_requests}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = MetricsCollector()
