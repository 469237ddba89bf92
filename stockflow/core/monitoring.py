"""
Monitoring utilities

In-process metrics for the ledger, saga and resilience layer:
- Counters (reservations, compensations, breaker transitions, dropped notifications)
- Gauges (breaker state per collaborator)
- Histograms (collaborator call latency, saga duration)

Uses Prometheus-style naming so the text export can be scraped as-is.
"""
import logging
from collections import deque
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional
from threading import Lock

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    In-memory metrics collector with rolling windows.

    For production, export to Prometheus via get_prometheus_metrics().
    """

    def __init__(self, window_minutes: int = 60):
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = {}
        self._window_minutes = window_minutes
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def gauge(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Set a gauge metric (point-in-time value)."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Record a histogram observation (e.g., latency)."""
        key = self._make_key(name, labels)
        now = datetime.now(timezone.utc)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = deque(maxlen=10000)  # Keep last 10k observations
            self._histograms[key].append((now, value))

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        """Create metric key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        key = self._make_key(name, labels)
        return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        key = self._make_key(name, labels)
        return self._gauges.get(key)

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None,
                            window_seconds: int = 300) -> Dict:
        """Get histogram statistics for time window."""
        key = self._make_key(name, labels)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)

        with self._lock:
            if key not in self._histograms:
                return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

            values = [v for ts, v in self._histograms[key] if ts > cutoff]

        if not values:
            return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

        values.sort()
        p95_idx = int(len(values) * 0.95)

        return {
            "count": len(values),
            "avg": sum(values) / len(values),
            "min": values[0],
            "max": values[-1],
            "p95": values[p95_idx] if p95_idx < len(values) else values[-1],
        }

    def get_all_metrics(self) -> Dict:
        """Get all metrics for export/display."""
        now = datetime.now(timezone.utc)
        uptime = (now - self._start_time).total_seconds()

        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)

        return {
            "uptime_seconds": uptime,
            "counters": counters,
            "gauges": gauges,
            "saga_duration": self.get_histogram_stats("saga_duration_seconds"),
            "collected_at": now.isoformat(),
        }

    def reset(self) -> None:
        """Drop all recorded values. Used between tests."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global metrics collector
metrics = MetricsCollector()


def get_prometheus_metrics() -> str:
    """Export metrics in Prometheus text format."""
    lines = []
    all_metrics = metrics.get_all_metrics()

    lines.append("# HELP app_uptime_seconds Application uptime in seconds")
    lines.append("# TYPE app_uptime_seconds gauge")
    lines.append(f"app_uptime_seconds {all_metrics['uptime_seconds']:.2f}")

    for key, value in all_metrics["counters"].items():
        safe_key = key.replace("{", "_").replace("}", "_").replace(",", "_").replace("=", "_")
        lines.append(f"{safe_key} {value}")

    for key, value in all_metrics["gauges"].items():
        safe_key = key.replace("{", "_").replace("}", "_").replace(",", "_").replace("=", "_")
        lines.append(f"{safe_key} {value:.4f}")

    saga = all_metrics["saga_duration"]
    if saga["count"] > 0:
        lines.append("# HELP saga_duration_seconds Order saga wall time")
        lines.append(f"saga_duration_seconds_count {saga['count']}")
        lines.append(f"saga_duration_seconds_avg {saga['avg']:.4f}")
        lines.append(f"saga_duration_seconds_p95 {saga['p95']:.4f}")

    return "\n".join(lines)
