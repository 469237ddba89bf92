from stockflow.core.monitoring import MetricsCollector, get_prometheus_metrics, metrics


def test_counters_are_keyed_by_labels():
    collector = MetricsCollector()

    collector.increment("notifications_failed_total", labels={"type": "order.confirmed", "reason": "timeout"})
    collector.increment("notifications_failed_total", labels={"reason": "timeout", "type": "order.confirmed"})
    collector.increment("notifications_failed_total", labels={"type": "order.cancelled", "reason": "timeout"})

    assert collector.get_counter(
        "notifications_failed_total", labels={"type": "order.confirmed", "reason": "timeout"}
    ) == 2
    assert collector.get_counter("notifications_failed_total") == 0


def test_histogram_stats():
    collector = MetricsCollector()
    for value in (0.1, 0.2, 0.3, 0.4):
        collector.observe("saga_duration_seconds", value)

    stats = collector.get_histogram_stats("saga_duration_seconds")

    assert stats["count"] == 4
    assert stats["min"] == 0.1
    assert stats["max"] == 0.4


def test_prometheus_export_includes_counters_and_saga_duration():
    metrics.increment("reservations_total")
    metrics.observe("saga_duration_seconds", 0.25)

    text = get_prometheus_metrics()

    assert "reservations_total 1" in text
    assert "saga_duration_seconds_count 1" in text
