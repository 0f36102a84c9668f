import monitoring
from monitoring import MetricsCollector


def test_tracking_ids_stay_unique_within_one_millisecond(monkeypatch):
    monkeypatch.setattr(monitoring.time, "time", lambda: 1700000000.0)
    collector = MetricsCollector()

    first = collector.start_query("tenant-1", "slack")
    second = collector.start_query("tenant-1", "slack")
    collector.finish_query(first)
    third = collector.start_query("tenant-1", "slack")

    assert len({first, second, third}) == 3
    assert set(collector.active_queries) == {second, third}
    assert all(tracking_id.startswith("tenant-1_") for tracking_id in (first, second, third))


def test_finishing_unknown_query_is_ignored():
    collector = MetricsCollector()
    collector.finish_query("tenant-1_missing")
    assert collector.active_queries == {}
