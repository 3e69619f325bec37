import pytest

from ftpscan.lister_metrics import DirectoryListerMetrics
from ftpscan.metrics import DuplicateMetricError, MetricsRegistry


def test_register_exposes_all_families_with_instance_label():
    registry = MetricsRegistry()
    DirectoryListerMetrics("node-1").register(registry)
    families = registry.gather()
    names = [family.name for family in families]
    assert len(names) == 15
    assert "directory_lister_received_messages_total" in names
    assert "directory_lister_kafka_send_errors_total" in names
    assert all(name.startswith("directory_lister_") for name in names)
    assert all(family.samples[0].labels == {"instance": "node-1"} for family in families)


def test_registering_same_instance_twice_fails():
    registry = MetricsRegistry()
    DirectoryListerMetrics("a").register(registry)
    with pytest.raises(DuplicateMetricError):
        DirectoryListerMetrics("a").register(registry)


def test_two_instances_share_families():
    registry = MetricsRegistry()
    first = DirectoryListerMetrics("a").register(registry)
    DirectoryListerMetrics("b").register(registry)
    first.files_found.add(3)
    family = next(f for f in registry.gather() if f.name == "directory_lister_files_found_total")
    assert [s.labels["instance"] for s in family.samples] == ["a", "b"]
    assert family.samples[0].value == 3


def test_histogram_buckets():
    metrics = DirectoryListerMetrics("x")
    processing = [bound for bound, _ in metrics.processing_duration.buckets]
    listing = [bound for bound, _ in metrics.ftp_list_duration.buckets]
    assert len(processing) == 20
    assert processing[0] == pytest.approx(0.00005)
    assert len(listing) == 15
    assert listing[0] == pytest.approx(0.001)


def test_counters_and_histogram_update():
    metrics = DirectoryListerMetrics("x")
    metrics.received_messages.inc()
    metrics.received_messages.inc()
    metrics.ftp_list_duration.observe(0.5)
    assert metrics.received_messages.value == 2
    assert metrics.ftp_list_duration.count == 1
    assert metrics.ftp_list_duration.sum == pytest.approx(0.5)