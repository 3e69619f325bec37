import pytest

from ftpscan.metrics import (
    COUNTER,
    HISTOGRAM,
    Counter,
    DuplicateMetricError,
    Histogram,
    MetricsRegistry,
    exponential_buckets,
)


def test_exponential_buckets_shape():
    buckets = exponential_buckets(0.01, 2, 10)
    assert len(buckets) == 10
    assert buckets[0] == 0.01
    for low, high in zip(buckets, buckets[1:]):
        assert high == pytest.approx(low * 2)


@pytest.mark.parametrize("start,factor,count", [(0.01, 2, 0), (0, 2, 5), (-1, 2, 5), (0.01, 1, 5)])
def test_exponential_buckets_rejects_bad_arguments(start, factor, count):
    with pytest.raises(ValueError):
        exponential_buckets(start, factor, count)


def test_counter_counts_up():
    counter = Counter("c_total", "help")
    counter.inc()
    counter.add(2.5)
    assert counter.value == pytest.approx(3.5)


def test_counter_rejects_negative():
    counter = Counter("c_total")
    with pytest.raises(ValueError):
        counter.add(-1)
    assert counter.value == 0.0


def test_histogram_observations():
    values = [0.5, 2, 3, 10]
    hist = Histogram("h_seconds", buckets=[1, 2, 4])
    for value in values:
        hist.observe(value)
    assert hist.count == len(values)
    assert hist.sum == pytest.approx(sum(values))
    assert hist.buckets == ((1.0, 1), (2.0, 2), (4.0, 3))


def test_histogram_buckets_are_cumulative():
    hist = Histogram("h", buckets=exponential_buckets(0.001, 2, 15))
    for value in (0.0005, 0.003, 0.02, 0.5, 100):
        hist.observe(value)
    counts = [count for _, count in hist.buckets]
    assert counts == sorted(counts)
    assert counts[-1] <= hist.count


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("h", buckets=[1, 3, 2])


def test_registry_groups_by_name_and_sorts():
    registry = MetricsRegistry()
    b = Counter("b_total", "b", {"instance": "y"})
    a = Counter("b_total", "b", {"instance": "x"})
    h = Histogram("a_seconds", "a", buckets=[1.0], labels={"instance": "x"})
    registry.register(b, a, h)
    a.inc()
    h.observe(0.5)
    families = registry.gather()
    assert [f.name for f in families] == ["a_seconds", "b_total"]
    assert families[0].kind == HISTOGRAM
    assert families[0].samples[0].count == 1
    assert families[1].kind == COUNTER
    assert [s.labels["instance"] for s in families[1].samples] == ["x", "y"]
    assert families[1].samples[0].value == 1.0


def test_registry_rejects_duplicates():
    registry = MetricsRegistry()
    registry.register(Counter("x_total", "x", {"instance": "a"}))
    with pytest.raises(DuplicateMetricError):
        registry.register(Counter("x_total", "x", {"instance": "a"}))
    with pytest.raises(DuplicateMetricError):
        registry.register(Histogram("x_total", "x", labels={"instance": "b"}))


def test_failed_register_leaves_registry_unchanged():
    registry = MetricsRegistry()
    with pytest.raises(DuplicateMetricError):
        registry.register(Counter("y_total"), Counter("z_total"), Counter("y_total"))
    assert registry.gather() == []