import threading

import pytest

from ftpscan.config import CounterReducerKafka
from ftpscan.counter_reducer import CounterReducer, CounterReducerMetrics, reduce_messages
from ftpscan.messages import CountMessage
from ftpscan.metrics import MetricsRegistry


class FakeRepo:
    def __init__(self, fail=False):
        self.fail = fail
        self.inserted = []

    def insert_reduced_counters(self, counts):
        if self.fail:
            raise RuntimeError("database down")
        self.inserted.append(list(counts))


class FakeConsumer:
    def __init__(self, batches, stop_event):
        self.batches = list(batches)
        self.stop_event = stop_event
        self.calls = []

    def read_messages(self, batch_size, timeout):
        self.calls.append((batch_size, timeout))
        item = self.batches.pop(0)
        if not self.batches:
            self.stop_event.set()
        if isinstance(item, Exception):
            raise item
        return item


MESSAGES = [CountMessage("a", 2), CountMessage("b", 3), CountMessage("a", 5)]


def test_reduce_messages_sums_per_scan():
    reduced, total = reduce_messages(MESSAGES)
    assert reduced == [CountMessage("a", 7), CountMessage("b", 3)]
    assert total == sum(m.number for m in MESSAGES)
    assert sum(m.number for m in reduced) == total


def test_reduce_messages_empty():
    assert reduce_messages([]) == ([], 0)


def test_process_batch_stores_and_counts():
    repo = FakeRepo()
    metrics = CounterReducerMetrics("i")
    reducer = CounterReducer(repo, None, CounterReducerKafka(), metrics)
    reduced = reducer.process_batch(MESSAGES)
    assert repo.inserted == [reduced]
    assert metrics.received_messages.value == len(MESSAGES)
    assert metrics.received_numbers.value == sum(m.number for m in MESSAGES)
    assert metrics.reduced_messages.value == len({m.scan_id for m in MESSAGES})
    assert metrics.processing_insert.count == 1
    assert metrics.processing_duration.count == 1
    assert metrics.mongo_insertion_errors.value == 0


def test_process_batch_counts_insert_errors():
    metrics = CounterReducerMetrics("i")
    reducer = CounterReducer(FakeRepo(fail=True), None, CounterReducerKafka(), metrics)
    reducer.process_batch(MESSAGES)
    assert metrics.mongo_insertion_errors.value == 1
    assert metrics.processing_insert.count == 0
    assert metrics.processing_duration.count == 1


def test_process_empty_batch_does_nothing():
    repo = FakeRepo()
    metrics = CounterReducerMetrics("i")
    assert CounterReducer(repo, None, CounterReducerKafka(), metrics).process_batch([]) == []
    assert repo.inserted == []
    assert metrics.received_messages.value == 0


def test_start_reads_until_stopped_and_survives_errors():
    stop = threading.Event()
    consumer = FakeConsumer(
        [[CountMessage("x", 1)], RuntimeError("broker gone"), [CountMessage("x", 4)]], stop
    )
    repo = FakeRepo()
    config = CounterReducerKafka(batch_size=50, duration=2)
    CounterReducer(repo, consumer, config).start(stop)
    assert repo.inserted == [[CountMessage("x", 1)], [CountMessage("x", 4)]]
    assert consumer.calls == [(50, 2.0)] * 3


def test_insert_reduced_counters_delegates():
    repo = FakeRepo()
    CounterReducer(repo, None, CounterReducerKafka()).insert_reduced_counters([CountMessage("s", 1)])
    assert repo.inserted == [[CountMessage("s", 1)]]


def test_metrics_register_names():
    registry = MetricsRegistry()
    CounterReducerMetrics("n").register(registry)
    names = [family.name for family in registry.gather()]
    assert len(names) == 7
    assert "counter_reducer_mongo_insertion_errors_total" in names
    family = next(f for f in registry.gather() if f.name == "counter_reducer_processing_duration_seconds")
    bounds = [bound for bound, _ in family.samples[0].buckets]
    assert len(bounds) == 10
    assert bounds[0] == pytest.approx(0.01)