"""Sums count messages per scan and stores the totals."""

from __future__ import annotations

import logging
import threading
import time
from typing import Iterable, Optional, Protocol, Sequence

from ftpscan.config import CounterReducerKafka
from ftpscan.messages import CountMessage
from ftpscan.metrics import Counter, Histogram, MetricsRegistry, exponential_buckets

log = logging.getLogger(__name__)


class CounterRepository(Protocol):
    def insert_reduced_counters(self, counts: Sequence[CountMessage]) -> None: ...


class CountConsumer(Protocol):
    def read_messages(self, batch_size: int, timeout: float) -> list[CountMessage]: ...


class CounterReducerMetrics:
    """All counter reducer metrics, labelled with one instance name."""

    def __init__(self, instance: str = "") -> None:
        labels = {"instance": instance}
        buckets = exponential_buckets(0.01, 2, 10)
        self.instance = instance
        self.received_messages = Counter(
            "counter_reducer_received_messages_total",
            "Number of messages received for reduction",
            labels=labels,
        )
        self.received_numbers = Counter(
            "counter_reducer_received_numbers_total",
            "Sum of the numbers received for reduction",
            labels=labels,
        )
        self.processing_reduce = Histogram(
            "counter_reducer_processing_reduce_duration_seconds",
            "Time to reduce a batch",
            buckets=buckets,
            labels=labels,
        )
        self.processing_insert = Histogram(
            "counter_reducer_processing_insert_duration_seconds",
            "Time to store a reduced batch",
            buckets=buckets,
            labels=labels,
        )
        self.processing_duration = Histogram(
            "counter_reducer_processing_duration_seconds",
            "Time to reduce and store a batch",
            buckets=buckets,
            labels=labels,
        )
        self.reduced_messages = Counter(
            "counter_reducer_reduced_messages_total",
            "Number of reduced messages",
            labels=labels,
        )
        self.mongo_insertion_errors = Counter(
            "counter_reducer_mongo_insertion_errors_total",
            "Number of errors storing reduced counters",
            labels=labels,
        )

    def register(self, registry: MetricsRegistry) -> "CounterReducerMetrics":
        """Register every metric in ``registry``; return self."""
        registry.register(
            self.received_messages,
            self.received_numbers,
            self.processing_reduce,
            self.processing_insert,
            self.processing_duration,
            self.reduced_messages,
            self.mongo_insertion_errors,
        )
        return self


def reduce_messages(messages: Iterable[CountMessage]) -> tuple[list[CountMessage], int]:
    """Sum the numbers per scan id; also return the sum over all messages.

    Scan ids appear in the order they are first seen.
    """
    totals: dict[str, int] = {}
    for msg in messages:
        totals[msg.scan_id] = totals.get(msg.scan_id, 0) + msg.number
    reduced = [CountMessage(scan_id=scan_id, number=total) for scan_id, total in totals.items()]
    return reduced, sum(totals.values())


class CounterReducer:
    """Reads batches of count messages, reduces them and stores the result."""

    def __init__(
        self,
        repo: CounterRepository,
        consumer: CountConsumer,
        config: CounterReducerKafka,
        metrics: Optional[CounterReducerMetrics] = None,
    ) -> None:
        self.repo = repo
        self.consumer = consumer
        self.config = config
        self.metrics = metrics if metrics is not None else CounterReducerMetrics()

    def insert_reduced_counters(self, counts: Sequence[CountMessage]) -> None:
        self.repo.insert_reduced_counters(counts)

    def process_batch(self, messages: Sequence[CountMessage]) -> list[CountMessage]:
        """Reduce and store one batch; storage errors are counted, not raised."""
        if not messages:
            return []
        metrics = self.metrics
        metrics.received_messages.add(len(messages))
        started = time.perf_counter()
        reduced, total = reduce_messages(messages)
        metrics.processing_reduce.observe(time.perf_counter() - started)
        metrics.received_numbers.add(total)
        metrics.reduced_messages.add(len(reduced))
        log.info("reduced %d messages to %d scans", len(messages), len(reduced))

        insert_started = time.perf_counter()
        try:
            self.insert_reduced_counters(reduced)
        except Exception:
            log.exception("cannot store reduced counters")
            metrics.mongo_insertion_errors.inc()
        else:
            metrics.processing_insert.observe(time.perf_counter() - insert_started)
        metrics.processing_duration.observe(time.perf_counter() - started)
        return reduced

    def start(self, stop_event: threading.Event) -> None:
        """Process batches until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                messages = self.consumer.read_messages(
                    self.config.batch_size, float(self.config.duration)
                )
            except Exception:
                log.exception("cannot read count messages")
                continue
            log.info("received %d messages", len(messages))
            self.process_batch(messages)