"""Metrics of the file scanner service and their persistence between runs."""

from __future__ import annotations

import json
import struct
from typing import Iterable, Protocol, Union

from ftpscan.metrics import (
    COUNTER,
    Counter,
    Histogram,
    MetricFamily,
    MetricSample,
    MetricsRegistry,
    exponential_buckets,
)

_LENGTH = struct.Struct("<I")


class MetricRepository(Protocol):
    """Stores one opaque metrics payload per instance."""

    def save(self, instance: str, payload: bytes) -> None: ...

    def load(self, instance: str) -> bytes: ...


class FileScannerMetrics:
    """All file scanner metrics, labelled with one instance name."""

    def __init__(self, instance: str = "") -> None:
        labels = {"instance": instance}
        slow_buckets = exponential_buckets(0.01, 2, 15)

        def counter(name: str, description: str) -> Counter:
            return Counter(name, description, labels=labels)

        def histogram(name: str, description: str, buckets: list[float] = slow_buckets) -> Histogram:
            return Histogram(name, description, buckets=buckets, labels=labels)

        self.instance = instance
        self.received_messages = counter(
            "file_scanner_received_messages_total",
            "Number of messages successfully read from Kafka",
        )
        self.download_duration = histogram(
            "file_scanner_download_duration_seconds", "Time to download files"
        )
        self.saving_duration = histogram("file_scanner_saving_duration_seconds", "Time to save files")
        self.saved_files_counter = counter("file_scanner_saved_files_total", "Number of saved files")
        self.ftp_reconnections = counter(
            "file_scanner_ftp_reconnections_total", "Number of FTP reconnections"
        )
        self.scan_duration = histogram(
            "file_scanner_scan_duration_seconds",
            "Time to scan files",
            exponential_buckets(0.001, 2, 15),
        )
        self.result_messages_sent = counter(
            "file_scanner_result_messages_sent_total", "Number of result messages sent"
        )
        self.sended_completed_files = counter(
            "file_scanner_completed_files_sent_total", "Number of completed files"
        )
        self.error_counter = counter("file_scanner_errors_total", "Number of file processing errors")
        self.return_error_duration = histogram(
            "file_scanner_return_error_duration_seconds", "Time spent on failed returns"
        )
        self.returned_files = counter("file_scanner_returned_files_total", "Number of returned files")
        self.returning_files_duration = histogram(
            "file_scanner_returning_files_duration_seconds", "Time to return files"
        )
        self.downloaded_files = counter(
            "file_scanner_downloaded_files_total", "Number of downloaded files"
        )
        self.scanned_files = counter("file_scanner_scanned_files_total", "Number of scanned files")
        self.sended_scan_files_results = counter(
            "file_scanner_sended_files_total", "Number of scan results sent"
        )
        self.error_sending_scan_files_result_duration = histogram(
            "file_scanner_error_sending_scan_files_result_duration_seconds",
            "Time spent on failed scan result sends",
        )
        self.sending_scan_files_results_duration = histogram(
            "file_scanner_sending_scan_files_results_duration_seconds",
            "Time to send scan results",
        )
        self.error_sending_completed_files_duration = histogram(
            "file_scanner_error_sending_completed_files_duration_seconds",
            "Time spent on failed completed file sends",
        )
        self.sending_completed_files_duration = histogram(
            "file_scanner_sending_completed_files_duration_seconds",
            "Time to send completed file counts",
        )

    def _all(self) -> tuple[Union[Counter, Histogram], ...]:
        return (
            self.received_messages,
            self.download_duration,
            self.saved_files_counter,
            self.saving_duration,
            self.ftp_reconnections,
            self.scan_duration,
            self.result_messages_sent,
            self.sended_completed_files,
            self.error_counter,
            self.returning_files_duration,
            self.return_error_duration,
            self.returned_files,
            self.downloaded_files,
            self.scanned_files,
            self.sended_scan_files_results,
            self.error_sending_scan_files_result_duration,
            self.sending_scan_files_results_duration,
            self.error_sending_completed_files_duration,
            self.sending_completed_files_duration,
        )

    def _restorable(self) -> dict[str, Counter]:
        """Counters whose saved values are added back on start."""
        restorable = (
            self.received_messages,
            self.saved_files_counter,
            self.ftp_reconnections,
            self.result_messages_sent,
            self.sended_completed_files,
            self.error_counter,
            self.returned_files,
            self.downloaded_files,
            self.scanned_files,
            self.sended_scan_files_results,
        )
        return {metric.name: metric for metric in restorable}

    def register(self, registry: MetricsRegistry) -> "FileScannerMetrics":
        """Register every metric in ``registry``; return self."""
        registry.register(*self._all())
        return self


def _family_to_dict(family: MetricFamily) -> dict:
    return {
        "name": family.name,
        "help": family.description,
        "type": family.kind,
        "samples": [
            {
                "labels": sample.labels,
                "value": sample.value,
                "count": sample.count,
                "buckets": [[bound, count] for bound, count in sample.buckets],
            }
            for sample in family.samples
        ],
    }


def _family_from_dict(data: dict) -> MetricFamily:
    try:
        samples = [
            MetricSample(
                labels={str(k): str(v) for k, v in sample["labels"].items()},
                value=float(sample["value"]),
                count=int(sample["count"]),
                buckets=tuple((float(bound), int(count)) for bound, count in sample["buckets"]),
            )
            for sample in data["samples"]
        ]
        return MetricFamily(
            name=str(data["name"]),
            description=str(data["help"]),
            kind=str(data["type"]),
            samples=samples,
        )
    except (KeyError, TypeError, AttributeError, ValueError) as exc:
        raise ValueError(f"malformed metric family: {exc}") from exc


def encode_families(families: Iterable[MetricFamily]) -> bytes:
    """Serialise families, each prefixed with its length as 4 little-endian bytes."""
    parts = []
    for family in families:
        body = json.dumps(_family_to_dict(family), separators=(",", ":")).encode("utf-8")
        parts.append(_LENGTH.pack(len(body)))
        parts.append(body)
    return b"".join(parts)


def decode_families(payload: bytes) -> list[MetricFamily]:
    """Read back what :func:`encode_families` wrote; raise ValueError if it is damaged."""
    families = []
    offset = 0
    view = memoryview(payload)
    while offset < len(view):
        if offset + _LENGTH.size > len(view):
            raise ValueError("truncated length prefix in metrics payload")
        (length,) = _LENGTH.unpack_from(view, offset)
        offset += _LENGTH.size
        if offset + length > len(view):
            raise ValueError("truncated metric family in metrics payload")
        data = json.loads(bytes(view[offset : offset + length]).decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("malformed metric family: expected an object")
        families.append(_family_from_dict(data))
        offset += length
    return families


def save_metrics(registry: MetricsRegistry, repo: MetricRepository, instance: str) -> None:
    """Gather every metric of ``registry`` and store it under ``instance``."""
    repo.save(instance, encode_families(registry.gather()))


def load_metrics(metrics: FileScannerMetrics, repo: MetricRepository, instance: str) -> int:
    """Add saved counter values of ``instance`` to ``metrics``.

    Only the known file scanner counters are restored. Returns how many saved
    values were added.
    """
    targets = metrics._restorable()
    restored = 0
    for family in decode_families(repo.load(instance)):
        if family.kind != COUNTER:
            continue
        target = targets.get(family.name)
        if target is None:
            continue
        for sample in family.samples:
            if sample.labels.get("instance") == instance:
                target.add(sample.value)
                restored += 1
    return restored