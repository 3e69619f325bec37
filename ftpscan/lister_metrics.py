"""Metrics of the directory lister service."""

from __future__ import annotations

from ftpscan.metrics import Counter, Histogram, MetricsRegistry, exponential_buckets


class DirectoryListerMetrics:
    """All directory lister metrics, labelled with one instance name."""

    def __init__(self, instance: str = "") -> None:
        labels = {"instance": instance}

        def counter(name: str, description: str) -> Counter:
            return Counter(name, description, labels=labels)

        self.instance = instance
        self.received_messages = counter(
            "directory_lister_received_messages_total",
            "Number of messages successfully read from Kafka",
        )
        self.read_errors = counter(
            "directory_lister_read_errors_total", "Number of errors reading messages from Kafka"
        )
        self.processing_duration = Histogram(
            "directory_lister_processing_duration_seconds",
            "Time to process one message",
            buckets=exponential_buckets(0.00005, 2, 20),
            labels=labels,
        )
        self.ftp_reconnections = counter(
            "directory_lister_ftp_reconnections_total", "Number of FTP reconnections"
        )
        self.directories_processed = counter(
            "directory_lister_directories_processed_total", "Number of directories processed"
        )
        self.files_found = counter("directory_lister_files_found_total", "Number of files found")
        self.files_found_by_scan_types = counter(
            "directory_lister_found_files_multiplied_by_scan_types_total",
            "Number of files found multiplied by the number of scan types",
        )
        self.ftp_list_duration = Histogram(
            "directory_lister_ftp_list_directory_duration_seconds",
            "Time to list a directory",
            buckets=exponential_buckets(0.001, 2, 15),
            labels=labels,
        )
        self.kafka_messages_sent_directories = counter(
            "directory_lister_kafka_messages_sent_directories_total",
            "Number of directory messages sent",
        )
        self.kafka_messages_sent_files = counter(
            "directory_lister_kafka_messages_sent_files_total", "Number of file messages sent"
        )
        self.kafka_messages_returned_dirs = counter(
            "directory_lister_kafka_messages_returned_directories_total",
            "Number of directory messages returned",
        )
        self.kafka_messages_sent_scan_files_count = counter(
            "directory_lister_kafka_messages_sent_scan_files_count_total",
            "Number of files reported in file count messages",
        )
        self.kafka_messages_sent_scan_dirs_count = counter(
            "directory_lister_kafka_messages_sent_scan_dirs_count_total",
            "Number of directories reported in directory count messages",
        )
        self.kafka_messages_sent_completed_dirs_count = counter(
            "directory_lister_kafka_messages_sent_completed_dirs_count_total",
            "Number of completed directory messages sent",
        )
        self.kafka_send_errors = counter(
            "directory_lister_kafka_send_errors_total", "Number of errors sending messages to Kafka"
        )

    def _all(self) -> tuple[Counter | Histogram, ...]:
        return (
            self.received_messages,
            self.read_errors,
            self.processing_duration,
            self.ftp_reconnections,
            self.directories_processed,
            self.files_found,
            self.files_found_by_scan_types,
            self.ftp_list_duration,
            self.kafka_messages_sent_directories,
            self.kafka_messages_sent_files,
            self.kafka_messages_returned_dirs,
            self.kafka_messages_sent_scan_files_count,
            self.kafka_messages_sent_scan_dirs_count,
            self.kafka_messages_sent_completed_dirs_count,
            self.kafka_send_errors,
        )

    def register(self, registry: MetricsRegistry) -> "DirectoryListerMetrics":
        """Register every metric in ``registry``; return self."""
        registry.register(*self._all())
        return self