"""Directory lister: lists FTP directories and fans their contents out to topics."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

from ftpscan.config import DirectoryListerKafkaConfig
from ftpscan.ftp_client import FtpClient
from ftpscan.lister_metrics import DirectoryListerMetrics
from ftpscan.messages import (
    CountMessage,
    DirectoryScanMessage,
    FileScanMessage,
    FTPConnection,
    same_connection,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


class RetriesExhaustedError(Exception):
    """Every attempt of a retried operation failed or timed out."""


class MessageProducer(Protocol):
    def send_message(self, topic: str, message: Any) -> None: ...


class DirectoryConsumer(Protocol):
    def read_message(self) -> DirectoryScanMessage: ...


class ListingClient(Protocol):
    def list_directory(self, path: str) -> tuple[list[str], list[str]]: ...

    def check_connection(self) -> None: ...

    def close(self) -> None: ...


def _run_with_timeout(func: Callable[[], T], timeout: float) -> T:
    """Run ``func`` in a background thread; raise TimeoutError if it is too slow.

    A call that times out keeps running in the background; its result is dropped.
    """
    results: queue.Queue = queue.Queue(maxsize=1)

    def runner() -> None:
        try:
            results.put((True, func()))
        except BaseException as exc:  # handed over to the waiting thread
            results.put((False, exc))

    threading.Thread(target=runner, daemon=True).start()
    try:
        ok, value = results.get(timeout=max(0.0, timeout))
    except queue.Empty:
        raise TimeoutError(f"operation did not finish within {timeout} seconds") from None
    if ok:
        return value
    raise value


def _connect(connection: FTPConnection) -> FtpClient:
    return FtpClient(connection.address(), connection.username, connection.password)


class DirectoryListerService:
    """Lists one directory and sends subdirectories, files and counts to Kafka."""

    def __init__(
        self,
        producer: MessageProducer,
        config: DirectoryListerKafkaConfig,
        metrics: Optional[DirectoryListerMetrics] = None,
    ) -> None:
        self.producer = producer
        self.config = config
        self.metrics = metrics if metrics is not None else DirectoryListerMetrics()

    @property
    def _timeout(self) -> float:
        return float(self.config.timeout_seconds)

    def _list_with_retries(
        self, ftp_client: ListingClient, directory_path: str
    ) -> tuple[list[str], list[str]]:
        def listing() -> tuple[list[str], list[str]]:
            started = time.perf_counter()
            try:
                return ftp_client.list_directory(directory_path)
            finally:
                self.metrics.ftp_list_duration.observe(time.perf_counter() - started)

        attempts = self.config.max_retries
        for attempt in range(1, attempts + 1):
            log.info("listing %s, attempt %d", directory_path, attempt)
            try:
                dirs, files = _run_with_timeout(listing, self._timeout)
            except TimeoutError:
                log.warning("timeout listing %s, attempt %d", directory_path, attempt)
            except Exception as exc:
                log.error("error listing %s, attempt %d: %s", directory_path, attempt, exc)
            else:
                return list(dirs), list(files)
        raise RetriesExhaustedError(
            f"all {attempts} attempts to list directory {directory_path} failed"
        )

    def _send_with_retries(self, topic: str, message: Any, description: str) -> None:
        attempts = self.config.max_retries
        for attempt in range(1, attempts + 1):
            try:
                _run_with_timeout(lambda: self.producer.send_message(topic, message), self._timeout)
            except TimeoutError:
                log.warning("timeout sending %s to %s, attempt %d", description, topic, attempt)
            except Exception as exc:
                log.error(
                    "error sending %s to %s, attempt %d: %s", description, topic, attempt, exc
                )
            else:
                return
        raise RetriesExhaustedError(
            f"cannot send {description} to topic {topic} after {attempts} attempts"
        )

    def _send(self, topic: str, message: Any, description: str) -> bool:
        try:
            self._send_with_retries(topic, message, description)
        except RetriesExhaustedError as exc:
            self.metrics.kafka_send_errors.inc()
            log.error("%s", exc)
            return False
        return True

    def process_directory(self, scan_msg: DirectoryScanMessage, ftp_client: ListingClient) -> None:
        """List ``scan_msg``'s directory and publish what was found.

        If listing fails every attempt, the directory is sent back to its topic
        and RetriesExhaustedError is raised. Send failures are counted, not raised.
        """
        cfg = self.config
        metrics = self.metrics
        log.info("scanning directory %s for scan %s", scan_msg.directory_path, scan_msg.scan_id)
        try:
            dirs, files = self._list_with_retries(ftp_client, scan_msg.directory_path)
        except RetriesExhaustedError:
            returned = DirectoryScanMessage(
                scan_id=scan_msg.scan_id,
                directory_path=scan_msg.directory_path,
                scan_types=scan_msg.scan_types,
                ftp_connection=scan_msg.ftp_connection,
            )
            if self._send(
                cfg.directories_to_scan_topic,
                returned,
                f"directory {scan_msg.directory_path} returned after failed listing",
            ):
                metrics.kafka_messages_returned_dirs.inc()
            raise

        metrics.directories_processed.inc()

        if dirs:
            for directory in dirs:
                message = DirectoryScanMessage(
                    scan_id=scan_msg.scan_id,
                    directory_path=directory,
                    scan_types=scan_msg.scan_types,
                    ftp_connection=scan_msg.ftp_connection,
                )
                if self._send(
                    cfg.directories_to_scan_topic, message, f"subdirectory {directory}"
                ):
                    metrics.kafka_messages_sent_directories.inc()
            if self._send(
                cfg.scan_directories_count_topic,
                CountMessage(scan_id=scan_msg.scan_id, number=len(dirs)),
                f"directory count of {scan_msg.directory_path}",
            ):
                metrics.kafka_messages_sent_scan_dirs_count.add(len(dirs))

        if files:
            metrics.files_found.add(len(files))
            metrics.files_found_by_scan_types.add(len(files) * len(scan_msg.scan_types))
            for file_path in files:
                for scan_type in scan_msg.scan_types:
                    message = FileScanMessage(
                        scan_id=scan_msg.scan_id,
                        file_path=file_path,
                        scan_type=scan_type,
                        ftp_connection=scan_msg.ftp_connection,
                    )
                    if self._send(cfg.files_to_scan_topic, message, f"file {file_path}"):
                        metrics.kafka_messages_sent_files.inc()
            if self._send(
                cfg.scan_files_count_topic,
                CountMessage(
                    scan_id=scan_msg.scan_id, number=len(files) * len(scan_msg.scan_types)
                ),
                f"file count of {scan_msg.directory_path}",
            ):
                metrics.kafka_messages_sent_scan_files_count.add(len(files))

        if self._send(
            cfg.completed_directories_count_topic,
            CountMessage(scan_id=scan_msg.scan_id, number=1),
            f"completion of {scan_msg.directory_path}",
        ):
            metrics.kafka_messages_sent_completed_dirs_count.inc()


class DirectoryKafkaHandler:
    """Reads directory messages, keeps an FTP session open and processes them."""

    def __init__(
        self,
        service: DirectoryListerService,
        consumer: DirectoryConsumer,
        connect: Callable[[FTPConnection], ListingClient] = _connect,
        metrics: Optional[DirectoryListerMetrics] = None,
    ) -> None:
        self.service = service
        self.consumer = consumer
        self._connect = connect
        self.metrics = metrics if metrics is not None else service.metrics
        self._client: Optional[ListingClient] = None
        self._params: Optional[FTPConnection] = None

    def __enter__(self) -> "DirectoryKafkaHandler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _open(self, connection: FTPConnection) -> bool:
        try:
            client = self._connect(connection)
        except Exception as exc:
            log.error("cannot connect to FTP server %s: %s", connection.address(), exc)
            return False
        self._client = client
        self._params = connection
        self.metrics.ftp_reconnections.inc()
        log.info("opened new FTP connection to %s", connection.address())
        return True

    def _drop_client(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._params = None

    def handle(self, msg: DirectoryScanMessage) -> bool:
        """Process one message; return False if no FTP session could be opened."""
        if self._client is None or not same_connection(self._params, msg.ftp_connection):
            self._drop_client()
            if not self._open(msg.ftp_connection):
                return False

        assert self._client is not None
        try:
            self._client.check_connection()
        except Exception:
            log.warning("FTP connection is not alive, reconnecting")
            self._drop_client()
            if not self._open(msg.ftp_connection):
                return False

        log.info("processing message %s", msg)
        started = time.perf_counter()
        try:
            self.service.process_directory(msg, self._client)
        except Exception as exc:
            log.error("error processing directory %s: %s", msg.directory_path, exc)
        self.metrics.processing_duration.observe(time.perf_counter() - started)
        return True

    def start(self, stop_event: threading.Event) -> None:
        """Read and handle messages until ``stop_event`` is set, then close the session."""
        try:
            while not stop_event.is_set():
                try:
                    msg = self.consumer.read_message()
                except Exception as exc:
                    log.error("cannot read message: %s", exc)
                    self.metrics.read_errors.inc()
                    continue
                self.metrics.received_messages.inc()
                self.handle(msg)
            log.info("stopped processing messages")
        finally:
            self.close()

    def close(self) -> None:
        """Close the current FTP session, if any."""
        self._drop_client()