"""File scanner service: downloads files from FTP, scans them and reports results."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import threading
import time
from typing import Any, Callable, Mapping, Optional, Protocol

from ftpscan.config import FileScannerConfig
from ftpscan.directory_lister import RetriesExhaustedError, _run_with_timeout
from ftpscan.file_scanner_metrics import FileScannerMetrics
from ftpscan.ftp_client import FtpClient, FtpClientError
from ftpscan.messages import (
    CountMessage,
    FileScanMessage,
    FTPConnection,
    ScanResultMessage,
    same_connection,
)
from ftpscan.scanners import FileScanner

log = logging.getLogger(__name__)

_OCTAL = re.compile(r"[0-7]+")
_MAX_MODE = 0xFFFFFFFF

# Failures that processing a file is expected to report; anything else is a bug
# and stops the handler.
_PROCESSING_ERRORS = (FtpClientError, RetriesExhaustedError, OSError, ValueError)


class ReturnMessageError(Exception):
    """A message could not be sent back to its topic."""


class MessageProducer(Protocol):
    def send_message(self, topic: str, message: Any) -> None: ...


class ScanResultProducer(Protocol):
    def send_message(self, message: ScanResultMessage) -> None: ...


class FileConsumer(Protocol):
    def read_message(self) -> FileScanMessage: ...


class DownloadClient(Protocol):
    def download_file(self, remote_path: str, local_dir: str) -> Any: ...

    def check_connection(self) -> None: ...

    def close(self) -> None: ...


def _parse_permission(text: str, message_number: int) -> int:
    if not _OCTAL.fullmatch(text or ""):
        raise ValueError(
            f"message {message_number}: invalid directory permission {text!r}, expected octal digits"
        )
    mode = int(text, 8)
    if mode > _MAX_MODE:
        raise ValueError(f"message {message_number}: directory permission {text!r} is out of range")
    return mode


class FileScannerService:
    """Downloads one file, scans it and publishes the result and a completion count."""

    def __init__(
        self,
        scan_result_producer: ScanResultProducer,
        counter_producer: MessageProducer,
        config: FileScannerConfig,
        scanners: Mapping[str, FileScanner],
        metrics: Optional[FileScannerMetrics] = None,
    ) -> None:
        self.scan_result_producer = scan_result_producer
        self.producer = counter_producer
        self.config = config
        self.scanners = dict(scanners)
        self.metrics = metrics if metrics is not None else FileScannerMetrics()

    def _return_after_failed_download(self, scan_msg: FileScanMessage) -> None:
        metrics = self.metrics
        log.info("returning file %s of scan %s to Kafka", scan_msg.file_path, scan_msg.scan_id)
        message = FileScanMessage(
            scan_id=scan_msg.scan_id,
            file_path=scan_msg.file_path,
            scan_type=scan_msg.scan_type,
            ftp_connection=scan_msg.ftp_connection,
        )
        started = time.perf_counter()
        try:
            self.producer.send_message(self.config.kafka_consumer.consumer_topic, message)
        except Exception as exc:
            log.error("cannot return file %s to Kafka: %s", scan_msg.file_path, exc)
            metrics.return_error_duration.observe(time.perf_counter() - started)
            metrics.error_counter.inc()
        else:
            metrics.returning_files_duration.observe(time.perf_counter() - started)
            metrics.returned_files.inc()
            log.info("returned file %s to Kafka", scan_msg.file_path)

    def _download_with_retries(
        self,
        scan_msg: FileScanMessage,
        ftp_client: DownloadClient,
        local_dir: str,
        message_number: int,
    ) -> None:
        attempts = self.config.max_retries
        timeout = float(self.config.timeout_seconds)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            log.info("downloading %s, attempt %d", scan_msg.file_path, attempt)
            try:
                _run_with_timeout(
                    lambda: ftp_client.download_file(scan_msg.file_path, local_dir), timeout
                )
            except TimeoutError as exc:
                last_error = exc
                log.warning("timeout downloading %s, attempt %d", scan_msg.file_path, attempt)
            except Exception as exc:
                last_error = exc
                log.warning("error downloading %s, attempt %d: %s", scan_msg.file_path, attempt, exc)
            else:
                log.info("downloaded %s", scan_msg.file_path)
                return
        log.error(
            "message %d: all %d download attempts of %s failed",
            message_number,
            attempts,
            scan_msg.file_path,
        )
        self._return_after_failed_download(scan_msg)
        raise RetriesExhaustedError(
            f"all {attempts} attempts to download {scan_msg.file_path} failed"
        ) from last_error

    def _send_result(self, result_msg: ScanResultMessage) -> None:
        metrics = self.metrics
        started = time.perf_counter()
        try:
            self.scan_result_producer.send_message(result_msg)
        except Exception as exc:
            log.error("cannot send scan result of scan %s: %s", result_msg.scan_id, exc)
            metrics.error_counter.inc()
            metrics.error_sending_scan_files_result_duration.observe(time.perf_counter() - started)
        else:
            metrics.sending_scan_files_results_duration.observe(time.perf_counter() - started)
            metrics.sended_scan_files_results.inc()

    def _send_completion(self, scan_id: str) -> None:
        metrics = self.metrics
        started = time.perf_counter()
        try:
            self.producer.send_message(
                self.config.kafka_completed_files_count_producer.completed_files_count_topic,
                CountMessage(scan_id=scan_id, number=1),
            )
        except Exception as exc:
            log.error("cannot send completed file count of scan %s: %s", scan_id, exc)
            metrics.error_sending_completed_files_duration.observe(time.perf_counter() - started)
            metrics.error_counter.inc()
        else:
            metrics.sending_completed_files_duration.observe(time.perf_counter() - started)
            metrics.sended_completed_files.inc()

    def process_file(
        self, scan_msg: FileScanMessage, ftp_client: DownloadClient, message_number: int = 1
    ) -> Optional[str]:
        """Download, scan and report one file; return the scan result.

        Returns None when no scanner handles the message's scan type. Raises
        ValueError for a bad permission setting, RetriesExhaustedError when every
        download attempt failed (the message is sent back first), and the
        scanner's own error when scanning fails. Send failures are counted only.
        """
        producer_cfg = self.config.kafka_scan_result_producer
        log.info("scanning file %s for scan %s", scan_msg.file_path, scan_msg.scan_id)
        local_dir = os.path.join(producer_cfg.file_scan_download_path, scan_msg.scan_id)
        mode = _parse_permission(producer_cfg.permission, message_number)
        os.makedirs(local_dir, mode=mode, exist_ok=True)

        self._download_with_retries(scan_msg, ftp_client, local_dir, message_number)

        started = time.perf_counter()
        scanner = self.scanners.get(scan_msg.scan_type)
        if scanner is None:
            log.error("scan type %s is not supported (scan %s)", scan_msg.scan_type, scan_msg.scan_id)
            return None

        local_path = os.path.join(local_dir, posixpath.basename(scan_msg.file_path))
        result = scanner.scan(local_path)
        log.info("scan %s result for %s: %s", scan_msg.scan_id, scan_msg.file_path, result)
        self.metrics.scanned_files.inc()
        self.metrics.scan_duration.observe(time.perf_counter() - started)

        try:
            os.remove(local_path)
        except OSError as exc:
            log.error("cannot remove %s after scanning: %s", local_path, exc)

        self._send_result(
            ScanResultMessage(
                scan_id=scan_msg.scan_id,
                file_path=scan_msg.file_path,
                scan_type=scan_msg.scan_type,
                result=result,
            )
        )
        self._send_completion(scan_msg.scan_id)
        return result

    def return_message(self, scan_msg: FileScanMessage) -> None:
        """Send ``scan_msg`` back to the consumer topic, retrying up to ``max_retries`` times."""
        attempts = self.config.max_retries
        for attempt in range(1, attempts + 1):
            try:
                self.producer.send_message(self.config.kafka_consumer.consumer_topic, scan_msg)
            except Exception as exc:
                log.error("cannot return message of scan %s, attempt %d: %s", scan_msg.scan_id, attempt, exc)
            else:
                log.info("returned message of scan %s to Kafka", scan_msg.scan_id)
                return
        raise ReturnMessageError(
            f"cannot return message of scan {scan_msg.scan_id} to Kafka after {attempts} attempts"
        )


class FileKafkaHandler:
    """Reads file messages, keeps an FTP session open and processes them.

    An unexpected error while processing sends the current message back,
    calls ``on_fatal`` and stops the handler.
    """

    def __init__(
        self,
        service: FileScannerService,
        consumer: FileConsumer,
        connect: Optional[Callable[[FTPConnection], DownloadClient]] = None,
        on_fatal: Optional[Callable[[], None]] = None,
        metrics: Optional[FileScannerMetrics] = None,
    ) -> None:
        self.service = service
        self.consumer = consumer
        self.metrics = metrics if metrics is not None else service.metrics
        self._connect = connect if connect is not None else self._default_connect
        self._on_fatal = on_fatal
        self._client: Optional[DownloadClient] = None
        self._params: Optional[FTPConnection] = None
        self._current: Optional[FileScanMessage] = None
        self._message_number = 1

    def __enter__(self) -> "FileKafkaHandler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _default_connect(self, connection: FTPConnection) -> FtpClient:
        return FtpClient(
            connection.address(), connection.username, connection.password, metrics=self.metrics
        )

    def _open(self, connection: FTPConnection) -> bool:
        try:
            client = self._connect(connection)
        except Exception as exc:
            log.error("cannot connect to FTP server %s: %s", connection.address(), exc)
            return False
        self._client = client
        self._params = connection
        log.info("opened new FTP connection to %s", connection.address())
        return True

    def _drop_client(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._params = None

    def handle(self, msg: FileScanMessage) -> bool:
        """Process one message; return False if no FTP session could be opened."""
        self._current = msg
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
            self.metrics.ftp_reconnections.inc()

        try:
            self.service.process_file(msg, self._client, self._message_number)
        except _PROCESSING_ERRORS as exc:
            log.error("message %d: error processing file %s: %s", self._message_number, msg.file_path, exc)
            self._message_number += 1
        return True

    def _recover(self, exc: BaseException) -> None:
        log.error("unexpected error while processing messages: %r", exc)
        if self._current is None:
            log.error("no current message to return")
        else:
            try:
                self.service.return_message(self._current)
            except Exception as return_exc:
                log.error("cannot return message of scan %s: %s", self._current.scan_id, return_exc)
            else:
                log.info("returned message of scan %s", self._current.scan_id)
                self.metrics.returned_files.inc()
        if self._on_fatal is not None:
            self._on_fatal()

    def start(self, stop_event: threading.Event) -> None:
        """Read and handle messages until ``stop_event`` is set or an unexpected error occurs."""
        try:
            while not stop_event.is_set():
                try:
                    msg = self.consumer.read_message()
                except Exception as exc:
                    log.error("cannot read message: %s", exc)
                    continue
                self.metrics.received_messages.inc()
                self.handle(msg)
            log.info("stopped processing messages")
        except Exception as exc:
            self._recover(exc)
        finally:
            self.close()

    def close(self) -> None:
        """Close the current FTP session, if any."""
        self._drop_client()