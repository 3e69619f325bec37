"""FTP client used to list directories and download files."""

from __future__ import annotations

import ftplib
import logging
import os
import posixpath
import time
from contextlib import suppress
from typing import Any, Iterable, Iterator, Optional

log = logging.getLogger(__name__)

_DIRECTORY_TYPES = frozenset({"dir"})
_SELF_TYPES = frozenset({"cdir", "pdir"})


class FtpClientError(Exception):
    """An FTP operation failed."""


def split_entries(path: str, entries: Iterable[tuple[str, bool]]) -> tuple[list[str], list[str]]:
    """Split ``(name, is_directory)`` entries into full directory and file paths.

    The ``.`` and ``..`` entries are skipped.
    """
    directories: list[str] = []
    files: list[str] = []
    for name, is_directory in entries:
        if name in (".", ".."):
            continue
        full_path = f"{path}/{name}"
        (directories if is_directory else files).append(full_path)
    return directories, files


def _parse_list_lines(lines: Iterable[str]) -> Iterator[tuple[str, bool]]:
    """Read entries from a Unix-style ``LIST`` reply."""
    for line in lines:
        fields = line.split(None, 8)
        if len(fields) < 9:
            continue
        mode, name = fields[0], fields[8]
        if mode.startswith("l") and " -> " in name:
            name = name.split(" -> ", 1)[0]
        yield name, mode.startswith("d")


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, 21
    try:
        return host, int(port)
    except ValueError as exc:
        raise FtpClientError(f"invalid FTP address {address!r}") from exc


def _connect(address: str, username: str, password: str, timeout: float) -> ftplib.FTP:
    host, port = _split_address(address)
    log.info("connecting to FTP server %s as %s", address, username)
    ftp = ftplib.FTP(timeout=timeout)
    try:
        ftp.connect(host, port)
    except ftplib.all_errors as exc:
        log.error("cannot connect to FTP server %s: %s", address, exc)
        raise FtpClientError(f"cannot connect to FTP server {address}: {exc}") from exc
    try:
        ftp.login(username, password)
    except ftplib.all_errors as exc:
        log.error("cannot log in to FTP server %s: %s", address, exc)
        with suppress(*ftplib.all_errors):
            ftp.close()
        raise FtpClientError(f"cannot log in to FTP server {address}: {exc}") from exc
    log.info("connected to FTP server %s", address)
    return ftp


class FtpClient:
    """A logged-in FTP session.

    ``metrics``, when given, must provide ``download_duration``,
    ``downloaded_files``, ``saving_duration`` and ``saved_files_counter``.
    ``connection`` replaces the session that would otherwise be opened.
    """

    def __init__(
        self,
        address: str,
        username: str,
        password: str,
        *,
        timeout: float = 5.0,
        metrics: Optional[Any] = None,
        connection: Optional[Any] = None,
    ) -> None:
        self.address = address
        self._metrics = metrics
        self._conn = connection if connection is not None else _connect(
            address, username, password, timeout
        )

    def __enter__(self) -> "FtpClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _entries(self, path: str) -> list[tuple[str, bool]]:
        try:
            return [
                (name, facts.get("type", "").lower() in _DIRECTORY_TYPES)
                for name, facts in self._conn.mlsd(path, facts=["type"])
                if facts.get("type", "").lower() not in _SELF_TYPES
            ]
        except ftplib.error_perm:
            lines: list[str] = []
            self._conn.retrlines(f"LIST {path}", lines.append)
            return list(_parse_list_lines(lines))

    def list_directory(self, path: str) -> tuple[list[str], list[str]]:
        """Return the full paths of the subdirectories and files under ``path``."""
        log.info("listing directory %s", path)
        try:
            entries = self._entries(path)
        except ftplib.all_errors as exc:
            log.error("cannot list directory %s: %s", path, exc)
            raise FtpClientError(f"cannot list directory {path}: {exc}") from exc
        directories, files = split_entries(path, entries)
        log.info("listed %s: %d directories, %d files", path, len(directories), len(files))
        return directories, files

    def download_file(self, remote_path: str, local_dir: str) -> str:
        """Download ``remote_path`` into ``local_dir`` and return the local path."""
        log.info("downloading %s", remote_path)
        local_path = os.path.join(local_dir, posixpath.basename(remote_path))
        started = time.perf_counter()
        try:
            handle = open(local_path, "wb")
        except OSError as exc:
            log.error("cannot create file %s: %s", local_path, exc)
            raise FtpClientError(f"cannot create file {local_path}: {exc}") from exc
        try:
            with handle:
                self._conn.retrbinary(f"RETR {remote_path}", handle.write)
                downloaded = time.perf_counter()
                handle.flush()
        except ftplib.all_errors as exc:
            with suppress(OSError):
                os.remove(local_path)
            log.error("cannot download %s: %s", remote_path, exc)
            raise FtpClientError(f"cannot download {remote_path}: {exc}") from exc
        finished = time.perf_counter()
        if self._metrics is not None:
            self._metrics.download_duration.observe(downloaded - started)
            self._metrics.downloaded_files.inc()
            self._metrics.saving_duration.observe(finished - downloaded)
            self._metrics.saved_files_counter.inc()
        log.info("saved %s to %s", remote_path, local_path)
        return local_path

    def check_connection(self) -> None:
        """Send NOOP; raise FtpClientError if the session is no longer usable."""
        try:
            self._conn.voidcmd("NOOP")
        except ftplib.all_errors as exc:
            raise FtpClientError(f"FTP connection to {self.address} is not alive: {exc}") from exc

    def close(self) -> None:
        """End the session, ignoring errors from the server."""
        log.info("closing FTP connection to %s", self.address)
        with suppress(*ftplib.all_errors):
            self._conn.quit()