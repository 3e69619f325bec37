"""File scanners that turn a downloaded file into a result string."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from functools import partial
from typing import ClassVar, Iterable, Protocol, runtime_checkable

_SNIFF_LIMIT = 3072
_NEWLINE = 0x0A


@runtime_checkable
class FileScanner(Protocol):
    """Anything that scans a local file and reports a result as text."""

    def scan(self, file_path: str) -> str: ...


def _pause(delay: float) -> None:
    if delay > 0:
        time.sleep(delay)


@dataclass(frozen=True)
class ZeroBytesScanner:
    """Counts the zero bytes of a file."""

    delay: float = 0.009
    chunk_size: ClassVar[int] = 4096

    def scan(self, file_path: str) -> str:
        with open(file_path, "rb") as handle:
            zeros = sum(chunk.count(0) for chunk in iter(partial(handle.read, self.chunk_size), b""))
        _pause(self.delay)
        return str(zeros)


@dataclass(frozen=True)
class ChunkLineCounterScanner:
    """Counts lines by reading the file in 128 KiB blocks.

    When a block does not end with a newline and the next one does not start
    with one, the next block's first newline is not counted.
    """

    delay: float = 0.058
    chunk_size: ClassVar[int] = 128 * 1024

    def scan(self, file_path: str) -> str:
        total = 0
        carry = False
        with open(file_path, "rb") as handle:
            for chunk in iter(partial(handle.read, self.chunk_size), b""):
                count = chunk.count(_NEWLINE)
                if carry and chunk[0] != _NEWLINE:
                    count -= 1
                total += count
                carry = chunk[-1] != _NEWLINE
        _pause(self.delay)
        return str(total)


_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"%PDF-", "application/pdf"),
    (0, b"PK\x03\x04", "application/zip"),
    (0, b"PK\x05\x06", "application/zip"),
    (0, b"\x1f\x8b", "application/gzip"),
    (0, b"BZh", "application/x-bzip2"),
    (0, b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (0, b"\xfd7zXZ\x00", "application/x-xz"),
    (0, b"Rar!\x1a\x07", "application/x-rar-compressed"),
    (0, b"\x7fELF", "application/x-elf"),
    (0, b"SQLite format 3\x00", "application/vnd.sqlite3"),
    (0, b"II*\x00", "image/tiff"),
    (0, b"MM\x00*", "image/tiff"),
    (0, b"ID3", "audio/mpeg"),
    (0, b"fLaC", "audio/flac"),
    (0, b"OggS", "application/ogg"),
    (4, b"ftyp", "video/mp4"),
    (257, b"ustar", "application/x-tar"),
    (0, b"MZ", "application/vnd.microsoft.portable-executable"),
    (0, b"BM", "image/bmp"),
)

_RIFF_FORMATS = {b"WEBP": "image/webp", b"WAVE": "audio/wav", b"AVI ": "video/x-msvideo"}

_TEXT_CONTROLS = frozenset(b"\t\n\r\f\x1b")


def _text_type(data: bytes, truncated: bool) -> str | None:
    if data.startswith(b"\xff\xfe"):
        return "text/plain; charset=utf-16le"
    if data.startswith(b"\xfe\xff"):
        return "text/plain; charset=utf-16be"
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    if any(byte < 0x20 and byte not in _TEXT_CONTROLS for byte in data) or 0x7F in data:
        return None
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        if not (truncated and exc.start >= len(data) - 3 and exc.reason == "unexpected end of data"):
            return None
        text = data[: exc.start].decode("utf-8")
    head = text.lstrip()[:64].lower()
    if head.startswith("<?xml"):
        return "text/xml; charset=utf-8"
    if head.startswith(("<!doctype html", "<html")):
        return "text/html; charset=utf-8"
    if head.startswith(("{", "[")) and not truncated:
        try:
            json.loads(text)
        except ValueError:
            pass
        else:
            return "application/json"
    return "text/plain; charset=utf-8"


def detect_mime_type(data: bytes) -> str:
    """Guess a MIME type from the leading bytes of a file."""
    if not data:
        return "text/plain"
    truncated = len(data) > _SNIFF_LIMIT
    data = data[:_SNIFF_LIMIT]
    if data.startswith(b"RIFF") and data[8:12] in _RIFF_FORMATS:
        return _RIFF_FORMATS[data[8:12]]
    for offset, magic, mime in _SIGNATURES:
        if data[offset : offset + len(magic)] == magic:
            return mime
    return _text_type(data, truncated) or "application/octet-stream"


@dataclass(frozen=True)
class FileMetaScanner:
    """Reports a file's MIME type detected from its content."""

    delay: float = 0.15

    def scan(self, file_path: str) -> str:
        with open(file_path, "rb") as handle:
            head = handle.read(_SNIFF_LIMIT + 1)
        mime = detect_mime_type(head)
        _pause(self.delay)
        return mime


_FACTORIES = {
    "zero_bytes": ZeroBytesScanner,
    "filemeta": FileMetaScanner,
    "lines_counter": ChunkLineCounterScanner,
}


def build_scanners(scanner_types: Iterable[str]) -> dict[str, FileScanner]:
    """Create a scanner for each known type name; unknown names are skipped."""
    return {name: _FACTORIES[name]() for name in scanner_types if name in _FACTORIES}