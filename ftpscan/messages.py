"""Messages exchanged between the scanner services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class FTPConnection:
    """Where and how to log in to an FTP server."""

    server: str = ""
    port: int = 0
    username: str = ""
    password: str = field(default="", repr=False)

    def address(self) -> str:
        return f"{self.server}:{self.port}"


def same_connection(a: Optional[FTPConnection], b: Optional[FTPConnection]) -> bool:
    """True when both connections are given and use the same server and login."""
    if a is None or b is None:
        return False
    return (a.server, a.port, a.username, a.password) == (b.server, b.port, b.username, b.password)


@dataclass(frozen=True)
class DirectoryScanMessage:
    """A directory to be listed as part of a scan."""

    scan_id: str
    directory_path: str
    scan_types: tuple[str, ...] = ()
    ftp_connection: FTPConnection = field(default_factory=FTPConnection)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scan_types", tuple(self.scan_types))


@dataclass(frozen=True)
class FileScanMessage:
    """A file to be downloaded and scanned with one scan type."""

    scan_id: str
    file_path: str
    scan_type: str
    ftp_connection: FTPConnection = field(default_factory=FTPConnection)


@dataclass(frozen=True)
class ScanResultMessage:
    """The result of scanning one file."""

    scan_id: str
    file_path: str
    scan_type: str
    result: str


@dataclass(frozen=True)
class CountMessage:
    """A number to be added to one of a scan's counters."""

    scan_id: str
    number: int