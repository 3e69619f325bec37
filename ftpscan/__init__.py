"""Workers for listing FTP directories, scanning files, reducing scan counters and keeping their metrics."""

__version__ = "0.1.0"