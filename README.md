# ftpscan

Building blocks for a distributed FTP scanning pipeline. A directory
lister walks directories on FTP servers and fans out what it finds; a file
scanner downloads single files, runs a content scanner over them and
reports the result; a counter reducer folds per-scan counters together.
Each worker keeps its own set of counters and histograms.

## Modules

- `ftpscan.config`: the unified YAML configuration.
  `load_unified_config(path)` reads a file and `parse_unified_config(data)`
  parses text or bytes. Both return an `UnifiedConfig` with one section per
  service (`file_scanner`, `directory_lister`, `main_service`,
  `counter_reducer`, `scan_result_reducer`, `report_service`,
  `status_service`, `push_gateway`). Unknown keys are ignored, missing keys
  take empty defaults, and a value of the wrong kind (for example text where
  an integer is expected) raises `ValueError`.
- `ftpscan.messages`: the frozen dataclasses passed between workers:
  `FTPConnection` (with `address()` giving `"server:port"`),
  `DirectoryScanMessage`, `FileScanMessage`, `ScanResultMessage` and
  `CountMessage`. `same_connection(a, b)` is true when both connections are
  given and share server, port, username and password.
- `ftpscan.ftp_client`: `FtpClient(address, username, password)` opens and
  logs in to an FTP session (`ftplib`). `list_directory(path)` returns the
  full paths of sub-directories and files (using `MLSD`, falling back to a
  Unix-style `LIST`), `download_file(remote_path, local_dir)` saves a file
  and returns its local path, `check_connection()` sends `NOOP`, and
  `close()` ends the session. It is also a context manager. Failures raise
  `FtpClientError`. `split_entries(path, entries)` splits
  `(name, is_directory)` pairs into directory and file paths, skipping `.`
  and `..`.
- `ftpscan.scanners`: scanners behind the `FileScanner` protocol
  (`scan(file_path) -> str`): `ZeroBytesScanner` counts NUL bytes,
  `ChunkLineCounterScanner` counts newlines in 128 KiB blocks, and
  `FileMetaScanner` reports a MIME type guessed by `detect_mime_type(data)`
  from a file's leading bytes (a fixed table of common signatures plus a
  text/HTML/XML/JSON check). Each scanner pauses briefly after scanning; pass
  `delay=0` to turn that off. `build_scanners(scanner_types)` builds the
  scanners named `zero_bytes`, `filemeta` and `lines_counter`; other names
  are skipped.
- `ftpscan.metrics`: `Counter`, `Histogram`, `exponential_buckets` and a
  `MetricsRegistry` whose `gather()` returns `MetricFamily` objects sorted by
  name. Registering the same name and labels twice, or one name with a
  different type or description, raises `DuplicateMetricError`.
- `ftpscan.directory_lister`: `DirectoryListerService.process_directory`
  lists one directory with retries and a per-attempt timeout, then sends each
  sub-directory, one `FileScanMessage` per file and scan type, the directory
  and file counts, and a completion count. If every listing attempt fails the
  directory is sent back to its topic and `RetriesExhaustedError` is raised;
  send failures are only counted. `DirectoryKafkaHandler` reads messages,
  keeps one FTP session open across them, and reconnects when the connection
  parameters change or the session stops answering.
- `ftpscan.file_scanner`: `FileScannerService.process_file` creates the
  download directory with the configured octal permission, downloads the file
  with retries (sending the message back when all attempts fail), scans it,
  deletes the local copy, and sends the result and a completion count.
  `return_message` resends a message, raising `ReturnMessageError` after
  `max_retries` failures. `FileKafkaHandler` drives the service from a message
  stream; an unexpected error sends the current message back, calls the
  optional `on_fatal` callback and stops the handler.
- `ftpscan.counter_reducer`: `reduce_messages(messages)` sums
  `CountMessage` numbers per scan id (in first-seen order) and also returns
  the overall total. `CounterReducer` reads batches, reduces them, stores the
  totals and counts storage errors.
- `ftpscan.lister_metrics`, `ftpscan.file_scanner_metrics` and
  `CounterReducerMetrics` in `ftpscan.counter_reducer`: the metric sets of
  each worker, labelled with an instance name; each has
  `register(registry)`. `save_metrics(registry, repo, instance)` stores all
  gathered families as length-prefixed records, and
  `load_metrics(metrics, repo, instance)` adds the saved file scanner counters
  of that instance back and returns how many values it restored.
  `encode_families` and `decode_families` are the underlying format.

## Plugging in transports and storage

The workers take plain objects for their queues and storage:

- a producer with `send_message(topic, message)`; the scan-result producer
  of `FileScannerService` has `send_message(message)`;
- a consumer with `read_message()` (lister and file scanner) or
  `read_messages(batch_size, timeout)` (counter reducer);
- a counter repository with `insert_reduced_counters(counts)`;
- a metric repository with `save(instance, payload)` and `load(instance)`.

The `start(stop_event)` methods loop until the given `threading.Event` is
set.

## Examples

```python
from ftpscan.config import load_unified_config
from ftpscan.scanners import build_scanners

config = load_unified_config("config/config.yaml")
scanners = build_scanners(config.file_scanner.kafka_scan_result_producer.scanner_types)
for name, scanner in scanners.items():
    print(name, scanner.scan("/tmp/sample.bin"))
```

```python
from ftpscan.ftp_client import FtpClient

password = "password"
with FtpClient("ftp.example.com:21", "user", password) as client:
    directories, files = client.list_directory("/pub")
```

```python
from ftpscan.counter_reducer import reduce_messages
from ftpscan.messages import CountMessage

reduced, total = reduce_messages([
    CountMessage(scan_id="scan-1", number=3),
    CountMessage(scan_id="scan-1", number=2),
    CountMessage(scan_id="scan-2", number=1),
])
# reduced == [CountMessage("scan-1", 5), CountMessage("scan-2", 1)]; total == 6
```

## What the package does not do

- It has no commands and starts no services: there is no program that loads
  the configuration and runs a worker. Wiring a worker together is left to
  the caller.
- It has no message-queue client and no database client. Producers,
  consumers and repositories must be supplied as objects with the methods
  listed above.
- It does not serve metrics over HTTP or push them anywhere; metrics are only
  kept in memory and gathered through `MetricsRegistry.gather()`.
- The sections of the configuration for the main, report, status and
  scan-result reducer services are parsed, but nothing in the package uses
  them.