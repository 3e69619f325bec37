"""Unified YAML configuration shared by all scanner services."""

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union, get_args, get_origin

import yaml

_NULLS = frozenset({"", "~", "null", "Null", "NULL"})


def _setting(key: str, default: Any = dataclasses.MISSING, *, factory: Any = dataclasses.MISSING) -> Any:
    return field(default=default, default_factory=factory, metadata={"yaml": key})


@dataclass
class MongoConfig:
    """Connection to one MongoDB collection."""

    uri: str = _setting("mongo_uri", "")
    database: str = _setting("mongo_db", "")
    collection: str = _setting("mongo_collection", "")


class FileScannerMongo(MongoConfig):
    """MongoDB collection where the file scanner keeps its metrics."""


@dataclass
class MetricsConfig:
    """Prometheus endpoint of a service."""

    prom_http_port: str = _setting("prom_http_port", "")
    instance: str = _setting("instance", "")


@dataclass
class PushGatewayConfig:
    url: str = _setting("url", "")
    job_name: str = _setting("job_name", "")
    instance: str = _setting("instance", "")
    push_interval: int = _setting("push_interval", 0)


@dataclass
class FileScannerMetrics:
    prom_http_port: str = _setting("prom_http_port", "")
    instance: str = _setting("instance", "")
    push_gateway: PushGatewayConfig = _setting("push_gateway", factory=PushGatewayConfig)


@dataclass
class FileScannerConsumer:
    brokers: list[str] = _setting("brokers", factory=list)
    consumer_topic: str = _setting("consumer_topic", "")
    consumer_group: str = _setting("consumer_group", "")


@dataclass
class RoutingRule:
    """Sends results of one scan type with a given value to extra topics."""

    scan_type: str = _setting("scan_type", "")
    trigger_value: str = _setting("trigger_value", "")
    output_topics: list[str] = _setting("output_topics", factory=list)


@dataclass
class RoutingConfig:
    rules: list[RoutingRule] = _setting("rules", factory=list)
    default_topic: str = _setting("default_topic", "")


@dataclass
class FileScannerProducerScanResults:
    broker: str = _setting("broker", "")
    file_scan_download_path: str = _setting("file_scan_download_path", "")
    permission: str = _setting("permission", "")
    scanner_types: list[str] = _setting("scanner_types", factory=list)
    routing: RoutingConfig = _setting("routing", factory=RoutingConfig)


@dataclass
class FileScannerProducerCompletedFilesCount:
    broker: str = _setting("broker", "")
    completed_files_count_topic: str = _setting("completed_files_count_topic", "")


@dataclass
class FileScannerConfig:
    kafka_consumer: FileScannerConsumer = _setting("kafka_consumer", factory=FileScannerConsumer)
    kafka_scan_result_producer: FileScannerProducerScanResults = _setting(
        "kafka_scan_result_producer", factory=FileScannerProducerScanResults
    )
    kafka_completed_files_count_producer: FileScannerProducerCompletedFilesCount = _setting(
        "kafka_completed_files_count_producer", factory=FileScannerProducerCompletedFilesCount
    )
    metrics: FileScannerMetrics = _setting("metrics", factory=FileScannerMetrics)
    max_retries: int = _setting("max_retries", 0)
    timeout_seconds: int = _setting("timeout_seconds", 0)
    mongo: FileScannerMongo = _setting("mongo", factory=FileScannerMongo)


@dataclass
class DirectoryListerKafkaConfig:
    broker: str = _setting("broker", "")
    consumer_topic: str = _setting("consumer_topic", "")
    consumer_group: str = _setting("consumer_group", "")
    directories_to_scan_topic: str = _setting("directories_to_scan_topic", "")
    scan_directories_count_topic: str = _setting("scan_directories_count_topic", "")
    files_to_scan_topic: str = _setting("files_to_scan_topic", "")
    scan_files_count_topic: str = _setting("scan_files_count_topic", "")
    completed_directories_count_topic: str = _setting("completed_directories_count_topic", "")
    max_retries: int = _setting("max_retries", 0)
    timeout_seconds: int = _setting("timeout_seconds", 0)


@dataclass
class DirectoryListerConfig:
    kafka: DirectoryListerKafkaConfig = _setting("kafka", factory=DirectoryListerKafkaConfig)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class MainServiceKafka:
    broker: str = _setting("broker", "")
    directory_topic: str = _setting("directory_topic", "")


@dataclass
class MainServiceGrpc:
    report_server_address: str = _setting("report_server_address", "")
    report_server_port: str = _setting("report_server_port", "")
    status_server_address: str = _setting("status_server_address", "")
    status_server_port: str = _setting("status_server_port", "")


@dataclass
class MainServiceHttp:
    port: str = _setting("port", "")


@dataclass
class MainServiceConfig:
    kafka: MainServiceKafka = _setting("kafka", factory=MainServiceKafka)
    grpc: MainServiceGrpc = _setting("grpc", factory=MainServiceGrpc)
    http: MainServiceHttp = _setting("http", factory=MainServiceHttp)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class CounterReducerKafka:
    brokers: list[str] = _setting("brokers", factory=list)
    counter_reducer_topic: str = _setting("counter_reducer_topic", "")
    counter_reducer_group: str = _setting("counter_reducer_group", "")
    batch_size: int = _setting("batch_size", 0)
    duration: int = _setting("duration", 0)


@dataclass
class CounterReducerConfig:
    kafka: CounterReducerKafka = _setting("kafka", factory=CounterReducerKafka)
    mongo: MongoConfig = _setting("mongo", factory=MongoConfig)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class ScanResultReducerKafka:
    brokers: list[str] = _setting("brokers", factory=list)
    consumer_topic: str = _setting("consumer_topic", "")
    consumer_group: str = _setting("consumer_group", "")
    batch_size: int = _setting("batch_size", 0)
    duration: int = _setting("duration", 0)


@dataclass
class ScanResultReducerConfig:
    kafka: ScanResultReducerKafka = _setting("kafka", factory=ScanResultReducerKafka)
    mongo: MongoConfig = _setting("mongo", factory=MongoConfig)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class ReportServiceGrpc:
    server_port: str = _setting("server_port", "")


@dataclass
class ReportServiceRepository:
    directory: str = _setting("directory", "")


@dataclass
class ReportServiceConfig:
    mongo: MongoConfig = _setting("mongo", factory=MongoConfig)
    grpc: ReportServiceGrpc = _setting("grpc", factory=ReportServiceGrpc)
    repository: ReportServiceRepository = _setting("repository", factory=ReportServiceRepository)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class StatusServiceMongo:
    uri: str = _setting("mongo_uri", "")
    database: str = _setting("mongo_db", "")
    scan_directories_count: str = _setting("scan_directories_count_collection", "")
    scan_files_count: str = _setting("scan_files_count_collection", "")
    completed_directories_count: str = _setting("completed_directories_count_collection", "")
    completed_files_count: str = _setting("completed_files_count_collection", "")


@dataclass
class StatusServiceGrpc:
    port: str = _setting("port", "")


@dataclass
class StatusServiceConfig:
    mongo: StatusServiceMongo = _setting("mongo", factory=StatusServiceMongo)
    grpc: StatusServiceGrpc = _setting("grpc", factory=StatusServiceGrpc)
    metrics: MetricsConfig = _setting("metrics", factory=MetricsConfig)


@dataclass
class JaegerSampler:
    sampler_type: str = _setting("type", "")
    param: float = _setting("param", 0.0)


@dataclass
class JaegerReporter:
    log_spans: bool = _setting("log_spans", False)


@dataclass
class UnifiedConfig:
    """Settings of every service, read from one YAML document."""

    file_scanner: FileScannerConfig = _setting("file_scanner_service", factory=FileScannerConfig)
    directory_lister: DirectoryListerConfig = _setting(
        "directory_lister_service", factory=DirectoryListerConfig
    )
    main_service: MainServiceConfig = _setting("main_service", factory=MainServiceConfig)
    counter_reducer: CounterReducerConfig = _setting(
        "counter_reducer_service", factory=CounterReducerConfig
    )
    scan_result_reducer: ScanResultReducerConfig = _setting(
        "scan_result_reducer_service", factory=ScanResultReducerConfig
    )
    report_service: ReportServiceConfig = _setting("report_service", factory=ReportServiceConfig)
    status_service: StatusServiceConfig = _setting("status_service", factory=StatusServiceConfig)
    push_gateway: PushGatewayConfig = _setting("push_gateway", factory=PushGatewayConfig)


def _resolve_scalar(text: str, where: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"{where}: cannot read value {text!r}") from exc


def _decode_scalar(tp: Any, node: Any, where: str) -> Any:
    if isinstance(node, (list, dict)):
        raise ValueError(f"{where}: expected a scalar value")
    if tp is str:
        return "" if node in _NULLS else node
    if node in _NULLS:
        return tp()
    value = _resolve_scalar(node, where)
    if tp is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{where}: expected a boolean, got {node!r}")
        return value
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{where}: expected an integer, got {node!r}")
        return value
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{where}: expected a number, got {node!r}")
        return float(value)
    raise TypeError(f"{where}: unsupported setting type {tp!r}")


def _decode_struct(cls: type, node: Any, where: str) -> Any:
    if isinstance(node, str) and node in _NULLS:
        return cls()
    if not isinstance(node, dict):
        raise ValueError(f"{where}: expected a mapping")
    values = {
        f.name: _decode(f.type, node[key], f"{where}.{key}")
        for f in dataclasses.fields(cls)
        if (key := f.metadata["yaml"]) in node
    }
    return cls(**values)


def _decode(tp: Any, node: Any, where: str) -> Any:
    if dataclasses.is_dataclass(tp):
        return _decode_struct(tp, node, where)
    if get_origin(tp) is list:
        (item_type,) = get_args(tp)
        if isinstance(node, str) and node in _NULLS:
            return []
        if not isinstance(node, list):
            raise ValueError(f"{where}: expected a list")
        return [_decode(item_type, item, f"{where}[{pos}]") for pos, item in enumerate(node)]
    return _decode_scalar(tp, node, where)


def parse_unified_config(data: Union[str, bytes]) -> UnifiedConfig:
    """Build the configuration from YAML text; unknown keys are ignored."""
    try:
        document = yaml.load(data, Loader=yaml.BaseLoader)
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML: {exc}") from exc
    if document is None:
        return UnifiedConfig()
    return _decode_struct(UnifiedConfig, document, "config")


def load_unified_config(path: Union[str, Path]) -> UnifiedConfig:
    """Read and parse the YAML configuration file at ``path``."""
    return parse_unified_config(Path(path).read_bytes())