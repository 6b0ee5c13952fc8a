"""Agent configuration: defaults, loading from YAML or JSON files and validation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

LOG_LEVELS = ("debug", "info", "warn", "error", "dpanic", "panic", "fatal")

_UINT32_MAX = 2**32 - 1

_OPTIONAL_STR = "optional_str"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}


class ConfigError(ValueError):
    """Raised when a configuration cannot be loaded or is invalid."""


def _setting(default: Any = None, *, factory: Any = None, key: str | None = None, kind: str = "str"):
    meta = {"key": key, "kind": kind}
    if factory is not None:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


@dataclass
class LoggingConfig:
    """Where and how verbosely the agent logs."""

    level: str = _setting("debug", kind="level")
    file: str = _setting("stdout")


@dataclass
class InstrumentationConfig:
    """Address of the instrumentation endpoint and its shutdown timeout."""

    addr: str = _setting(":1433")
    shutdown_timeout: timedelta = _setting(timedelta(seconds=10), kind="duration")


@dataclass
class PrometheusConfig:
    """Prometheus push settings."""

    url: str = _setting("")
    namespace: str = _setting("")


@dataclass
class BaseConfig:
    """Settings shared by every application."""

    logging: LoggingConfig = _setting(factory=LoggingConfig, kind="nested")
    instrumentation: InstrumentationConfig = _setting(factory=InstrumentationConfig, kind="nested")
    prometheus: PrometheusConfig = _setting(factory=PrometheusConfig, kind="nested")
    app_name: str = _setting("")


@dataclass
class SegmentDescription:
    """One segment of a custom segment list."""

    dbid: int = _setting(0, kind="int")
    content: int = _setting(0, kind="int")
    hostname: str = _setting("")
    portn: int = _setting(0, kind="int")


@dataclass
class ArchiverConfig:
    """Settings of the archiver processes and their output files."""

    archiver_processes: int = _setting(4, kind="uint32")
    archiver_queue_size: int = _setting(1000, kind="uint32")
    sessions_file: str = _setting("sessions.json")
    sessions_queue_size: int = _setting(1000, kind="uint32")
    segments_file: str = _setting("segments.json")
    segments_queue_size: int = _setting(4000, kind="uint32")
    queries_file: str = _setting("queries.json")
    queries_queue_size: int = _setting(1000, kind="uint32")
    plan_detail_file: str = _setting("plan_details.json")
    plan_detail_queue_size: int = _setting(4000, kind="uint32")
    max_file_size: int = _setting(400 * 1024 * 1024, kind="int")


@dataclass
class PGConfig:
    """Connection settings for the coordinator database."""

    addrs: list[str] = _setting(factory=lambda: ["localhost:5432"], kind="strings")
    db: str = _setting("postgres")
    user: str = _setting("gpadmin")
    password: str | None = _setting(None, kind=_OPTIONAL_STR)
    sslmode: str = _setting("")
    sslrootcert: str = _setting("")
    statement_timeout: int = _setting(0, kind="int")
    max_idle_conn: int = _setting(0, kind="int")
    max_open_conn: int = _setting(0, kind="int")


@dataclass
class Config:
    """Complete agent configuration."""

    app: BaseConfig = _setting(factory=BaseConfig, kind="nested")
    socket_file: str = _setting("/tmp/yagpcc_agent.sock")
    uds_file: str = _setting("/tmp/yagpcc_agent_uds.sock")
    uds_buffer: int = _setting(4 * 1024, kind="uint32")
    listen_port: int = _setting(1432, kind="uint32")
    ping_port: int = _setting(1435, kind="uint32")
    debug_port: int = _setting(0, kind="uint32")
    debug_minutes: int = _setting(0, kind="int")
    lockfile: str = _setting("/var/run/yagpcc/yagpcc.lock")
    role: str = _setting("segment")
    clear_deleted_sessions: bool = _setting(True, kind="bool")
    master_connection: PGConfig = _setting(factory=PGConfig, kind="nested")
    master_connection_tries: int = _setting(3, kind="uint32")
    master_connection_first_tries: int = _setting(86400, kind="uint32")
    ignore_database_error: bool = _setting(False, kind="bool")
    minimum_query_duration_sec: int = _setting(10 * 60, kind="uint32")
    max_short_queries_per_user: int = _setting(2000, key="max_short_queris_per_user", kind="uint32")
    short_agg_interval: timedelta = _setting(timedelta(minutes=10), kind="duration")
    session_refresh_interval: timedelta = _setting(timedelta(seconds=30), kind="duration")
    queries_refresh_interval: timedelta = _setting(timedelta(seconds=1), kind="duration")
    session_send_metric_interval: timedelta = _setting(timedelta(seconds=60), kind="duration")
    min_free_percent: int = _setting(10, kind="uint32")
    custom_segment_list: list[SegmentDescription] | None = _setting(None, kind="segments")
    segment_pull_rate_sec: float = _setting(2.0, kind="float")
    segment_pull_threads: int = _setting(15, kind="uint32")
    segment_connect_timeout_sec: float = _setting(5.0, kind="float")
    segment_get_timeout_sec: float = _setting(10.0, kind="float")
    segment_log_work_amount: bool = _setting(False, kind="bool")
    config_cache_durability_sec: float = _setting(60.0, kind="float")
    stat_activity_durability_sec: float = _setting(1.0, kind="float")
    archiver: ArchiverConfig = _setting(factory=ArchiverConfig, key="arch_config", kind="nested")
    cluster_id: str = _setting("unknown")
    connector_enabled: bool = _setting(False, kind="bool")
    max_message_size: int = _setting(12 * 1024 * 1024, kind="int")
    max_outer_message_size: int = _setting(4 * 1024 * 1024, kind="int")
    maximum_stored_queries: int = _setting(50 * 1000, kind="uint32")

    def validate(self) -> None:
        """Check that every setting is within its allowed range."""
        _check(self, "")


def default_base_config(app_name: str = "") -> BaseConfig:
    """Return the default base configuration, optionally naming the application."""
    return BaseConfig(app_name=app_name)


def default_config() -> Config:
    """Return the default agent configuration."""
    return Config()


def read_from_file(path: str | Path) -> Config:
    """Load a configuration file over the defaults and validate the result."""
    source = Path(path)
    config = default_config()
    try:
        text = source.read_text(encoding="utf-8")
        suffix = source.suffix.lower()
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ConfigError(f"unsupported file extension {suffix!r}")
        if data is not None:
            _apply(config, data, "")
    except (OSError, yaml.YAMLError, ValueError) as exc:
        raise ConfigError(f"failed to load config from {path}: {exc}") from exc
    config.validate()
    return config


def _join(where: str, key: str) -> str:
    return f"{where}.{key}" if where else key


def _apply(target: Any, data: Any, where: str) -> None:
    if not isinstance(data, dict):
        raise ConfigError(f"{where or 'document'}: expected a mapping, got {type(data).__name__}")
    for item in fields(target):
        key = item.metadata.get("key") or item.name
        if key not in data:
            continue
        value = data[key]
        kind = item.metadata.get("kind", "str")
        path = _join(where, key)
        if kind == "nested":
            if value is not None:
                _apply(getattr(target, item.name), value, path)
            continue
        setattr(target, item.name, _convert(kind, value, path))


def _convert(kind: str, value: Any, path: str) -> Any:
    if value is None:
        return _zero(kind)
    if kind in ("str", _OPTIONAL_STR):
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise ConfigError(f"{path}: expected a string")
    if kind in ("int", "uint32"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{path}: expected an integer, got {value!r}")
        if kind == "uint32":
            _require_uint32(value, path)
        return value
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"{path}: expected a boolean, got {value!r}")
        return value
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{path}: expected a number, got {value!r}")
        return float(value)
    if kind == "duration":
        if isinstance(value, bool):
            raise ConfigError(f"{path}: expected a duration, got {value!r}")
        if isinstance(value, int):
            return timedelta(microseconds=value / 1000)
        if isinstance(value, str):
            return _parse_duration(value, path)
        raise ConfigError(f"{path}: expected a duration, got {value!r}")
    if kind == "level":
        if not isinstance(value, str):
            raise ConfigError(f"{path}: expected a log level, got {value!r}")
        level = value.lower() or "info"
        if level not in LOG_LEVELS:
            raise ConfigError(f"{path}: unrecognized level {value!r}")
        return level
    if kind == "strings":
        if not isinstance(value, list):
            raise ConfigError(f"{path}: expected a list of strings")
        return [_convert("str", entry, f"{path}[{index}]") for index, entry in enumerate(value)]
    if kind == "segments":
        if not isinstance(value, list):
            raise ConfigError(f"{path}: expected a list of segments")
        segments = []
        for index, entry in enumerate(value):
            segment = SegmentDescription()
            _apply(segment, entry, f"{path}[{index}]")
            segments.append(segment)
        return segments
    raise ConfigError(f"{path}: unknown setting kind {kind!r}")


def _zero(kind: str) -> Any:
    zeros: dict[str, Any] = {
        "str": "",
        _OPTIONAL_STR: None,
        "int": 0,
        "uint32": 0,
        "bool": False,
        "float": 0.0,
        "duration": timedelta(0),
        "level": "info",
        "strings": [],
        "segments": None,
    }
    return zeros[kind]


def _parse_duration(text: str, path: str) -> timedelta:
    body = text.strip()
    if not body:
        raise ConfigError(f"{path}: invalid duration {text!r}")
    sign = 1
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ConfigError(f"{path}: invalid duration {text!r}")
    nanoseconds = 0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ConfigError(f"{path}: invalid duration {text!r}")
        nanoseconds += round(float(match.group(1)) * _UNIT_NANOSECONDS[match.group(2)])
        pos = match.end()
    return timedelta(microseconds=sign * nanoseconds / 1000)


def _require_uint32(value: Any, path: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _UINT32_MAX:
        raise ConfigError(f"{path}: value {value!r} is out of range for an unsigned 32-bit integer")


def _check(obj: Any, where: str) -> None:
    for item in fields(obj):
        kind = item.metadata.get("kind")
        key = item.metadata.get("key") or item.name
        value = getattr(obj, item.name)
        path = _join(where, key)
        if kind == "nested":
            _check(value, path)
        elif kind == "segments" and value is not None:
            for index, segment in enumerate(value):
                _check(segment, f"{path}[{index}]")
        elif kind == "uint32":
            _require_uint32(value, path)
        elif kind == "level" and value not in LOG_LEVELS:
            raise ConfigError(f"{path}: unrecognized level {value!r}")