"""Rows of pg_stat_activity and gp_segment_configuration, plus a small cache entry type."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

SEGMENT_CONFIG = "SegmentConfig"
VERSION_CONFIG = "VersionConfig"

SEGMENT_QUERY = (
    "SELECT dbid, content, role, preferred_role AS PreferredRole, mode, status, port, "
    "hostname, address, datadir FROM gp_segment_configuration"
)
VERSION_QUERY = "select version();"


@dataclass
class GpStatActivity:
    """One backend as reported by pg_stat_activity, joined with its lock information."""

    dat_id: int = 0
    datname: str = ""
    pid: int = 0
    sess_id: int = 0
    tm_id: int = 0
    usesys_id: int = 0
    usename: str = ""
    application_name: str | None = None
    client_addr: str | None = None
    client_hostname: str | None = None
    client_port: int | None = None
    backend_start: datetime | None = None
    xact_start: datetime | None = None
    query_start: datetime | None = None
    state_change: datetime | None = None
    waiting: bool | None = None
    state: str | None = None
    backend_xid: str | None = None
    backend_xmin: str | None = None
    query: str | None = None
    waiting_reason: str | None = None
    rsgid: int | None = None
    rsgname: str | None = None
    rsgqueueduration: str | None = None
    blocked_by_sess_id: int | None = None
    wait_mode: str | None = None
    locked_item: str | None = None
    locked_mode: str | None = None
    wait_event: str | None = None
    wait_event_type: str | None = None


@dataclass
class GpSegmentConfiguration:
    """One row of gp_segment_configuration."""

    dbid: int = 0
    content: int = 0
    role: str = ""
    preferred_role: str = ""
    mode: str = ""
    status: str = ""
    port: int = 0
    hostname: str = ""
    address: str = ""
    datadir: str = ""


class CacheStatus(enum.IntEnum):
    """Outcome of the last refresh of a cached value."""

    OK = 0
    ERROR = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheItem:
    """A cached value together with the time it was refreshed."""

    value: Any = None
    status: CacheStatus = CacheStatus.OK
    refresh_date: datetime = field(default_factory=_now)


def check_cache_item(item: CacheItem | None, durability: timedelta | float) -> bool:
    """Return True if the item holds a good value that is not older than ``durability``."""
    if item is None or item.value is None:
        return False
    if item.status != CacheStatus.OK:
        return False
    if not isinstance(durability, timedelta):
        durability = timedelta(seconds=durability)
    return item.refresh_date + durability >= _now()