"""Row types read from pg_stat_activity and pg_locks, and a periodically refreshed cache of them."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Protocol, Sequence, TypeVar

GP6_SESSIONS_QUERY = """
    SELECT
        datid,
        datname,
        pid,
        sess_id AS SessID,
        cast(extract(epoch from pg_postmaster_start_time()) AS bigint) AS TmID,
        usesysid,
        usename,
        application_name AS ApplicationName,
        client_addr AS ClientAddr,
        client_hostname AS ClientHostname,
        client_port AS ClientPort,
        backend_start AS BackendStart,
        xact_start AS XactStart,
        query_start AS QueryStart,
        state_change AS StateChange,
        waiting,
        state,
        backend_xid AS BackendXid,
        backend_xmin AS backendXmin,
        query,
        waiting_reason AS WaitingReason,
        rsgid,
        rsgname,
        rsgqueueduration,
        '' as WaitEvent,
        '' AS WaitEventType
    FROM pg_stat_activity
"""

GP6_ALL_SESSIONS_QUERY = """
select
  pg_catalog.gp_execution_segment() as GpSegmentId,
  pid,
  sess_id as SessId,
  '' as BackendType
from
  gp_dist_random('pg_stat_activity')
union all
select
  pg_catalog.gp_execution_segment() as GpSegmentId,
  pid,
  sess_id as SessId,
  '' as BackendType
from
  pg_stat_activity;
"""

CLOUDBERRY_SESSIONS_QUERY = """
    SELECT
        COALESCE(datid, 0) as datid,
        COALESCE(datname, 'system') as datname,
        pid,
        sess_id AS SessID,
        cast(extract(epoch from pg_postmaster_start_time()) AS bigint) AS TmID,
        COALESCE(usesysid, 0) as usesysid,
        COALESCE(usename, 'system') as usename,
        application_name AS ApplicationName,
        client_addr AS ClientAddr,
        client_hostname AS ClientHostname,
        client_port AS ClientPort,
        backend_start AS BackendStart,
        xact_start AS XactStart,
        query_start AS QueryStart,
        state_change AS StateChange,
        false as waiting,
        state,
        backend_xid AS BackendXid,
        backend_xmin AS backendXmin,
        query,
        '' as WaitingReason,
        rsgid,
        rsgname,
        0 as rsgqueueduration,
        wait_event as WaitEvent,
        wait_event_type AS WaitEventType
    FROM pg_stat_activity
"""

CLOUDBERRY_ALL_SESSIONS_QUERY = """
select
  pg_catalog.gp_execution_segment() as GpSegmentId,
  pid,
  sess_id as SessId,
  backend_type as BackendType
from
  gp_dist_random('pg_stat_activity')
union all
select
  pg_catalog.gp_execution_segment() as GpSegmentId,
  pid,
  sess_id as SessId,
  backend_type as BackendType
from
  pg_stat_activity;
"""

LOCKS_QUERY = """
    SELECT
        w.mppsessionid AS BlockSessID,
        w.mode AS WaitMode,
        coalesce(cast(cast(l.relation AS regclass) AS text), l.locktype) AS LockedItem,
        l.mode AS LockedMode,
        l.mppsessionid AS BlockedBySessID
    FROM
        pg_locks l,
        pg_locks w
    WHERE l.transactionid = w.transactionid
        AND l.granted = true
        AND w.granted = false
        AND l.transactionid is not NULL
    UNION ALL
    SELECT
        w.mppsessionid AS BlockSessID,
        w.mode AS WaitMode,
        coalesce(cast(cast(l.relation AS regclass) AS text), l.locktype) AS LockedItem,
        l.mode AS LockedMode,
        l.mppsessionid AS BlockedBySessID
    FROM
        pg_locks l,
        pg_locks w
    WHERE l.database = w.database
        AND l.relation = w.relation
        AND l.granted = true
        AND w.granted = false
        AND l.locktype = 'relation'
        AND l.gp_segment_id = w.gp_segment_id
"""


@dataclass
class Session:
    """One row of pg_stat_activity on the coordinator."""

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
    wait_event: str | None = None
    wait_event_type: str | None = None


@dataclass
class SessionPid:
    """A backend process of a session on some segment."""

    gp_segment_id: int = 0
    pid: int = 0
    sess_id: int = 0
    backend_type: str = ""


@dataclass
class SessionLock:
    """A session waiting on a lock held by another session."""

    block_sess_id: int = 0
    blocked_by_sess_id: int = 0
    wait_mode: str = ""
    locked_item: str = ""
    locked_mode: str = ""


class OperationStatus(str, enum.Enum):
    """Outcome reported to a latency handler."""

    SUCCEEDED = "ok"
    FAILED = "fail"


class CollectionError(Exception):
    """Raised when rows cannot be collected or the cached rows are too old."""


class InfoLog(Protocol):
    """Logger used by the collector."""

    def info(self, msg: str, *args: Any) -> Any: ...

    def warning(self, msg: str, *args: Any) -> Any: ...


class RowQuery(Protocol):
    """Runs a query and returns rows of the requested type."""

    def exec_query(self, query: str, row_type: type, timeout: float) -> Sequence[Any]: ...


LatencyHandler = Callable[[OperationStatus, float], None]

T = TypeVar("T")


def _ignore_latency(status: OperationStatus, seconds: float) -> None:
    return None


class Background(Generic[T]):
    """Caches the rows of one query and refreshes them on an interval."""

    def __init__(
        self,
        log: InfoLog | None,
        db: RowQuery,
        row_type: type[T],
        query: str,
        *,
        collection_interval: float = 2.0,
        collection_timeout: float = 60.0,
        cache_ttl: float = 180.0,
        collection_latency: LatencyHandler | None = None,
        stale_read_latency: LatencyHandler | None = None,
    ) -> None:
        self._log = log if log is not None else logging.getLogger(__name__)
        self._db = db
        self.row_type = row_type
        self.query = query
        self.collection_interval = collection_interval
        self.collection_timeout = collection_timeout
        self.cache_ttl = cache_ttl
        self._collection_latency = collection_latency or _ignore_latency
        self._stale_read_latency = stale_read_latency or _ignore_latency
        self._cache_lock = threading.Lock()
        self._cache: list[T] = []
        self._cached_at: float | None = None

    def read_stale(self) -> list[T]:
        """Return a copy of the cached rows; raise CollectionError if they are older than the TTL."""
        with self._cache_lock:
            if self._cached_at is None:
                staleness = float("inf")
            else:
                staleness = time.monotonic() - self._cached_at
            if staleness > self.cache_ttl:
                self._stale_read_latency(OperationStatus.FAILED, staleness)
                raise CollectionError("cached value is stale")
            rows = list(self._cache)
        self._stale_read_latency(OperationStatus.SUCCEEDED, staleness)
        return rows

    def collect_once(self) -> None:
        """Run the query once and replace the cached rows with its result."""
        started = time.monotonic()
        try:
            rows = list(self._db.exec_query(self.query, self.row_type, self.collection_timeout))
        except Exception as exc:
            self._collection_latency(OperationStatus.FAILED, time.monotonic() - started)
            raise CollectionError(f"error executing query: {exc}") from exc
        with self._cache_lock:
            self._cache = rows
            self._cached_at = time.monotonic()
        self._collection_latency(OperationStatus.SUCCEEDED, time.monotonic() - started)

    def collect_background(self, stop: threading.Event) -> None:
        """Collect every ``collection_interval`` seconds until ``stop`` is set."""
        name = self.row_type.__name__
        self._log.info("background collection for %s started", name)
        while not stop.wait(self.collection_interval):
            try:
                self.collect_once()
            except CollectionError as exc:
                self._log.warning("error during background collection %s: %s", name, str(exc))
        self._log.info("background collection for %s stopped", name)