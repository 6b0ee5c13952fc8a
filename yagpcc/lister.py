"""Lists pg_stat_activity sessions joined with lock information from background-refreshed caches."""

from __future__ import annotations

import logging
import threading
from dataclasses import fields
from typing import Callable, Iterable

from yagpcc.activity import GpStatActivity
from yagpcc.collector import (
    CLOUDBERRY_ALL_SESSIONS_QUERY,
    CLOUDBERRY_SESSIONS_QUERY,
    GP6_ALL_SESSIONS_QUERY,
    GP6_SESSIONS_QUERY,
    LOCKS_QUERY,
    Background,
    CollectionError,
    InfoLog,
    LatencyHandler,
    OperationStatus,
    RowQuery,
    Session,
    SessionLock,
    SessionPid,
)

LatencyObserver = Callable[[str, OperationStatus, float], None]

_SESSION_FIELDS = tuple(f.name for f in fields(Session))


class ListerError(Exception):
    """Raised when session data cannot be listed or the collection cannot start."""


class Lister:
    """Keeps sessions, locks and per-segment backends cached and combines them on request."""

    def __init__(
        self,
        log: InfoLog | None,
        db: RowQuery,
        *,
        sessions_collection_interval: float = 2.0,
        locks_collection_interval: float = 10.0,
        all_sessions_collection_interval: float = 60.0,
        sessions_cache_ttl: float = 180.0,
        locks_cache_ttl: float = 300.0,
        all_sessions_cache_ttl: float = 600.0,
        sessions_query: str = GP6_SESSIONS_QUERY,
        all_sessions_query: str = GP6_ALL_SESSIONS_QUERY,
        latency_observer: LatencyObserver | None = None,
    ) -> None:
        self._log = log if log is not None else logging.getLogger(__name__)
        self._observer = latency_observer
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None

        self._sessions: Background[Session] = Background(
            self._log,
            db,
            Session,
            sessions_query,
            collection_interval=sessions_collection_interval,
            collection_timeout=60.0,
            cache_ttl=sessions_cache_ttl,
            collection_latency=self._handler("background_collection_sessions"),
            stale_read_latency=self._handler("stale_read_sessions"),
        )
        self._locks: Background[SessionLock] = Background(
            self._log,
            db,
            SessionLock,
            LOCKS_QUERY,
            collection_interval=locks_collection_interval,
            collection_timeout=90.0,
            cache_ttl=locks_cache_ttl,
            collection_latency=self._handler("background_collection_locks"),
            stale_read_latency=self._handler("stale_read_locks"),
        )
        self._all_sessions: Background[SessionPid] = Background(
            self._log,
            db,
            SessionPid,
            all_sessions_query,
            collection_interval=all_sessions_collection_interval,
            collection_timeout=300.0,
            cache_ttl=all_sessions_cache_ttl,
            collection_latency=self._handler("background_collection_all_sessions"),
            stale_read_latency=self._handler("stale_read_all_sessions"),
        )

    def _handler(self, operation: str) -> LatencyHandler:
        def observe(status: OperationStatus, seconds: float) -> None:
            if self._observer is not None:
                self._observer(operation, status, seconds)

        return observe

    @property
    def running(self) -> bool:
        """True while background collection is active."""
        with self._lock:
            return self._stop_event is not None

    def list(self) -> list[GpStatActivity]:
        """Return cached sessions with lock information attached where available."""
        with self._lock:
            if self._stop_event is None:
                raise ListerError("background collection was not started")
            try:
                sessions = self._sessions.read_stale()
            except CollectionError as exc:
                raise ListerError(f"error reading sessions: {exc}") from exc
            try:
                locks = self._locks.read_stale()
            except CollectionError as exc:
                self._log.warning(
                    "returning stat activity data without locks info due to error: %s", str(exc)
                )
                return _left_join(sessions, ())
            return _left_join(sessions, locks)

    def list_all_sessions(self) -> list[SessionPid]:
        """Return the cached backends of every segment."""
        with self._lock:
            if self._stop_event is None:
                raise ListerError("background collection was not started")
            try:
                return self._all_sessions.read_stale()
            except CollectionError as exc:
                raise ListerError(f"error reading all sessions: {exc}") from exc

    def start(self) -> None:
        """Fill every cache once, then refresh them in background threads."""
        with self._lock:
            if self._stop_event is not None:
                self._log.warning(
                    "an attempt was made to start a background collection that is already running"
                )
                return
            self._log.info("initializing cache")
            for name, background in (
                ("sessions", self._sessions),
                ("locks", self._locks),
                ("all sessions", self._all_sessions),
            ):
                try:
                    background.collect_once()
                except CollectionError as exc:
                    raise ListerError(f"error initializing {name} cache: {exc}") from exc
            stop = threading.Event()
            for background in (self._sessions, self._locks, self._all_sessions):
                threading.Thread(
                    target=background.collect_background,
                    args=(stop,),
                    name=f"collect-{background.row_type.__name__}",
                    daemon=True,
                ).start()
            self._stop_event = stop

    def stop(self) -> None:
        """Signal the background threads to finish."""
        with self._lock:
            if self._stop_event is None:
                self._log.warning(
                    "an attempt was made to stop a background collection that is not running"
                )
                return
            self._stop_event.set()
            self._stop_event = None

    def __enter__(self) -> Lister:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def set_modern_session_lister(self) -> None:
        """Switch to queries for servers whose pg_stat_activity has wait events."""
        self._set_queries(CLOUDBERRY_SESSIONS_QUERY, CLOUDBERRY_ALL_SESSIONS_QUERY)

    def set_cloudberry_session_lister(self) -> None:
        """Same as set_modern_session_lister."""
        self.set_modern_session_lister()

    def set_gp6_session_lister(self) -> None:
        """Switch to queries for Greenplum 6 servers."""
        self._set_queries(GP6_SESSIONS_QUERY, GP6_ALL_SESSIONS_QUERY)

    def _set_queries(self, sessions_query: str, all_sessions_query: str) -> None:
        need_start = self.running
        if need_start:
            self.stop()
        with self._lock:
            self._sessions.query = sessions_query
            self._all_sessions.query = all_sessions_query
        if need_start:
            self.start()


def _left_join(sessions: Iterable[Session], locks: Iterable[SessionLock]) -> list[GpStatActivity]:
    locks_by_session = {lock.block_sess_id: lock for lock in locks}
    result = []
    for session in sessions:
        activity = GpStatActivity(**{name: getattr(session, name) for name in _SESSION_FIELDS})
        lock = locks_by_session.get(session.sess_id)
        if lock is not None:
            activity.blocked_by_sess_id = lock.blocked_by_sess_id
            activity.wait_mode = lock.wait_mode
            activity.locked_item = lock.locked_item
            activity.locked_mode = lock.locked_mode
        result.append(activity)
    return result