"""In-memory registry of database sessions and the queries running in them."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from yagpcc.activity import GpStatActivity
from yagpcc.running import (
    STATE_ACTIVE,
    STATE_IDLE,
    QueryInfo,
    QueryKey,
    RunningQueriesInfo,
    RunningQueryType,
    get_status,
)

SYSTEM_USER_NAMES = frozenset({"gpadmin", "repl", "monitor"})

_log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionData:
    """What is known about one session: its activity row and its running queries."""

    gp_stat_info: GpStatActivity | None = None
    running_queries: RunningQueriesInfo = field(default_factory=RunningQueriesInfo)
    last_query: int = 0
    collect_time: datetime | None = None
    cluster_id: str = ""
    hostname: str = ""


@dataclass
class SessionInfo:
    """A session entry with its reference counter and its own lock."""

    data: SessionData = field(default_factory=SessionData)
    ref_counter: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def not_system_session(session: SessionInfo) -> bool:
    """Return True when the session belongs to a named, non-system user."""
    info = session.data.gp_stat_info
    if info is None:
        return False
    return bool(info.usename) and info.usename not in SYSTEM_USER_NAMES


def get_running_ccnt(data: SessionData | None, query_type: RunningQueryType) -> int:
    """Return the command counter to report for a session, or -1 if there is none."""
    if data is None:
        return -1
    ccnt = data.last_query
    if query_type is RunningQueryType.TOP and data.running_queries.ccnts:
        ccnt = data.running_queries.ccnts[0]
        # a missed nested query leaves -1 at the top; fall back to the last query then
        if ccnt in (0, -1):
            ccnt = data.last_query
    return -1 if ccnt == 0 else ccnt


class SessionsStorage:
    """Thread-safe map from session key to SessionInfo."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[int, SessionInfo] = {}
        self._log = log if log is not None else _log
        self.discovered_tm_id = 0

    def clear_sessions(self) -> None:
        """Forget every session."""
        with self._lock:
            self._sessions = {}

    def refresh_session_list(
        self, new_list: Iterable[GpStatActivity], clear_deleted_sessions: bool = True
    ) -> None:
        """Merge fresh activity rows into the registry, optionally dropping sessions not seen."""
        self._log.debug("Refreshing session list")
        refreshed: set[int] = set()
        for activity in new_list:
            status = get_status(activity.blocked_by_sess_id, activity.waiting, activity.waiting_reason)
            if status:
                activity.state = status
            # background processes share sess_id -1, so key them by -pid instead
            key = -activity.pid if activity.sess_id == -1 else activity.sess_id
            refreshed.add(key)
            with self._lock:
                session = self._sessions.get(key)
            if session is not None:
                with session.lock:
                    session.data.gp_stat_info = activity
            else:
                with self._lock:
                    self._sessions[key] = SessionInfo(data=SessionData(gp_stat_info=activity))

        if clear_deleted_sessions:
            with self._lock:
                deleted = [(key, s) for key, s in self._sessions.items() if key not in refreshed]
                for key, _ in deleted:
                    del self._sessions[key]
            for key, session in deleted:
                with session.lock:
                    ref_counter = session.ref_counter
                # one reference is expected because the last query is kept
                if ref_counter > 1:
                    self._log.info("Delete session %s with refcounter %s", key, ref_counter)
                self._log.debug("Delete session %s", key)

    def register_new_session_query(
        self, session: SessionInfo | None, query_key: QueryKey, level: int = -1
    ) -> SessionInfo:
        """Register a starting query in an existing session, or create the session for it."""
        started = _now()
        if session is not None:
            with session.lock:
                session.data.running_queries.set_current_query(query_key.ccnt, level)
                if session.data.gp_stat_info is None:
                    session.data.gp_stat_info = GpStatActivity(
                        sess_id=query_key.ssid, tm_id=query_key.tmid
                    )
                session.data.gp_stat_info.state = STATE_ACTIVE
                session.data.gp_stat_info.state_change = started
                session.ref_counter += 1
            return session

        session = SessionInfo(
            data=SessionData(
                gp_stat_info=GpStatActivity(
                    sess_id=query_key.ssid,
                    tm_id=query_key.tmid,
                    state=STATE_ACTIVE,
                    state_change=started,
                )
            ),
            ref_counter=1,
        )
        session.data.running_queries.set_current_query(query_key.ccnt, level)
        with self._lock:
            self._sessions[query_key.ssid] = session
        return session

    def update_session_query(
        self,
        query_key: QueryKey,
        query_info: QueryInfo | None = None,
        query_ended: bool = False,
        nested_level: int = -1,
        new_query: bool = False,
    ) -> None:
        """Record a query event for its session, creating the session when needed."""
        with self._lock:
            if self.discovered_tm_id < query_key.tmid:
                self.discovered_tm_id = query_key.tmid
            session = self._sessions.get(query_key.ssid)

        if new_query or session is None:
            session = self.register_new_session_query(session, query_key, nested_level)

        with session.lock:
            data = session.data
            data.last_query = query_key.ccnt
            info = data.gp_stat_info
            if info is None:
                info = data.gp_stat_info = GpStatActivity(sess_id=query_key.ssid, tm_id=query_key.tmid)
            if query_info is not None:
                info.usename = max(query_info.user_name, info.usename)
                info.datname = max(query_info.database_name, info.datname)
                rsgname = query_info.rsgname
                if info.rsgname is not None:
                    rsgname = max(rsgname, info.rsgname)
                info.rsgname = rsgname
            if query_ended:
                data.running_queries.end_current_query(query_key.ccnt, nested_level)
                info.state_change = _now()
                info.state = STATE_IDLE if data.running_queries.is_empty() else STATE_ACTIVE

    def can_lock(self) -> bool:
        """Return True if the registry is not locked at the moment."""
        if self._lock.acquire(blocking=False):
            self._lock.release()
            return True
        return False

    def sessions_count(self) -> int:
        """Return the number of registered sessions."""
        with self._lock:
            return len(self._sessions)

    def get_sessions(self) -> dict[int, SessionInfo]:
        """Return a shallow copy of the session map."""
        with self._lock:
            return dict(self._sessions)

    def get_session(self, key: int) -> SessionInfo | None:
        """Return the session registered under ``key``, or None."""
        with self._lock:
            return self._sessions.get(key)