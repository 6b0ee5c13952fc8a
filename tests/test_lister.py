import threading
import time

import pytest

from yagpcc.activity import GpStatActivity
from yagpcc.collector import (
    CLOUDBERRY_SESSIONS_QUERY,
    GP6_SESSIONS_QUERY,
    OperationStatus,
    Session,
    SessionLock,
    SessionPid,
)
from yagpcc.lister import Lister, ListerError

HOUR = 3600.0


class RecordingLog:
    def __init__(self):
        self._lock = threading.Lock()
        self.messages = []

    def info(self, msg, *args):
        with self._lock:
            self.messages.append(("info", msg % args))

    def warning(self, msg, *args):
        with self._lock:
            self.messages.append(("warning", msg % args))

    def snapshot(self):
        with self._lock:
            return list(self.messages)


class FakeDB:
    def __init__(self, handlers=None):
        self.handlers = handlers or {}
        self._lock = threading.Lock()
        self.calls = []

    def exec_query(self, query, row_type, timeout):
        with self._lock:
            self.calls.append((row_type, query))
            number = sum(1 for kind, _ in self.calls if kind is row_type)
        handler = self.handlers.get(row_type)
        if handler is None:
            return []
        return handler(number)

    def count(self, row_type):
        with self._lock:
            return sum(1 for kind, _ in self.calls if kind is row_type)

    def queries(self, row_type):
        with self._lock:
            return [query for kind, query in self.calls if kind is row_type]


def fail(number):
    raise RuntimeError("test error")


def fail_after_first(number):
    if number == 1:
        return []
    raise RuntimeError("test error")


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


SESSIONS = [
    Session(sess_id=1, dat_id=2, datname="db3", pid=4, tm_id=5, usesys_id=6, usename="user7"),
    Session(sess_id=2, dat_id=3, datname="db4", pid=5, tm_id=6, usesys_id=7, usename="user8"),
]

LOCKS = [
    SessionLock(block_sess_id=1, blocked_by_sess_id=2, wait_mode="test-wait-mode",
                locked_item="test-item", locked_mode="test-lock-mode"),
    SessionLock(block_sess_id=3, blocked_by_sess_id=4, wait_mode="test-wait-mode3",
                locked_item="test-item3", locked_mode="test-lock-mode3"),
]

PLAIN_ACTIVITY = [
    GpStatActivity(sess_id=1, dat_id=2, datname="db3", pid=4, tm_id=5, usesys_id=6, usename="user7"),
    GpStatActivity(sess_id=2, dat_id=3, datname="db4", pid=5, tm_id=6, usesys_id=7, usename="user8"),
]

JOINED_ACTIVITY = [
    GpStatActivity(
        sess_id=1, dat_id=2, datname="db3", pid=4, tm_id=5, usesys_id=6, usename="user7",
        blocked_by_sess_id=2, wait_mode="test-wait-mode", locked_item="test-item",
        locked_mode="test-lock-mode",
    ),
    GpStatActivity(sess_id=2, dat_id=3, datname="db4", pid=5, tm_id=6, usesys_id=7, usename="user8"),
]


def make_lister(db, log=None, **options):
    options.setdefault("sessions_collection_interval", HOUR)
    options.setdefault("locks_collection_interval", HOUR)
    options.setdefault("all_sessions_collection_interval", HOUR)
    return Lister(log if log is not None else RecordingLog(), db, **options)


@pytest.mark.parametrize(
    "failing, message",
    [
        (Session, "error initializing sessions cache: error executing query: test error"),
        (SessionLock, "error initializing locks cache: error executing query: test error"),
        (SessionPid, "error initializing all sessions cache: error executing query: test error"),
    ],
)
def test_start_fails_when_initial_collection_fails(failing, message):
    log = RecordingLog()
    lister = make_lister(FakeDB({failing: fail}), log)
    with pytest.raises(ListerError) as info:
        lister.start()
    assert str(info.value) == message
    assert lister.running is False
    assert log.snapshot() == [("info", "initializing cache")]


def test_start_stop_logs_background_lifecycle():
    log = RecordingLog()
    db = FakeDB()
    lister = make_lister(db, log)
    lister.start()
    assert db.count(Session) == 1
    assert db.count(SessionLock) == 1
    assert db.count(SessionPid) == 1
    lister.stop()
    expected = {
        ("info", "background collection for Session stopped"),
        ("info", "background collection for SessionLock stopped"),
        ("info", "background collection for SessionPid stopped"),
    }
    assert wait_for(lambda: expected <= set(log.snapshot()))
    messages = set(log.snapshot())
    assert ("info", "initializing cache") in messages
    assert ("info", "background collection for Session started") in messages
    assert ("info", "background collection for SessionLock started") in messages
    assert ("info", "background collection for SessionPid started") in messages


def test_start_twice_does_nothing_the_second_time():
    log = RecordingLog()
    db = FakeDB()
    lister = make_lister(db, log)
    lister.start()
    lister.start()
    try:
        assert len(db.calls) == 3
        assert (
            "warning",
            "an attempt was made to start a background collection that is already running",
        ) in log.snapshot()
    finally:
        lister.stop()


def test_stop_twice_warns():
    log = RecordingLog()
    lister = make_lister(FakeDB(), log)
    lister.start()
    lister.stop()
    lister.stop()
    assert (
        "warning",
        "an attempt was made to stop a background collection that is not running",
    ) in log.snapshot()
    assert lister.running is False


def test_list_empty_sessions_and_empty_locks():
    with make_lister(FakeDB()) as lister:
        assert lister.list() == []


def test_list_empty_sessions_and_non_empty_locks():
    with make_lister(FakeDB({SessionLock: lambda n: list(LOCKS)})) as lister:
        assert lister.list() == []


def test_list_sessions_without_locks():
    with make_lister(FakeDB({Session: lambda n: list(SESSIONS)})) as lister:
        assert lister.list() == PLAIN_ACTIVITY


def test_list_sessions_with_locks():
    db = FakeDB({Session: lambda n: list(SESSIONS), SessionLock: lambda n: list(LOCKS)})
    with make_lister(db) as lister:
        assert lister.list() == JOINED_ACTIVITY


def test_list_from_background_collected():
    def sessions(number):
        return [] if number == 1 else list(SESSIONS)

    def locks(number):
        return [] if number == 1 else list(LOCKS)

    db = FakeDB({Session: sessions, SessionLock: locks})
    lister = make_lister(
        db, sessions_collection_interval=0.001, locks_collection_interval=0.001
    )
    lister.start()
    try:
        assert wait_for(lambda: db.count(Session) >= 3 and db.count(SessionLock) >= 3)
        assert lister.list() == JOINED_ACTIVITY
    finally:
        lister.stop()


def test_list_without_locks_when_locks_are_stale():
    log = RecordingLog()
    db = FakeDB({Session: lambda n: list(SESSIONS), SessionLock: fail_after_first})
    lister = make_lister(db, log, locks_cache_ttl=0.01)
    lister.start()
    try:
        time.sleep(0.05)
        assert lister.list() == PLAIN_ACTIVITY
        assert (
            "warning",
            "returning stat activity data without locks info due to error: cached value is stale",
        ) in log.snapshot()
    finally:
        lister.stop()


def test_list_before_start_fails():
    lister = make_lister(FakeDB())
    with pytest.raises(ListerError, match="^background collection was not started$"):
        lister.list()


def test_list_after_stop_fails():
    lister = make_lister(FakeDB())
    lister.start()
    lister.stop()
    with pytest.raises(ListerError, match="^background collection was not started$"):
        lister.list()


def test_list_fails_when_sessions_are_stale():
    db = FakeDB({Session: fail_after_first})
    lister = make_lister(db, sessions_cache_ttl=0.01)
    lister.start()
    try:
        time.sleep(0.05)
        with pytest.raises(ListerError) as info:
            lister.list()
        assert str(info.value) == "error reading sessions: cached value is stale"
    finally:
        lister.stop()


def test_list_all_sessions_before_start_fails():
    lister = make_lister(FakeDB())
    with pytest.raises(ListerError, match="^background collection was not started$"):
        lister.list_all_sessions()


def test_list_all_sessions_fails_when_stale():
    db = FakeDB({SessionPid: fail_after_first})
    lister = make_lister(db, all_sessions_cache_ttl=0.01)
    lister.start()
    try:
        time.sleep(0.05)
        with pytest.raises(ListerError) as info:
            lister.list_all_sessions()
        assert str(info.value) == "error reading all sessions: cached value is stale"
    finally:
        lister.stop()


def test_list_all_sessions_empty():
    with make_lister(FakeDB()) as lister:
        assert lister.list_all_sessions() == []


def test_list_all_sessions_non_empty():
    rows = [
        SessionPid(gp_segment_id=0, pid=100, sess_id=1, backend_type="client backend"),
        SessionPid(gp_segment_id=1, pid=200, sess_id=1, backend_type="client backend"),
        SessionPid(gp_segment_id=0, pid=300, sess_id=2, backend_type="client backend"),
    ]
    with make_lister(FakeDB({SessionPid: lambda n: list(rows)})) as lister:
        assert lister.list_all_sessions() == rows


def test_list_all_sessions_from_background_collected():
    rows = [
        SessionPid(gp_segment_id=0, pid=100, sess_id=1, backend_type="client backend"),
        SessionPid(gp_segment_id=1, pid=200, sess_id=1, backend_type="client backend"),
    ]
    db = FakeDB({SessionPid: lambda n: [] if n == 1 else list(rows)})
    lister = make_lister(db, all_sessions_collection_interval=0.001)
    lister.start()
    try:
        assert wait_for(lambda: db.count(SessionPid) >= 3)
        assert lister.list_all_sessions() == rows
    finally:
        lister.stop()


def test_set_gp6_before_start_uses_gp6_query_without_querying():
    db = FakeDB()
    lister = make_lister(db)
    lister.set_gp6_session_lister()
    assert db.calls == []
    with lister:
        assert db.queries(Session) == [GP6_SESSIONS_QUERY]


def test_set_modern_while_running_restarts_with_new_query():
    db = FakeDB()
    lister = make_lister(db)
    lister.start()
    try:
        lister.set_modern_session_lister()
        assert lister.running is True
        assert db.queries(Session) == [GP6_SESSIONS_QUERY, CLOUDBERRY_SESSIONS_QUERY]
        assert len(db.calls) == 6
    finally:
        lister.stop()


def test_set_cloudberry_before_start_uses_cloudberry_query():
    db = FakeDB()
    lister = make_lister(db)
    lister.set_cloudberry_session_lister()
    with lister:
        assert db.queries(Session) == [CLOUDBERRY_SESSIONS_QUERY]


def test_latency_observer_receives_operations():
    seen = []
    lister = make_lister(
        FakeDB(), latency_observer=lambda op, status, seconds: seen.append((op, status))
    )
    with lister:
        lister.list()
    assert ("background_collection_sessions", OperationStatus.SUCCEEDED) in seen
    assert ("background_collection_locks", OperationStatus.SUCCEEDED) in seen
    assert ("background_collection_all_sessions", OperationStatus.SUCCEEDED) in seen
    assert ("stale_read_sessions", OperationStatus.SUCCEEDED) in seen
    assert ("stale_read_locks", OperationStatus.SUCCEEDED) in seen