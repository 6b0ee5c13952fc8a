# yagpcc

Building blocks for a Greenplum / Cloudberry query metrics agent. The package
tracks database sessions and the queries running in them, keeps cached
snapshots of `pg_stat_activity` and lock information that are refreshed in
background threads, and watches whether the coordinator has gone into
recovery mode.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `yagpcc.config`: agent settings as dataclasses (`Config`, `BaseConfig`,
  `LoggingConfig`, `InstrumentationConfig`, `PrometheusConfig`, `PGConfig`,
  `ArchiverConfig`, `SegmentDescription`).
  - `default_config()` returns the built-in defaults.
  - `default_base_config(app_name)` returns the base settings.
  - `read_from_file(path)` reads a `.yaml`, `.yml` or `.json` file, lays its
    values over the defaults and validates the result.
  - Keys in the file are the field names, except `max_short_queris_per_user`
    and `arch_config` (the archiver section).
  - A duration is either a string such as `"30s"` or `"1m30s"`, or an integer
    number of nanoseconds.
  - A file that cannot be read, that has the wrong types, or whose values are
    out of range raises `ConfigError`. `Config.validate()` runs the same range
    checks on a `Config` built in code.
- `yagpcc.sentinel`: `Sentinel(log, db, check_interval=..., check_timeout=...,
  max_subsequent_check_errors=...)`.
  - `run_until_is_master(stop)` runs `select pg_is_in_recovery();` every
    `check_interval` seconds.
  - It returns once the `threading.Event` `stop` is set.
  - It raises `SentinelError` when the instance reports recovery mode, or when
    `max_subsequent_check_errors` checks in a row fail. Each failure before
    that limit is logged as a warning.
- `yagpcc.activity`:
  - `GpStatActivity` and `GpSegmentConfiguration` rows.
  - `CacheItem`, with `CacheStatus`.
  - `check_cache_item(item, durability)`, which tells whether a cached value is
    still good.
- `yagpcc.running`:
  - `QueryKey` and `QueryInfo`.
  - `RunningQueryType` (`LAST` or `TOP`).
  - `RunningQueriesInfo`, the stack of nested queries of one session, with
    `set_current_query`, `end_current_query`, `current_query` and `is_empty`.
    The stack is capped at 1000 levels.
  - `get_status()`, which derives a `"blocked"` or `"waiting"` state.
- `yagpcc.sessions`: `SessionsStorage`, a thread-safe map of sessions.
  - `refresh_session_list()` merges fresh activity rows. It can drop sessions
    that are no longer seen. Rows with `sess_id == -1` are keyed by `-pid`.
  - `register_new_session_query()` and `update_session_query()` track queries
    as they start and end.
  - `get_session()`, `get_sessions()`, `sessions_count()`, `clear_sessions()`
    and `can_lock()` read and manage the map.
  - Helpers: `not_system_session()` and `get_running_ccnt()`.
- `yagpcc.collector`:
  - Row types `Session`, `SessionPid` and `SessionLock`.
  - `Background`, which caches the rows of one query.
    - `collect_once()` runs the query.
    - `read_stale()` returns the cached rows, or raises `CollectionError` once
      they are older than `cache_ttl`.
    - `collect_background(stop)` refreshes the rows every
      `collection_interval` seconds.
- `yagpcc.lister`: `Lister` keeps three `Background` caches: sessions, locks,
  and backends on all segments.
  - `start()` fills each cache once and starts the refresh threads. `stop()`
    ends them. The lister can also be used as a context manager.
  - `list()` returns sessions joined with their lock information. If the lock
    cache is stale, it returns the sessions without it.
  - `list_all_sessions()` returns the per-segment backends.
  - Errors are raised as `ListerError`.
  - `set_gp6_session_lister()` and `set_modern_session_lister()` (also
    available as `set_cloudberry_session_lister()`) switch the session queries.
    If collection is running, it is restarted.

## Database access

The package opens no database connections of its own. You pass in an object
that runs the queries:

- `Lister` and `Background` call `exec_query(query, row_type, timeout)`, which
  must return rows of `row_type`.
- `Sentinel` calls `exec_query_no_retry(query, timeout)`, which must return
  the rows of `pg_is_in_recovery()`.

## Example

```python
from yagpcc.collector import Session
from yagpcc.lister import Lister
from yagpcc.running import RunningQueriesInfo

rq = RunningQueriesInfo()
rq.set_current_query(1, -1)
rq.set_current_query(2, -1)
assert rq.current_query() == 2
rq.end_current_query(2, -1)
assert rq.current_query() == 1


class RowSource:
    def exec_query(self, query, row_type, timeout):
        if row_type is Session:
            return [Session(sess_id=1, pid=4, usename="alice")]
        return []


with Lister(None, RowSource()) as lister:
    rows = lister.list()
assert rows[0].usename == "alice"
```

## What this package does not do

- It has no command-line program.
- It has no gRPC, HTTP or Unix-socket server.
- It has no database driver or connection pool.
- It stores no metrics and does not archive anything to files.

It provides the configuration, the session and query bookkeeping, and the
cached stat-activity collection that such an agent would be built on.