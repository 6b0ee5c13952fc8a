"""Watch the coordinator and stop once it leaves the primary role."""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol, Sequence

IS_IN_RECOVERY_QUERY = "select pg_is_in_recovery();"
_RECOVERY_ERROR = "FATAL: the database system is in recovery mode (SQLSTATE 57M02)"


class WarningLog(Protocol):
    """Logger used to report suppressed check errors."""

    def warning(self, msg: str, *args: Any) -> Any: ...


class QueryRunner(Protocol):
    """Runs a single query without retries and returns its rows."""

    def exec_query_no_retry(self, query: str, timeout: float) -> Sequence[Any]: ...


class SentinelError(Exception):
    """Raised when the instance is no longer the primary or cannot be checked."""


class Sentinel:
    """Periodically checks whether the database is in recovery mode."""

    def __init__(
        self,
        log: WarningLog | None,
        db: QueryRunner,
        *,
        check_interval: float = 5.0,
        check_timeout: float = 3.0,
        max_subsequent_check_errors: int = 6,
    ) -> None:
        self._log = log if log is not None else logging.getLogger(__name__)
        self._db = db
        self.check_interval = check_interval
        self.check_timeout = check_timeout
        self.max_subsequent_check_errors = max_subsequent_check_errors
        self._subsequent_errors = 0

    def run_until_is_master(self, stop: threading.Event | None = None) -> None:
        """Block until ``stop`` is set; raise SentinelError if the instance leaves the primary role."""
        if stop is None:
            stop = threading.Event()
        while not stop.wait(self.check_interval):
            try:
                in_recovery = self._is_in_recovery()
            except Exception as exc:
                self._subsequent_errors += 1
                if self._subsequent_errors >= self.max_subsequent_check_errors:
                    raise SentinelError(
                        "exceeded number of max subsequent check errors "
                        f"(maxSubsequentCheckErrorsN={self.max_subsequent_check_errors}), "
                        f"last error was: {exc}"
                    ) from exc
                self._log.warning(
                    "check is in recovery error suppressed (subsequentCheckErrorsN=%d): %s",
                    self._subsequent_errors,
                    str(exc),
                )
                continue
            self._subsequent_errors = 0
            if in_recovery:
                raise SentinelError("current instance is in recovery mode")

    def _is_in_recovery(self) -> bool:
        try:
            rows = list(self._db.exec_query_no_retry(IS_IN_RECOVERY_QUERY, self.check_timeout))
        except Exception as exc:
            if _RECOVERY_ERROR in str(exc):
                return True
            raise
        if len(rows) != 1:
            raise SentinelError(
                f"unexpected number of rows from database: got {len(rows)}, but expected 1"
            )
        return bool(rows[0])