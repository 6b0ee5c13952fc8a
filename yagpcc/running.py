"""Query identifiers and the stack of queries running within one session."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

MAX_RECURSE_DEPTH = 1000

STATE_IDLE = "IDLE"
STATE_ACTIVE = "ACTIVE"


@dataclass(frozen=True)
class QueryKey:
    """Identifies a query by session id, command counter and postmaster start time."""

    ssid: int = 0
    ccnt: int = 0
    tmid: int = 0


@dataclass
class QueryInfo:
    """Descriptive information about a query."""

    query_id: int = 0
    plan_id: int = 0
    query_text: str = ""
    plan_text: str = ""
    user_name: str = ""
    database_name: str = ""
    rsgname: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    submit_time: datetime | None = None


class RunningQueryType(enum.Enum):
    """Which query of a session's stack to report."""

    LAST = "last"
    TOP = "top"


@dataclass
class RunningQueriesInfo:
    """Command counters of the nested queries of a session, outermost first; -1 marks an unknown level."""

    ccnts: list[int] = field(default_factory=list)

    def is_empty(self) -> bool:
        """Return True when no query is running."""
        return not self.ccnts

    def set_current_query(self, ccnt: int, level: int = -1) -> None:
        """Register ``ccnt`` at nesting ``level``; with level -1 the level is derived from the stack."""
        if level == -1:
            if not self.ccnts:
                level = 0
            elif self.ccnts[-1] == ccnt:
                level = len(self.ccnts) - 1
            else:
                level = len(self.ccnts)
        level = min(level, MAX_RECURSE_DEPTH - 1)
        if len(self.ccnts) > level + 1:
            del self.ccnts[level + 1 :]
        else:
            self.ccnts.extend([-1] * (level + 1 - len(self.ccnts)))
        self.ccnts[level] = ccnt

    def end_current_query(self, ccnt: int, level: int = -1) -> None:
        """Finish the query at ``level``; with level -1 the level is found by ``ccnt``."""
        if not self.ccnts:
            return
        if level == -1:
            level = len(self.ccnts) - 1
            while level > 0 and self.ccnts[level] != ccnt:
                level -= 1
        if level == 0:
            self.ccnts.clear()
            return
        level = min(level, MAX_RECURSE_DEPTH - 1)
        if level >= len(self.ccnts):
            return
        new_level = level - 1
        while new_level > 0 and self.ccnts[new_level] == -1:
            new_level -= 1
        del self.ccnts[new_level + 1 :]

    def current_query(self) -> int:
        """Return the innermost running command counter, or -1 when idle."""
        return self.ccnts[-1] if self.ccnts else -1


def get_status(blocked_by_sess_id: int | None, waiting: bool | None, reason: str | None) -> str:
    """Derive a 'blocked' or 'waiting' state from lock and wait information, or '' if neither."""
    if blocked_by_sess_id is not None and blocked_by_sess_id > 0:
        return "blocked"
    if reason is not None and waiting:
        if reason in ("resgroup", "replication"):
            return "waiting"
        if reason == "lock":
            return "blocked"
    return ""