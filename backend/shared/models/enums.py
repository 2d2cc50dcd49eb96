"""Domain enumerations for the Scoreline coordination service."""
from __future__ import annotations

from enum import Enum, IntEnum


class MatchStatus(IntEnum):
    """Provider status codes as stored in matches.status."""
    NOT_STARTED = 1
    FIRST_HALF = 2
    HALF_TIME = 3
    SECOND_HALF = 4
    OVERTIME = 5
    PENALTY_SHOOTOUT = 7
    END = 8
    DELAYED = 9
    INTERRUPTED = 10
    CANCELLED = 12

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self == MatchStatus.END


LIVE_STATUSES = frozenset({
    MatchStatus.FIRST_HALF,
    MatchStatus.HALF_TIME,
    MatchStatus.SECOND_HALF,
    MatchStatus.OVERTIME,
    MatchStatus.PENALTY_SHOOTOUT,
})

TERMINAL_STATUS = MatchStatus.END


class MatchField(str, Enum):
    """Fields of a match record that writers may propose changes to."""
    STATUS = "status"
    MINUTE = "minute"
    HOME_SCORE = "home_score"
    AWAY_SCORE = "away_score"
    PROVIDER_UPDATE_TIME = "provider_update_time"
    LAST_EVENT_TS = "last_event_ts"
    FIRST_HALF_KICKOFF_TS = "first_half_kickoff_ts"
    SECOND_HALF_KICKOFF_TS = "second_half_kickoff_ts"
    OVERTIME_KICKOFF_TS = "overtime_kickoff_ts"


CRITICAL_FIELDS = (
    MatchField.STATUS,
    MatchField.MINUTE,
    MatchField.HOME_SCORE,
    MatchField.AWAY_SCORE,
)


class LockNamespace(str, Enum):
    JOB = "job"
    MATCH = "match"


class WriteStatus(str, Enum):
    """Outcome of a WriteGate.apply call."""
    SUCCESS = "success"
    REJECTED_LOCKED = "rejected_locked"
    REJECTED_IMMUTABLE = "rejected_immutable"
    REJECTED_STALE = "rejected_stale"
    NOT_FOUND = "not_found"


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED_OVERLAP = "skipped_overlap"
    SKIPPED_LOCKED = "skipped_locked"


class BucketKind(str, Enum):
    """Base phase buckets vs. tighter phase-transition watchers."""
    PHASE = "phase"
    WATCHER = "watcher"
