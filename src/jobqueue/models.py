from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

# delay_until_ns value for records that may run as soon as they are selected
NOT_DELAYED_JOB_DELAY = -(2**63)

# running_session_id value for records no session has started yet
NOT_RUNNING_SESSION_ID = -(2**63)


class RunResult(IntEnum):
    """Outcome of a single execution attempt.

    SUCCESS, FAIL_RUN_LIMIT and FAIL_FOR_CANCEL are terminal. TRY_AGAIN and
    FAIL_SHOULD_RE_RUN send the record back through the retry loop.
    """

    SUCCESS = 1
    FAIL_RUN_LIMIT = 2
    FAIL_FOR_CANCEL = 3
    TRY_AGAIN = 4
    FAIL_SHOULD_RE_RUN = 5

    @property
    def is_terminal(self) -> bool:
        return self in (RunResult.SUCCESS, RunResult.FAIL_RUN_LIMIT, RunResult.FAIL_FOR_CANCEL)

    @property
    def is_retryable(self) -> bool:
        return not self.is_terminal


class TagConstraint(str, Enum):
    ANY = "any"
    ALL = "all"

    def matches(self, holder_tags: frozenset[str] | None, tags: frozenset[str]) -> bool:
        if not holder_tags or not tags:
            return False
        if self is TagConstraint.ALL:
            return tags <= holder_tags
        return not tags.isdisjoint(holder_tags)


class JobStatus(str, Enum):
    UNKNOWN = "unknown"
    WAITING_NOT_READY = "waiting_not_ready"
    WAITING_READY = "waiting_ready"
    RUNNING = "running"


@dataclass(frozen=True, slots=True)
class RetryConstraint:
    """What a failed job wants done before its next attempt.

    ``None`` for any of the ``new_*`` fields leaves the corresponding record
    field unchanged.
    """

    retry: bool
    new_delay_ms: int | None = None
    new_priority: int | None = None
    new_group_id: str | None = None

    @property
    def should_retry(self) -> bool:
        return self.retry

    @classmethod
    def create_exponential_backoff(cls, run_count: int, initial_backoff_ms: int) -> RetryConstraint:
        exponent = max(0, run_count - 1)
        return cls(retry=True, new_delay_ms=initial_backoff_ms * (2**exponent))


RETRY = RetryConstraint(retry=True)
CANCEL = RetryConstraint(retry=False)
