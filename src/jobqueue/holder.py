from __future__ import annotations

import threading
from typing import Any

from .job import Job
from .models import NOT_DELAYED_JOB_DELAY, RetryConstraint, RunResult


class JobHolderError(ValueError):
    pass


class JobHolder:
    """Queue-side wrapper around a ``Job``.

    Carries the ordering key (priority, creation time, insertion order), the
    delay and retry state, and the cancellation/success flags for one job.
    Instances are created through ``JobHolder.Builder``.

    ``run_count``, ``delay_until_ns``, ``running_session_id`` and
    ``insertion_order`` are written by the owning manager only. The
    cancellation and success flags may be touched from any thread.
    """

    def __init__(
        self,
        *,
        job: Job,
        priority: int,
        group_id: str | None,
        run_count: int,
        created_ns: int,
        delay_until_ns: int,
        running_session_id: int,
    ) -> None:
        self._job = job
        self._id = job.id
        self._priority = priority
        job.set_priority(priority)
        self.group_id = group_id
        self.run_count = run_count
        self._created_ns = created_ns
        self.delay_until_ns = delay_until_ns
        self.running_session_id = running_session_id
        self._insertion_order: int | None = None
        self._requires_network = job.requires_network()
        tags = job.get_tags()
        self._tags = frozenset(tags) if tags is not None else None
        self._lock = threading.Lock()
        self._cancelled = False
        self._cancel_notified = False
        self._successful = False

    def safe_run(self, current_run_count: int) -> RunResult:
        return self._job.safe_run(self, current_run_count)

    @property
    def id(self) -> str:
        return self._id

    @property
    def job(self) -> Job:
        return self._job

    def set_job(self, job: Job) -> None:
        if not job.id:
            raise JobHolderError("job id must not be empty")
        self._job = job
        self._id = job.id
        job.set_priority(self._priority)
        if self.is_cancelled():
            job.set_cancelled()

    @property
    def priority(self) -> int:
        return self._priority

    @priority.setter
    def priority(self, priority: int) -> None:
        self._priority = priority
        self._job.set_priority(priority)

    @property
    def created_ns(self) -> int:
        return self._created_ns

    @property
    def insertion_order(self) -> int | None:
        return self._insertion_order

    def set_insertion_order(self, insertion_order: int) -> None:
        if self._insertion_order is not None:
            raise JobHolderError(
                f"insertion order already assigned for job {self._id}: {self._insertion_order}"
            )
        self._insertion_order = insertion_order

    def requires_network(self) -> bool:
        return self._requires_network

    @property
    def tags(self) -> frozenset[str] | None:
        return self._tags

    def has_tags(self) -> bool:
        return bool(self._tags)

    @property
    def retry_constraint(self) -> RetryConstraint | None:
        return self._job.retry_constraint

    def set_application_context(self, context: Any) -> None:
        self._job.set_application_context(context)

    def mark_as_cancelled(self) -> None:
        with self._lock:
            self._cancelled = True
        self._job.set_cancelled()

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def on_cancel(self) -> None:
        with self._lock:
            if self._cancel_notified:
                return
            self._cancel_notified = True
        self._job.on_cancel()

    def mark_as_successful(self) -> None:
        with self._lock:
            self._successful = True

    def is_successful(self) -> bool:
        with self._lock:
            return self._successful

    def sort_key(self) -> tuple[int, int, int]:
        if self._insertion_order is None:
            raise JobHolderError(f"job {self._id} has no insertion order yet")
        return (-self._priority, self._created_ns, self._insertion_order)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobHolder):
            return NotImplemented
        return self._id == other._id

    def __hash__(self) -> int:
        return hash(self._id)

    def __repr__(self) -> str:
        return (
            f"JobHolder(id={self._id!r}, priority={self._priority}, group_id={self.group_id!r}, "
            f"run_count={self.run_count}, insertion_order={self._insertion_order})"
        )

    class Builder:
        """Collects fields for a ``JobHolder`` and validates them in ``build``.

        ``priority``, ``running_session_id`` and ``created_ns`` have no usable
        default: each must be set explicitly, even when the value is zero.
        """

        _REQUIRED = (
            ("priority", "must provide a priority"),
            ("running_session_id", "must provide a session id"),
            ("created_ns", "must provide a created timestamp"),
        )

        def __init__(self) -> None:
            self._job: Job | None = None
            self._priority = 0
            self._group_id: str | None = None
            self._run_count = 0
            self._created_ns = 0
            self._delay_until_ns = NOT_DELAYED_JOB_DELAY
            self._insertion_order: int | None = None
            self._running_session_id = 0
            self._provided: set[str] = set()

        @classmethod
        def from_holder(cls, holder: JobHolder) -> JobHolder.Builder:
            return (
                cls()
                .job(holder.job)
                .priority(holder.priority)
                .group_id(holder.group_id)
                .run_count(holder.run_count)
                .created_ns(holder.created_ns)
                .delay_until_ns(holder.delay_until_ns)
                .running_session_id(holder.running_session_id)
            )

        def job(self, job: Job) -> JobHolder.Builder:
            self._job = job
            return self

        def priority(self, priority: int) -> JobHolder.Builder:
            self._priority = priority
            self._provided.add("priority")
            return self

        def group_id(self, group_id: str | None) -> JobHolder.Builder:
            self._group_id = group_id
            return self

        def run_count(self, run_count: int) -> JobHolder.Builder:
            self._run_count = run_count
            return self

        def created_ns(self, created_ns: int) -> JobHolder.Builder:
            self._created_ns = created_ns
            self._provided.add("created_ns")
            return self

        def delay_until_ns(self, delay_until_ns: int) -> JobHolder.Builder:
            self._delay_until_ns = delay_until_ns
            return self

        def insertion_order(self, insertion_order: int) -> JobHolder.Builder:
            self._insertion_order = insertion_order
            return self

        def running_session_id(self, running_session_id: int) -> JobHolder.Builder:
            self._running_session_id = running_session_id
            self._provided.add("running_session_id")
            return self

        def build(self) -> JobHolder:
            if self._job is None:
                raise JobHolderError("must provide a job")
            if not self._job.id:
                raise JobHolderError("job id must not be empty")
            for field_name, message in self._REQUIRED:
                if field_name not in self._provided:
                    raise JobHolderError(message)
            if self._run_count < 0:
                raise JobHolderError(f"run count must be >= 0, got {self._run_count}")
            holder = JobHolder(
                job=self._job,
                priority=self._priority,
                group_id=self._group_id,
                run_count=self._run_count,
                created_ns=self._created_ns,
                delay_until_ns=self._delay_until_ns,
                running_session_id=self._running_session_id,
            )
            if self._insertion_order is not None:
                holder.set_insertion_order(self._insertion_order)
            return holder


def compare_holders(left: JobHolder, right: JobHolder) -> int:
    """cmp-style ordering: negative when ``left`` should run first."""
    if left.priority != right.priority:
        return -1 if left.priority > right.priority else 1
    if left.created_ns != right.created_ns:
        return -1 if left.created_ns < right.created_ns else 1
    left_order = left.insertion_order
    right_order = right.insertion_order
    if left_order is None or right_order is None:
        raise JobHolderError(
            f"cannot order jobs {left.id} and {right.id} without insertion orders"
        )
    if left_order == right_order:
        return 0
    return -1 if left_order < right_order else 1
