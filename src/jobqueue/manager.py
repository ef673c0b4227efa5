from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, load_config
from .holder import JobHolder
from .job import Job
from .job_queue import PriorityJobQueue
from .models import (
    NOT_DELAYED_JOB_DELAY,
    NOT_RUNNING_SESSION_ID,
    RETRY,
    JobStatus,
    RetryConstraint,
    RunResult,
    TagConstraint,
)
from .utils import monotonic_ns, ms_to_ns

_session_lock = threading.Lock()
_last_session_id = 0


def _next_session_id(now_ns: int) -> int:
    global _last_session_id
    with _session_lock:
        _last_session_id = max(now_ns, _last_session_id + 1)
        return _last_session_id


@dataclass(slots=True)
class CancelResult:
    cancelled: list[Job] = field(default_factory=list)
    in_flight: list[Job] = field(default_factory=list)


class JobManager:
    def __init__(
        self,
        config: AppConfig,
        logger: logging.Logger,
        *,
        queue: PriorityJobQueue | None = None,
        network_util: Callable[[], bool] | None = None,
        context: Any = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.queue = queue if queue is not None else PriorityJobQueue()
        self.network_util = network_util
        self.context = context
        self.clock = clock or monotonic_ns
        self.session_id = _next_session_id(self.clock())
        self.running: dict[str, JobHolder] = {}
        self.running_groups: set[str] = set()
        self._lock = threading.RLock()

    @classmethod
    def from_config_path(cls, path: str | Path, **kwargs: Any) -> JobManager:
        config = load_config(path)
        logger = setup_logger(config.logging.path, config.logging.level)
        return cls(config, logger, **kwargs)

    def _has_network(self) -> bool:
        if self.network_util is None:
            return True
        return bool(self.network_util())

    def add_job(self, job: Job) -> str:
        with self._lock:
            if job.id in self.queue or job.id in self.running:
                raise ValueError(f"job already queued: {job.id}")
            now = self.clock()
            delay_until_ns = NOT_DELAYED_JOB_DELAY
            if job.delay_ms > 0:
                delay_until_ns = now + ms_to_ns(job.delay_ms)
            holder = (
                JobHolder.Builder()
                .job(job)
                .priority(job.priority)
                .group_id(job.group_id)
                .created_ns(now)
                .delay_until_ns(delay_until_ns)
                .running_session_id(NOT_RUNNING_SESSION_ID)
                .build()
            )
            insertion_order = self.queue.insert(holder)
        job.on_added()
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_added",
            job_id=holder.id,
            priority=holder.priority,
            group_id=holder.group_id,
            delay_ms=job.delay_ms,
            insertion_order=insertion_order,
        )
        return holder.id

    def count(self) -> int:
        with self._lock:
            return self.queue.count()

    def count_ready(self) -> int:
        with self._lock:
            return self.queue.count_ready(self.clock(), self._has_network(), self.running_groups)

    def get_job_status(self, job_id: str) -> JobStatus:
        with self._lock:
            if job_id in self.running:
                return JobStatus.RUNNING
            holder = self.queue.find(job_id)
            if holder is None:
                return JobStatus.UNKNOWN
            if holder.requires_network() and not self._has_network():
                return JobStatus.WAITING_NOT_READY
            delayed = holder.delay_until_ns != NOT_DELAYED_JOB_DELAY and holder.delay_until_ns > self.clock()
            if delayed or holder.group_id in self.running_groups:
                return JobStatus.WAITING_NOT_READY
            return JobStatus.WAITING_READY

    def _take_next(self) -> JobHolder | None:
        with self._lock:
            holder = self.queue.next_ready(self.clock(), self._has_network(), self.running_groups)
            if holder is None:
                return None
            self.queue.remove(holder.id)
            holder.run_count += 1
            holder.running_session_id = self.session_id
            self.running[holder.id] = holder
            if holder.group_id is not None:
                self.running_groups.add(holder.group_id)
            return holder

    def _release(self, holder: JobHolder) -> None:
        with self._lock:
            self.running.pop(holder.id, None)
            if holder.group_id is not None:
                self.running_groups.discard(holder.group_id)

    def run_next(self) -> RunResult | None:
        holder = self._take_next()
        if holder is None:
            return None
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_started",
            job_id=holder.id,
            run_count=holder.run_count,
            session_id=self.session_id,
        )
        holder.set_application_context(self.context)
        result = holder.safe_run(holder.run_count)
        self._handle_result(holder, result)
        return result

    def _handle_result(self, holder: JobHolder, result: RunResult) -> None:
        if result is RunResult.SUCCESS:
            holder.mark_as_successful()
            self._release(holder)
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_completed",
                job_id=holder.id,
                run_count=holder.run_count,
            )
            return

        if result is RunResult.FAIL_FOR_CANCEL:
            self._release(holder)
            holder.on_cancel()
            log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=holder.id)
            return

        if result is RunResult.FAIL_RUN_LIMIT:
            self._fail(holder, "run_limit")
            return

        constraint = holder.retry_constraint or RETRY
        if not constraint.should_retry:
            self._fail(holder, "retry_cancelled")
            return
        self._requeue(holder, result, constraint)

    def _fail(self, holder: JobHolder, reason: str) -> None:
        self._release(holder)
        holder.on_cancel()
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_failed",
            job_id=holder.id,
            run_count=holder.run_count,
            reason=reason,
        )

    def _requeue(self, holder: JobHolder, result: RunResult, constraint: RetryConstraint) -> None:
        if constraint.new_delay_ms is None and self.config.retry.initial_backoff_ms > 0:
            backoff = RetryConstraint.create_exponential_backoff(
                holder.run_count,
                self.config.retry.initial_backoff_ms,
            )
            delay_ms = backoff.new_delay_ms
        else:
            delay_ms = constraint.new_delay_ms

        builder = JobHolder.Builder.from_holder(holder)
        builder.running_session_id(NOT_RUNNING_SESSION_ID)
        if constraint.new_priority is not None:
            builder.priority(constraint.new_priority)
        if constraint.new_group_id is not None:
            builder.group_id(constraint.new_group_id)
        if delay_ms is not None:
            builder.delay_until_ns(
                self.clock() + ms_to_ns(delay_ms) if delay_ms > 0 else NOT_DELAYED_JOB_DELAY
            )
        requeued = builder.build()
        holder.job.retry_constraint = None

        with self._lock:
            self._release(holder)
            cancelled_late = holder.is_cancelled()
            if not cancelled_late:
                insertion_order = self.queue.insert(requeued)
        if cancelled_late:
            holder.on_cancel()
            log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=holder.id)
            return
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_retry_scheduled",
            job_id=requeued.id,
            result=result.name,
            run_count=requeued.run_count,
            priority=requeued.priority,
            group_id=requeued.group_id,
            delay_ms=delay_ms or 0,
            insertion_order=insertion_order,
        )

    def cancel_jobs(self, constraint: TagConstraint, *tags: str) -> CancelResult:
        wanted = frozenset(tags)
        result = CancelResult()
        with self._lock:
            queued = self.queue.find_by_tags(constraint, wanted)
            for holder in queued:
                self.queue.remove(holder.id)
                holder.mark_as_cancelled()
            for holder in self.running.values():
                if constraint.matches(holder.tags, wanted):
                    holder.mark_as_cancelled()
                    result.in_flight.append(holder.job)
        for holder in queued:
            holder.on_cancel()
            result.cancelled.append(holder.job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "jobs_cancel_requested",
            constraint=constraint.value,
            tags=sorted(wanted),
            cancelled=[job.id for job in result.cancelled],
            in_flight=[job.id for job in result.in_flight],
        )
        return result

    def restore(self, holders: Iterable[JobHolder]) -> int:
        """Queue records persisted by an earlier session.

        Records stamped with this manager's session are already in flight here
        and are skipped. Everything else is abandoned work and is queued again
        as a fresh record with a new insertion order; the given records are
        left untouched.
        """
        restored = 0
        with self._lock:
            for holder in holders:
                if holder.running_session_id == self.session_id:
                    continue
                if holder.id in self.queue or holder.id in self.running:
                    continue
                requeued = (
                    JobHolder.Builder.from_holder(holder)
                    .running_session_id(NOT_RUNNING_SESSION_ID)
                    .build()
                )
                insertion_order = self.queue.insert(requeued)
                restored += 1
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "job_restored",
                    job_id=requeued.id,
                    stale_session_id=holder.running_session_id,
                    run_count=requeued.run_count,
                    insertion_order=insertion_order,
                )
        return restored
