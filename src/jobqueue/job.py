from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .app_logging import log_with_fields
from .models import RETRY, RetryConstraint, RunResult

if TYPE_CHECKING:
    from .holder import JobHolder

DEFAULT_RETRY_LIMIT = 20

logger = logging.getLogger("jobqueue.job")


@dataclass(slots=True)
class JobParams:
    priority: int = 0
    requires_network: bool = False
    group_id: str | None = None
    delay_ms: int = 0
    tags: set[str] | None = None
    retry_limit: int = DEFAULT_RETRY_LIMIT

    def add_tags(self, *tags: str) -> JobParams:
        if self.tags is None:
            self.tags = set()
        self.tags.update(tags)
        return self


class Job(ABC):
    """Base class for units of work run by the job manager.

    Subclasses implement ``on_run``. Any exception it raises is caught by
    ``safe_run`` and turned into a ``RunResult``; cancellation is only ever
    observed, never forced, so long running ``on_run`` implementations should
    poll ``is_cancelled``.
    """

    def __init__(self, params: JobParams | None = None) -> None:
        params = params or JobParams()
        self._id = str(uuid.uuid4())
        self._priority = params.priority
        self._requires_network = params.requires_network
        self.group_id = params.group_id
        self.delay_ms = params.delay_ms
        self.retry_limit = params.retry_limit
        self._tags = set(params.tags) if params.tags else None
        self._cancelled = threading.Event()
        self._application_context: Any = None
        self.current_run_count = 0
        self.retry_constraint: RetryConstraint | None = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def priority(self) -> int:
        return self._priority

    def set_priority(self, priority: int) -> None:
        self._priority = priority

    def requires_network(self) -> bool:
        return self._requires_network

    def get_tags(self) -> set[str] | None:
        return self._tags

    def set_cancelled(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def application_context(self) -> Any:
        return self._application_context

    def set_application_context(self, context: Any) -> None:
        self._application_context = context

    def on_added(self) -> None:
        pass

    @abstractmethod
    def on_run(self) -> None:
        raise NotImplementedError

    def on_cancel(self) -> None:
        pass

    def should_re_run_on_throwable(
        self,
        exc: Exception,
        run_count: int,
        max_run_count: int,
    ) -> RetryConstraint | None:
        return RETRY

    def should_re_run(self) -> bool:
        """Return True to reject a run that finished without raising."""
        return False

    def _retry_constraint_for(self, exc: Exception, run_count: int) -> RetryConstraint:
        try:
            constraint = self.should_re_run_on_throwable(exc, run_count, self.retry_limit)
        except Exception as hook_exc:
            log_with_fields(
                logger,
                logging.ERROR,
                "retry_hook_raised",
                job_id=self.id,
                error=repr(hook_exc),
            )
            return RETRY
        return constraint or RETRY

    def safe_run(self, holder: JobHolder, current_run_count: int) -> RunResult:
        self.current_run_count = current_run_count
        if holder.is_cancelled():
            return RunResult.FAIL_FOR_CANCEL

        try:
            self.on_run()
            vetoed = self.should_re_run()
        except Exception as exc:
            log_with_fields(
                logger,
                logging.WARNING,
                "job_run_raised",
                job_id=self.id,
                run_count=current_run_count,
                error=repr(exc),
            )
            self.retry_constraint = self._retry_constraint_for(exc, current_run_count)
            if holder.is_cancelled():
                return RunResult.FAIL_FOR_CANCEL
            if current_run_count >= self.retry_limit:
                return RunResult.FAIL_RUN_LIMIT
            if self.retry_constraint.should_retry:
                return RunResult.TRY_AGAIN
            return RunResult.FAIL_RUN_LIMIT

        if vetoed:
            if current_run_count >= self.retry_limit:
                return RunResult.FAIL_RUN_LIMIT
            self.retry_constraint = RETRY
            return RunResult.FAIL_SHOULD_RE_RUN
        return RunResult.SUCCESS
