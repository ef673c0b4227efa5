from __future__ import annotations

import itertools
from collections.abc import Collection, Iterator

from .holder import JobHolder
from .models import NOT_DELAYED_JOB_DELAY, TagConstraint


class PriorityJobQueue:
    """In-memory queue of ``JobHolder`` records.

    Records are chosen by ``JobHolder.sort_key``: highest priority first, then
    oldest ``created_ns``, then lowest insertion order. The queue hands out
    insertion orders and never reassigns one. Not thread safe; the manager
    serializes access.
    """

    def __init__(self) -> None:
        self._holders: dict[str, JobHolder] = {}
        self._next_order = itertools.count(1)
        self._last_order = 0

    def __len__(self) -> int:
        return len(self._holders)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._holders

    def __iter__(self) -> Iterator[JobHolder]:
        return iter(sorted(self._holders.values(), key=JobHolder.sort_key))

    def insert(self, holder: JobHolder) -> int:
        if holder.id in self._holders:
            raise ValueError(f"job already queued: {holder.id}")
        if holder.insertion_order is None:
            holder.set_insertion_order(self._take_order())
        elif holder.insertion_order <= self._last_order:
            raise ValueError(
                f"insertion order {holder.insertion_order} for job {holder.id} "
                f"is not after {self._last_order}"
            )
        else:
            self._next_order = itertools.count(holder.insertion_order + 1)
            self._last_order = holder.insertion_order
        self._holders[holder.id] = holder
        return holder.insertion_order

    def _take_order(self) -> int:
        order = next(self._next_order)
        self._last_order = order
        return order

    def remove(self, job_id: str) -> JobHolder | None:
        return self._holders.pop(job_id, None)

    def find(self, job_id: str) -> JobHolder | None:
        return self._holders.get(job_id)

    def count(self) -> int:
        return len(self._holders)

    def _eligible(
        self,
        now_ns: int,
        has_network: bool,
        exclude_groups: Collection[str],
    ) -> Iterator[JobHolder]:
        for holder in self._holders.values():
            if holder.delay_until_ns != NOT_DELAYED_JOB_DELAY and holder.delay_until_ns > now_ns:
                continue
            if holder.requires_network() and not has_network:
                continue
            if holder.group_id is not None and holder.group_id in exclude_groups:
                continue
            yield holder

    def count_ready(
        self,
        now_ns: int,
        has_network: bool,
        exclude_groups: Collection[str] = (),
    ) -> int:
        # one ready job per group: the rest must wait for it
        groups: set[str] = set()
        count = 0
        for holder in self._eligible(now_ns, has_network, exclude_groups):
            if holder.group_id is None:
                count += 1
            elif holder.group_id not in groups:
                groups.add(holder.group_id)
                count += 1
        return count

    def next_ready(
        self,
        now_ns: int,
        has_network: bool,
        exclude_groups: Collection[str] = (),
    ) -> JobHolder | None:
        candidates = self._eligible(now_ns, has_network, exclude_groups)
        return min(candidates, key=JobHolder.sort_key, default=None)

    def next_delay_ns(self, has_network: bool) -> int | None:
        delays = [
            holder.delay_until_ns
            for holder in self._holders.values()
            if holder.delay_until_ns != NOT_DELAYED_JOB_DELAY
            and (has_network or not holder.requires_network())
        ]
        return min(delays, default=None)

    def find_by_tags(self, constraint: TagConstraint, tags: frozenset[str]) -> list[JobHolder]:
        return [holder for holder in self if constraint.matches(holder.tags, tags)]
