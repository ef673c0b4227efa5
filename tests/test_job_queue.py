from __future__ import annotations

import unittest

from jobqueue.holder import JobHolder
from jobqueue.job import Job, JobParams
from jobqueue.models import NOT_DELAYED_JOB_DELAY, TagConstraint
from jobqueue.job_queue import PriorityJobQueue


class NoopJob(Job):
    def on_run(self) -> None:
        pass


def _holder(
    priority: int = 0,
    created_ns: int = 0,
    *,
    params: JobParams | None = None,
    delay_until_ns: int = NOT_DELAYED_JOB_DELAY,
    insertion_order: int | None = None,
) -> JobHolder:
    job = NoopJob(params)
    builder = (
        JobHolder.Builder()
        .job(job)
        .priority(priority)
        .group_id(job.group_id)
        .running_session_id(0)
        .created_ns(created_ns)
        .delay_until_ns(delay_until_ns)
    )
    if insertion_order is not None:
        builder.insertion_order(insertion_order)
    return builder.build()


class PriorityJobQueueTest(unittest.TestCase):
    def test_insertion_order_is_monotonic(self) -> None:
        queue = PriorityJobQueue()
        orders = [queue.insert(_holder()) for _ in range(3)]
        self.assertEqual(orders, [1, 2, 3])

    def test_restored_insertion_order_is_kept_and_advances_counter(self) -> None:
        queue = PriorityJobQueue()
        restored = _holder(insertion_order=40)
        self.assertEqual(queue.insert(restored), 40)
        self.assertEqual(queue.insert(_holder()), 41)

    def test_stale_insertion_order_rejected(self) -> None:
        queue = PriorityJobQueue()
        queue.insert(_holder())
        queue.insert(_holder())
        with self.assertRaises(ValueError):
            queue.insert(_holder(insertion_order=2))
        self.assertEqual(queue.count(), 2)
        self.assertEqual(queue.insert(_holder()), 3)

    def test_duplicate_insert_rejected(self) -> None:
        queue = PriorityJobQueue()
        holder = _holder()
        queue.insert(holder)
        with self.assertRaises(ValueError):
            queue.insert(holder)

    def test_next_ready_follows_ordering_key(self) -> None:
        queue = PriorityJobQueue()
        low = _holder(priority=3, created_ns=0)
        late = _holder(priority=5, created_ns=20)
        early = _holder(priority=5, created_ns=10)
        for holder in (low, late, early):
            queue.insert(holder)
        self.assertIs(queue.next_ready(100, True), early)
        queue.remove(early.id)
        self.assertIs(queue.next_ready(100, True), late)
        queue.remove(late.id)
        self.assertIs(queue.next_ready(100, True), low)
        queue.remove(low.id)
        self.assertIsNone(queue.next_ready(100, True))

    def test_equal_keys_use_insertion_order(self) -> None:
        queue = PriorityJobQueue()
        first = _holder(priority=1, created_ns=5)
        second = _holder(priority=1, created_ns=5)
        queue.insert(first)
        queue.insert(second)
        self.assertIs(queue.next_ready(10, True), first)
        self.assertEqual([holder.id for holder in queue], [first.id, second.id])

    def test_delay_network_and_group_filters(self) -> None:
        queue = PriorityJobQueue()
        delayed = _holder(priority=9, delay_until_ns=1_000)
        online = _holder(priority=8, params=JobParams(requires_network=True))
        grouped = _holder(priority=7, params=JobParams(group_id="g"))
        plain = _holder(priority=1)
        for holder in (delayed, online, grouped, plain):
            queue.insert(holder)

        self.assertIs(queue.next_ready(0, False, {"g"}), plain)
        self.assertIs(queue.next_ready(0, False), grouped)
        self.assertIs(queue.next_ready(0, True), online)
        self.assertIs(queue.next_ready(1_000, True), delayed)
        self.assertEqual(queue.count_ready(0, False, {"g"}), 1)
        self.assertEqual(queue.count_ready(1_000, True), 4)
        self.assertEqual(queue.next_delay_ns(True), 1_000)

    def test_count_ready_counts_one_per_group(self) -> None:
        queue = PriorityJobQueue()
        for _ in range(3):
            queue.insert(_holder(params=JobParams(group_id="g")))
        queue.insert(_holder())
        self.assertEqual(queue.count(), 4)
        self.assertEqual(queue.count_ready(0, True), 2)

    def test_find_by_tags(self) -> None:
        queue = PriorityJobQueue()
        both = _holder(params=JobParams().add_tags("a", "b"))
        only_a = _holder(params=JobParams().add_tags("a"))
        untagged = _holder()
        for holder in (both, only_a, untagged):
            queue.insert(holder)
        self.assertEqual(set(queue.find_by_tags(TagConstraint.ANY, frozenset({"a"}))), {both, only_a})
        self.assertEqual(queue.find_by_tags(TagConstraint.ALL, frozenset({"a", "b"})), [both])
        self.assertIn(untagged.id, queue)
        self.assertIs(queue.find(untagged.id), untagged)


if __name__ == "__main__":
    unittest.main()
