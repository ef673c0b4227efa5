from __future__ import annotations

import time

NS_PER_MS = 1_000_000


def monotonic_ns() -> int:
    return time.monotonic_ns()


def ms_to_ns(delay_ms: int) -> int:
    return int(delay_ms) * NS_PER_MS
