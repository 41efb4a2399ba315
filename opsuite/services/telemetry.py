from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import time
from typing import Deque


@dataclass(frozen=True)
class JobSample:
    ts: float
    queue: str
    outcome: str
    duration_ms: float


_job_samples: Deque[JobSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards and queue health reporting.
    _counters[name] += value


def record_job(*, queue: str, outcome: str, duration_ms: float) -> None:
    # Track worker job outcomes and latency per queue.
    _job_samples.append(JobSample(ts=time.time(), queue=queue, outcome=outcome, duration_ms=duration_ms))
    increment_counter(f"jobs.{queue}.{outcome}")


def job_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Summarize recent job counts and max latency by queue.
    cutoff = time.time() - window_s
    grouped: dict[str, list[JobSample]] = defaultdict(list)
    for sample in _job_samples:
        if sample.ts >= cutoff:
            grouped[sample.queue].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for queue, samples in grouped.items():
        result[queue] = {
            "total": len(samples),
            "failed": sum(1 for sample in samples if sample.outcome != "succeeded"),
            "max_ms": max(sample.duration_ms for sample in samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_counters() -> None:
    _counters.clear()
    _job_samples.clear()
