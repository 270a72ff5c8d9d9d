"""
Timing metrics emitted as JSONL events via observability.logger.

Responsibilities:
- Measure durations using monotonic time (immune to clock changes)
- Emit one METRIC_TIMER event per measurement; never aggregate
- Provide a context manager so timers cannot leak

Event timestamps (ts_ms) are wall-clock for correlation with other logs.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event, now_ms


# timer_id -> (metric_name, start_time_ns)
_active_timers: dict[str, tuple[str, int]] = {}


def start_timer(name: str) -> str:
    """
    Start a monotonic timer.

    Returns an opaque timer id for stop_timer(). Callers must stop it in a
    finally block unless they use timed().
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    outcome: str = "ok",
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Stop a timer and emit its metric event.

    Returns duration_ms, or None if the timer id is unknown (already stopped).
    """
    entry = _active_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, start_ns = entry
    duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000

    log_event({
        "ts_ms": now_ms(),
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        "outcome": outcome,
        "details": details or {},
    })
    return duration_ms


def active_timer_count() -> int:
    return len(_active_timers)


@contextmanager
def timed(name: str, *, details: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
    """
    Time a block; the metric is emitted exactly once even if it raises.

    Yields a mutable details dict the block may add fields to:

        with timed("capture_permission_check") as details:
            details["granted"] = await supervisor.check_permissions()
    """
    timer_id = start_timer(name)
    extra: dict[str, Any] = dict(details or {})
    outcome = "error"
    try:
        yield extra
        outcome = "ok"
    finally:
        stop_timer(timer_id, outcome=outcome, details=extra)
