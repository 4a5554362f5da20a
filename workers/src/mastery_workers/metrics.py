"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts are safe and need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "jobs_processed": 0,
    "jobs_failed": 0,
    "jobs_dead": 0,
    "handlers": {},
    "tier_exits": {},
    "llm_calls": {"total": 0, "failed": 0, "by_stage": {}},
}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    """Record a single handler invocation with timing."""
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def record_tier_exit(tier: str) -> None:
    """Count which tier an assessment run stopped at."""
    _metrics["tier_exits"][tier] = _metrics["tier_exits"].get(tier, 0) + 1


def record_llm_call(stage: str, success: bool) -> None:
    calls = _metrics["llm_calls"]
    calls["total"] += 1
    if not success:
        calls["failed"] += 1
    calls["by_stage"][stage] = calls["by_stage"].get(stage, 0) + 1


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    calls = _metrics["llm_calls"]
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs_processed": _metrics["jobs_processed"],
        "jobs_failed": _metrics["jobs_failed"],
        "jobs_dead": _metrics["jobs_dead"],
        "handlers": {
            name: dict(stats)
            for name, stats in _metrics["handlers"].items()
        },
        "tier_exits": dict(_metrics["tier_exits"]),
        "llm_calls": {
            "total": calls["total"],
            "failed": calls["failed"],
            "by_stage": dict(calls["by_stage"]),
        },
    }
