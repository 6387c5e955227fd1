"""
Stability statistics shared by the evaluator, simulator and ingestion path.
All helpers are pure and tolerate empty inputs.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from . import config


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def failure_rate(total_runs: int, failed_runs: int) -> float:
    if total_runs <= 0:
        return 0.0
    return failed_runs / total_runs


def confidence_for(total_runs: int, prior_runs: int = config.CONFIDENCE_PRIOR_RUNS) -> float:
    """Certainty of a failure-rate estimate; 0 with no evidence, approaching 1."""
    if total_runs <= 0:
        return 0.0
    return total_runs / (total_runs + prior_runs)


def is_failure(status: str) -> bool:
    return (status or "").lower() in config.FAILURE_STATUSES


def is_counted(status: str) -> bool:
    return (status or "").lower() in config.COUNTED_STATUSES


def elapsed_days(start: datetime, now: datetime) -> float:
    delta = ensure_utc(now) - ensure_utc(start)
    return delta.total_seconds() / 86400.0


def runs_since(runs: Sequence, start: datetime) -> List:
    start = ensure_utc(start)
    return [run for run in runs if ensure_utc(run.timestamp) >= start]


def runs_within(runs: Sequence, now: datetime, days: float) -> List:
    cutoff = ensure_utc(now) - timedelta(days=days)
    return [run for run in runs if ensure_utc(run.timestamp) >= cutoff]


def success_rate(runs: Iterable) -> Optional[float]:
    runs = list(runs)
    if not runs:
        return None
    return sum(1 for run in runs if run.passed) / len(runs)


def window_failure_rate(runs: Sequence, size: int) -> Optional[float]:
    """Failure rate over the last ``size`` runs, or None if fewer exist."""
    if size <= 0 or len(runs) < size:
        return None
    window = runs[-size:]
    return sum(1 for run in window if not run.passed) / size


def scaled_requirement(base: int, multiplier: float) -> int:
    return max(base, int(math.ceil(base * multiplier)))
