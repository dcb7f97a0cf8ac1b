# estimation.py
"""
Completion estimates from item-count snapshots.

Snapshots are recorded on every poll for the active subtask of each running
task. Throughput is modelled as a Poisson process whose rate is the mean of
the positive per-interval rates over the most recent snapshots. The time to
finish the remaining items is then Gamma(shape=remaining, rate=λ)
distributed, which gives the interval around the estimate.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque, Dict, NamedTuple, Optional, Tuple

from scipy.stats import gamma

from tasker_monitor.config import ESTIMATE_MIN_SNAPSHOTS, ESTIMATE_WINDOW, PROGRESS_HISTORY_CAP
from tasker_monitor.progress import format_duration_seconds
from tasker_monitor.utils import utcnow

logger = logging.getLogger(__name__)

CONFIDENCE_INDICATORS = {"high": "●", "medium": "◐", "low": "○"}


class ProgressSnapshot(NamedTuple):
    timestamp: datetime
    items_complete: int
    items_total: int
    subtask_name: str = ""
    status: str = ""


class CompletionEstimate(NamedTuple):
    eta: float
    confidence_interval: Tuple[float, float]
    confidence: str
    rate: float
    items_remaining: int


class ProgressHistory:
    """Bounded snapshot history keyed by (run_id, subtask_number)."""

    def __init__(self, capacity: int = PROGRESS_HISTORY_CAP):
        self.capacity = capacity
        self._history: Dict[Tuple[str, int], Deque[ProgressSnapshot]] = {}

    def record(
        self,
        run_id: str,
        subtask_number: int,
        items_complete: int,
        items_total: int,
        *,
        subtask_name: str = "",
        status: str = "",
        timestamp: Optional[datetime] = None,
    ) -> None:
        key = (str(run_id), int(subtask_number))
        snapshots = self._history.get(key)
        if snapshots is None:
            snapshots = deque(maxlen=self.capacity)
            self._history[key] = snapshots

        snapshots.append(
            ProgressSnapshot(
                timestamp=timestamp or utcnow(),
                items_complete=int(items_complete),
                items_total=int(items_total),
                subtask_name=subtask_name,
                status=status,
            )
        )

    def snapshots(self, run_id: str, subtask_number: int) -> list[ProgressSnapshot]:
        return list(self._history.get((str(run_id), int(subtask_number)), ()))

    def forget_run(self, run_id: str) -> None:
        run_id = str(run_id)
        for key in [k for k in self._history if k[0] == run_id]:
            del self._history[key]

    def __len__(self) -> int:
        return len(self._history)

    def completion_estimate(
        self,
        run_id: str,
        subtask_number: int,
        confidence_level: float = 0.95,
    ) -> Optional[CompletionEstimate]:
        return completion_estimate(self.snapshots(run_id, subtask_number), confidence_level)


def interval_rates(snapshots: list[ProgressSnapshot]) -> list[float]:
    """Items per second between consecutive snapshots, skipping stalled intervals."""
    rates = []
    for prev, curr in zip(snapshots, snapshots[1:]):
        elapsed = (curr.timestamp - prev.timestamp).total_seconds()
        done = curr.items_complete - prev.items_complete
        if elapsed > 0 and done > 0:
            rates.append(done / elapsed)
    return rates


def completion_estimate(
    snapshots: list[ProgressSnapshot],
    confidence_level: float = 0.95,
) -> Optional[CompletionEstimate]:
    """
    Estimate time to completion from the latest ESTIMATE_WINDOW snapshots.

    Returns None with fewer than ESTIMATE_MIN_SNAPSHOTS snapshots, or when
    no interval shows forward progress. Confidence grows with the number of
    usable intervals: high from 10, medium from 5.
    """
    if len(snapshots) < ESTIMATE_MIN_SNAPSHOTS:
        return None

    recent = snapshots[-ESTIMATE_WINDOW:]
    rates = interval_rates(recent)
    if not rates:
        logger.debug("No progress detected in %d snapshot(s)", len(recent))
        return None

    rate = sum(rates) / len(rates)
    if len(rates) >= 10:
        confidence = "high"
    elif len(rates) >= 5:
        confidence = "medium"
    else:
        confidence = "low"

    current = recent[-1]
    remaining = current.items_total - current.items_complete
    if remaining < 0:
        logger.debug("Invalid snapshot state: %s items remaining", remaining)
        return None
    if remaining == 0:
        return CompletionEstimate(0.0, (0.0, 0.0), confidence, rate, 0)

    alpha = 1 - confidence_level
    waiting = gamma(a=remaining, scale=1 / rate)
    return CompletionEstimate(
        eta=remaining / rate,
        confidence_interval=(float(waiting.ppf(alpha / 2)), float(waiting.ppf(1 - alpha / 2))),
        confidence=confidence,
        rate=rate,
        items_remaining=remaining,
    )


def format_completion(estimate: Optional[CompletionEstimate]) -> str:
    """'12m ● (95% CI: 10m - 15m)', or 'Computing...' without an estimate."""
    if estimate is None:
        return "Computing..."

    low, high = estimate.confidence_interval
    indicator = CONFIDENCE_INDICATORS.get(estimate.confidence, "○")
    return (
        f"{format_duration_seconds(estimate.eta)} {indicator} "
        f"(95% CI: {format_duration_seconds(low)} - {format_duration_seconds(high)})"
    )
