# progress.py
"""
Progress arithmetic shared by the monitor and the UI.

Every function here is pure: it takes a TaskState (or plain values) and
returns display values, so the rendering layer never does arithmetic.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, NamedTuple, Optional

from tasker_monitor.models import (
    COMPLETED,
    FAILED,
    NOT_STARTED,
    RUNNING,
    STARTED,
    TaskState,
    is_active,
)
from tasker_monitor.utils import utcnow

STATUS_CLASSES = {
    COMPLETED: "success",
    RUNNING: "warning",
    FAILED: "danger",
    STARTED: "info",
}


class TaskProgress(NamedTuple):
    percentage: float
    width: float
    label: str
    status_class: str


class ItemsProgress(NamedTuple):
    items_complete: int
    items_total: int
    percentage: float
    label: str


class StageAggregate(NamedTuple):
    status: str
    completed: int
    total: int
    progress_pct: int


def _completed_subtasks(state: TaskState) -> int:
    if state.completed_subtasks is not None:
        return state.completed_subtasks
    if state.status == COMPLETED:
        return state.total_subtasks
    return max(0, (state.current_subtask or 0) - 1)


def calculate_task_progress(state: Optional[TaskState]) -> TaskProgress:
    """Effective percentage, bar width, label and style class for a task."""
    if state is None:
        return TaskProgress(0, 0, "Task:", "primary")

    status = state.status
    total = state.total_subtasks or 0
    use_subtasks = total > 0

    if use_subtasks:
        completed = _completed_subtasks(state)
        percentage = round(100 * completed / total, 1)
    else:
        completed = 0
        if state.items_total > 1 and state.items_complete > 0:
            percentage = round(100 * state.items_complete / state.items_total, 1)
        elif state.overall_percent_complete and state.overall_percent_complete > 0:
            percentage = float(state.overall_percent_complete)
        else:
            percentage = 0.0

    if status == COMPLETED:
        label = f"Task: {total}/{total} (100%)" if use_subtasks else "Task: 100%"
    elif status in (FAILED, RUNNING, STARTED):
        if use_subtasks:
            label = f"Task: {completed}/{total} ({percentage:.1f}%)"
            if state.current_subtask_name:
                label += (
                    f" - Subtask {state.current_subtask or 0}."
                    f"{state.current_subtask_number or 1} | {state.current_subtask_name}"
                )
        else:
            label = f"Task: {percentage:.1f}%"
    else:
        label = "Task:"

    if status == COMPLETED:
        width = 100.0
    elif status == FAILED:
        width = percentage
    elif is_active(status):
        # a sliver of bar shows the task is alive before the first subtask completes
        min_width = (0.5 / total) * 100 if use_subtasks else 0.5
        width = max(percentage, min_width)
    else:
        width = 0.0

    return TaskProgress(percentage, width, label, STATUS_CLASSES.get(status, "primary"))


def items_progress(state: TaskState) -> Optional[ItemsProgress]:
    """Secondary bar for item counts; None when there is nothing worth showing."""
    if state.items_total <= 1 or state.status == COMPLETED:
        return None
    pct = round(100 * state.items_complete / state.items_total, 1)
    return ItemsProgress(
        state.items_complete,
        state.items_total,
        pct,
        f"Items: {state.items_complete}/{state.items_total} ({pct:.1f}%)",
    )


def aggregate_stage(statuses: Iterable[str]) -> StageAggregate:
    """
    Roll task statuses up into a stage status.

    FAILED beats RUNNING beats COMPLETED (all tasks) beats STARTED (some
    progress); a stage with no progress is NOT_STARTED.
    """
    statuses = list(statuses)
    total = len(statuses)
    completed = sum(1 for s in statuses if s == COMPLETED)

    if any(s == FAILED for s in statuses):
        status = FAILED
    elif any(s == RUNNING for s in statuses):
        status = RUNNING
    elif total > 0 and completed == total:
        status = COMPLETED
    elif any(s in (STARTED, COMPLETED) for s in statuses):
        status = STARTED
    else:
        status = NOT_STARTED

    progress_pct = round(100 * completed / total) if total else 0
    return StageAggregate(status, completed, total, progress_pct)


def stage_progress_label(completed: int, total: int, progress_pct: int) -> str:
    return f"{completed}/{total} ({progress_pct}%)"


def task_message(state: TaskState) -> str:
    overall = state.overall_progress_message or ""
    if state.current_subtask_name:
        prefix = (
            f"Subtask {state.current_subtask or 0}.{state.current_subtask_number or 1}: "
            f"{state.current_subtask_name}"
        )
        return f"{prefix} | {overall}" if overall else prefix
    return overall


# -------------------------
# Durations
# -------------------------

def format_elapsed(
    start: Optional[datetime],
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    """HH:MM:SS above an hour, MM:SS above a minute, else 'Ns'; '-' when unknown."""
    if start is None:
        return "-"
    stop = end or now or utcnow()
    secs = max(0, int((stop - start).total_seconds()))

    hours, rem = divmod(secs, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    if minutes > 0:
        return f"{minutes:02d}:{seconds:02d}"
    return f"{seconds}s"


def format_duration_seconds(seconds: Optional[float]) -> str:
    """Compact duration: '1d 2h', '3h 5m', '2h', '7m', '12s'."""
    if seconds is None or seconds <= 0:
        return "0s"

    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)

    if days > 0:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    if minutes > 0:
        return f"{minutes}m"
    return f"{secs}s"


def format_age(seconds: Optional[float]) -> str:
    """'as of' style age: 'Ns', 'Nm' or 'Nh'."""
    if seconds is None:
        return "unknown"
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"
