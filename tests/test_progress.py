# tests/test_progress.py
from datetime import datetime, timedelta, timezone

import pytest

from tasker_monitor.models import COMPLETED, FAILED, NOT_STARTED, RUNNING, STARTED, TaskState
from tasker_monitor.progress import (
    aggregate_stage,
    calculate_task_progress,
    format_age,
    format_duration_seconds,
    format_elapsed,
    items_progress,
    stage_progress_label,
    task_message,
)


def _state(**kwargs) -> TaskState:
    return TaskState(stage_name="LOAD", task_name="Import", **kwargs)


def test_progress_without_state():
    p = calculate_task_progress(None)
    assert (p.percentage, p.width, p.label) == (0, 0, "Task:")


def test_running_with_subtasks_and_current_subtask():
    state = _state(
        status=RUNNING,
        total_subtasks=4,
        current_subtask=2,
        completed_subtasks=1,
        current_subtask_number=2,
        current_subtask_name="Tokenize",
    )
    p = calculate_task_progress(state)

    assert p.percentage == 25.0
    assert p.width == 25.0
    assert p.label == "Task: 1/4 (25.0%) - Subtask 2.2 | Tokenize"
    assert p.status_class == "warning"


def test_completed_count_falls_back_to_current_subtask():
    state = _state(status=STARTED, total_subtasks=4, current_subtask=3)
    p = calculate_task_progress(state)

    assert p.percentage == 50.0
    assert p.label == "Task: 2/4 (50.0%)"
    assert p.status_class == "info"


def test_active_task_gets_minimum_sliver():
    with_subtasks = calculate_task_progress(_state(status=RUNNING, total_subtasks=5, current_subtask=1))
    assert with_subtasks.percentage == 0.0
    assert with_subtasks.width == pytest.approx(10.0)

    without = calculate_task_progress(_state(status=STARTED))
    assert without.width == 0.5
    assert without.label == "Task: 0.0%"


def test_items_drive_percentage_without_subtasks():
    state = _state(status=RUNNING, items_total=200, items_complete=50, overall_percent_complete=10)
    assert calculate_task_progress(state).percentage == 25.0


def test_overall_percent_used_when_no_items():
    state = _state(status=FAILED, overall_percent_complete=40)
    p = calculate_task_progress(state)

    assert p.percentage == 40.0
    assert p.width == 40.0
    assert p.label == "Task: 40.0%"
    assert p.status_class == "danger"


def test_completed_labels():
    assert calculate_task_progress(_state(status=COMPLETED, total_subtasks=3)).label == "Task: 3/3 (100%)"
    p = calculate_task_progress(_state(status=COMPLETED))
    assert (p.label, p.width, p.status_class) == ("Task: 100%", 100.0, "success")


def test_not_started_has_empty_label_and_bar():
    p = calculate_task_progress(_state(status=NOT_STARTED, total_subtasks=3))
    assert (p.label, p.width, p.status_class) == ("Task:", 0.0, "primary")


def test_items_progress_visibility():
    assert items_progress(_state(status=RUNNING, items_total=1, items_complete=0)) is None
    assert items_progress(_state(status=COMPLETED, items_total=10, items_complete=10)) is None

    ip = items_progress(_state(status=RUNNING, items_total=8, items_complete=2))
    assert ip.percentage == 25.0
    assert ip.label == "Items: 2/8 (25.0%)"


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([COMPLETED, FAILED, RUNNING], FAILED),
        ([COMPLETED, RUNNING, NOT_STARTED], RUNNING),
        ([COMPLETED, COMPLETED], COMPLETED),
        ([COMPLETED, NOT_STARTED], STARTED),
        ([STARTED, NOT_STARTED], STARTED),
        ([NOT_STARTED, NOT_STARTED], NOT_STARTED),
        ([], NOT_STARTED),
    ],
)
def test_aggregate_stage_status(statuses, expected):
    assert aggregate_stage(statuses).status == expected


def test_aggregate_stage_counts():
    agg = aggregate_stage([COMPLETED, COMPLETED, RUNNING])
    assert (agg.completed, agg.total, agg.progress_pct) == (2, 3, 67)
    assert stage_progress_label(agg.completed, agg.total, agg.progress_pct) == "2/3 (67%)"


def test_task_message():
    assert task_message(_state(overall_progress_message="loading")) == "loading"
    state = _state(
        current_subtask=2, current_subtask_number=1, current_subtask_name="Read",
        overall_progress_message="loading",
    )
    assert task_message(state) == "Subtask 2.1: Read | loading"
    assert task_message(_state(current_subtask=1, current_subtask_name="Read")) == "Subtask 1.1: Read"


def test_format_elapsed():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert format_elapsed(None) == "-"
    assert format_elapsed(start, start + timedelta(seconds=42)) == "42s"
    assert format_elapsed(start, start + timedelta(minutes=3, seconds=5)) == "03:05"
    assert format_elapsed(start, now=start + timedelta(hours=2, minutes=1, seconds=9)) == "02:01:09"


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (None, "0s"),
        (-5, "0s"),
        (12, "12s"),
        (7 * 60 + 30, "7m"),
        (3 * 3600 + 5 * 60, "3h 5m"),
        (2 * 3600, "2h"),
        (86400 + 2 * 3600, "1d 2h"),
        (86400, "1d"),
    ],
)
def test_format_duration_seconds(seconds, expected):
    assert format_duration_seconds(seconds) == expected


def test_format_age():
    assert format_age(None) == "unknown"
    assert format_age(45) == "45s"
    assert format_age(150) == "2m"
    assert format_age(7300) == "2h"
