# tests/test_view_models.py
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from tasker_monitor.estimation import ProgressHistory
from tasker_monitor.models import COMPLETED, FAILED, NOT_STARTED, RUNNING, SubtaskState, TaskState
from tasker_monitor.ui.view_models import (
    active_queries_frame,
    active_reporter_count,
    df_replace_none,
    heartbeat_display,
    metrics_age,
    metrics_freshness,
    process_banner,
    process_pane,
    process_state_label,
    reporter_indicator,
    reporter_status_frame,
    resource_summary,
    status_badge,
    subtask_table,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _state(**kwargs) -> TaskState:
    kwargs.setdefault("status", RUNNING)
    return TaskState(stage_name="PROCESS", task_name="index", **kwargs)


def test_status_badge():
    assert status_badge(COMPLETED).endswith("COMPLETED")
    assert status_badge(None).endswith(NOT_STARTED)


def test_banner_priority():
    state = _state(collection_error=True, metrics_error_message="psutil failed",
                   metrics_age_seconds=500, is_alive=False)
    assert process_banner(state).message == "Metrics collection error: psutil failed"

    stale = _state(metrics_age_seconds=45, is_alive=False, process_id=7)
    banner = process_banner(stale)
    assert banner.level == "warning"
    assert "stale (45 seconds old)" in banner.message

    dead = _state(metrics_age_seconds=5, is_alive=False, process_id=7)
    assert process_banner(dead).message == (
        "WARNING: Task marked as RUNNING but process (PID: 7) is not alive"
    )

    assert process_banner(_state(metrics_age_seconds=5, is_alive=True)) is None
    assert process_banner(_state(status=COMPLETED, metrics_age_seconds=500)) is None


def test_metrics_age_from_timestamp():
    state = _state(metrics_timestamp=NOW - timedelta(seconds=40), is_alive=True)
    assert process_banner(state, now=NOW).level == "warning"


def test_metrics_age_prefers_timestamp_over_stored_age():
    state = _state(metrics_timestamp=NOW - timedelta(seconds=8), metrics_age_seconds=500)
    assert metrics_age(state, now=NOW) == pytest.approx(8)
    assert metrics_age(_state(metrics_age_seconds=500), now=NOW) == 500


def test_metrics_freshness():
    assert metrics_freshness(None) == "Just collected"
    assert metrics_freshness(3) == "Live"
    assert metrics_freshness(25.7) == "25s ago"


def test_process_state_label():
    assert process_state_label(_state(status=COMPLETED), None) == "✅ Completed"
    assert process_state_label(_state(status=FAILED), 12) == "🔴 Terminated"
    assert process_state_label(_state(is_alive=False), 5) == "❌ Dead"
    assert process_state_label(_state(), None) == "⚠️ Running (no metrics)"
    assert process_state_label(_state(), 400) == "🔴 Running (paused)"
    assert process_state_label(_state(), 150) == "🟡 Running (stale)"
    assert process_state_label(_state(), 10) == "🟢 Running"
    assert process_state_label(_state(status=NOT_STARTED), None) == "❓ NOT_STARTED"


def test_resource_summary_live_and_historic():
    live = _state(cpu_percent=50.0, memory_mb=256.0, memory_percent=3.2, child_count=2,
                  child_total_cpu_percent=10.0, metrics_age_seconds=4, is_alive=True)
    assert resource_summary(live) == {
        "CPU": "50.0%",
        "Memory": "256.0 MB (3.2%)",
        "Children": "2 children (10.0% CPU)",
        "Metrics": "Live",
    }

    done = _state(status=COMPLETED, cpu_percent=1.0, memory_mb=100.0, child_count=0,
                  metrics_age_seconds=7200)
    summary = resource_summary(done)
    assert summary["State"] == "✅ Completed"
    assert summary["Children"] == "No children"
    assert summary["Updated"] == "as of 2h ago"

    assert resource_summary(_state()) == {
        "State": "⚠️ Running (no metrics)",
        "Metrics": "No data collected",
    }


def test_subtask_table_with_remaining_estimate():
    subtasks = (
        SubtaskState(1, "Read", COMPLETED, start_time=NOW - timedelta(minutes=10),
                     end_time=NOW - timedelta(minutes=5), items_total=10, items_complete=10),
        SubtaskState(2, "Tokenize", RUNNING, start_time=NOW - timedelta(minutes=5),
                     items_total=50, items_complete=20),
        SubtaskState(3, "Write", NOT_STARTED, percent_complete=None),
    )
    state = _state(run_id="r1", subtasks=subtasks)
    history = ProgressHistory()
    history.record("r1", 2, 0, 50, timestamp=NOW - timedelta(seconds=60))
    history.record("r1", 2, 10, 50, timestamp=NOW - timedelta(seconds=30))
    history.record("r1", 2, 20, 50, timestamp=NOW)

    df = subtask_table(state, history, now=NOW)

    assert list(df["#"]) == [1, 2, 3]
    assert list(df["Items"]) == ["10 / 10", "20 / 50", "-"]
    assert list(df["Progress"]) == ["100.0%", "40.0%", "-"]
    assert list(df["Duration"]) == ["05:00", "05:00", "-"]
    assert df["Remaining"][0] == "-"
    assert df["Remaining"][1].startswith("1m ")


def test_process_pane_details():
    state = _state(process_id=42, hostname="node1", start_time=NOW - timedelta(seconds=30))
    view = process_pane(state, now=NOW)

    assert view.details["PID"] == "42"
    assert view.details["Elapsed"] == "30s"
    assert view.banner is None
    assert isinstance(view.subtasks, pd.DataFrame)
    assert view.subtasks.empty


def test_heartbeat_display():
    assert heartbeat_display(None) == "Unknown"
    assert heartbeat_display(12) == "12s ago"
    assert heartbeat_display(600) == "10m ago"
    assert heartbeat_display(5400) == "1.5h ago"


def test_reporter_indicator_levels():
    assert reporter_indicator(5, False)["text"] == "Dead"
    assert reporter_indicator(None, None)["text"] == "Unknown"
    assert reporter_indicator(30, True)["text"] == "Active"
    assert reporter_indicator(100, None)["text"] == "Stale"
    assert reporter_indicator(121, True)["text"] == "Very stale"


def test_reporter_frame_and_count():
    rows = [
        {"hostname": "node1.example.org", "process_id": 1, "heartbeat_age_seconds": 10, "is_alive": True},
        {"hostname": "node2", "process_id": None, "heartbeat_age_seconds": 300, "is_alive": None},
        {"hostname": "node3", "process_id": 3, "heartbeat_age_seconds": 5, "is_alive": False},
    ]
    df = reporter_status_frame(rows)

    assert list(df["Host"]) == ["node1", "node2", "node3"]
    assert list(df["PID"]) == ["1", "?", "3"]
    assert list(df["Status"]) == ["Active", "Very stale", "Dead"]
    assert active_reporter_count(rows) == "Active: 1/3"
    assert active_reporter_count([]) == "Active: 0/0"


def test_active_queries_frame_placeholders():
    df = active_queries_frame(
        [{"pid": 10, "duration_seconds": 75.0, "username": "u", "state": "active", "query": "SELECT 1"},
         {"pid": 11, "duration_seconds": None, "username": None, "state": "idle", "query": ""}]
    )
    assert list(df["Duration"]) == ["1m", "–"]
    assert df["User"][1] == "–"


def test_df_replace_none_passthrough():
    assert df_replace_none("x") == "x"
    df = df_replace_none(pd.DataFrame({"a": [1, None]}))
    assert list(df["a"]) == [1, "–"]
