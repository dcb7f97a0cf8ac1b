# ui/view_models.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

import pandas as pd

from tasker_monitor.config import (
    HEARTBEAT_ACTIVE_SECONDS,
    HEARTBEAT_STALE_SECONDS,
    METRICS_LIVE_SECONDS,
    METRICS_STALE_SECONDS,
    RUN_PAUSED_SECONDS,
    RUN_STALE_SECONDS,
    UI_COLORS,
)
from tasker_monitor.estimation import ProgressHistory, format_completion
from tasker_monitor.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    NOT_STARTED,
    RUNNING,
    SKIPPED,
    STARTED,
    TaskState,
    is_active,
)
from tasker_monitor.progress import format_age, format_elapsed
from tasker_monitor.utils import to_bool, utcnow

STATUS_STYLES: Dict[str, Dict[str, str]] = {
    NOT_STARTED: UI_COLORS["grey"],
    STARTED: UI_COLORS["blue"],
    RUNNING: UI_COLORS["orange"],
    COMPLETED: UI_COLORS["green"],
    FAILED: UI_COLORS["red"],
    SKIPPED: UI_COLORS["grey"],
    CANCELLED: UI_COLORS["purple"],
}

TERMINAL_LABELS = {
    COMPLETED: "✅ Completed",
    FAILED: "❌ Failed",
    SKIPPED: "⊘ Skipped",
    CANCELLED: "⊗ Cancelled",
}


class ProcessBanner(NamedTuple):
    level: str  # "error" | "warning"
    message: str


class ProcessPaneView(NamedTuple):
    banner: Optional[ProcessBanner]
    details: Dict[str, str]
    resources: Dict[str, str]
    subtasks: pd.DataFrame


def status_badge(status: Optional[str]) -> str:
    style = STATUS_STYLES.get(status or NOT_STARTED, UI_COLORS["default"])
    return f"{style['symbol']} {status or NOT_STARTED}"


def df_replace_none(df: pd.DataFrame, none_value: str = "–") -> pd.DataFrame:
    """Replace None/NaN values in a DataFrame with a readable placeholder."""
    if not isinstance(df, pd.DataFrame):
        return df

    return df.astype(object).where(pd.notnull(df), none_value)


# -------------------------
# Process pane
# -------------------------

def metrics_age(state: TaskState, now: Optional[datetime] = None) -> Optional[float]:
    if state.metrics_timestamp is not None:
        return ((now or utcnow()) - state.metrics_timestamp).total_seconds()
    return state.metrics_age_seconds


def process_banner(state: TaskState, now: Optional[datetime] = None) -> Optional[ProcessBanner]:
    """Collection errors beat stale metrics, which beat a dead process."""
    if state.collection_error:
        if state.metrics_error_message:
            return ProcessBanner("error", f"Metrics collection error: {state.metrics_error_message}")
        return ProcessBanner("error", "Metrics collection failed")

    age = metrics_age(state, now)
    if age is not None and is_active(state.status) and age > METRICS_STALE_SECONDS:
        return ProcessBanner(
            "warning",
            f"WARNING: Metrics are stale ({int(age)} seconds old) - Reporter may not be running",
        )

    if is_active(state.status) and state.is_alive is False:
        return ProcessBanner(
            "error",
            f"WARNING: Task marked as {state.status} but process "
            f"(PID: {state.process_id}) is not alive",
        )
    return None


def metrics_freshness(age: Optional[float]) -> str:
    if age is None:
        return "Just collected"
    if age <= METRICS_LIVE_SECONDS:
        return "Live"
    return f"{int(age)}s ago"


def process_state_label(state: TaskState, age: Optional[float]) -> str:
    if state.status in TERMINAL_LABELS:
        return "🔴 Terminated" if state.status == FAILED and age is not None else TERMINAL_LABELS[state.status]
    if is_active(state.status):
        if state.is_alive is False:
            return "❌ Dead"
        if age is None:
            return "⚠️ Running (no metrics)"
        if age > RUN_PAUSED_SECONDS:
            return "🔴 Running (paused)"
        if age > RUN_STALE_SECONDS:
            return "🟡 Running (stale)"
        return "🟢 Running"
    return f"❓ {state.status}"


def _cpu_display(state: TaskState) -> str:
    return "N/A" if state.cpu_percent is None else f"{state.cpu_percent:.1f}%"


def _memory_display(state: TaskState) -> str:
    if state.memory_mb is None:
        return "N/A"
    if state.memory_percent is not None:
        return f"{state.memory_mb:.1f} MB ({state.memory_percent:.1f}%)"
    return f"{state.memory_mb:.1f} MB"


def _children_display(state: TaskState, detailed: bool) -> str:
    if state.child_count is None:
        return "N/A"
    if state.child_count <= 0:
        return "No children"
    text = f"{state.child_count} children"
    if detailed:
        if state.child_total_cpu_percent is not None:
            text += f" ({state.child_total_cpu_percent:.1f}% CPU)"
        if state.child_total_memory_mb is not None:
            text += f" ({state.child_total_memory_mb:.1f} MB RAM)"
    return text


def resource_summary(state: TaskState, now: Optional[datetime] = None) -> Dict[str, str]:
    """
    Resource line for the process pane.

    Fresh metrics of a live task show as current values; older metrics
    show with a process state and their age; without metrics only the
    state is shown.
    """
    age = metrics_age(state, now)
    live = (
        is_active(state.status)
        and state.is_alive is not False
        and state.has_metrics
        and age is not None
        and age <= METRICS_STALE_SECONDS
    )

    if live:
        return {
            "CPU": _cpu_display(state),
            "Memory": _memory_display(state),
            "Children": _children_display(state, detailed=True),
            "Metrics": metrics_freshness(age),
        }

    if state.has_metrics and age is not None:
        return {
            "State": process_state_label(state, age),
            "CPU": _cpu_display(state),
            "Memory": _memory_display(state),
            "Children": _children_display(state, detailed=False),
            "Updated": f"as of {format_age(age)} ago",
        }

    if is_active(state.status):
        return {"State": process_state_label(state, None), "Metrics": "No data collected"}
    return {"State": process_state_label(state, None)}


def subtask_table(
    state: TaskState,
    history: Optional[ProgressHistory] = None,
    now: Optional[datetime] = None,
) -> pd.DataFrame:
    rows = []
    for sub in state.subtasks:
        if sub.items_total is not None and sub.items_complete is not None:
            items = f"{sub.items_complete} / {sub.items_total}"
        else:
            items = "-"

        if sub.items_total and sub.items_complete is not None:
            progress = f"{100 * sub.items_complete / sub.items_total:.1f}%"
        elif sub.percent_complete is not None:
            progress = f"{sub.percent_complete:.1f}%"
        else:
            progress = "-"

        remaining = "-"
        if history is not None and state.run_id and is_active(sub.status) and sub.items_total:
            remaining = format_completion(
                history.completion_estimate(state.run_id, sub.subtask_number)
            )

        rows.append(
            {
                "#": sub.subtask_number,
                "Name": sub.subtask_name or "-",
                "Status": status_badge(sub.status),
                "Progress": progress,
                "Items": items,
                "Message": sub.progress_message or "",
                "Duration": format_elapsed(sub.start_time, sub.end_time, now=now),
                "Remaining": remaining,
            }
        )
    return pd.DataFrame(
        rows,
        columns=["#", "Name", "Status", "Progress", "Items", "Message", "Duration", "Remaining"],
    )


def process_pane(
    state: TaskState,
    history: Optional[ProgressHistory] = None,
    now: Optional[datetime] = None,
) -> ProcessPaneView:
    details = {
        "PID": str(state.process_id) if state.process_id is not None else "N/A",
        "Host": state.hostname or "N/A",
        "Status": state.status,
        "Started": state.start_time.strftime("%Y-%m-%d %H:%M:%S") if state.start_time else "N/A",
        "Elapsed": format_elapsed(state.start_time, state.end_time, now=now),
    }
    return ProcessPaneView(
        banner=process_banner(state, now),
        details=details,
        resources=resource_summary(state, now),
        subtasks=subtask_table(state, history, now),
    )


# -------------------------
# Process reporters
# -------------------------

def heartbeat_display(age: Optional[float]) -> str:
    if age is None:
        return "Unknown"
    if age < 60:
        return f"{age:.0f}s ago"
    if age < 3600:
        return f"{age / 60:.0f}m ago"
    return f"{age / 3600:.1f}h ago"


def reporter_indicator(age: Optional[float], is_alive: Optional[bool]) -> Dict[str, str]:
    """Colour, icon and text for one reporter row."""
    if is_alive is False:
        return {"color": UI_COLORS["red"]["value"], "icon": "⬤", "text": "Dead"}
    if age is None:
        return {"color": UI_COLORS["grey"]["value"], "icon": "❓", "text": "Unknown"}
    if age <= HEARTBEAT_ACTIVE_SECONDS:
        return {"color": UI_COLORS["green"]["value"], "icon": "🟢", "text": "Active"}
    if age <= HEARTBEAT_STALE_SECONDS:
        return {"color": UI_COLORS["orange"]["value"], "icon": "🟡", "text": "Stale"}
    return {"color": UI_COLORS["red"]["value"], "icon": "🔴", "text": "Very stale"}


def reporter_status_frame(rows: List[dict]) -> pd.DataFrame:
    records = []
    for r in rows or []:
        age = r.get("heartbeat_age_seconds")
        indicator = reporter_indicator(age, to_bool(r.get("is_alive")))
        pid = r.get("process_id")
        records.append(
            {
                "": indicator["icon"],
                "Host": (r.get("hostname") or "").split(".", 1)[0],
                "PID": "?" if pid is None else str(pid),
                "Status": indicator["text"],
                "Heartbeat": heartbeat_display(age),
            }
        )
    return pd.DataFrame(records, columns=["", "Host", "PID", "Status", "Heartbeat"])


def active_reporter_count(rows: List[dict]) -> str:
    total = len(rows or [])
    active = sum(
        1
        for r in rows or []
        if to_bool(r.get("is_alive")) is not False
        and r.get("heartbeat_age_seconds") is not None
        and r["heartbeat_age_seconds"] <= HEARTBEAT_ACTIVE_SECONDS
    )
    return f"Active: {active}/{total}"


# -------------------------
# Database queries
# -------------------------

def active_queries_frame(rows: List[dict]) -> pd.DataFrame:
    records = [
        {
            "PID": r.get("pid"),
            "Duration": format_age(r.get("duration_seconds"))
            if r.get("duration_seconds") is not None else None,
            "User": r.get("username"),
            "State": r.get("state"),
            "Query": r.get("query"),
        }
        for r in rows or []
    ]
    df = pd.DataFrame(records, columns=["PID", "Duration", "User", "State", "Query"])
    return df_replace_none(df)
