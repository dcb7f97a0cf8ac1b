# ui/pipeline_view.py
from __future__ import annotations

import html
import logging
from typing import List

import streamlit as st

from tasker_monitor.config import UI_COLORS
from tasker_monitor.db.infra.core import TaskNotFoundError
from tasker_monitor.logtail import MISSING, LogSettings
from tasker_monitor.models import PollResult, StageSummary, TaskState, is_active
from tasker_monitor.monitor import PipelineMonitor
from tasker_monitor.progress import (
    calculate_task_progress,
    format_elapsed,
    items_progress,
    stage_progress_label,
    task_message,
)
from tasker_monitor.ui.view_models import df_replace_none, process_pane, status_badge

logger = logging.getLogger(__name__)

LOG_LINE_CHOICES = [5, 10, 20, 50, 100, -1]

LOG_LEVEL_COLORS = {
    "error": UI_COLORS["red"]["value"],
    "warning": UI_COLORS["orange"]["value"],
    "info": UI_COLORS["blue"]["value"],
    "": UI_COLORS["default"]["value"],
}


# -------------------------
# Polling
# -------------------------

def _show_poll_result(monitor: PipelineMonitor, result: PollResult):
    for notice in result.notices:
        st.toast(notice, icon="⚠️")
    if monitor.last_error:
        st.error(monitor.last_error)

    # the widget state of a details toggle follows auto-expand/collapse
    for entry in result.expanded:
        kind, _, name = entry.partition(":")
        if kind == "task" and name in monitor.tasks:
            st.session_state[f"details_{monitor.tasks[name].element_id}"] = True
    for entry in result.collapsed:
        kind, _, name = entry.partition(":")
        if kind == "task" and name in monitor.tasks:
            st.session_state[f"details_{monitor.tasks[name].element_id}"] = False


def render_pipeline_mode(monitor: PipelineMonitor):
    st.header("📊 Pipeline Status")

    interval = st.session_state.get("refresh_interval", monitor.config.refresh_interval)
    run_every = interval if st.session_state.get("auto_refresh", True) else None

    @st.fragment(run_every=run_every)
    def _live_status():
        result = monitor.poll()
        if result.ran:
            _show_poll_result(monitor, result)
        elif monitor.last_error:
            st.error(monitor.last_error)

        if not monitor.structure_loaded:
            st.info("Waiting for the first status query…")
            return
        render_stages(monitor)

    _live_status()


# -------------------------
# Stages and tasks
# -------------------------

def render_stages(monitor: PipelineMonitor):
    stage_filter = st.session_state.get("stage_filter") or []
    status_filter = st.session_state.get("status_filter") or []
    tasks = monitor.filtered_tasks(stage_filter, status_filter)

    if not monitor.stages:
        st.info("No stages registered.")
        return
    if not tasks:
        st.info("No tasks match the current filters.")
        return

    for stage_name in monitor.stage_names():
        stage_tasks = [t for t in tasks if t.stage_name == stage_name]
        if not stage_tasks:
            continue
        render_stage(monitor, monitor.stages[stage_name], stage_tasks)


def render_stage(monitor: PipelineMonitor, summary: StageSummary, tasks: List[TaskState]):
    label = (
        f"{status_badge(summary.status)} · {summary.stage_name} · "
        f"{stage_progress_label(summary.completed, summary.total, summary.progress_pct)}"
    )
    with st.expander(label, expanded=summary.stage_name in monitor.expanded_stages):
        st.progress(summary.progress_pct / 100)
        for state in tasks:
            render_task(monitor, state)


def render_task(monitor: PipelineMonitor, state: TaskState):
    progress = calculate_task_progress(state)
    items = items_progress(state)

    with st.container(border=True):
        name_col, status_col, bar_col, toggle_col = st.columns([3, 2, 5, 1])

        with name_col:
            st.markdown(f"**{state.task_name}**")
            if st.session_state.get("show_script_name") and state.script_filename:
                st.caption(state.script_filename)

        with status_col:
            st.markdown(status_badge(state.status))
            if state.start_time:
                st.caption(f"⏱ {format_elapsed(state.start_time, state.end_time)}")

        with bar_col:
            st.progress(min(progress.width, 100.0) / 100, text=progress.label)
            if items is not None:
                st.progress(min(items.percentage, 100.0) / 100, text=items.label)
            message = task_message(state)
            if message:
                st.caption(message)
            if state.error_message:
                st.caption(f"❌ {state.error_message}")

        with toggle_col:
            toggle_key = f"details_{state.element_id}"
            st.session_state.setdefault(toggle_key, state.key in monitor.expanded_tasks)
            show = st.toggle("Details", key=toggle_key, label_visibility="collapsed")
            monitor.set_expanded("task", state.key, show)

        if show:
            process_tab, log_tab = st.tabs(["Process", "Log"])
            with process_tab:
                render_process_pane(monitor, state)
            with log_tab:
                render_log_pane(monitor, state)
            render_reset_controls(monitor, state)


# -------------------------
# Process pane
# -------------------------

def render_process_pane(monitor: PipelineMonitor, state: TaskState):
    view = process_pane(state, monitor.history)

    if view.banner is not None:
        if view.banner.level == "error":
            st.error(view.banner.message)
        else:
            st.warning(view.banner.message)

    detail_cols = st.columns(len(view.details))
    for col, (label, value) in zip(detail_cols, view.details.items()):
        col.metric(label, value)

    st.markdown(" · ".join(f"**{k}:** {v}" for k, v in view.resources.items()))

    if view.subtasks.empty:
        st.caption("No subtasks recorded.")
    else:
        st.dataframe(df_replace_none(view.subtasks), hide_index=True, use_container_width=True)


# -------------------------
# Log pane
# -------------------------

def _log_settings(state: TaskState) -> LogSettings:
    eid = state.element_id
    c1, c2, c3 = st.columns([1, 1, 2])
    num_lines = c1.selectbox(
        "Lines",
        LOG_LINE_CHOICES,
        key=f"log_lines_{eid}",
        format_func=lambda n: "All" if n == -1 else str(n),
    )
    tail_mode = c2.toggle("Tail", value=True, key=f"log_tail_{eid}",
                          help="Show the end of the file and follow new lines")
    text_filter = c3.text_input("Filter", key=f"log_filter_{eid}")
    return LogSettings(num_lines=num_lines, tail_mode=tail_mode, filter=text_filter)


def render_log_pane(monitor: PipelineMonitor, state: TaskState):
    settings = _log_settings(state)
    try:
        update = monitor.refresh_log(state.key, settings)
    except OSError as e:
        st.error(f"Could not read log: {e}")
        return

    if update.kind == MISSING:
        st.info(f"{update.message}. {update.detail}")
        return

    tail = monitor.log_tail(state.key)
    lines = tail.visible_lines
    st.caption(f"{update.path} · showing {len(lines)} of {update.total_lines} line(s)")
    if not lines:
        st.caption("(empty)")
        return

    body = "\n".join(
        f'<span style="color:{LOG_LEVEL_COLORS.get(ln.level, LOG_LEVEL_COLORS[""])};">'
        f"{html.escape(ln.text)}</span>"
        for ln in lines
    )
    st.markdown(f'<pre class="monitor-log-line">{body}</pre>', unsafe_allow_html=True)


# -------------------------
# Reset
# -------------------------

def render_reset_controls(monitor: PipelineMonitor, state: TaskState):
    confirm_key = f"confirm_reset_{state.element_id}"

    if not st.session_state.get(confirm_key):
        if st.button("♻️ Reset task", key=f"reset_{state.element_id}",
                     disabled=state.run_id is None):
            st.session_state[confirm_key] = True
            st.rerun(scope="fragment")
        return

    warning = f"Delete all runs of {state.stage_name} / {state.task_name}?"
    if is_active(state.status):
        warning += " The task is still marked as running."
    st.warning(warning)

    yes_col, no_col = st.columns(2)
    if yes_col.button("Yes, reset", key=f"reset_yes_{state.element_id}", type="primary"):
        st.session_state[confirm_key] = False
        try:
            n_runs = monitor.reset_task(state.stage_name, state.task_name)
        except TaskNotFoundError as e:
            st.error(str(e))
            return
        except Exception:
            logger.exception("Reset of %s failed", state.key)
            st.error("Reset failed; see the Logs tab for details.")
            return
        logger.info("Reset %s / %s (%d run(s) deleted)", state.stage_name, state.task_name, n_runs)
        st.toast(f"Reset {state.task_name}: {n_runs} run(s) deleted", icon="♻️")
        st.rerun(scope="fragment")
    if no_col.button("Cancel", key=f"reset_no_{state.element_id}"):
        st.session_state[confirm_key] = False
        st.rerun(scope="fragment")
