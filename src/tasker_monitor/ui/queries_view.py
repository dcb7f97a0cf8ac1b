# ui/queries_view.py
from __future__ import annotations

import logging

import streamlit as st

from tasker_monitor.db.infra.core import UnsupportedDriverError
from tasker_monitor.ui.cache import cached_load_active_queries, get_monitor_service, invalidate_caches
from tasker_monitor.ui.view_models import active_queries_frame

logger = logging.getLogger(__name__)


def render_queries_mode():
    st.header("🗄️ SQL Queries")

    c1, c2, c3 = st.columns([1, 1, 1])
    status = c1.selectbox("State", ["active", "idle", "any"], key="query_status")
    exclude_tasker = c2.toggle("Hide tasker queries", value=True, key="query_exclude_tasker")
    if c3.button("🔄 Refresh"):
        invalidate_caches("queries")

    try:
        rows = cached_load_active_queries(status, exclude_tasker)
    except Exception as e:
        logger.exception("Failed to load active queries")
        st.error(f"Could not load queries: {e}")
        return

    if not rows:
        st.info("No queries to show (SQLite databases have no query list).")
        return

    st.dataframe(active_queries_frame(rows), hide_index=True, use_container_width=True)
    render_kill_controls([r["pid"] for r in rows if r.get("pid") is not None])


def _kill_selected():
    """Button callback; runs before the rerun so the confirmation can be cleared."""
    pid = st.session_state.get("kill_pid")
    st.session_state["kill_confirm"] = False
    try:
        ok = get_monitor_service().kill_query(int(pid))
    except UnsupportedDriverError as e:
        st.session_state["kill_result"] = ("error", str(e))
        return
    except Exception as e:
        logger.exception("Failed to terminate query %s", pid)
        st.session_state["kill_result"] = ("error", f"Could not terminate {pid}: {e}")
        return
    finally:
        invalidate_caches("queries")

    if ok:
        logger.info("Terminated query %s", pid)
        st.session_state["kill_result"] = ("success", f"Terminated {pid}")
    else:
        st.session_state["kill_result"] = ("warning", f"{pid} was not terminated")


def render_kill_controls(pids):
    st.subheader("Terminate query")

    outcome = st.session_state.pop("kill_result", None)
    if outcome is not None:
        level, message = outcome
        getattr(st, level)(message)

    pid = st.selectbox("PID", pids, key="kill_pid")
    confirm = st.checkbox(f"I want to terminate the backend running PID {pid}", key="kill_confirm")
    st.button("⛔ Terminate", disabled=not confirm, type="primary", on_click=_kill_selected)
