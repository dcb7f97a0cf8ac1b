# ui/app.py
import logging

import streamlit as st

from tasker_monitor.config import MAX_REFRESH_INTERVAL, MIN_REFRESH_INTERVAL, configure_logging
from tasker_monitor.models import ALL_STATUSES
from tasker_monitor.ui.bootstrap import app_start
from tasker_monitor.ui.cache import cached_load_reporter_status, invalidate_caches
from tasker_monitor.ui.view_models import active_reporter_count, reporter_status_frame

# ======================================================
# STREAMLIT PAGE CONFIG (must be first Streamlit call)
# ======================================================

st.set_page_config(
    page_title="Tasker Pipeline Monitor",
    layout="wide",
)

# ======================================================
# LOGGER
# ======================================================

logger = logging.getLogger(__name__)

configure_logging()

# Only start the app if we don't already have a monitor in session state.
# This prevents double initialization during reruns.
if "monitor" not in st.session_state:
    app_start()

monitor = st.session_state.monitor

# ======================================================
# GLOBAL UI STYLES
# ======================================================

st.markdown(
    """
    <style>
    /* Log lines keep their layout but wrap */
    pre.monitor-log-line {
        white-space: pre-wrap !important;
        word-wrap: break-word !important;
        font-size: 0.8rem;
        margin: 0 0 0.2rem 0;
        padding: 0.3rem 0.5rem;
        max-height: 32rem;
        overflow-y: auto;
    }

    /* Wrap Streamlit code blocks */
    .stCodeBlock pre {
        white-space: pre-wrap !important;
        word-wrap: break-word !important;
    }

    /* Prevent horizontal scroll everywhere */
    section.main {
        overflow-x: hidden;
    }
    </style>
    """,
    unsafe_allow_html=True,
)

# ======================================================
# SIDEBAR
# ======================================================

with st.sidebar:
    st.subheader("Filters")
    st.multiselect("Stages", monitor.stage_names(), key="stage_filter")
    st.multiselect("Status", list(ALL_STATUSES), key="status_filter")

    st.subheader("Refresh")
    st.slider(
        "Interval (seconds)",
        min_value=MIN_REFRESH_INTERVAL,
        max_value=MAX_REFRESH_INTERVAL,
        key="refresh_interval",
    )
    st.toggle("Auto-refresh", key="auto_refresh")
    st.toggle("Show script names", key="show_script_name")

    col_now, col_structure = st.columns(2)
    if col_now.button("🔄 Refresh now", help="Runs as soon as the query cooldown allows"):
        invalidate_caches("all")
        st.rerun()
    if col_structure.button("🧱 Reload stages", help="Re-read stages and registered tasks"):
        try:
            monitor.load_structure()
        except Exception as e:
            logger.exception("Could not reload pipeline structure")
            st.error(f"Could not reload stages: {e}")

    if monitor.last_update is not None:
        st.caption(f"Last update: {monitor.last_update.astimezone():%H:%M:%S}")
    else:
        st.caption("Last update: never")

    st.subheader("Process reporters")
    try:
        reporters = cached_load_reporter_status()
    except Exception:
        logger.exception("Failed to load reporter status")
        reporters = None

    if reporters is None:
        st.caption("Reporter status unavailable")
    elif not reporters:
        st.caption("No reporters registered")
    else:
        st.caption(active_reporter_count(reporters))
        st.dataframe(reporter_status_frame(reporters), hide_index=True, use_container_width=True)

    st.caption(f"Database: {monitor.config.database.describe()}")

# ======================================================
# TOP-LEVEL UI
# ======================================================

st.title("🛠️ Tasker Pipeline Monitor")

MODE_STATUS = "📊 Pipeline Status"
MODE_QUERIES = "🗄️ SQL Queries"
MODE_LOGS = "🪵 Logs"

mode = st.radio(
    "Mode",
    [MODE_STATUS, MODE_QUERIES, MODE_LOGS],
    horizontal=True,
)

st.divider()

from tasker_monitor.ui.pipeline_view import render_pipeline_mode
from tasker_monitor.ui.queries_view import render_queries_mode
from tasker_monitor.ui.logging_ui import render_logs_mode

# ======================================================
# MODE ROUTER
# ======================================================

if mode == MODE_STATUS:
    render_pipeline_mode(monitor)
elif mode == MODE_QUERIES:
    render_queries_mode()
elif mode == MODE_LOGS:
    render_logs_mode()
