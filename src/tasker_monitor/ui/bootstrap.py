# ui/bootstrap.py
from __future__ import annotations

import logging

import streamlit as st

from tasker_monitor.monitor import PipelineMonitor
from tasker_monitor.tasker_config import TaskerConfigError
from tasker_monitor.ui.cache import get_monitor_service, get_tasker_config
from tasker_monitor.ui.logging_ui import attach_streamlit_log_handler

logger = logging.getLogger(__name__)


def init_session_defaults(refresh_interval: int):
    """Widget defaults that survive reruns."""
    defaults = {
        "refresh_interval": refresh_interval,
        "auto_refresh": True,
        "show_script_name": False,
        "stage_filter": [],
        "status_filter": [],
        "pending_notices": [],
    }
    for key, value in defaults.items():
        st.session_state.setdefault(key, value)


def app_start():
    """
    Explicit application bootstrap. Call this once per Streamlit session.
    - attaches the in-app log handler
    - resolves the tasker configuration (stops the app on error)
    - creates the PipelineMonitor and stores it in st.session_state
    """
    attach_streamlit_log_handler(capacity=500)

    try:
        config = get_tasker_config()
    except TaskerConfigError as e:
        logger.error("Configuration error: %s", e)
        st.error(f"Configuration error: {e}")
        st.stop()

    monitor = PipelineMonitor(get_monitor_service(), config)
    st.session_state.monitor = monitor
    init_session_defaults(config.refresh_interval)

    # the sidebar filters need stage names before the first poll
    try:
        monitor.load_structure()
    except Exception:
        logger.exception("Could not load pipeline structure")

    logger.info("Monitor started for %s", config.database.describe())
