# ui/logging_ui.py
from __future__ import annotations

import html
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List

import streamlit as st
from streamlit.runtime.scriptrunner import get_script_run_ctx

from tasker_monitor.config import LOG_FILE_PATH, UI_COLORS

BUFFER_KEY = "_log_buffer"

LOG_LEVEL_STYLES: Dict[str, Dict[str, str]] = {
    "DEBUG": UI_COLORS["grey"],
    "INFO": UI_COLORS["green"],
    "WARNING": UI_COLORS["orange"],
    "ERROR": UI_COLORS["red"],
    "CRITICAL": UI_COLORS["purple"],
}


def parse_log_line(line: str) -> Dict[str, str]:
    """
    Split a line written by configure_logging():
    "YYYY-MM-DD HH:MM:SS,mmm [LEVEL] logger.name: message"

    Lines in another shape are kept whole as an INFO message.
    """
    entry = {"time": "", "level": "INFO", "logger": "", "message": line}

    head, sep, rest = line.partition(" [")
    if not sep:
        return entry
    level, sep, rest = rest.partition("] ")
    if not sep:
        return entry
    logger_name, sep, message = rest.partition(": ")
    if not sep:
        return entry

    entry.update(time=head.strip(), level=level.strip() or "INFO",
                 logger=logger_name.strip(), message=message)
    return entry


def filter_entries(
    entries: Iterable[Dict[str, Any]],
    levels: Iterable[str],
    search: str = "",
) -> List[Dict[str, Any]]:
    levels = set(levels)
    needle = search.lower()
    return [
        e for e in entries
        if e["level"] in levels and (not needle or needle in e["message"].lower())
    ]


def format_entry(entry: Dict[str, Any]) -> str:
    return f"{entry['time']} [{entry['level']}] {entry['logger']}: {entry['message']}"


class StreamlitLogHandler(logging.Handler):
    """
    Logging handler that stores recent log records in Streamlit session_state.
    """

    def __init__(self, capacity: int = 500):
        super().__init__()
        self.capacity = capacity

    def emit(self, record: logging.LogRecord):
        # Records from threads without a script run context (engine pool,
        # Streamlit server) have no session to write to.
        if get_script_run_ctx(suppress_warning=True) is None:
            return
        try:
            entry = {
                "time": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
                + f",{int(record.msecs):03d}",
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            logs = st.session_state.get(BUFFER_KEY)
            if logs is None:
                logs = deque(maxlen=self.capacity)
                st.session_state[BUFFER_KEY] = logs
            logs.append(entry)
        except Exception:
            self.handleError(record)


def load_historic_logs_into_buffer(log_path: Path, capacity: int = 500):
    """Seed the session's log buffer from the log file on first start."""
    if not log_path.exists():
        return
    if st.session_state.get(BUFFER_KEY):
        return

    buf: Deque[Dict[str, Any]] = deque(maxlen=capacity)
    with log_path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\n")
            if line:
                buf.append(parse_log_line(line))

    st.session_state[BUFFER_KEY] = buf


def attach_streamlit_log_handler(capacity: int = 500):
    """
    Attach a StreamlitLogHandler once per session and load historic logs.
    Safe to call multiple times across reruns.
    """
    if "_log_handler_attached" in st.session_state:
        return

    handler = StreamlitLogHandler(capacity=capacity)
    handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(handler)
    st.session_state["_log_handler_attached"] = True

    try:
        load_historic_logs_into_buffer(LOG_FILE_PATH, capacity=capacity)
    except OSError:
        logging.getLogger(__name__).warning("Could not read %s", LOG_FILE_PATH, exc_info=True)


# ------------------------------------------------------
# Logs-view renderer
# ------------------------------------------------------
def render_logs_mode():
    st.header("🪵 Monitor Logs")

    logs = st.session_state.get(BUFFER_KEY, [])
    if not logs:
        st.info("No logs yet.")
        return

    col1, col2 = st.columns([3, 1])

    with col2:
        level_filter = st.multiselect(
            "Levels",
            list(LOG_LEVEL_STYLES.keys()),
            default=["INFO", "WARNING", "ERROR", "CRITICAL"],
            format_func=lambda v: f"{LOG_LEVEL_STYLES[v]['symbol']} {v}",
        )
        search = st.text_input("Search")

        if st.button("🧹 Clear logs"):
            logs.clear()
            st.rerun()

        selected = filter_entries(logs, level_filter, search)
        export_text = "\n".join(format_entry(e) for e in selected)
        st.download_button(
            label="⬇️ Download logs",
            data=export_text,
            file_name="monitor.log",
            mime="text/plain",
            disabled=not bool(export_text),
        )

    with col1:
        for entry in reversed(selected):
            color = LOG_LEVEL_STYLES.get(entry["level"], UI_COLORS["default"])["value"]
            st.markdown(
                f"""
            <pre class="monitor-log-line">
{entry["time"]} <span style="color:{color}; font-weight:bold;">[{entry["level"]}]</span> {html.escape(entry["logger"])}: {html.escape(entry["message"])}
            </pre>
            """,
                unsafe_allow_html=True,
            )
