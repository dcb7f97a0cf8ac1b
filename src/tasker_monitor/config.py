"""Provide global constants for the monitor."""
from pathlib import Path
from dotenv import dotenv_values
import logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]

DATA_DIR = Path("data")
LOGS_DIR = Path("logs")

DATA_PATH = (PROJECT_ROOT / DATA_DIR).resolve()
LOGS_PATH = (DATA_PATH / LOGS_DIR).resolve()

# Ensure folders are created if not existing
DATA_PATH.mkdir(exist_ok=True)
LOGS_PATH.mkdir(exist_ok=True)

DOTENV_FILE = Path(".env")
DOTENV_FILE_PATH = (PROJECT_ROOT / DOTENV_FILE).resolve()

LOG_LEVEL = dotenv_values(DOTENV_FILE_PATH).get("LOG_LEVEL", "INFO").upper()

LOG_FILE = Path("monitor.log")
LOG_FILE_PATH = (LOGS_PATH / LOG_FILE).resolve()

# Name of the tasker configuration file searched for in parent directories
TASKER_CONFIG_FILENAME = ".tasker.yml"
TASKER_CONFIG_MAX_DEPTH = 10
# environment variable naming an explicit config file for the app process
CONFIG_ENV_VAR = "TASKER_MONITOR_CONFIG"

# Polling
DEFAULT_REFRESH_INTERVAL = 5  # seconds
MIN_REFRESH_INTERVAL = 1
MAX_REFRESH_INTERVAL = 60
MIN_QUERY_INTERVAL = 5  # seconds between two database polls

# Stages hidden from the monitor (test stages registered by the tasker suite)
EXCLUDED_STAGE_NAMES = ("TEST",)
EXCLUDED_STAGE_ORDER = 999

# Log viewer
DEFAULT_LOG_LINES = 5  # -1 shows the whole file
DEFAULT_LOG_DIR = Path("logs")

# Progress snapshots kept per (run_id, subtask) for completion estimates
PROGRESS_HISTORY_CAP = 100
# Completion estimates use the newest ESTIMATE_WINDOW snapshots, once there
# are at least ESTIMATE_MIN_SNAPSHOTS
ESTIMATE_WINDOW = 50
ESTIMATE_MIN_SNAPSHOTS = 3

# Metrics freshness thresholds (seconds)
METRICS_LIVE_SECONDS = 10
METRICS_STALE_SECONDS = 30
RUN_STALE_SECONDS = 120
RUN_PAUSED_SECONDS = 300

# Reporter heartbeat thresholds (seconds)
HEARTBEAT_ACTIVE_SECONDS = 30
HEARTBEAT_STALE_SECONDS = 120

UI_COLORS = {
    "default": {"value": "#6c757d", "symbol": "⚪"},
    "grey": {"value": "#6c757d", "symbol": "⚪"},
    "green": {"value": "#28a745", "symbol": "🟢"},
    "blue": {"value": "#007bff", "symbol": "🔵"},
    "orange": {"value": "#fd7e14", "symbol": "🟠"},
    "red": {"value": "#dc3545", "symbol": "🔴"},
    "purple": {"value": "#6f42c1", "symbol": "🟣"},
}


def configure_logging():
    root = logging.getLogger()
    if root.handlers:
        return

    from logging.handlers import RotatingFileHandler

    # console/basic config
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # file handler
    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


def main():
    """Print global constants."""
    files_and_paths = {"PROJECT_ROOT": PROJECT_ROOT,
                       "DATA_PATH": DATA_PATH,
                       "LOGS_PATH": LOGS_PATH,
                       "LOG_FILE_PATH": LOG_FILE_PATH,
                       "DOTENV_FILE_PATH": DOTENV_FILE_PATH,
                       }

    print("Current file and path resolutions:")
    print("----------------------------------")
    for label, file_path in files_and_paths.items():
        print(f"{label}: {file_path}")

    print("\nMonitor settings:")
    print("-----------------")
    print(f"LOG_LEVEL: {LOG_LEVEL}")
    print(f"DEFAULT_REFRESH_INTERVAL: {DEFAULT_REFRESH_INTERVAL}")
    print(f"MIN_QUERY_INTERVAL: {MIN_QUERY_INTERVAL}")


if __name__ == "__main__":
    main()
