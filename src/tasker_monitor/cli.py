# src/tasker_monitor/cli.py
"""
Command-line entry point.

  # Start the dashboard (config found by walking up from the working directory)
  tasker-monitor

  # Use a specific config file
  tasker-monitor --config /path/to/.tasker.yml

  # Check the configuration and database connection, then exit
  tasker-monitor --check -v
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from tasker_monitor.config import CONFIG_ENV_VAR, configure_logging
from tasker_monitor.tasker_config import TASKER_CONFIG_FILENAME, TaskerConfigError, load_tasker_config

logger = logging.getLogger(__name__)

APP_PATH = Path(__file__).resolve().parent / "ui" / "app.py"


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def print_user_message(
    summary: str,
    action: Optional[str] = None,
    details: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
) -> None:
    """
    One-line summary, then an optional actionable next step, then details
    when verbose.
    """
    if quiet:
        return

    first_line = summary.strip().splitlines()[0] if summary else ""
    print(first_line)

    if action:
        print()
        print("Actionable:")
        for ln in action.strip().splitlines():
            print("  " + ln.rstrip())

    if verbose and details:
        print()
        print("Details:")
        print(_indent(details.strip(), prefix="  "))


def check(config_file: Optional[str], verbose: bool = False, quiet: bool = False) -> int:
    """Load the configuration and run one status query. Returns an exit code."""
    from tasker_monitor.db.services import MonitorService

    try:
        config = load_tasker_config(config_file=config_file)
    except TaskerConfigError as e:
        print_user_message(
            "Configuration error.",
            action=f"Create {TASKER_CONFIG_FILENAME} or set TASKER_DB_* variables.",
            details=str(e),
            verbose=verbose,
            quiet=quiet,
        )
        return 2

    svc = MonitorService(config)
    try:
        stages = svc.list_stages()
        status = svc.current_task_status()
        reporters = svc.reporter_status()
    except Exception as e:
        logger.exception("Database check failed")
        print_user_message(
            f"Could not query {config.database.describe()}.",
            details=str(e),
            verbose=verbose,
            quiet=quiet,
        )
        return 1

    lines = [
        f"Config file: {config.loaded_from or '(environment)'}",
        f"Status view: {status.view}" + (" (fallback)" if status.used_fallback else ""),
        f"Stages: {len(stages)}",
        f"Task runs: {len(status.rows)}",
        f"Reporters: {len(reporters)}",
    ]
    print_user_message(
        f"OK: {config.database.describe()}",
        details="\n".join(lines),
        verbose=verbose,
        quiet=quiet,
    )
    return 0


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="tasker-monitor",
        description="Live dashboard for a tasker pipeline database.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to {TASKER_CONFIG_FILENAME} (default: search upwards from the working directory)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check the configuration and database connection, then exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show details")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress output")
    parser.add_argument(
        "streamlit_args",
        nargs=argparse.REMAINDER,
        help="Extra arguments passed to 'streamlit run'",
    )

    args = parser.parse_args(argv)

    if args.config and not Path(args.config).is_file():
        raise SystemExit(f"Configuration file not found: {args.config}")

    configure_logging()

    if args.check:
        raise SystemExit(check(args.config, verbose=args.verbose, quiet=args.quiet))

    if args.config:
        os.environ[CONFIG_ENV_VAR] = str(Path(args.config).resolve())

    from streamlit.web import cli as stcli

    sys.argv = ["streamlit", "run", str(APP_PATH), *args.streamlit_args]
    sys.exit(stcli.main())


if __name__ == "__main__":
    main()
