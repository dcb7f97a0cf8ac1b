# logtail.py
"""
Incremental log viewer for task log files.

A LogTail remembers how far into a file it has read. The first read, and
any read after the display settings change, yields a full "replace"; later
reads in tail mode only read the bytes appended since the previous offset
and yield an "append" the UI adds to what it already shows.
"""
from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, NamedTuple, Optional, Tuple

from tasker_monitor.config import DEFAULT_LOG_DIR, DEFAULT_LOG_LINES
from tasker_monitor.models import FAILED, NOT_STARTED, TaskState

logger = logging.getLogger(__name__)

REPLACE = "replace"
APPEND = "append"
UNCHANGED = "unchanged"
MISSING = "missing"

_ERROR_RE = re.compile(r"ERROR|FAIL")
_WARN_RE = re.compile(r"WARN")
_INFO_RE = re.compile(r"INFO")


@dataclass(frozen=True)
class LogSettings:
    num_lines: int = DEFAULT_LOG_LINES  # -1 shows everything
    tail_mode: bool = True
    auto_refresh: bool = True
    filter: str = ""

    @property
    def display_mode(self) -> Tuple[int, bool, str]:
        """Settings that change what is on screen; auto_refresh does not."""
        return (self.num_lines, self.tail_mode, self.filter.strip().lower())

    @property
    def max_lines(self) -> Optional[int]:
        return None if self.num_lines <= -1 else self.num_lines


class LogLine(NamedTuple):
    text: str
    level: str


class LogLocation(NamedTuple):
    path: Optional[Path]
    log_dir: Path
    expected: str


@dataclass
class LogUpdate:
    kind: str
    lines: List[LogLine] = field(default_factory=list)
    path: Optional[Path] = None
    total_lines: int = 0
    displayed: int = 0
    message: str = ""
    detail: str = ""


def classify_line(line: str) -> str:
    if _ERROR_RE.search(line):
        return "error"
    if _WARN_RE.search(line):
        return "warning"
    if _INFO_RE.search(line):
        return "info"
    return ""


def resolve_log_file(
    state: TaskState,
    log_dir: Optional[str | Path] = None,
) -> LogLocation:
    """
    Work out which file holds a task's log.

    Directory: the task's log_path, else the configured log dir, else the
    default. File: log_filename, else '<task>.Rout' when it exists. A
    FAILED task whose log is missing falls back to '<file>-error'.
    """
    directory = Path(state.log_path or log_dir or DEFAULT_LOG_DIR).expanduser()

    path: Optional[Path] = None
    if state.log_filename:
        path = directory / state.log_filename
    else:
        candidate = directory / f"{state.task_name}.Rout"
        if candidate.exists():
            path = candidate

    if path is not None and not path.exists() and state.status == FAILED:
        error_log = path.with_name(path.name + "-error")
        if error_log.exists():
            path = error_log

    expected = str(path) if path is not None else str(directory / f"{state.task_name}.Rout")
    return LogLocation(path, directory, expected)


class LogTail:
    """Read state for one task's log pane."""

    def __init__(self, settings: Optional[LogSettings] = None):
        self.settings = settings or LogSettings()
        self._path: Optional[Path] = None
        self._offset = 0
        self._line_count = 0
        self._display_mode: Optional[Tuple[int, bool, str]] = None
        self._visible: Deque[LogLine] = deque()

    @property
    def visible_lines(self) -> List[LogLine]:
        return list(self._visible)

    @property
    def line_count(self) -> int:
        return self._line_count

    def update_settings(self, settings: LogSettings) -> None:
        self.settings = settings

    def reset(self) -> None:
        self._path = None
        self._offset = 0
        self._line_count = 0
        self._display_mode = None
        self._visible = deque()

    # -----------------------
    # refresh
    # -----------------------

    def refresh(self, state: TaskState, log_dir: Optional[str | Path] = None) -> LogUpdate:
        location = resolve_log_file(state, log_dir)
        path = location.path

        if path is None or not path.exists():
            self.reset()
            status = state.status or NOT_STARTED
            if path is None:
                return LogUpdate(
                    MISSING,
                    message="Not configured",
                    detail=f"No log file configured for this task ({status}). "
                           f"Expected location: {location.expected}",
                )
            return LogUpdate(
                MISSING,
                path=path,
                message="File not found",
                detail=f"Expected: {path} ({status}). This file will be created when the task runs.",
            )

        needs_replace = (
            path != self._path
            or self._display_mode != self.settings.display_mode
            or self._line_count == 0
        )

        try:
            size = path.stat().st_size
            if not needs_replace and size < self._offset:
                logger.info("Log %s shrank (%d < %d); reloading", path, size, self._offset)
                needs_replace = True

            if needs_replace:
                return self._replace(path)
            if not self.settings.tail_mode:
                return LogUpdate(UNCHANGED, path=path, total_lines=self._line_count,
                                 displayed=len(self._visible))
            return self._append(path)
        except OSError:
            logger.exception("Failed to read log file %s", path)
            raise

    def _matches(self, line: str) -> bool:
        needle = self.settings.filter.strip().lower()
        return not needle or needle in line.lower()

    def _read_from(self, path: Path, offset: int) -> Tuple[List[str], int]:
        """Complete lines after offset, plus the offset just past the last newline."""
        with path.open("rb") as f:
            f.seek(offset)
            data = f.read()

        end = data.rfind(b"\n")
        if end == -1:
            return [], offset
        complete = data[: end + 1]
        lines = complete.decode("utf-8", errors="replace").splitlines()
        return lines, offset + end + 1

    def _replace(self, path: Path) -> LogUpdate:
        # a trailing line without newline waits for the next read
        lines, offset = self._read_from(path, 0)

        self._path = path
        self._offset = offset
        self._line_count = len(lines)
        self._display_mode = self.settings.display_mode

        max_lines = self.settings.max_lines
        shown = [ln for ln in lines if self._matches(ln)]
        if max_lines is not None:
            shown = shown[-max_lines:] if self.settings.tail_mode else shown[:max_lines]

        self._visible = deque((LogLine(ln, classify_line(ln)) for ln in shown), maxlen=max_lines)
        return LogUpdate(
            REPLACE,
            lines=list(self._visible),
            path=path,
            total_lines=self._line_count,
            displayed=len(self._visible),
        )

    def _append(self, path: Path) -> LogUpdate:
        new_lines, offset = self._read_from(path, self._offset)
        if not new_lines:
            return LogUpdate(UNCHANGED, path=path, total_lines=self._line_count,
                             displayed=len(self._visible))

        self._offset = offset
        self._line_count += len(new_lines)

        appended = [LogLine(ln, classify_line(ln)) for ln in new_lines if self._matches(ln)]
        # the deque's maxlen drops the oldest visible lines
        self._visible.extend(appended)
        return LogUpdate(
            APPEND,
            lines=appended,
            path=path,
            total_lines=self._line_count,
            displayed=len(self._visible),
        )
