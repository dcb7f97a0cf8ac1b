# models.py
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from tasker_monitor.utils import parse_timestamp, to_bool, to_float, to_int

# -------------------------
# Status vocabulary
# -------------------------

NOT_STARTED = "NOT_STARTED"
STARTED = "STARTED"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"
CANCELLED = "CANCELLED"

ALL_STATUSES = (NOT_STARTED, STARTED, RUNNING, COMPLETED, FAILED, SKIPPED, CANCELLED)
ACTIVE_STATUSES = frozenset({STARTED, RUNNING})

TASK_KEY_SEP = "||"


def is_active(status: Optional[str]) -> bool:
    return status in ACTIVE_STATUSES


def task_key(stage_name: str, task_name: str) -> str:
    """Stable cache key for a task: '<stage>||<task>'."""
    return f"{stage_name}{TASK_KEY_SEP}{task_name}"


def split_task_key(key: str) -> Tuple[str, str]:
    stage, _, task = key.partition(TASK_KEY_SEP)
    return stage, task


def element_id(*parts: str) -> str:
    """Widget-safe identifier: anything outside [A-Za-z0-9] becomes '_'."""
    return re.sub(r"[^A-Za-z0-9]", "_", "_".join(parts))


# -------------------------
# Subtask / task / stage state
# -------------------------

@dataclass(frozen=True)
class SubtaskState:
    subtask_number: int
    subtask_name: str = ""
    status: str = NOT_STARTED
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    percent_complete: Optional[float] = None
    progress_message: Optional[str] = None
    items_total: Optional[int] = None
    items_complete: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubtaskState":
        return cls(
            subtask_number=to_int(row.get("subtask_number"), 0),
            subtask_name=row.get("subtask_name") or "",
            status=row.get("status") or NOT_STARTED,
            start_time=parse_timestamp(row.get("start_time")),
            end_time=parse_timestamp(row.get("end_time")),
            last_update=parse_timestamp(row.get("last_update")),
            percent_complete=to_float(row.get("percent_complete")),
            progress_message=row.get("progress_message"),
            items_total=to_int(row.get("items_total")),
            items_complete=to_int(row.get("items_complete")),
        )


@dataclass(frozen=True)
class TaskState:
    """
    Everything the monitor knows about one registered task.

    Instances are immutable; reconciliation builds a new one per poll and
    swaps it in only when it compares unequal to the cached one.
    """
    stage_name: str
    task_name: str
    stage_order: Optional[int] = None
    task_order: Optional[int] = None
    task_type: Optional[str] = None
    description: Optional[str] = None
    script_filename: Optional[str] = None
    log_path: Optional[str] = None
    log_filename: Optional[str] = None

    # latest run
    status: str = NOT_STARTED
    run_id: Optional[str] = None
    hostname: Optional[str] = None
    process_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    total_subtasks: int = 0
    current_subtask: int = 0
    completed_subtasks: Optional[int] = None
    overall_percent_complete: float = 0.0
    overall_progress_message: Optional[str] = None
    error_message: Optional[str] = None

    # subtask currently being worked on
    current_subtask_name: Optional[str] = None
    current_subtask_number: Optional[int] = None
    items_total: int = 0
    items_complete: int = 0
    subtasks: Tuple[SubtaskState, ...] = ()

    # process metrics (absent when the metrics view is unavailable)
    cpu_percent: Optional[float] = None
    memory_mb: Optional[float] = None
    memory_percent: Optional[float] = None
    child_count: Optional[int] = None
    child_total_cpu_percent: Optional[float] = None
    child_total_memory_mb: Optional[float] = None
    is_alive: Optional[bool] = None
    collection_error: bool = False
    metrics_error_message: Optional[str] = None
    metrics_error_type: Optional[str] = None
    metrics_timestamp: Optional[datetime] = None
    # Computed by the database from NOW(), so it changes on every poll
    metrics_age_seconds: Optional[float] = field(default=None, compare=False)

    @property
    def key(self) -> str:
        return task_key(self.stage_name, self.task_name)

    @property
    def element_id(self) -> str:
        return element_id(self.stage_name, self.task_name)

    @property
    def has_metrics(self) -> bool:
        return self.metrics_timestamp is not None or self.cpu_percent is not None

    @classmethod
    def registered(cls, row: Mapping[str, Any]) -> "TaskState":
        """Initial NOT_STARTED state for a registered task row."""
        return cls(
            stage_name=row["stage_name"],
            task_name=row["task_name"],
            stage_order=to_int(row.get("stage_order")),
            task_order=to_int(row.get("task_order")),
            task_type=row.get("task_type"),
            description=row.get("description"),
            script_filename=row.get("script_filename"),
            log_path=row.get("log_path"),
            log_filename=row.get("log_filename"),
        )

    def with_status_row(self, row: Mapping[str, Any]) -> "TaskState":
        """
        Merge one row of the current status view into this state.

        Registration fields are refreshed from the row when it carries them.
        Subtask enrichment is applied separately by the monitor.
        """
        collection_error = to_bool(row.get("collection_error"))
        return replace(
            self,
            stage_order=to_int(row.get("stage_order"), self.stage_order),
            task_order=to_int(row.get("task_order"), self.task_order),
            script_filename=row.get("script_filename") or self.script_filename,
            log_path=row.get("log_path") or self.log_path,
            log_filename=row.get("log_filename") or self.log_filename,
            status=row.get("status") or NOT_STARTED,
            run_id=_str_or_none(row.get("run_id")),
            hostname=row.get("hostname"),
            process_id=to_int(row.get("process_id")),
            start_time=parse_timestamp(row.get("start_time")),
            end_time=parse_timestamp(row.get("end_time")),
            last_update=parse_timestamp(row.get("last_update")),
            total_subtasks=to_int(row.get("total_subtasks"), 0),
            current_subtask=to_int(row.get("current_subtask"), 0),
            completed_subtasks=None,
            overall_percent_complete=to_float(row.get("overall_percent_complete"), 0.0),
            overall_progress_message=row.get("overall_progress_message"),
            error_message=row.get("error_message"),
            current_subtask_name=None,
            current_subtask_number=None,
            items_total=0,
            items_complete=0,
            subtasks=(),
            cpu_percent=to_float(row.get("cpu_percent")),
            memory_mb=to_float(row.get("memory_mb")),
            memory_percent=to_float(row.get("memory_percent")),
            child_count=to_int(row.get("child_count")),
            child_total_cpu_percent=to_float(row.get("child_total_cpu_percent")),
            child_total_memory_mb=to_float(row.get("child_total_memory_mb")),
            is_alive=to_bool(row.get("is_alive")),
            collection_error=bool(collection_error),
            metrics_error_message=row.get("metrics_error_message"),
            metrics_error_type=row.get("metrics_error_type"),
            metrics_timestamp=parse_timestamp(row.get("metrics_timestamp")),
            metrics_age_seconds=to_float(row.get("metrics_age_seconds")),
        )

    def with_subtasks(self, subtasks: Tuple[SubtaskState, ...]) -> "TaskState":
        """
        Derive subtask counters from the run's subtask rows.

        The current subtask is the most recently updated active one, or the
        most recently updated one overall when nothing is active.
        """
        if not subtasks:
            return self

        completed = sum(1 for s in subtasks if s.status == COMPLETED)
        active = [s for s in subtasks if is_active(s.status)]
        pool = active or list(subtasks)
        current = max(pool, key=_subtask_recency)

        items_total = current.items_total or 0
        items_complete = (current.items_complete or 0) if items_total > 0 else 0

        return replace(
            self,
            subtasks=tuple(subtasks),
            completed_subtasks=completed,
            total_subtasks=len(subtasks),
            current_subtask_number=current.subtask_number,
            current_subtask_name=current.subtask_name or None,
            items_total=items_total if items_total > 0 else 0,
            items_complete=items_complete,
        )


def _subtask_recency(subtask: SubtaskState):
    # undated rows sort first; ties fall back to subtask order
    stamp = subtask.last_update or subtask.start_time
    return (stamp is not None, stamp.timestamp() if stamp else 0.0, subtask.subtask_number)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class StageSummary:
    stage_name: str
    stage_order: Optional[int] = None
    status: str = NOT_STARTED
    completed: int = 0
    total: int = 0
    progress_pct: int = 0

    @property
    def element_id(self) -> str:
        return element_id("stage", self.stage_name)


@dataclass
class PollResult:
    """Outcome of one poll; changed_* hold task keys / stage names."""
    ran: bool = False
    changed_tasks: Tuple[str, ...] = ()
    changed_stages: Tuple[str, ...] = ()
    expanded: Tuple[str, ...] = ()
    collapsed: Tuple[str, ...] = ()
    notices: Tuple[str, ...] = ()
    error: Optional[str] = None
    used_fallback: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.changed_tasks or self.changed_stages)
