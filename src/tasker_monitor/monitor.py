# monitor.py
"""
Polling and reconciliation.

PipelineMonitor keeps the last known TaskState per registered task and a
StageSummary per stage. Each poll fetches the current status view, enriches
active runs with their subtasks, and swaps in a new state only where it
differs from the cached one, so the UI redraws only what changed. Stage
summaries are derived from task states the same way.

Database access is synchronous; QueryGate keeps polls from overlapping or
arriving faster than the configured minimum interval.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from tasker_monitor.config import EXCLUDED_STAGE_ORDER, MIN_QUERY_INTERVAL
from tasker_monitor.db.infra.core import StatusQueryError
from tasker_monitor.db.services import MonitorService
from tasker_monitor.estimation import CompletionEstimate, ProgressHistory
from tasker_monitor.logtail import LogSettings, LogTail, LogUpdate
from tasker_monitor.models import (
    COMPLETED,
    FAILED,
    NOT_STARTED,
    PollResult,
    StageSummary,
    SubtaskState,
    TaskState,
    is_active,
    task_key,
)
from tasker_monitor.progress import aggregate_stage
from tasker_monitor.tasker_config import TaskerConfig
from tasker_monitor.utils import to_int, utcnow

logger = logging.getLogger(__name__)

EXPAND = "expand"
COLLAPSE = "collapse"

FALLBACK_NOTICE = (
    "Process metrics are unavailable: the database has no "
    "current_task_status_with_metrics view, so the basic status view is used."
)


class QueryGate:
    """
    Cooldown guard for database polls.

    A poll is refused while another is running or until min_interval
    seconds have passed since the previous one finished. The first poll is
    always allowed.
    """

    def __init__(self, min_interval: float = MIN_QUERY_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self.running = False
        self.last_query_time = clock() - max(60.0, min_interval)

    def seconds_until_ready(self) -> float:
        return max(0.0, self.min_interval - (self._clock() - self.last_query_time))

    def acquire(self) -> bool:
        if self.running:
            logger.debug("Query already running; skipping")
            return False
        if self._clock() - self.last_query_time < self.min_interval:
            logger.debug("Query cooldown active (%.1fs left)", self.seconds_until_ready())
            return False
        self.running = True
        return True

    def release(self) -> None:
        self.running = False
        self.last_query_time = self._clock()

    @contextmanager
    def guard(self):
        """Yield True when the query may run; the finish time is stamped even on error."""
        if not self.acquire():
            yield False
            return
        try:
            yield True
        finally:
            self.release()


def transition(previous: Optional[str], current: Optional[str]) -> Optional[str]:
    """
    Auto-expand/collapse decision for a status change.

    Expand when a task or stage becomes active (or is active when first
    seen); collapse when it goes from active to COMPLETED.
    """
    if is_active(current) and (previous is None or not is_active(previous)):
        return EXPAND
    if previous is not None and is_active(previous) and current == COMPLETED:
        return COLLAPSE
    return None


class PipelineMonitor:
    def __init__(
        self,
        service: MonitorService,
        config: TaskerConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        history: Optional[ProgressHistory] = None,
    ):
        self.service = service
        self.config = config
        self.gate = QueryGate(config.min_query_interval, clock=clock)
        self.history = history or ProgressHistory()

        self.stage_rows: List[dict] = []
        self.registered: Dict[str, dict] = {}
        self.tasks: Dict[str, TaskState] = {}
        self.stages: Dict[str, StageSummary] = {}

        self.expanded_stages: Set[str] = set()
        self.expanded_tasks: Set[str] = set()
        self._previous_stage_status: Dict[str, str] = {}
        self._previous_task_status: Dict[str, str] = {}

        self._log_tails: Dict[str, LogTail] = {}
        self._fallback_notified = False
        self.structure_loaded = False
        self.last_update: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # -----------------------
    # structure
    # -----------------------

    def is_excluded_stage(self, stage_name: Optional[str], stage_order=None) -> bool:
        if stage_name in self.config.exclude_stages:
            return True
        return to_int(stage_order) == EXCLUDED_STAGE_ORDER

    def load_structure(self) -> None:
        """
        Load stages and registered tasks.

        Existing task states are kept; new tasks start as NOT_STARTED and
        tasks that are no longer registered are dropped.
        """
        logger.info("Loading pipeline structure")
        stages = [
            s for s in self.service.list_stages()
            if not self.is_excluded_stage(s.get("stage_name"), s.get("stage_order"))
        ]
        stage_names = {s["stage_name"] for s in stages}
        tasks = [t for t in self.service.list_registered_tasks() if t["stage_name"] in stage_names]

        self.stage_rows = stages
        self.registered = {task_key(t["stage_name"], t["task_name"]): t for t in tasks}

        for key, row in self.registered.items():
            if key not in self.tasks:
                self.tasks[key] = TaskState.registered(row)
        for key in [k for k in self.tasks if k not in self.registered]:
            del self.tasks[key]
            self._log_tails.pop(key, None)

        for stage in stages:
            name = stage["stage_name"]
            if name not in self.stages:
                self.stages[name] = StageSummary(name, to_int(stage.get("stage_order")))
        for name in [n for n in self.stages if n not in stage_names]:
            del self.stages[name]

        self._update_stages()
        self.structure_loaded = True
        logger.info("Loaded %d stage(s), %d task(s)", len(stages), len(self.registered))

    def stage_names(self) -> List[str]:
        return [s["stage_name"] for s in self.stage_rows]

    def tasks_for_stage(self, stage_name: str) -> List[TaskState]:
        return [self.tasks[k] for k, row in self.registered.items()
                if row["stage_name"] == stage_name and k in self.tasks]

    # -----------------------
    # polling
    # -----------------------

    def poll(self, now: Optional[datetime] = None) -> PollResult:
        """Run one guarded poll; returns ran=False when the gate refused it."""
        with self.gate.guard() as allowed:
            if not allowed:
                return PollResult(ran=False, stats={"retry_in": self.gate.seconds_until_ready()})
            return self._poll(now or utcnow())

    def _poll(self, now: datetime) -> PollResult:
        result = PollResult(ran=True)
        notices: List[str] = []

        try:
            if not self.structure_loaded:
                self.load_structure()
            status = self.service.current_task_status()
        except StatusQueryError as e:
            self.last_error = str(e)
            result.error = self.last_error
            return result
        except Exception as e:
            logger.exception("Poll failed")
            self.last_error = f"Database error: {e}"
            result.error = self.last_error
            return result

        self.last_error = None
        result.used_fallback = status.used_fallback
        if status.used_fallback and not self._fallback_notified:
            self._fallback_notified = True
            notices.append(FALLBACK_NOTICE)

        changed_tasks: List[str] = []
        seen: Set[str] = set()

        for row in status.rows:
            key = task_key(row["stage_name"], row["task_name"])
            if key not in self.registered:
                continue
            seen.add(key)

            current = self.tasks.get(key) or TaskState.registered(self.registered[key])
            new = current.with_status_row(row)
            new = self._enrich_active(new, now)
            new, notice = self._check_dead_process(new)
            if notice:
                notices.append(notice)
            self._prune_history(current, new)

            if new != current:
                self.tasks[key] = new
                changed_tasks.append(key)

        # registered tasks without a run have been reset
        for key, row in self.registered.items():
            if key in seen:
                continue
            current = self.tasks.get(key)
            if current is None or current.status != NOT_STARTED:
                if current is not None:
                    self._prune_history(current, None)
                self.tasks[key] = TaskState.registered(row)
                changed_tasks.append(key)

        result.changed_tasks = tuple(changed_tasks)
        result.changed_stages = tuple(self._update_stages())

        expanded, collapsed = self._auto_expand()
        result.expanded = tuple(expanded)
        result.collapsed = tuple(collapsed)
        result.notices = tuple(notices)
        result.stats = {"rows": len(status.rows), "view": status.view}

        self.last_update = now
        logger.debug(
            "Poll: %d row(s), %d task(s) changed, %d stage(s) changed",
            len(status.rows), len(result.changed_tasks), len(result.changed_stages),
        )
        return result

    def _prune_history(self, previous: TaskState, new: Optional[TaskState]) -> None:
        """Drop snapshots of a run that was replaced, deleted or has finished."""
        run_id = previous.run_id
        if not run_id:
            return
        if new is None or new.run_id != run_id or not is_active(new.status):
            self.history.forget_run(run_id)

    def _enrich_active(self, state: TaskState, now: datetime) -> TaskState:
        if not (state.run_id and is_active(state.status)):
            return state

        try:
            rows = self.service.subtask_progress(state.run_id)
        except Exception:
            logger.warning("Skipping subtasks for run %s", state.run_id, exc_info=True)
            return state

        subtasks = tuple(SubtaskState.from_row(r) for r in rows)
        state = state.with_subtasks(subtasks)

        current = next(
            (s for s in subtasks if s.subtask_number == state.current_subtask_number), None
        )
        if current is not None and is_active(current.status) and state.items_total > 0:
            self.history.record(
                state.run_id,
                current.subtask_number,
                state.items_complete,
                state.items_total,
                subtask_name=current.subtask_name,
                status=current.status,
                timestamp=now,
            )
        return state

    def _check_dead_process(self, state: TaskState) -> Tuple[TaskState, Optional[str]]:
        """Fail an active run whose process the reporter saw die."""
        if not (is_active(state.status) and state.is_alive is False and state.run_id):
            return state, None

        message = f"Process (PID: {state.process_id}) terminated unexpectedly"
        try:
            self.service.mark_run_failed(state.run_id, message)
        except Exception:
            logger.error("Failed to update dead process status for run %s", state.run_id,
                         exc_info=True)
            return state, None

        logger.warning("%s / %s: %s", state.stage_name, state.task_name, message)
        failed = replace(state, status=FAILED, error_message=message)
        return failed, f"{state.stage_name} / {state.task_name}: {message}"

    def _update_stages(self) -> List[str]:
        changed: List[str] = []
        for stage in self.stage_rows:
            name = stage["stage_name"]
            agg = aggregate_stage(t.status for t in self.tasks_for_stage(name))
            summary = StageSummary(
                stage_name=name,
                stage_order=to_int(stage.get("stage_order")),
                status=agg.status,
                completed=agg.completed,
                total=agg.total,
                progress_pct=agg.progress_pct,
            )
            if self.stages.get(name) != summary:
                self.stages[name] = summary
                changed.append(name)
        return changed

    def _auto_expand(self) -> Tuple[List[str], List[str]]:
        expanded: List[str] = []
        collapsed: List[str] = []

        for kind, states, expanded_set, previous in (
            ("stage", self.stages, self.expanded_stages, self._previous_stage_status),
            ("task", self.tasks, self.expanded_tasks, self._previous_task_status),
        ):
            for name, state in states.items():
                action = transition(previous.get(name), state.status)
                previous[name] = state.status
                if action == EXPAND and name not in expanded_set:
                    expanded_set.add(name)
                    expanded.append(f"{kind}:{name}")
                elif action == COLLAPSE and name in expanded_set:
                    expanded_set.discard(name)
                    collapsed.append(f"{kind}:{name}")
        return expanded, collapsed

    # -----------------------
    # user actions
    # -----------------------

    def set_expanded(self, kind: str, name: str, expanded: bool) -> None:
        target = self.expanded_stages if kind == "stage" else self.expanded_tasks
        if expanded:
            target.add(name)
        else:
            target.discard(name)

    def filtered_tasks(
        self,
        stage_filter: Optional[Iterable[str]] = None,
        status_filter: Optional[Iterable[str]] = None,
    ) -> List[TaskState]:
        """Tasks in pipeline order; empty or None filters match everything."""
        stages = set(stage_filter or ())
        statuses = set(status_filter or ())
        out = []
        for key in self.registered:
            state = self.tasks.get(key)
            if state is None:
                continue
            if stages and state.stage_name not in stages:
                continue
            if statuses and state.status not in statuses:
                continue
            out.append(state)
        return out

    def reset_task(self, stage_name: str, task_name: str) -> int:
        """Delete the task's runs and show it as NOT_STARTED straight away."""
        key = task_key(stage_name, task_name)
        n_runs = self.service.reset_task(stage_name, task_name)

        previous = self.tasks.get(key)
        if previous is not None and previous.run_id:
            self.history.forget_run(previous.run_id)
        if key in self.registered:
            self.tasks[key] = TaskState.registered(self.registered[key])
        tail = self._log_tails.get(key)
        if tail is not None:
            tail.reset()
        self._update_stages()
        return n_runs

    # -----------------------
    # logs / estimates
    # -----------------------

    def log_tail(self, key: str) -> LogTail:
        tail = self._log_tails.get(key)
        if tail is None:
            tail = LogTail()
            self._log_tails[key] = tail
        return tail

    def refresh_log(self, key: str, settings: Optional[LogSettings] = None) -> LogUpdate:
        tail = self.log_tail(key)
        if settings is not None:
            tail.update_settings(settings)
        return tail.refresh(self.tasks[key], self.config.log_dir)

    def completion_estimate(self, key: str) -> Optional[CompletionEstimate]:
        state = self.tasks.get(key)
        if state is None or not state.run_id or state.current_subtask_number is None:
            return None
        return self.history.completion_estimate(state.run_id, state.current_subtask_number)
