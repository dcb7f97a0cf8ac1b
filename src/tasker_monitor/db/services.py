# src/tasker_monitor/db/services.py
import logging
import socket
from datetime import datetime
from typing import List, Optional

import psutil
from sqlalchemy.engine import Engine

from tasker_monitor.db.infra.core import get_engine
from tasker_monitor.db.status import StatusDAO, StatusRows, status_dao
from tasker_monitor.tasker_config import TaskerConfig
from tasker_monitor.utils import to_int

logger = logging.getLogger(__name__)


def _short_host(hostname: Optional[str]) -> str:
    return (hostname or "").split(".", 1)[0]


def reporter_alive(hostname: Optional[str], process_id) -> Optional[bool]:
    """
    Whether a reporter process is alive.

    Only answerable for reporters on this host; None means unknown.
    """
    pid = to_int(process_id)
    if pid is None or not hostname:
        return None
    if _short_host(hostname) != _short_host(socket.gethostname()):
        return None
    return psutil.pid_exists(pid)


def reporter_state(row: dict) -> str:
    """UNKNOWN, DEAD, SHUTTING_DOWN, STALE (> 60s without heartbeat) or RUNNING."""
    alive = row.get("is_alive")
    if alive is None:
        return "UNKNOWN"
    if not alive:
        return "DEAD"
    if row.get("shutdown_requested"):
        return "SHUTTING_DOWN"
    age = row.get("heartbeat_age_seconds")
    if age is not None and age > 60:
        return "STALE"
    return "RUNNING"


# -----------------------
# Monitor Service
# -----------------------
class MonitorService:
    def __init__(self, config: TaskerConfig, engine: Optional[Engine] = None):
        self.config = config
        self.engine = engine or get_engine(config.database)
        self.schema = config.database.schema if config.database.uses_schema else None

    def _dao(self) -> StatusDAO:
        return StatusDAO(self.engine, schema=self.schema)

    def list_stages(self) -> List[dict]:
        return self._dao().list_stages()

    def list_registered_tasks(self, stage: Optional[str] = None,
                              name: Optional[str] = None) -> List[dict]:
        return self._dao().list_registered_tasks(stage, name)

    def current_task_status(self, **filters) -> StatusRows:
        return self._dao().current_task_status(**filters)

    def subtask_progress(self, run_id: str) -> List[dict]:
        return self._dao().subtask_progress(run_id)

    def reporter_status(self, now: Optional[datetime] = None) -> List[dict]:
        rows = self._dao().reporter_status(now)
        for row in rows:
            try:
                row["is_alive"] = reporter_alive(row.get("hostname"), row.get("process_id"))
            except psutil.Error:
                logger.warning("Could not check reporter process %s", row.get("process_id"))
                row["is_alive"] = None
            row["status"] = reporter_state(row)
        return rows

    def active_queries(self, status: str = "active", exclude_tasker: bool = False) -> List[dict]:
        return self._dao().active_queries(status=status, exclude_tasker=exclude_tasker)

    def kill_query(self, pid: int) -> bool:
        return self._dao().kill_query(pid)

    def reset_task(self, stage: str, task: str, run_id: Optional[str] = None) -> int:
        with status_dao(self.engine, self.schema) as dao:
            return dao.reset_task(stage, task, run_id)

    def mark_run_failed(self, run_id: str, message: str) -> bool:
        with status_dao(self.engine, self.schema) as dao:
            return dao.mark_run_failed(run_id, message)
