"""db/status.py

Read access to the tasker schema, plus the two writes the monitor makes
(resetting a task and failing a run whose process died).

Construction modes:

- StatusDAO(engine, schema="tasker")
- StatusDAO(conn=sqlalchemy.engine.Connection, schema="tasker")

Support for atomic multi-step operations:

with status_dao(engine, schema) as dao:
    dao.reset_task("LOAD", "Import files")
    dao.mark_run_failed(run_id, "...")
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from tasker_monitor.db.infra.core import (
    MissingViewError,
    StatusQueryError,
    TaskNotFoundError,
    UnsupportedDriverError,
    get_conn,
    is_missing_relation_error,
)
from tasker_monitor.db.infra.sql_utils import qualify, squish
from tasker_monitor.models import ACTIVE_STATUSES, FAILED
from tasker_monitor.utils import seconds_since, utcnow

logger = logging.getLogger(__name__)

METRICS_VIEW = "current_task_status_with_metrics"
BASIC_VIEW = "current_task_status"

# Current schemas name the table reporter_status; older ones process_reporter_status.
REPORTER_TABLES = ("reporter_status", "process_reporter_status")


class StatusRows(NamedTuple):
    rows: List[dict]
    view: str
    used_fallback: bool


class StatusDAO:
    def __init__(self, engine: Optional[Engine] = None, conn: Optional[Connection] = None,
                 schema: Optional[str] = "tasker"):
        if conn is None and engine is None:
            raise ValueError("StatusDAO requires either engine or conn")

        self._engine = engine
        self._conn = conn
        self.schema = schema
        bind = conn if conn is not None else engine
        self.dialect = bind.dialect.name

    # -----------------------
    # internal helpers
    # -----------------------

    @contextmanager
    def _connection(self):
        """
        Yield a connection.
        If DAO was constructed with a connection, reuse it.
        Otherwise, open a new one.
        """
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._engine) as conn:
                yield conn

    def _table(self, name: str) -> str:
        return qualify(name, self.schema, self.dialect)

    def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
        with self._connection() as conn:
            result = conn.execute(text(sql), params or {})
            return [dict(row) for row in result.mappings()]

    def _fetch_relation(self, relation: str, sql: str,
                        params: Optional[Dict[str, Any]] = None) -> List[dict]:
        """_fetch, raising MissingViewError when the relation does not exist."""
        try:
            return self._fetch(sql, params)
        except SQLAlchemyError as e:
            if is_missing_relation_error(e):
                if self._conn is not None:
                    # PostgreSQL aborts the transaction on any error
                    self._conn.rollback()
                raise MissingViewError(f"{relation} is not available") from e
            raise

    # -----------------------
    # READ operations
    # -----------------------

    def list_stages(self) -> List[dict]:
        logger.debug("Loading stages from DB")
        try:
            return self._fetch(
                f"""
                SELECT stage_id, stage_name, stage_order, description
                FROM {self._table("stages")}
                ORDER BY CASE WHEN stage_order IS NULL THEN 1 ELSE 0 END,
                         stage_order, stage_name
                """
            )
        except Exception:
            logger.exception("Failed to load stages from DB")
            raise

    def list_registered_tasks(self, stage: Optional[str] = None,
                              name: Optional[str] = None) -> List[dict]:
        logger.debug("Loading registered tasks from DB (stage=%s, name=%s)", stage, name)
        where = []
        params: Dict[str, Any] = {}
        if stage is not None:
            where.append("s.stage_name = :stage")
            params["stage"] = stage
        if name is not None:
            where.append("t.task_name = :name")
            params["name"] = name
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        try:
            return self._fetch(
                f"""
                SELECT s.stage_id, s.stage_name, s.stage_order,
                       t.task_id, t.task_name, t.task_type, t.task_order,
                       t.description, t.script_path, t.script_filename,
                       t.log_path, t.log_filename
                FROM {self._table("tasks")} t
                JOIN {self._table("stages")} s ON t.stage_id = s.stage_id
                {where_sql}
                ORDER BY CASE WHEN s.stage_order IS NULL THEN 1 ELSE 0 END,
                         s.stage_order, s.stage_name,
                         CASE WHEN t.task_order IS NULL THEN 1 ELSE 0 END,
                         t.task_order, t.task_name
                """,
                params,
            )
        except Exception:
            logger.exception("Failed to load registered tasks from DB")
            raise

    def _query_status_view(self, view: str, stage, task, status, limit) -> List[dict]:
        where = []
        params: Dict[str, Any] = {}
        if stage is not None:
            where.append("stage_name = :stage")
            params["stage"] = stage
        if task is not None:
            where.append("task_name = :task")
            params["task"] = task
        if status is not None:
            where.append("status = :status")
            params["status"] = status
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT :limit"
            params["limit"] = int(limit)

        sql = f"""
            SELECT * FROM {self._table(view)}
            {where_sql}
            ORDER BY stage_order, task_order, start_time DESC
            {limit_sql}
        """
        return self._fetch_relation(view, sql, params)

    def current_task_status(self, stage: Optional[str] = None, task: Optional[str] = None,
                            status: Optional[str] = None,
                            limit: Optional[int] = None) -> StatusRows:
        """
        Latest run per task, with process metrics when the schema has them.

        Falls back to the older view without metrics when the metrics view
        is missing; the result says which view answered.
        """
        if limit is not None and int(limit) < 1:
            raise ValueError("'limit' must be a positive integer if provided")

        logger.debug("Loading current task status from DB")
        try:
            rows = self._query_status_view(METRICS_VIEW, stage, task, status, limit)
            return StatusRows(rows, METRICS_VIEW, False)
        except MissingViewError:
            logger.warning("%s not found; falling back to %s", METRICS_VIEW, BASIC_VIEW)
        except Exception as e:
            logger.exception("Failed to retrieve task status")
            raise StatusQueryError(f"Failed to retrieve task status: {e}") from e

        try:
            rows = self._query_status_view(BASIC_VIEW, stage, task, status, limit)
        except Exception as e:
            logger.exception("Failed to retrieve task status from %s", BASIC_VIEW)
            raise StatusQueryError(f"Failed to retrieve task status: {e}") from e
        return StatusRows(rows, BASIC_VIEW, True)

    def subtask_progress(self, run_id: str) -> List[dict]:
        logger.debug("Loading subtasks for run %s from DB", run_id)
        try:
            return self._fetch(
                f"""
                SELECT run_id, subtask_number, subtask_name, status,
                       start_time, end_time, last_update,
                       percent_complete, progress_message,
                       items_total, items_complete
                FROM {self._table("subtask_progress")}
                WHERE run_id = :run_id
                ORDER BY subtask_number
                """,
                {"run_id": run_id},
            )
        except Exception:
            logger.exception("Failed to load subtasks for run %s from DB", run_id)
            raise

    def reporter_status(self, now: Optional[datetime] = None) -> List[dict]:
        """Process reporters with heartbeat_age_seconds relative to now."""
        logger.debug("Loading process reporter status from DB")
        rows: List[dict] = []
        for table in REPORTER_TABLES:
            try:
                rows = self._fetch_relation(
                    table,
                    f"""
                    SELECT hostname, process_id, started_at, last_heartbeat,
                           version, shutdown_requested
                    FROM {self._table(table)}
                    ORDER BY hostname
                    """,
                )
                break
            except MissingViewError:
                if table == REPORTER_TABLES[-1]:
                    logger.exception("No process reporter table in the tasker schema")
                    raise
                logger.debug("%s not found; trying the next reporter table", table)
            except Exception:
                logger.exception("Failed to load process reporter status from DB")
                raise

        now = now or utcnow()
        for row in rows:
            row["heartbeat_age_seconds"] = seconds_since(row.get("last_heartbeat"), now)
        return rows

    def active_queries(self, status: str = "active", exclude_tasker: bool = False) -> List[dict]:
        """
        Queries currently running on the server, normalized to
        pid / duration_seconds / username / query / state.

        status="any" disables the state filter. SQLite has no server, so
        the list is always empty there.
        """
        if self.dialect == "sqlite":
            return []

        logger.debug("Loading active database queries")
        try:
            if self.dialect == "postgresql":
                rows = self._fetch(
                    """
                    SELECT pid,
                           EXTRACT(EPOCH FROM (now() - query_start)) AS duration_seconds,
                           usename AS username,
                           query,
                           state
                    FROM pg_stat_activity
                    WHERE backend_type != 'parallel worker'
                      AND pid != pg_backend_pid()
                      AND state IS NOT NULL
                    ORDER BY query_start
                    """
                )
                if status != "any":
                    rows = [r for r in rows if r.get("state") == status]
            elif self.dialect == "mysql":
                raw = self._fetch("SHOW FULL PROCESSLIST")
                rows = [
                    {
                        "pid": r.get("Id"),
                        "duration_seconds": r.get("Time"),
                        "username": r.get("User"),
                        "query": r.get("Info"),
                        "state": r.get("Command"),
                    }
                    for r in raw
                ]
                if status == "active":
                    rows = [r for r in rows if r["state"] not in ("Sleep", "Daemon")]
                elif status != "any":
                    rows = [r for r in rows if r["state"] == status]
            else:
                raise UnsupportedDriverError(f"Unsupported database type: {self.dialect}")
        except UnsupportedDriverError:
            raise
        except Exception:
            logger.exception("Failed to load active database queries")
            raise

        for row in rows:
            row["query"] = squish(row.get("query"))
            if row.get("duration_seconds") is not None:
                row["duration_seconds"] = float(row["duration_seconds"])

        if exclude_tasker:
            marker = f"{self.schema or 'tasker'}."
            rows = [r for r in rows if marker not in r["query"]]
        return rows

    # -----------------------
    # WRITE operations
    # -----------------------

    def kill_query(self, pid: int) -> bool:
        if self.dialect not in ("postgresql", "mysql"):
            raise UnsupportedDriverError(f"Killing queries is not supported for {self.dialect}")

        pid = int(pid)
        logger.info("Terminating database backend %s", pid)
        try:
            with self._connection() as conn:
                if self.dialect == "postgresql":
                    ok = conn.execute(
                        text("SELECT pg_terminate_backend(:pid)"), {"pid": pid}
                    ).scalar()
                    return bool(ok)
                conn.execute(text(f"KILL {pid}"))
                return True
        except Exception:
            logger.exception("Failed to terminate database backend %s", pid)
            raise

    def reset_task(self, stage: str, task: str, run_id: Optional[str] = None) -> int:
        """
        Delete the task's runs (or a single run) and their subtask rows.

        Returns the number of runs deleted; raises TaskNotFoundError for an
        unknown stage/task pair.
        """
        logger.info("Resetting task %s / %s (run_id=%s)", stage, task, run_id)
        try:
            with self._connection() as conn:
                row = conn.execute(
                    text(
                        f"""
                        SELECT t.task_id FROM {self._table("tasks")} t
                        JOIN {self._table("stages")} s ON t.stage_id = s.stage_id
                        WHERE s.stage_name = :stage AND t.task_name = :task
                        """
                    ),
                    {"stage": stage, "task": task},
                ).first()
                if row is None:
                    raise TaskNotFoundError(f"Task '{task}' in stage '{stage}' not found")

                params: Dict[str, Any] = {"task_id": row[0]}
                run_filter = "task_id = :task_id"
                if run_id is not None:
                    run_filter += " AND run_id = :run_id"
                    params["run_id"] = run_id

                runs_table = self._table("task_runs")
                n_runs = conn.execute(
                    text(f"SELECT COUNT(*) FROM {runs_table} WHERE {run_filter}"), params
                ).scalar() or 0
                if n_runs == 0:
                    logger.info("No task runs found to reset for %s / %s", stage, task)
                    return 0

                conn.execute(
                    text(
                        f"""
                        DELETE FROM {self._table("subtask_progress")}
                        WHERE run_id IN (SELECT run_id FROM {runs_table} WHERE {run_filter})
                        """
                    ),
                    params,
                )
                conn.execute(text(f"DELETE FROM {runs_table} WHERE {run_filter}"), params)
        except TaskNotFoundError:
            raise
        except Exception:
            logger.exception("Failed to reset task %s / %s", stage, task)
            raise

        logger.info("Reset %d run(s) for %s / %s", n_runs, stage, task)
        return int(n_runs)

    def mark_run_failed(self, run_id: str, message: str) -> bool:
        """Fail a still-active run; returns False when it had already finished."""
        logger.info("Marking run %s as %s: %s", run_id, FAILED, message)
        active = ", ".join(f"'{s}'" for s in sorted(ACTIVE_STATUSES))
        try:
            with self._connection() as conn:
                result = conn.execute(
                    text(
                        f"""
                        UPDATE {self._table("task_runs")}
                        SET status = :status,
                            error_message = :message,
                            end_time = CURRENT_TIMESTAMP
                        WHERE run_id = :run_id AND status IN ({active})
                        """
                    ),
                    {"status": FAILED, "message": message, "run_id": run_id},
                )
                return result.rowcount > 0
        except Exception:
            logger.exception("Failed to mark run %s as failed", run_id)
            raise


@contextmanager
def status_dao(engine: Engine, schema: Optional[str] = "tasker"):
    """
    Transaction-scoped StatusDAO.
    Commits on success, rolls back on exception.
    """
    with get_conn(engine) as conn:
        yield StatusDAO(conn=conn, schema=schema)
