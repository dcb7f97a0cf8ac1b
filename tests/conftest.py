# tests/conftest.py
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

BASE_SCHEMA_SQL = r"""
CREATE TABLE stages (
    stage_id INTEGER PRIMARY KEY AUTOINCREMENT,
    stage_name TEXT NOT NULL UNIQUE,
    stage_order INTEGER,
    description TEXT
);

CREATE TABLE tasks (
    task_id INTEGER PRIMARY KEY AUTOINCREMENT,
    stage_id INTEGER NOT NULL REFERENCES stages(stage_id),
    task_name TEXT NOT NULL,
    task_type TEXT,
    task_order INTEGER,
    description TEXT,
    script_path TEXT,
    script_filename TEXT,
    log_path TEXT,
    log_filename TEXT
);

CREATE TABLE task_runs (
    run_id TEXT PRIMARY KEY,
    task_id INTEGER NOT NULL REFERENCES tasks(task_id),
    hostname TEXT,
    process_id INTEGER,
    start_time TEXT,
    end_time TEXT,
    last_update TEXT,
    status TEXT,
    total_subtasks INTEGER DEFAULT 0,
    current_subtask INTEGER DEFAULT 0,
    overall_percent_complete REAL DEFAULT 0,
    overall_progress_message TEXT,
    error_message TEXT
);

CREATE TABLE subtask_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES task_runs(run_id),
    subtask_number INTEGER NOT NULL,
    subtask_name TEXT,
    status TEXT,
    start_time TEXT,
    end_time TEXT,
    last_update TEXT,
    percent_complete REAL,
    progress_message TEXT,
    items_total INTEGER,
    items_complete INTEGER
);

CREATE TABLE process_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES task_runs(run_id),
    timestamp TEXT,
    cpu_percent REAL,
    memory_mb REAL,
    memory_percent REAL,
    child_count INTEGER,
    child_total_cpu_percent REAL,
    child_total_memory_mb REAL,
    is_alive INTEGER,
    collection_error INTEGER DEFAULT 0,
    error_message TEXT,
    error_type TEXT
);

CREATE TABLE process_reporter_status (
    hostname TEXT PRIMARY KEY,
    process_id INTEGER,
    started_at TEXT,
    last_heartbeat TEXT,
    version TEXT,
    shutdown_requested INTEGER DEFAULT 0
);

CREATE VIEW current_task_status AS
SELECT s.stage_name, s.stage_order,
       t.task_name, t.task_order, t.task_type,
       t.script_filename, t.log_path, t.log_filename,
       r.run_id, r.hostname, r.process_id, r.status,
       r.start_time, r.end_time, r.last_update,
       r.total_subtasks, r.current_subtask,
       r.overall_percent_complete, r.overall_progress_message, r.error_message
FROM task_runs r
JOIN tasks t ON r.task_id = t.task_id
JOIN stages s ON t.stage_id = s.stage_id
WHERE r.start_time = (
    SELECT MAX(r2.start_time) FROM task_runs r2 WHERE r2.task_id = r.task_id
);
"""

METRICS_VIEW_SQL = r"""
CREATE VIEW current_task_status_with_metrics AS
SELECT c.*,
       m.cpu_percent, m.memory_mb, m.memory_percent, m.child_count,
       m.child_total_cpu_percent, m.child_total_memory_mb,
       m.is_alive, m.collection_error,
       m.error_message AS metrics_error_message,
       m.error_type AS metrics_error_type,
       m.timestamp AS metrics_timestamp
FROM current_task_status c
LEFT JOIN process_metrics m ON m.id = (
    SELECT MAX(m2.id) FROM process_metrics m2 WHERE m2.run_id = c.run_id
);
"""


def _create_db(path: Path, with_metrics: bool):
    engine = create_engine(f"sqlite:///{path}")
    raw = engine.raw_connection()
    try:
        raw.driver_connection.executescript(BASE_SCHEMA_SQL + (METRICS_VIEW_SQL if with_metrics else ""))
        raw.commit()
    finally:
        raw.close()
    return engine


@pytest.fixture
def tasker_engine(tmp_path: Path):
    """SQLite tasker database with both status views."""
    engine = _create_db(tmp_path / "tasker.db", with_metrics=True)
    yield engine
    engine.dispose()


@pytest.fixture
def legacy_engine(tmp_path: Path):
    """SQLite tasker database from before the metrics view existed."""
    engine = _create_db(tmp_path / "tasker_legacy.db", with_metrics=False)
    yield engine
    engine.dispose()


def seed_pipeline(engine, reporter_table: str = "process_reporter_status"):
    """
    Two stages plus an excluded TEST stage:

    LOAD:    "Import files" (COMPLETED), "Check files" (no runs)
    PROCESS: "Build index" (RUNNING, 3 subtasks)
    TEST:    "Smoke" (COMPLETED)
    """
    with engine.begin() as conn:
        conn.execute(text(
            "INSERT INTO stages (stage_id, stage_name, stage_order) VALUES "
            "(1, 'LOAD', 1), (2, 'PROCESS', 2), (3, 'TEST', 999)"
        ))
        conn.execute(text(
            "INSERT INTO tasks (task_id, stage_id, task_name, task_order, script_filename, log_filename) VALUES "
            "(1, 1, 'Import files', 1, 'import.R', 'import.Rout'), "
            "(2, 1, 'Check files', 2, 'check.R', NULL), "
            "(3, 2, 'Build index', 1, 'index.py', 'index.log'), "
            "(4, 3, 'Smoke', 1, 'smoke.sh', NULL)"
        ))
        conn.execute(text(
            "INSERT INTO task_runs (run_id, task_id, hostname, process_id, start_time, end_time, "
            "last_update, status, total_subtasks, current_subtask, overall_percent_complete, "
            "overall_progress_message) VALUES "
            "('run-import-1', 1, 'node1', 101, '2024-01-01 09:00:00', '2024-01-01 09:05:00', "
            " '2024-01-01 09:05:00', 'FAILED', 0, 0, 40, NULL), "
            "('run-import-2', 1, 'node1', 102, '2024-01-01 10:00:00', '2024-01-01 10:05:00', "
            " '2024-01-01 10:05:00', 'COMPLETED', 0, 0, 100, 'done'), "
            "('run-index-1', 3, 'node1', 201, '2024-01-01 11:00:00', NULL, "
            " '2024-01-01 11:10:00', 'RUNNING', 3, 2, 33, 'indexing'), "
            "('run-smoke-1', 4, 'node1', 301, '2024-01-01 08:00:00', '2024-01-01 08:01:00', "
            " '2024-01-01 08:01:00', 'COMPLETED', 0, 0, 100, NULL)"
        ))
        conn.execute(text(
            "INSERT INTO subtask_progress (run_id, subtask_number, subtask_name, status, start_time, "
            "end_time, last_update, percent_complete, items_total, items_complete) VALUES "
            "('run-index-1', 1, 'Read', 'COMPLETED', '2024-01-01 11:00:00', '2024-01-01 11:05:00', "
            " '2024-01-01 11:05:00', 100, 10, 10), "
            "('run-index-1', 2, 'Tokenize', 'RUNNING', '2024-01-01 11:05:00', NULL, "
            " '2024-01-01 11:10:00', 40, 50, 20), "
            "('run-index-1', 3, 'Write', 'NOT_STARTED', NULL, NULL, NULL, 0, NULL, NULL)"
        ))
        conn.execute(text(
            "INSERT INTO process_metrics (run_id, timestamp, cpu_percent, memory_mb, memory_percent, "
            "child_count, is_alive, collection_error) VALUES "
            "('run-index-1', '2024-01-01 11:10:00', 87.5, 512.0, 12.5, 2, 1, 0)"
        ))
        conn.execute(text(
            f"INSERT INTO {reporter_table} (hostname, process_id, started_at, last_heartbeat, "
            "version, shutdown_requested) VALUES "
            "('node1.example.org', 4242, '2024-01-01 07:00:00', '2024-01-01 11:59:50', '1.0', 0), "
            "('node2', 4343, '2024-01-01 07:00:00', '2024-01-01 11:55:00', '1.0', 0)"
        ))


@pytest.fixture
def seeded_engine(tasker_engine):
    seed_pipeline(tasker_engine)
    return tasker_engine


@pytest.fixture
def seeded_legacy_engine(legacy_engine):
    seed_pipeline(legacy_engine)
    return legacy_engine


@pytest.fixture
def current_reporter_engine(tasker_engine):
    """Seeded database whose reporter table has the current name, reporter_status."""
    with tasker_engine.begin() as conn:
        conn.execute(text("ALTER TABLE process_reporter_status RENAME TO reporter_status"))
    seed_pipeline(tasker_engine, reporter_table="reporter_status")
    return tasker_engine
