# tests/test_cli.py
import pytest

from tasker_monitor.cli import check, main, print_user_message
from tasker_monitor.db.infra.core import dispose_engines


@pytest.fixture(autouse=True)
def _no_tasker_env(monkeypatch):
    for var in ("TASKER_DB_HOST", "TASKER_DB_PORT", "TASKER_DB_NAME", "TASKER_DB_USER",
                "TASKER_DB_PASSWORD", "TASKER_DB_SCHEMA", "TASKER_DB_DRIVER"):
        monkeypatch.delenv(var, raising=False)
    yield
    dispose_engines()


def test_print_user_message_layout(capsys):
    print_user_message("Done.\nignored", action="run this", details="a\nb", verbose=True)
    out = capsys.readouterr().out

    assert out.splitlines() == ["Done.", "", "Actionable:", "  run this", "", "Details:", "  a", "  b"]


def test_print_user_message_quiet(capsys):
    print_user_message("Done.", quiet=True)
    assert capsys.readouterr().out == ""


def test_check_reports_database_summary(seeded_engine, tmp_path, capsys):
    cfg = tmp_path / ".tasker.yml"
    cfg.write_text(f"database:\n  driver: sqlite\n  dbname: {tmp_path / 'tasker.db'}\n", encoding="utf-8")

    assert check(str(cfg), verbose=True) == 0
    out = capsys.readouterr().out
    assert out.startswith("OK: sqlite:")
    assert "Status view: current_task_status_with_metrics" in out
    assert "Stages: 3" in out


def test_check_with_invalid_config(tmp_path, capsys):
    cfg = tmp_path / ".tasker.yml"
    cfg.write_text("database:\n  driver: oracle\n", encoding="utf-8")

    assert check(str(cfg)) == 2
    assert capsys.readouterr().out.startswith("Configuration error.")


def test_main_rejects_missing_config_file(tmp_path):
    with pytest.raises(SystemExit) as ei:
        main(["--config", str(tmp_path / "missing.yml"), "--check"])
    assert "Configuration file not found" in str(ei.value)
