# tests/test_tasker_config.py
from pathlib import Path

import pytest

from tasker_monitor.tasker_config import (
    TaskerConfigError,
    expand_env_vars,
    find_config_file,
    load_env_config,
    load_tasker_config,
    load_yaml_config,
    merge_configs,
    validate_config,
)


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_find_config_file_walks_up_to_parent(tmp_path):
    cfg = _write(tmp_path / ".tasker.yml", "database: {}\n")
    nested = tmp_path / "a" / "b" / "c"
    nested.mkdir(parents=True)

    assert find_config_file(nested) == cfg.resolve()


def test_find_config_file_prefers_nearest(tmp_path):
    _write(tmp_path / ".tasker.yml", "database: {}\n")
    near = _write(tmp_path / "project" / ".tasker.yml", "database: {}\n")

    assert find_config_file(tmp_path / "project") == near.resolve()


def test_find_config_file_respects_max_depth(tmp_path):
    _write(tmp_path / ".tasker.yml", "database: {}\n")
    nested = tmp_path / "a" / "b" / "c"
    nested.mkdir(parents=True)

    assert find_config_file(nested, max_depth=2) is None


def test_expand_env_vars_recurses_and_blanks_unset():
    data = {"database": {"password": "${PW}", "hosts": ["${HOST}", "x"]}, "n": 5}
    out = expand_env_vars(data, {"PW": "secret"})

    assert out == {"database": {"password": "secret", "hosts": ["", "x"]}, "n": 5}


def test_load_yaml_config_expands_environment(tmp_path):
    cfg = _write(
        tmp_path / ".tasker.yml",
        "database:\n  host: db.example.org\n  password: ${TASKER_PW}\n",
    )
    data = load_yaml_config(cfg, {"TASKER_PW": "pw"})

    assert data["database"] == {"host": "db.example.org", "password": "pw"}


def test_load_yaml_config_reports_parse_errors(tmp_path):
    cfg = _write(tmp_path / ".tasker.yml", "database: [unclosed\n")

    with pytest.raises(TaskerConfigError) as ei:
        load_yaml_config(cfg, {})
    assert ".tasker.yml" in str(ei.value)


def test_load_env_config_coerces_port():
    env = {"TASKER_DB_HOST": "h", "TASKER_DB_PORT": "6543", "TASKER_DB_NAME": "d", "OTHER": "x"}
    assert load_env_config(env) == {"database": {"host": "h", "port": 6543, "dbname": "d"}}


def test_load_env_config_rejects_bad_port():
    with pytest.raises(TaskerConfigError):
        load_env_config({"TASKER_DB_PORT": "abc"})


def test_merge_configs_none_never_overwrites():
    base = {"database": {"host": "a", "port": 1}, "monitor": {"refresh_interval": 5}}
    merged = merge_configs(base, {"database": {"host": None, "port": 2}})

    assert merged["database"] == {"host": "a", "port": 2}
    assert base["database"]["port"] == 1


@pytest.mark.parametrize(
    "database, message",
    [
        ({"driver": "oracle"}, "Invalid driver"),
        ({"driver": "sqlite"}, "dbname"),
        ({"driver": "postgresql", "host": "h", "port": 5432, "dbname": "d"}, "user"),
        ({"driver": "mysql", "host": "h", "port": 70000, "dbname": "d", "user": "u"}, "Invalid port"),
    ],
)
def test_validate_config_rejects(database, message):
    with pytest.raises(TaskerConfigError) as ei:
        validate_config({"database": database})
    assert message in str(ei.value)


@pytest.mark.parametrize(
    "monitor, message",
    [
        ("every 5s", "'monitor' section"),
        ({"min_query_interval": "abc"}, "Invalid min_query_interval"),
        ({"min_query_interval": -1}, "must not be negative"),
        ({"exclude_stages": "TEST"}, "Invalid exclude_stages"),
    ],
)
def test_validate_config_rejects_monitor_settings(monitor, message):
    with pytest.raises(TaskerConfigError) as ei:
        validate_config({"database": {"driver": "sqlite", "dbname": "t.db"}, "monitor": monitor})
    assert message.lower() in str(ei.value).lower()


def test_bad_monitor_setting_in_file_is_a_config_error(tmp_path):
    config_file = _write(
        tmp_path / ".tasker.yml",
        "database:\n  driver: sqlite\n  dbname: t.db\nmonitor:\n  min_query_interval: abc\n",
    )
    with pytest.raises(TaskerConfigError):
        load_tasker_config(config_file=config_file, environ={})


def test_load_tasker_config_without_any_source_fails(tmp_path):
    with pytest.raises(TaskerConfigError) as ei:
        load_tasker_config(start_dir=tmp_path, environ={})
    assert "No tasker configuration found" in str(ei.value)


def test_load_tasker_config_from_discovered_file(tmp_path):
    _write(
        tmp_path / ".tasker.yml",
        "database:\n"
        "  driver: sqlite\n"
        "  dbname: /data/tasker.db\n"
        "monitor:\n"
        "  refresh_interval: 500\n"
        "  min_query_interval: 2\n"
        "  exclude_stages: [QA]\n"
        "logging:\n"
        "  log_dir: /var/log/tasker\n",
    )
    workdir = tmp_path / "scripts"
    workdir.mkdir()

    config = load_tasker_config(start_dir=workdir, environ={})

    assert config.database.driver == "sqlite"
    assert config.database.dbname == "/data/tasker.db"
    assert not config.database.uses_schema
    assert config.refresh_interval == 60
    assert config.min_query_interval == 2.0
    assert config.exclude_stages == ("QA",)
    assert config.log_dir == "/var/log/tasker"
    assert config.loaded_from == (tmp_path / ".tasker.yml").resolve()


def test_environment_and_overrides_win_over_file(tmp_path):
    cfg = _write(
        tmp_path / ".tasker.yml",
        "database:\n  host: file-host\n  dbname: filedb\n  user: fileuser\n",
    )
    env = {"TASKER_DB_HOST": "env-host", "TASKER_DB_PORT": "5433"}

    config = load_tasker_config(config_file=cfg, environ=env, dbname="override")

    assert config.database.host == "env-host"
    assert config.database.port == 5433
    assert config.database.dbname == "override"
    assert config.database.user == "fileuser"
    assert config.database.uses_schema
    assert config.exclude_stages == ("TEST",)


def test_environment_alone_is_enough(tmp_path):
    env = {"TASKER_DB_HOST": "h", "TASKER_DB_NAME": "d", "TASKER_DB_USER": "u"}
    config = load_tasker_config(start_dir=tmp_path, environ=env)

    assert config.loaded_from is None
    assert config.database.describe() == "u@h:5432/d"


def test_missing_explicit_file_is_an_error(tmp_path):
    with pytest.raises(TaskerConfigError):
        load_tasker_config(config_file=tmp_path / "nope.yml", environ={})
