import json
import logging
import os

from taskrelay.core import logging_config
from taskrelay.core.config import Settings
from taskrelay.core.constants import HEARTBEAT_INTERVAL, SessionTimings


def test_settings_defaults(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("TASKRELAY_"):
            monkeypatch.delenv(key)
    settings = Settings.from_env()
    assert settings.agent_url == "http://127.0.0.1:3000"
    assert settings.registry_port == 18791
    assert settings.registry_url == "http://127.0.0.1:18791"
    assert settings.instance_id == "terminal-1"
    assert settings.log_dir.endswith(os.path.join(".taskrelay", ".logs"))
    assert settings.clear_logs_on_launch is False


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_REGISTRY_PORT", "9000")
    monkeypatch.delenv("TASKRELAY_REGISTRY_URL", raising=False)
    monkeypatch.setenv("TASKRELAY_AGENT_URL", "http://agent:1")
    monkeypatch.setenv("TASKRELAY_PROJECT_PATH", "/p")
    monkeypatch.setenv("TASKRELAY_CLEAR_LOGS_ON_LAUNCH", "yes")
    settings = Settings.from_env()
    assert settings.registry_url == "http://127.0.0.1:9000"
    assert settings.agent_url == "http://agent:1"
    assert settings.project_path == "/p"
    assert settings.clear_logs_on_launch is True


def test_session_timings_default_to_constants() -> None:
    timings = SessionTimings()
    assert timings.heartbeat_interval == HEARTBEAT_INTERVAL == 120
    assert timings.build_cache_capacity == 200
    assert timings.tool_result_preview_chars == 200


def test_setup_logging_writes_files(tmp_path) -> None:
    log_dir = tmp_path / "logs"
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        logging_config.setup_logging(str(log_dir), "debug")
        assert logging_config.get_log_dir() == str(log_dir)
        logging.getLogger("taskrelay.test").info("hello file")
        logging_config.log_registry_call("start", task_id="t1", session_id="s1", duration_ms=12.345)
        for handler in root.handlers + logging_config.registry_call_logger.handlers:
            handler.flush()

        assert "hello file" in (log_dir / "taskrelay.log").read_text(encoding="utf-8")
        record = json.loads((log_dir / "registry-calls.log").read_text(encoding="utf-8").strip())
        assert record["action"] == "start"
        assert record["task_id"] == "t1"
        assert record["duration_ms"] == 12.3
    finally:
        for handler in root.handlers + logging_config.registry_call_logger.handlers:
            handler.close()
        logging_config.registry_call_logger.handlers.clear()
        logging_config.registry_call_logger.propagate = True
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
        logging_config._log_dir = None


def test_clear_logs(tmp_path) -> None:
    (tmp_path / "taskrelay.log").write_text("x")
    (tmp_path / "taskrelay.log.1").write_text("x")
    (tmp_path / "keep.txt").write_text("x")
    logging_config.clear_logs(str(tmp_path))
    assert sorted(p.name for p in tmp_path.iterdir()) == ["keep.txt"]
