"""Tests for settings loading"""
from pathlib import Path

from loopwork.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("LOOPWORK_DATA_DIR", raising=False)
    settings = Settings(_env_file=None)
    assert settings.loop_api_timeout_ms == 10000
    assert settings.loop_file_settle_seconds == 0.2
    assert settings.agent_url == "http://127.0.0.1:18791"
    assert settings.resolved_database_path.endswith("threads.db")


def test_env_aliases(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPWORK_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LOOPWORK_API_TIMEOUT_MS", "2500")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    settings = Settings(_env_file=None)

    assert settings.loop_api_timeout_ms == 2500
    assert settings.log_level == "DEBUG"
    assert settings.resolved_socket_path == str(tmp_path / "daemon.sock")


def test_yaml_round_trip(tmp_path):
    path = tmp_path / "conf" / "config.yaml"
    Settings(_env_file=None, agent_url="http://agent:9000", loop_api_timeout_ms=500).to_file(str(path))

    loaded = Settings.from_file(str(path))

    assert Path(path).exists()
    assert loaded.agent_url == "http://agent:9000"
    assert loaded.loop_api_timeout_ms == 500
