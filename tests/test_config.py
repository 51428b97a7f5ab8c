from __future__ import annotations

from pathlib import Path

import pytest

from issuepilot import config
from issuepilot.config import AppConfig, ConfigError, MockConfig
from issuepilot.devin_client import DEFAULT_BASE_URL, DevinClient
from issuepilot.mock_agent import MockAgentClient


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_reads_all_sections(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "issuepilot.toml",
        """
[runtime]
base_dir = "~/tmp/issuepilot"
poll_interval_seconds = 10
max_poll_attempts = 30
log_verbosity = "LOW"

[agent]
backend = "mock"
base_url = "https://devin.example/v1/"
api_key_env = "MY_DEVIN_KEY"
timeout_seconds = 45
idempotent = false

[mock]
analysis_seconds = [1, 2.5]
resolution_seconds = [3, 4]
seed = 42

[repo]
owner = "acme"
name = "widgets"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert isinstance(loaded, AppConfig)
    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/issuepilot")
    assert loaded.runtime.state_db_path.name == "state.db"
    assert loaded.runtime.poll_interval_seconds == 10
    assert loaded.runtime.max_poll_attempts == 30
    assert loaded.runtime.log_verbosity == "low"
    assert loaded.agent.backend == "mock"
    assert loaded.agent.base_url == "https://devin.example/v1"
    assert loaded.agent.api_key_env == "MY_DEVIN_KEY"
    assert loaded.agent.timeout_seconds == 45
    assert loaded.agent.idempotent is False
    assert loaded.mock == MockConfig(
        analysis_seconds=(1.0, 2.5), resolution_seconds=(3.0, 4.0), seed=42
    )
    assert loaded.repo is not None
    assert loaded.repo.full_name == "acme/widgets"


def test_load_config_defaults(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "issuepilot.toml", '[runtime]\nbase_dir = "/tmp/ip"\n')

    loaded = config.load_config(cfg_path)

    assert loaded.runtime.poll_interval_seconds == 5
    assert loaded.runtime.max_poll_attempts == 60
    assert loaded.runtime.log_verbosity is None
    assert loaded.agent.backend == "devin"
    assert loaded.agent.base_url == DEFAULT_BASE_URL
    assert loaded.agent.api_key_env == "DEVIN_API_KEY"
    assert loaded.agent.idempotent is True
    assert loaded.mock == MockConfig()
    assert loaded.repo is None


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("", r"\[runtime\] is required"),
        ("runtime = 3", r"\[runtime\] is required"),
        ("[runtime]\nbase_dir = ''", "base_dir is required"),
        ("[runtime]\nbase_dir = '/x'\npoll_interval_seconds = 0", "poll_interval_seconds must be >= 1"),
        ("[runtime]\nbase_dir = '/x'\npoll_interval_seconds = true", "poll_interval_seconds must be an integer"),
        ("[runtime]\nbase_dir = '/x'\nmax_poll_attempts = 0", "max_poll_attempts must be >= 1"),
        ("[runtime]\nbase_dir = '/x'\nlog_verbosity = 'loud'", "log_verbosity must be one of"),
        ("[runtime]\nbase_dir = '/x'\n[agent]\nbackend = 'openai'", "agent.backend must be one of"),
        ("[runtime]\nbase_dir = '/x'\n[agent]\ntimeout_seconds = 0", "timeout_seconds must be >= 1"),
        ("[runtime]\nbase_dir = '/x'\n[agent]\nidempotent = 'yes'", "idempotent must be a boolean"),
        ("[runtime]\nbase_dir = '/x'\n[agent]\nbase_url = ''", "base_url must be a non-empty string"),
        ("agent = 'devin'\n[runtime]\nbase_dir = '/x'", r"\[agent\] must be a TOML table"),
        ("[runtime]\nbase_dir = '/x'\n[mock]\nanalysis_seconds = [1]", "analysis_seconds must be a"),
        ("[runtime]\nbase_dir = '/x'\n[mock]\nanalysis_seconds = [5, 1]", "0 <= min <= max"),
        ("[runtime]\nbase_dir = '/x'\n[mock]\nseed = 'abc'", "seed must be an integer"),
        ("[runtime]\nbase_dir = '/x'\n[repo]\nowner = 'acme'", "name is required"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, content: str, message: str) -> None:
    cfg_path = _write(tmp_path / "issuepilot.toml", content)
    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)


def _app_config(tmp_path: Path, *, backend: str) -> AppConfig:
    cfg_path = _write(
        tmp_path / "issuepilot.toml",
        f"[runtime]\nbase_dir = '{tmp_path}'\n[agent]\nbackend = '{backend}'\n",
    )
    return config.load_config(cfg_path)


def test_build_agent_client_selects_backend(tmp_path: Path) -> None:
    mock_client = config.build_agent_client(_app_config(tmp_path, backend="mock"), environ={})
    assert isinstance(mock_client, MockAgentClient)

    devin_config = _app_config(tmp_path, backend="devin")
    with pytest.raises(ConfigError, match="DEVIN_API_KEY must be set"):
        config.build_agent_client(devin_config, environ={"DEVIN_API_KEY": "  "})

    devin_client = config.build_agent_client(devin_config, environ={"DEVIN_API_KEY": "key"})
    assert isinstance(devin_client, DevinClient)
    devin_client.close()
