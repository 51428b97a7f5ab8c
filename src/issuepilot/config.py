from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import Literal, cast

from issuepilot.agent_client import AgentClient
from issuepilot.devin_client import DEFAULT_BASE_URL, DevinClient
from issuepilot.mock_agent import MockAgentClient


AgentBackend = Literal["devin", "mock"]
LogVerbosity = Literal["low", "high"]


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 5
    max_poll_attempts: int = 60
    log_verbosity: LogVerbosity | None = None

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class AgentConfig:
    backend: AgentBackend = "devin"
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str = "DEVIN_API_KEY"
    timeout_seconds: int = 30
    idempotent: bool = True


@dataclass(frozen=True)
class MockConfig:
    analysis_seconds: tuple[float, float] = (5.0, 15.0)
    resolution_seconds: tuple[float, float] = (20.0, 60.0)
    seed: int | None = None


@dataclass(frozen=True)
class RepoDefaults:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    agent: AgentConfig
    mock: MockConfig
    repo: RepoDefaults | None = None


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    agent_data = _optional_table(data, "agent") or {}
    mock_data = _optional_table(data, "mock") or {}
    repo_data = _optional_table(data, "repo")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 5),
        max_poll_attempts=_int_with_default(runtime_data, "max_poll_attempts", 60),
        log_verbosity=_optional_log_verbosity(runtime_data, "log_verbosity"),
    )
    if runtime.poll_interval_seconds < 1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 1")
    if runtime.max_poll_attempts < 1:
        raise ConfigError("runtime.max_poll_attempts must be >= 1")

    agent = AgentConfig(
        backend=_parse_backend(agent_data.get("backend", "devin")),
        base_url=_str_with_default(agent_data, "base_url", DEFAULT_BASE_URL).rstrip("/"),
        api_key_env=_str_with_default(agent_data, "api_key_env", "DEVIN_API_KEY"),
        timeout_seconds=_int_with_default(agent_data, "timeout_seconds", 30),
        idempotent=_bool_with_default(agent_data, "idempotent", True),
    )
    if agent.timeout_seconds < 1:
        raise ConfigError("agent.timeout_seconds must be >= 1")

    mock = MockConfig(
        analysis_seconds=_seconds_range_with_default(mock_data, "analysis_seconds", (5.0, 15.0)),
        resolution_seconds=_seconds_range_with_default(
            mock_data, "resolution_seconds", (20.0, 60.0)
        ),
        seed=_optional_int(mock_data, "seed"),
    )

    repo: RepoDefaults | None = None
    if repo_data is not None:
        repo = RepoDefaults(
            owner=_require_str(repo_data, "owner"),
            name=_require_str(repo_data, "name"),
        )

    return AppConfig(runtime=runtime, agent=agent, mock=mock, repo=repo)


def build_agent_client(
    config: AppConfig,
    *,
    environ: Mapping[str, str] | None = None,
) -> AgentClient:
    """Select the agent backend named in config."""
    if config.agent.backend == "mock":
        return MockAgentClient(
            analysis_seconds=config.mock.analysis_seconds,
            resolution_seconds=config.mock.resolution_seconds,
            seed=config.mock.seed,
        )
    env = os.environ if environ is None else environ
    api_key = env.get(config.agent.api_key_env, "").strip()
    if not api_key:
        raise ConfigError(
            f"{config.agent.api_key_env} must be set to use the devin agent backend"
        )
    return DevinClient(
        api_key=api_key,
        base_url=config.agent.base_url,
        timeout_seconds=float(config.agent.timeout_seconds),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer if provided")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _parse_backend(value: object) -> AgentBackend:
    if not isinstance(value, str):
        raise ConfigError("agent.backend must be one of: devin, mock")
    normalized = value.strip().lower()
    if normalized not in {"devin", "mock"}:
        raise ConfigError("agent.backend must be one of: devin, mock")
    return cast(AgentBackend, normalized)


def _optional_log_verbosity(data: dict[str, object], key: str) -> LogVerbosity | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or value.strip().lower() not in {"low", "high"}:
        raise ConfigError(f"{key} must be one of: low, high")
    return cast(LogVerbosity, value.strip().lower())


def _seconds_range_with_default(
    data: dict[str, object], key: str, default: tuple[float, float]
) -> tuple[float, float]:
    value = data.get(key)
    if value is None:
        return default
    if (
        not isinstance(value, list)
        or len(value) != 2
        or not all(isinstance(item, int | float) and not isinstance(item, bool) for item in value)
    ):
        raise ConfigError(f"{key} must be a [min, max] pair of numbers")
    low, high = float(value[0]), float(value[1])
    if low < 0 or high < low:
        raise ConfigError(f"{key} must satisfy 0 <= min <= max")
    return (low, high)
