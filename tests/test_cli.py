from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from issuepilot import cli
from issuepilot.config import AgentConfig, AppConfig, MockConfig, RepoDefaults, RuntimeConfig
from issuepilot.engine import SessionEngine
from issuepilot.errors import SessionNotFound
from issuepilot.mock_agent import MockAgentClient
from issuepilot.models import Issue, Label
from issuepilot.state import StateStore


def _app_config(tmp_path: Path, *, repo: RepoDefaults | None = None) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(
            base_dir=tmp_path / "state",
            poll_interval_seconds=0,
            max_poll_attempts=5,
        ),
        agent=AgentConfig(backend="mock"),
        mock=MockConfig(),
        repo=repo or RepoDefaults(owner="acme", name="widgets"),
    )


def _issue() -> Issue:
    return Issue(
        issue_id=1001,
        number=7,
        owner="acme",
        repo="widgets",
        title="Fix parser crash",
        body="The parser errors on empty input",
        state="open",
        labels=(Label(name="bug", color="d73a4a"),),
        html_url="https://github.com/acme/widgets/issues/7",
        created_at="2024-01-01T00:00:00Z",
        updated_at="2024-01-02T00:00:00Z",
    )


class FakeGitHub:
    def get_issue(self, owner: str, repo: str, number: int) -> Issue:
        assert (owner, repo, number) == ("acme", "widgets", 7)
        return _issue()

    def list_issues(
        self, owner: str, repo: str, *, state: str = "open", page: int = 1, per_page: int = 30
    ) -> list[Issue]:
        return [_issue()]


def _engine(tmp_path: Path) -> SessionEngine:
    # Zero processing time: every session finishes on its first read.
    return SessionEngine(
        store=StateStore(tmp_path / "state" / "state.db"),
        agent=MockAgentClient(analysis_seconds=(0.0, 0.0), resolution_seconds=(0.0, 0.0), seed=5),
        issues=FakeGitHub(),  # type: ignore[arg-type]
    )


def _run_main(
    monkeypatch: pytest.MonkeyPatch,
    cfg: AppConfig,
    engine: SessionEngine,
    **args: object,
) -> None:
    namespace = SimpleNamespace(config=Path("cfg.toml"), verbose=False, **args)

    class FakeParser:
        def parse_args(self) -> SimpleNamespace:
            return namespace

    monkeypatch.setattr(cli, "build_parser", lambda: FakeParser())
    monkeypatch.setattr(cli, "load_config", lambda p: cfg)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose, state_dir=None: None)
    monkeypatch.setattr(cli, "_build_engine", lambda c: engine)
    cli.main()


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_init = parser.parse_args(["init", "--verbose"])
    parsed_analyze = parser.parse_args(["analyze", "7", "--repo", "acme/widgets", "--wait"])
    parsed_resolve = parser.parse_args(["resolve", "s-1", "--prompt-file", "p.md"])
    parsed_history = parser.parse_args(["history", "--kind", "analysis", "--limit", "5", "--json"])
    parsed_tui = parser.parse_args(["tui", "--refresh-seconds", "2"])

    assert parsed_init.command == "init"
    assert parsed_init.verbose is True
    assert parsed_init.config == Path("issuepilot.toml")
    assert parsed_analyze.issue_number == 7
    assert parsed_analyze.repo == "acme/widgets"
    assert parsed_analyze.wait is True
    assert parsed_resolve.prompt_file == Path("p.md")
    assert parsed_resolve.show_prompt is False
    assert parsed_history.kind == "analysis"
    assert parsed_history.limit == 5
    assert parsed_history.json is True
    assert parsed_tui.refresh_seconds == 2.0

    with pytest.raises(SystemExit):
        parser.parse_args(["history", "--status", "stopped"])


def test_main_dispatches_init(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)

    class FakeParser:
        def parse_args(self) -> SimpleNamespace:
            return SimpleNamespace(command="init", config=Path("cfg.toml"), verbose=True)

    called: dict[str, object] = {}
    monkeypatch.setattr(cli, "build_parser", lambda: FakeParser())
    monkeypatch.setattr(cli, "load_config", lambda p: cfg)
    monkeypatch.setattr(
        cli,
        "configure_logging",
        lambda verbose, state_dir=None: called.setdefault("logging", (verbose, state_dir)),
    )
    monkeypatch.setattr(cli, "_cmd_init", lambda c: called.setdefault("init", c))

    cli.main()
    assert called["logging"] == (True, tmp_path / "state")
    assert called["init"] == cfg


def test_cmd_init_creates_state_db(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _app_config(tmp_path)

    cli._cmd_init(cfg)

    assert cfg.runtime.state_db_path.exists()
    out = capsys.readouterr().out
    assert "Initialized issuepilot base dir" in out
    assert "Agent backend: mock" in out


def test_analyze_and_resolve_flow(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)

    _run_main(monkeypatch, cfg, engine, command="analyze", issue_number=7, repo=None, wait=True)
    out = capsys.readouterr().out
    analysis_id = engine.list_sessions(kind="analysis")[0].session_id
    assert f"Started analysis session: {analysis_id}" in out
    assert "status=finished" in out
    assert "type=bug" in out
    assert f"issuepilot resolve {analysis_id}" in out

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="resolve",
        analysis_session_id=analysis_id,
        prompt_file=None,
        show_prompt=True,
        wait=False,
    )
    assert "Resolve this GitHub issue" in capsys.readouterr().out

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="resolve",
        analysis_session_id=analysis_id,
        prompt_file=None,
        show_prompt=False,
        wait=True,
    )
    out = capsys.readouterr().out
    assert "Started resolution session:" in out
    assert "pull_request_url=https://github.com/acme/widgets/pull/" in out

    resolution_id = engine.list_sessions(kind="resolution")[0].session_id
    _run_main(monkeypatch, cfg, engine, command="status", session_id=resolution_id, json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload["session_id"] == resolution_id
    assert payload["status"] == "finished"
    assert payload["parent_session_id"] == analysis_id
    assert payload["messages"][0]["origin"] == "operator"

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="history",
        kind=None,
        status=None,
        issue=7,
        repo="acme/widgets",
        limit=20,
        json=True,
    )
    history = json.loads(capsys.readouterr().out)
    assert [row["kind"] for row in history] == ["resolution", "analysis"]
    assert history[1]["confidence_score"] is not None


def test_resolve_with_prompt_file(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)
    _run_main(monkeypatch, cfg, engine, command="analyze", issue_number=7, repo=None, wait=True)
    analysis_id = engine.list_sessions(kind="analysis")[0].session_id
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("Resolve with a minimal patch.", encoding="utf-8")

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="resolve",
        analysis_session_id=analysis_id,
        prompt_file=prompt_file,
        show_prompt=False,
        wait=False,
    )

    record = engine.list_sessions(kind="resolution")[0]
    assert record.prompt == "Resolve with a minimal patch."
    assert record.prompt_overridden is True
    assert "Started resolution session" in capsys.readouterr().out


def test_issues_and_history_text_output(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="issues",
        repo=None,
        state="open",
        page=1,
        per_page=30,
        json=False,
    )
    assert "#7 [open] Fix parser crash labels=bug" in capsys.readouterr().out

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="issues",
        repo="https://github.com/acme/widgets",
        state="open",
        page=1,
        per_page=30,
        json=True,
    )
    issues = json.loads(capsys.readouterr().out)
    assert issues[0]["repo"] == "acme/widgets"
    assert issues[0]["labels"] == ["bug"]

    _run_main(
        monkeypatch,
        cfg,
        engine,
        command="history",
        kind=None,
        status=None,
        issue=None,
        repo=None,
        limit=20,
        json=False,
    )
    assert "No sessions recorded." in capsys.readouterr().out


def test_message_and_retry_commands(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)
    _run_main(monkeypatch, cfg, engine, command="analyze", issue_number=7, repo=None, wait=False)
    analysis_id = engine.list_sessions()[0].session_id
    capsys.readouterr()

    _run_main(monkeypatch, cfg, engine, command="message", session_id=analysis_id, text="Any news?")
    assert f"session_id={analysis_id}" in capsys.readouterr().out
    assert engine.describe_session(analysis_id).messages[-1].text == "Any news?"

    with pytest.raises(SystemExit, match="only blocked or expired sessions can be retried"):
        _run_main(monkeypatch, cfg, engine, command="retry", session_id=analysis_id, wait=False)


def test_main_reports_lifecycle_errors(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)

    with pytest.raises(SystemExit, match="error: Session missing not found"):
        _run_main(monkeypatch, cfg, engine, command="wait", session_id="missing")

    def fail(config: AppConfig, args: SimpleNamespace) -> None:
        raise SessionNotFound("other")

    monkeypatch.setattr(cli, "_dispatch", fail)
    with pytest.raises(SystemExit, match="Session other not found"):
        _run_main(monkeypatch, cfg, engine, command="status", session_id="other", json=False)


def test_repo_is_required_without_default(tmp_path: Path) -> None:
    cfg = AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path),
        agent=AgentConfig(),
        mock=MockConfig(),
    )
    with pytest.raises(cli.ConfigError, match="--repo is required"):
        cli._resolve_repo(cfg, None)
    with pytest.raises(cli.ConfigError, match="Invalid GitHub repository reference"):
        cli._resolve_repo(cfg, "nope")
    assert cli._resolve_repo(cfg, "acme/widgets").full_name == "acme/widgets"


def test_tui_command_runs_history_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    engine = _engine(tmp_path)
    called: dict[str, object] = {}

    def fake_run_history_tui(**kwargs: object) -> None:
        called.update(kwargs)

    monkeypatch.setattr(cli, "run_history_tui", fake_run_history_tui)
    _run_main(monkeypatch, cfg, engine, command="tui", refresh_seconds=2.0, limit=50)

    assert called == {"engine": engine, "refresh_seconds": 2.0, "row_limit": 50}


def test_history_does_not_need_agent_credentials(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("ISSUEPILOT_TEST_API_KEY", raising=False)
    cfg = AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path / "state"),
        agent=AgentConfig(backend="devin", api_key_env="ISSUEPILOT_TEST_API_KEY"),
        mock=MockConfig(),
        repo=RepoDefaults(owner="acme", name="widgets"),
    )

    cli._dispatch(
        cfg,
        SimpleNamespace(
            command="history", kind=None, status=None, issue=None, repo=None, limit=20, json=False
        ),
    )
    assert "No sessions recorded." in capsys.readouterr().out

    lazy = cli._LazyAgentClient(cfg)
    lazy.close()
    with pytest.raises(cli.ConfigError, match="ISSUEPILOT_TEST_API_KEY must be set"):
        lazy.get_session("s-1")


def test_dispatch_closes_agent_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = _app_config(tmp_path)
    built: list[ClosingAgent] = []

    class ClosingAgent(MockAgentClient):
        def __init__(self) -> None:
            super().__init__(analysis_seconds=(0.0, 0.0), resolution_seconds=(0.0, 0.0), seed=5)
            self.closed = 0
            self.fail_reads = False

        def get_session(self, session_id: str):  # type: ignore[no-untyped-def]
            if self.fail_reads:
                raise RuntimeError("connection reset")
            return super().get_session(session_id)

        def close(self) -> None:
            self.closed += 1

    def fake_build_agent_client(config: AppConfig) -> ClosingAgent:
        agent = ClosingAgent()
        built.append(agent)
        return agent

    monkeypatch.setattr(cli, "build_agent_client", fake_build_agent_client)
    monkeypatch.setattr(cli, "GitHubGateway", FakeGitHub)

    cli._dispatch(cfg, SimpleNamespace(command="analyze", issue_number=7, repo=None, wait=False))
    assert len(built) == 1
    assert built[0].closed == 1

    session_id = StateStore(cfg.runtime.state_db_path).list_all()[0].session_id

    def failing_build(config: AppConfig) -> ClosingAgent:
        agent = fake_build_agent_client(config)
        agent.fail_reads = True
        return agent

    monkeypatch.setattr(cli, "build_agent_client", failing_build)
    with pytest.raises(RuntimeError, match="connection reset"):
        cli._dispatch(cfg, SimpleNamespace(command="status", session_id=session_id, json=False))
    assert built[1].closed == 1
