from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import cast

from issuepilot.agent_client import AgentClient, AgentSessionSnapshot
from issuepilot.config import AppConfig, ConfigError, build_agent_client, load_config
from issuepilot.engine import SessionEngine
from issuepilot.errors import IssuePilotError
from issuepilot.github_gateway import GitHubGateway, IssueListState, RepoRef, parse_repo_ref
from issuepilot.history_tui import run_history_tui
from issuepilot.models import (
    AnalysisResult,
    CanonicalStatus,
    Issue,
    ResolutionResult,
    SessionKind,
    SessionRecord,
    SessionView,
    StartResult,
)
from issuepilot.observability import configure_logging
from issuepilot.polling import wait_for_terminal
from issuepilot.results import confidence_level, recommends_resolution
from issuepilot.state import StateStore


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("issuepilot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="issuepilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the base dir and state DB")
    _add_common_arguments(init_parser)

    issues_parser = subparsers.add_parser("issues", help="List repository issues and cache them")
    _add_common_arguments(issues_parser)
    issues_parser.add_argument("--repo", type=str, help="owner/name or GitHub URL")
    issues_parser.add_argument("--state", choices=("open", "closed", "all"), default="open")
    issues_parser.add_argument("--page", type=int, default=1)
    issues_parser.add_argument("--per-page", type=int, default=30)
    issues_parser.add_argument("--json", action="store_true", help="Print issues as JSON")

    analyze_parser = subparsers.add_parser("analyze", help="Start an analysis session for an issue")
    _add_common_arguments(analyze_parser)
    analyze_parser.add_argument("issue_number", type=int)
    analyze_parser.add_argument("--repo", type=str, help="owner/name or GitHub URL")
    analyze_parser.add_argument(
        "--wait", action="store_true", help="Poll until the session is terminal"
    )

    resolve_parser = subparsers.add_parser(
        "resolve", help="Start a resolution session from a finished analysis"
    )
    _add_common_arguments(resolve_parser)
    resolve_parser.add_argument("analysis_session_id", type=str)
    resolve_parser.add_argument(
        "--prompt-file",
        type=Path,
        help="Send the prompt in this file instead of the default resolution prompt",
    )
    resolve_parser.add_argument(
        "--show-prompt",
        action="store_true",
        help="Print the default resolution prompt and exit",
    )
    resolve_parser.add_argument(
        "--wait", action="store_true", help="Poll until the session is terminal"
    )

    status_parser = subparsers.add_parser("status", help="Reconcile and show one session")
    _add_common_arguments(status_parser)
    status_parser.add_argument("session_id", type=str)
    status_parser.add_argument("--json", action="store_true", help="Print the session as JSON")

    wait_parser = subparsers.add_parser("wait", help="Poll a session until it is terminal")
    _add_common_arguments(wait_parser)
    wait_parser.add_argument("session_id", type=str)

    retry_parser = subparsers.add_parser(
        "retry", help="Start a new session in place of a blocked or expired one"
    )
    _add_common_arguments(retry_parser)
    retry_parser.add_argument("session_id", type=str)
    retry_parser.add_argument(
        "--wait", action="store_true", help="Poll until the new session is terminal"
    )

    message_parser = subparsers.add_parser("message", help="Send a message to a session")
    _add_common_arguments(message_parser)
    message_parser.add_argument("session_id", type=str)
    message_parser.add_argument("text", type=str)

    history_parser = subparsers.add_parser("history", help="List recorded sessions")
    _add_common_arguments(history_parser)
    history_parser.add_argument("--kind", choices=("analysis", "resolution"))
    history_parser.add_argument("--status", choices=("running", "blocked", "finished", "expired"))
    history_parser.add_argument("--issue", type=int, help="Issue number (uses --repo)")
    history_parser.add_argument("--repo", type=str, help="owner/name or GitHub URL")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.add_argument("--json", action="store_true", help="Print sessions as JSON")

    tui_parser = subparsers.add_parser("tui", help="Browse session history interactively")
    _add_common_arguments(tui_parser)
    tui_parser.add_argument("--refresh-seconds", type=float, default=5.0)
    tui_parser.add_argument("--limit", type=int, default=100)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(
        True if args.verbose else config.runtime.log_verbosity,
        state_dir=config.runtime.base_dir,
    )

    try:
        _dispatch(config, args)
    except (IssuePilotError, ConfigError) as exc:
        raise SystemExit(f"error: {exc}") from exc


def _dispatch(config: AppConfig, args: argparse.Namespace) -> None:
    if args.command == "init":
        _cmd_init(config)
        return
    engine = _build_engine(config)
    try:
        _run_engine_command(config, engine, args)
    finally:
        engine.close()


def _run_engine_command(
    config: AppConfig, engine: SessionEngine, args: argparse.Namespace
) -> None:
    if args.command == "issues":
        _cmd_issues(
            engine,
            repo=_resolve_repo(config, args.repo),
            state=cast(IssueListState, args.state),
            page=int(args.page),
            per_page=int(args.per_page),
            as_json=bool(args.json),
        )
        return
    if args.command == "analyze":
        _cmd_analyze(
            config,
            engine,
            repo=_resolve_repo(config, args.repo),
            issue_number=int(args.issue_number),
            wait=bool(args.wait),
        )
        return
    if args.command == "resolve":
        _cmd_resolve(
            config,
            engine,
            analysis_session_id=str(args.analysis_session_id),
            prompt_file=args.prompt_file,
            show_prompt=bool(args.show_prompt),
            wait=bool(args.wait),
        )
        return
    if args.command == "status":
        _cmd_status(engine, session_id=str(args.session_id), as_json=bool(args.json))
        return
    if args.command == "wait":
        _print_view(_wait(config, engine, str(args.session_id)))
        return
    if args.command == "retry":
        _cmd_retry(config, engine, session_id=str(args.session_id), wait=bool(args.wait))
        return
    if args.command == "message":
        _print_view(engine.send_message(str(args.session_id), str(args.text)))
        return
    if args.command == "history":
        _cmd_history(config, engine, args)
        return
    if args.command == "tui":
        run_history_tui(
            engine=engine,
            refresh_seconds=float(args.refresh_seconds),
            row_limit=int(args.limit),
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)
    print(f"Initialized issuepilot base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    print(f"Agent backend: {config.agent.backend}")


def _cmd_issues(
    engine: SessionEngine,
    *,
    repo: RepoRef,
    state: IssueListState,
    page: int,
    per_page: int,
    as_json: bool,
) -> None:
    issues = engine.list_issues(repo.owner, repo.name, state=state, page=page, per_page=per_page)
    if as_json:
        print(json.dumps([_issue_payload(issue) for issue in issues], indent=2))
        return
    if not issues:
        print(f"No {state} issues in {repo.full_name}.")
        return
    for issue in issues:
        labels = ",".join(issue.label_names) or "-"
        print(f"#{issue.number} [{issue.state}] {issue.title} labels={labels}")


def _cmd_analyze(
    config: AppConfig,
    engine: SessionEngine,
    *,
    repo: RepoRef,
    issue_number: int,
    wait: bool,
) -> None:
    issue = engine.refresh_issue(repo.owner, repo.name, issue_number)
    started = engine.start_analysis(issue)
    _print_start(started)
    if wait:
        _print_view(_wait(config, engine, started.session_id))


def _cmd_resolve(
    config: AppConfig,
    engine: SessionEngine,
    *,
    analysis_session_id: str,
    prompt_file: Path | None,
    show_prompt: bool,
    wait: bool,
) -> None:
    if show_prompt:
        print(engine.resolution_prompt_template(analysis_session_id))
        return
    prompt_override = prompt_file.read_text(encoding="utf-8") if prompt_file is not None else None
    started = engine.start_resolution(analysis_session_id, prompt_override=prompt_override)
    _print_start(started)
    if wait:
        _print_view(_wait(config, engine, started.session_id))


def _cmd_status(engine: SessionEngine, *, session_id: str, as_json: bool) -> None:
    view = engine.get_status(session_id)
    if as_json:
        payload = _session_payload(view.session)
        payload["messages"] = [
            {
                "position": message.position,
                "timestamp": message.timestamp,
                "origin": message.origin,
                "text": message.text,
            }
            for message in view.messages
        ]
        print(json.dumps(payload, indent=2))
        return
    _print_view(view)


def _cmd_retry(config: AppConfig, engine: SessionEngine, *, session_id: str, wait: bool) -> None:
    started = engine.retry(session_id)
    _print_start(started)
    if wait:
        _print_view(_wait(config, engine, started.session_id))


def _cmd_history(config: AppConfig, engine: SessionEngine, args: argparse.Namespace) -> None:
    issue_id: int | None = None
    if args.issue is not None:
        repo = _resolve_repo(config, args.repo)
        cached = engine.cached_issue(repo.owner, repo.name, int(args.issue))
        if cached is None:
            print(f"No cached issue {repo.full_name}#{args.issue}.")
            return
        issue_id = cached.issue_id
    sessions = engine.list_sessions(
        kind=cast(SessionKind | None, args.kind),
        status=cast(CanonicalStatus | None, args.status),
        issue_id=issue_id,
        limit=int(args.limit),
    )
    if args.json:
        print(json.dumps([_session_payload(record) for record in sessions], indent=2))
        return
    if not sessions:
        print("No sessions recorded.")
        return
    for record in sessions:
        confidence = record.confidence_score if record.confidence_score is not None else "-"
        print(
            f"session_id={record.session_id} kind={record.kind or '-'} status={record.status} "
            f"issue_id={record.issue_id} confidence={confidence} created_at={record.created_at}"
        )


class _LazyAgentClient(AgentClient):
    """Builds the configured backend on first use.

    history and tui only read the state DB, so they must not need agent
    credentials.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._client: AgentClient | None = None

    def create_session(self, prompt: str, *, idempotent: bool) -> AgentSessionSnapshot:
        return self._require_client().create_session(prompt, idempotent=idempotent)

    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        return self._require_client().get_session(session_id)

    def send_message(self, session_id: str, message: str) -> AgentSessionSnapshot:
        return self._require_client().send_message(session_id, message)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _require_client(self) -> AgentClient:
        if self._client is None:
            self._client = build_agent_client(self._config)
        return self._client


def _build_engine(config: AppConfig) -> SessionEngine:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    return SessionEngine(
        store=StateStore(config.runtime.state_db_path),
        agent=_LazyAgentClient(config),
        issues=GitHubGateway(),
        idempotent=config.agent.idempotent,
    )


def _wait(config: AppConfig, engine: SessionEngine, session_id: str) -> SessionView:
    def _progress(view: SessionView) -> None:
        print(f"session_id={view.session_id} status={view.status}", flush=True)

    return wait_for_terminal(
        engine.get_status,
        session_id,
        interval_seconds=float(config.runtime.poll_interval_seconds),
        max_attempts=config.runtime.max_poll_attempts,
        on_update=_progress,
    )


def _resolve_repo(config: AppConfig, raw_repo: str | None) -> RepoRef:
    if raw_repo is not None:
        try:
            return parse_repo_ref(raw_repo)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    if config.repo is None:
        raise ConfigError("--repo is required when [repo] is not configured")
    return RepoRef(owner=config.repo.owner, name=config.repo.name)


def _print_start(started: StartResult) -> None:
    if started.already_running:
        print(f"A {started.kind} session is already running: {started.session_id}")
        return
    print(f"Started {started.kind} session: {started.session_id}")


def _print_view(view: SessionView) -> None:
    session = view.session
    print(
        f"session_id={session.session_id} kind={session.kind or '-'} status={session.status} "
        f"native_status={session.native_status}"
    )
    print(f"issue={view.issue.repo_full_name}#{view.issue.number} {view.issue.title}")
    result = session.result
    if isinstance(result, AnalysisResult):
        print(
            f"type={result.type} complexity={result.complexity} "
            f"confidence={result.confidence_score} ({confidence_level(result.confidence_score)})"
        )
        print(f"strategy={result.strategy}")
        if recommends_resolution(result):
            print(f"Ready to resolve: issuepilot resolve {session.session_id}")
        else:
            print("Confidence is below the resolution threshold.")
    elif isinstance(result, ResolutionResult):
        print(f"summary={result.summary}")
        print(f"pull_request_url={result.pull_request_url or '-'}")
    elif result is not None:
        print(f"unparsed_output={json.dumps(result.to_payload())}")
    if session.error_message:
        print(f"error={session.error_message}")


def _issue_payload(issue: Issue) -> dict[str, object]:
    return {
        "issue_id": issue.issue_id,
        "number": issue.number,
        "repo": issue.repo_full_name,
        "title": issue.title,
        "state": issue.state,
        "labels": list(issue.label_names),
        "html_url": issue.html_url,
        "updated_at": issue.updated_at,
    }


def _session_payload(record: SessionRecord) -> dict[str, object]:
    return {
        "session_id": record.session_id,
        "issue_id": record.issue_id,
        "kind": record.kind,
        "status": record.status,
        "native_status": record.native_status,
        "result": record.result.to_payload() if record.result is not None else None,
        "confidence_score": record.confidence_score,
        "error_message": record.error_message,
        "prompt_overridden": record.prompt_overridden,
        "parent_session_id": record.parent_session_id,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }
