from __future__ import annotations

from collections.abc import Sequence
import logging

from issuepilot.agent_client import AgentClient, AgentMessage, AgentSessionSnapshot
from issuepilot.errors import (
    AnalysisNotReady,
    IssueNotCached,
    IssuePilotError,
    MalformedAgentOutput,
    RemoteRejected,
    RemoteUnavailable,
    SessionConflict,
    SessionCreationFailed,
    SessionNotFound,
    SessionNotRetryable,
)
from issuepilot.github_gateway import GitHubGateway, IssueListState
from issuepilot.models import (
    AnalysisResult,
    CanonicalStatus,
    Issue,
    MessageEntry,
    SessionKind,
    SessionRecord,
    SessionResult,
    SessionView,
    StartResult,
)
from issuepilot.observability import log_context, log_event, log_warning_event
from issuepilot.prompts import build_analysis_prompt, build_resolution_prompt
from issuepilot.results import analysis_result_from_payload, parse_agent_output
from issuepilot.session_status import (
    is_retry_eligible,
    is_terminal,
    may_carry_output,
    normalize_status,
)
from issuepilot.state import StateStore


LOGGER = logging.getLogger("issuepilot.engine")

MAX_LIST_LIMIT = 100


class SessionEngine:
    """Starts agent sessions for issues and reconciles their remote state.

    The engine is request driven: nothing here sleeps or polls. Callers
    invoke get_status while a session is running (see polling.wait_for_terminal).
    """

    def __init__(
        self,
        *,
        store: StateStore,
        agent: AgentClient,
        issues: GitHubGateway | None = None,
        idempotent: bool = True,
    ) -> None:
        self._store = store
        self._agent = agent
        self._issues = issues
        self._idempotent = idempotent

    def list_issues(
        self,
        owner: str,
        repo: str,
        *,
        state: IssueListState = "open",
        page: int = 1,
        per_page: int = 30,
    ) -> list[Issue]:
        issues = self._require_issue_source().list_issues(
            owner, repo, state=state, page=page, per_page=per_page
        )
        for issue in issues:
            self._store.upsert_issue(issue)
        return issues

    def refresh_issue(self, owner: str, repo: str, number: int) -> Issue:
        issue = self._require_issue_source().get_issue(owner, repo, number)
        self._store.upsert_issue(issue)
        return issue

    def cached_issue(self, owner: str, repo: str, number: int) -> Issue | None:
        return self._store.find_issue(owner, repo, number)

    def start_analysis(self, issue: Issue) -> StartResult:
        self._store.upsert_issue(issue)
        return self._start(
            issue=issue,
            kind="analysis",
            prompt=build_analysis_prompt(issue),
        )

    def resolution_prompt_template(
        self,
        analysis_session_id: str,
        analysis_result: AnalysisResult | dict[str, object] | None = None,
    ) -> str:
        """Default resolution prompt for an analysis, as a starting point for edits."""
        _record, _issue, prompt = self._resolution_inputs(analysis_session_id, analysis_result, None)
        return prompt

    def start_resolution(
        self,
        analysis_session_id: str,
        analysis_result: AnalysisResult | dict[str, object] | None = None,
        *,
        prompt_override: str | None = None,
    ) -> StartResult:
        record, issue, prompt = self._resolution_inputs(
            analysis_session_id, analysis_result, prompt_override
        )
        return self._start(
            issue=issue,
            kind="resolution",
            prompt=prompt,
            prompt_overridden=prompt_override is not None,
            parent_session_id=record.session_id,
        )

    def get_status(self, session_id: str) -> SessionView:
        """Reconcile the stored session with the agent and return the local view.

        A running session the agent no longer knows about is marked expired so
        the issue can be retried; other remote failures propagate unchanged.
        """
        record = self._require_session(session_id)
        with log_context(session_id=session_id, kind=record.kind, issue_id=record.issue_id):
            try:
                snapshot = self._agent.get_session(session_id)
            except RemoteRejected as exc:
                if exc.category != "not_found":
                    raise
                self._expire_missing_remote(record, exc)
            else:
                self._reconcile(record, snapshot)
        return self.describe_session(session_id)

    def send_message(self, session_id: str, text: str) -> SessionView:
        if not text.strip():
            raise ValueError("message must not be empty")
        record = self._require_session(session_id)
        with log_context(session_id=session_id, kind=record.kind, issue_id=record.issue_id):
            snapshot = self._agent.send_message(session_id, text)
            log_event(LOGGER, "operator_message_sent", status=record.status)
            self._reconcile(record, snapshot)
        return self.describe_session(session_id)

    def retry(self, session_id: str) -> StartResult:
        """Start a fresh session with the inputs of a blocked or expired one.

        Retries never reuse a remote session, even when creation is idempotent.
        """
        record = self._require_session(session_id)
        if not is_retry_eligible(record.status):
            raise SessionNotRetryable(
                f"Session {session_id} is {record.status}; only blocked or expired sessions can be retried"
            )
        if record.kind == "analysis":
            issue = self._issue_for(record)
            outcome = self._start(
                issue=issue,
                kind="analysis",
                prompt=build_analysis_prompt(issue),
                idempotent=False,
            )
        elif record.kind == "resolution":
            override = record.prompt if record.prompt_overridden else None
            parent, issue, prompt = self._resolution_inputs(self._retry_parent(record), None, override)
            outcome = self._start(
                issue=issue,
                kind="resolution",
                prompt=prompt,
                prompt_overridden=override is not None,
                parent_session_id=parent.session_id,
                idempotent=False,
            )
        else:
            raise SessionNotRetryable(f"Session {session_id} has no recorded kind")
        log_event(
            LOGGER,
            "session_retry_started",
            previous_session_id=session_id,
            session_id=outcome.session_id,
            kind=outcome.kind,
            already_running=outcome.already_running,
        )
        return outcome

    def list_sessions_for_issue(
        self, issue_id: int, *, kind: SessionKind | None = None
    ) -> tuple[SessionRecord, ...]:
        return self._store.list_by_issue(issue_id, kind=kind)

    def list_sessions(
        self,
        *,
        kind: SessionKind | None = None,
        status: CanonicalStatus | None = None,
        issue_id: int | None = None,
        limit: int = 20,
    ) -> tuple[SessionRecord, ...]:
        clamped = min(max(limit, 1), MAX_LIST_LIMIT)
        return self._store.list_all(kind=kind, status=status, issue_id=issue_id, limit=clamped)

    def describe_session(self, session_id: str) -> SessionView:
        """Local view of a session without contacting the agent."""
        record = self._require_session(session_id)
        return SessionView(
            session=record,
            issue=self._issue_for(record),
            messages=self._store.list_messages(session_id),
        )

    def close(self) -> None:
        self._agent.close()

    def _start(
        self,
        *,
        issue: Issue,
        kind: SessionKind,
        prompt: str,
        prompt_overridden: bool = False,
        parent_session_id: str | None = None,
        idempotent: bool | None = None,
    ) -> StartResult:
        with log_context(issue=f"{issue.repo_full_name}#{issue.number}", kind=kind):
            existing = self._store.find_running(issue.issue_id, kind)
            if existing is not None:
                log_event(LOGGER, "session_already_running", session_id=existing.session_id)
                return StartResult(session_id=existing.session_id, kind=kind, already_running=True)

            try:
                snapshot = self._agent.create_session(
                    prompt,
                    idempotent=self._idempotent if idempotent is None else idempotent,
                )
            except (RemoteUnavailable, RemoteRejected) as exc:
                log_warning_event(
                    LOGGER,
                    "session_create_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise SessionCreationFailed(
                    f"Could not create {kind} session for {issue.repo_full_name}#{issue.number}: {exc}"
                ) from exc

            try:
                self._store.insert_session(
                    session_id=snapshot.session_id,
                    issue_id=issue.issue_id,
                    kind=kind,
                    native_status=snapshot.native_status,
                    prompt=prompt,
                    prompt_overridden=prompt_overridden,
                    parent_session_id=parent_session_id,
                )
            except SessionConflict:
                return self._resolve_insert_conflict(issue, kind, snapshot.session_id)

            self._record_messages(snapshot.session_id, snapshot.messages)
            log_event(
                LOGGER,
                f"{kind}_started",
                session_id=snapshot.session_id,
                parent_session_id=parent_session_id,
                prompt_overridden=prompt_overridden,
            )
            return StartResult(session_id=snapshot.session_id, kind=kind, already_running=False)

    def _resolve_insert_conflict(
        self, issue: Issue, kind: SessionKind, remote_session_id: str
    ) -> StartResult:
        # Another caller committed a running row between our check and insert.
        running = self._store.find_running(issue.issue_id, kind)
        if running is not None:
            if running.session_id != remote_session_id:
                log_warning_event(
                    LOGGER,
                    "session_orphaned",
                    orphaned_session_id=remote_session_id,
                    session_id=running.session_id,
                )
            log_event(LOGGER, "session_already_running", session_id=running.session_id)
            return StartResult(session_id=running.session_id, kind=kind, already_running=True)

        # The remote handed back a session id that is already recorded but no
        # longer running (an idempotent create matching an earlier prompt).
        known = self._store.get_session(remote_session_id)
        detail = (
            "a session id that could not be recorded"
            if known is None
            else f"{known.kind} session {known.session_id}, which is already {known.status}"
        )
        log_warning_event(
            LOGGER,
            "session_record_failed",
            session_id=remote_session_id,
            known_status=known.status if known is not None else None,
        )
        raise SessionCreationFailed(
            f"Could not start {kind} session for {issue.repo_full_name}#{issue.number}: "
            f"the agent returned {detail}; retry it or disable idempotent session creation"
        )

    def _reconcile(self, record: SessionRecord, snapshot: AgentSessionSnapshot) -> None:
        canonical = normalize_status(snapshot.native_status)
        self._record_messages(record.session_id, snapshot.messages)

        if is_terminal(record.status):
            # Terminal rows keep their status and result; output that shows up
            # late for a row that never got any is recorded once.
            self._store.update_session(
                record.session_id,
                status=record.status,
                native_status=record.native_status,
            )
            if record.result is None and may_carry_output(record.status):
                late = self._parse_output(record, snapshot)
                if late is not None:
                    self._store.fill_missing_result(record.session_id, late)
            return

        result: SessionResult | None = None
        if is_terminal(canonical):
            if may_carry_output(canonical):
                result = self._parse_output(record, snapshot)
            if result is None and canonical == "finished":
                log_warning_event(
                    LOGGER,
                    "agent_output_missing",
                    session_id=record.session_id,
                    kind=record.kind,
                )

        applied = self._store.update_session(
            record.session_id,
            status=canonical,
            native_status=snapshot.native_status,
            result=result,
            error_message=snapshot.error_message,
        )
        if applied and is_terminal(canonical):
            log_event(
                LOGGER,
                "session_terminal",
                session_id=record.session_id,
                kind=record.kind,
                status=canonical,
                has_result=result is not None,
                confidence_score=result.confidence_score
                if isinstance(result, AnalysisResult)
                else None,
            )
        else:
            log_event(
                LOGGER,
                "session_reconciled",
                session_id=record.session_id,
                status=canonical,
                native_status=snapshot.native_status,
            )

    def _expire_missing_remote(self, record: SessionRecord, exc: RemoteRejected) -> None:
        if is_terminal(record.status):
            log_event(LOGGER, "remote_session_missing", status=record.status)
            return
        applied = self._store.update_session(
            record.session_id,
            status="expired",
            native_status=record.native_status,
            error_message=f"Agent no longer has this session: {exc.remote_message}",
        )
        if applied:
            log_warning_event(
                LOGGER,
                "remote_session_missing",
                status="expired",
                previous_native_status=record.native_status,
                error=str(exc),
            )

    def _parse_output(
        self, record: SessionRecord, snapshot: AgentSessionSnapshot
    ) -> SessionResult | None:
        raw = snapshot.structured_output
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None
        parsed = parse_agent_output(raw, expected_kind=record.kind)
        if not parsed.is_valid:
            log_warning_event(
                LOGGER,
                "agent_output_malformed",
                session_id=record.session_id,
                kind=record.kind,
                error=parsed.error,
            )
        return parsed.result

    def _record_messages(self, session_id: str, messages: Sequence[AgentMessage]) -> None:
        entries = [
            MessageEntry(
                position=position,
                timestamp=message.timestamp,
                origin="operator" if message.type == "user_message" else "agent",
                text=message.message,
            )
            for position, message in enumerate(messages)
        ]
        self._store.append_messages(session_id, entries)

    def _resolution_inputs(
        self,
        analysis_session_id: str,
        analysis_result: AnalysisResult | dict[str, object] | None,
        prompt_override: str | None,
    ) -> tuple[SessionRecord, Issue, str]:
        record, analysis = self._require_finished_analysis(analysis_session_id, analysis_result)
        issue = self._issue_for(record)
        if prompt_override is None:
            return record, issue, build_resolution_prompt(issue, analysis)
        if not prompt_override.strip():
            raise ValueError("prompt_override must not be empty")
        return record, issue, prompt_override

    def _require_finished_analysis(
        self,
        session_id: str,
        supplied: AnalysisResult | dict[str, object] | None,
    ) -> tuple[SessionRecord, AnalysisResult]:
        record = self._store.get_session(session_id)
        if record is None:
            raise AnalysisNotReady(f"Analysis session {session_id} not found")
        if record.kind != "analysis":
            raise AnalysisNotReady(f"Session {session_id} is not an analysis session")
        if record.status != "finished":
            raise AnalysisNotReady(f"Analysis session {session_id} is {record.status}, not finished")
        stored = record.analysis_result
        if stored is None:
            raise AnalysisNotReady(f"Analysis session {session_id} has no valid analysis result")
        if supplied is None:
            return record, stored
        if isinstance(supplied, AnalysisResult):
            return record, supplied
        try:
            return record, analysis_result_from_payload(supplied)
        except MalformedAgentOutput as exc:
            raise AnalysisNotReady(f"Supplied analysis result is invalid: {exc}") from exc

    def _retry_parent(self, record: SessionRecord) -> str:
        if record.parent_session_id is not None:
            parent = self._store.get_session(record.parent_session_id)
            if (
                parent is not None
                and parent.status == "finished"
                and parent.analysis_result is not None
            ):
                return parent.session_id
        for candidate in self._store.list_by_issue(record.issue_id, kind="analysis"):
            if candidate.status == "finished" and candidate.analysis_result is not None:
                return candidate.session_id
        raise AnalysisNotReady(
            f"No finished analysis is available to retry resolution session {record.session_id}"
        )

    def _require_session(self, session_id: str) -> SessionRecord:
        record = self._store.get_session(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def _issue_for(self, record: SessionRecord) -> Issue:
        issue = self._store.get_issue(record.issue_id)
        if issue is None:
            raise IssueNotCached(record.issue_id, record.session_id)
        return issue

    def _require_issue_source(self) -> GitHubGateway:
        if self._issues is None:
            raise IssuePilotError("No issue source configured")
        return self._issues
