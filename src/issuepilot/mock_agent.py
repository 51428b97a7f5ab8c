"""In-process stand-in for the Devin API.

Sessions advance on an injectable clock instead of background timers: every
read compares the elapsed time against the session's processing time, so a
test can drive a session to completion by moving a fake clock forward.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import random
import threading
import time
from typing import Callable, Final

from issuepilot.agent_client import AgentClient, AgentMessage, AgentSessionSnapshot
from issuepilot.errors import RemoteRejected
from issuepilot.models import IssueType, SessionKind
from issuepilot.observability import log_event
from issuepilot.prompts import prompt_declares_analysis


LOGGER = logging.getLogger("issuepilot.mock_agent")

_SERVICE = "devin-mock"

_ANALYSIS_PROGRESS: Final[tuple[tuple[float, str], ...]] = (
    (0.1, "Examining issue details and context"),
    (0.3, "Analyzing code patterns and potential solutions"),
    (0.6, "Calculating confidence score based on complexity"),
    (0.8, "Generating strategy and recommendations"),
    (0.95, "Finalizing analysis results"),
)
_RESOLUTION_PROGRESS: Final[tuple[tuple[float, str], ...]] = (
    (0.05, "Setting up development environment"),
    (0.15, "Cloning repository and analyzing codebase"),
    (0.25, "Identifying files and components to modify"),
    (0.45, "Implementing solution based on analysis"),
    (0.65, "Writing tests for the implemented changes"),
    (0.8, "Running tests and verifying solution"),
    (0.9, "Creating pull request with changes"),
    (0.95, "Finalizing documentation and commit message"),
)

_STRATEGIES: Final[dict[IssueType, tuple[str, ...]]] = {
    "bug": (
        "Identify the root cause through debugging and add proper error handling",
        "Reproduce the issue, fix the underlying logic, and add regression tests",
    ),
    "feature": (
        "Design the feature architecture, implement core functionality, and add tests",
        "Break down into smaller components and implement incrementally with tests",
    ),
    "documentation": (
        "Review existing code and write documentation with examples",
        "Update the relevant README sections with step-by-step guides",
    ),
    "enhancement": (
        "Analyze the current implementation and improve it while keeping compatibility",
        "Refactor the targeted module and add tests for the improvement",
    ),
    "maintenance": (
        "Refactor code to improve maintainability while preserving functionality",
        "Clean up technical debt and cover the touched code with tests",
    ),
    "question": (
        "Research the codebase to understand the context and explain the behavior",
        "Review documentation and code to give accurate guidance",
    ),
}
_BASE_SCOPE: Final[dict[IssueType, str]] = {
    "bug": "Likely affects core logic files and error handling modules",
    "feature": "Will require new components and accompanying tests",
    "documentation": "Mainly affects README, docs folder, and inline code comments",
    "enhancement": "Targets specific existing modules with potential cascading effects",
    "maintenance": "Code restructuring may affect multiple modules and build processes",
    "question": "Investigation may span multiple files to understand current implementation",
}
_COMPLEXITY_SCOPE: Final[dict[str, str]] = {
    "low": "Limited to 1-2 files with minimal testing requirements",
    "medium": "Affects 3-6 files with moderate integration testing needed",
    "high": "Extensive changes across multiple modules requiring broad testing",
}
_RESOLUTION_SUMMARIES: Final[tuple[str, ...]] = (
    "Fixed the identified bug with proper state handling and added regression tests.",
    "Implemented the requested change following existing patterns and documented it in the PR.",
    "Addressed the root cause, added validation, and opened a PR with testing instructions.",
)


@dataclass
class _MockSession:
    session_id: str
    kind: SessionKind
    prompt: str
    started_at: float
    processing_seconds: float
    native_status: str = "working"
    structured_output: object | None = None
    forced: bool = False
    extra_messages: list[tuple[float, str, str]] = field(default_factory=list)


class MockAgentClient(AgentClient):
    """Simulated agent: analysis finishes in 5-15s, resolution in 20-60s by default."""

    service_name = _SERVICE

    def __init__(
        self,
        *,
        analysis_seconds: tuple[float, float] = (5.0, 15.0),
        resolution_seconds: tuple[float, float] = (20.0, 60.0),
        seed: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._analysis_seconds = analysis_seconds
        self._resolution_seconds = resolution_seconds
        self._random = random.Random(seed)
        self._clock = clock
        self._sessions: dict[str, _MockSession] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def create_session(self, prompt: str, *, idempotent: bool) -> AgentSessionSnapshot:
        kind: SessionKind = "analysis" if prompt_declares_analysis(prompt) else "resolution"
        with self._lock:
            if idempotent:
                for existing in self._sessions.values():
                    if existing.prompt == prompt and existing.native_status == "working":
                        return self._snapshot(existing)
            self._counter += 1
            now = self._clock()
            low, high = self._analysis_seconds if kind == "analysis" else self._resolution_seconds
            session = _MockSession(
                session_id=f"devin-mock-{self._counter}-{int(now * 1000)}",
                kind=kind,
                prompt=prompt,
                started_at=now,
                processing_seconds=self._random.uniform(low, high),
            )
            session.extra_messages.append((now, "user_message", "Session started - analyzing request"))
            self._sessions[session.session_id] = session
            log_event(
                LOGGER,
                "mock_session_created",
                session_id=session.session_id,
                kind=kind,
                processing_seconds=round(session.processing_seconds, 2),
            )
            return self._snapshot(session)

    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        with self._lock:
            return self._snapshot(self._require(session_id))

    def send_message(self, session_id: str, message: str) -> AgentSessionSnapshot:
        with self._lock:
            session = self._require(session_id)
            session.extra_messages.append((self._clock(), "user_message", message))
            return self._snapshot(session)

    def force_status(
        self,
        session_id: str,
        native_status: str,
        *,
        structured_output: object | None = None,
    ) -> None:
        """Pin a session to a native status, bypassing the simulated timer."""
        with self._lock:
            session = self._require(session_id)
            session.native_status = native_status
            session.structured_output = structured_output
            session.forced = True

    def _require(self, session_id: str) -> _MockSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise RemoteRejected(_SERVICE, 404, f"Session {session_id} not found")
        return session

    def _snapshot(self, session: _MockSession) -> AgentSessionSnapshot:
        elapsed = self._clock() - session.started_at
        if not session.forced and session.native_status == "working":
            if elapsed >= session.processing_seconds:
                session.native_status = "finished"
                session.structured_output = self._generate_output(session)
                session.extra_messages.append(
                    (
                        session.started_at + session.processing_seconds,
                        "devin_message",
                        "Session completed successfully",
                    )
                )
                log_event(LOGGER, "mock_session_finished", session_id=session.session_id)

        return AgentSessionSnapshot(
            session_id=session.session_id,
            native_status=session.native_status,
            structured_output=session.structured_output,
            messages=self._messages(session, elapsed),
        )

    def _messages(self, session: _MockSession, elapsed: float) -> tuple[AgentMessage, ...]:
        entries: list[tuple[float, str, str]] = list(session.extra_messages)
        progress = _ANALYSIS_PROGRESS if session.kind == "analysis" else _RESOLUTION_PROGRESS
        for fraction, text in progress:
            offset = session.processing_seconds * fraction
            if offset <= elapsed:
                entries.append((session.started_at + offset, "devin_message", text))
        entries.sort(key=lambda entry: entry[0])
        return tuple(
            AgentMessage(timestamp=_format_timestamp(at), type=message_type, message=text)
            for at, message_type, text in entries
        )

    def _generate_output(self, session: _MockSession) -> dict[str, object]:
        if session.kind == "analysis":
            return self._generate_analysis(_issue_details(session.prompt))
        return self._generate_resolution(session.prompt)

    def _generate_analysis(self, details: str) -> dict[str, object]:
        text = details.lower()
        issue_type = _classify(text, self._random)
        if issue_type == "documentation":
            complexity, base_confidence = "low", 85
        elif issue_type == "bug" and "simple" in text:
            complexity, base_confidence = "low", 80
        elif issue_type == "feature" and "complex" in text:
            complexity, base_confidence = "high", 45
        else:
            complexity, base_confidence = "medium", 65
        confidence = round(min(95.0, max(25.0, base_confidence + self._random.uniform(-10, 10))))
        if confidence > 80:
            band = "High"
        elif confidence > 60:
            band = "Medium"
        else:
            band = "Low"
        return {
            "type": issue_type,
            "complexity": complexity,
            "confidence_score": confidence,
            "strategy": self._random.choice(_STRATEGIES[issue_type]),
            "scope_analysis": f"{_BASE_SCOPE[issue_type]}. {_COMPLEXITY_SCOPE[complexity]}.",
            "reasoning": (
                f"{band} confidence ({confidence}) because the issue is clearly identified "
                f"and the change has {complexity} complexity."
            ),
        }

    def _generate_resolution(self, prompt: str) -> dict[str, object]:
        repo_full_name = _repository_full_name(prompt) or "example/repo"
        pr_number = self._random.randint(1, 999)
        return {
            "summary": self._random.choice(_RESOLUTION_SUMMARIES),
            "pull_request_url": f"https://github.com/{repo_full_name}/pull/{pr_number}",
        }


def _classify(text: str, rng: random.Random) -> IssueType:
    if any(word in text for word in ("bug", "error", "fix")):
        return "bug"
    if any(word in text for word in ("feature", "add", "implement")):
        return "feature"
    if any(word in text for word in ("documentation", "readme", "docs")):
        return "documentation"
    if any(word in text for word in ("refactor", "cleanup", "technical debt", "maintenance")):
        return "maintenance"
    return "enhancement" if rng.random() > 0.5 else "question"


def _issue_details(prompt: str) -> str:
    prefixes = ("- Title:", "- Description:", "- Labels:")
    return "\n".join(line for line in prompt.splitlines() if line.startswith(prefixes))


def _repository_full_name(prompt: str) -> str | None:
    for line in prompt.splitlines():
        if line.startswith("- Repository: https://github.com/"):
            return line.removeprefix("- Repository: https://github.com/").strip() or None
    return None


def _format_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
