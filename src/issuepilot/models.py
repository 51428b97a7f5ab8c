from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


IssueState = Literal["open", "closed"]
SessionKind = Literal["analysis", "resolution"]
CanonicalStatus = Literal["running", "blocked", "finished", "expired"]
MessageOrigin = Literal["agent", "operator"]
IssueType = Literal["bug", "feature", "documentation", "enhancement", "maintenance", "question"]
Complexity = Literal["low", "medium", "high"]
ResultKind = Literal["analysis", "resolution", "raw"]

SESSION_KINDS: tuple[SessionKind, ...] = ("analysis", "resolution")


@dataclass(frozen=True)
class Label:
    name: str
    color: str


@dataclass(frozen=True)
class Issue:
    issue_id: int
    number: int
    owner: str
    repo: str
    title: str
    body: str | None
    state: IssueState
    labels: tuple[Label, ...]
    html_url: str
    created_at: str
    updated_at: str

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @property
    def label_names(self) -> tuple[str, ...]:
        return tuple(label.name for label in self.labels)


@dataclass(frozen=True)
class AnalysisResult:
    type: IssueType
    complexity: Complexity
    confidence_score: int
    strategy: str
    scope_analysis: str
    reasoning: str

    def to_payload(self) -> dict[str, object]:
        return {
            "type": self.type,
            "complexity": self.complexity,
            "confidence_score": self.confidence_score,
            "strategy": self.strategy,
            "scope_analysis": self.scope_analysis,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class ResolutionResult:
    summary: str
    pull_request_url: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"summary": self.summary}
        if self.pull_request_url is not None:
            payload["pull_request_url"] = self.pull_request_url
        return payload


@dataclass(frozen=True)
class UnparsedResult:
    """Agent output kept verbatim because it matched neither result shape."""

    raw: object

    def to_payload(self) -> object:
        return self.raw


SessionResult = AnalysisResult | ResolutionResult | UnparsedResult


@dataclass(frozen=True)
class MessageEntry:
    position: int
    timestamp: str
    origin: MessageOrigin
    text: str


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    issue_id: int
    kind: SessionKind | None
    status: CanonicalStatus
    native_status: str
    result: SessionResult | None
    confidence_score: int | None
    error_message: str | None
    prompt: str
    prompt_overridden: bool
    parent_session_id: str | None
    created_at: str
    updated_at: str

    @property
    def analysis_result(self) -> AnalysisResult | None:
        if isinstance(self.result, AnalysisResult):
            return self.result
        return None

    @property
    def resolution_result(self) -> ResolutionResult | None:
        if isinstance(self.result, ResolutionResult):
            return self.result
        return None


@dataclass(frozen=True)
class StartResult:
    session_id: str
    kind: SessionKind
    already_running: bool


@dataclass(frozen=True)
class SessionView:
    session: SessionRecord
    issue: Issue
    messages: tuple[MessageEntry, ...]

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def status(self) -> CanonicalStatus:
        return self.session.status

    @property
    def result(self) -> SessionResult | None:
        return self.session.result
