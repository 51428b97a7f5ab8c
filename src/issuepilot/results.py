"""Structural validation of the JSON payloads the agent returns on completion.

Two validators, one per session kind, are tried in an order chosen by the
session's own kind. The outcome is a tagged ``ParsedOutput``; payloads that
match neither shape are kept verbatim as ``UnparsedResult`` so a finished
session always records what the agent produced.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Final, Literal, cast

from issuepilot.errors import MalformedAgentOutput
from issuepilot.models import (
    AnalysisResult,
    Complexity,
    IssueType,
    ResolutionResult,
    ResultKind,
    SessionKind,
    SessionResult,
    UnparsedResult,
)


ISSUE_TYPES: Final[tuple[IssueType, ...]] = (
    "bug",
    "feature",
    "documentation",
    "enhancement",
    "maintenance",
    "question",
)
COMPLEXITIES: Final[tuple[Complexity, ...]] = ("low", "medium", "high")
RESOLUTION_CONFIDENCE_THRESHOLD: Final[int] = 40

ConfidenceLevelName = Literal["very-confident", "confident", "moderate", "low", "very-low"]

_CONFIDENCE_LEVELS: Final[tuple[tuple[int, ConfidenceLevelName], ...]] = (
    (90, "very-confident"),
    (70, "confident"),
    (50, "moderate"),
    (30, "low"),
    (0, "very-low"),
)


@dataclass(frozen=True)
class ParsedOutput:
    kind: Literal["analysis", "resolution", "invalid"]
    result: SessionResult
    error: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.kind != "invalid"


def analysis_result_from_payload(payload: object) -> AnalysisResult:
    obj = _require_object(payload)
    issue_type = obj.get("type")
    if issue_type not in ISSUE_TYPES:
        raise MalformedAgentOutput(f"type must be one of {', '.join(ISSUE_TYPES)}")
    complexity = obj.get("complexity")
    if complexity not in COMPLEXITIES:
        raise MalformedAgentOutput(f"complexity must be one of {', '.join(COMPLEXITIES)}")
    return AnalysisResult(
        type=cast(IssueType, issue_type),
        complexity=cast(Complexity, complexity),
        confidence_score=_require_score(obj.get("confidence_score")),
        strategy=_require_text(obj, "strategy"),
        scope_analysis=_require_text(obj, "scope_analysis"),
        reasoning=_require_text(obj, "reasoning"),
    )


def resolution_result_from_payload(payload: object) -> ResolutionResult:
    obj = _require_object(payload)
    summary = _require_text(obj, "summary")
    pull_request_url = obj.get("pull_request_url")
    if pull_request_url is not None and not isinstance(pull_request_url, str):
        raise MalformedAgentOutput("pull_request_url must be a string when present")
    return ResolutionResult(summary=summary, pull_request_url=pull_request_url or None)


def decode_structured_output(raw: object) -> object:
    """Turn the agent's structured_output into a JSON value.

    Strings are decoded as JSON (tolerating a surrounding markdown fence);
    objects pass through. Raises MalformedAgentOutput on undecodable text.
    """
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if text.startswith("```"):
        lines = text.splitlines()[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedAgentOutput(f"structured output is not valid JSON: {exc.msg}") from exc


def parse_agent_output(raw: object, *, expected_kind: SessionKind | None) -> ParsedOutput:
    try:
        payload = decode_structured_output(raw)
    except MalformedAgentOutput as exc:
        return ParsedOutput(kind="invalid", result=UnparsedResult(raw=raw), error=str(exc))

    errors: list[str] = []
    for kind in _validation_order(expected_kind):
        try:
            if kind == "analysis":
                return ParsedOutput(kind="analysis", result=analysis_result_from_payload(payload))
            return ParsedOutput(kind="resolution", result=resolution_result_from_payload(payload))
        except MalformedAgentOutput as exc:
            errors.append(f"{kind}: {exc}")
    return ParsedOutput(kind="invalid", result=UnparsedResult(raw=payload), error="; ".join(errors))


def result_kind(result: SessionResult) -> ResultKind:
    if isinstance(result, AnalysisResult):
        return "analysis"
    if isinstance(result, ResolutionResult):
        return "resolution"
    return "raw"


def dump_result(result: SessionResult) -> str:
    return json.dumps(result.to_payload(), sort_keys=True)


def load_result(kind: str, payload_json: str) -> SessionResult:
    payload = json.loads(payload_json)
    if kind == "analysis":
        return analysis_result_from_payload(payload)
    if kind == "resolution":
        return resolution_result_from_payload(payload)
    if kind == "raw":
        return UnparsedResult(raw=payload)
    raise RuntimeError(f"Invalid result kind stored: {kind!r}")


def confidence_level(score: int) -> ConfidenceLevelName:
    for threshold, name in _CONFIDENCE_LEVELS:
        if score >= threshold:
            return name
    return "very-low"


def recommends_resolution(analysis: AnalysisResult) -> bool:
    return analysis.confidence_score >= RESOLUTION_CONFIDENCE_THRESHOLD


def _validation_order(expected_kind: SessionKind | None) -> tuple[SessionKind, ...]:
    if expected_kind is not None:
        return (expected_kind,)
    # Rows written before kind was recorded: accept either shape.
    return ("analysis", "resolution")


def _require_object(payload: object) -> dict[str, object]:
    if not isinstance(payload, dict) or not all(isinstance(key, str) for key in payload):
        raise MalformedAgentOutput("payload must be a JSON object")
    return cast(dict[str, object], payload)


def _require_text(obj: dict[str, object], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise MalformedAgentOutput(f"{key} must be a string")
    return value


def _require_score(value: object) -> int:
    if isinstance(value, bool):
        raise MalformedAgentOutput("confidence_score must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise MalformedAgentOutput("confidence_score must be an integer")
    if value < 0 or value > 100:
        raise MalformedAgentOutput("confidence_score must be between 0 and 100")
    return value
