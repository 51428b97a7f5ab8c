from __future__ import annotations

import random

import pytest

from issuepilot.errors import RemoteRejected
from issuepilot.mock_agent import MockAgentClient, _classify, _format_timestamp
from issuepilot.models import AnalysisResult, Issue, Label
from issuepilot.prompts import build_analysis_prompt, build_resolution_prompt
from issuepilot.results import analysis_result_from_payload, resolution_result_from_payload


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _issue(title: str = "Fix crash in parser", body: str | None = "It errors out") -> Issue:
    return Issue(
        issue_id=1,
        number=7,
        owner="acme",
        repo="widgets",
        title=title,
        body=body,
        state="open",
        labels=(Label(name="bug", color="d73a4a"),),
        html_url="https://github.com/acme/widgets/issues/7",
        created_at="c",
        updated_at="u",
    )


def _client(clock: FakeClock) -> MockAgentClient:
    return MockAgentClient(
        analysis_seconds=(5.0, 15.0),
        resolution_seconds=(20.0, 60.0),
        seed=3,
        clock=clock,
    )


def test_analysis_session_runs_then_finishes_with_valid_output() -> None:
    clock = FakeClock()
    client = _client(clock)

    created = client.create_session(build_analysis_prompt(_issue()), idempotent=False)
    assert created.session_id.startswith("devin-mock-1-")
    assert created.native_status == "working"
    assert created.structured_output is None
    assert [m.message for m in created.messages] == ["Session started - analyzing request"]
    assert created.messages[0].type == "user_message"

    clock.now += 4.9
    assert client.get_session(created.session_id).native_status == "working"

    clock.now += 11.0
    finished = client.get_session(created.session_id)
    assert finished.native_status == "finished"
    analysis = analysis_result_from_payload(finished.structured_output)
    assert analysis.type == "bug"
    assert 25 <= analysis.confidence_score <= 95
    assert finished.messages[-1].message == "Session completed successfully"
    assert len(finished.messages) == 7


def test_progress_messages_are_released_over_time() -> None:
    clock = FakeClock()
    client = MockAgentClient(analysis_seconds=(10.0, 10.0), seed=1, clock=clock)
    session_id = client.create_session(build_analysis_prompt(_issue()), idempotent=False).session_id

    clock.now += 3.5
    texts = [m.message for m in client.get_session(session_id).messages]
    assert texts == [
        "Session started - analyzing request",
        "Examining issue details and context",
        "Analyzing code patterns and potential solutions",
    ]

    # Earlier messages keep their positions as the transcript grows.
    clock.now += 5.0
    later = [m.message for m in client.get_session(session_id).messages]
    assert later[: len(texts)] == texts


def test_resolution_output_points_at_the_issue_repository() -> None:
    clock = FakeClock()
    client = _client(clock)
    analysis = AnalysisResult(
        type="bug",
        complexity="low",
        confidence_score=80,
        strategy="s",
        scope_analysis="a",
        reasoning="r",
    )

    created = client.create_session(build_resolution_prompt(_issue(), analysis), idempotent=False)
    clock.now += 61.0
    finished = client.get_session(created.session_id)

    assert finished.native_status == "finished"
    resolution = resolution_result_from_payload(finished.structured_output)
    assert resolution.pull_request_url is not None
    assert resolution.pull_request_url.startswith("https://github.com/acme/widgets/pull/")


def test_idempotent_create_reuses_working_session() -> None:
    clock = FakeClock()
    client = _client(clock)
    prompt = build_analysis_prompt(_issue())

    first = client.create_session(prompt, idempotent=True)
    second = client.create_session(prompt, idempotent=True)
    third = client.create_session(prompt, idempotent=False)

    assert second.session_id == first.session_id
    assert third.session_id != first.session_id


def test_force_status_and_send_message() -> None:
    clock = FakeClock()
    client = _client(clock)
    session_id = client.create_session(build_analysis_prompt(_issue()), idempotent=False).session_id

    client.force_status(session_id, "blocked", structured_output='{"partial": true}')
    clock.now += 100.0
    snapshot = client.send_message(session_id, "any update?")

    assert snapshot.native_status == "blocked"
    assert snapshot.structured_output == '{"partial": true}'
    assert snapshot.messages[-1].type == "user_message"
    assert snapshot.messages[-1].message == "any update?"


def test_unknown_session_is_rejected() -> None:
    client = _client(FakeClock())
    with pytest.raises(RemoteRejected) as excinfo:
        client.get_session("nope")
    assert excinfo.value.category == "not_found"
    with pytest.raises(RemoteRejected):
        client.force_status("nope", "finished")


def test_classify_keywords() -> None:
    rng = random.Random(0)
    assert _classify("fix the error", rng) == "bug"
    assert _classify("add dark mode", rng) == "feature"
    assert _classify("update readme", rng) == "documentation"
    assert _classify("refactor module", rng) == "maintenance"
    assert _classify("why is it slow", rng) in ("enhancement", "question")


def test_format_timestamp_is_utc_millis() -> None:
    assert _format_timestamp(0.0) == "1970-01-01T00:00:00.000Z"
    assert _format_timestamp(1.5) == "1970-01-01T00:00:01.500Z"
