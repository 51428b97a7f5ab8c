from __future__ import annotations

from dataclasses import replace

from hypothesis import given, strategies as st

from issuepilot.models import AnalysisResult, Issue, Label
from issuepilot.prompts import (
    NO_DESCRIPTION_PLACEHOLDER,
    build_analysis_prompt,
    build_resolution_prompt,
    prompt_declares_analysis,
)


def _issue(*, body: str | None = "Crash when config is empty", labels: tuple[Label, ...] = ()) -> Issue:
    return Issue(
        issue_id=1001,
        number=7,
        owner="acme",
        repo="widgets",
        title="Parser crashes",
        body=body,
        state="open",
        labels=labels,
        html_url="https://github.com/acme/widgets/issues/7",
        created_at="2024-01-01T00:00:00Z",
        updated_at="2024-01-02T00:00:00Z",
    )


def _analysis() -> AnalysisResult:
    return AnalysisResult(
        type="bug",
        complexity="low",
        confidence_score=85,
        strategy="Guard the empty config path",
        scope_analysis="src/config.py and its tests",
        reasoning="Clear reproduction",
    )


def test_analysis_prompt_includes_issue_details() -> None:
    prompt = build_analysis_prompt(
        _issue(labels=(Label(name="bug", color="d73a4a"), Label(name="p1", color="000000")))
    )

    assert prompt_declares_analysis(prompt)
    assert "- Title: Parser crashes" in prompt
    assert "- Description: Crash when config is empty" in prompt
    assert "- Labels: bug, p1" in prompt
    assert "- Repository: https://github.com/acme/widgets" in prompt
    assert "- Issue Number: #7" in prompt
    assert '"confidence_score": 0-100' in prompt
    assert "make no code changes" in prompt


def test_analysis_prompt_placeholders_for_missing_description_and_labels() -> None:
    for body in (None, "", "   "):
        prompt = build_analysis_prompt(_issue(body=body))
        assert f"- Description: {NO_DESCRIPTION_PLACEHOLDER}" in prompt
        assert "- Labels: None" in prompt


def test_resolution_prompt_carries_previous_analysis() -> None:
    prompt = build_resolution_prompt(_issue(), _analysis())

    assert not prompt_declares_analysis(prompt)
    assert "- Type: bug" in prompt
    assert "- Complexity: low" in prompt
    assert "- Confidence Score: 85%" in prompt
    assert "- Strategy: Guard the empty config path" in prompt
    assert "- Scope Analysis: src/config.py and its tests" in prompt
    assert '"Fixes #7"' in prompt
    assert "https://github.com/acme/widgets/pull/<number>" in prompt


def test_prompts_are_deterministic() -> None:
    assert build_analysis_prompt(_issue()) == build_analysis_prompt(_issue())
    assert build_resolution_prompt(_issue(), _analysis()) == build_resolution_prompt(
        _issue(), _analysis()
    )


@given(st.text(), st.one_of(st.none(), st.text()))
def test_analysis_prompt_embeds_any_title_and_body(title: str, body: str | None) -> None:
    issue = replace(_issue(), title=title, body=body)
    prompt = build_analysis_prompt(issue)

    assert prompt == build_analysis_prompt(issue)
    assert prompt_declares_analysis(prompt)
    assert f"- Title: {title}" in prompt
    if body is None or not body.strip():
        assert f"- Description: {NO_DESCRIPTION_PLACEHOLDER}" in prompt
    else:
        assert f"- Description: {body}" in prompt
