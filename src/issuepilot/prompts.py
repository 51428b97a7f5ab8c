from __future__ import annotations

from typing import Final

from issuepilot.models import AnalysisResult, Issue


ANALYSIS_PROMPT_HEADER: Final[str] = "Analyze this GitHub issue."
RESOLUTION_PROMPT_HEADER: Final[str] = "Resolve this GitHub issue based on the previous analysis."
NO_DESCRIPTION_PLACEHOLDER: Final[str] = "No description provided"
NO_LABELS_PLACEHOLDER: Final[str] = "None"


def _description(issue: Issue) -> str:
    if issue.body is None or not issue.body.strip():
        return NO_DESCRIPTION_PLACEHOLDER
    return issue.body


def _labels(issue: Issue) -> str:
    if not issue.labels:
        return NO_LABELS_PLACEHOLDER
    return ", ".join(issue.label_names)


def build_analysis_prompt(issue: Issue) -> str:
    return f"""
{ANALYSIS_PROMPT_HEADER} You are an expert software engineer analyzing a GitHub issue. Your task is to thoroughly scope this issue, assign a confidence score for how successfully you could resolve it, and provide a structured assessment.

**Issue Details:**
- Title: {issue.title}
- Description: {_description(issue)}
- Labels: {_labels(issue)}
- Repository: {issue.repo_url}
- Issue Number: #{issue.number}

**Analysis Requirements:**

1. **Categorization:** Classify the issue type:
   - **bug**: Something is broken or not working as expected
   - **feature**: New functionality to be added
   - **documentation**: Updates to docs, README, or comments
   - **enhancement**: Improvement to existing functionality
   - **maintenance**: Refactoring, cleanup, technical debt, or code quality improvements
   - **question**: Needs clarification or investigation

2. **Complexity Assessment:** Rate as 'low', 'medium', or 'high' based on:
   - Number of files/components that need modification
   - Technical complexity of the solution
   - Integration requirements with existing systems
   - Testing complexity

3. **Confidence Score (0-100):** How confident are you that you can successfully resolve this issue?
   - 90-100: Very confident - straightforward implementation with clear requirements
   - 70-89: Confident - well-defined but may require some investigation
   - 50-69: Moderately confident - some ambiguity or complexity present
   - 30-49: Low confidence - significant unknowns or complex requirements
   - 0-29: Very low confidence - poorly defined, extremely complex, or missing critical information

4. **Implementation Strategy:** High-level approach, key steps in order, potential blockers, and clear success criteria.

5. **Scope Analysis:** Files/directories likely affected, dependencies that might need updates, impact on existing functionality, and testing requirements.

6. **Reasoning:** What drove the confidence score, what makes the issue more or less complex than it appears, which assumptions you are making, and what could make this assessment wrong.

**Response Format:**
Respond with exactly one JSON object containing these fields:
{{
  "type": "bug|feature|documentation|enhancement|maintenance|question",
  "complexity": "low|medium|high",
  "confidence_score": 0-100,
  "strategy": "Description of implementation approach",
  "scope_analysis": "Summary of files likely affected, dependencies, impact on functionality, and testing requirements",
  "reasoning": "Explanation of your assessment"
}}

**Important Guidelines:**
- Be honest about your confidence level; overestimating leads to failed implementations.
- If critical information is missing, reflect that in a lower confidence score.
- Consider the repository context and technology stack when assessing complexity.

Stop when you have enough information to fill out the structured response. Do not under any circumstances move to execute the plan: make no code changes, branches, or pull requests. Respond with a message containing only the structured JSON response with no additional text, and then end the session.
""".strip()


def build_resolution_prompt(issue: Issue, analysis: AnalysisResult) -> str:
    return f"""
{RESOLUTION_PROMPT_HEADER} You are an expert software engineer resolving a GitHub issue. Implement a complete solution based on the previous analysis.

**Issue Details:**
- Title: {issue.title}
- Description: {_description(issue)}
- Labels: {_labels(issue)}
- Repository: {issue.repo_url}
- Issue Number: #{issue.number}

**Previous Analysis:**
- Type: {analysis.type}
- Complexity: {analysis.complexity}
- Confidence Score: {analysis.confidence_score}%
- Strategy: {analysis.strategy}
- Scope Analysis: {analysis.scope_analysis}

**Implementation Requirements:**

1. **Repository Setup:** Clone the repository, examine the codebase structure, and locate the files named in the scope analysis.

2. **Solution Implementation:**
   - Follow the strategy outlined in the previous analysis
   - Address the root cause of the issue
   - Stay consistent with existing code patterns and style

3. **Testing & Quality:**
   - Add tests appropriate for the change
   - For bug fixes, add test cases that would have caught the original issue
   - Keep existing tests passing

4. **Pull Request Creation:**
   - Use a descriptive PR title summarizing the change
   - Describe what was changed and why, with testing instructions for reviewers
   - Reference the issue with: "Fixes #{issue.number}"

**Important Guidelines:**
- Focus on the specific issue and avoid unrelated changes.
- Prefer simple, straightforward solutions.
- If you hit blockers beyond the analysis, document them in the summary.

**Response Format:**
Respond with exactly one JSON object containing these fields:
{{
  "summary": "Concise report of implementation work, challenges encountered, and final outcome",
  "pull_request_url": "https://github.com/{issue.repo_full_name}/pull/<number>"
}}

Implement the solution step by step, then provide only the structured JSON response.
""".strip()


def prompt_declares_analysis(prompt: str) -> bool:
    return prompt.startswith(ANALYSIS_PROMPT_HEADER)
