from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Literal, cast
from urllib.parse import urlencode

from issuepilot.errors import RemoteUnavailable, raise_for_status
from issuepilot.models import Issue, IssueState, Label
from issuepilot.observability import log_event
from issuepilot.shell import CommandError, run


LOGGER = logging.getLogger("issuepilot.github_gateway")
IssueListState = Literal["open", "closed", "all"]
_SERVICE = "github"
_REPO_URL_RE = re.compile(r"github\.com[/:]([^/\s]+)/([^/\s]+)")
_REPO_SLUG_RE = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")


@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return repo_url(self.owner, self.name)


def repo_url(owner: str, name: str) -> str:
    return f"https://github.com/{owner}/{name}"


def parse_repo_ref(value: str) -> RepoRef:
    """Accept ``owner/name`` or a GitHub URL (with or without a ``.git`` suffix)."""
    text = value.strip().rstrip("/")
    match = _REPO_URL_RE.search(text) or _REPO_SLUG_RE.match(text)
    if match is None:
        raise ValueError(f"Invalid GitHub repository reference: {value!r}")
    name = match.group(2).removesuffix(".git")
    if not name:
        raise ValueError(f"Invalid GitHub repository reference: {value!r}")
    return RepoRef(owner=match.group(1), name=name)


@dataclass(frozen=True)
class GitHubGateway:
    """Read-only issue source backed by the ``gh api`` CLI."""

    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def get_issue(self, owner: str, repo: str, number: int) -> Issue:
        path = f"/repos/{owner}/{repo}/issues/{number}"
        payload_obj = _as_object_dict(self._api_json(path))
        if payload_obj is None:
            raise RemoteUnavailable(_SERVICE, "unexpected response: expected object for issue")
        issue = _issue_from_payload(payload_obj, owner=owner, repo=repo)
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue",
            repo=f"{owner}/{repo}",
            issue_number=issue.number,
        )
        return issue

    def list_issues(
        self,
        owner: str,
        repo: str,
        *,
        state: IssueListState = "open",
        page: int = 1,
        per_page: int = 30,
    ) -> list[Issue]:
        if state not in ("open", "closed", "all"):
            raise ValueError(f"Invalid issue state filter: {state!r}")
        if page < 1:
            raise ValueError("page must be >= 1")
        if per_page < 1 or per_page > 100:
            raise ValueError("per_page must be between 1 and 100")
        query = urlencode(
            {
                "state": state,
                "per_page": str(per_page),
                "page": str(page),
                "sort": "created",
                "direction": "desc",
            }
        )
        payload = self._api_json(f"/repos/{owner}/{repo}/issues?{query}")
        if not isinstance(payload, list):
            raise RemoteUnavailable(_SERVICE, "unexpected response: expected list for issues")

        issues: list[Issue] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            # GitHub returns pull requests in the issues endpoint; ignore those.
            if "pull_request" in item_obj:
                continue
            issues.append(_issue_from_payload(item_obj, owner=owner, repo=repo))
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues",
            repo=f"{owner}/{repo}",
            count=len(issues),
        )
        return issues

    def _api_json(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET"]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        try:
            raw = run(cmd, check=False)
        except CommandError as exc:
            raise RemoteUnavailable(_SERVICE, f"gh api could not run: {exc.stderr}") from exc

        try:
            status_code, headers, body = _parse_http_response(raw)
        except ValueError as exc:
            log_event(
                LOGGER,
                "github_get_failed",
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise RemoteUnavailable(_SERVICE, f"GET {path} failed: {exc}") from exc

        if status_code == 304:
            cached_payload = self._cached_get_payload_by_path.get(path)
            if cached_payload is None:
                raise RemoteUnavailable(_SERVICE, f"304 for uncached path: {path}")
            return cached_payload

        if status_code < 200 or status_code >= 300:
            log_event(LOGGER, "github_get_failed", path=path, status_code=status_code)
        raise_for_status(_SERVICE, status_code, _error_message(body))

        try:
            payload_obj = json.loads(body)
        except json.JSONDecodeError as exc:
            raise RemoteUnavailable(_SERVICE, f"GET {path} returned invalid JSON") from exc
        etag = headers.get("etag")
        if etag:
            self._etags_by_path[path] = etag
            self._cached_get_payload_by_path[path] = payload_obj
        return payload_obj


def _issue_from_payload(payload_obj: dict[str, object], *, owner: str, repo: str) -> Issue:
    labels: list[Label] = []
    labels_obj = payload_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                labels.append(Label(name=name, color=_as_string(entry_obj.get("color"))))
    body = payload_obj.get("body")
    return Issue(
        issue_id=_as_int(payload_obj.get("id"), field="id"),
        number=_as_int(payload_obj.get("number"), field="number"),
        owner=owner,
        repo=repo,
        title=_as_string(payload_obj.get("title")),
        body=body if isinstance(body, str) else None,
        state=_as_issue_state(payload_obj.get("state")),
        labels=tuple(labels),
        html_url=_as_string(payload_obj.get("html_url")),
        created_at=_as_string(payload_obj.get("created_at")),
        updated_at=_as_string(payload_obj.get("updated_at")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise ValueError("missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise ValueError(f"unexpected status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise ValueError(f"unexpected status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _error_message(body: str) -> str:
    text = body.strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text or "<empty>"
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None:
        message = payload_obj.get("message")
        if isinstance(message, str) and message:
            return message
    return text or "<empty>"


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RemoteUnavailable(_SERVICE, f"unexpected response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RemoteUnavailable(
                _SERVICE, f"unexpected response value for {field}: {value}"
            ) from exc
    raise RemoteUnavailable(_SERVICE, f"unexpected response type for {field}")


def _as_issue_state(value: object) -> IssueState:
    if value in ("open", "closed"):
        return cast(IssueState, value)
    raise RemoteUnavailable(_SERVICE, f"unexpected issue state: {value!r}")
