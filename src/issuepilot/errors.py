from __future__ import annotations

from typing import Literal


RejectionCategory = Literal["not_found", "forbidden", "unauthenticated", "rejected"]


class IssuePilotError(RuntimeError):
    """Base class for lifecycle and remote-service failures."""


class RemoteUnavailable(IssuePilotError):
    """Network failure, timeout, rate limit, or 5xx from a remote service."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{service} unavailable: {message}")
        self.service = service
        self.status_code = status_code


class RemoteRejected(IssuePilotError):
    """4xx from a remote service, with the remote message preserved."""

    def __init__(
        self,
        service: str,
        status_code: int,
        message: str,
    ) -> None:
        self.service = service
        self.status_code = status_code
        self.category = rejection_category(status_code)
        self.remote_message = message
        super().__init__(f"{service} rejected request ({status_code} {self.category}): {message}")


class SessionCreationFailed(IssuePilotError):
    pass


class AnalysisNotReady(IssuePilotError):
    pass


class SessionNotFound(IssuePilotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionConflict(IssuePilotError):
    """The store refused an insert that would violate a uniqueness rule."""


class SessionNotRetryable(IssuePilotError):
    pass


class IssueNotCached(IssuePilotError):
    def __init__(self, issue_id: int, session_id: str) -> None:
        super().__init__(f"Issue {issue_id} for session {session_id} is not cached")
        self.issue_id = issue_id
        self.session_id = session_id


class MalformedAgentOutput(ValueError):
    pass


class PollingTimeout(IssuePilotError):
    def __init__(self, session_id: str, attempts: int) -> None:
        super().__init__(f"Stopped waiting for session {session_id} after {attempts} attempts")
        self.session_id = session_id
        self.attempts = attempts


class PollingCancelled(IssuePilotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Stopped waiting for session {session_id}: cancelled")
        self.session_id = session_id


def rejection_category(status_code: int) -> RejectionCategory:
    if status_code == 401:
        return "unauthenticated"
    if status_code == 403:
        return "forbidden"
    if status_code == 404:
        return "not_found"
    return "rejected"


def raise_for_status(service: str, status_code: int, message: str) -> None:
    if 200 <= status_code < 300:
        return
    if status_code == 429 or status_code >= 500:
        raise RemoteUnavailable(service, message, status_code=status_code)
    if 400 <= status_code < 500:
        raise RemoteRejected(service, status_code, message)
    raise RemoteUnavailable(service, f"unexpected status {status_code}: {message}")
