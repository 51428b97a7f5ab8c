from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class AgentMessage:
    timestamp: str
    type: str
    message: str


@dataclass(frozen=True)
class AgentSessionSnapshot:
    session_id: str
    native_status: str
    structured_output: object | None
    messages: tuple[AgentMessage, ...]
    error_message: str | None = None


class AgentClient(ABC):
    """Remote coding agent that runs one long-lived job per session."""

    service_name = "agent"

    @abstractmethod
    def create_session(self, prompt: str, *, idempotent: bool) -> AgentSessionSnapshot:
        """Submit a prompt and return the newly created (or reused) session."""

    @abstractmethod
    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        """Fetch the current native status, output, and transcript of a session."""

    @abstractmethod
    def send_message(self, session_id: str, message: str) -> AgentSessionSnapshot:
        """Post an operator message into a running session."""

    def close(self) -> None:
        """Release connections held by the client."""
