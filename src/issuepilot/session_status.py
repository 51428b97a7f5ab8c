from __future__ import annotations

import logging
from typing import Final, Literal

from issuepilot.models import CanonicalStatus
from issuepilot.observability import log_warning_event


LOGGER = logging.getLogger("issuepilot.session_status")

NativeStatus = Literal[
    "working",
    "blocked",
    "expired",
    "finished",
    "suspend_requested",
    "suspend_requested_frontend",
    "resume_requested",
    "resume_requested_frontend",
    "resumed",
]

NATIVE_STATUSES: Final[tuple[NativeStatus, ...]] = (
    "working",
    "blocked",
    "expired",
    "finished",
    "suspend_requested",
    "suspend_requested_frontend",
    "resume_requested",
    "resume_requested_frontend",
    "resumed",
)

_NATIVE_TO_CANONICAL: Final[dict[str, CanonicalStatus]] = {
    "working": "running",
    "suspend_requested": "running",
    "suspend_requested_frontend": "running",
    "resume_requested": "running",
    "resume_requested_frontend": "running",
    "resumed": "running",
    "blocked": "blocked",
    "finished": "finished",
    "expired": "expired",
}

# Older agent API revisions reported a three-value vocabulary.
_LEGACY_TO_CANONICAL: Final[dict[str, CanonicalStatus]] = {
    "running": "running",
    "stopped": "finished",
}

TERMINAL_STATUSES: Final[frozenset[CanonicalStatus]] = frozenset(
    {"blocked", "finished", "expired"}
)
RETRYABLE_STATUSES: Final[frozenset[CanonicalStatus]] = frozenset({"blocked", "expired"})


def normalize_status(native_status: str) -> CanonicalStatus:
    key = native_status.strip().lower()
    canonical = _NATIVE_TO_CANONICAL.get(key)
    if canonical is not None:
        return canonical
    legacy = _LEGACY_TO_CANONICAL.get(key)
    if legacy is not None:
        return legacy
    # Keep polling; the poll helper's attempt limit bounds an unknown state.
    log_warning_event(LOGGER, "agent_status_unrecognized", native_status=native_status)
    return "running"


def is_terminal(status: CanonicalStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_running(status: CanonicalStatus) -> bool:
    return status == "running"


def is_retry_eligible(status: CanonicalStatus) -> bool:
    return status in RETRYABLE_STATUSES


def may_carry_output(status: CanonicalStatus) -> bool:
    return status in {"blocked", "finished"}
