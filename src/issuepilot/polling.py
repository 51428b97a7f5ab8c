from __future__ import annotations

import logging
import threading
from typing import Callable

from issuepilot.errors import PollingCancelled, PollingTimeout
from issuepilot.models import SessionView
from issuepilot.observability import log_context, log_event
from issuepilot.session_status import is_terminal


LOGGER = logging.getLogger("issuepilot.polling")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 60


def wait_for_terminal(
    get_status: Callable[[str], SessionView],
    session_id: str,
    *,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    cancel_event: threading.Event | None = None,
    on_update: Callable[[SessionView], None] | None = None,
) -> SessionView:
    """Call get_status until the session is terminal or the attempts run out.

    Every attempt is one get_status call, so the stored row is reconciled on
    each pass. Giving up (timeout or cancellation) never touches the session
    itself; a later get_status still sees the remote's eventual outcome.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if interval_seconds < 0:
        raise ValueError("interval_seconds must be >= 0")
    cancel = cancel_event if cancel_event is not None else threading.Event()

    with log_context(session_id=session_id):
        for attempt in range(1, max_attempts + 1):
            if cancel.is_set():
                log_event(LOGGER, "poll_cancelled", attempt=attempt)
                raise PollingCancelled(session_id)
            view = get_status(session_id)
            if on_update is not None:
                on_update(view)
            if is_terminal(view.status):
                log_event(LOGGER, "poll_finished", status=view.status, attempts=attempt)
                return view
            if attempt == max_attempts:
                break
            # Event.wait doubles as an interruptible sleep.
            if cancel.wait(interval_seconds):
                log_event(LOGGER, "poll_cancelled", attempt=attempt)
                raise PollingCancelled(session_id)

        log_event(LOGGER, "poll_timeout", attempts=max_attempts)
        raise PollingTimeout(session_id, max_attempts)
