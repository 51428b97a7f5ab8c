from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from io import TextIOWrapper
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal


_LOGGER_NAME: Final[str] = "issuepilot"
_MAX_VALUE_LEN: Final[int] = 120
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Events kept at low verbosity; warnings always pass.
_LIFECYCLE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "analysis_started",
        "resolution_started",
        "session_already_running",
        "session_terminal",
        "session_retry_started",
        "poll_timeout",
    }
)

VerboseMode = Literal["low", "high"]

_VERBOSE_MODES: Final[dict[object, VerboseMode | None]] = {
    None: None,
    False: None,
    True: "high",
    "low": "low",
    "high": "high",
}

_CONTEXT: ContextVar[tuple[tuple[str, object], ...]] = ContextVar(
    "issuepilot_log_context", default=()
)


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Route issuepilot events to stderr and, with a state dir, to daily files.

    verbose is False/None (silent), True or "high" (every event), or "low"
    (session lifecycle events and warnings).
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    mode = _verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_UtcDailyFileHandler(base_dir=state_dir))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if mode == "low":
            handler.addFilter(_LifecycleFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@contextmanager
def log_context(**fields: object) -> Iterator[None]:
    """Attach fields (session, issue, kind) to every event logged in the block.

    Nested blocks add to the enclosing fields; None values are skipped.
    """
    merged = dict(_CONTEXT.get())
    merged.update((key, value) for key, value in fields.items() if value is not None)
    token = _CONTEXT.set(tuple(merged.items()))
    try:
        yield
    finally:
        _CONTEXT.reset(token)


def current_log_context() -> dict[str, object]:
    return dict(_CONTEXT.get())


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.INFO, event, fields)


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.WARNING, event, fields)


def format_event(event: str, fields: Mapping[str, object]) -> str:
    pairs = [("event", event), *sorted(fields.items())]
    return " ".join(f"{key}={_field_text(value)}" for key, value in pairs)


def _emit(logger: logging.Logger, level: int, event: str, fields: dict[str, object]) -> None:
    if not logger.isEnabledFor(level):
        return
    # Explicit fields win over the surrounding context.
    merged = {**dict(_CONTEXT.get()), **fields}
    logger.log(
        level,
        format_event(event, merged),
        extra={"event_name": event, "event_fields": merged},
        stacklevel=3,
    )


def _field_text(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, Path):
        value = str(value)
    elif isinstance(value, tuple | list) and all(isinstance(item, str | int) for item in value):
        # Label names and similar short lists.
        value = ",".join(str(item) for item in value)
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"

    text = " ".join(value.split())
    if not text:
        return "<empty>"
    if len(text) > _MAX_VALUE_LEN:
        text = f"{text[:_MAX_VALUE_LEN]}..."
    if any(ch.isspace() or ch in '="' for ch in text):
        return json.dumps(text)
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    key: object = verbose.strip().lower() if isinstance(verbose, str) else verbose
    try:
        return _VERBOSE_MODES[key]
    except KeyError:
        raise ValueError(f"Unsupported verbose mode: {verbose!r}") from None


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class _LifecycleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event_name", None) in _LIFECYCLE_EVENTS


class _UtcDailyFileHandler(logging.FileHandler):
    """Append records to <base_dir>/logs/<UTC date>.log, switching files at midnight UTC."""

    def __init__(self, *, base_dir: Path) -> None:
        self._logs_dir = base_dir / "logs"
        self._date_key = _utc_date_key()
        super().__init__(self._path_for(self._date_key), encoding="utf-8", delay=True)

    @property
    def current_path(self) -> Path:
        return Path(self.baseFilename)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._switch_date_if_needed()
            super().emit(record)
        except OSError:
            self.handleError(record)

    def _open(self) -> TextIOWrapper:
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        return super()._open()

    def _switch_date_if_needed(self) -> None:
        date_key = _utc_date_key()
        if date_key == self._date_key:
            return
        if self.stream is not None:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self._date_key = date_key
        self.baseFilename = str(self._path_for(date_key))

    def _path_for(self, date_key: str) -> Path:
        return (self._logs_dir / f"{date_key}.log").absolute()
