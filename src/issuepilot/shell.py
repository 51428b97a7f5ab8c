from __future__ import annotations

from pathlib import Path
import logging
import subprocess

from issuepilot.observability import log_warning_event


LOGGER = logging.getLogger("issuepilot.shell")


class CommandError(RuntimeError):
    def __init__(self, argv: list[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        log_warning_event(LOGGER, "command_missing", command=argv[0])
        raise CommandError(argv, 127, "", str(exc)) from exc

    if check and proc.returncode != 0:
        log_warning_event(
            LOGGER,
            "command_failed",
            command=" ".join(argv),
            exit_code=proc.returncode,
            stderr=_preview(proc.stderr),
            stdout=_preview(proc.stdout),
        )
        raise CommandError(argv, proc.returncode, proc.stdout, proc.stderr)
    return proc.stdout
