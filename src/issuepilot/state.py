from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from issuepilot.errors import SessionConflict, SessionNotFound
from issuepilot.models import (
    AnalysisResult,
    CanonicalStatus,
    Issue,
    IssueState,
    Label,
    MessageEntry,
    MessageOrigin,
    SessionKind,
    SessionRecord,
    SessionResult,
)
from issuepilot.results import dump_result, load_result, result_kind


_SESSION_COLUMNS = """
    session_id,
    issue_id,
    kind,
    status,
    native_status,
    result_kind,
    result_json,
    confidence_score,
    error_message,
    prompt,
    prompt_overridden,
    parent_session_id,
    created_at,
    updated_at
"""
_ISSUE_COLUMNS = """
    issue_id,
    number,
    owner,
    repo,
    title,
    body,
    state,
    labels_json,
    html_url,
    created_at,
    updated_at
"""
_CANONICAL_STATUSES = ("running", "blocked", "finished", "expired")


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issues (
                    issue_id INTEGER PRIMARY KEY,
                    number INTEGER NOT NULL,
                    owner TEXT NOT NULL,
                    repo TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT,
                    state TEXT NOT NULL,
                    labels_json TEXT NOT NULL DEFAULT '[]',
                    html_url TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    cached_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_issues_repo_number
                ON issues(owner, repo, number)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_sessions (
                    session_id TEXT PRIMARY KEY,
                    issue_id INTEGER NOT NULL,
                    kind TEXT,
                    status TEXT NOT NULL,
                    native_status TEXT NOT NULL,
                    result_kind TEXT,
                    result_json TEXT,
                    confidence_score INTEGER,
                    error_message TEXT,
                    prompt TEXT NOT NULL,
                    prompt_overridden INTEGER NOT NULL DEFAULT 0,
                    parent_session_id TEXT,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            # At most one running session per (issue, kind).
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_agent_sessions_one_running
                ON agent_sessions(issue_id, kind)
                WHERE status = 'running'
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_agent_sessions_issue_created
                ON agent_sessions(issue_id, created_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_messages (
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    origin TEXT NOT NULL,
                    text TEXT NOT NULL,
                    recorded_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (session_id, position)
                )
                """
            )

    def upsert_issue(self, issue: Issue) -> None:
        labels_json = json.dumps([{"name": label.name, "color": label.color} for label in issue.labels])
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO issues(
                    issue_id,
                    number,
                    owner,
                    repo,
                    title,
                    body,
                    state,
                    labels_json,
                    html_url,
                    created_at,
                    updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(issue_id) DO UPDATE SET
                    number=excluded.number,
                    owner=excluded.owner,
                    repo=excluded.repo,
                    title=excluded.title,
                    body=excluded.body,
                    state=excluded.state,
                    labels_json=excluded.labels_json,
                    html_url=excluded.html_url,
                    created_at=excluded.created_at,
                    updated_at=excluded.updated_at,
                    cached_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    issue.issue_id,
                    issue.number,
                    issue.owner,
                    issue.repo,
                    issue.title,
                    issue.body,
                    issue.state,
                    labels_json,
                    issue.html_url,
                    issue.created_at,
                    issue.updated_at,
                ),
            )

    def get_issue(self, issue_id: int) -> Issue | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE issue_id = ?",
                (issue_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_issue_row(row)

    def find_issue(self, owner: str, repo: str, number: int) -> Issue | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ISSUE_COLUMNS}
                FROM issues
                WHERE owner = ? AND repo = ? AND number = ?
                """,
                (owner, repo, number),
            ).fetchone()
        if row is None:
            return None
        return _parse_issue_row(row)

    def find_running(self, issue_id: int, kind: SessionKind) -> SessionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM agent_sessions
                WHERE issue_id = ? AND kind = ? AND status = 'running'
                LIMIT 1
                """,
                (issue_id, kind),
            ).fetchone()
        if row is None:
            return None
        return _parse_session_row(row)

    def insert_session(
        self,
        *,
        session_id: str,
        issue_id: int,
        kind: SessionKind,
        native_status: str,
        prompt: str,
        prompt_overridden: bool = False,
        parent_session_id: str | None = None,
    ) -> SessionRecord:
        """Insert a running session row.

        Raises SessionConflict when the session id already exists or when the
        issue already has a running session of the same kind.
        """
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO agent_sessions(
                        session_id,
                        issue_id,
                        kind,
                        status,
                        native_status,
                        prompt,
                        prompt_overridden,
                        parent_session_id
                    )
                    VALUES(?, ?, ?, 'running', ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        issue_id,
                        kind,
                        native_status,
                        prompt,
                        1 if prompt_overridden else 0,
                        parent_session_id,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise SessionConflict(
                f"Cannot record {kind} session {session_id} for issue {issue_id}: {exc}"
            ) from exc
        record = self.get_session(session_id)
        if record is None:
            raise RuntimeError("agent_sessions row disappeared after insert")
        return record

    def update_session(
        self,
        session_id: str,
        *,
        status: CanonicalStatus,
        native_status: str,
        result: SessionResult | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Apply a status observation to a running row.

        Terminal rows are left untouched apart from updated_at. Returns True
        when the row was still running and the observation was written.
        """
        stored_kind: str | None = None
        result_json: str | None = None
        confidence_score: int | None = None
        if result is not None:
            stored_kind = result_kind(result)
            result_json = dump_result(result)
            if isinstance(result, AnalysisResult):
                confidence_score = result.confidence_score
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE agent_sessions
                SET status = ?,
                    native_status = ?,
                    result_kind = ?,
                    result_json = ?,
                    confidence_score = ?,
                    error_message = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE session_id = ? AND status = 'running'
                """,
                (
                    status,
                    native_status,
                    stored_kind,
                    result_json,
                    confidence_score,
                    error_message,
                    session_id,
                ),
            )
            if cursor.rowcount > 0:
                return True
            touched = conn.execute(
                """
                UPDATE agent_sessions
                SET updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE session_id = ?
                """,
                (session_id,),
            )
            if touched.rowcount == 0:
                raise SessionNotFound(session_id)
        return False

    def fill_missing_result(self, session_id: str, result: SessionResult) -> bool:
        """Record output that arrived after the row went terminal without any."""
        confidence_score = result.confidence_score if isinstance(result, AnalysisResult) else None
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE agent_sessions
                SET result_kind = ?,
                    result_json = ?,
                    confidence_score = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE session_id = ? AND status != 'running' AND result_json IS NULL
                """,
                (result_kind(result), dump_result(result), confidence_score, session_id),
            )
        return cursor.rowcount > 0

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_session_row(row)

    def list_by_issue(
        self, issue_id: int, *, kind: SessionKind | None = None
    ) -> tuple[SessionRecord, ...]:
        with self._lock, self._connect() as conn:
            if kind is None:
                rows = conn.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM agent_sessions
                    WHERE issue_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (issue_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM agent_sessions
                    WHERE issue_id = ? AND kind = ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (issue_id, kind),
                ).fetchall()
        return tuple(_parse_session_row(row) for row in rows)

    def list_all(
        self,
        *,
        kind: SessionKind | None = None,
        status: CanonicalStatus | None = None,
        issue_id: int | None = None,
        limit: int = 20,
    ) -> tuple[SessionRecord, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if issue_id is not None:
            clauses.append("issue_id = ?")
            params.append(issue_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM agent_sessions
                {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_session_row(row) for row in rows)

    def append_messages(self, session_id: str, entries: Iterable[MessageEntry]) -> int:
        rows = [
            (session_id, entry.position, entry.timestamp, entry.origin, entry.text)
            for entry in entries
        ]
        if not rows:
            return 0
        with self._lock, self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO session_messages(session_id, position, timestamp, origin, text)
                VALUES(?, ?, ?, ?, ?)
                """,
                rows,
            )
            inserted = conn.total_changes - before
        return inserted

    def list_messages(self, session_id: str) -> tuple[MessageEntry, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT position, timestamp, origin, text
                FROM session_messages
                WHERE session_id = ?
                ORDER BY position ASC
                """,
                (session_id,),
            ).fetchall()
        messages: list[MessageEntry] = []
        for position, timestamp, origin, text in rows:
            if not isinstance(position, int):
                raise RuntimeError("Invalid position value stored in session_messages")
            if origin not in ("agent", "operator"):
                raise RuntimeError(f"Invalid origin value stored in session_messages: {origin!r}")
            messages.append(
                MessageEntry(
                    position=position,
                    timestamp=str(timestamp),
                    origin=cast(MessageOrigin, origin),
                    text=str(text),
                )
            )
        return tuple(messages)


def _parse_issue_row(row: tuple[object, ...]) -> Issue:
    (
        issue_id,
        number,
        owner,
        repo,
        title,
        body,
        state,
        labels_json,
        html_url,
        created_at,
        updated_at,
    ) = row
    if not isinstance(issue_id, int):
        raise RuntimeError("Invalid issue_id value stored in issues")
    if not isinstance(number, int):
        raise RuntimeError("Invalid number value stored in issues")
    if state not in ("open", "closed"):
        raise RuntimeError(f"Invalid state value stored in issues: {state!r}")
    if body is not None and not isinstance(body, str):
        raise RuntimeError("Invalid body value stored in issues")
    if not isinstance(labels_json, str):
        raise RuntimeError("Invalid labels_json value stored in issues")
    labels: list[Label] = []
    for entry in json.loads(labels_json):
        if isinstance(entry, dict) and isinstance(entry.get("name"), str):
            labels.append(Label(name=entry["name"], color=str(entry.get("color") or "")))
    return Issue(
        issue_id=issue_id,
        number=number,
        owner=str(owner),
        repo=str(repo),
        title=str(title),
        body=body,
        state=cast(IssueState, state),
        labels=tuple(labels),
        html_url=str(html_url),
        created_at=str(created_at),
        updated_at=str(updated_at),
    )


def _parse_session_row(row: tuple[object, ...]) -> SessionRecord:
    (
        session_id,
        issue_id,
        kind,
        status,
        native_status,
        stored_result_kind,
        result_json,
        confidence_score,
        error_message,
        prompt,
        prompt_overridden,
        parent_session_id,
        created_at,
        updated_at,
    ) = row
    if not isinstance(session_id, str):
        raise RuntimeError("Invalid session_id value stored in agent_sessions")
    if not isinstance(issue_id, int):
        raise RuntimeError("Invalid issue_id value stored in agent_sessions")
    if kind is not None and kind not in ("analysis", "resolution"):
        raise RuntimeError(f"Invalid kind value stored in agent_sessions: {kind!r}")
    if status not in _CANONICAL_STATUSES:
        raise RuntimeError(f"Invalid status value stored in agent_sessions: {status!r}")
    if confidence_score is not None and not isinstance(confidence_score, int):
        raise RuntimeError("Invalid confidence_score value stored in agent_sessions")
    if error_message is not None and not isinstance(error_message, str):
        raise RuntimeError("Invalid error_message value stored in agent_sessions")
    if parent_session_id is not None and not isinstance(parent_session_id, str):
        raise RuntimeError("Invalid parent_session_id value stored in agent_sessions")

    result: SessionResult | None = None
    if result_json is not None:
        if not isinstance(result_json, str) or not isinstance(stored_result_kind, str):
            raise RuntimeError("Invalid result value stored in agent_sessions")
        result = load_result(stored_result_kind, result_json)

    return SessionRecord(
        session_id=session_id,
        issue_id=issue_id,
        kind=cast(SessionKind | None, kind),
        status=cast(CanonicalStatus, status),
        native_status=str(native_status),
        result=result,
        confidence_score=confidence_score,
        error_message=error_message,
        prompt=str(prompt),
        prompt_overridden=bool(prompt_overridden),
        parent_session_id=parent_session_id,
        created_at=str(created_at),
        updated_at=str(updated_at),
    )
