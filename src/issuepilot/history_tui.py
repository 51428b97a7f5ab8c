from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any
import webbrowser

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen, Screen
from textual.widgets import DataTable, Footer, Header, Static

from issuepilot.engine import SessionEngine
from issuepilot.models import (
    AnalysisResult,
    CanonicalStatus,
    ResolutionResult,
    SessionKind,
    SessionRecord,
    SessionView,
)
from issuepilot.results import confidence_level, recommends_resolution


_KIND_FILTERS: tuple[SessionKind | None, ...] = (None, "analysis", "resolution")
_STATUS_FILTERS: tuple[CanonicalStatus | None, ...] = (
    None,
    "running",
    "blocked",
    "finished",
    "expired",
)


@dataclass(frozen=True)
class _DetailField:
    label: str
    value: str
    url: str | None = None


class _DetailFieldTable(DataTable):
    """Use DataTable Enter to activate the selected detail field."""

    def action_select_cursor(self) -> None:
        screen = self.screen
        if isinstance(screen, _SessionDetailModal):
            screen.action_activate()


class _SessionDetailModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("enter", "activate", "Open"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #detail-dialog {
        width: 90%;
        height: 80%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #detail-title {
        text-style: bold;
        margin-bottom: 1;
    }
    #detail-fields-table {
        height: 1fr;
        margin-bottom: 1;
    }
    #detail-body-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(self, *, title: str, body: str, fields: tuple[_DetailField, ...]) -> None:
        super().__init__()
        self._title = title
        self._body = body
        self._fields = fields

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self._title, id="detail-title", markup=False)
            yield _DetailFieldTable(id="detail-fields-table")
            with VerticalScroll(id="detail-body-scroll"):
                yield Static(self._body, id="detail-body", markup=False)
            yield Static("Enter opens a link. Press Esc or q to close.", id="detail-hint")

    def on_mount(self) -> None:
        table = self.query_one("#detail-fields-table", DataTable)
        table.add_columns("Field", "Value")
        for field in self._fields:
            table.add_row(field.label, Text(field.value))
        if table.row_count > 0:
            table.move_cursor(row=0, column=1, animate=False)
        table.focus()

    def action_activate(self) -> None:
        table = self.query_one("#detail-fields-table", DataTable)
        row_index = table.cursor_row
        if row_index < 0 or row_index >= len(self._fields):
            return
        selected = self._fields[row_index]
        if selected.url is None:
            return
        try:
            webbrowser.open_new_tab(selected.url)
        except webbrowser.Error:
            self.app.notify(f"Could not open {selected.url}", severity="warning")

    def action_close(self) -> None:
        self.dismiss(None)


class _SessionsTable(DataTable):
    """Enter on a session row opens its detail view."""

    def action_select_cursor(self) -> None:
        super().action_select_cursor()
        app = self.app
        if isinstance(app, HistoryApp):
            app.action_show_detail()


class HistoryApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("k", "cycle_kind", "Kind"),
        Binding("s", "cycle_status", "Status"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        height: 1;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        engine: SessionEngine,
        refresh_seconds: float = 5.0,
        row_limit: int = 100,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._kind_filter: SessionKind | None = None
        self._status_filter: CanonicalStatus | None = None
        self._rows: tuple[SessionRecord, ...] = ()

    @property
    def rows(self) -> tuple[SessionRecord, ...]:
        return self._rows

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield _SessionsTable(id="sessions-table")
        yield Footer()

    def on_mount(self) -> None:
        table = self._base_table()
        table.cursor_type = "row"
        table.add_columns("Created", "Kind", "Status", "Issue", "Confidence", "Session", "Result")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_kind(self) -> None:
        self._kind_filter = _next_filter(self._kind_filter, _KIND_FILTERS)
        self.refresh_data()

    def action_cycle_status(self) -> None:
        self._status_filter = _next_filter(self._status_filter, _STATUS_FILTERS)
        self.refresh_data()

    def action_show_detail(self) -> None:
        if isinstance(self.screen, _SessionDetailModal):
            return
        table = self._base_table()
        row_index = table.cursor_row
        if row_index < 0 or row_index >= len(self._rows):
            return
        view = self._engine.describe_session(self._rows[row_index].session_id)
        self.push_screen(
            _SessionDetailModal(
                title=_detail_title(view),
                body=_detail_body(view),
                fields=_detail_fields(view),
            )
        )

    def refresh_data(self) -> None:
        self._rows = self._engine.list_sessions(
            kind=self._kind_filter,
            status=self._status_filter,
            limit=self._row_limit,
        )
        self._base_screen().query_one("#summary", Static).update(
            _summary_text(
                kind_filter=self._kind_filter,
                status_filter=self._status_filter,
                count=len(self._rows),
            )
        )
        table = self._base_table()
        previous_row = table.cursor_row if table.row_count > 0 else 0
        table.clear(columns=False)
        for row in self._rows:
            table.add_row(
                row.created_at,
                row.kind or "-",
                row.status,
                str(row.issue_id),
                str(row.confidence_score) if row.confidence_score is not None else "-",
                row.session_id,
                _result_summary(row),
            )
        if table.row_count > 0:
            table.move_cursor(row=min(previous_row, table.row_count - 1), animate=False)

    def _base_screen(self) -> Screen[Any]:
        if self.screen_stack:
            return self.screen_stack[0]
        return self.screen

    def _base_table(self) -> DataTable:
        return self._base_screen().query_one("#sessions-table", DataTable)


def run_history_tui(*, engine: SessionEngine, refresh_seconds: float, row_limit: int) -> None:
    HistoryApp(engine=engine, refresh_seconds=refresh_seconds, row_limit=row_limit).run()


def _next_filter(current: Any, options: tuple[Any, ...]) -> Any:
    index = options.index(current) if current in options else 0
    return options[(index + 1) % len(options)]


def _summary_text(
    *,
    kind_filter: SessionKind | None,
    status_filter: CanonicalStatus | None,
    count: int,
) -> str:
    return (
        f"kind={kind_filter or 'all'} status={status_filter or 'all'} sessions={count}"
        "  (k: kind, s: status, r: refresh, enter: details)"
    )


def _result_summary(row: SessionRecord) -> str:
    if isinstance(row.result, AnalysisResult):
        return f"{row.result.type}/{row.result.complexity}"
    if isinstance(row.result, ResolutionResult):
        return row.result.pull_request_url or "no pull request"
    if row.result is not None:
        return "unparsed output"
    return "-"


def _detail_title(view: SessionView) -> str:
    issue = view.issue
    return f"{view.session.kind or 'session'} {view.session_id} for {issue.repo_full_name}#{issue.number}"


def _detail_fields(view: SessionView) -> tuple[_DetailField, ...]:
    session = view.session
    fields = [
        _DetailField("Issue", f"#{view.issue.number} {view.issue.title}", view.issue.html_url or None),
        _DetailField("Status", f"{session.status} ({session.native_status})"),
        _DetailField("Created", session.created_at),
        _DetailField("Updated", session.updated_at),
    ]
    if session.parent_session_id is not None:
        fields.append(_DetailField("Parent", session.parent_session_id))
    analysis = session.analysis_result
    if analysis is not None:
        fields.append(
            _DetailField(
                "Confidence",
                f"{analysis.confidence_score} ({confidence_level(analysis.confidence_score)})",
            )
        )
        fields.append(
            _DetailField(
                "Recommendation",
                "resolve" if recommends_resolution(analysis) else "needs more information",
            )
        )
    resolution = session.resolution_result
    if resolution is not None and resolution.pull_request_url:
        fields.append(
            _DetailField("Pull request", resolution.pull_request_url, resolution.pull_request_url)
        )
    if session.error_message:
        fields.append(_DetailField("Error", session.error_message))
    return tuple(fields)


def _detail_body(view: SessionView) -> str:
    lines: list[str] = []
    result = view.session.result
    if isinstance(result, AnalysisResult):
        lines.extend(
            [
                f"Type: {result.type}",
                f"Complexity: {result.complexity}",
                f"Strategy: {result.strategy}",
                f"Scope: {result.scope_analysis}",
                f"Reasoning: {result.reasoning}",
            ]
        )
    elif isinstance(result, ResolutionResult):
        lines.append(f"Summary: {result.summary}")
    elif result is not None:
        lines.append(f"Unparsed output: {json.dumps(result.to_payload())}")
    else:
        lines.append("No result recorded.")
    lines.append("")
    lines.append("Transcript:")
    if not view.messages:
        lines.append("  (no messages)")
    for message in view.messages:
        lines.append(f"  [{message.timestamp}] {message.origin}: {message.text}")
    return "\n".join(lines)
