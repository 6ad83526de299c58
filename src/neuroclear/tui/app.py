"""Interactive triage dashboard for neuroclear.

Layout: memory header, process table, detail panel for the highlighted row.
The app holds no triage state of its own; it renders EngineSnapshots and
forwards key presses to the engine as intents.
"""

import asyncio
from typing import Any

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.screen import ModalScreen, Screen
from textual.widgets import Button, DataTable, Footer, Label, Static
from textual.widgets.data_table import CellDoesNotExist, RowDoesNotExist

from neuroclear.config import Config
from neuroclear.engine import (
    CleanRequest,
    EngineSnapshot,
    Notification,
    NotificationKind,
    TriageEngine,
)
from neuroclear.formatting import (
    format_category,
    format_gb,
    format_mb,
    format_risk,
    format_safe,
    gauge_level,
    render_gauge,
    truncate,
)
from neuroclear.models import Category, EnrichmentState, ProcessRecord, RiskLevel
from neuroclear.service import ClassificationService, LookupService

NOTIFY_TIMEOUT = 4.0


class HeaderBar(Static):
    """Header showing memory gauge, scan mode and session status."""

    DEFAULT_CSS = """
    HeaderBar {
        height: 3;
        padding: 0 1;
        border: solid green;
        border-title-align: left;
    }

    HeaderBar Horizontal {
        height: 1;
        width: 100%;
    }

    HeaderBar #gauge-left {
        width: auto;
    }

    HeaderBar #gauge-right {
        width: 1fr;
        text-align: right;
    }
    """

    def compose(self) -> ComposeResult:
        """Create header layout."""
        yield Horizontal(
            Label("", id="gauge-left"),
            Label("", id="gauge-right"),
        )

    def on_mount(self) -> None:
        self.border_title = "MEMORY"

    def update_from_snapshot(self, snapshot: EngineSnapshot) -> None:
        """Redraw gauge and status line."""
        try:
            gauge_left = self.query_one("#gauge-left", Label)
            gauge_right = self.query_one("#gauge-right", Label)
        except NoMatches:
            return

        stats = snapshot.stats
        tui = self.app.config.tui
        level = gauge_level(
            stats.used_percent, tui.gauge_elevated_percent, tui.gauge_critical_percent
        )
        color = {"critical": "red", "elevated": "yellow"}.get(level, "green")
        self.styles.border = ("solid", color)

        gauge_left.update(
            f"RAM {render_gauge(stats.used_percent)} {stats.used_percent:5.1f}%   "
            f"{format_gb(stats.used_memory_gb)} / {format_gb(stats.total_memory_gb)}"
        )

        if snapshot.scanning:
            status = "ANALYZING..."
        elif snapshot.analyzed:
            status = "analyzed"
        else:
            status = "not analyzed"
        gauge_right.update(
            f"{stats.process_count} procs   "
            f"{len(snapshot.selected)} selected ({format_mb(snapshot.selected_memory_mb)})   "
            f"mode: {snapshot.mode.value}   {status}"
        )


class ProcessTable(Static):
    """Table of processes with selection marks and classification columns.

    Row keys are record ids, so the cursor follows a record across refreshes.
    """

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
        border-title-align: left;
    }

    ProcessTable DataTable {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._table: DataTable | None = None

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table", zebra_stripes=True, cursor_type="row")

    def on_mount(self) -> None:
        """Set up table columns."""
        self.border_title = "PROCESSES"
        self._table = self.query_one("#process-table", DataTable)
        self._table.add_columns("", "Process", "PID", "Memory", "CPU", "Category", "Risk", "Safe")

    @property
    def highlighted_id(self) -> str | None:
        """Record id under the cursor, if any."""
        if not self._table or self._table.row_count == 0:
            return None
        try:
            row_key, _ = self._table.coordinate_to_cell_key(self._table.cursor_coordinate)
        except CellDoesNotExist:
            return None
        return row_key.value

    def _risk_style(self, risk: RiskLevel | None) -> str:
        colors = self.app.config.tui.colors.risk
        return {
            RiskLevel.LOW: colors.low,
            RiskLevel.MEDIUM: colors.medium,
            RiskLevel.HIGH: colors.high,
            RiskLevel.CRITICAL: colors.critical,
        }.get(risk, colors.unknown)

    def _category_style(self, category: Category | None) -> str:
        colors = self.app.config.tui.colors.categories
        return {
            Category.SYSTEM: colors.system,
            Category.USER: colors.user,
            Category.BACKGROUND: colors.background,
            Category.BLOATWARE: colors.bloatware,
        }.get(category, colors.unknown)

    def _make_row(self, record: ProcessRecord, selected: bool) -> list[Text]:
        """Build styled row cells."""
        name_length = self.app.config.tui.name_truncate_length
        risk_style = self._risk_style(record.risk_level)
        name_style = f"bold {risk_style}" if record.is_critical else ""
        return [
            Text("[x]" if selected else "[ ]", style="bold green" if selected else "dim"),
            Text(truncate(record.name, name_length), style=name_style),
            Text(str(record.pid), style="dim"),
            Text(format_mb(record.memory_mb)),
            Text(f"{record.cpu_percent:.1f}%", style="dim"),
            Text(format_category(record), style=self._category_style(record.category)),
            Text(format_risk(record), style=risk_style),
            Text(format_safe(record)),
        ]

    def update_records(self, snapshot: EngineSnapshot) -> None:
        """Replace rows, keeping the cursor on the same record when possible."""
        if not self._table:
            return

        current = self.highlighted_id
        cursor_row = self._table.cursor_row

        self._table.clear()
        for record in snapshot.records:
            self._table.add_row(
                *self._make_row(record, record.id in snapshot.selected), key=record.id
            )

        if self._table.row_count == 0:
            return
        if current is not None:
            try:
                cursor_row = self._table.get_row_index(current)
            except RowDoesNotExist:
                pass
        self._table.move_cursor(row=min(cursor_row, self._table.row_count - 1))


class DetailPanel(Static):
    """Description, reasoning and lookup text for the highlighted record."""

    DEFAULT_CSS = """
    DetailPanel {
        height: 9;
        padding: 0 1;
        border: solid $primary;
        border-title-align: left;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "DETAILS"
        self.update("[dim]Highlight a process and press Enter for details.[/]")

    def show(self, record: ProcessRecord | None, expanded: bool) -> None:
        if record is None:
            self.update("[dim]No process selected.[/]")
            return

        lines = [f"[bold]{escape(record.name)}[/]  [dim]PID {record.pid}  {record.id}[/]"]
        if record.classification is None:
            lines.append("[dim]Not analyzed yet. Press s to scan.[/]")
        else:
            lines.append(
                f"{format_category(record)} / risk {format_risk(record)} / "
                f"safe to kill: {format_safe(record)}"
            )
            if record.description:
                lines.append(escape(record.description))
            if record.classification.reasoning:
                lines.append(f"[dim]{escape(record.classification.reasoning)}[/]")

        if expanded:
            enrichment = record.enrichment
            if enrichment.state is EnrichmentState.PENDING:
                lines.append("[yellow]Looking up details...[/]")
            elif enrichment.state is EnrichmentState.FAILED:
                lines.append(f"[red]{escape(enrichment.text or '')}[/] [dim](press r to retry)[/]")
            elif enrichment.text:
                lines.append(escape(enrichment.text))
        self.update("\n".join(lines))


class ConfirmCleanScreen(ModalScreen[bool]):
    """Confirmation dialog for a pending clean."""

    DEFAULT_CSS = """
    ConfirmCleanScreen {
        align: center middle;
    }

    ConfirmCleanScreen > Vertical {
        width: 64;
        height: auto;
        max-height: 80%;
        padding: 1 2;
        border: thick $error;
        background: $surface;
    }

    ConfirmCleanScreen #confirm-list {
        height: auto;
        max-height: 16;
        margin: 1 0;
    }

    ConfirmCleanScreen Horizontal {
        height: auto;
        align: center middle;
    }

    ConfirmCleanScreen Button {
        margin: 0 1;
    }
    """

    BINDINGS = [
        ("y", "confirm", "Confirm"),
        ("n", "cancel", "Cancel"),
        ("escape", "cancel", "Cancel"),
    ]

    def __init__(self, request: CleanRequest) -> None:
        super().__init__()
        self.request = request

    def compose(self) -> ComposeResult:
        listing = "\n".join(
            f"  {escape(r.name)} ({format_mb(r.memory_mb)})" for r in self.request.records
        )
        yield Vertical(
            Label(f"[bold]Terminate {len(self.request.records)} processes?[/]"),
            Static(listing, id="confirm-list"),
            Label(f"Memory to free: [bold green]{format_mb(self.request.total_memory_mb)}[/]"),
            Horizontal(
                Button("Terminate", variant="error", id="confirm"),
                Button("Cancel", id="cancel"),
            ),
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "confirm")

    def action_confirm(self) -> None:
        self.dismiss(True)

    def action_cancel(self) -> None:
        self.dismiss(False)


class NeuroclearApp(App):
    """Process triage dashboard."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-area {
        height: 1fr;
    }
    """

    BINDINGS = [
        ("s", "scan", "Scan"),
        ("m", "toggle_mode", "Mode"),
        ("space", "toggle_select", "Select"),
        ("c", "clean", "Clean"),
        ("enter", "expand", "Details"),
        ("r", "retry_lookup", "Retry lookup"),
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        config: Config | None = None,
        records: list[ProcessRecord] | None = None,
        service: ClassificationService | None = None,
        lookup: LookupService | None = None,
        source: str | None = None,
    ):
        super().__init__()
        self.config = config or Config.load()
        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()

        if records is None:
            from neuroclear.inventory import load_inventory

            records = load_inventory(self.config.inventory, source=source)
        if service is None:
            from neuroclear.service import GeminiService

            service = GeminiService(self.config.service)
            lookup = lookup or service

        self.engine = TriageEngine.from_config(
            records,
            service,
            self.config,
            lookup=lookup,
            on_change=self._on_snapshot,
            on_notify=self._on_notification,
        )
        self.snapshot = self.engine.snapshot()
        self._scan_task: asyncio.Task | None = None

    def compose(self) -> ComposeResult:
        """Create the TUI layout."""
        yield HeaderBar(id="header")
        yield ProcessTable(id="main-area")
        yield DetailPanel(id="detail")
        yield Footer()

    def on_mount(self) -> None:
        """Initialize on startup."""
        self.title = "neuroclear"
        self.sub_title = "Process Triage"
        self._render_snapshot(self.snapshot)
        try:
            self.query_one("#process-table", DataTable).focus()
        except NoMatches:
            pass

        if not getattr(self.engine.service, "has_api_key", True):
            self.notify(
                f"No API key found. Set {self.config.service.api_key_env} to enable analysis.",
                severity="warning",
            )

    # ─────────────────────────────────────────────────────────────────────
    # Engine callbacks
    # ─────────────────────────────────────────────────────────────────────

    def _on_snapshot(self, snapshot: EngineSnapshot) -> None:
        self.snapshot = snapshot
        self._render_snapshot(snapshot)

    def _on_notification(self, notification: Notification) -> None:
        title = {
            NotificationKind.CLEAN_COMPLETED: "Cleaned",
            NotificationKind.NOT_CONFIGURED: "Not configured",
            NotificationKind.SCAN_FAILED: "Analysis failed",
        }.get(notification.kind, "")
        self.notify(
            notification.message,
            title=title,
            severity=notification.severity,
            timeout=NOTIFY_TIMEOUT,
        )

    def _dashboard(self) -> Screen:
        """The base screen holding the dashboard widgets.

        Queries go here rather than to the active screen, which is the
        confirmation dialog while a clean is pending.
        """
        if not self.screen_stack:
            raise NoMatches("Dashboard not mounted")
        return self.screen_stack[0]

    def _render_snapshot(self, snapshot: EngineSnapshot) -> None:
        try:
            self._dashboard().query_one("#header", HeaderBar).update_from_snapshot(snapshot)
            self._dashboard().query_one("#main-area", ProcessTable).update_records(snapshot)
        except NoMatches:
            return
        self._refresh_detail()

    def _refresh_detail(self) -> None:
        try:
            table = self._dashboard().query_one("#main-area", ProcessTable)
            panel = self._dashboard().query_one("#detail", DetailPanel)
        except NoMatches:
            return
        record_id = table.highlighted_id
        record = self.snapshot.get(record_id) if record_id else None
        panel.show(record, expanded=record_id in self.snapshot.expanded)

    def _highlighted_id(self) -> str | None:
        try:
            return self._dashboard().query_one("#main-area", ProcessTable).highlighted_id
        except NoMatches:
            return None

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self._refresh_detail()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.row_key.value is not None:
            self.engine.toggle_expanded(event.row_key.value)

    # ─────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────

    def action_scan(self) -> None:
        if self.engine.scanning:
            self.notify("Analysis already in progress", severity="warning")
            return
        if self.snapshot.pending_clean is not None:
            return
        self._scan_task = asyncio.create_task(self.engine.scan())

    def action_toggle_mode(self) -> None:
        mode = self.engine.toggle_mode()
        self.notify(f"Scan mode: {mode.value}", timeout=NOTIFY_TIMEOUT)

    def action_toggle_select(self) -> None:
        record_id = self._highlighted_id()
        if record_id is None:
            return
        if not self.engine.toggle(record_id):
            record = self.snapshot.get(record_id)
            if record is not None and record.is_critical:
                self.notify("Critical system processes cannot be selected", severity="warning")

    def action_clean(self) -> None:
        request = self.engine.initiate_clean()
        if request is None:
            if self.engine.scanning:
                self.notify("Wait for the analysis to finish", severity="warning")
            elif not self.snapshot.selected:
                self.notify("Select processes to clean first", severity="warning")
            return
        self.push_screen(ConfirmCleanScreen(request), self._on_clean_dismissed)

    def _on_clean_dismissed(self, confirmed: bool | None) -> None:
        if confirmed:
            self.engine.confirm()
        else:
            self.engine.cancel()

    def action_expand(self) -> None:
        record_id = self._highlighted_id()
        if record_id is not None:
            self.engine.toggle_expanded(record_id)

    def action_retry_lookup(self) -> None:
        record_id = self._highlighted_id()
        if record_id is not None:
            self.engine.expand(record_id, retry=True)


def run_tui(config: Config | None = None, source: str | None = None) -> None:
    """Run the TUI application."""
    from neuroclear import logging as nc_log

    config = config or Config.load()
    nc_log.configure(config, source="tui")
    app = NeuroclearApp(config, source=source)
    app.run()
