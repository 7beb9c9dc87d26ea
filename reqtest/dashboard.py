"""Interactive TUI dashboard for reqtest listen mode."""

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Deque, Tuple

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.widgets import Header, Footer, Static, DataTable, RichLog
from textual.containers import Vertical
from textual.binding import Binding

if TYPE_CHECKING:
    from reqtest.listener import RequestListener


# Log records waiting to be written to the log panel. Server threads and
# startup code append here; the UI thread drains it.
_log_buffer: Deque[Tuple[str, int]] = deque(maxlen=5000)

# Rows shown in the request table
MAX_TABLE_ROWS = 200


def _human_bytes(n: int) -> str:
    """Format byte count as human-readable string."""
    if n < 1024:
        return f"{n} B"
    elif n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    elif n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    else:
        return f"{n / (1024 * 1024 * 1024):.1f} GB"


def _human_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    return f"{seconds:.2f} s"


def format_totals(stats: dict) -> str:
    """Markup for the totals line above the request table."""
    text = (
        f"Requests: [bold]{stats['requests_received']}[/bold] | "
        f"Received: [bold]{_human_bytes(stats['bytes_received'])}[/bold]"
    )
    if stats["errors"]:
        text += f" | [red]Errors: {stats['errors']}[/red]"
    return text


class LogHandler(logging.Handler):
    """Logging handler that queues records for the dashboard log panel."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            _log_buffer.append((self.format(record), record.levelno))
        except Exception:
            self.handleError(record)


class RequestDataTable(DataTable):
    """A DataTable widget listing the most recent requests."""

    def __init__(self, listener: "RequestListener", **kwargs):
        super().__init__(**kwargs)
        self.listener = listener
        self.cursor_type = "row"
        self.zebra_stripes = True

    def on_mount(self) -> None:
        self.add_columns("#", "Time", "Method", "Path", "Client", "Body", "Status", "Took")
        self.refresh_data()

    def refresh_data(self) -> None:
        """Refresh the table from the listener's history, newest first."""
        old_cursor_row = self.cursor_row
        self.clear()

        for entry in self.listener.recent_requests(MAX_TABLE_ROWS):
            status = entry["status"]
            if status == 200:
                status_display = f"[green]{status}[/green]"
            else:
                status_display = f"[red]{status}[/red]"
            self.add_row(
                str(entry["id"]),
                time.strftime("%H:%M:%S", time.localtime(entry["time"])),
                entry["method"],
                Text(entry["path"]),
                Text(entry["client"]),
                _human_bytes(entry["bytes"]),
                status_display,
                _human_duration(entry["elapsed"]),
            )

        if self.row_count > 0 and old_cursor_row is not None:
            self.move_cursor(row=min(old_cursor_row, self.row_count - 1), animate=False)


class LogPanel(Vertical):
    """A collapsible log panel."""

    def __init__(self, *children, **kwargs):
        super().__init__(*children, **kwargs)
        self._expanded = True

    def toggle(self) -> None:
        self._expanded = not self._expanded
        self.display = self._expanded

    def on_mount(self) -> None:
        self.display = True


class DashboardApp(App):
    """The main dashboard application."""

    TITLE = "reqtest"
    CSS = """
    #logs_container {
        height: 30%;
        dock: bottom;
    }
    RequestDataTable {
        height: 1fr;
    }
    #main_content {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("l", "toggle_logs", "Toggle logs"),
        Binding("c", "clear", "Clear"),
    ]

    def __init__(self, listener: "RequestListener", **kwargs):
        super().__init__(**kwargs)
        self.listener = listener

    def compose(self) -> ComposeResult:
        """Compose the UI."""
        delay = self.listener.resp_delay
        delay_display = f"{delay:g}s" if delay > 0 else "none"
        yield Header()
        yield Vertical(
            Static(
                f"[bold cyan]Listening on: {escape(self.listener.address)}[/bold cyan] | "
                f"Response delay: {delay_display}",
                id="listen_info",
            ),
            Static("", id="totals"),
            Static("Press [bold]C[/bold] to clear, [bold]L[/bold] for logs, [bold]Q[/bold] to quit", id="help"),
            RequestDataTable(self.listener, id="requests_table"),
            Static("", id="status"),
            LogPanel(
                Static("[bold]Logs[/bold] (press L to close)", id="logs_title"),
                RichLog(id="logs", markup=True, auto_scroll=True, highlight=True),
                id="logs_container",
            ),
            id="main_content",
        )
        yield Footer()

    def on_mount(self) -> None:
        self.set_interval(1, self.auto_refresh)
        self.update_totals()
        self.flush_logs()

    def add_log(self, message: str, level: int) -> None:
        """Add a log message to the log widget."""
        log_widget = self.query_one("#logs", RichLog)
        message = escape(message)

        if level >= logging.ERROR:
            message = f"[red]{message}[/red]"
        elif level >= logging.WARNING:
            message = f"[yellow]{message}[/yellow]"

        log_widget.write(message)

    def flush_logs(self) -> None:
        """Write queued log records to the log panel."""
        while _log_buffer:
            try:
                msg, level = _log_buffer.popleft()
            except IndexError:
                break
            self.add_log(msg, level)

    def update_totals(self) -> None:
        self.query_one("#totals", Static).update(format_totals(self.listener.get_stats()))

    def auto_refresh(self) -> None:
        """Refresh the table and totals, and flush pending logs."""
        self.query_one("#requests_table", RequestDataTable).refresh_data()
        self.update_totals()
        self.flush_logs()

    def action_refresh(self) -> None:
        self.auto_refresh()
        self.query_one("#status", Static).update("[green]⟳ Refreshed[/green]")

    def action_toggle_logs(self) -> None:
        log_panel = self.query_one("#logs_container", LogPanel)
        log_panel.toggle()

    def action_clear(self) -> None:
        """Forget all requests received so far."""
        self.listener.clear_history()
        self.query_one("#requests_table", RequestDataTable).refresh_data()
        self.update_totals()
        self.query_one("#status", Static).update("[yellow]✗ History cleared[/yellow]")


def run_dashboard(listener: "RequestListener") -> None:
    """Run the dashboard app."""
    app = DashboardApp(listener)
    app.run()
