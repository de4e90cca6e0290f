"""Real-time CLI dashboard for gateway monitoring."""

from datetime import datetime
from threading import Lock

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from core.config import Config
from ui.log_utils import write_cli_log

console = Console()

STATUS_STYLES = {"unknown": "dim", "healthy": "green", "unhealthy": "red bold"}


class RequestInfo:
    """Info about a single forwarded request."""

    def __init__(
        self,
        backend: str,
        method: str,
        path: str,
        status: int,
        elapsed_ms: float,
        timestamp: datetime,
    ):
        self.backend = backend
        self.method = method
        self.path = path[:60] + "..." if len(path) > 60 else path
        self.status = status
        self.elapsed_ms = elapsed_ms
        self.timestamp = timestamp


class Dashboard:
    """Real-time dashboard showing backend health and recent traffic."""

    def __init__(self, config: Config):
        self.config = config
        self._lock = Lock()
        self._requests: list[RequestInfo] = []
        self._max_requests = 10
        self._request_count = {name: 0 for name in config.backends}
        self._health = {name: ("unknown", 0) for name in config.backends}
        self._errors: list[str] = []
        self._live: Live | None = None

    def start(self) -> "Dashboard":
        """Start the live dashboard."""
        self._live = Live(
            self._build_layout(),
            console=console,
            refresh_per_second=4,
            screen=False,
        )
        self._live.start()
        return self

    def stop(self) -> None:
        """Stop the live dashboard."""
        if self._live:
            self._live.stop()

    def log_request(
        self,
        backend: str,
        method: str,
        path: str,
        status: int,
        *,
        elapsed_ms: float,
    ) -> None:
        """Log a request relayed from a backend."""
        with self._lock:
            self._request_count[backend] = self._request_count.get(backend, 0) + 1
            info = RequestInfo(backend, method, path, status, elapsed_ms, datetime.now())
            self._requests.insert(0, info)
            self._requests = self._requests[: self._max_requests]
            write_cli_log(
                "REQUEST",
                f"{method} {path}",
                backend=backend,
                status=status,
                ms=f"{elapsed_ms:.1f}",
            )
            self._refresh()

    def log_error(self, route: str, status: int, message: str) -> None:
        """Log an error."""
        with self._lock:
            truncated = message[:50] + "..." if len(message) > 50 else message
            self._errors.insert(0, f"{route} {status}: {truncated}")
            self._errors = self._errors[:3]
            self._refresh()
            write_cli_log("ERROR", message[:200], route=route, status=status)

    def log_health(self, backend: str, status: str, failures: int) -> None:
        """Log a backend health transition."""
        with self._lock:
            self._health[backend] = (status, failures)
            self._refresh()
            write_cli_log("HEALTH", status, backend=backend, failures=failures)

    def _refresh(self) -> None:
        """Refresh the display."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Layout:
        """Build the dashboard layout."""
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=5),
        )

        layout["body"].split_row(
            Layout(name="backends", ratio=1),
            Layout(name="requests", ratio=2),
        )

        layout["header"].update(self._build_header())
        layout["backends"].update(self._build_backends_panel())
        layout["requests"].update(self._build_requests_panel())
        layout["footer"].update(self._build_footer())

        return layout

    def _build_header(self) -> Panel:
        """Build header with stats."""
        stats = Text()
        stats.append("CRUD Gateway", style="bold cyan")
        for name, count in self._request_count.items():
            stats.append("  |  ")
            stats.append(f"{name}: {count}", style="blue")
        stats.append("  |  ")
        stats.append(f"Port: {self.config.server.port}", style="dim")

        return Panel(stats, style="cyan")

    def _build_backends_panel(self) -> Panel:
        """Build backend health panel."""
        table = Table(show_header=True, header_style="bold", expand=True, box=None)
        table.add_column("Backend")
        table.add_column("Status")
        table.add_column("Fails", justify="right", width=5)

        for name, backend in self.config.backends.items():
            status, failures = self._health.get(name, ("unknown", 0))
            table.add_row(
                f"{name}\n[dim]{backend.base_url}[/dim]",
                Text(status, style=STATUS_STYLES.get(status, "")),
                str(failures),
            )

        return Panel(table, title="[green]Backends[/green]", border_style="green")

    def _build_requests_panel(self) -> Panel:
        """Build recent requests panel."""
        if self._requests:
            table = Table(show_header=True, header_style="bold", expand=True, box=None)
            table.add_column("Time", style="dim", width=8)
            table.add_column("Backend", width=10)
            table.add_column("Request", ratio=2)
            table.add_column("Status", width=6)
            table.add_column("ms", justify="right", width=8)

            for req in self._requests:
                status_style = "red" if req.status >= 500 else "yellow" if req.status >= 400 else "green"
                table.add_row(
                    req.timestamp.strftime("%H:%M:%S"),
                    req.backend,
                    Text(f"{req.method} {req.path}"),
                    Text(str(req.status), style=status_style),
                    f"{req.elapsed_ms:.1f}",
                )

            content = table
        else:
            content = Text("Waiting for requests...", style="dim")

        return Panel(content, title="[blue]Recent Requests[/blue]", border_style="blue")

    def _build_footer(self) -> Panel:
        """Build footer with errors and help."""
        if self._errors:
            error_text = Text()
            for err in self._errors:
                error_text.append("! ", style="red bold")
                error_text.append(err + "\n", style="red")
            content = error_text
        else:
            content = Text(
                f"Send requests to http://{self.config.server.host}:{self.config.server.port}/api/...",
                style="dim",
            )

        return Panel(content, title="[dim]Status[/dim]", border_style="dim")


class ConsoleLogger:
    """Plain line-per-event logger for headless runs (containers, CI)."""

    def __init__(self, out: Console | None = None):
        self._console = out or console
        self._lock = Lock()

    def log_request(
        self,
        backend: str,
        method: str,
        path: str,
        status: int,
        *,
        elapsed_ms: float,
    ) -> None:
        with self._lock:
            self._console.print(
                f"[dim]{datetime.now():%H:%M:%S}[/dim] [blue]{backend}[/blue] "
                f"{method} {escape(path)} -> {status} ({elapsed_ms:.1f}ms)",
                highlight=False,
            )
            write_cli_log(
                "REQUEST",
                f"{method} {path}",
                backend=backend,
                status=status,
                ms=f"{elapsed_ms:.1f}",
            )

    def log_error(self, route: str, status: int, message: str) -> None:
        with self._lock:
            self._console.print(f"[red][ERROR][/red] {route} {status}: {escape(message)}", highlight=False)
            write_cli_log("ERROR", message[:200], route=route, status=status)

    def log_health(self, backend: str, status: str, failures: int) -> None:
        with self._lock:
            style = STATUS_STYLES.get(status, "bold")
            self._console.print(
                f"[bold]{backend}[/bold] is now [{style}]{status}[/{style}] (failures={failures})",
                highlight=False,
            )
            write_cli_log("HEALTH", status, backend=backend, failures=failures)
