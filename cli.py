"""CLI entry point for crud-gateway."""

import sys
from datetime import datetime

import httpx
from rich.console import Console
from rich.table import Table

from app import create_app
from core.config import Config, config_path, load_config
from core.exceptions import ConfigurationError
from ui.dashboard import ConsoleLogger, Dashboard
from ui.log_utils import clear_logs, write_cli_log

console = Console()


def main():
    """Main CLI entry point."""
    args = sys.argv[1:]

    if "--help" in args or "-h" in args:
        _print_help()
        return

    if "--config" in args:
        console.print(f"[bold]Config:[/bold] {config_path()}")
        return

    path = config_path()
    try:
        config = load_config(path)
    except ConfigurationError as e:
        console.print(f"[red][ERROR][/red] {e.message}")
        sys.exit(1)

    if "--check" in args:
        healthy = check_backends(config)
        sys.exit(0 if healthy else 1)

    import uvicorn

    clear_logs()
    headless = "--headless" in args
    dashboard = None if headless else Dashboard(config)
    logger = ConsoleLogger() if headless else dashboard

    app = create_app(config, logger, config_path=path)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="warning",
        timeout_keep_alive=config.limits.keep_alive_timeout,
    )
    server = uvicorn.Server(uvicorn_config)

    if dashboard:
        dashboard.start()
    start_time = datetime.now()
    write_cli_log("STARTUP", "Gateway started", port=config.server.port)
    try:
        server.run()
    finally:
        duration = datetime.now() - start_time
        write_cli_log("SHUTDOWN", "Gateway stopped", duration=str(duration))
        if dashboard:
            dashboard.stop()


def check_backends(config: Config) -> bool:
    """Probe every backend base URL once and print a status table."""
    table = Table(title="Backends")
    table.add_column("Backend", style="bold")
    table.add_column("URL")
    table.add_column("Result")

    healthy = True
    for name, backend in config.backends.items():
        try:
            response = httpx.get(backend.base_url, timeout=backend.timeout)
            result = f"[green]reachable[/green] (HTTP {response.status_code})"
        except httpx.RequestError as e:
            healthy = False
            result = f"[red]unreachable[/red] ({e.__class__.__name__})"
        table.add_row(name, backend.base_url, result)

    console.print(table)
    return healthy


def _print_help():
    """Print help message."""
    help_text = """
[bold cyan]CRUD Gateway[/bold cyan]

Routes /api/tasks to the Task Service and /api/users to the User Service.

[bold]Usage:[/bold]
    crud-gateway              Start with live dashboard
    crud-gateway --headless   Start with plain console output
    crud-gateway --check      Probe each backend once
    crud-gateway --config     Show config location
    crud-gateway --help       Show this help

[bold]Environment:[/bold]
    GATEWAY_CONFIG                          Config file path
    GATEWAY_SERVER__HOST, GATEWAY_SERVER__PORT
                                            Listen address
    GATEWAY_BACKENDS__<NAME>__BASE_URL      Backend base URL (e.g. GATEWAY_BACKENDS__TASKS__BASE_URL)
    GATEWAY_BACKENDS__<NAME>__TIMEOUT       Backend timeout in seconds
    GATEWAY_RESILIENCE__MAX_RETRIES         0 or 1 connect retries for idempotent methods
    GATEWAY_RESILIENCE__FAILURE_THRESHOLD   Consecutive failures before a backend is unhealthy
    GATEWAY_RESILIENCE__COOLDOWN_SECONDS    Seconds before an unhealthy backend is re-probed
    Any other setting follows the same GATEWAY_<SECTION>__<KEY> pattern.
"""
    console.print(help_text)


if __name__ == "__main__":
    main()
