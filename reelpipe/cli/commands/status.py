# Status command - pipeline health report

import httpx
from datetime import datetime
from rich.console import Console
from rich.table import Table

console = Console()


def _status_cell(value: str) -> str:
    return "[green]ok[/green]" if value == "ok" else f"[red]{value}[/red]"


def show_health(server_url: str):
    """
    Display database, Redis, worker and host health from the API.
    """
    console.print("[bold blue]Reel Pipeline Health Report[/bold blue]")
    console.print(f"[dim]Generated at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}[/dim]")
    console.print()

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(f"{server_url}/health")
            response.raise_for_status()
            health = response.json()
    except httpx.HTTPError as e:
        console.print(f"[red]Failed to fetch health from {server_url}: {e}[/red]")
        return

    status = health.get("status", "unknown")
    status_display = "[green]Healthy[/green]" if status == "healthy" else f"[yellow]{status}[/yellow]"

    table = Table(title="Pipeline", show_header=False, box=None)
    table.add_row("Status", status_display)
    table.add_row("Database", _status_cell(health.get("database", "unknown")))
    table.add_row("Redis", _status_cell(health.get("redis", "unknown")))

    workers = health.get("workers", {})
    worker_names = ", ".join(workers.get("workers", [])) or "none"
    table.add_row("Workers", worker_names)
    table.add_row("Concurrency", str(workers.get("concurrency", "?")))

    host = health.get("host", {})
    table.add_row("CPU", f"{host.get('cpu_percent', 0):.1f}%")
    table.add_row("Memory", f"{host.get('memory_percent', 0):.1f}%")
    table.add_row("Disk", f"{host.get('disk_percent', 0):.1f}%")
    console.print(table)

    if health.get("issues"):
        console.print()
        for issue in health["issues"]:
            console.print(f"[yellow]- {issue}[/yellow]")
