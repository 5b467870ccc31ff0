# Queue commands - show job metrics and clean up terminal job records

import requests
from rich.console import Console
from rich.table import Table

console = Console()

METRIC_STYLES = {
    "waiting": "yellow",
    "active": "cyan",
    "delayed": "magenta",
    "completed": "green",
    "failed": "red",
}


def show_queue_metrics(server_url: str):
    """
    Print the queue metrics table
    """
    try:
        response = requests.get(f"{server_url}/api/queue/metrics", timeout=10)
        if response.status_code != 200:
            console.print(f"[red]Error: Server returned {response.status_code}[/red]")
            console.print(f"[dim]{response.text}[/dim]")
            return

        data = response.json()
        table = Table(title="Reel Queue")
        table.add_column("State", style="bold")
        table.add_column("Jobs", justify="right")

        for state, style in METRIC_STYLES.items():
            table.add_row(f"[{style}]{state}[/{style}]", str(data.get(state, 0)))
        table.add_row("[bold]total[/bold]", f"[bold]{data.get('total', 0)}[/bold]")

        console.print(table)

    except requests.exceptions.Timeout:
        console.print("[red]Error: Request timed out[/red]")
    except requests.exceptions.ConnectionError:
        console.print(f"[red]Error: Cannot connect to server at {server_url}[/red]")


def cleanup_queue(server_url: str, hours: float):
    """
    Remove completed/failed job records older than `hours`
    """
    try:
        response = requests.post(
            f"{server_url}/api/queue/cleanup",
            params={"older_than_hours": hours},
            timeout=30
        )
        if response.status_code != 200:
            error = response.json().get("detail", response.text) if response.content else response.status_code
            console.print(f"[red]Error: {error}[/red]")
            return

        data = response.json()
        console.print(
            f"[green]Queue cleanup completed:[/green] "
            f"{data['completed']} completed, {data['failed']} failed jobs removed"
        )

    except requests.exceptions.Timeout:
        console.print("[red]Error: Request timed out[/red]")
    except requests.exceptions.ConnectionError:
        console.print(f"[red]Error: Cannot connect to server at {server_url}[/red]")
