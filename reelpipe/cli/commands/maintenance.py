# Maintenance command - list scheduled tasks

import requests
from rich.console import Console
from rich.table import Table

console = Console()


def show_maintenance_tasks(server_url: str):
    try:
        response = requests.get(f"{server_url}/api/maintenance/tasks", timeout=10)
        response.raise_for_status()
    except requests.exceptions.ConnectionError:
        console.print(f"[red]Error: Cannot connect to server at {server_url}[/red]")
        return
    except requests.exceptions.RequestException as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    table = Table(title="Maintenance Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Schedule", style="magenta")
    table.add_column("Description")

    for name, task in response.json()["tasks"].items():
        table.add_row(name, task["schedule"], task["description"])

    console.print(table)
