# Reel commands - manual retry of failed reels

import requests
from rich.console import Console

console = Console()


def retry_reel(server_url: str, reel_id: int):
    """
    Requeue a failed reel
    """
    console.print(f"[cyan]Requesting retry for reel {reel_id}...[/cyan]")

    try:
        response = requests.post(f"{server_url}/api/reels/{reel_id}/retry", timeout=30)

        if response.status_code == 200:
            console.print(f"[green]{response.json()['message']}[/green]")
        elif response.status_code == 404:
            console.print(f"[red]Error: Reel {reel_id} not found[/red]")
        elif response.status_code in (409, 503):
            console.print(f"[yellow]{response.json().get('detail', 'Retry rejected')}[/yellow]")
        else:
            console.print(f"[red]Error: Server returned {response.status_code}[/red]")
            console.print(f"[dim]{response.text}[/dim]")

    except requests.exceptions.Timeout:
        console.print("[red]Error: Request timed out[/red]")
    except requests.exceptions.ConnectionError:
        console.print(f"[red]Error: Cannot connect to server at {server_url}[/red]")
