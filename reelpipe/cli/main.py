import os
import typer
import requests
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console

# Load the .env.client next to the package, then the working directory's
load_dotenv(Path(__file__).parent / '.env.client')
load_dotenv(Path.cwd() / '.env.client')

# Creating the main Typer instance
app = typer.Typer(help="Reel pipeline ops CLI", no_args_is_help=True)
console = Console()


def get_server_url() -> str:
    return os.getenv("REELPIPE_SERVER_URL", "http://localhost:8000").rstrip("/")


# Import commands
from .commands.queue import show_queue_metrics, cleanup_queue
from .commands.maintenance import show_maintenance_tasks
from .commands.reels import retry_reel
from .commands.status import show_health


@app.command()
def ping():
    """Connectivity check to the pipeline API."""
    server_url = get_server_url()
    console.print("[yellow]Contacting reel pipeline API...[/yellow]")
    try:
        r = requests.get(f"{server_url}/api/ping", timeout=5)
        if r.status_code == 200:
            console.print("[bold green]PONG![/bold green] API is alive.")
        else:
            console.print(f"[yellow]API responded with status: {r.status_code}[/yellow]")
    except Exception as e:
        console.print(f"[bold red]Connection Failed:[/bold red] {e}")


@app.command()
def metrics():
    """
    Show job counts per queue state.
    """
    show_queue_metrics(get_server_url())


@app.command()
def cleanup(
    hours: float = typer.Option(24, "--hours", "-h", help="Remove completed/failed jobs older than this many hours")
):
    """
    Remove old completed/failed job records from the queue.
    """
    cleanup_queue(get_server_url(), hours)


@app.command()
def tasks():
    """
    List the scheduled maintenance tasks.
    """
    show_maintenance_tasks(get_server_url())


@app.command()
def retry(
    reel_id: int = typer.Argument(..., help="ID of the failed reel to requeue")
):
    """
    Requeue a failed reel at low priority.
    """
    retry_reel(get_server_url(), reel_id)


@app.command()
def health():
    """
    Show database, Redis, worker and host health.
    """
    show_health(get_server_url())


if __name__ == "__main__":
    app()
