import requests
from typer.testing import CliRunner

from reelpipe.cli import main as cli
from reelpipe.cli.commands import queue as queue_commands
from reelpipe.cli.commands import reels as reel_commands

runner = CliRunner()


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)
        self.content = b"x"

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


def test_server_url_from_environment(monkeypatch):
    monkeypatch.setenv("REELPIPE_SERVER_URL", "http://ops.internal:9000/")
    assert cli.get_server_url() == "http://ops.internal:9000"


def test_metrics_prints_every_state(monkeypatch):
    monkeypatch.setenv("REELPIPE_SERVER_URL", "http://api")
    requested = []

    def fake_get(url, timeout):
        requested.append(url)
        return FakeResponse(payload={"waiting": 4, "active": 1, "completed": 9, "failed": 2, "delayed": 0, "total": 16})

    monkeypatch.setattr(queue_commands.requests, "get", fake_get)

    result = runner.invoke(cli.app, ["metrics"])

    assert result.exit_code == 0
    assert requested == ["http://api/api/queue/metrics"]
    for state in ("waiting", "active", "completed", "failed", "delayed", "total"):
        assert state in result.output


def test_cleanup_passes_horizon(monkeypatch):
    monkeypatch.setenv("REELPIPE_SERVER_URL", "http://api")
    calls = []

    def fake_post(url, params, timeout):
        calls.append((url, params))
        return FakeResponse(payload={"completed": 3, "failed": 1})

    monkeypatch.setattr(queue_commands.requests, "post", fake_post)

    result = runner.invoke(cli.app, ["cleanup", "--hours", "6"])

    assert result.exit_code == 0
    assert calls == [("http://api/api/queue/cleanup", {"older_than_hours": 6.0})]
    assert "3 completed, 1 failed" in result.output


def test_retry_reports_conflict(monkeypatch):
    monkeypatch.setenv("REELPIPE_SERVER_URL", "http://api")
    monkeypatch.setattr(
        reel_commands.requests, "post",
        lambda url, timeout: FakeResponse(409, {"detail": "Reel 5 is completed; only failed reels can be retried"}),
    )

    result = runner.invoke(cli.app, ["retry", "5"])

    assert result.exit_code == 0
    assert "only failed reels" in result.output


def test_unreachable_server(monkeypatch):
    monkeypatch.setenv("REELPIPE_SERVER_URL", "http://api")

    def refuse(url, timeout):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(queue_commands.requests, "get", refuse)

    result = runner.invoke(cli.app, ["metrics"])

    assert "Cannot connect to server at http://api" in result.output
