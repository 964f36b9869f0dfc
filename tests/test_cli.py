"""CLI tests — commands against a mocked API.

Learn: `_client()` is swapped for an httpx client on a MockTransport, so
each command's request and its rendering are checked without a server.
"""

import httpx
import pytest
from click.testing import CliRunner

from switchboard.cli import main as cli_main


@pytest.fixture
def api(monkeypatch):
    """Route CLI requests to a dict of (method, path) → response."""
    routes = {}
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        status, body = routes.get((request.method, request.url.path), (404, {"detail": "nope"}))
        if status == 204:
            return httpx.Response(204)
        return httpx.Response(status, json=body)

    def client():
        return httpx.AsyncClient(
            base_url="http://test/api/v1", transport=httpx.MockTransport(handler)
        )

    monkeypatch.setattr(cli_main, "_client", client)
    routes["seen"] = seen
    return routes


def _invoke(*args):
    return CliRunner().invoke(cli_main.cli, list(args))


def test_waiting_prints_table(api):
    api[("GET", "/api/v1/queue/waiting")] = (200, [
        {
            "id": "7f0c",
            "display_code": "482913",
            "client_name": "Guest User",
            "last_activity": "2026-10-18T09:00:00+00:00",
        }
    ])
    result = _invoke("waiting")
    assert result.exit_code == 0
    assert "Waiting (1)" in result.output
    assert "482913" in result.output


def test_empty_active(api):
    api[("GET", "/api/v1/queue/active")] = (200, [])
    result = _invoke("active")
    assert result.exit_code == 0
    assert "Active: (none)" in result.output


def test_claim_conflict_exits_nonzero(api):
    api[("POST", "/api/v1/conversations/c1/claim")] = (
        409,
        {"detail": {"code": "capacity_exceeded", "message": "Limit reached"}},
    )
    result = _invoke("claim", "c1")
    assert result.exit_code == 1
    assert "Limit reached" in result.output


def test_send_whitespace(api):
    api[("POST", "/api/v1/conversations/c1/messages")] = (204, None)
    result = _invoke("send", "c1", "   ")
    assert result.exit_code == 0
    assert "Nothing to send." in result.output


def test_ack(api):
    api[("POST", "/api/v1/missed-calls/12/ack")] = (200, {"id": 12, "status": "attended"})
    result = _invoke("ack", "12")
    assert result.exit_code == 0
    assert ("POST", "/api/v1/missed-calls/12/ack") in api["seen"]
