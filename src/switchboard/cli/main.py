"""Switchboard CLI — work the dispatch queue from a terminal.

Usage:
    switchboard login agent@example.com          # Prints a token to export
    switchboard waiting                          # The waiting queue
    switchboard active                           # Your active chats
    switchboard claim <conversation-id>          # Take a waiting chat
    switchboard search 482913                    # Find a client by display code
    switchboard history <conversation-id>        # Message history
    switchboard send <conversation-id> "hello"   # Send a message
    switchboard close <conversation-id>          # Release a chat
    switchboard ribbon                           # Pending deadline tasks
    switchboard missed                           # Unattended missed calls
    switchboard ack 12                           # Acknowledge a missed call
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("SWITCHBOARD_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Switchboard API."""
    headers = {}
    token = os.environ.get("SWITCHBOARD_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(
        base_url=f"{_api_url()}/api/v1", headers=headers, timeout=30.0
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when a loop is already running (CliRunner in tests).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _check(r: httpx.Response):
    """Return the JSON body, or print the API's error message and exit 1."""
    if r.status_code == 204:
        return None
    if r.is_success:
        return r.json()
    try:
        detail = r.json().get("detail")
    except ValueError:
        detail = r.text
    message = detail.get("message", detail) if isinstance(detail, dict) else detail
    click.secho(f"Error ({r.status_code}): {message}", fg="red", err=True)
    sys.exit(1)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table. columns: (header, dict_key, width)."""
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) or "—")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


_QUEUE_COLUMNS = [
    ("ID", "id", 36),
    ("Code", "display_code", 8),
    ("Client", "client_name", 20),
    ("Last activity", "last_activity", 25),
]


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="switchboard")
def cli():
    """Switchboard — claim, answer and close client chats."""


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("email")
@click.password_option(confirmation_prompt=False)
def login(email: str, password: str):
    """Log in and print an access token."""
    _run(_login_impl(email, password))


async def _login_impl(email: str, password: str):
    async with _client() as c:
        data = _check(await c.post("/auth/login", json={"email": email, "password": password}))
    click.secho(f"Logged in as {data['name']}", fg="green")
    click.echo(f"export SWITCHBOARD_TOKEN={data['access_token']}")


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@cli.command()
def waiting():
    """Show the waiting queue, oldest first."""
    _run(_list_impl("/queue/waiting", "Waiting"))


@cli.command()
def active():
    """Show your active chats."""
    _run(_list_impl("/queue/active", "Active"))


async def _list_impl(path: str, title: str):
    async with _client() as c:
        rows = _check(await c.get(path))
    if not rows:
        click.echo(f"{title}: (none)")
        return
    click.secho(f"{title} ({len(rows)}):", bold=True)
    click.echo()
    _print_table(rows, _QUEUE_COLUMNS)


@cli.command()
@click.argument("conversation_id")
def claim(conversation_id: str):
    """Claim a waiting conversation."""
    _run(_post_impl(f"/conversations/{conversation_id}/claim", "Claimed"))


@cli.command()
@click.argument("conversation_id")
def close(conversation_id: str):
    """Close (release) an active conversation."""
    _run(_post_impl(f"/conversations/{conversation_id}/close", "Closed"))


async def _post_impl(path: str, verb: str):
    async with _client() as c:
        conv = _check(await c.post(path))
    click.secho(f"{verb} {conv['display_code']} ({conv['id']})", fg="green")


@cli.command()
@click.argument("code")
def search(code: str):
    """Find the latest conversation for a client display code."""
    _run(_search_impl(code))


async def _search_impl(code: str):
    async with _client() as c:
        conv = _check(await c.get("/conversations/search", params={"code": code}))
    click.echo(json.dumps(conv, indent=2, default=str))


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("conversation_id")
def history(conversation_id: str):
    """Print a conversation's messages, oldest first."""
    _run(_history_impl(conversation_id))


async def _history_impl(conversation_id: str):
    async with _client() as c:
        messages = _check(await c.get(f"/conversations/{conversation_id}/messages"))
    for m in messages:
        text = m.get("text") or "[attachment]"
        click.echo(f"  {m['created_at'][:19]}  {str(m['sender_id'])[:8]}  {text}")
    if not messages:
        click.echo("(no messages)")


@cli.command()
@click.argument("conversation_id")
@click.argument("text")
def send(conversation_id: str, text: str):
    """Send a message as yourself."""
    _run(_send_impl(conversation_id, text))


async def _send_impl(conversation_id: str, text: str):
    async with _client() as c:
        msg = _check(await c.post(
            f"/conversations/{conversation_id}/messages", json={"text": text}
        ))
    if msg is None:
        click.echo("Nothing to send.")
    else:
        click.secho(f"Sent #{msg['id']}", fg="green")


# ---------------------------------------------------------------------------
# Ribbon + missed calls
# ---------------------------------------------------------------------------


@cli.command()
def ribbon():
    """Pending deadline tasks, soonest first."""
    _run(_ribbon_impl())


async def _ribbon_impl():
    async with _client() as c:
        tasks = _check(await c.get("/ribbon"))
    if not tasks:
        click.echo("Ribbon is empty.")
        return
    for t in tasks:
        color = "red" if t.get("urgent") else "white"
        click.secho(f"  #{t['id']:<5} {t['deadline'][:10]}  {t['note']}", fg=color)


@cli.command()
def missed():
    """Unattended missed calls."""
    _run(_missed_impl())


async def _missed_impl():
    async with _client() as c:
        calls = _check(await c.get("/missed-calls"))
    if not calls:
        click.echo("No missed calls.")
        return
    _print_table(calls, [("ID", "id", 6), ("Client", "client_id", 36), ("At", "created_at", 25)])


@cli.command()
@click.argument("call_id", type=int)
def ack(call_id: int):
    """Acknowledge a missed call."""
    _run(_ack_impl(call_id))


async def _ack_impl(call_id: int):
    async with _client() as c:
        _check(await c.post(f"/missed-calls/{call_id}/ack"))
    click.secho(f"Missed call #{call_id} acknowledged", fg="green")


if __name__ == "__main__":
    cli()
