"""Relay CLI commands (client-side).

Quick manual checks against a running relay: who is online, send a chat
message, or watch the live event stream for one user.
"""

from __future__ import annotations

import asyncio
from uuid import uuid4

import typer
from rich.console import Console
from rich.table import Table

from peerlink.relay.client import RelayAuthError, RelayClient
from peerlink.relay.protocol import Envelope

app = typer.Typer(help="peerlink: talk to a running presence/signaling relay")
console = Console()

URL_OPTION = typer.Option("ws://127.0.0.1:18900/ws", "--url", envvar="PEERLINK_URL", help="Relay WebSocket URL")
TOKEN_OPTION = typer.Option(..., "--token", envvar="PEERLINK_TOKEN", help="Credential token")


def _run(coro):
    try:
        return asyncio.run(coro)
    except RelayAuthError as e:
        console.print(f"[red]✗[/red] {e} ({e.code})")
        raise typer.Exit(1)


@app.command("online")
def online(url: str = URL_OPTION, token: str = TOKEN_OPTION):
    """List users currently online."""
    async def _go():
        async with RelayClient(url=url, token=token) as client:
            return await client.list_online()

    users = _run(_go())
    table = Table(title="Online Users")
    table.add_column("User ID", style="cyan")
    table.add_column("Username")
    for u in users:
        table.add_row(u.get("userId", ""), u.get("username", ""))
    console.print(table)


@app.command("send")
def send(
    to: str = typer.Option(..., "--to", help="Recipient user id"),
    text: str = typer.Option(..., "--text", "-m", help="Message text"),
    url: str = URL_OPTION,
    token: str = TOKEN_OPTION,
):
    """Send a chat message and wait for the delivery receipt."""
    async def _go():
        async with RelayClient(url=url, token=token) as client:
            await client.send("chat_message", recipientId=to, messageId=str(uuid4()), text=text)
            return await client.next_event("message_delivered", "message_not_delivered", "error")

    env = _run(_go())
    if env.type == "message_delivered":
        console.print(f"[green]✓[/green] Delivered to {to}")
    elif env.type == "message_not_delivered":
        console.print(f"[yellow]![/yellow] Not delivered: {env.payload.get('reason')}")
    else:
        console.print(f"[red]✗[/red] {env.payload.get('message')}")
        raise typer.Exit(1)


def _describe(env: Envelope) -> str:
    p = env.payload
    t = env.type
    if t in {"user_online", "user_offline"}:
        return f"[dim]presence[/dim] {p.get('username')} ({p.get('userId')}) -> {t.removeprefix('user_')}"
    if t == "online_users":
        return f"[dim]online[/dim] {', '.join(u.get('username', '') for u in p.get('users', [])) or '-'}"
    if t == "chat_message":
        return f"[cyan]chat[/cyan] {p.get('senderUsername')}: {p.get('text')}"
    if t == "incoming_call":
        return f"[magenta]call[/magenta] {p.get('callerName')} is calling (callId={p.get('callId')})"
    if t in {"call_accepted", "call_rejected"}:
        return f"[magenta]call[/magenta] {t} callId={p.get('callId')} {p.get('reason') or ''}".rstrip()
    return f"[dim]{t}[/dim] {p}"


@app.command("watch")
def watch(url: str = URL_OPTION, token: str = TOKEN_OPTION):
    """Print events pushed to this user until interrupted."""
    async def _go():
        async with RelayClient(url=url, token=token) as client:
            console.print(f"[dim]Connected as {client.identity.get('username')}. Ctrl+C to stop[/dim]")
            while True:
                console.print(_describe(await client.inbox.get()))

    try:
        _run(_go())
    except KeyboardInterrupt:
        console.print("\nStopped.")


if __name__ == "__main__":
    app()
