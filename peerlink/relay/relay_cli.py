"""Console entrypoint for the relay (independent process)."""

from __future__ import annotations

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console

from peerlink.relay.auth import DEFAULT_TOKEN_TTL_S, IdentityVerifier
from peerlink.relay.server import RelayServer, RelayServerConfig

app = typer.Typer(name="peerlink-relay", help="Presence and call signaling relay")
console = Console()


def _require_secret(secret: str) -> str:
    if not secret:
        raise typer.BadParameter("JWT secret required (--jwt-secret or JWT_SECRET)")
    return secret


@app.command("run")
def run(
    host: str = typer.Option("0.0.0.0", "--host", envvar="PEERLINK_HOST", help="Bind host"),
    port: int = typer.Option(18900, "--port", envvar="PEERLINK_PORT", help="Bind port"),
    path: str = typer.Option("/ws", "--path", help="WebSocket path"),
    jwt_secret: str = typer.Option("", "--jwt-secret", envvar="JWT_SECRET", help="Shared secret for HS256 tokens"),
    hello_timeout: float = typer.Option(10.0, "--hello-timeout", help="Seconds to wait for an auth frame"),
    rate_limit: int = typer.Option(0, "--rate-limit", help="Max events per minute per user (0 = off)"),
    log_level: str = typer.Option("INFO", "--log-level", help="loguru level"),
):
    """Run the relay server."""
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())

    cfg = RelayServerConfig(
        host=host,
        port=port,
        path=path,
        jwt_secret=_require_secret(jwt_secret),
        hello_timeout_s=hello_timeout,
        rate_limit_per_min=rate_limit,
    )
    server = RelayServer(cfg)

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        console.print("\nStopping relay...")


@app.command("issue-token")
def issue_token(
    user_id: str = typer.Option(..., "--user-id", help="User id to embed"),
    username: str = typer.Option("", "--username", help="Display name"),
    ttl: int = typer.Option(DEFAULT_TOKEN_TTL_S, "--ttl", help="Lifetime in seconds"),
    jwt_secret: str = typer.Option("", "--jwt-secret", envvar="JWT_SECRET", help="Shared secret for HS256 tokens"),
):
    """Mint a development token in the login service's format."""
    verifier = IdentityVerifier(_require_secret(jwt_secret))
    console.print(verifier.issue(user_id, username or None, ttl_s=ttl), soft_wrap=True, highlight=False)


if __name__ == "__main__":
    app()
