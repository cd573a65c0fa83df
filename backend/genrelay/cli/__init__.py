"""genrelay command line: run the server, watch a session, mint dev tokens."""

import asyncio
import sys

import click
import uvicorn

from genrelay.cli.formatting import render_slice, style_code
from genrelay.client.session import GenerationClient
from genrelay.config import settings
from genrelay.logging import setup_logging
from genrelay.services.tokens import create_token


@click.group()
def cli() -> None:
    """Realtime generation-orchestration server and client tools."""
    pass


@cli.command()
@click.option("--host", default=None, help=f"Bind address (default: {settings.host})")
@click.option("--port", type=int, default=None, help=f"Bind port (default: {settings.port})")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Run the realtime server."""
    uvicorn.run(
        "genrelay.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        # Logging is configured by genrelay.main via structlog
        log_config=None,
    )


@cli.command()
@click.argument("user_id")
@click.option("--ttl", type=int, default=None, help=f"Lifetime in seconds (default: {settings.jwt_ttl_seconds})")
def token(user_id: str, ttl: int | None) -> None:
    """Mint a development token for USER_ID signed with the configured secret."""
    click.echo(create_token(user_id, ttl=ttl))


@cli.command()
@click.option("--token", "token_", envvar="GENRELAY_TOKEN", help="User token (env: GENRELAY_TOKEN)")
@click.option("--user-id", help="Mint a development token for this user instead of passing --token")
@click.option("--url", default=None, help=f"Realtime endpoint (default: {settings.websocket_url})")
@click.option("--image-id", default=None, help="Input image to subscribe to")
@click.option("--json", "as_json", is_flag=True, help="Print full state slices as JSON")
def watch(token_: str | None, user_id: str | None, url: str | None, image_id: str | None, as_json: bool) -> None:
    """Connect as a headless client and print every state change."""
    if token_ is None and user_id is None:
        raise click.UsageError("Pass --token (or GENRELAY_TOKEN) or --user-id")
    if token_ is None:
        token_ = create_token(user_id or "")

    setup_logging(stream=sys.stderr)
    resource_id: int | str | None = int(image_id) if image_id and image_id.isdigit() else image_id
    try:
        asyncio.run(_watch(token_, url, resource_id, as_json))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


async def _watch(token_value: str, url: str | None, image_id: int | str | None, as_json: bool) -> None:
    cfg = settings if url is None else settings.model_copy(update={"websocket_url": url})
    client = GenerationClient(token_value, config=cfg)
    client.reconciler.on_change = lambda slice_name: click.echo(render_slice(client.state, slice_name, as_json=as_json))

    click.echo(f"Connecting to {style_code(cfg.websocket_url)}")
    await client.start()
    if client.auth_expired:
        raise click.ClickException("Credential expired, sign in again")
    await client.view(image_id)

    try:
        while not (client.connection.stopped or client.state.connection_unstable):
            await asyncio.sleep(0.5)
    finally:
        await client.stop()

    if client.state.connection_unstable:
        raise click.ClickException("Connection unstable, giving up")
    if client.connection.stopped:
        raise click.ClickException("Connection rejected by server")

