"""CLI entry point for paddlelink."""

import asyncio
import sys
from pathlib import Path

import click

from paddlelink import __version__
from paddlelink.config import load_config
from paddlelink.logging import setup_logging
from paddlelink.messages import DIRECTIONS, SIDES


class EchoGame:
    """Stand-in game loop that prints the paddle commands it receives."""

    def move_paddle(self, side: str, direction: str) -> None:
        click.echo(f"move paddle {side} {direction}")

    def stop_paddle(self, side: str) -> None:
        click.echo(f"paddle stopped {side}")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """paddlelink - phones as game controllers over WebRTC."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option("--host", "bind_host", default=None, help="Address to bind.")
@click.option("--port", type=int, default=None, help="Port to bind.")
@click.pass_context
def relay(ctx: click.Context, bind_host: str | None, port: int | None) -> None:
    """Run the signaling relay."""
    from paddlelink.errors import RelayBindError
    from paddlelink.relay import RelayServer

    config = ctx.obj["config"]
    if bind_host is not None:
        config.host = bind_host
    if port is not None:
        config.port = port

    async def _run():
        server = RelayServer(config)
        try:
            await server.start()
            click.echo(f"Relay listening on {config.host}:{server.actual_port}{config.path}")
            click.echo("Press Ctrl+C to stop")
            await asyncio.Event().wait()
        finally:
            await server.close()

    try:
        asyncio.run(_run())
    except RelayBindError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
@click.argument("room_id")
@click.option("--url", default=None, help="Relay WebSocket URL.")
@click.pass_context
def host(ctx: click.Context, room_id: str, url: str | None) -> None:
    """Run a headless host that prints controller input."""
    from paddlelink.errors import RelayConnectionError
    from paddlelink.session import HostSession

    config = ctx.obj["config"]

    def on_player_connected(side: str) -> None:
        click.echo(f"player connected on {side}")

    async def _run():
        async with HostSession(
            room_id,
            EchoGame(),
            on_player_connected=on_player_connected,
            url=url,
            config=config,
        ):
            click.echo(f"Hosting room {room_id}, press Ctrl+C to stop")
            await asyncio.Event().wait()

    try:
        asyncio.run(_run())
    except RelayConnectionError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass


@main.command()
@click.argument("room_id")
@click.option("--side", type=click.Choice(SIDES), required=True, help="Side to control.")
@click.option("--url", default=None, help="Relay WebSocket URL.")
@click.pass_context
def controller(ctx: click.Context, room_id: str, side: str, url: str | None) -> None:
    """Run a headless controller reading directions from stdin."""
    from paddlelink.errors import PaddleLinkError
    from paddlelink.session import ControllerSession

    config = ctx.obj["config"]

    async def _run():
        loop = asyncio.get_running_loop()
        async with ControllerSession(room_id, url=url, config=config) as session:
            await session.select_side(side)
            click.echo(f"Controlling {side} as {session.player_id}; type up, down or stop")
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    return
                direction = line.strip().lower()
                if direction not in DIRECTIONS:
                    click.echo(f"Unknown direction: {direction!r}", err=True)
                    continue
                route = await session.move(direction)
                click.echo(f"{direction} sent via {route.value}")

    try:
        asyncio.run(_run())
    except PaddleLinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"paddlelink version {__version__}")
