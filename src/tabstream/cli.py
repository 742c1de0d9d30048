"""CLI module for tabstream."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from tabstream import __version__
from tabstream.browser.events import ScreencastErrorEvent
from tabstream.browser.session import BrowserSession
from tabstream.browser.surface import ImageSurface
from tabstream.browser.views import ScreencastOptions
from tabstream.exceptions import TabstreamError
from tabstream.logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="tabstream")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """tabstream - remote browser tabs and live screencasts over CDP."""
    setup_logging(level="debug" if verbose else None)


@cli.command()
@click.argument("cdp_url")
def tabs(cdp_url: str):
    """List the tabs of a running browser.

    CDP_URL is the browser's debugging endpoint, e.g. http://localhost:9222.
    The browser's pages are left open.
    """

    async def execute():
        session = BrowserSession(cdp_url=cdp_url)
        try:
            await session.start()
            snapshot = session.get_snapshot()
        finally:
            await session.stop(close_tabs=False)

        table = Table(title=f"Tabs ({len(snapshot.tabs)})")
        table.add_column("", width=1)
        table.add_column("Id", style="cyan")
        table.add_column("Title")
        table.add_column("URL", style="blue")
        for tab_id, meta in snapshot.tabs.items():
            marker = "[green]*[/green]" if tab_id == snapshot.active_tab_id else ""
            title = f"{meta.title} [dim](loading)[/dim]" if meta.is_loading else meta.title
            table.add_row(marker, tab_id, title, meta.url)
        console.print(table)

    _run(execute())


@cli.command()
@click.argument("cdp_url")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default="screencast.png", help="Where to save the last frame")
@click.option("--seconds", "-s", type=float, default=5.0, help="How long to stream")
@click.option("--url", "-u", type=str, default=None, help="Navigate the active tab here before streaming")
@click.option("--quality", type=click.IntRange(0, 100), default=None, help="JPEG quality of streamed frames")
def cast(cdp_url: str, output: str, seconds: float, url: Optional[str], quality: Optional[int]):
    """Stream the active tab of a running browser and save the last frame.

    Example:
        >>> tabstream cast http://localhost:9222 --url https://example.com -s 3 -o shot.png
    """

    async def execute():
        session = BrowserSession(cdp_url=cdp_url)
        surface = ImageSurface()
        errors: list[str] = []

        def on_ScreencastErrorEvent(event: ScreencastErrorEvent) -> None:
            errors.append(event.message)

        session.event_bus.on(ScreencastErrorEvent, on_ScreencastErrorEvent)

        try:
            await session.start()
            assert session.tabs is not None
            if url and not await session.tabs.navigate(url):
                raise click.ClickException(f"Failed to navigate to {url}")

            tab = session.tabs.get_active_tab()
            if tab is None:
                raise click.ClickException("The browser has no active tab")

            options = ScreencastOptions(quality=quality) if quality is not None else None
            renderer = tab.get_renderer()
            await renderer.start(surface, options)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task(description=f"Streaming {tab.get_url()} for {seconds:g}s...", total=None)
                await asyncio.sleep(seconds)

            await renderer.stop()
        finally:
            await session.stop(close_tabs=False)

        if surface.image is None:
            console.print("[yellow]No frame was received[/yellow]")
            return

        path = surface.save(Path(output))
        width, height = surface.size or (0, 0)
        console.print(Panel.fit(
            f"Frames drawn: {surface.frames_drawn}\n"
            f"Size: {width}x{height}\n"
            f"Saved to: [green]{path}[/green]"
            + (f"\n[red]Errors: {len(errors)}[/red]" if errors else ""),
            title="Screencast",
        ))

    _run(execute())


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except TabstreamError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)


def main():
    """Main entry point for the tabstream CLI."""
    cli()


if __name__ == "__main__":
    main()
