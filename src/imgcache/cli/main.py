"""
CLI for the image cache.

Commands:
    imgcache key URL - Show the canonical URL and cache key
    imgcache fetch URL... - Fetch images into the cache
    imgcache get URL -o FILE - Write a cached image to a file
    imgcache exists URL - Exit 0 if cached, 1 otherwise
    imgcache remove URL - Remove an image from the cache
    imgcache config - Show current configuration
    imgcache version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from imgcache import __version__
from imgcache.cache.keys import derive_key, normalize_url
from imgcache.cache.store import ImageCache
from imgcache.config import Settings, clear_settings_cache, load_settings
from imgcache.coordinator.discovery import ElementWatcher, SimpleImageElement
from imgcache.coordinator.orchestrator import ImageCacheOrchestrator
from imgcache.exceptions import ConfigurationError, ImgCacheError, NotFoundError
from imgcache.logging import setup_logging
from imgcache.retrieval.fetch import ImageFetcher

app = typer.Typer(
    name="imgcache",
    help="imgcache - local content-addressable cache for fetched images",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

CacheDirOption = Annotated[
    Optional[Path],
    typer.Option("--cache-dir", "-d", help="Cache directory (overrides CACHE_DIR)"),
]


def _load_settings(cache_dir: Path | None = None) -> Settings:
    """Load settings, exiting with a message if they are invalid."""
    try:
        clear_settings_cache()
        settings = load_settings()
    except ConfigurationError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    if cache_dir is not None:
        settings = settings.model_copy(update={"CACHE_DIR": cache_dir})

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    return settings


def _make_fetcher(settings: Settings) -> ImageFetcher:
    return ImageFetcher(
        timeout=settings.FETCH_TIMEOUT,
        max_attempts=settings.FETCH_MAX_ATTEMPTS,
        max_content_size=settings.MAX_CONTENT_SIZE,
        user_agent=settings.USER_AGENT,
    )


@app.command()
def key(
    url: Annotated[str, typer.Argument(help="Image URL")],
) -> None:
    """Show the canonical URL and cache key for URL."""
    console.print(f"[bold]Canonical:[/bold] {normalize_url(url)}")
    console.print(f"[bold]Key:[/bold] {derive_key(url)}")


@app.command()
def fetch(
    urls: Annotated[list[str], typer.Argument(help="Image URLs to cache")],
    cache_dir: CacheDirOption = None,
) -> None:
    """Fetch images into the cache.

    Concurrent requests for URLs that map to the same key are fetched once.
    """
    settings = _load_settings(cache_dir)

    failures: dict[str, str] = {}

    def on_error(exc: Exception, url: str) -> None:
        failures[url] = str(exc)

    async def run() -> list[tuple[str, str, int, str]]:
        async with await ImageCache.open(settings) as cache, _make_fetcher(settings) as fetcher:
            elements = [SimpleImageElement(url) for url in urls]
            orchestrator = ImageCacheOrchestrator(cache, fetcher, on_error=on_error)
            orchestrator.attach(ElementWatcher(elements))
            await orchestrator.close()

            rows = []
            for element in elements:
                if element.bound:
                    image = cache.handles.resolve(element.src)
                    rows.append((element.original_src, "cached", image.size, image.content_type))
                    element.loaded()
                else:
                    rows.append((element.original_src, "failed", 0, ""))
            return rows

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=error_console,
        transient=True,
    ) as progress:
        progress.add_task(f"Fetching {len(urls)} image(s)...", total=None)
        rows = asyncio.run(run())

    table = Table(title="Fetched", show_header=True)
    table.add_column("URL", style="cyan", overflow="fold")
    table.add_column("Key")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Content Type", style="green")

    for url, status, size, content_type in rows:
        style = "green" if status == "cached" else "red"
        table.add_row(
            url,
            derive_key(url)[:12],
            f"[{style}]{status}[/{style}]",
            str(size) if size else "",
            content_type,
        )

    console.print(table)

    for url, message in failures.items():
        error_console.print(f"[red]Error:[/red] {url}: {message}")

    if failures:
        raise typer.Exit(1)


@app.command()
def get(
    url: Annotated[str, typer.Argument(help="Image URL")],
    output: Annotated[Path, typer.Option("--output", "-o", help="File to write")],
    cache_dir: CacheDirOption = None,
) -> None:
    """Write the cached bytes for URL to a file."""
    settings = _load_settings(cache_dir)

    async def run():
        async with await ImageCache.open(settings) as cache:
            return await cache.get(url)

    try:
        image = asyncio.run(run())
    except NotFoundError:
        error_console.print(f"[red]Not cached:[/red] {url}")
        raise typer.Exit(1)
    except ImgCacheError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(image.data)
    console.print(f"Wrote {image.size} bytes ({image.content_type}) to {output}")


@app.command()
def exists(
    url: Annotated[str, typer.Argument(help="Image URL")],
    cache_dir: CacheDirOption = None,
) -> None:
    """Exit with status 0 if URL is cached, 1 otherwise."""
    settings = _load_settings(cache_dir)

    async def run() -> bool:
        async with await ImageCache.open(settings) as cache:
            return await cache.exists(url)

    if asyncio.run(run()):
        console.print(f"[green]cached[/green] {url}")
        return

    console.print(f"[yellow]not cached[/yellow] {url}")
    raise typer.Exit(1)


@app.command()
def remove(
    url: Annotated[str, typer.Argument(help="Image URL")],
    cache_dir: CacheDirOption = None,
) -> None:
    """Remove the cached image for URL."""
    settings = _load_settings(cache_dir)

    async def run() -> None:
        async with await ImageCache.open(settings) as cache:
            await cache.remove(url)

    try:
        asyncio.run(run())
    except ImgCacheError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"Removed {url}")


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = _load_settings()

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(name, display_value)

    console.print()
    console.print(Panel(table, title="[bold cyan]imgcache[/bold cyan]", border_style="cyan"))
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"imgcache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
