"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE, STATE_FILE
from .controller import AppController
from .dependencies import DependencyManager
from .exceptions import ClassificationError, CorruptStateError
from .jobs import JobStatus
from .logging_config import setup_logging
from .persistence import StatePersistence

app = typer.Typer(
    name="multifetch",
    help="Queue media pages, direct files, .torrent files and magnet links and download them concurrently.",
    add_completion=False,
)


def _version_callback(value: bool):
    if value:
        typer.echo(f"multifetch {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", callback=_version_callback, is_eager=True
    ),
):
    """multifetch download engine"""


class StatusPrinter:
    """Echoes each job's status transitions as snapshots arrive."""

    def __init__(self):
        self.seen: Dict[str, str] = {}

    def __call__(self, message: Dict[str, Any]):
        data = message['data']
        for job in [*data['active'], *data['queued'], *data['completedHistory']]:
            status = job['status']
            if self.seen.get(job['id']) == status:
                continue
            self.seen[job['id']] = status
            line = f"[{status:>11}] {job['title'] or job['url']}"
            if status == 'failed' and job['error']:
                line += f" - {job['error']}"
            typer.echo(line)


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


async def _run_fetch(controller: AppController, urls: List[str], resolve: bool, fmt: Optional[str]) -> int:
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)
    engine = await controller.start()
    engine.add_listener(StatusPrinter())
    engine.resume_queue()
    failures = 0
    submitted: List[str] = []
    try:
        for url in urls:
            try:
                submitted.append(await controller.submit(url, resolve=resolve, format=fmt))
            except ClassificationError as e:
                typer.echo(f"Skipping '{url}': {e}", err=True)
                failures += 1
        await engine.wait_until_idle()
        for job_id in submitted:
            job = engine.store.get(job_id)
            if job is None or job.status != JobStatus.COMPLETED:
                failures += 1
    finally:
        await controller.shutdown()
    return failures


@app.command()
def fetch(
    urls: List[str] = typer.Argument(..., help="URLs, .torrent paths or magnet links to download."),
    download_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="Download directory."),
    max_concurrent: Optional[int] = typer.Option(None, "--max-concurrent", "-j", help="Concurrent downloads (1-20)."),
    torrent_engine: Optional[str] = typer.Option(None, "--torrent-engine", help="BitTorrent engine: aria2c or embedded."),
    fmt: Optional[str] = typer.Option(None, "--format", "-f", help="Quality for media pages, e.g. best, 720p, audio."),
    resolve: bool = typer.Option(True, "--resolve/--no-resolve", help="Probe URLs before queueing them."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to the console."),
):
    """Downloads URLs and waits until every job has finished."""
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()
    setup_logging('DEBUG' if verbose else config.log_level)

    overrides: Dict[str, Any] = {}
    if download_dir is not None:
        overrides['download_dir'] = download_dir
    if max_concurrent is not None:
        overrides['max_concurrent_downloads'] = max_concurrent
    if torrent_engine is not None:
        overrides['torrent_engine'] = torrent_engine
    try:
        config = Settings.model_validate({**config.model_dump(), **overrides, 'queue_enabled': True})
    except ValueError as e:
        typer.echo(f"Invalid option: {e}", err=True)
        raise typer.Exit(2)

    controller = AppController(config_manager, config)
    try:
        failures = asyncio.run(_run_fetch(controller, urls, resolve, fmt))
    except KeyboardInterrupt:
        logging.info("Interrupted by user; unfinished jobs stay queued for the next run.")
        raise typer.Exit(130)
    if failures:
        typer.echo(f"{failures} download(s) did not complete.", err=True)
        raise typer.Exit(1)


@app.command()
def state(state_file: Path = typer.Option(STATE_FILE, "--file", help="State file to read.")):
    """Prints a summary of the persisted download queue."""
    if not state_file.exists():
        typer.echo("No saved download state found.")
        return
    try:
        document = StatePersistence.parse(state_file.read_text(encoding='utf-8'))
    except (CorruptStateError, OSError) as e:
        typer.echo(f"State file is unreadable: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Saved at: {document.saved_at or 'unknown'} (schema v{document.version})")
    typer.echo(f"Queue {'enabled' if document.settings.queue_enabled else 'paused'}, "
               f"{len(document.queue)} queued, {len(document.completed_downloads)} in history")
    for record in document.queue:
        typer.echo(f"  {record.status.value:>11}  {record.download_type.value:<7} {record.title or record.url}")
    for record in document.completed_downloads:
        line = f"  {record.status.value:>11}  {record.download_type.value:<7} {record.title or record.url}"
        if record.error:
            line += f" - {record.error}"
        typer.echo(line)


@app.command()
def tools():
    """Shows where the external download tools were found and their versions."""
    config = ConfigManager(CONFIG_FILE).load()
    manager = DependencyManager({
        'yt-dlp': config.yt_dlp_path,
        'aria2c': config.aria2c_path,
        'ffmpeg': config.ffmpeg_path,
    })

    async def _check():
        await manager.initialize()
        return await manager.check_versions()

    missing = 0
    for info in asyncio.run(_check()).values():
        if info.path is None:
            typer.echo(f"{info.name:<7} not found")
            missing += 1
        else:
            typer.echo(f"{info.name:<7} {info.version}  [{info.source}] {info.path}")
    if missing:
        raise typer.Exit(1)
