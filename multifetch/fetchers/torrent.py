"""
BitTorrent downloads for `.torrent` files and magnet links.

Two engines are supported and selected by ``Settings.torrent_engine``:
aria2c as a subprocess, or an embedded session (libtorrent by default).
Both apply a no-progress deadline that is shorter for magnet links, since
those must resolve their metadata over DHT before any byte arrives. The
deadline is cleared as soon as real progress is seen.
"""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Sequence

import aiofiles
import aiohttp

from ..config import Settings
from ..constants import ARIA2_USER_AGENT, DHT_ENTRY_POINTS, REQUEST_HEADERS
from ..events import JobChannel
from ..exceptions import FetchError, PeerConnectivityError, ResourceError, TransientFetchError
from ..jobs import DownloadJob, JobKind, JobStatus
from ..progress import ProgressUpdate, format_bytes, format_duration, format_rate, parse_aria2_progress
from .base import FetchOutcome, FetchStrategy, ProgressTracker, ToolProcess, sanitize_filename
from .diagnostics import classify_failure, extract_error_message, is_diagnostic_noise
from .file import looks_like_torrent

PEER_TIMEOUT_MESSAGE = "Timeout: Unable to find seeders/connect to peers"
PRIME_FILE_COUNT = 3
PRIME_HEAD_BYTES = 256
MIN_TORRENT_FILE_SIZE = 20
FILE_COMPLETE_FRACTION = 0.99


# --- Embedded session protocol ---

@dataclass
class TorrentFile:
    path: str
    length: int


@dataclass
class TorrentMetadata:
    """File list and identity of a torrent, available once metadata is resolved."""
    name: str
    total_size: int
    files: List[TorrentFile] = field(default_factory=list)
    info_hash: Optional[str] = None
    announce: List[str] = field(default_factory=list)
    piece_length: int = 0
    num_pieces: int = 0


@dataclass
class TorrentCounters:
    """
    One sample of an embedded session's byte counters.

    ``download_rate`` may be None when the engine does not report one; the
    strategy then derives it from the change in downloaded bytes.
    """
    file_downloaded: List[int] = field(default_factory=list)
    download_rate: Optional[float] = None
    upload_rate: float = 0.0
    peers: int = 0
    seeds: Optional[int] = None
    uploaded: int = 0


class TorrentSession:
    """
    Interface of an embedded BitTorrent engine as used by `TorrentStrategy`.

    ``close`` must be idempotent: the strategy calls it from its ``finally``
    block on every exit path, including cancellation.
    """

    async def start(self) -> None:
        raise NotImplementedError

    async def wait_metadata(self) -> TorrentMetadata:
        raise NotImplementedError

    def prime_files(self, count: int, head_bytes: int) -> None:
        raise NotImplementedError

    def updates(self) -> AsyncIterator[TorrentCounters]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


SessionFactory = Callable[[str, Path], TorrentSession]


def libtorrent_session_factory(source: str, save_dir: Path) -> TorrentSession:
    """Builds the default embedded session. Needs the optional ``libtorrent`` package."""
    try:
        from .libtorrent_session import LibtorrentSession
    except ImportError as e:
        raise ResourceError(
            f"The embedded BitTorrent engine needs libtorrent ({e}). "
            "Install it with 'pip install multifetch[torrent]' or switch the engine to aria2c.")
    return LibtorrentSession(source, save_dir)


def is_torrent_complete(files: Sequence[TorrentFile], downloaded: Sequence[int]) -> bool:
    """
    Completion predicate over per-file byte counters.

    A torrent is complete when the summed counters reach the total size, or
    when every file individually is at least 99% done (counters of some
    engines stop a few bytes short of the last piece boundary).
    """
    if not files or len(downloaded) < len(files):
        return False
    total = sum(f.length for f in files)
    done = sum(min(count, f.length) for f, count in zip(files, downloaded))
    if total and done >= total:
        return True
    return all(count >= f.length * FILE_COMPLETE_FRACTION for f, count in zip(files, downloaded))


class _CounterSummary:
    """Turns raw counters into display fields, deriving rates from deltas when needed."""

    def __init__(self, metadata: TorrentMetadata, clock: Callable[[], float]):
        self.metadata = metadata
        self.total = metadata.total_size or sum(f.length for f in metadata.files)
        self.clock = clock
        self._last_sample: Optional[float] = None
        self._last_done = 0
        self.downloaded = 0

    def update(self, counters: TorrentCounters) -> ProgressUpdate:
        files = self.metadata.files
        self.downloaded = sum(min(count, f.length) for f, count in zip(files, counters.file_downloaded))
        now = self.clock()
        rate = counters.download_rate
        if rate is None:
            elapsed = now - self._last_sample if self._last_sample is not None else 0
            rate = (self.downloaded - self._last_done) / elapsed if elapsed > 0 else 0.0
        self._last_sample = now
        self._last_done = self.downloaded

        progress = round(self.downloaded / self.total * 100, 2) if self.total else 0.0
        remaining = max(self.total - self.downloaded, 0)
        return ProgressUpdate(
            progress=min(progress, 100.0),
            speed=format_rate(rate),
            eta=format_duration(remaining / rate) if rate > 0 else None,
            size=format_bytes(self.total),
            peers=counters.peers,
            seeds=counters.seeds,
            upload_speed=format_rate(counters.upload_rate),
            ratio=round(counters.uploaded / self.downloaded, 3) if self.downloaded else 0.0,
        )


class TorrentStrategy(FetchStrategy):
    """Runs torrent and magnet jobs on the configured BitTorrent engine."""
    kinds = (JobKind.TORRENT, JobKind.MAGNET)

    def __init__(self, executable: Optional[List[str]] = None,
                 session_factory: Optional[SessionFactory] = None,
                 http_session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession):
        """
        Args:
            executable: aria2c command prefix.
            session_factory: Builds the embedded session for a source (magnet
                URI or local ``.torrent`` path) and a save directory.
            http_session_factory: Used to fetch remote ``.torrent`` files.
        """
        super().__init__(executable or ['aria2c'])
        self.session_factory = session_factory or libtorrent_session_factory
        self.http_session_factory = http_session_factory

    @staticmethod
    def no_progress_deadline(job: DownloadJob, settings: Settings) -> float:
        if job.kind == JobKind.MAGNET:
            return settings.magnet_metadata_timeout
        return settings.torrent_idle_timeout

    async def run(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        await asyncio.to_thread(Path(settings.download_dir).mkdir, parents=True, exist_ok=True)
        if settings.torrent_engine == 'embedded':
            return await self._run_embedded(job, channel, settings)
        return await self._run_aria2(job, channel, settings)

    # --- aria2c ---

    def build_command(self, job: DownloadJob, settings: Settings) -> List[str]:
        command = [
            *self.executable,
            '--continue=true',
            f'--dir={settings.download_dir}',
            '--enable-dht=true',
            '--bt-enable-lpd=true',
            '--bt-request-peer-speed-limit=50K',
            '--bt-require-crypto=false',
            '--bt-min-crypto-level=plain',
            '--bt-tracker-connect-timeout=60',
            '--bt-tracker-timeout=60',
            '--seed-time=0',
            '--file-allocation=none',
            '--console-log-level=notice',
            f'--user-agent={ARIA2_USER_AGENT}',
        ]
        if job.kind == JobKind.MAGNET:
            command.extend([
                '--enable-peer-exchange=true',
                '--listen-port=6881-6999',
                '--dht-listen-port=6881-6999',
                '--bt-max-peers=50',
                '--bt-stop-timeout=0',
                '--bt-save-metadata=true',
                '--bt-metadata-only=false',
                '--follow-torrent=mem',
                *[f'--dht-entry-point={entry}' for entry in DHT_ENTRY_POINTS],
                '--summary-interval=2',
                '--max-connection-per-server=5',
                '--split=1',
                '--connect-timeout=60',
                '--timeout=60',
            ])
        else:
            command.extend([
                '--follow-torrent=true',
                '--bt-max-peers=100',
                f'--max-connection-per-server={settings.connections}',
                f'--split={settings.segments}',
                '--summary-interval=1',
            ])
        command.append(job.url)
        return command

    async def _run_aria2(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        process = ToolProcess(self.build_command(job, settings), job.job_id, settings.cancel_grace_period)
        tracker = ProgressTracker(channel, settings.progress_interval)
        messages: List[str] = []
        exit_code: Optional[int] = None
        deadline_cleared = False
        try:
            await process.start()
            try:
                async with asyncio.timeout(self.no_progress_deadline(job, settings)) as watchdog:
                    async for _, line in process.lines():
                        self.logger.debug(f"[{job.job_id}] {line}")
                        update = parse_aria2_progress(line)
                        if not self._has_transfer_signal(update):
                            messages.append(line)
                            del messages[:-50]
                            continue
                        if self._ready_to_download(job, update):
                            self._mark_downloading(tracker, channel)
                        tracker.feed(update)
                        if not deadline_cleared and tracker.progress > 0:
                            watchdog.reschedule(None)
                            deadline_cleared = True
                        if tracker.seeding:
                            self.logger.info(f"[{job.job_id}] Download finished, stopping seeding")
                            break
                    else:
                        exit_code = await process.wait()
            except TimeoutError:
                raise PeerConnectivityError(PEER_TIMEOUT_MESSAGE)
        finally:
            await process.release()

        if tracker.seeding or exit_code == 0:
            return FetchOutcome.success()
        lines = [line for line in messages if not is_diagnostic_noise(line)]
        raise classify_failure('\n'.join(lines), fallback=extract_error_message(lines, exit_code))

    @staticmethod
    def _has_transfer_signal(update: ProgressUpdate) -> bool:
        return any(value is not None for value in (
            update.progress, update.speed, update.peers, update.seeding, update.metadata_ready))

    @staticmethod
    def _ready_to_download(job: DownloadJob, update: ProgressUpdate) -> bool:
        # A magnet has nothing to download until peers or its metadata show up.
        if job.kind != JobKind.MAGNET:
            return True
        return bool(update.peers) or bool(update.metadata_ready) or bool(update.progress)

    # --- Embedded engine ---

    async def _run_embedded(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        temp_torrent: Optional[Path] = None
        source = job.url
        if job.kind == JobKind.TORRENT and job.url.startswith(('http://', 'https://')):
            temp_torrent = await self._fetch_torrent_file(job, settings)
            source = str(temp_torrent)

        session: Optional[TorrentSession] = None
        tracker = ProgressTracker(channel, settings.progress_interval)
        loop = asyncio.get_running_loop()
        metadata: Optional[TorrentMetadata] = None
        summary: Optional[_CounterSummary] = None
        completed = False
        try:
            session = self.session_factory(source, Path(settings.download_dir))
            try:
                async with asyncio.timeout(self.no_progress_deadline(job, settings)) as watchdog:
                    await session.start()
                    metadata = await session.wait_metadata()
                    self.logger.info(
                        f"[{job.job_id}] Metadata ready: '{metadata.name}', {len(metadata.files)} file(s), "
                        f"{format_bytes(metadata.total_size)}")
                    tracker.saw_output = True
                    channel.status(JobStatus.DOWNLOADING, title=metadata.name,
                                   size=format_bytes(metadata.total_size))
                    session.prime_files(PRIME_FILE_COUNT, PRIME_HEAD_BYTES)
                    summary = _CounterSummary(metadata, loop.time)

                    async for counters in session.updates():
                        tracker.feed(summary.update(counters))
                        if watchdog.when() is not None and summary.downloaded > 0:
                            watchdog.reschedule(None)
                        if is_torrent_complete(metadata.files, counters.file_downloaded):
                            completed = True
                            break
            except TimeoutError:
                raise PeerConnectivityError(PEER_TIMEOUT_MESSAGE)
        finally:
            if session is not None:
                session.close()
            if temp_torrent is not None:
                await asyncio.to_thread(temp_torrent.unlink, missing_ok=True)

        if not completed:
            raise TransientFetchError("Torrent session ended before the download completed")
        tracker.feed(ProgressUpdate(progress=100.0))
        if settings.save_metadata and metadata is not None:
            await self._write_metadata(job, metadata, summary, settings)
        return FetchOutcome.success()

    async def _fetch_torrent_file(self, job: DownloadJob, settings: Settings) -> Path:
        """
        Downloads a remote ``.torrent`` into the download directory's ``.tmp`` folder.

        Raises:
            TransientFetchError: On network failures.
            FetchError: If the payload is not torrent metadata (not retried).
        """
        tmp_dir = Path(settings.download_dir) / '.tmp'
        await asyncio.to_thread(tmp_dir.mkdir, parents=True, exist_ok=True)
        path = tmp_dir / f"temp_{job.job_id}.torrent"
        timeout = aiohttp.ClientTimeout(total=60)
        self.logger.info(f"[{job.job_id}] Fetching torrent file from {job.url}")
        try:
            async with self.http_session_factory() as http:
                async with http.get(job.url, headers=REQUEST_HEADERS, timeout=timeout) as response:
                    if response.status != 200:
                        raise TransientFetchError(f"Failed to download .torrent file: HTTP {response.status}")
                    async with aiofiles.open(path, 'wb') as f:
                        async for chunk in response.content.iter_chunked(64 * 1024):
                            await f.write(chunk)
        except aiohttp.ClientError as e:
            await asyncio.to_thread(path.unlink, missing_ok=True)
            raise TransientFetchError(f"Failed to download .torrent file: {e}")
        except asyncio.TimeoutError:
            await asyncio.to_thread(path.unlink, missing_ok=True)
            raise TransientFetchError("Timed out downloading .torrent file")

        size = (await asyncio.to_thread(path.stat)).st_size
        if size < MIN_TORRENT_FILE_SIZE or not await asyncio.to_thread(looks_like_torrent, path):
            await asyncio.to_thread(path.unlink, missing_ok=True)
            raise FetchError("Downloaded .torrent file is invalid or not torrent metadata", retryable=False)
        return path

    async def _write_metadata(self, job: DownloadJob, metadata: TorrentMetadata,
                              summary: Optional[_CounterSummary], settings: Settings):
        path = Path(settings.download_dir) / f"{sanitize_filename(metadata.name) or job.job_id}.info.json"
        info = {
            'name': metadata.name,
            'infoHash': metadata.info_hash,
            'totalSize': metadata.total_size,
            'pieceLength': metadata.piece_length,
            'numPieces': metadata.num_pieces,
            'announce': metadata.announce,
            'files': [{'path': f.path, 'length': f.length} for f in metadata.files],
            'downloaded': summary.downloaded if summary else None,
            'source': job.original_url or job.url,
        }
        try:
            async with aiofiles.open(path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(info, indent=2))
        except OSError as e:
            self.logger.warning(f"[{job.job_id}] Could not write torrent metadata to {path}: {e}")
