"""Direct file downloads through the aria2c segmented downloader."""

import asyncio
import posixpath
import urllib.parse
from pathlib import Path
from typing import List, Optional

import bencodepy

from ..config import Settings
from ..constants import ARIA2_USER_AGENT
from ..events import JobChannel
from ..exceptions import AccessError, FetchError, ResourceError, TransientFetchError
from ..jobs import DownloadJob, FileDetails, JobKind
from ..progress import parse_aria2_progress
from .base import FetchOutcome, FetchStrategy, ProgressTracker, ToolProcess, sanitize_filename
from .diagnostics import classify_failure, extract_error_message, is_diagnostic_noise

# aria2c exit statuses that are not worth retrying.
ARIA2_EXIT_ERRORS = {
    3: (AccessError, "The file was not found on the server (HTTP 404)."),
    9: (ResourceError, "Not enough disk space to complete the download."),
    15: (ResourceError, "Could not open the destination file. Check the download directory."),
    16: (ResourceError, "Could not create the destination file. Check the download directory."),
    17: (ResourceError, "File I/O error while writing the download."),
    24: (AccessError, "HTTP authorization failed."),
}
TORRENT_SNIFF_LIMIT = 10 * 1024 * 1024


def derive_filename(job: DownloadJob) -> str:
    """
    Chooses the output filename for a file job.

    Order: content-disposition hint, ``?filename=`` query parameter, URL
    path basename, then ``download_<id>``.
    """
    details = job.details if isinstance(job.details, FileDetails) else FileDetails()
    if details.filename:
        return details.filename
    parsed = urllib.parse.urlparse(job.url)
    candidates = [
        details.filename_hint,
        (urllib.parse.parse_qs(parsed.query).get('filename') or [None])[0],
        posixpath.basename(urllib.parse.unquote(parsed.path)),
    ]
    for candidate in candidates:
        if candidate:
            cleaned = sanitize_filename(candidate)
            if cleaned:
                return cleaned
    return f"download_{job.job_id}"


def looks_like_torrent(path: Path) -> bool:
    """
    True if the file holds bencoded torrent metadata (a dict with an ``info`` key).
    Blocking; call through a worker thread.
    """
    try:
        if not path.is_file() or path.stat().st_size > TORRENT_SNIFF_LIMIT:
            return False
        with open(path, 'rb') as f:
            head = f.read(1)
            if head != b'd':
                return False
            data = head + f.read()
        decoded = bencodepy.decode(data)
    except (OSError, bencodepy.BencodeDecodeError, ValueError, TypeError):
        return False
    return isinstance(decoded, dict) and b'info' in decoded


class FileStrategy(FetchStrategy):
    """
    Runs aria2c against a direct URL.

    When the finished file turns out to be torrent metadata, the job is handed
    back to the engine for re-classification instead of being reported as a
    (misleading) finished download.
    """
    kinds = (JobKind.FILE,)

    def __init__(self, executable: Optional[List[str]] = None):
        super().__init__(executable or ['aria2c'])

    def build_command(self, job: DownloadJob, settings: Settings, filename: str) -> List[str]:
        return [
            *self.executable,
            '--continue=true',
            f'--max-connection-per-server={settings.connections}',
            f'--split={settings.segments}',
            f'--min-split-size={settings.segment_size}',
            f'--dir={settings.download_dir}',
            f'--out={filename}',
            '--file-allocation=none',
            '--retry-wait=3',
            '--max-tries=5',
            '--timeout=60',
            '--connect-timeout=30',
            '--summary-interval=1',
            '--follow-torrent=false',
            '--console-log-level=notice',
            f'--user-agent={ARIA2_USER_AGENT}',
            job.url,
        ]

    async def run(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        filename = derive_filename(job)
        destination = Path(settings.download_dir) / filename
        channel.status(job.status, title=job.title or filename, details={'filename': filename})
        await asyncio.to_thread(Path(settings.download_dir).mkdir, parents=True, exist_ok=True)

        command = self.build_command(job, settings, filename)
        process = ToolProcess(command, job.job_id, settings.cancel_grace_period)
        tracker = ProgressTracker(channel, settings.progress_interval)
        messages: List[str] = []
        loop = asyncio.get_running_loop()
        try:
            await process.start()
            try:
                async with asyncio.timeout(settings.stall_timeout) as watchdog:
                    async for _, line in process.lines():
                        self.logger.debug(f"[{job.job_id}] {line}")
                        update = parse_aria2_progress(line)
                        if update.progress is None and update.speed is None:
                            messages.append(line)
                            del messages[:-50]
                            continue
                        self._mark_downloading(tracker, channel)
                        if tracker.feed(update):
                            watchdog.reschedule(loop.time() + settings.stall_timeout)
                    exit_code = await process.wait()
            except TimeoutError:
                raise TransientFetchError(
                    f"Download stalled: no progress for {settings.stall_timeout:g} seconds")
        finally:
            await process.release()

        if exit_code != 0:
            raise self._failure(exit_code, messages)

        if await asyncio.to_thread(looks_like_torrent, destination):
            torrent_path = destination
            if destination.suffix.lower() != '.torrent':
                torrent_path = destination.with_name(destination.name + '.torrent')
                await asyncio.to_thread(destination.replace, torrent_path)
            self.logger.info(f"[{job.job_id}] Downloaded file is torrent metadata; re-classifying as torrent")
            return FetchOutcome.reclassify(JobKind.TORRENT, str(torrent_path))
        return FetchOutcome.success()

    def _failure(self, exit_code: int, output: List[str]) -> FetchError:
        if exit_code in ARIA2_EXIT_ERRORS:
            error_class, message = ARIA2_EXIT_ERRORS[exit_code]
            return error_class(message)
        lines = [line for line in output if not is_diagnostic_noise(line)]
        return classify_failure('\n'.join(lines), fallback=extract_error_message(lines, exit_code))
