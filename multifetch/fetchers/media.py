"""Media page extraction through yt-dlp."""

import asyncio
import re
import urllib.parse
from pathlib import Path
from typing import List, Optional

from ..config import Settings
from ..constants import BROWSER_ACCEPT_LANGUAGE, REQUEST_HEADERS
from ..events import JobChannel
from ..exceptions import AccessError, TransientFetchError
from ..jobs import DownloadJob, JobKind, JobStatus, MediaDetails
from ..progress import ProgressUpdate, parse_media_progress
from .base import FetchOutcome, FetchStrategy, ProgressTracker, ToolProcess
from .diagnostics import (
    FORBIDDEN_MESSAGE, classify_failure, extract_error_message, is_access_denied,
    is_bad_option, is_diagnostic_noise,
)

BEST_FORMAT = 'bestvideo+bestaudio/best[height>=1080]/best[height>=720]/best'
AUDIO_FORMAT = 'bestaudio/best'
OUTPUT_TEMPLATE = '%(title)s.%(ext)s'
COMPLETION_THRESHOLD = 90.0
PROCESSING_PROGRESS = 99.0


def build_format_selector(quality: Optional[str]) -> str:
    """
    Translates a quality preference into a yt-dlp format selector.

    ``best``/None picks the best merged stream, ``audio`` the best audio only,
    ``720p`` caps the height, a bare format id is paired with the best audio,
    and anything else is passed through unchanged.
    """
    if not quality or quality.strip().lower() == 'best':
        return BEST_FORMAT
    quality = quality.strip()
    if quality.lower() in ('audio', 'bestaudio', 'audio-only'):
        return AUDIO_FORMAT
    height_match = re.fullmatch(r'(\d{3,4})p', quality.lower())
    if height_match:
        height = height_match.group(1)
        return f'bestvideo[height<={height}]+bestaudio/best[height<={height}]/best'
    if quality.isdigit():
        return f'{quality}+bestaudio[ext=m4a]/{quality}+bestaudio/best'
    return quality


class MediaStrategy(FetchStrategy):
    """
    Runs yt-dlp for one media job.

    Two in-run recoveries are attempted, each at most once per job: a fresh
    start without resume when yt-dlp rejects an option, and a browser-like
    request profile when the site answers with HTTP 403.
    """
    kinds = (JobKind.MEDIA,)

    def __init__(self, executable: Optional[List[str]] = None, ffmpeg_path: Optional[Path] = None):
        super().__init__(executable or ['yt-dlp'])
        self.ffmpeg_path = ffmpeg_path

    def build_command(self, job: DownloadJob, settings: Settings, fresh_start: bool = False,
                      access_profile: bool = False) -> List[str]:
        """Builds the full yt-dlp command list for one attempt."""
        quality = job.format or settings.default_quality
        selector = build_format_selector(quality)
        command = [
            *self.executable,
            '-f', selector,
            '-o', str(Path(settings.download_dir) / OUTPUT_TEMPLATE),
            '--newline', '--progress',
        ]
        if selector == AUDIO_FORMAT:
            command.append('-x')
        else:
            command.extend(['--merge-output-format', settings.output_format])
        if not fresh_start:
            command.append('-c')
        if settings.save_metadata:
            command.append('--write-info-json')
        if settings.cookie_file and Path(settings.cookie_file).exists():
            command.extend(['--cookies', str(settings.cookie_file)])
        if self.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])

        if access_profile:
            parsed = urllib.parse.urlparse(job.url)
            origin = f'{parsed.scheme}://{parsed.netloc}' if parsed.netloc else ''
            command.extend([
                '--user-agent', REQUEST_HEADERS['User-Agent'],
                '--add-header', f'Accept-Language:{BROWSER_ACCEPT_LANGUAGE}',
            ])
            if origin:
                command.extend(['--add-header', f'Referer:{origin}/', '--add-header', f'Origin:{origin}'])
            command.extend([
                '--retries', '5', '--fragment-retries', '5', '--extractor-retries', '2',
                '--extractor-args', 'youtube:player_client=android',
            ])
        else:
            command.extend(['--extractor-args', 'youtube:formats=missing_pot'])
        command.append(job.url)
        return command

    async def run(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        details = job.details if isinstance(job.details, MediaDetails) else MediaDetails()
        fresh_start_attempted = details.fresh_start_attempted
        access_retry_attempted = details.access_retry_attempted
        fresh_start = False
        access_profile = False

        while True:
            exit_code, tracker, error_lines = await self._run_once(job, channel, settings, fresh_start, access_profile)

            if exit_code == 0:
                if tracker.already_downloaded or tracker.postprocessing or tracker.progress >= COMPLETION_THRESHOLD:
                    return FetchOutcome.success()
                raise TransientFetchError("Download process ended prematurely")

            error_text = '\n'.join(error_lines)
            message = extract_error_message(error_lines, exit_code)
            self.logger.warning(f"[{job.job_id}] yt-dlp exited with code {exit_code}: {message}")

            if is_bad_option(error_text) and not fresh_start_attempted:
                fresh_start_attempted = True
                fresh_start = True
                self.logger.info(f"[{job.job_id}] Retrying with a fresh start after an option error")
                channel.status(JobStatus.DOWNLOADING, reset_progress=True,
                               details={'fresh_start_attempted': True})
                continue

            if is_access_denied(error_text):
                if not access_retry_attempted:
                    access_retry_attempted = True
                    access_profile = True
                    fresh_start = True
                    self.logger.info(f"[{job.job_id}] Retrying once with a browser request profile after HTTP 403")
                    channel.status(JobStatus.DOWNLOADING, reset_progress=True,
                                   details={'access_retry_attempted': True, 'fresh_start_attempted': fresh_start_attempted})
                    continue
                raise AccessError(FORBIDDEN_MESSAGE)

            raise classify_failure(error_text, fallback=message)

    async def _run_once(self, job: DownloadJob, channel: JobChannel, settings: Settings,
                        fresh_start: bool, access_profile: bool):
        command = self.build_command(job, settings, fresh_start, access_profile)
        process = ToolProcess(command, job.job_id, settings.cancel_grace_period)
        tracker = ProgressTracker(channel, settings.progress_interval)
        error_lines: List[str] = []
        loop = asyncio.get_running_loop()
        try:
            await process.start()
            try:
                async with asyncio.timeout(settings.stall_timeout) as watchdog:
                    async for stream, line in process.lines():
                        self.logger.debug(f"[{job.job_id}] {line}")
                        if self._handle_line(job, line, tracker, channel):
                            watchdog.reschedule(loop.time() + settings.stall_timeout)
                        if line.startswith('ERROR:') or (
                                stream == 'stderr' and not is_diagnostic_noise(line) and not line.startswith('[download]')):
                            error_lines.append(line)
                    exit_code = await process.wait()
            except TimeoutError:
                raise TransientFetchError(
                    f"Download stalled: no progress for {settings.stall_timeout:g} seconds")
        finally:
            await process.release()
        return exit_code, tracker, error_lines

    def _handle_line(self, job: DownloadJob, line: str, tracker: ProgressTracker, channel: JobChannel) -> bool:
        update = parse_media_progress(line)
        if update.postprocessing and not tracker.postprocessing:
            tracker.postprocessing = True
            tracker.progress = max(tracker.progress, PROCESSING_PROGRESS)
            channel.status(JobStatus.PROCESSING, progress=tracker.progress)
            if update.destination:
                tracker.feed(ProgressUpdate(destination=update.destination))
            return True
        if update.already_downloaded:
            tracker.already_downloaded = True
            channel.status(JobStatus.PROCESSING, progress=100.0, details={'already_downloaded': True})
            tracker.progress = 100.0
            return True
        if update.progress is not None or update.destination:
            if not tracker.postprocessing:
                self._mark_downloading(tracker, channel)
            return tracker.feed(update)
        return False
