"""
Durable state for the download queue.

The queue is written to a versioned JSON document after every state-affecting
change (debounced), and read back at startup. Live handles and unfiltered
tool output never reach the file. A file that cannot be parsed is renamed
aside and the engine starts empty; it is never deleted.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .constants import PARTIAL_FILE_SUFFIXES, SIDECAR_SUFFIXES, STATE_SCHEMA_VERSION
from .exceptions import CorruptStateError
from .fetchers.diagnostics import filter_noise
from .jobs import DownloadJob, FileDetails, JobKind, JobStatus, TorrentDetails


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class JobRecord(_CamelModel):
    """The persisted form of a job: no live handle, no raw stderr."""
    id: str
    url: str
    download_type: JobKind = JobKind.MEDIA
    status: JobStatus = JobStatus.QUEUED
    original_url: Optional[str] = None
    format: Optional[str] = None
    title: Optional[str] = None
    progress: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    size: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    added_at: int = 0
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    has_partial_file: bool = False
    partial_files: List[str] = Field(default_factory=list)
    can_resume: bool = False
    peers: int = 0
    seeds: Optional[int] = None
    leechers: Optional[int] = None
    upload_speed: Optional[str] = None
    ratio: Optional[float] = None
    filename: Optional[str] = None

    @classmethod
    def from_job(cls, job: DownloadJob) -> "JobRecord":
        record = cls(
            id=job.job_id, url=job.url, download_type=job.kind, status=job.status,
            original_url=job.original_url, format=job.format, title=job.title,
            progress=job.progress, speed=job.speed, eta=job.eta, size=job.size,
            error=filter_noise(job.error), retry_count=job.retry_count,
            added_at=job.added_at, started_at=job.started_at, completed_at=job.completed_at,
            has_partial_file=job.has_partial_file, partial_files=list(job.partial_files),
            can_resume=job.can_resume, peers=job.peers, upload_speed=job.upload_speed, ratio=job.ratio,
        )
        if job.torrent:
            record.seeds = job.torrent.seeds
            record.leechers = job.torrent.leechers
        if isinstance(job.details, FileDetails):
            record.filename = job.details.filename
        return record

    def to_job(self) -> DownloadJob:
        job = DownloadJob(
            job_id=self.id, url=self.url, kind=self.download_type, format=self.format,
            title=self.title, status=self.status, progress=self.progress,
            speed=self.speed, eta=self.eta, size=self.size, error=self.error,
            retry_count=self.retry_count, added_at=self.added_at,
            started_at=self.started_at, completed_at=self.completed_at,
            original_url=self.original_url, has_partial_file=self.has_partial_file,
            partial_files=list(self.partial_files), can_resume=self.can_resume,
        )
        if isinstance(job.details, TorrentDetails):
            job.details.peers = self.peers
            job.details.seeds = self.seeds
            job.details.leechers = self.leechers
            job.details.upload_speed = self.upload_speed
            job.details.ratio = self.ratio
        elif isinstance(job.details, FileDetails):
            job.details.filename = self.filename
        return job


class PersistedSettings(_CamelModel):
    queue_enabled: bool = True
    max_retries: int = 2


class StateDocument(_CamelModel):
    """Top-level layout of the state file."""
    version: int = STATE_SCHEMA_VERSION
    saved_at: Optional[str] = None
    next_id: int = 1
    queue: List[JobRecord] = Field(default_factory=list)
    completed_downloads: List[JobRecord] = Field(default_factory=list)
    settings: PersistedSettings = Field(default_factory=PersistedSettings)


INTERRUPTED_STATUSES = frozenset({
    JobStatus.STARTING, JobStatus.DOWNLOADING, JobStatus.PROCESSING, JobStatus.RETRYING,
})


def restore_jobs(document: StateDocument) -> Tuple[List[DownloadJob], List[DownloadJob]]:
    """
    Rebuilds jobs from a loaded document.

    No external process survives a restart, so anything that was in flight is
    put back in the queue with its transient fields cleared. History entries
    are restored verbatim.

    Returns:
        A tuple of (queued jobs in order, history jobs most recent first).
    """
    queued: List[DownloadJob] = []
    misplaced: List[DownloadJob] = []
    for record in document.queue:
        job = record.to_job()
        if job.status.is_terminal:
            misplaced.append(job)
            continue
        if job.status in INTERRUPTED_STATUSES:
            job.status = JobStatus.QUEUED
        job.reset_transient()
        queued.append(job)
    history = [record.to_job() for record in document.completed_downloads]
    return queued, misplaced + history


class StatePersistence:
    """Debounced, atomic reads and writes of the state document."""

    def __init__(self, path: Path, debounce: float = 1.0):
        """
        Initializes the StatePersistence.

        Args:
            path: The state file location.
            debounce: Coalescing window for `schedule_save`, in seconds.
        """
        self.path = path
        self.debounce = debounce
        self.logger = logging.getLogger(__name__)
        self._provider: Optional[Callable[[], StateDocument]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self.save_count = 0

    def schedule_save(self, provider: Callable[[], StateDocument]):
        """
        Requests a save. Calls inside one debounce window collapse into a
        single write of the newest state, built when the window closes.
        """
        self._provider = provider
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce, self._on_timer)

    def _on_timer(self):
        self._timer = None
        if self._provider is None:
            return
        document = self._provider()
        self._save_task = asyncio.create_task(self.save(document))
        self._save_task.add_done_callback(self._handle_save_result)

    def _handle_save_result(self, task: asyncio.Task):
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            self.logger.exception("Background state save failed")

    @property
    def pending(self) -> bool:
        return self._timer is not None

    async def flush(self):
        """Writes any pending change now and waits for in-flight writes."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            if self._provider is not None:
                await self.save(self._provider())
        if self._save_task is not None and not self._save_task.done():
            await asyncio.gather(self._save_task, return_exceptions=True)

    async def save(self, document: StateDocument):
        """Writes the document through a temporary file and an atomic rename."""
        document.saved_at = datetime.now(timezone.utc).isoformat()
        payload = document.model_dump_json(by_alias=True, indent=2)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        async with self._write_lock:
            try:
                await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
                async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                    await f.write(payload)
                await asyncio.to_thread(os.replace, tmp_path, self.path)
                self.save_count += 1
                self.logger.debug(f"Saved state: {len(document.queue)} queued, {len(document.completed_downloads)} in history")
            except OSError as e:
                self.logger.error(f"Error saving state file to {self.path}: {e}")

    async def load(self) -> StateDocument:
        """
        Reads the state document.

        Returns:
            The parsed document, or an empty one if the file is missing or corrupt.
        """
        if not await asyncio.to_thread(self.path.exists):
            self.logger.info("No saved download state found.")
            return StateDocument()
        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                raw = await f.read()
            return self.parse(raw)
        except (CorruptStateError, OSError) as e:
            self.logger.error(f"Error loading {self.path}: {e}. Quarantining and starting empty.")
            await self._quarantine()
            return StateDocument()

    @staticmethod
    def parse(raw: str) -> StateDocument:
        """
        Raises:
            CorruptStateError: If the text is not a valid state document.
        """
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise CorruptStateError("State file does not contain an object")
            return StateDocument.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise CorruptStateError(str(e)) from e

    async def _quarantine(self):
        corrupt_path = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
        try:
            await asyncio.to_thread(self.path.rename, corrupt_path)
            self.logger.info(f"Moved corrupt state file to {corrupt_path}")
        except OSError as e:
            self.logger.error(f"Could not move corrupt state file aside: {e}")


# --- Resume detection ---

@dataclass
class ResumeFinding:
    """What the filesystem says about one queued job."""
    job_id: str
    partial_files: List[str] = field(default_factory=list)
    can_resume: bool = False
    completed_file: Optional[str] = None


PLACEHOLDER_TITLES = frozenset({
    'magnet link download', 'torrent file download', 'video download', 'file download',
    'video/media download', 'unknown', 'untitled',
})


def _meaningful_names(job: DownloadJob) -> List[str]:
    names = []
    if isinstance(job.details, FileDetails) and job.details.filename:
        names.append(job.details.filename)
    if job.title:
        names.append(job.title)
    result = []
    for name in names:
        cleaned = name.strip()
        lowered = cleaned.lower()
        if len(cleaned) < 3 or lowered.startswith(('http:', 'https:', 'magnet:')) or lowered in PLACEHOLDER_TITLES:
            continue
        result.append(cleaned)
    return result


def _is_partial(name: str) -> bool:
    lowered = name.lower()
    return any(lowered.endswith(suffix) for suffix in PARTIAL_FILE_SUFFIXES) or '.part-frag' in lowered


def detect_resume(jobs: List[DownloadJob], download_dir: Path) -> List[ResumeFinding]:
    """
    Scans the download directory for traces of queued jobs. Blocking; run it
    in a worker thread.

    Partial artifacts (``.part``, ``.ytdl``, ``.aria2`` ...) mark a job as
    having a partial file; an ``.aria2`` control file additionally means the
    segmented downloader can resume it. A finished file whose name matches
    the job's title or filename means the job already completed.
    """
    try:
        entries = [entry.name for entry in download_dir.iterdir()]
    except OSError:
        return []

    findings: List[ResumeFinding] = []
    for job in jobs:
        names = _meaningful_names(job)
        if not names:
            continue
        finding = ResumeFinding(job.job_id)
        finished: Optional[str] = None
        for entry in entries:
            lowered = entry.lower()
            matching = any(
                lowered == name.lower() or lowered.startswith(name.lower() + '.')
                for name in names
            )
            if not matching:
                continue
            if _is_partial(entry):
                finding.partial_files.append(entry)
                if lowered.endswith('.aria2'):
                    finding.can_resume = True
            elif Path(entry).suffix.lower() not in SIDECAR_SUFFIXES and finished is None:
                finished = entry
        if job.kind.is_torrent_like and finding.partial_files:
            finding.can_resume = True
        if finished and not finding.partial_files:
            finding.completed_file = finished
        if finding.partial_files or finding.completed_file:
            findings.append(finding)
    return findings
