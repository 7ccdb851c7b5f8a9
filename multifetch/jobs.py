"""
Defines the data classes for a download job.

A job carries the fields common to every kind plus a kind-specific `details`
variant. Torrent-only counters live on `TorrentDetails`; the accessors on
`DownloadJob` report them as zero/None for the other kinds.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class JobKind(str, Enum):
    MEDIA = 'media'
    FILE = 'file'
    TORRENT = 'torrent'
    MAGNET = 'magnet'

    @property
    def is_torrent_like(self) -> bool:
        return self in (JobKind.TORRENT, JobKind.MAGNET)


class JobStatus(str, Enum):
    QUEUED = 'queued'
    STARTING = 'starting'
    DOWNLOADING = 'downloading'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRYING = 'retrying'
    CANCELLED = 'cancelled'

    @property
    def is_running(self) -> bool:
        return self in RUNNING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


RUNNING_STATUSES = frozenset({JobStatus.STARTING, JobStatus.DOWNLOADING, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class MediaDetails:
    """State owned by the media extraction strategy."""
    fresh_start_attempted: bool = False
    access_retry_attempted: bool = False
    already_downloaded: bool = False


@dataclass
class FileDetails:
    """State owned by the segmented file strategy."""
    filename: Optional[str] = None
    filename_hint: Optional[str] = None


@dataclass
class TorrentDetails:
    """State owned by the torrent and magnet strategies."""
    peers: int = 0
    seeds: Optional[int] = None
    leechers: Optional[int] = None
    upload_speed: Optional[str] = None
    ratio: Optional[float] = None
    torrent_file: Optional[str] = None


JobDetails = Union[MediaDetails, FileDetails, TorrentDetails]


def details_for(kind: JobKind) -> JobDetails:
    """Returns a fresh details variant for a job kind."""
    if kind is JobKind.MEDIA:
        return MediaDetails()
    if kind is JobKind.FILE:
        return FileDetails()
    return TorrentDetails()


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class DownloadJob:
    """
    Represents a single download task.

    Attributes:
        job_id: A unique, immutable identifier for the job.
        url: The URL (or local .torrent path) that is fetched.
        kind: The fetch strategy category this job was classified into.
        format: Optional quality selector for media jobs.
        title: Human title, refined from tool output while downloading.
        status: Current lifecycle state.
        progress: Percentage 0-100, fractional allowed.
        speed, eta, size: Free-form display strings reported by the tools.
        error: Classified human-readable error, or None.
        retry_count: Number of failure-to-retry transitions so far.
        handle: The live fetch task. Never persisted.
        attempt: Dispatch counter used to discard messages from earlier runs.
        details: Kind-specific variant, see `details_for`.
    """
    job_id: str
    url: str
    kind: JobKind
    format: Optional[str] = None
    title: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    size: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    added_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    original_url: Optional[str] = None
    has_partial_file: bool = False
    partial_files: List[str] = field(default_factory=list)
    can_resume: bool = False
    details: JobDetails = None  # type: ignore[assignment]
    handle: Any = field(default=None, repr=False)
    attempt: int = 0

    def __post_init__(self):
        self.kind = JobKind(self.kind)
        self.status = JobStatus(self.status)
        if self.details is None:
            self.details = details_for(self.kind)

    # --- Kind-aware accessors ---

    @property
    def torrent(self) -> Optional[TorrentDetails]:
        return self.details if isinstance(self.details, TorrentDetails) else None

    @property
    def peers(self) -> int:
        return self.torrent.peers if self.torrent else 0

    @property
    def upload_speed(self) -> Optional[str]:
        return self.torrent.upload_speed if self.torrent else None

    @property
    def ratio(self) -> Optional[float]:
        return self.torrent.ratio if self.torrent else None

    @property
    def display_name(self) -> str:
        return self.title or self.url

    def reclassify(self, kind: JobKind, url: Optional[str] = None):
        """
        Switches the job to another strategy, discarding the old variant.

        Args:
            kind: The new job kind.
            url: Replacement source, e.g. the local path of a sniffed .torrent file.
        """
        if url and url != self.url:
            if self.original_url is None:
                self.original_url = self.url
            self.url = url
        self.kind = JobKind(kind)
        self.details = details_for(self.kind)

    def reset_transient(self):
        """Clears the fields that only make sense for a running attempt."""
        self.progress = 0.0
        self.speed = None
        self.eta = None
        self.error = None
        self.handle = None
        if self.torrent:
            self.torrent.peers = 0
            self.torrent.upload_speed = None

    def to_dict(self) -> Dict[str, Any]:
        """Returns the observer-facing view of the job, without the live handle."""
        data: Dict[str, Any] = {
            'id': self.job_id,
            'url': self.url,
            'originalUrl': self.original_url,
            'format': self.format,
            'title': self.title,
            'downloadType': self.kind.value,
            'status': self.status.value,
            'progress': round(self.progress, 2),
            'speed': self.speed,
            'eta': self.eta,
            'size': self.size,
            'error': self.error,
            'retryCount': self.retry_count,
            'addedAt': self.added_at,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'hasPartialFile': self.has_partial_file,
            'partialFiles': list(self.partial_files),
            'canResume': self.can_resume,
            'peers': self.peers,
            'uploadSpeed': self.upload_speed,
            'ratio': self.ratio,
        }
        if self.torrent:
            data['seeds'] = self.torrent.seeds
            data['leechers'] = self.torrent.leechers
        if isinstance(self.details, FileDetails):
            data['filename'] = self.details.filename
        return data
