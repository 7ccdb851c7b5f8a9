"""
The authoritative in-memory model of every job the engine knows about.

Three collections are kept: the ordered ``queued`` list (which also holds
jobs waiting out a retry delay), the ``active`` mapping of running jobs, and
a bounded ``history`` of terminal jobs, most recent first. A job lives in at
most one of queued/active at any time. All mutation happens on the engine's
event loop; nothing here is thread-safe and nothing needs to be.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from .jobs import DownloadJob, JobStatus, now_ms
from .progress import format_rate, parse_rate


class QueueStore:
    """Holds queued, active and recently finished jobs."""

    def __init__(self, history_limit: int = 50):
        self.logger = logging.getLogger(__name__)
        self.queued: List[DownloadJob] = []
        self.active: Dict[str, DownloadJob] = {}
        self.history: Deque[DownloadJob] = deque(maxlen=history_limit)
        self.next_id: int = 1

    # --- Identity ---

    def new_job_id(self) -> str:
        job_id = f"download_{self.next_id}_{now_ms()}"
        self.next_id += 1
        return job_id

    def set_history_limit(self, limit: int):
        if limit != self.history.maxlen:
            self.history = deque(self.history, maxlen=limit)

    # --- Lookup ---

    def find(self, job_id: str) -> Tuple[Optional[DownloadJob], Optional[str]]:
        """
        Finds a job anywhere in the store.

        Returns:
            A tuple of (job, location) where location is 'queued', 'active' or
            'history', or (None, None) if the id is unknown.
        """
        if job_id in self.active:
            return self.active[job_id], 'active'
        for job in self.queued:
            if job.job_id == job_id:
                return job, 'queued'
        for job in self.history:
            if job.job_id == job_id:
                return job, 'history'
        return None, None

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return self.find(job_id)[0]

    def all_jobs(self) -> List[DownloadJob]:
        return [*self.active.values(), *self.queued, *self.history]

    # --- Mutation ---

    def enqueue(self, job: DownloadJob, front: bool = False):
        if front:
            self.queued.insert(0, job)
        else:
            self.queued.append(job)

    def remove_queued(self, job_id: str) -> Optional[DownloadJob]:
        for index, job in enumerate(self.queued):
            if job.job_id == job_id:
                return self.queued.pop(index)
        return None

    def activate(self, job: DownloadJob):
        """Moves a job from the queued list into the active set."""
        self.remove_queued(job.job_id)
        self.active[job.job_id] = job

    def deactivate(self, job_id: str) -> Optional[DownloadJob]:
        return self.active.pop(job_id, None)

    def archive(self, job: DownloadJob):
        """
        Records a terminal job in the history, evicting the oldest entry
        once the cap is exceeded.
        """
        self.deactivate(job.job_id)
        self.remove_queued(job.job_id)
        self.remove_from_history(job.job_id)
        if len(self.history) == self.history.maxlen and self.history:
            evicted = self.history[-1]
            self.logger.debug(f"History full, evicting {evicted.job_id}")
        self.history.appendleft(job)

    def remove_from_history(self, job_id: str) -> Optional[DownloadJob]:
        for job in self.history:
            if job.job_id == job_id:
                self.history.remove(job)
                return job
        return None

    def reorder(self, from_index: int, to_index: int) -> bool:
        """
        Moves a still-queued job to a new position in the queued list.

        Returns:
            False if either index is out of bounds or the job at ``from_index``
            is not in the queued state; True once the move is done.
        """
        size = len(self.queued)
        if not (0 <= from_index < size and 0 <= to_index < size):
            return False
        if self.queued[from_index].status != JobStatus.QUEUED:
            return False
        job = self.queued.pop(from_index)
        self.queued.insert(to_index, job)
        return True

    # --- Views ---

    @property
    def active_count(self) -> int:
        return len(self.active)

    @property
    def active_torrent_count(self) -> int:
        return sum(1 for job in self.active.values() if job.kind.is_torrent_like)

    def stats(self) -> Dict[str, int]:
        return {
            'queuedCount': len(self.queued),
            'activeCount': len(self.active),
            'completedCount': sum(1 for job in self.history if job.status == JobStatus.COMPLETED),
            'failedCount': sum(1 for job in self.history if job.status == JobStatus.FAILED),
        }

    def total_rates(self) -> Tuple[float, float]:
        """Sums the display rates of running jobs into bytes per second."""
        download = sum(parse_rate(job.speed) for job in self.active.values())
        upload = sum(parse_rate(job.upload_speed) for job in self.active.values())
        return download, upload

    def snapshot(self, queue_enabled: bool, max_concurrent: int) -> Dict[str, Any]:
        """
        Builds one canonical, JSON-ready view of the whole store.
        """
        download, upload = self.total_rates()
        return {
            'queued': [job.to_dict() for job in self.queued],
            'active': [job.to_dict() for job in self.active.values()],
            'completedHistory': [job.to_dict() for job in self.history],
            'stats': self.stats(),
            'totalDownloadRate': format_rate(download),
            'totalUploadRate': format_rate(upload),
            'queueEnabled': queue_enabled,
            'maxConcurrent': max_concurrent,
        }
