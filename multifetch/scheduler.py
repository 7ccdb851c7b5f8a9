"""
The promote step: decides which queued jobs start next.

Two budgets apply. The global one (``max_concurrent``) bounds every running
job. Torrent and magnet jobs are additionally held to `TORRENT_CONCURRENCY_CAP`;
while that sub-cap is full they are skipped and later non-torrent jobs are
promoted ahead of them. Under sustained non-torrent load a torrent job can
therefore wait indefinitely. That ordering is intentional.
"""

import logging
from typing import Callable, Iterable, List

from .constants import TORRENT_CONCURRENCY_CAP
from .jobs import DownloadJob, JobStatus, now_ms
from .queue_store import QueueStore


def select_for_promotion(queued: Iterable[DownloadJob], active_count: int, active_torrent_count: int,
                         max_concurrent: int, torrent_cap: int = TORRENT_CONCURRENCY_CAP) -> List[DownloadJob]:
    """
    Picks the queued jobs to start, in queue order.

    Args:
        queued: The queued list, in order. Jobs not in the queued state are skipped.
        active_count: Number of running jobs.
        active_torrent_count: Number of running torrent/magnet jobs.
        max_concurrent: Global concurrency budget.
        torrent_cap: Sub-cap for torrent/magnet jobs.

    Returns:
        The jobs to promote. Pure; nothing is mutated.
    """
    slots = max_concurrent - active_count
    if slots <= 0:
        return []
    torrent_slots = torrent_cap - active_torrent_count

    selected: List[DownloadJob] = []
    for job in queued:
        if len(selected) >= slots:
            break
        if job.status != JobStatus.QUEUED:
            continue
        if job.kind.is_torrent_like:
            if torrent_slots <= 0:
                continue
            torrent_slots -= 1
        selected.append(job)
    return selected


class Scheduler:
    """
    Runs the promote step against a QueueStore.

    The concurrency budget is only read here and in the engine's
    completion/cancellation handlers; strategies never see it.
    """
    def __init__(self, store: QueueStore, dispatch: Callable[[DownloadJob], None],
                 max_concurrent: int, torrent_cap: int = TORRENT_CONCURRENCY_CAP):
        """
        Initializes the Scheduler.

        Args:
            store: The queue store to promote from.
            dispatch: Called synchronously for every promoted job, after it was
                moved to the active set, to start its fetch strategy.
            max_concurrent: Global concurrency budget.
            torrent_cap: Sub-cap for torrent/magnet jobs.
        """
        self.store = store
        self.dispatch = dispatch
        self.max_concurrent = max_concurrent
        self.torrent_cap = torrent_cap
        self.enabled = True
        self.logger = logging.getLogger(__name__)

    def promote(self) -> List[DownloadJob]:
        """
        Promotes as many queued jobs as the budgets allow.

        Returns:
            The promoted jobs (possibly empty).
        """
        if not self.enabled:
            return []
        promoted = select_for_promotion(
            self.store.queued, self.store.active_count, self.store.active_torrent_count,
            self.max_concurrent, self.torrent_cap,
        )
        for job in promoted:
            job.status = JobStatus.STARTING
            job.started_at = now_ms()
            job.completed_at = None
            job.attempt += 1
            self.store.activate(job)
            self.logger.info(f"Starting {job.kind.value} job {job.job_id}: {job.display_name}")
            self.dispatch(job)
        if promoted:
            self.logger.debug(
                f"Promoted {len(promoted)} job(s); active={self.store.active_count}/{self.max_concurrent}, "
                f"torrents={self.store.active_torrent_count}/{self.torrent_cap}"
            )
        return promoted
