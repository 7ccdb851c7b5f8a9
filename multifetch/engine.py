"""
The download engine: owns the queue store, runs the scheduler and applies
every message coming back from running fetch strategies.

All queue mutation happens on the event loop. Running strategies never touch
the store; they post `JobEvent` messages which a single dispatcher task
applies in order. A message whose ``(job_id, attempt)`` no longer matches an
active job is stale (the job was cancelled or re-dispatched) and is dropped.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .broadcaster import EventBroadcaster, Listener, Subscription
from .classifier import classify_url
from .config import Settings
from .events import ErrorEvent, ExitEvent, JobChannel, JobEvent, ProgressEvent, StatusEvent
from .exceptions import FetchError
from .fetchers.base import FetchStrategy
from .jobs import DownloadJob, FileDetails, JobKind, JobStatus, MediaDetails, now_ms
from .persistence import JobRecord, PersistedSettings, StateDocument, StatePersistence, detect_resume, restore_jobs
from .progress import ProgressUpdate, apply_progress
from .queue_store import QueueStore
from .scheduler import Scheduler

PROGRESS_LOG_INTERVAL = 5.0
DEFAULT_TITLES = {
    JobKind.MEDIA: 'Video Download',
    JobKind.TORRENT: 'Torrent File Download',
    JobKind.MAGNET: 'Magnet Link Download',
}
# Job attributes a strategy may set through a status message.
_STATUS_FIELDS = ('title', 'size', 'speed', 'eta')


class DownloadEngine:
    """Accepts jobs, schedules them and keeps observers and the state file current."""

    def __init__(self, settings: Settings, strategies: Dict[JobKind, FetchStrategy],
                 persistence: Optional[StatePersistence] = None):
        """
        Initializes the DownloadEngine.

        Args:
            settings: Engine settings. Passed on to the scheduler and to each
                strategy run; replace them through `apply_settings`.
            strategies: The fetch strategy for each job kind.
            persistence: State file writer; None runs the engine in memory only.
        """
        self.settings = settings
        self.strategies = strategies
        self.persistence = persistence
        self.logger = logging.getLogger(__name__)

        self.store = QueueStore(settings.history_limit)
        self.scheduler = Scheduler(self.store, self._dispatch, settings.max_concurrent_downloads)
        self.scheduler.enabled = settings.queue_enabled
        self.broadcaster = EventBroadcaster(self.get_queue_state, settings.broadcast_interval)

        self.events: "asyncio.Queue[JobEvent]" = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._retry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._last_progress_log: Dict[str, float] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    # --- Lifecycle ---

    async def start(self):
        """Restores the saved queue, starts the dispatcher and promotes the first jobs."""
        if self._dispatcher is not None:
            return
        await self._restore()
        self._dispatcher = asyncio.create_task(self._dispatch_events(), name='job-dispatcher')
        self._dispatcher.add_done_callback(self._handle_task_exception)
        self.logger.info(
            f"Download engine started: {len(self.store.queued)} queued, {len(self.store.history)} in history, "
            f"queue {'enabled' if self.scheduler.enabled else 'paused'}")
        self._promote()
        self._changed(immediate=True, persist=False)

    async def shutdown(self):
        """
        Stops every running job and writes the final state.

        Running jobs stay recorded as active, so the next start puts them back
        in the queue.
        """
        self.logger.info("Shutting down download engine...")
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.store.active.values():
            job.handle = None

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        self.broadcaster.close()

        if self.persistence is not None:
            self.persistence.schedule_save(self._state_document)
            await self.persistence.flush()
        self.logger.info("Download engine stopped.")

    def apply_settings(self, settings: Settings):
        """Swaps in new settings; concurrency changes take effect immediately."""
        self.settings = settings
        self.scheduler.max_concurrent = settings.max_concurrent_downloads
        self.store.set_history_limit(settings.history_limit)
        self.broadcaster.min_interval = settings.broadcast_interval
        if self.persistence is not None:
            self.persistence.debounce = settings.save_debounce
        self.logger.info(f"Settings applied: max concurrent downloads = {settings.max_concurrent_downloads}")
        self._promote()
        self._changed(immediate=True)

    async def _restore(self):
        if self.persistence is None:
            return
        document = await self.persistence.load()
        queued, history = restore_jobs(document)
        self.store.next_id = max(self.store.next_id, document.next_id)
        if queued or history:
            self.scheduler.enabled = document.settings.queue_enabled
        for job in reversed(history):
            self.store.history.appendleft(job)
        for job in queued:
            self.store.enqueue(job)
        if not queued:
            return

        findings = await asyncio.to_thread(detect_resume, queued, Path(self.settings.download_dir))
        for finding in findings:
            job = self.store.get(finding.job_id)
            if job is None:
                continue
            if finding.completed_file:
                self.logger.info(f"[{job.job_id}] Found finished file '{finding.completed_file}', marking completed")
                job.status = JobStatus.COMPLETED
                job.progress = 100.0
                job.completed_at = now_ms()
                self.store.archive(job)
                continue
            job.has_partial_file = True
            job.partial_files = finding.partial_files
            job.can_resume = finding.can_resume
            self.logger.info(
                f"[{job.job_id}] Found {len(finding.partial_files)} partial file(s)"
                f"{', resumable' if finding.can_resume else ''}")
        self.logger.info(f"Restored {len(queued)} queued job(s) from {self.persistence.path}")
        if findings:
            self._save()

    async def wait_until_idle(self):
        """Waits until no job is running, queued or waiting to retry."""
        await self._idle.wait()

    # --- Observers ---

    def get_queue_state(self) -> Dict[str, Any]:
        return self.store.snapshot(self.scheduler.enabled, self.scheduler.max_concurrent)

    def subscribe(self, maxsize: int = 16) -> Subscription:
        return self.broadcaster.subscribe(maxsize)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        return self.broadcaster.add_listener(listener)

    # --- Submission and control ---

    def submit(self, url: str, format: Optional[str] = None, title: Optional[str] = None,
               resolved_kind: Optional[str] = None, resolved_method: Optional[str] = None,
               filename_hint: Optional[str] = None) -> str:
        """
        Classifies a URL and queues a job for it.

        Returns:
            The new job id.

        Raises:
            ClassificationError: If the URL is empty or cannot be classified.
        """
        url = (url or '').strip()
        kind = classify_url(url, resolved_kind, resolved_method)
        job = DownloadJob(
            job_id=self.store.new_job_id(), url=url, kind=kind, format=format,
            title=title or DEFAULT_TITLES.get(kind),
        )
        if filename_hint and isinstance(job.details, FileDetails):
            job.details.filename_hint = filename_hint
        self.store.enqueue(job)
        self.logger.info(f"Queued {kind.value} job {job.job_id}: {url}")
        self._changed(immediate=True)
        self._promote()
        return job.job_id

    def pause_queue(self) -> bool:
        """Stops promoting queued jobs. Running jobs continue."""
        self.scheduler.enabled = False
        self.logger.info("Queue paused")
        self._changed(immediate=True)
        return True

    def resume_queue(self) -> bool:
        self.scheduler.enabled = True
        self.logger.info("Queue resumed")
        self._changed(immediate=True)
        self._promote()
        return True

    def cancel(self, job_id: str) -> bool:
        """
        Cancels a queued, retrying or running job.

        A queued job is simply taken off the list. A running job is marked
        cancelled, its task is cancelled (the strategy releases its process
        or session within the grace period) and the freed slot is refilled.

        Returns:
            False if the job is unknown or already finished.
        """
        job, location = self.store.find(job_id)
        if job is None or location == 'history':
            return False
        self._cancel_retry_timer(job_id)
        task = job.handle if location == 'active' else None
        job.handle = None
        job.status = JobStatus.CANCELLED
        job.speed = None
        job.eta = None
        job.completed_at = now_ms()
        self.store.archive(job)
        if task is not None:
            task.cancel()
        self.logger.info(f"[{job_id}] Cancelled ({location})")
        self._changed(immediate=True)
        if location == 'active':
            self._promote()
        return True

    def reorder(self, from_index: int, to_index: int) -> bool:
        if not self.store.reorder(from_index, to_index):
            self.logger.debug(f"Rejected reorder {from_index} -> {to_index}")
            return False
        self._changed(immediate=True)
        return True

    def retry(self, job_id: str) -> bool:
        """
        Re-queues a failed or cancelled job from the history with a fresh retry
        budget. A job waiting out its retry delay is re-queued right away.
        """
        job, location = self.store.find(job_id)
        if job is None:
            return False
        if location == 'queued' and job.status == JobStatus.RETRYING:
            self._cancel_retry_timer(job_id)
            job.status = JobStatus.QUEUED
            job.reset_transient()
        elif location == 'history' and job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            self.store.remove_from_history(job_id)
            self._reset_for_retry(job)
            self.store.enqueue(job)
        else:
            return False
        self.logger.info(f"[{job_id}] Manual retry requested")
        self._changed(immediate=True)
        self._promote()
        return True

    def retry_all_failed(self) -> int:
        failed = [job for job in self.store.history if job.status == JobStatus.FAILED]
        for job in failed:
            self.store.remove_from_history(job.job_id)
            self._reset_for_retry(job)
            self.store.enqueue(job)
        if failed:
            self.logger.info(f"Retrying {len(failed)} failed download(s)")
            self._changed(immediate=True)
            self._promote()
        return len(failed)

    def clear_completed(self) -> int:
        """Drops completed and cancelled jobs from the history; failed ones stay for retry."""
        cleared = [job for job in self.store.history if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED)]
        for job in cleared:
            self.store.remove_from_history(job.job_id)
        if cleared:
            self.logger.info(f"Cleared {len(cleared)} finished item(s) from the history")
            self._changed(immediate=True)
        return len(cleared)

    def remove(self, job_id: str) -> bool:
        """Forgets a job entirely. A running job is cancelled first."""
        job, location = self.store.find(job_id)
        if job is None:
            return False
        if location in ('queued', 'active'):
            self.cancel(job_id)
        self.store.remove_from_history(job_id)
        self._changed(immediate=True)
        return True

    def _reset_for_retry(self, job: DownloadJob):
        job.status = JobStatus.QUEUED
        job.retry_count = 0
        job.started_at = None
        job.completed_at = None
        job.reset_transient()
        if isinstance(job.details, MediaDetails):
            job.details = MediaDetails()

    def _cancel_retry_timer(self, job_id: str):
        timer = self._retry_timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    # --- Scheduling ---

    def _promote(self):
        if self.scheduler.promote():
            self._changed(immediate=True)

    def _dispatch(self, job: DownloadJob):
        """Starts the strategy task for a job the scheduler just promoted."""
        channel = JobChannel(job.job_id, job.attempt, self.events)
        strategy = self.strategies.get(job.kind)
        if strategy is None:
            channel.error(f"No downloader is available for {job.kind.value} jobs", retryable=False)
            return
        task = asyncio.create_task(self._run_job(job, strategy, channel), name=f"fetch-{job.job_id}")
        job.handle = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._handle_task_exception)

    async def _run_job(self, job: DownloadJob, strategy: FetchStrategy, channel: JobChannel):
        try:
            outcome = await strategy.run(job, channel, self.settings)
        except FetchError as e:
            channel.error(e.message, e.retryable)
        except asyncio.CancelledError:
            self.logger.debug(f"[{job.job_id}] Fetch task cancelled")
            raise
        except Exception as e:
            self.logger.exception(f"[{job.job_id}] Unexpected error in {type(strategy).__name__}")
            channel.error(f"Unexpected error: {e}", retryable=True)
        else:
            channel.exited(True, outcome.reclassify_to, outcome.new_url)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    # --- Message application ---

    async def _dispatch_events(self):
        while True:
            event = await self.events.get()
            try:
                self._apply(event)
            except Exception:
                self.logger.exception(f"Error applying {type(event).__name__} for {event.job_id}")

    def _apply(self, event: JobEvent):
        job = self.store.active.get(event.job_id)
        if job is None or job.attempt != event.attempt:
            self.logger.debug(f"Dropping stale {type(event).__name__} for {event.job_id} (attempt {event.attempt})")
            return
        if isinstance(event, ProgressEvent):
            self._on_progress(job, event)
        elif isinstance(event, StatusEvent):
            self._on_status(job, event)
        elif isinstance(event, ExitEvent):
            self._on_exit(job, event)
        elif isinstance(event, ErrorEvent):
            self._on_error(job, event)

    def _on_progress(self, job: DownloadJob, event: ProgressEvent):
        if apply_progress(job, ProgressUpdate(**event.fields)) and event.broadcast:
            self.broadcaster.publish()
        self._log_progress(job)

    def _on_status(self, job: DownloadJob, event: StatusEvent):
        previous = job.status
        job.status = event.status
        if event.reset_progress:
            job.progress = 0.0
            job.speed = None
            job.eta = None
        fields = dict(event.fields)
        for name, value in (fields.pop('details', None) or {}).items():
            if hasattr(job.details, name):
                setattr(job.details, name, value)
        if 'progress' in fields:
            job.progress = round(float(fields.pop('progress')), 2)
        for name in _STATUS_FIELDS:
            if name in fields:
                setattr(job, name, fields[name])

        if previous != job.status:
            self.logger.info(f"[{job.job_id}] {previous.value} -> {job.status.value}")
            self._changed(immediate=True)
        else:
            self.broadcaster.publish()

    def _on_exit(self, job: DownloadJob, event: ExitEvent):
        self._release_slot(job)
        if event.reclassify_to is not None:
            previous_kind = job.kind
            job.reclassify(event.reclassify_to, event.new_url)
            job.status = JobStatus.QUEUED
            job.started_at = None
            job.reset_transient()
            self.store.enqueue(job, front=True)
            self.logger.info(
                f"[{job.job_id}] Re-classified from {previous_kind.value} to {job.kind.value}: {job.url}")
        else:
            job.status = JobStatus.COMPLETED
            job.progress = 100.0
            job.eta = None
            job.error = None
            job.completed_at = now_ms()
            self.store.archive(job)
            self.logger.info(f"[{job.job_id}] Completed: {job.display_name}")
        self._changed(immediate=True)
        self._promote()

    def _on_error(self, job: DownloadJob, event: ErrorEvent):
        """Applies the retry policy to a failed attempt."""
        self._release_slot(job)
        job.error = event.message
        if event.retryable:
            job.retry_count += 1
            if job.retry_count <= self.settings.max_retries:
                job.status = JobStatus.RETRYING
                # It was promoted ahead of everything still waiting, so it keeps the head of the line.
                self.store.enqueue(job, front=True)
                loop = asyncio.get_running_loop()
                self._retry_timers[job.job_id] = loop.call_later(
                    self.settings.retry_delay, self._retry_due, job.job_id)
                self.logger.warning(
                    f"[{job.job_id}] Attempt failed ({event.message}); retry {job.retry_count}/"
                    f"{self.settings.max_retries} in {self.settings.retry_delay:g}s")
                self._changed(immediate=True)
                self._promote()
                return

        job.status = JobStatus.FAILED
        job.completed_at = now_ms()
        self.store.archive(job)
        self.logger.error(f"[{job.job_id}] Failed: {event.message}")
        self._changed(immediate=True)
        self._promote()

    def _retry_due(self, job_id: str):
        self._retry_timers.pop(job_id, None)
        job, location = self.store.find(job_id)
        if job is None or location != 'queued' or job.status != JobStatus.RETRYING:
            return
        job.status = JobStatus.QUEUED
        job.reset_transient()
        self.logger.info(f"[{job_id}] Back in the queue for attempt {job.retry_count + 1}")
        self._changed(immediate=True)
        self._promote()

    def _release_slot(self, job: DownloadJob):
        self.store.deactivate(job.job_id)
        job.handle = None
        job.speed = None
        job.eta = None
        self._last_progress_log.pop(job.job_id, None)

    # --- Side effects of a change ---

    def _changed(self, immediate: bool = False, persist: bool = True):
        self.broadcaster.publish(immediate=immediate)
        if persist:
            self._save()
        self._update_idle()

    def _update_idle(self):
        waiting = any(job.status in (JobStatus.QUEUED, JobStatus.RETRYING) for job in self.store.queued)
        if self.store.active or waiting:
            self._idle.clear()
        else:
            self._idle.set()

    def _save(self):
        if self.persistence is not None:
            self.persistence.schedule_save(self._state_document)

    def _state_document(self) -> StateDocument:
        queue: List[DownloadJob] = [*self.store.active.values(), *self.store.queued]
        return StateDocument(
            next_id=self.store.next_id,
            queue=[JobRecord.from_job(job) for job in queue],
            completed_downloads=[JobRecord.from_job(job) for job in self.store.history],
            settings=PersistedSettings(queue_enabled=self.scheduler.enabled, max_retries=self.settings.max_retries),
        )

    def _log_progress(self, job: DownloadJob):
        now = asyncio.get_running_loop().time()
        if now - self._last_progress_log.get(job.job_id, float('-inf')) < PROGRESS_LOG_INTERVAL:
            return
        self._last_progress_log[job.job_id] = now
        parts = [f"{job.progress:.1f}%"]
        if job.speed:
            parts.append(job.speed)
        if job.eta:
            parts.append(f"ETA {job.eta}")
        if job.kind.is_torrent_like:
            parts.append(f"{job.peers} peers")
        self.logger.info(f"[{job.job_id}] {' | '.join(parts)}")
