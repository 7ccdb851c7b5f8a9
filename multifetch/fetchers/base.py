"""
Shared plumbing for the fetch strategies.

`ToolProcess` wraps one external tool invocation: it reads stdout and stderr
concurrently, splits both on carriage returns as well as newlines (progress
bars redraw with ``\\r``), and releases the process exactly once.
`ProgressTracker` keeps the strategy's local view of an attempt and decides
when a change is worth a broadcast.
"""

import asyncio
import os
import re
import signal
import subprocess
import sys
import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import Settings
from ..constants import SUBPROCESS_CREATION_FLAGS
from ..events import JobChannel
from ..exceptions import ResourceError, TransientFetchError
from ..jobs import DownloadJob, JobKind, JobStatus
from ..progress import ProgressUpdate, parse_rate

_LINE_SPLIT = re.compile(rb'[\r\n]')
_TRACKED_FIELDS = ('progress', 'speed', 'eta', 'size', 'peers', 'seeds', 'leechers', 'upload_speed', 'ratio')


@dataclass
class FetchOutcome:
    """How a successful strategy run ended."""
    reclassify_to: Optional[JobKind] = None
    new_url: Optional[str] = None

    @classmethod
    def success(cls) -> "FetchOutcome":
        return cls()

    @classmethod
    def reclassify(cls, kind: JobKind, url: Optional[str] = None) -> "FetchOutcome":
        return cls(reclassify_to=kind, new_url=url)


class ProgressGate:
    """
    Bounds broadcast frequency for one attempt.

    A broadcast is requested when progress changed, or when ``interval``
    seconds passed since the last request, whichever comes first.
    """
    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last = float('-inf')

    def should_emit(self, progress_changed: bool) -> bool:
        now = self.clock()
        if progress_changed or now - self._last >= self.interval:
            self._last = now
            return True
        return False


class ProgressTracker:
    """The strategy-side view of one attempt's progress."""

    def __init__(self, channel: JobChannel, interval: float, start_progress: float = 0.0):
        self.channel = channel
        self.gate = ProgressGate(interval)
        self.progress = start_progress
        self.fields: Dict[str, Any] = {}
        self.downloaded: Optional[str] = None
        self.postprocessing = False
        self.already_downloaded = False
        self.seeding = False
        self.saw_output = False

    def feed(self, update: ProgressUpdate) -> bool:
        """
        Posts the fields of ``update`` that differ from what was last sent.

        Returns:
            True if the transfer moved: the percentage rose, the downloaded
            byte count changed, or (for tools that print no byte count) a
            new non-zero rate was reported.
        """
        transferring = False
        if update.downloaded is not None:
            transferring = self.downloaded is not None and update.downloaded != self.downloaded
            self.downloaded = update.downloaded
        elif self.downloaded is None and update.speed is not None and update.speed != self.fields.get('speed'):
            transferring = parse_rate(update.speed) > 0

        changed: Dict[str, Any] = {}
        for name in _TRACKED_FIELDS:
            value = getattr(update, name)
            if value is None:
                continue
            if name == 'progress' and value < self.progress:
                continue
            if self.fields.get(name) != value:
                changed[name] = value
                self.fields[name] = value
        if update.destination:
            changed['destination'] = update.destination
        if update.already_downloaded:
            self.already_downloaded = True
        if update.seeding:
            self.seeding = True

        if not changed:
            return transferring
        progress_moved = 'progress' in changed and changed['progress'] != self.progress
        if 'progress' in changed:
            self.progress = changed['progress']
        self.channel.progress(broadcast=self.gate.should_emit(progress_moved), **changed)
        return progress_moved or transferring


def subprocess_kwargs() -> Dict[str, Any]:
    """Platform flags so the tool gets its own process group and no console window."""
    kwargs: Dict[str, Any] = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs['start_new_session'] = True
    return kwargs


class ToolProcess:
    """One running external tool."""

    def __init__(self, command: Sequence[str], job_id: str, grace_period: float = 5.0, cwd: Optional[Path] = None):
        self.command = [str(part) for part in command]
        self.job_id = job_id
        self.grace_period = grace_period
        self.cwd = cwd
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stderr_lines: List[str] = []
        self._readers: List[asyncio.Task] = []
        self._released = False
        self.logger = logging.getLogger(__name__)

    async def start(self):
        """
        Raises:
            ResourceError: If the executable is missing or cannot be run.
        """
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(self.cwd) if self.cwd else None,
                **subprocess_kwargs()
            )
        except FileNotFoundError:
            raise ResourceError(f"Executable not found: {self.command[0]}")
        except PermissionError as e:
            raise ResourceError(f"Cannot execute {self.command[0]}: {e}")
        except OSError as e:
            raise TransientFetchError(f"OS error starting {Path(self.command[0]).name}: {e}")
        self.logger.debug(f"[{self.job_id}] Started PID {self.process.pid}: {' '.join(self.command)}")

    async def _pump(self, stream: asyncio.StreamReader, name: str, queue: "asyncio.Queue[Tuple[str, Optional[str]]]"):
        buffer = b''
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                buffer += chunk
                parts = _LINE_SPLIT.split(buffer)
                buffer = parts.pop()
                for part in parts:
                    if part.strip():
                        queue.put_nowait((name, part.decode('utf-8', 'replace').strip()))
            if buffer.strip():
                queue.put_nowait((name, buffer.decode('utf-8', 'replace').strip()))
        finally:
            queue.put_nowait((name, None))

    async def lines(self) -> AsyncIterator[Tuple[str, str]]:
        """
        Yields ``(stream_name, line)`` from stdout and stderr as they arrive,
        until both streams are closed. Stderr lines are also kept in
        ``stderr_lines`` for error triage.
        """
        assert self.process is not None and self.process.stdout and self.process.stderr
        queue: "asyncio.Queue[Tuple[str, Optional[str]]]" = asyncio.Queue()
        self._readers = [
            asyncio.create_task(self._pump(self.process.stdout, 'stdout', queue)),
            asyncio.create_task(self._pump(self.process.stderr, 'stderr', queue)),
        ]
        open_streams = 2
        while open_streams:
            name, line = await queue.get()
            if line is None:
                open_streams -= 1
                continue
            if name == 'stderr':
                self.stderr_lines.append(line)
                if len(self.stderr_lines) > 500:
                    del self.stderr_lines[:100]
            yield name, line

    async def wait(self) -> int:
        assert self.process is not None
        return await self.process.wait()

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    async def release(self):
        """
        Stops the tool if it is still running. Safe to call any number of
        times and from any exit path; only the first call does anything.

        Sends an interrupt to the tool's process group, waits up to the grace
        period, then kills it.
        """
        if self._released:
            return
        self._released = True
        for reader in self._readers:
            reader.cancel()
        process = self.process
        if process is None or process.returncode is not None:
            return
        self.logger.info(f"[{self.job_id}] Terminating PID {process.pid}...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"[{self.job_id}] Graceful shutdown failed: {e}. Forcing termination...")
            try:
                process.kill()
                await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            except (ProcessLookupError, OSError, asyncio.TimeoutError):
                pass  # Already gone


class FetchStrategy:
    """
    Base class for the per-kind fetch strategies.

    A strategy runs one job to completion. It reports progress and status
    over the job's channel, returns a `FetchOutcome` on success and raises
    a `FetchError` subclass on failure. Every native resource it acquires is
    released before `run` returns or raises, including on cancellation.
    """
    kinds: Tuple[JobKind, ...] = ()

    def __init__(self, executable: Optional[Sequence[str]] = None):
        """
        Args:
            executable: Command prefix used to launch the tool, e.g.
                ``['/usr/bin/yt-dlp']``. Tests substitute a stand-in script here.
        """
        self.executable: List[str] = list(executable) if executable else []
        self.logger = logging.getLogger(self.__class__.__module__)

    async def run(self, job: DownloadJob, channel: JobChannel, settings: Settings) -> FetchOutcome:
        raise NotImplementedError

    def _mark_downloading(self, tracker: ProgressTracker, channel: JobChannel):
        if not tracker.saw_output:
            tracker.saw_output = True
            channel.status(JobStatus.DOWNLOADING)


# --- Filenames ---

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_filename(name: str, max_length: int = 200) -> str:
    """Makes a name safe to use as a single path component on every platform."""
    cleaned = _INVALID_FILENAME_CHARS.sub('_', name).strip().strip('.')
    cleaned = re.sub(r'\s+', ' ', cleaned)
    if len(cleaned) > max_length:
        stem, dot, extension = cleaned.rpartition('.')
        if dot and len(extension) <= 10:
            cleaned = stem[:max_length - len(extension) - 1] + '.' + extension
        else:
            cleaned = cleaned[:max_length]
    return cleaned
