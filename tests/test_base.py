"""Tests for the shared strategy plumbing: broadcast gating, progress tracking and process release."""

import asyncio
import os
import sys
from typing import List

import pytest

from multifetch.engine import DownloadEngine
from multifetch.events import JobChannel, ProgressEvent
from multifetch.fetchers.base import ProgressGate, ProgressTracker, ToolProcess
from multifetch.fetchers.file import FileStrategy
from multifetch.jobs import JobKind, JobStatus
from multifetch.progress import ProgressUpdate

posix_only = pytest.mark.skipif(sys.platform == 'win32', reason="relies on POSIX signals")

IGNORES_INTERRUPT = r'''
import os, signal, sys, time
signal.signal(signal.SIGINT, signal.SIG_IGN)
PIDFILE
sys.stdout.write("ready\n")
sys.stdout.write("[#a1b2c3 1.0MiB/100MiB(1%) CN:4 DL:1.0MiB]\n")
sys.stdout.flush()
time.sleep(60)
'''


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _drain(queue: asyncio.Queue) -> List[ProgressEvent]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestProgressGate:
    def test_first_request_always_emits(self):
        gate = ProgressGate(1.0, clock=FakeClock())
        assert gate.should_emit(False) is True

    def test_unchanged_progress_waits_for_the_interval(self):
        clock = FakeClock()
        gate = ProgressGate(1.0, clock=clock)
        gate.should_emit(False)

        clock.now += 0.5
        assert gate.should_emit(False) is False
        clock.now += 0.5
        assert gate.should_emit(False) is True
        clock.now += 0.1
        assert gate.should_emit(False) is False

    def test_changed_progress_emits_inside_the_interval(self):
        clock = FakeClock()
        gate = ProgressGate(1.0, clock=clock)
        gate.should_emit(False)

        clock.now += 0.1
        assert gate.should_emit(True) is True
        # The interval restarts from the last emission.
        clock.now += 0.5
        assert gate.should_emit(False) is False


class TestProgressTracker:
    def _tracker(self, interval: float = 1.0):
        queue: asyncio.Queue = asyncio.Queue()
        clock = FakeClock()
        tracker = ProgressTracker(JobChannel('j1', 1, queue), interval)
        tracker.gate.clock = clock
        return tracker, queue, clock

    async def test_only_changed_fields_are_posted(self):
        tracker, queue, _ = self._tracker()
        tracker.feed(ProgressUpdate(progress=10.0, speed='1MiB/s', size='10MiB'))
        tracker.feed(ProgressUpdate(progress=20.0, speed='1MiB/s', size='10MiB'))

        events = _drain(queue)
        assert events[0].fields == {'progress': 10.0, 'speed': '1MiB/s', 'size': '10MiB'}
        assert events[1].fields == {'progress': 20.0}

    async def test_speed_only_change_is_broadcast_after_the_interval(self):
        tracker, queue, clock = self._tracker()
        tracker.feed(ProgressUpdate(progress=10.0, speed='1MiB/s'))
        clock.now += 0.2
        tracker.feed(ProgressUpdate(progress=10.0, speed='2MiB/s'))
        clock.now += 1.0
        tracker.feed(ProgressUpdate(progress=10.0, speed='3MiB/s'))

        assert [event.broadcast for event in _drain(queue)] == [True, False, True]

    async def test_progress_never_moves_backwards(self):
        tracker, queue, _ = self._tracker()
        tracker.feed(ProgressUpdate(progress=60.0))
        assert tracker.feed(ProgressUpdate(progress=30.0)) is False
        assert tracker.progress == 60.0
        assert len(_drain(queue)) == 1

    async def test_growing_byte_count_is_movement_at_a_flat_percentage(self):
        tracker, _, _ = self._tracker()
        assert tracker.feed(ProgressUpdate(progress=0.0, downloaded='100MiB', size='100GiB')) is False
        assert tracker.feed(ProgressUpdate(progress=0.0, downloaded='110MiB', size='100GiB')) is True
        assert tracker.feed(ProgressUpdate(progress=0.0, downloaded='110MiB', size='100GiB')) is False

    async def test_live_rate_is_movement_without_a_byte_count(self):
        tracker, _, _ = self._tracker()
        assert tracker.feed(ProgressUpdate(progress=5.0, speed='1.00MiB/s')) is True
        assert tracker.feed(ProgressUpdate(progress=5.0, speed='1.00MiB/s')) is False
        assert tracker.feed(ProgressUpdate(progress=5.0, speed='1.10MiB/s')) is True
        assert tracker.feed(ProgressUpdate(progress=5.0, speed='0B/s')) is False


@posix_only
class TestToolRelease:
    async def test_interrupt_ignored_then_killed_once(self, fake_tool):
        tool = ToolProcess(fake_tool(IGNORES_INTERRUPT.replace('PIDFILE', '')), 't1', grace_period=0.3)
        await tool.start()
        assert (await tool.process.stdout.readline()).strip() == b'ready'

        kills = []
        original_kill = tool.process.kill
        tool.process.kill = lambda: (kills.append(True), original_kill())

        loop = asyncio.get_running_loop()
        started = loop.time()
        await tool.release()
        elapsed = loop.time() - started

        assert tool.returncode == -9
        assert kills == [True]
        assert 0.3 <= elapsed < 2.0

        await tool.release()
        assert kills == [True]

    async def test_release_after_exit_does_nothing(self, fake_tool):
        tool = ToolProcess(fake_tool("print('done')\n"), 't2', grace_period=0.3)
        await tool.start()
        async for _ in tool.lines():
            pass
        assert await tool.wait() == 0
        await tool.release()
        assert tool.returncode == 0

    async def test_cancelling_a_running_job_kills_its_tool(self, settings, fake_tool, tmp_path, wait_until):
        pid_file = tmp_path / 'tool.pid'
        script = IGNORES_INTERRUPT.replace('PIDFILE', f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))")
        strategy = FileStrategy(fake_tool(script))
        engine = DownloadEngine(settings.model_copy(update={'cancel_grace_period': 0.3}),
                                {JobKind.FILE: strategy})
        await engine.start()
        try:
            job_id = engine.submit('https://cdn.example.org/images/disk.iso')
            await wait_until(lambda: pid_file.exists() and pid_file.read_text()
                             and engine.store.get(job_id).status == JobStatus.DOWNLOADING)
            pid = int(pid_file.read_text())

            assert engine.cancel(job_id) is True
            await wait_until(lambda: not engine._tasks, timeout=3.0)

            with pytest.raises(ProcessLookupError):
                os.kill(pid, 0)
            assert engine.store.get(job_id).status == JobStatus.CANCELLED
            assert not engine.store.active
        finally:
            await engine.shutdown()
