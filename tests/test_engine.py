"""Scenario tests for the download engine, driven by an in-process strategy."""

import asyncio
import json
from typing import List, Set

import pytest

from multifetch.engine import DownloadEngine
from multifetch.events import JobChannel
from multifetch.exceptions import AccessError, ClassificationError, TransientFetchError
from multifetch.fetchers.base import FetchOutcome, FetchStrategy
from multifetch.jobs import JobKind, JobStatus
from multifetch.persistence import StatePersistence

BEHAVIOURS = ('hold', 'flaky', 'denied', 'sniff')


class FakeStrategy(FetchStrategy):
    """
    Stands in for a real downloader. The behaviour is picked from the URL:
    ``hold`` waits until released, ``flaky`` fails transiently, ``denied``
    fails permanently, ``sniff`` finds torrent metadata when run as a file
    job. Anything else succeeds right away.
    """
    kinds = tuple(JobKind)

    def __init__(self):
        super().__init__(['fake-tool'])
        self.calls: List[str] = []
        self.running: Set[str] = set()
        self.cancelled: List[str] = []
        self.peak = 0
        self.released = asyncio.Event()

    async def run(self, job, channel, settings):
        self.calls.append(job.job_id)
        self.running.add(job.job_id)
        self.peak = max(self.peak, len(self.running))
        try:
            channel.status(JobStatus.DOWNLOADING)
            channel.progress(progress=50.0, speed='1.0MiB/s')
            behaviour = next((name for name in BEHAVIOURS if name in job.url), None)
            if behaviour == 'hold':
                await self.released.wait()
            elif behaviour == 'flaky':
                raise TransientFetchError("Connection reset by peer")
            elif behaviour == 'denied':
                raise AccessError("Private video. It requires authentication to access.")
            elif behaviour == 'sniff' and job.kind is JobKind.FILE:
                return FetchOutcome.reclassify(JobKind.TORRENT, '/tmp/metadata.torrent')
            await asyncio.sleep(0)
            return FetchOutcome.success()
        except asyncio.CancelledError:
            self.cancelled.append(job.job_id)
            raise
        finally:
            self.running.discard(job.job_id)


@pytest.fixture
def strategy() -> FakeStrategy:
    return FakeStrategy()


@pytest.fixture
async def make_engine(settings, strategy):
    engines: List[DownloadEngine] = []

    def _make(persistence=None, strategies=None, **overrides) -> DownloadEngine:
        engine_settings = settings.model_copy(update=overrides)
        if strategies is None:
            strategies = {kind: strategy for kind in JobKind}
        engine = DownloadEngine(engine_settings, strategies, persistence)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        await engine.shutdown()


def _statuses(engine: DownloadEngine, location: str) -> List[str]:
    if location == 'history':
        return [job.status.value for job in engine.store.history]
    return [job.status.value for job in engine.store.queued]


async def _idle(engine: DownloadEngine):
    await asyncio.wait_for(engine.wait_until_idle(), timeout=5)


class TestConcurrency:
    async def test_active_jobs_never_exceed_max_concurrent(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=2)
        await engine.start()
        for index in range(5):
            engine.submit(f'https://example.org/hold/{index}')

        await wait_until(lambda: len(strategy.running) == 2)
        assert engine.store.active_count == 2
        assert len(engine.store.queued) == 3

        strategy.released.set()
        await _idle(engine)

        assert strategy.peak == 2
        assert _statuses(engine, 'history') == ['completed'] * 5

    async def test_torrent_cap_lets_other_jobs_through(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=5)
        await engine.start()
        for index in range(3):
            engine.submit(f'magnet:?xt=urn:btih:hold{index}')
        engine.submit('https://example.org/hold/media')

        await wait_until(lambda: len(strategy.running) == 3)
        kinds = sorted(job.kind.value for job in engine.store.active.values())
        assert kinds == ['magnet', 'magnet', 'media']
        assert [job.kind for job in engine.store.queued] == [JobKind.MAGNET]

        strategy.released.set()
        await _idle(engine)
        assert len(engine.store.history) == 4

    async def test_raising_max_concurrent_promotes_immediately(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=1)
        await engine.start()
        for index in range(3):
            engine.submit(f'https://example.org/hold/{index}')
        await wait_until(lambda: len(strategy.running) == 1)

        engine.apply_settings(engine.settings.model_copy(update={'max_concurrent_downloads': 3}))

        await wait_until(lambda: len(strategy.running) == 3)
        strategy.released.set()
        await _idle(engine)


class TestRetryPolicy:
    async def test_transient_failure_is_retried_then_fails(self, make_engine, strategy):
        engine = make_engine(retry_attempts=2)
        await engine.start()
        job_id = engine.submit('https://example.org/flaky/1')

        await _idle(engine)

        assert strategy.calls == [job_id] * 3
        job, location = engine.store.find(job_id)
        assert location == 'history'
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.error == "Connection reset by peer"

    async def test_no_retries_configured(self, make_engine, strategy):
        engine = make_engine(retry_attempts=0)
        await engine.start()
        engine.submit('https://example.org/flaky/1')
        await _idle(engine)
        assert len(strategy.calls) == 1

    async def test_access_errors_fail_immediately(self, make_engine, strategy):
        engine = make_engine()
        await engine.start()
        job_id = engine.submit('https://example.org/denied/1')

        await _idle(engine)

        job = engine.store.get(job_id)
        assert strategy.calls == [job_id]
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert job.error == "Private video. It requires authentication to access."

    async def test_waiting_job_is_visible_as_retrying(self, make_engine, strategy, wait_until):
        engine = make_engine(retry_delay=60)
        await engine.start()
        job_id = engine.submit('https://example.org/flaky/1')

        await wait_until(lambda: _statuses(engine, 'queued') == ['retrying'])
        assert engine.store.get(job_id).retry_count == 1

        # A manual retry skips the remaining delay.
        assert engine.retry(job_id) is True
        await wait_until(lambda: len(strategy.calls) == 2)

    async def test_retrying_job_keeps_its_place_ahead_of_later_jobs(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=1, retry_delay=60)
        await engine.start()
        flaky = engine.submit('https://example.org/flaky/1')
        first = engine.submit('https://example.org/hold/1')
        second = engine.submit('https://example.org/hold/2')

        await wait_until(lambda: first in strategy.running)

        assert [job.job_id for job in engine.store.queued] == [flaky, second]
        assert _statuses(engine, 'queued') == ['retrying', 'queued']

    async def test_missing_strategy_fails_without_retry(self, make_engine, strategy):
        engine = make_engine(strategies={JobKind.MEDIA: strategy})
        await engine.start()
        job_id = engine.submit('magnet:?xt=urn:btih:abc')

        await _idle(engine)

        job = engine.store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert "magnet" in job.error


class TestReclassification:
    async def test_file_job_becomes_torrent_job_without_failing(self, make_engine, strategy):
        engine = make_engine()
        seen: List[str] = []

        def listener(message):
            for section in ('queued', 'active', 'completedHistory'):
                seen.extend(job['status'] for job in message['data'][section])

        engine.add_listener(listener)
        await engine.start()
        job_id = engine.submit('https://example.org/sniff/1', resolved_kind='file')
        assert engine.store.get(job_id).kind is JobKind.FILE

        await _idle(engine)

        job = engine.store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.kind is JobKind.TORRENT
        assert job.url == '/tmp/metadata.torrent'
        assert job.original_url == 'https://example.org/sniff/1'
        assert job.retry_count == 0
        assert len(strategy.calls) == 2
        assert 'failed' not in seen


class TestControl:
    async def test_cancel_queued_job_leaves_others_alone(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=1)
        await engine.start()
        first = engine.submit('https://example.org/hold/a')
        second = engine.submit('https://example.org/hold/b')
        third = engine.submit('https://example.org/hold/c')
        await wait_until(lambda: strategy.running == {first})

        assert engine.cancel(second) is True

        assert engine.store.get(second).status == JobStatus.CANCELLED
        assert engine.store.find(first)[1] == 'active'
        assert [job.job_id for job in engine.store.queued] == [third]
        assert engine.store.get(third).status == JobStatus.QUEUED
        assert second not in strategy.calls

    async def test_cancel_running_job_frees_its_slot(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=1)
        await engine.start()
        first = engine.submit('https://example.org/hold/a')
        second = engine.submit('https://example.org/hold/b')
        await wait_until(lambda: strategy.running == {first})

        assert engine.cancel(first) is True

        await wait_until(lambda: strategy.running == {second})
        assert strategy.cancelled == [first]
        assert engine.store.get(first).status == JobStatus.CANCELLED
        assert engine.cancel(first) is False
        assert engine.cancel('no-such-job') is False

    async def test_pause_and_reorder(self, make_engine, strategy, wait_until):
        engine = make_engine(max_concurrent_downloads=1)
        await engine.start()
        engine.pause_queue()
        ids = [engine.submit(f'https://example.org/{name}') for name in ('a', 'b', 'c')]
        await asyncio.sleep(0.02)
        assert strategy.calls == []

        assert engine.reorder(2, 0) is True
        assert engine.reorder(0, 7) is False
        assert [job.job_id for job in engine.store.queued] == [ids[2], ids[0], ids[1]]

        engine.resume_queue()
        await _idle(engine)
        assert strategy.calls == [ids[2], ids[0], ids[1]]

    async def test_retry_clear_and_remove_history_items(self, make_engine, strategy):
        engine = make_engine()
        await engine.start()
        done = engine.submit('https://example.org/ok')
        failed = engine.submit('https://example.org/denied/1')
        await _idle(engine)

        assert engine.retry(done) is False
        assert engine.retry(failed) is True
        await _idle(engine)
        assert strategy.calls.count(failed) == 2
        assert engine.store.get(failed).retry_count == 0

        assert engine.retry_all_failed() == 1
        await _idle(engine)
        assert strategy.calls.count(failed) == 3

        assert engine.clear_completed() == 1
        assert [job.job_id for job in engine.store.history] == [failed]

        assert engine.remove(failed) is True
        assert engine.store.get(failed) is None
        assert engine.remove(failed) is False

    async def test_invalid_submission(self, make_engine):
        engine = make_engine()
        await engine.start()
        with pytest.raises(ClassificationError):
            engine.submit('   ')
        assert engine.store.queued == []


class TestEvents:
    async def test_progress_reaches_the_job(self, make_engine, strategy, wait_until):
        engine = make_engine()
        await engine.start()
        job_id = engine.submit('https://example.org/hold/1')

        await wait_until(lambda: engine.store.get(job_id).progress == 50.0)
        job = engine.store.get(job_id)
        assert job.status == JobStatus.DOWNLOADING
        assert job.speed == '1.0MiB/s'
        assert engine.get_queue_state()['totalDownloadRate'] == '1.0 MiB/s'
        strategy.released.set()

    async def test_messages_from_an_earlier_attempt_are_dropped(self, make_engine, strategy, wait_until):
        engine = make_engine()
        await engine.start()
        job_id = engine.submit('https://example.org/hold/1')
        await wait_until(lambda: engine.store.get(job_id).status == JobStatus.DOWNLOADING)
        job = engine.store.get(job_id)

        stale = JobChannel(job_id, job.attempt - 1, engine.events)
        stale.error("late failure from a previous run", retryable=False)
        stale.progress(progress=99.0)
        await asyncio.sleep(0.05)

        assert engine.store.find(job_id)[1] == 'active'
        assert job.progress == 50.0
        assert job.error is None
        strategy.released.set()
        await _idle(engine)
        assert job.status == JobStatus.COMPLETED

    async def test_subscribers_get_state_then_updates(self, make_engine):
        engine = make_engine()
        await engine.start()
        subscription = engine.subscribe()
        first = await asyncio.wait_for(subscription.get(), timeout=1)
        assert first['type'] == 'state'

        engine.submit('https://example.org/ok')
        update = await asyncio.wait_for(subscription.get(), timeout=1)
        assert update['type'] == 'update'
        assert update['data']['stats']['queuedCount'] + update['data']['stats']['activeCount'] == 1
        subscription.close()


class TestPersistence:
    async def test_interrupted_job_is_restored_to_queue(self, make_engine, strategy, wait_until, tmp_path):
        path = tmp_path / 'state.json'
        first = make_engine(persistence=StatePersistence(path, debounce=0.01))
        await first.start()
        job_id = first.submit('https://example.org/hold/1', title='Long Stream')
        await wait_until(lambda: first.store.get(job_id).progress == 50.0)
        first.pause_queue()
        await first.shutdown()

        saved = json.loads(path.read_text(encoding='utf-8'))
        assert [record['id'] for record in saved['queue']] == [job_id]
        assert saved['queue'][0]['status'] == 'downloading'
        assert saved['settings']['queueEnabled'] is False

        second = make_engine(persistence=StatePersistence(path, debounce=0.01))
        await second.start()
        job, location = second.store.find(job_id)
        assert location == 'queued'
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.title == 'Long Stream'
        assert second.scheduler.enabled is False
        assert second.submit('https://example.org/ok') != job_id

    async def test_finished_file_on_disk_completes_restored_job(self, make_engine, settings, tmp_path):
        path = tmp_path / 'state.json'
        first = make_engine(persistence=StatePersistence(path, debounce=0.01))
        await first.start()
        first.pause_queue()
        job_id = first.submit('https://example.org/ok', title='Great Talk')
        await first.shutdown()

        settings.download_dir.mkdir(parents=True)
        (settings.download_dir / 'Great Talk.mp4').write_bytes(b'done')

        second = make_engine(persistence=StatePersistence(path, debounce=0.01))
        await second.start()
        job, location = second.store.find(job_id)
        assert location == 'history'
        assert job.status == JobStatus.COMPLETED
