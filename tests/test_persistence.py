"""Tests for the state file and resume detection."""

import asyncio
import json

import pytest

from multifetch.exceptions import CorruptStateError
from multifetch.jobs import DownloadJob, FileDetails, JobKind, JobStatus
from multifetch.persistence import (
    JobRecord, StateDocument, StatePersistence, detect_resume, restore_jobs,
)


def _document(queue, history, next_id=10) -> StateDocument:
    return StateDocument(
        next_id=next_id,
        queue=[JobRecord.from_job(job) for job in queue],
        completed_downloads=[JobRecord.from_job(job) for job in history],
    )


class TestJobRecord:
    def test_handle_and_noise_are_not_serialized(self):
        job = DownloadJob('j1', 'https://example.org/v', JobKind.MEDIA, status=JobStatus.FAILED)
        job.handle = object()
        job.error = "WARNING: [youtube] PO Token missing\nUnsupported URL: https://example.org/v"
        data = json.loads(JobRecord.from_job(job).model_dump_json(by_alias=True))
        assert 'handle' not in data
        assert data['error'] == "Unsupported URL: https://example.org/v"
        assert data['downloadType'] == 'media'

    def test_camel_case_keys(self):
        job = DownloadJob('j1', 'https://example.org/f.zip', JobKind.FILE)
        job.details.filename = 'f.zip'
        data = json.loads(JobRecord.from_job(job).model_dump_json(by_alias=True))
        assert {'retryCount', 'addedAt', 'originalUrl', 'hasPartialFile'} <= set(data)
        assert data['filename'] == 'f.zip'


class TestRestore:
    def test_interrupted_jobs_come_back_queued(self):
        running = DownloadJob('a', 'https://example.org/a', JobKind.MEDIA, status=JobStatus.DOWNLOADING,
                              progress=63.5, speed='1MiB/s', eta='00:10')
        starting = DownloadJob('b', 'magnet:?xt=urn:btih:b', JobKind.MAGNET, status=JobStatus.STARTING)
        starting.details.peers = 7
        retrying = DownloadJob('c', 'https://example.org/c', JobKind.MEDIA, status=JobStatus.RETRYING,
                               error='boom', retry_count=1)

        queued, history = restore_jobs(_document([running, starting, retrying], []))

        assert [job.job_id for job in queued] == ['a', 'b', 'c']
        assert all(job.status == JobStatus.QUEUED for job in queued)
        assert queued[0].progress == 0
        assert queued[0].speed is None and queued[0].eta is None
        assert queued[1].peers == 0
        assert queued[2].error is None
        assert queued[2].retry_count == 1
        assert history == []

    def test_history_is_restored_verbatim(self):
        done = DownloadJob('a', 'https://example.org/a', JobKind.MEDIA, title='Clip',
                           status=JobStatus.COMPLETED, progress=100.0)
        failed = DownloadJob('b', 'https://example.org/b', JobKind.FILE, title='b.zip',
                             status=JobStatus.FAILED, error='HTTP authorization failed.')
        _, history = restore_jobs(_document([], [done, failed]))
        assert [(job.job_id, job.title, job.error, job.status) for job in history] == [
            ('a', 'Clip', None, JobStatus.COMPLETED),
            ('b', 'b.zip', 'HTTP authorization failed.', JobStatus.FAILED),
        ]


class TestStatePersistence:
    async def test_round_trip(self, tmp_path):
        persistence = StatePersistence(tmp_path / 'state.json', debounce=0.01)
        failed = DownloadJob('f', 'https://example.org/f', JobKind.MEDIA, title='Broken',
                             status=JobStatus.FAILED, error='Private video. It requires authentication to access.')
        queued = DownloadJob('q', 'https://example.org/q.zip', JobKind.FILE, status=JobStatus.DOWNLOADING,
                             progress=40.0)
        await persistence.save(_document([queued], [failed], next_id=7))

        document = await persistence.load()
        assert document.version == 1
        assert document.next_id == 7
        assert document.saved_at
        restored_queue, restored_history = restore_jobs(document)
        assert [(job.job_id, job.status, job.progress) for job in restored_queue] == [('q', JobStatus.QUEUED, 0)]
        assert (restored_history[0].job_id, restored_history[0].title, restored_history[0].error) == (
            'f', 'Broken', 'Private video. It requires authentication to access.')

    async def test_missing_file_gives_empty_state(self, tmp_path):
        document = await StatePersistence(tmp_path / 'nope.json').load()
        assert document.queue == [] and document.completed_downloads == []

    async def test_corrupt_file_is_moved_aside(self, tmp_path):
        path = tmp_path / 'state.json'
        path.write_text('{"queue": [ this is not json', encoding='utf-8')

        document = await StatePersistence(path).load()

        assert document.queue == []
        assert not path.exists()
        quarantined = list(tmp_path.glob('state.json.corrupt-*'))
        assert len(quarantined) == 1
        assert quarantined[0].read_text(encoding='utf-8').startswith('{"queue"')

    def test_parse_rejects_wrong_schema(self):
        with pytest.raises(CorruptStateError):
            StatePersistence.parse('[1, 2, 3]')
        with pytest.raises(CorruptStateError):
            StatePersistence.parse('{"queue": [{"url": "https://x.org"}]}')

    async def test_saves_are_debounced(self, tmp_path):
        persistence = StatePersistence(tmp_path / 'state.json', debounce=0.05)
        versions = []

        def provider():
            versions.append(len(versions))
            return StateDocument(next_id=len(versions))

        for _ in range(20):
            persistence.schedule_save(provider)
        assert persistence.pending
        await asyncio.sleep(0.15)
        await persistence.flush()

        assert persistence.save_count == 1
        assert len(versions) == 1

    async def test_flush_writes_pending_change(self, tmp_path):
        path = tmp_path / 'state.json'
        persistence = StatePersistence(path, debounce=60)
        persistence.schedule_save(lambda: StateDocument(next_id=42))
        await persistence.flush()
        assert json.loads(path.read_text(encoding='utf-8'))['nextId'] == 42
        assert not persistence.pending


class TestDetectResume:
    def test_partial_and_control_files(self, tmp_path):
        (tmp_path / 'Big Archive.zip.aria2').write_bytes(b'')
        (tmp_path / 'Big Archive.zip').write_bytes(b'partial')
        job = DownloadJob('a', 'https://example.org/x', JobKind.FILE, details=FileDetails(filename='Big Archive.zip'))

        findings = detect_resume([job], tmp_path)

        assert len(findings) == 1
        assert findings[0].partial_files == ['Big Archive.zip.aria2']
        assert findings[0].can_resume is True
        assert findings[0].completed_file is None

    def test_finished_file_is_reported(self, tmp_path):
        (tmp_path / 'Great Talk.mp4').write_bytes(b'done')
        (tmp_path / 'Great Talk.info.json').write_text('{}')
        job = DownloadJob('a', 'https://example.org/watch', JobKind.MEDIA, title='Great Talk')

        findings = detect_resume([job], tmp_path)

        assert findings[0].completed_file == 'Great Talk.mp4'

    def test_placeholder_titles_are_ignored(self, tmp_path):
        (tmp_path / 'Magnet Link Download.mkv').write_bytes(b'x')
        job = DownloadJob('a', 'magnet:?xt=urn:btih:a', JobKind.MAGNET, title='Magnet Link Download')
        assert detect_resume([job], tmp_path) == []

    def test_missing_directory(self, tmp_path):
        job = DownloadJob('a', 'https://example.org/x', JobKind.MEDIA, title='Something')
        assert detect_resume([job], tmp_path / 'missing') == []
