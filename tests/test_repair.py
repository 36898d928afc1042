import asyncio
import importlib

import pytest

from core.models import DetailedTorrent, RepairTarget, Torrent, TorrentFile
from integrations.services import TransportError


pytestmark = pytest.mark.asyncio


BASE = 'http://zurg:9999'


class FakeClient:
    """Scripted Zurg client.

    ``statuses`` maps file id -> list of statuses returned by successive detail
    fetches. ``None`` means the file is missing, an Exception instance is raised.
    """

    def __init__(self, statuses=None, fail_delete=(), fail_restore=(), owners=None):
        self.statuses = {k: list(v) for k, v in (statuses or {}).items()}
        # file id -> torrent hash; unlisted files belong to every torrent
        self.owners = dict(owners or {})
        self.fail_delete = set(fail_delete)
        self.fail_restore = set(fail_restore)
        self.calls = []
        self.detail_fetches = {}

    async def delete_file(self, torrent_hash, file_id, base_url):
        self.calls.append(('delete', torrent_hash, file_id))
        if file_id in self.fail_delete:
            raise TransportError(500, 'Failed to delete file')

    async def restore_file(self, torrent_hash, file_id, base_url):
        self.calls.append(('restore', torrent_hash, file_id))
        if file_id in self.fail_restore:
            raise TransportError(404, 'Failed to restore file')

    async def get_detailed_torrent(self, torrent, base_url):
        self.detail_fetches[torrent.hash] = self.detail_fetches.get(torrent.hash, 0) + 1
        files = []
        for fid, seq in self.statuses.items():
            if not seq or self.owners.get(fid, torrent.hash) != torrent.hash:
                continue
            step = seq.pop(0) if len(seq) > 1 else seq[0]
            if isinstance(step, Exception):
                raise step
            if step is not None:
                files.append(TorrentFile(id=fid, name=f'{fid}.mkv', size='1 GB', status=step))
        return DetailedTorrent.from_torrent(torrent, files)


def _target(hash_='h1', fid='1'):
    return RepairTarget(Torrent(hash=hash_, name=f'T-{hash_}'), TorrentFile(id=fid, name=f'{fid}.mkv', size='1 GB', status='Broken'))


async def _repair(client, target, max_retries=3):
    repair = importlib.import_module('core.repair')
    return await repair.repair_file(client, target.torrent, target.file, BASE, max_retries=max_retries, retry_delay=0)


async def test_repair_succeeds_on_first_verification():
    client = FakeClient({'1': ['Available']})
    result = await _repair(client, _target())
    assert result.status == 'repaired'
    assert 'after 1 verification attempt(s)' in result.message
    assert client.calls == [('delete', 'h1', '1'), ('restore', 'h1', '1')]
    assert client.detail_fetches['h1'] == 1


async def test_repair_stops_at_attempt_k():
    client = FakeClient({'1': ['Broken', 'Broken', 'available', 'Broken']})
    result = await _repair(client, _target(), max_retries=5)
    assert result.status == 'repaired'
    assert 'after 3 verification attempt(s)' in result.message
    assert client.detail_fetches['h1'] == 3


async def test_repair_fails_after_exhausting_attempts():
    client = FakeClient({'1': ['Broken']})
    result = await _repair(client, _target(), max_retries=3)
    assert result.status == 'failed'
    assert 'after 3 verification attempts' in result.message
    assert client.detail_fetches['h1'] == 3


async def test_missing_file_and_fetch_errors_are_inconclusive():
    client = FakeClient({'1': [None, TransportError(502, 'bad gateway'), 'Available']})
    result = await _repair(client, _target(), max_retries=3)
    assert result.status == 'repaired'
    assert 'after 3 verification attempt(s)' in result.message


async def test_missing_file_until_exhaustion_is_failed():
    client = FakeClient({'1': [None]})
    result = await _repair(client, _target(), max_retries=2)
    assert result.status == 'failed'
    assert client.detail_fetches['h1'] == 2


async def test_delete_failure_is_error_without_verification():
    client = FakeClient({'1': ['Available']}, fail_delete={'1'})
    result = await _repair(client, _target())
    assert result.status == 'error'
    assert 'Failed to delete file' in result.message
    assert client.calls == [('delete', 'h1', '1')]
    assert client.detail_fetches == {}


async def test_restore_failure_is_error_without_verification():
    client = FakeClient({'1': ['Available']}, fail_restore={'1'})
    result = await _repair(client, _target())
    assert result.status == 'error'
    assert result.torrent_hash == 'h1'
    assert result.file_id == '1'
    assert client.detail_fetches == {}


async def test_repair_many_preserves_order_and_counts():
    repair = importlib.import_module('core.repair')
    client = FakeClient(
        {'1': ['Available'], '2': ['Broken'], '3': ['Available']},
        fail_delete={'4'},
        owners={'1': 'h1', '2': 'h2', '3': 'h3'},
    )
    targets = [_target(f'h{i}', str(i)) for i in (1, 2, 3, 4)]
    results = await repair.repair_files_concurrently(client, targets, BASE, concurrency_limit=3, max_retries=2, retry_delay=0)
    assert [r.file_id for r in results] == ['1', '2', '3', '4']
    assert [r.status for r in results] == ['repaired', 'failed', 'repaired', 'error']
    assert repair.summarize_results(results) == {'repaired': 2, 'failed': 1, 'error': 1}


async def test_repair_many_batches_are_barriers(monkeypatch):
    repair = importlib.import_module('core.repair')
    models = importlib.import_module('core.models')

    inflight = 0
    max_inflight = 0
    finished = []
    started_batches = []

    async def fake_repair(client, torrent, file, base_url, max_retries, retry_delay, **kwargs):
        nonlocal inflight, max_inflight
        idx = int(file.id)
        # every earlier batch must be completely finished
        started_batches.append((idx, sorted(finished)))
        inflight += 1
        max_inflight = max(max_inflight, inflight)
        # later members of a batch finish first
        for _ in range(5 - (idx % 2)):
            await asyncio.sleep(0)
        inflight -= 1
        finished.append(idx)
        return models.RepairResult(torrent.hash, file.id, file.name, 'repaired', 'ok')

    monkeypatch.setattr(repair, 'repair_file', fake_repair)
    targets = [_target(f'h{i}', str(i)) for i in range(7)]
    results = await repair.repair_files_concurrently(object(), targets, BASE, concurrency_limit=3, retry_delay=0)

    assert max_inflight == 3
    assert [r.file_id for r in results] == [str(i) for i in range(7)]
    for idx, done_before in started_batches:
        batch_start = (idx // 3) * 3
        assert set(range(batch_start)) <= set(done_before)


async def test_repair_many_converts_raised_repairs_to_errors(monkeypatch):
    repair = importlib.import_module('core.repair')
    models = importlib.import_module('core.models')

    async def flaky(client, torrent, file, base_url, max_retries, retry_delay, **kwargs):
        if file.id == '1':
            raise RuntimeError('unexpected')
        return models.RepairResult(torrent.hash, file.id, file.name, 'repaired', 'ok')

    monkeypatch.setattr(repair, 'repair_file', flaky)
    targets = [_target('h0', '0'), _target('h1', '1'), _target('h2', '2')]
    results = await repair.repair_files_concurrently(object(), targets, BASE, concurrency_limit=2, retry_delay=0)
    assert [r.status for r in results] == ['repaired', 'error', 'repaired']
    assert 'unexpected' in results[1].message


async def test_repair_many_emits_summary_event():
    repair = importlib.import_module('core.repair')

    class Bus:
        def __init__(self):
            self.results = []
            self.summaries = []

        def repair_result(self, instance, result):
            self.results.append((instance, result.status))

        def repair_summary(self, instance, counts):
            self.summaries.append((instance, counts))

    bus = Bus()
    client = FakeClient({'1': ['Available']})
    results = await repair.repair_files_concurrently(
        client, [_target()], BASE, concurrency_limit=2, retry_delay=0, events=bus, instance='prod'
    )
    assert len(results) == 1
    assert bus.results == [('prod', 'repaired')]
    assert bus.summaries == [('prod', {'total': 1, 'repaired': 1, 'failed': 0, 'error': 0})]


async def test_repair_many_with_no_targets():
    repair = importlib.import_module('core.repair')
    results = await repair.repair_files_concurrently(FakeClient(), [], BASE, concurrency_limit=4)
    assert results == []


class RecordedSleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


async def test_repair_waits_after_restore_and_between_checks_in_seconds():
    repair = importlib.import_module('core.repair')
    sleeps = RecordedSleeps()
    client = FakeClient({'1': ['Broken']})
    target = _target()
    result = await repair.repair_file(
        client, target.torrent, target.file, BASE, max_retries=3, retry_delay=1500, sleep=sleeps
    )
    assert result.status == 'failed'
    # one wait after restore, then one between each pair of checks
    assert sleeps.calls == [1.5, 1.5, 1.5]
    assert client.detail_fetches['h1'] == 3


async def test_repair_waits_once_before_first_successful_check():
    repair = importlib.import_module('core.repair')
    sleeps = RecordedSleeps()
    client = FakeClient({'1': ['Available']})
    target = _target()
    result = await repair.repair_file(
        client, target.torrent, target.file, BASE, max_retries=3, retry_delay=250, sleep=sleeps
    )
    assert result.repaired
    assert sleeps.calls == [0.25]


async def test_repair_many_passes_sleep_through():
    repair = importlib.import_module('core.repair')
    sleeps = RecordedSleeps()
    client = FakeClient({'1': ['Broken', 'Available']})
    results = await repair.repair_files_concurrently(
        client, [_target()], BASE, concurrency_limit=2, max_retries=3, retry_delay=2000, sleep=sleeps
    )
    assert results[0].status == 'repaired'
    assert sleeps.calls == [2.0, 2.0]


async def test_repair_with_zero_retries_never_checks():
    client = FakeClient({'1': ['Available']})
    result = await _repair(client, _target(), max_retries=0)
    assert result.status == 'failed'
    assert 'after 0 verification attempts' in result.message
    assert client.detail_fetches == {}
