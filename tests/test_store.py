import json

from mediacore.config import Settings
from mediacore.models import ConversionRequest, Job, JobStatus, JobType
from mediacore.store import AppStore


def make_job(job_id: str, status: JobStatus = JobStatus.COMPLETED, created_at: float = 1000.0) -> Job:
    return Job(
        job_id=job_id,
        type=JobType.CONVERSION,
        status=status,
        created_at=created_at,
        details=ConversionRequest(input_path='a.mkv', output_path='a.mp3'),
    )


def test_missing_file_gives_defaults(tmp_path):
    store = AppStore(tmp_path / 'nested' / 'settings.json')
    data = store.load()

    assert data.job_history == []
    assert data.settings.max_concurrent_conversions == 2
    assert (tmp_path / 'nested').is_dir()


async def test_history_and_settings_survive_reload(tmp_path):
    path = tmp_path / 'settings.json'
    store = AppStore(path)
    store.load()

    await store.set_settings(Settings(downloads_path=tmp_path / 'dl', log_level='debug'))
    await store.set_job_history([make_job('j1'), make_job('j2', JobStatus.FAILED)])

    raw = json.loads(path.read_text(encoding='utf-8'))
    assert set(raw) == {'settings', 'job_history', 'playback_positions'}

    reloaded = AppStore(path)
    data = reloaded.load()
    assert data.settings.log_level == 'DEBUG'
    assert data.settings.downloads_path == tmp_path / 'dl'
    assert [job.job_id for job in data.job_history] == ['j1', 'j2']
    assert isinstance(data.job_history[0].details, ConversionRequest)


async def test_store_does_not_reorder_or_cap(tmp_path):
    store = AppStore(tmp_path / 'settings.json')
    store.load()
    jobs = [make_job(f'j{i}', created_at=float(i)) for i in range(60)]

    await store.set_job_history(jobs)

    assert [job.job_id for job in store.get_job_history()] == [f'j{i}' for i in range(60)]


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text('{"settings": {"max_concurrent_conversions": "lots"}', encoding='utf-8')

    data = AppStore(path).load()

    assert data.job_history == []
    assert not path.exists()
    assert len(list(tmp_path.glob('settings.*.bak'))) == 1


async def test_playback_positions(tmp_path):
    path = tmp_path / 'settings.json'
    store = AppStore(path)
    store.load()

    assert store.get_playback_position('movie') == 0.0
    await store.set_playback_position('movie', 42.5)

    reloaded = AppStore(path)
    reloaded.load()
    assert reloaded.get_playback_position('movie') == 42.5
