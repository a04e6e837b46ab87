import os
import time
import asyncio

import pytest

from mediacore.constants import MIN_VISIBLE_DOWNLOAD_PROGRESS
from mediacore.downloads import DownloadRunner, find_output_file, parse_percentage
from mediacore.exceptions import ProcessFailedError
from mediacore.models import DownloadRequest, JobStatus
from mediacore.url_extractor import URLInfoExtractor


@pytest.fixture
def runner(engines):
    return DownloadRunner(URLInfoExtractor(engines.yt_dlp), yt_dlp_path=engines.yt_dlp)


@pytest.fixture
def downloads_dir(tmp_path):
    return tmp_path / 'downloads'


def request_for(url, downloads_dir, mode='best'):
    return DownloadRequest(url=url, output_path=str(downloads_dir / 'download'), mode=mode)


def fetch_calls(engines):
    return [call for call in engines.calls('yt-dlp') if '--get-title' not in call]


@pytest.mark.parametrize('line, expected', [
    ('PROGRESS:: 42.5%', 42.5),
    ('PROGRESS::100%', 100.0),
    ('PROGRESS:: N/A', None),
    ('[download]  12.3% of 10.00MiB at 1.00MiB/s ETA 00:09', 12.3),
    ('[info] 50% nothing', None),
])
def test_parse_percentage(line, expected):
    assert parse_percentage(line) == expected


def test_find_output_file_prefers_planned_then_reported_then_scan(tmp_path):
    planned = tmp_path / 'clip.mp4'
    reported = tmp_path / 'elsewhere.mkv'
    assert find_output_file(planned) is None

    (tmp_path / 'clip.webm.part').write_bytes(b'x')
    (tmp_path / 'other.webm').write_bytes(b'x')
    assert find_output_file(planned) is None

    older = tmp_path / 'clip.mkv'
    newer = tmp_path / 'clip.webm'
    older.write_bytes(b'x')
    newer.write_bytes(b'x')
    past = time.time() - 60
    os.utime(older, (past, past))
    assert find_output_file(planned) == newer

    reported.write_bytes(b'x')
    assert find_output_file(planned, reported) == reported

    planned.write_bytes(b'x')
    assert find_output_file(planned, reported) == planned


def test_plan_output_path(runner, tmp_path):
    best = DownloadRequest(url='https://example.com/v', output_path=str(tmp_path / 'download'))
    audio = DownloadRequest(url='https://example.com/v', output_path=str(tmp_path / 'x.m4a'), mode='audio')

    assert runner.plan_output_path(best, 'A: B') == tmp_path / 'A B.mp4'
    assert runner.plan_output_path(audio, 'Song') == tmp_path / 'Song.mp3'
    assert runner.plan_output_path(audio, None) == tmp_path / 'x.m4a'
    assert runner.plan_output_path(best, '???') == tmp_path / 'download.mp4'


def test_build_command_by_mode(runner):
    audio = runner.build_command('https://example.com/v', '/d/t.%(ext)s', 'audio').args
    video = runner.build_command('https://example.com/v', '/d/t.%(ext)s', 'video').args

    assert '-x' in audio and 'mp3' in audio
    assert '--merge-output-format' in video
    assert '--no-playlist' in audio
    assert audio[-1] == 'https://example.com/v'


async def test_download_completes_and_reconciles_extension(runner, engines, downloads_dir, make_recorder):
    recorder = make_recorder()
    url = 'https://www.youtube.com/watch?v=abc&list=PL123'

    await runner.run('job-1', request_for(url, downloads_dir), recorder)

    expected = downloads_dir / 'My Video Part 12.webm'
    assert recorder.last['status'] == JobStatus.COMPLETED
    assert recorder.last['output_file'] == str(expected)
    assert expected.read_bytes() == b'data'

    # The display title is the remote one; only the file name is sanitized.
    title_updates = [u['title'] for u in recorder.updates if 'title' in u]
    assert title_updates == ['My Video: Part 1/2']
    assert recorder.last['output_file'].endswith('My Video Part 12.webm')

    progress = [u['progress'] for u in recorder.updates if 'progress' in u]
    assert progress == sorted(progress)
    assert all(p >= MIN_VISIBLE_DOWNLOAD_PROGRESS for p in progress[1:])
    assert progress[-1] == 100

    # Playlist context stripped before anything reached the engine.
    assert all('list=' not in call for call in engines.calls('yt-dlp'))


async def test_audio_mode(runner, downloads_dir, make_recorder):
    recorder = make_recorder()

    await runner.run('job-1', request_for('https://example.com/song', downloads_dir, mode='audio'), recorder)

    assert recorder.last['output_file'] == str(downloads_dir / 'My Video Part 12.mp3')


async def test_existing_output_short_circuits(runner, engines, downloads_dir, make_recorder):
    downloads_dir.mkdir()
    existing = downloads_dir / 'My Video Part 12.mp4'
    existing.write_bytes(b'old')
    recorder = make_recorder()

    await runner.run('job-1', request_for('https://example.com/v', downloads_dir), recorder)

    assert recorder.last['status'] == JobStatus.COMPLETED
    assert recorder.last['message'] == 'Already exists'
    assert recorder.last['output_file'] == str(existing)
    assert fetch_calls(engines) == []
    assert existing.read_bytes() == b'old'


async def test_title_failure_is_not_fatal(runner, downloads_dir, make_recorder):
    recorder = make_recorder()

    await runner.run('job-1', request_for('https://example.com/notitle', downloads_dir), recorder)

    assert recorder.last['status'] == JobStatus.COMPLETED
    assert recorder.last['output_file'] == str(downloads_dir / 'download.webm')


async def test_engine_failure_is_raised(runner, downloads_dir, make_recorder):
    with pytest.raises(ProcessFailedError, match='Video unavailable'):
        await runner.run('job-1', request_for('https://example.com/fail', downloads_dir), make_recorder())


async def test_downloads_are_serialised_and_cancellation_does_not_block(runner, engines, downloads_dir,
                                                                      make_recorder, wait_until):
    slow, queued, last = make_recorder(), make_recorder(), make_recorder()
    t_slow = asyncio.create_task(runner.run('slow', request_for('https://example.com/slow', downloads_dir), slow))
    t_queued = asyncio.create_task(runner.run('queued', request_for('https://example.com/q', downloads_dir), queued))
    t_last = asyncio.create_task(runner.run('last', request_for('https://example.com/last', downloads_dir), last))

    await wait_until(lambda: len(fetch_calls(engines)) == 1)
    assert runner.queue.is_pending('queued')
    assert runner.queue.is_pending('last')

    runner.cancel('queued')
    await asyncio.wait_for(t_queued, timeout=5)
    assert queued.updates == []

    runner.cancel('slow')
    await asyncio.wait_for(t_slow, timeout=5)
    assert JobStatus.COMPLETED not in slow.statuses

    await asyncio.wait_for(t_last, timeout=10)
    assert last.last['status'] == JobStatus.COMPLETED
    assert len(fetch_calls(engines)) == 2


async def test_cancel_unknown_download_is_a_no_op(runner):
    runner.cancel('nothing-here')
