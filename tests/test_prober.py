import pytest

from mediacore.exceptions import ProbeError
from mediacore.prober import MetadataProber, parse_frame_rate, parse_probe_output


@pytest.mark.parametrize('value, expected', [
    ('30000/1001', pytest.approx(29.97, abs=0.01)),
    ('25/1', 25.0),
    ('24', 24.0),
    ('0/1', 0.0),
    ('0/0', 0.0),
    ('abc', 0.0),
    ('', 0.0),
    (None, 0.0),
])
def test_parse_frame_rate(value, expected):
    assert parse_frame_rate(value) == expected


def test_parse_probe_output(probe_with_subtitles):
    metadata = parse_probe_output(probe_with_subtitles)

    assert metadata.duration == 10.0
    assert metadata.format == 'matroska,webm'
    assert metadata.bitrate == 1500000
    assert metadata.video.codec == 'h264'
    assert metadata.video.width == 1920
    assert metadata.video.fps == pytest.approx(29.97, abs=0.01)
    assert metadata.audio.channels == 2
    assert metadata.audio.sample_rate == 48000
    assert metadata.tags == {'title': 'Sample', 'artist': 'Someone'}
    assert metadata.has_subtitles
    assert metadata.subtitles[0].language == 'eng'


def test_parse_probe_output_tolerates_missing_streams_and_tags(probe_audio_only):
    metadata = parse_probe_output(probe_audio_only)

    assert metadata.video is None
    assert metadata.audio.codec == 'mp3'
    assert metadata.tags == {}
    assert not metadata.has_subtitles

    empty = parse_probe_output({})
    assert empty.duration == 0.0
    assert empty.video is None and empty.audio is None


def test_cover_art_is_not_a_video_stream(probe_audio_only):
    probe_audio_only['streams'].append({
        'index': 1, 'codec_type': 'video', 'codec_name': 'mjpeg', 'disposition': {'attached_pic': 1},
    })

    assert parse_probe_output(probe_audio_only).video is None


async def test_probe_runs_ffprobe(engines, make_media, probe_with_subtitles):
    path = make_media('movie.mkv', probe=probe_with_subtitles)

    metadata = await MetadataProber(engines.ffprobe).probe(str(path))

    assert metadata.duration == 10.0
    assert '-show_streams' in engines.calls('ffprobe')[0]


async def test_probe_missing_file(engines, tmp_path):
    with pytest.raises(ProbeError):
        await MetadataProber(engines.ffprobe).probe(str(tmp_path / 'nope.mkv'))
    assert engines.calls('ffprobe') == []


async def test_probe_engine_failure(engines, make_media):
    path = make_media('garbage.mkv')

    with pytest.raises(ProbeError, match='Invalid data'):
        await MetadataProber(engines.ffprobe).probe(str(path))


async def test_probe_unparseable_output(engines, make_media):
    path = make_media('weird.mkv')
    (path.parent / 'weird.mkv.probe.json').write_text('{not json')

    with pytest.raises(ProbeError, match='parse'):
        await MetadataProber(engines.ffprobe).probe(str(path))


async def test_probe_missing_engine(make_media, tmp_path, probe_audio_only):
    path = make_media('song.mp3', probe=probe_audio_only)

    with pytest.raises(ProbeError):
        await MetadataProber(str(tmp_path / 'no-ffprobe')).probe(str(path))
