import pytest

from mediacore.models import ConversionRequest
from mediacore.transcoder import FRAGMENTED_MP4_FLAGS, TranscodeCommandBuilder


def value_after(args, flag):
    return args[args.index(flag) + 1]


@pytest.mark.parametrize('format_name, quality, codec, bitrate', [
    ('mp3', 'low', 'libmp3lame', '128k'),
    ('mp3', 'medium', 'libmp3lame', '192k'),
    ('mp3', 'high', 'libmp3lame', '320k'),
    ('aac', 'low', 'aac', '96k'),
    ('aac', 'medium', 'aac', '160k'),
    ('aac', 'high', 'aac', '256k'),
])
def test_convert_codec_and_bitrate_table(format_name, quality, codec, bitrate):
    builder = TranscodeCommandBuilder('ffmpeg')
    request = ConversionRequest(input_path='a.mkv', output_path=f'a.{format_name}', format=format_name, quality=quality)
    spec = builder.build_convert_process(request)

    assert value_after(spec.args, '-c:a') == codec
    assert value_after(spec.args, '-b:a') == bitrate
    assert '-vn' in spec.args


def test_lossless_formats_have_no_bitrate():
    flac = TranscodeCommandBuilder.get_codec_args('flac', 'high')
    wav = TranscodeCommandBuilder.get_codec_args('wav', 'low')

    assert flac == ['-vn', '-c:a', 'flac']
    assert wav == ['-vn', '-c:a', 'pcm_s16le', '-f', 'wav']


@pytest.mark.parametrize('format_name', ['ogg', 'opus', 'webm'])
def test_other_formats_are_container_hints_only(format_name):
    args = TranscodeCommandBuilder.get_codec_args(format_name, 'high')

    assert args == ['-f', format_name]
    assert TranscodeCommandBuilder.get_bitrate(format_name, 'high') is None


def test_convert_command_layout():
    builder = TranscodeCommandBuilder('/opt/ffmpeg/bin/ffmpeg')
    request = ConversionRequest(input_path='/in/a.mkv', output_path='/out/a.mp3', format='mp3', quality='high')
    spec = builder.build_convert_process(request)

    assert spec.program == '/opt/ffmpeg/bin/ffmpeg'
    assert value_after(spec.args, '-i') == '/in/a.mkv'
    assert spec.args[-1] == '/out/a.mp3'
    assert value_after(spec.args, '-progress') == 'pipe:1'
    assert '-y' in spec.args


def test_stream_process_without_offset():
    spec = TranscodeCommandBuilder('ffmpeg', stream_audio_bitrate='128k').build_stream_process('/v/movie.mkv')

    assert '-ss' not in spec.args
    assert value_after(spec.args, '-c:v') == 'libx264'
    assert value_after(spec.args, '-preset') == 'ultrafast'
    assert value_after(spec.args, '-tune') == 'zerolatency'
    assert value_after(spec.args, '-c:a') == 'aac'
    assert value_after(spec.args, '-b:a') == '128k'
    assert value_after(spec.args, '-movflags') == FRAGMENTED_MP4_FLAGS
    assert value_after(spec.args, '-f') == 'mp4'
    assert spec.args[-1] == 'pipe:1'


def test_stream_process_seeks_before_input():
    spec = TranscodeCommandBuilder('ffmpeg').build_stream_process('/v/movie.mkv', 90.5)
    args = list(spec.args)

    assert value_after(args, '-ss') == '90.5'
    assert args.index('-ss') < args.index('-i')


def test_subtitle_process_maps_first_track_to_webvtt():
    spec = TranscodeCommandBuilder('ffmpeg').build_subtitle_process('/v/movie.mkv')

    assert value_after(spec.args, '-map') == '0:s:0?'
    assert value_after(spec.args, '-f') == 'webvtt'
    assert spec.args[-1] == 'pipe:1'
