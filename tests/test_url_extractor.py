import pytest

from mediacore.exceptions import JobCancelledError, URLExtractionError
from mediacore.processes import CancelToken
from mediacore.url_extractor import URLInfoExtractor, safe_filename, sanitize_url


@pytest.mark.parametrize('url, expected', [
    ('https://www.youtube.com/watch?v=abc123&list=PL1&index=4',
     'https://www.youtube.com/watch?v=abc123'),
    ('https://youtu.be/abc123?list=PL1&t=30', 'https://youtu.be/abc123?t=30'),
    ('https://music.youtube.com/watch?v=x&start_radio=1&pp=foo', 'https://music.youtube.com/watch?v=x'),
    ('https://example.com/video?list=keep', 'https://example.com/video?list=keep'),
    ('  https://www.youtube.com/watch?v=abc  ', 'https://www.youtube.com/watch?v=abc'),
])
def test_sanitize_url(url, expected):
    assert sanitize_url(url) == expected


@pytest.mark.parametrize('title, expected', [
    ('My Video: Part 1/2', 'My Video Part 12'),
    ('  lots   of\tspace  ', 'lots of space'),
    ('what? <why> "how" | *', 'what why how'),
    ('...hidden.', 'hidden'),
    ('///', ''),
])
def test_safe_filename(title, expected):
    assert safe_filename(title) == expected


def test_safe_filename_is_bounded():
    assert len(safe_filename('x' * 500)) == 200


async def test_get_title(engines):
    title = await URLInfoExtractor(engines.yt_dlp).get_title('https://example.com/watch?v=1')

    assert title == 'My Video: Part 1/2'
    assert '--no-playlist' in engines.calls('yt-dlp')[0]


async def test_get_title_failure_is_concise(engines):
    with pytest.raises(URLExtractionError, match=r'^\[generic\] Unable to extract title$'):
        await URLInfoExtractor(engines.yt_dlp).get_title('https://example.com/notitle')


async def test_get_title_with_missing_engine(tmp_path):
    with pytest.raises(URLExtractionError):
        await URLInfoExtractor(str(tmp_path / 'no-yt-dlp')).get_title('https://example.com/x')


async def test_get_title_honours_a_fired_token(engines):
    token = CancelToken()
    token.cancel()

    with pytest.raises(JobCancelledError):
        await URLInfoExtractor(engines.yt_dlp).get_title('https://example.com/x', token)
    assert engines.calls('yt-dlp') == []
