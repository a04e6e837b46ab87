import sys
import json
import asyncio
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from mediacore.config import Settings
from mediacore.store import AppStore

# Each fake engine appends its argv to `<name>.calls` next to itself.
FAKE_FFPROBE = """
import os, sys
here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, 'ffprobe.calls'), 'a') as log:
    log.write(' '.join(sys.argv[1:]) + '\\n')
path = sys.argv[-1]
sidecar = path + '.probe.json'
if not os.path.exists(sidecar):
    sys.stderr.write(path + ': Invalid data found when processing input\\n')
    sys.exit(1)
with open(sidecar) as f:
    sys.stdout.write(f.read())
"""

FAKE_FFMPEG = """
import os, sys, time
here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, 'ffmpeg.calls'), 'a') as log:
    log.write(' '.join(sys.argv[1:]) + '\\n')
args = sys.argv[1:]
source = os.path.basename(args[args.index('-i') + 1])
out = sys.stdout.buffer

if source.startswith('broken'):
    sys.stderr.write('Error opening input: Invalid data found when processing input\\n')
    sys.exit(1)

if '-progress' in args:
    if source.startswith('hang'):
        time.sleep(60)
    for us in (2500000, 5000000, 7500000, 10000000):
        out.write(('out_time_us=%d\\nprogress=continue\\n' % us).encode())
        out.flush()
    out.write(b'progress=end\\n')
    out.flush()
    with open(args[-1], 'wb') as f:
        f.write(b'converted')
    sys.exit(0)

if 'webvtt' in args:
    out.write(b'WEBVTT\\n\\n00:00:00.000 --> 00:00:01.000\\nHello\\n')
    sys.exit(0)

if source.startswith('endless'):
    try:
        while True:
            out.write(b'\\0' * 4096)
            out.flush()
            time.sleep(0.01)
    except BrokenPipeError:
        sys.exit(1)

out.write(b'FAKEMP4' * 1000)
"""

FAKE_YT_DLP = """
import os, sys, time
here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, 'yt-dlp.calls'), 'a') as log:
    log.write(' '.join(sys.argv[1:]) + '\\n')
args = sys.argv[1:]
url = args[-1]

if '--get-title' in args:
    if 'notitle' in url:
        sys.stderr.write('ERROR: [generic] Unable to extract title\\n')
        sys.exit(1)
    print('My Video: Part 1/2')
    sys.exit(0)

if 'fail' in url:
    print('ERROR: Video unavailable', flush=True)
    sys.exit(1)
if 'slow' in url:
    time.sleep(60)

template = args[args.index('-o') + 1]
target = template.replace('%(ext)s', 'mp3' if '-x' in args else 'webm')
print('[download] Destination: ' + target, flush=True)
for pct in ('5.0%', '42.5%', '100.0%'):
    print('PROGRESS:: ' + pct, flush=True)
with open(target, 'wb') as f:
    f.write(b'data')
"""

PROBE_WITH_SUBTITLES = {
    'format': {
        'format_name': 'matroska,webm',
        'duration': '10.000000',
        'bit_rate': '1500000',
        'size': '1875000',
        'tags': {'title': 'Sample', 'artist': 'Someone'},
    },
    'streams': [
        {'index': 0, 'codec_type': 'video', 'codec_name': 'h264', 'width': 1920, 'height': 1080,
         'r_frame_rate': '30000/1001'},
        {'index': 1, 'codec_type': 'audio', 'codec_name': 'aac', 'channels': 2, 'sample_rate': '48000'},
        {'index': 2, 'codec_type': 'subtitle', 'codec_name': 'subrip', 'tags': {'language': 'eng'}},
    ],
}

PROBE_AUDIO_ONLY = {
    'format': {'format_name': 'mp3', 'duration': '10.0', 'bit_rate': '320000', 'size': '400000'},
    'streams': [
        {'index': 0, 'codec_type': 'audio', 'codec_name': 'mp3', 'channels': 2, 'sample_rate': '44100'},
    ],
}


class FakeEngines:
    """Paths of the fake engine scripts and access to their call logs."""

    def __init__(self, bin_dir: Path):
        self.bin_dir = bin_dir
        self.ffmpeg = self._write('ffmpeg', FAKE_FFMPEG)
        self.ffprobe = self._write('ffprobe', FAKE_FFPROBE)
        self.yt_dlp = self._write('yt-dlp', FAKE_YT_DLP)

    def _write(self, name: str, body: str) -> str:
        path = self.bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return str(path)

    def calls(self, name: str) -> List[str]:
        log = self.bin_dir / f'{name}.calls'
        if not log.exists():
            return []
        return log.read_text().splitlines()


class Recorder:
    """Collects the partial updates a runner reports."""

    def __init__(self):
        self.updates: List[Dict[str, Any]] = []

    async def __call__(self, changes: Dict[str, Any]):
        self.updates.append(dict(changes))

    @property
    def statuses(self) -> List[Any]:
        return [u['status'] for u in self.updates if 'status' in u]

    @property
    def last(self) -> Optional[Dict[str, Any]]:
        return self.updates[-1] if self.updates else None


@pytest.fixture
def engines(tmp_path) -> FakeEngines:
    if sys.platform == "win32":
        pytest.skip("fake engines are shebang scripts")
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()
    return FakeEngines(bin_dir)


@pytest.fixture
def media_dir(tmp_path) -> Path:
    directory = tmp_path / 'media'
    directory.mkdir()
    return directory


@pytest.fixture
def make_media(media_dir):
    """Creates a media file, optionally with the report the fake ffprobe returns for it."""
    def _make(name: str, probe: Optional[Dict[str, Any]] = None, content: bytes = b'\x00' * 2048) -> Path:
        path = media_dir / name
        path.write_bytes(content)
        if probe is not None:
            Path(f"{path}.probe.json").write_text(json.dumps(probe))
        return path
    return _make


@pytest.fixture
def make_recorder():
    return Recorder


@pytest.fixture
def store(tmp_path) -> AppStore:
    app_store = AppStore(tmp_path / 'state' / 'settings.json')
    app_store.load()
    return app_store


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(downloads_path=tmp_path / 'downloads')


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
        async def _poll():
            while not predicate():
                await asyncio.sleep(interval)
        await asyncio.wait_for(_poll(), timeout)
    return _wait_until


@pytest.fixture
def probe_with_subtitles() -> Dict[str, Any]:
    return json.loads(json.dumps(PROBE_WITH_SUBTITLES))


@pytest.fixture
def probe_audio_only() -> Dict[str, Any]:
    return json.loads(json.dumps(PROBE_AUDIO_ONLY))
