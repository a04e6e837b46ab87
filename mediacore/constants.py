"""
Defines application-wide constants, paths, and lookup tables.

This module centralizes the locations of persisted state, subprocess behavior,
and the fixed tables (playable extensions, conversion presets) shared by the
gateway and the job runners.
"""

import sys
import signal
import subprocess
from pathlib import Path

# --- Application Path and Storage Setup ---
if getattr(sys, 'frozen', False):
    # Bundled builds keep their engine binaries next to the executable.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'mediacore').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.mediacore'
STORE_FILE: Path = USER_DATA_DIR / 'settings.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_DOWNLOADS_PATH: Path = Path.home() / 'Videos' / 'GingerPlayer'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# The signal this application sends when it tears an engine process down.
# A process that dies from it was cancelled by us, not broken.
KILL_SIGNAL = getattr(signal, 'SIGKILL', signal.SIGTERM)

# --- Gateway ---
GATEWAY_HOST = '127.0.0.1'
STREAM_CHUNK_SIZE = 64 * 1024

DIRECT_PLAY_EXTENSIONS = frozenset({
    '.mp4', '.webm', '.mp3', '.wav', '.ogg', '.m4a', '.aac', '.flac',
    '.jpg', '.jpeg', '.png', '.webp', '.gif', '.bmp',
})

# stderr fragments ffmpeg prints when the reader of its stdout goes away.
DISCONNECT_ERROR_MARKERS = (
    'broken pipe',
    'output stream closed',
    'error writing trailer',
    'connection reset',
)

# --- Jobs ---
JOB_HISTORY_LIMIT = 50
MIN_VISIBLE_DOWNLOAD_PROGRESS = 10.0
DEFAULT_STALL_TIMEOUT = 300.0
INTERRUPTED_JOB_ERROR = 'Interrupted: the application exited before this job finished'
# Per-subscriber backlog; the oldest update is dropped when a reader falls behind.
SUBSCRIBER_QUEUE_SIZE = 1000

# Audio encoder and per-tier bitrate (kbps) for each conversion format.
# Formats absent from this table are passed to ffmpeg as a container hint only.
CONVERSION_PRESETS = {
    'mp3': ('libmp3lame', {'low': 128, 'medium': 192, 'high': 320}),
    'aac': ('aac', {'low': 96, 'medium': 160, 'high': 256}),
    'flac': ('flac', None),
    'wav': ('pcm_s16le', None),
}

# Query parameters that turn a single-item link into a playlist fetch.
PLAYLIST_QUERY_KEYS = frozenset({'list', 'index', 'start_radio', 'pp', 'playnext'})
PLAYLIST_AWARE_HOSTS = frozenset({
    'youtube.com', 'www.youtube.com', 'm.youtube.com', 'music.youtube.com', 'youtu.be',
})

REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
