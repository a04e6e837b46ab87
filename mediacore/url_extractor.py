"""
Provides URL clean-up and remote title lookup using yt-dlp.
"""

import re
import asyncio
import logging
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .constants import PLAYLIST_AWARE_HOSTS, PLAYLIST_QUERY_KEYS
from .exceptions import JobCancelledError, ProcessFailedError, URLExtractionError
from .models import ProcessSpec
from .processes import CancelToken, ManagedProcess

# Characters that are invalid in file names on at least one supported platform.
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
MAX_FILENAME_LENGTH = 200


def sanitize_url(url: str) -> str:
    """
    Strips playlist-context query parameters from links on known hosts.

    A watch link copied from inside a playlist carries `list=`/`index=`; left in
    place, the fetch engine would pull the whole playlist.
    """
    url = url.strip()
    parsed = urlparse(url)
    host = (parsed.hostname or '').lower()
    if host not in PLAYLIST_AWARE_HOSTS or not parsed.query:
        return url

    kept = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in PLAYLIST_QUERY_KEYS]
    return urlunparse(parsed._replace(query=urlencode(kept)))


def safe_filename(title: str) -> str:
    """
    Makes a title usable as a file name.

    Path-hostile characters are removed, whitespace runs collapse to one space,
    and leading/trailing dots and spaces are trimmed. May return ''.
    """
    name = re.sub(r'\s+', ' ', title)
    name = INVALID_FILENAME_CHARS.sub('', name)
    name = re.sub(r' {2,}', ' ', name).strip(' .')
    return name[:MAX_FILENAME_LENGTH].rstrip(' .')


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    This class uses fast, non-JSON-based commands for performance.
    """
    def __init__(self, yt_dlp_path: str = 'yt-dlp', timeout: float = 30):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: Seconds before a lookup is abandoned.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, spec: ProcessSpec, token: Optional[CancelToken] = None) -> Tuple[str, str]:
        """
        Runs a yt-dlp command to completion.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
            JobCancelledError: If `token` fires.
        """
        token = token or CancelToken()
        try:
            async with ManagedProcess(spec, token, new_session=True) as proc:
                stdout_bytes = await asyncio.wait_for(proc.stdout.read(), timeout=self.timeout)
                returncode = await proc.wait()
        except asyncio.TimeoutError:
            self.logger.error(f"yt-dlp command timed out: {spec}")
            raise URLExtractionError("URL processing command timed out.")
        except ProcessFailedError as e:
            self.logger.error(f"Could not run yt-dlp: {e}")
            raise URLExtractionError(str(e)) from e

        if token.cancelled:
            raise JobCancelledError("URL processing cancelled.")

        stderr = '\n'.join(proc.stderr_tail)
        if returncode != 0:
            self.logger.error(f"yt-dlp command failed for '{spec.args[-1]}'. Stderr: {stderr}")
            raise URLExtractionError(self._parse_yt_dlp_error(stderr))

        return stdout_bytes.decode('utf-8', 'replace'), stderr

    async def get_title(self, url: str, token: Optional[CancelToken] = None) -> str:
        """
        Quickly retrieves the title for a single video URL.

        Raises:
            JobCancelledError: If `token` fires.
            URLExtractionError: If the yt-dlp command fails or prints nothing.
        """
        spec = ProcessSpec(
            self.yt_dlp_path,
            ('--get-title', '--no-warnings', '--no-playlist', url),
            description='yt-dlp-title',
        )
        stdout, _ = await self._run_command(spec, token)
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise URLExtractionError("Title not found")
        return lines[0]
