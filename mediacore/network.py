"""
The network-stream collaborator consumed by the gateway's `/proxy` route.

Discovery and the SMB/DLNA clients live outside this package; they plug in by
satisfying `NetworkStreamProvider`. `HttpStreamProvider` covers plain http(s)
sources with aiohttp.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol
from urllib.parse import urlparse

import aiohttp

from .constants import REQUEST_HEADERS
from .exceptions import NetworkStreamError


@dataclass(frozen=True)
class NetworkEntry:
    """One item returned by `browse`."""
    path: str
    title: str
    is_directory: bool = False


class NetworkStream(Protocol):
    """A readable byte stream that must be released explicitly."""
    content_type: Optional[str]

    async def read(self, size: int) -> bytes:
        ...

    async def close(self) -> None:
        ...


class NetworkStreamProvider(Protocol):
    """Browse / resolve / stream capability for non-local sources."""

    async def browse(self, location: str) -> List[NetworkEntry]:
        ...

    async def resolve(self, location: str) -> str:
        ...

    async def open_stream(self, location: str) -> NetworkStream:
        ...


class HttpNetworkStream:
    """Wraps an aiohttp response body."""

    def __init__(self, response: aiohttp.ClientResponse):
        self.response = response
        self.content_type: Optional[str] = response.headers.get('Content-Type')
        self.content_length: Optional[int] = response.content_length

    async def read(self, size: int) -> bytes:
        try:
            return await self.response.content.read(size)
        except aiohttp.ClientError as e:
            raise NetworkStreamError(f"Upstream read failed: {e}") from e

    async def close(self):
        # close() drops the connection instead of draining the rest of the body.
        self.response.close()


class HttpStreamProvider:
    """Streams http(s) sources through a shared aiohttp session."""

    def __init__(self, read_timeout: float = 60):
        self.read_timeout = read_timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(__name__)

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers=REQUEST_HEADERS)
        return self.session

    @staticmethod
    def _check_url(location: str):
        parsed = urlparse(location)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise NetworkStreamError(f"Unsupported network location: {location}")

    async def browse(self, location: str) -> List[NetworkEntry]:
        """Plain HTTP has no directory listing."""
        self._check_url(location)
        return []

    async def resolve(self, location: str) -> str:
        """Follows redirects and returns the final URL."""
        self._check_url(location)
        try:
            async with self._get_session().head(location, allow_redirects=True,
                                                timeout=aiohttp.ClientTimeout(total=10)) as r:
                return str(r.url)
        except aiohttp.ClientError as e:
            self.logger.warning(f"HEAD request failed for {location}: {e}. Using it as-is.")
            return location

    async def open_stream(self, location: str) -> HttpNetworkStream:
        self._check_url(location)
        try:
            response = await self._get_session().get(
                location, timeout=aiohttp.ClientTimeout(total=None, sock_read=self.read_timeout))
        except aiohttp.ClientError as e:
            raise NetworkStreamError(f"Could not open {location}: {e}") from e
        if response.status >= 400:
            response.release()
            raise NetworkStreamError(f"Upstream returned HTTP {response.status} for {location}")
        return HttpNetworkStream(response)

    async def close(self):
        if self.session is not None and not self.session.closed:
            await self.session.close()
