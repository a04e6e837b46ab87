"""
The loopback HTTP server that serves or transcodes media for the playback surface.

Routes:
    GET /file?path=P              raw bytes, range-aware
    GET /stream?path=P&start=S    fragmented MP4 transcoded on the fly
    GET /metadata?path=P          probe result as JSON
    GET /subtitles?path=P         first subtitle track as WebVTT, 204 if none
    GET /proxy?url=U              passthrough of a non-local source

Each `/stream` and `/subtitles` response owns exactly one ffmpeg process. The
process runs inside `ManagedProcess`, so it is killed when the response
finishes, when the client disconnects, and when writing fails.
"""
import asyncio
import os
import logging
from typing import Optional, Set
from urllib.parse import urlencode

from aiohttp import web

from ._version import __version__
from .constants import DIRECT_PLAY_EXTENSIONS, GATEWAY_HOST, STREAM_CHUNK_SIZE
from .exceptions import NetworkStreamError, ProbeError, ProcessFailedError
from .models import ProcessSpec
from .network import NetworkStreamProvider
from .processes import CancelToken, ManagedProcess
from .prober import MetadataProber
from .transcoder import TranscodeCommandBuilder

logger = logging.getLogger(__name__)


@web.middleware
async def log_requests(request: web.Request, handler):
    logger.debug(f"{request.method} {request.path_qs}")
    return await handler(request)


async def add_common_headers(request: web.Request, response: web.StreamResponse):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Server'] = f'mediacore/{__version__}'


def parse_start_offset(value: Optional[str]) -> float:
    """Parses the `start` query parameter; anything unusable means 0."""
    try:
        start = float(value) if value else 0.0
    except ValueError:
        return 0.0
    return start if start > 0 else 0.0


class StreamingGateway:
    """Serves local media over HTTP on a loopback-only ephemeral port."""

    def __init__(self, prober: MetadataProber, builder: TranscodeCommandBuilder,
                 network: Optional[NetworkStreamProvider] = None, host: str = GATEWAY_HOST):
        """
        Args:
            prober: Used by `/metadata` and `/subtitles`.
            builder: Builds the `/stream` and `/subtitles` processes.
            network: Collaborator behind `/proxy`; the route answers 400 without one.
            host: Bind address. Loopback only.
        """
        self.prober = prober
        self.builder = builder
        self.network = network
        self.host = host
        self.port = 0
        self.runner: Optional[web.AppRunner] = None
        self.active_processes: Set[ManagedProcess] = set()
        self.logger = logging.getLogger(__name__)

        self.app = web.Application(middlewares=[log_requests])
        self.app.on_response_prepare.append(add_common_headers)
        self.app.router.add_get('/file', self.handle_file)
        self.app.router.add_get('/stream', self.handle_stream)
        self.app.router.add_get('/metadata', self.handle_metadata)
        self.app.router.add_get('/subtitles', self.handle_subtitles)
        self.app.router.add_get('/proxy', self.handle_proxy)

    async def start(self) -> str:
        """Binds to an ephemeral loopback port and returns the base URL."""
        # handler_cancellation turns a client disconnect into CancelledError
        # inside the handler, which tears the process down immediately.
        self.runner = web.AppRunner(self.app, handler_cancellation=True, access_log=None)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, 0)
        await site.start()
        self.port = self.runner.addresses[0][1]
        self.logger.info(f"Gateway running at {self.get_url()}")
        return self.get_url()

    async def stop(self):
        for proc in list(self.active_processes):
            proc.kill()
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
        self.logger.info("Gateway stopped.")

    def get_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def media_url_for(self, path: str) -> str:
        """Direct-serve URL for browser-playable files, transcode URL for the rest."""
        if not path:
            return ''
        ext = os.path.splitext(path)[1].lower()
        route = '/file' if ext in DIRECT_PLAY_EXTENSIONS else '/stream'
        return f"{self.get_url()}{route}?{urlencode({'path': path})}"

    def subtitles_url_for(self, path: str) -> str:
        if not path:
            return ''
        return f"{self.get_url()}/subtitles?{urlencode({'path': path})}"

    # --- Routes ---

    async def handle_file(self, request: web.Request) -> web.StreamResponse:
        path = request.query.get('path')
        if not path:
            self.logger.error("No path provided for /file")
            return web.Response(status=400, text='Path is required')
        if not os.path.isfile(path):
            self.logger.error(f"File not found: {path}")
            return web.Response(status=404, text='File not found')

        # aiohttp sends it, including Range and If-Modified-Since handling.
        return web.FileResponse(path, chunk_size=STREAM_CHUNK_SIZE)

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        path = request.query.get('path')
        if not path:
            self.logger.error("No path provided for /stream")
            return web.Response(status=400, text='Path is required')
        if not os.path.isfile(path):
            self.logger.error(f"File not found for stream: {path}")
            return web.Response(status=404, text='File not found')

        start = parse_start_offset(request.query.get('start'))
        self.logger.info(f"Starting stream for: {path} at {start:g}s")
        spec = self.builder.build_stream_process(path, start)
        return await self._pipe_process(request, spec, 'video/mp4')

    async def handle_metadata(self, request: web.Request) -> web.Response:
        path = request.query.get('path')
        if not path:
            return web.json_response({'error': 'Path is required'}, status=400)
        try:
            metadata = await self.prober.probe(path)
        except ProbeError as e:
            self.logger.error(f"Metadata error for {path}: {e}")
            return web.json_response({'error': 'Failed to get metadata', 'detail': str(e)}, status=500)
        return web.Response(text=metadata.model_dump_json(), content_type='application/json')

    async def handle_subtitles(self, request: web.Request) -> web.StreamResponse:
        path = request.query.get('path')
        if not path or not os.path.isfile(path):
            return web.Response(status=404, text='File not found')

        try:
            metadata = await self.prober.probe(path)
        except ProbeError as e:
            self.logger.error(f"Subtitle check failed for {path}: {e}")
            return web.json_response({'error': 'Failed to check subtitles', 'detail': str(e)}, status=500)
        if not metadata.has_subtitles:
            return web.Response(status=204)

        self.logger.info(f"Extracting subtitles for: {path}")
        spec = self.builder.build_subtitle_process(path)
        return await self._pipe_process(request, spec, 'text/vtt')

    async def handle_proxy(self, request: web.Request) -> web.StreamResponse:
        url = request.query.get('url')
        if not url:
            return web.Response(status=400, text='URL is required')
        if self.network is None:
            return web.Response(status=400, text='No network stream provider available')

        try:
            stream = await self.network.open_stream(url)
        except NetworkStreamError as e:
            self.logger.error(f"Proxy open failed for {url}: {e}")
            return web.Response(status=500, text='Error opening network stream')

        response = web.StreamResponse()
        response.content_type = (stream.content_type or 'application/octet-stream').split(';')[0]
        response.enable_chunked_encoding()
        try:
            await response.prepare(request)
            while chunk := await stream.read(STREAM_CHUNK_SIZE):
                await response.write(chunk)
            await response.write_eof()
        except ConnectionResetError:
            self.logger.debug(f"Proxy client disconnected: {url}")
        except NetworkStreamError as e:
            self.logger.error(f"Proxy stream error for {url}: {e}")
            # Abort the connection so the client sees a truncated body, not a clean end.
            if request.transport is not None:
                request.transport.close()
        finally:
            await stream.close()
        return response

    # --- Helpers ---

    async def _pipe_process(self, request: web.Request, spec: ProcessSpec, content_type: str) -> web.StreamResponse:
        """Starts `spec` and copies its stdout into a chunked response."""
        token = CancelToken()
        response = web.StreamResponse(headers={'Cache-Control': 'no-store'})
        response.content_type = content_type
        response.enable_chunked_encoding()

        try:
            async with ManagedProcess(spec, token) as proc:
                self.active_processes.add(proc)
                try:
                    await response.prepare(request)
                    while chunk := await proc.stdout.read(STREAM_CHUNK_SIZE):
                        await response.write(chunk)
                    returncode = await proc.wait()
                    if returncode != 0 and not proc.was_cancelled and not proc.lost_reader:
                        self.logger.error(f"{proc.label} failed: {proc.error_detail()}")
                    await response.write_eof()
                except ConnectionResetError:
                    token.cancel('client disconnected')
                    self.logger.debug(f"Client closed connection, killed {proc.label} (PID: {proc.pid})")
                except asyncio.CancelledError:
                    token.cancel('client disconnected')
                    self.logger.debug(f"Request cancelled, killed {proc.label} (PID: {proc.pid})")
                    raise
                finally:
                    self.active_processes.discard(proc)
        except ProcessFailedError as e:
            self.logger.error(f"Could not start {spec.description}: {e}")
            return web.Response(status=500, text='Error starting transcoder')
        return response
