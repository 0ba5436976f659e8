"""
HTTP servers: the streaming server exposing torrent files by index, and the
short-lived subtitles server used by cast devices.
"""

from __future__ import annotations

import contextlib
import errno
import html
import logging
import mimetypes
import os
import socket
import urllib.parse
from pathlib import Path
from typing import Callable, Optional

from aiohttp import web

from .errors import SessionError
from .models import StreamEndpoint
from .swarm import SwarmTorrent
from .tui.formatters import format_size

logger = logging.getLogger(__name__)

RETRYABLE_BIND_ERRORS = (errno.EADDRINUSE, errno.EACCES)
RUNNER_SHUTDOWN_TIMEOUT = 0.5


def local_network_address() -> str:
    """Best guess at this host's LAN IPv4 address, for URLs handed to cast devices."""
    with contextlib.suppress(OSError):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            # No packet is sent; connect only selects the outbound interface
            probe.connect(("10.255.255.255", 1))
            return probe.getsockname()[0]
    return socket.gethostbyname(socket.gethostname())


def _listening_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if os.name == "posix":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class StreamingServer:
    """
    Serves the files of one torrent over HTTP, with byte ranges.

    ``GET /<index>`` streams file ``index``; data is read through the swarm
    torrent, so requests for pieces not downloaded yet simply wait.
    """

    def __init__(
        self,
        torrent: SwarmTorrent,
        host: str = "",
        on_connection: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Args:
            torrent: Torrent whose files are served
            host: Interface to listen on, "" for all
            on_connection: Called once, when the first request arrives
        """
        self.torrent = torrent
        self.host = host
        self.port: Optional[int] = None
        self.bind_attempts = 0
        self.connection_observed = False
        self._on_connection = on_connection
        self._runner: Optional[web.AppRunner] = None

    async def bind(self, preferred_port: int) -> int:
        """
        Start listening, on ``preferred_port`` if possible.

        When that port is taken or not permitted, retries exactly once on an
        ephemeral port. Any other error is fatal.

        Returns:
            The bound port

        Raises:
            SessionError: If the server cannot listen
        """
        if self._runner is not None:
            raise SessionError("Streaming server is already bound")

        try:
            sock = self._bind(preferred_port)
        except OSError as e:
            if e.errno not in RETRYABLE_BIND_ERRORS:
                raise SessionError(f"Cannot listen on port {preferred_port}: {e}") from e
            logger.info(f"Port {preferred_port} unavailable ({e.strerror}), using an ephemeral port")
            try:
                sock = self._bind(0)
            except OSError as retry_error:
                raise SessionError(f"Cannot listen on an ephemeral port: {retry_error}") from retry_error

        runner = web.AppRunner(self._make_app(), access_log=None, shutdown_timeout=RUNNER_SHUTDOWN_TIMEOUT)
        await runner.setup()
        await web.SockSite(runner, sock).start()
        self._runner = runner
        self.port = sock.getsockname()[1]
        logger.info(f"Streaming server listening on port {self.port}")
        return self.port

    def _bind(self, port: int) -> socket.socket:
        self.bind_attempts += 1
        return _listening_socket(self.host, port)

    def endpoint(self, index: int, host: str = "localhost") -> StreamEndpoint:
        """Endpoint for a file as reachable from ``host``."""
        if self.port is None:
            raise SessionError("Streaming server is not bound")
        return StreamEndpoint(host=host, port=self.port, selected_index=index)

    async def close(self) -> None:
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    def _make_app(self) -> web.Application:
        app = web.Application(middlewares=[self._observe_connection])
        app.router.add_get("/", self._handle_index)
        app.router.add_get(r"/{index:\d+}", self._handle_file)
        return app

    @web.middleware
    async def _observe_connection(self, request: web.Request, handler) -> web.StreamResponse:
        if not self.connection_observed:
            self.connection_observed = True
            logger.debug(f"First client connection from {request.remote}")
            if self._on_connection:
                self._on_connection()
        return await handler(request)

    async def _handle_index(self, request: web.Request) -> web.Response:
        metadata = self.torrent.metadata
        if metadata is None:
            return web.Response(text="<p>Fetching torrent metadata...</p>", content_type="text/html")
        items = "".join(
            f'<li><a href="/{f.index}">{html.escape(f.path)}</a> ({format_size(f.length)})</li>' for f in metadata.files
        )
        title = html.escape(metadata.name or metadata.info_hash)
        body = f"<!DOCTYPE html><html><head><title>{title}</title></head><body><h1>{title}</h1><ol start=\"0\">{items}</ol></body></html>"
        return web.Response(text=body, content_type="text/html")

    async def _handle_file(self, request: web.Request) -> web.StreamResponse:
        index = int(request.match_info["index"])
        files = self.torrent.metadata.files if self.torrent.metadata else ()
        if index >= len(files):
            raise web.HTTPNotFound(text=f"No file at index {index}")
        descriptor = files[index]
        length = descriptor.length

        unsatisfiable = web.HTTPRequestRangeNotSatisfiable(headers={"Content-Range": f"bytes */{length}"})
        try:
            requested = request.http_range
        except ValueError:
            raise unsatisfiable

        if requested.start is None:
            start, end, status = 0, length - 1, 200
        else:
            start = requested.start if requested.start >= 0 else max(0, length + requested.start)
            end = length - 1 if requested.stop is None else min(requested.stop, length) - 1
            if start >= length or start > end:
                raise unsatisfiable
            status = 206

        response = web.StreamResponse(status=status)
        response.headers["Accept-Ranges"] = "bytes"
        response.content_type = mimetypes.guess_type(descriptor.name)[0] or "application/octet-stream"
        response.content_length = max(0, end - start + 1)
        if status == 206:
            response.headers["Content-Range"] = f"bytes {start}-{end}/{length}"
        await response.prepare(request)

        if request.method != "HEAD" and end >= start:
            try:
                async with contextlib.aclosing(self.torrent.open_stream(index, start, end)) as stream:
                    async for chunk in stream:
                        await response.write(chunk)
            except ConnectionResetError:
                logger.debug(f"Client {request.remote} went away while streaming file {index}")
                return response
        await response.write_eof()
        return response


class SubtitlesServer:
    """Serves one subtitles file so cast devices can fetch it."""

    def __init__(self, path: Path, host: str = "") -> None:
        self.path = Path(path)
        self.host = host
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> int:
        """Listen on an ephemeral port; calling it again keeps the first binding."""
        if self._runner is not None:
            return self.port
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        runner = web.AppRunner(app, access_log=None, shutdown_timeout=RUNNER_SHUTDOWN_TIMEOUT)
        await runner.setup()
        try:
            sock = _listening_socket(self.host, 0)
        except OSError as e:
            await runner.cleanup()
            raise SessionError(f"Cannot start subtitles server: {e}") from e
        await web.SockSite(runner, sock).start()
        self._runner = runner
        self.port = sock.getsockname()[1]
        return self.port

    def url(self, host: str) -> str:
        return f"http://{host}:{self.port}/{urllib.parse.quote(self.path.name)}"

    async def close(self) -> None:
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        if request.match_info["name"] != self.path.name:
            raise web.HTTPNotFound()
        return web.FileResponse(self.path)
