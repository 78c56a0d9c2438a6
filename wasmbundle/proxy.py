"""Proxy HTTP requests and WebSocket connections to a backend."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

import aiohttp
from aiohttp import WSMsgType, web

log = logging.getLogger(__name__)

_SKIP_REQUEST_HEADERS = {"host", "content-length", "transfer-encoding"}
_SKIP_RESPONSE_HEADERS = {"content-length", "transfer-encoding"}


def _backend_path(backend: str) -> str:
    return urlsplit(backend).path or "/"


def build_outbound_url(backend: str, path: str, query: str | None = None) -> str:
    """Join the backend URL with the request path left after the proxy prefix."""
    parts = urlsplit(backend)
    backend_path = parts.path or "/"
    rest = path.lstrip("/") if backend_path.endswith("/") else path
    path_and_query = "/" + backend_path.lstrip("/") + rest
    if query is not None:
        path_and_query += "?" + query
    return f"{parts.scheme}://{parts.netloc}{path_and_query}"


def _remaining_path(prefix: str, raw_path: str) -> str:
    base = prefix.rstrip("/")
    return raw_path[len(base):] or "/"


class ProxyHandlerHttp:
    """Forwards every request below its path to the backend."""

    def __init__(
        self,
        backend: str,
        rewrite: str | None = None,
        *,
        insecure: bool = False,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.backend = backend
        self.rewrite = rewrite
        self.insecure = insecure
        self._session = session
        self._owns_session = session is None

    def path(self) -> str:
        """The path prefix this proxy listens at."""
        return self.rewrite if self.rewrite is not None else _backend_path(self.backend)

    def register(self, app: web.Application) -> web.Application:
        """Add routes for everything below this proxy's path to ``app``."""
        base = self.path().rstrip("/")
        if base:
            app.router.add_route("*", base, self.handle)
        app.router.add_route("*", base + "/{tail:.*}", self.handle)
        app.on_cleanup.append(self._close)
        return app

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            connector = aiohttp.TCPConnector(ssl=False) if self.insecure else None
            self._session = aiohttp.ClientSession(connector=connector, auto_decompress=False)
        return self._session

    async def _close(self, _app: web.Application) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Send the request on to the backend and stream back its response."""
        rest = _remaining_path(self.path(), request.rel_url.raw_path)
        query = request.rel_url.raw_query_string or None
        url = build_outbound_url(self.backend, rest, query)

        headers = [
            (key, value)
            for key, value in request.headers.items()
            if key.lower() not in _SKIP_REQUEST_HEADERS
        ]
        host = urlsplit(self.backend).hostname
        if host:
            headers.append(("Host", host))

        response: web.StreamResponse | None = None
        try:
            body = await request.read()
            async with self._get_session().request(
                request.method, url, headers=headers, data=body or None
            ) as backend_res:
                response = web.StreamResponse(status=backend_res.status, reason=backend_res.reason)
                for key, value in backend_res.headers.items():
                    if key.lower() not in _SKIP_RESPONSE_HEADERS:
                        response.headers.add(key, value)
                await response.prepare(request)
                async for chunk in backend_res.content.iter_any():
                    await response.write(chunk)
                await response.write_eof()
                return response
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as err:
            log.error("error proxying request to proxy backend: %s", err)
            if response is not None and response.prepared:
                return response
            return web.Response(status=web.HTTPInternalServerError.status_code)


async def _pump(
    source: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
    sink: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
    direction: str,
) -> None:
    while True:
        msg = await source.receive()
        try:
            if msg.type is WSMsgType.TEXT:
                await sink.send_str(msg.data)
            elif msg.type is WSMsgType.BINARY:
                await sink.send_bytes(msg.data)
            elif msg.type is WSMsgType.PING:
                await sink.ping(msg.data)
            elif msg.type is WSMsgType.PONG:
                await sink.pong(msg.data)
            elif msg.type is WSMsgType.CLOSE:
                code = msg.data if isinstance(msg.data, int) else 1000
                await sink.close(code=code, message=(msg.extra or "").encode())
            else:
                return
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as err:
            log.error("error forwarding %s WebSocket message: %s", direction, err)
            return


class ProxyHandlerWebSocket:
    """Relays WebSocket connections at its path to the backend."""

    def __init__(self, backend: str, rewrite: str | None = None) -> None:
        self.backend = backend
        self.rewrite = rewrite

    def path(self) -> str:
        """The path this proxy listens at."""
        return self.rewrite if self.rewrite is not None else _backend_path(self.backend)

    def register(self, app: web.Application) -> web.Application:
        """Add the WebSocket route to ``app``."""
        app.router.add_get(self.path(), self.handle)
        return app

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """Upgrade the connection and relay messages both ways until one side ends."""
        frontend = web.WebSocketResponse(autoping=False, autoclose=False)
        await frontend.prepare(request)
        log.debug("new websocket connection")
        try:
            async with aiohttp.ClientSession() as session:
                try:
                    backend = await session.ws_connect(
                        self.backend, autoping=False, autoclose=False
                    )
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as err:
                    log.error(
                        "error establishing WebSocket connection to backend %s for proxy: %s",
                        self.backend,
                        err,
                    )
                    return frontend
                async with backend:
                    tasks = [
                        asyncio.create_task(_pump(frontend, backend, "frontend to backend")),
                        asyncio.create_task(_pump(backend, frontend, "backend to frontend")),
                    ]
                    try:
                        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                    finally:
                        for task in tasks:
                            task.cancel()
                        await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if not frontend.closed:
                await frontend.close()
            log.debug("websocket connection closed")
        return frontend