"""
WebSocket bridge to a browser-hosted model.

The bridge owns a small aiohttp server. A browser page (the external client)
connects to it and answers completion requests with JSON envelopes:

    {"type": "completionRequest",  "payload": {"model", "prompt", "stop_sequences", ...}}
    {"type": "completionChunk",    "payload": {"text_delta"}}
    {"type": "completionResponse", "payload": {"text"}}
    {"type": "error",              "payload": {"message"}}

Exactly one client may be connected, and one request may be outstanding at a
time; a second concurrent request is rejected rather than queued.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

from aiohttp import WSMsgType, web

from ..errors import BridgeBusyError, ProviderError

log = logging.getLogger(__name__)

COMPLETION_REQUEST = "completionRequest"
COMPLETION_RESPONSE = "completionResponse"
COMPLETION_CHUNK = "completionChunk"
ERROR = "error"
WELCOME = "success"


class BridgeServer:
    """
    Managed WebSocket channel with a single browser client.

    Args:
        host: Interface to bind.
        port: TCP port; 0 picks a free one (see `port` after start()).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8090):
        self.host = host
        self._requested_port = port
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None
        self._ws: Optional[web.WebSocketResponse] = None
        self._connected: Optional[asyncio.Event] = None
        self._pending: Optional[asyncio.Future] = None
        self._on_chunk: Optional[Callable[[Dict[str, Any]], Any]] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _connected_event(self) -> asyncio.Event:
        # Built on first use so it binds to the running loop.
        if self._connected is None:
            self._connected = asyncio.Event()
        return self._connected

    @property
    def busy(self) -> bool:
        return self._pending is not None

    async def start(self) -> None:
        if self._runner is not None:
            return
        app = web.Application()
        app.router.add_get("/", self._handle_socket)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self._requested_port)
        await site.start()
        self.port = self._runner.addresses[0][1]
        log.info("Browser bridge listening on ws://%s:%s/, waiting for client...", self.host, self.port)

    async def stop(self) -> None:
        self._fail_pending(ProviderError("Browser bridge stopped", provider="browser"))
        if self._ws is not None:
            await self._ws.close()
        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None
        self._ws = None
        self._connected_event().clear()

    async def wait_for_client(self, timeout: Optional[float] = None) -> None:
        """
        Wait until a browser client is connected.

        Raises:
            ProviderError: If no client connects within `timeout` seconds.
        """
        try:
            await asyncio.wait_for(self._connected_event().wait(), timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError("No browser client connected to the bridge", provider="browser") from e

    async def request(
        self,
        payload: Dict[str, Any],
        on_chunk: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a completion request and wait for its response payload.

        Raises:
            BridgeBusyError: Another request is still outstanding.
            ProviderError: No client connected, the client reported an error,
                or it disconnected before answering.
        """
        if self._pending is not None:
            raise BridgeBusyError("The browser bridge is already serving a request", provider="browser")
        if not self.connected:
            raise ProviderError("No browser client connected to the bridge", provider="browser")

        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        self._on_chunk = on_chunk
        try:
            await self._ws.send_json({"type": COMPLETION_REQUEST, "payload": payload})
            return await self._pending
        finally:
            self._pending = None
            self._on_chunk = None

    async def _handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        if self.connected:
            log.warning("Refusing second browser bridge client from %s", request.remote)
            await ws.send_json({"type": ERROR, "payload": {"message": "A client is already connected"}})
            await ws.close()
            return ws

        self._ws = ws
        self._connected_event().set()
        log.info("Browser bridge client connected from %s", request.remote)
        await ws.send_json({"type": WELCOME, "payload": {"message": "Connected to server"}})

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Browser bridge socket error: %s", ws.exception())
        finally:
            if self._ws is ws:
                self._ws = None
                self._connected_event().clear()
                self._fail_pending(ProviderError("Browser client disconnected", provider="browser"))
            log.info("Browser bridge client disconnected")
        return ws

    def _dispatch(self, data: str) -> None:
        log.debug("Bridge received: %s", data)
        try:
            envelope = json.loads(data)
        except json.JSONDecodeError:
            log.warning("Ignoring malformed bridge message: %r", data[:200])
            return

        kind = envelope.get("type")
        payload = envelope.get("payload") or {}
        if kind == COMPLETION_CHUNK:
            if self._on_chunk is not None:
                try:
                    self._on_chunk(payload)
                except Exception as e:
                    # The request fails with the callback's error; the client stays connected.
                    self._on_chunk = None
                    self._fail_pending(e)
        elif kind == COMPLETION_RESPONSE:
            if self._pending is not None and not self._pending.done():
                self._pending.set_result(payload)
        elif kind == ERROR:
            self._fail_pending(ProviderError(
                f"Browser client error: {payload.get('message', payload)}",
                body=payload,
                provider="browser",
            ))
        else:
            log.debug("Ignoring bridge message of type %r", kind)

    def _fail_pending(self, error: Exception) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(error)
