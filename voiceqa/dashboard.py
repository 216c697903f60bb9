"""Local control panel -- aiohttp server with REST API and WebSocket broadcast.

  - GET  /api/state  -> transcript, answer text, button label, playback state
  - POST /api/button -> press the main button (record / send / stop)
  - POST /api/pause  -> tap the transcript area (pause / resume speech)
  - WS   /ws/live    -> real-time assistant events
"""

import asyncio
import json
import logging

from aiohttp import web

from . import config

log = logging.getLogger(__name__)


class DashboardServer:
    """aiohttp-based local control server for one VoiceAssistant."""

    def __init__(self, assistant, host: str = config.DASHBOARD_HOST, port: int = config.DASHBOARD_PORT):
        self._assistant = assistant
        self._host = host
        self._port = port
        self._clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._sender: asyncio.Task | None = None

    # --- WebSocket broadcast ---

    def publish(self, msg: dict):
        """Queue a message for all WebSocket clients, preserving order."""
        self._outbox.put_nowait(msg)
        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._drain_outbox(), name="dashboard-sender")

    async def _drain_outbox(self):
        while not self._outbox.empty():
            msg = self._outbox.get_nowait()
            try:
                await self.broadcast(msg)
            except Exception:
                log.exception("Dashboard broadcast failed")

    async def broadcast(self, msg: dict):
        """Send a message to all connected WebSocket clients."""
        if not self._clients:
            return
        data = json.dumps(msg)
        closed = []
        # Clients may disconnect while a send is awaited
        for ws in list(self._clients):
            try:
                await ws.send_str(data)
            except (ConnectionResetError, RuntimeError):
                closed.append(ws)
        for ws in closed:
            self._clients.discard(ws)

    # --- HTTP handlers ---

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self._assistant.snapshot())

    async def _handle_button(self, request: web.Request) -> web.Response:
        await self._assistant.press_button()
        return web.json_response(self._assistant.snapshot())

    async def _handle_pause(self, request: web.Request) -> web.Response:
        self._assistant.toggle_pause()
        return web.json_response(self._assistant.snapshot())

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self._clients.add(ws)
        log.info("Dashboard WS client connected (%d total)", len(self._clients))
        try:
            await ws.send_str(json.dumps({"type": "state", **self._assistant.snapshot()}))
            async for _msg in ws:
                pass  # inbound messages ignored; control goes through the REST API
        finally:
            self._clients.discard(ws)
            log.info("Dashboard WS client disconnected (%d remaining)", len(self._clients))
        return ws

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/state", self._handle_state)
        app.router.add_post("/api/button", self._handle_button)
        app.router.add_post("/api/pause", self._handle_pause)
        app.router.add_get("/ws/live", self._handle_ws)
        return app

    async def start(self):
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("Dashboard listening on http://%s:%d", self._host, self._port)

    async def stop(self):
        if self._sender is not None:
            self._sender.cancel()
            self._sender = None
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("Dashboard server stopped")
