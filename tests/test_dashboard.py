from __future__ import annotations

import asyncio

from aiohttp import test_utils

from voiceqa.dashboard import DashboardServer


class StubAssistant:
    def __init__(self) -> None:
        self.presses = 0
        self.pauses = 0

    async def press_button(self) -> None:
        self.presses += 1

    def toggle_pause(self) -> None:
        self.pauses += 1

    def snapshot(self) -> dict:
        return {
            "transcript": "",
            "response": "",
            "button": "Registra",
            "button_disabled": False,
            "playback": "idle",
            "recording": False,
            "streaming": False,
            "presses": self.presses,
        }


async def _with_client(body):
    assistant = StubAssistant()
    server = DashboardServer(assistant)
    async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
        return await body(client, server, assistant)


def test_state_endpoint_returns_snapshot() -> None:
    async def body(client, server, assistant):
        resp = await client.get("/api/state")
        return resp.status, await resp.json()

    status, data = asyncio.run(_with_client(body))

    assert status == 200
    assert data["button"] == "Registra"
    assert data["playback"] == "idle"


def test_button_and_pause_reach_assistant() -> None:
    async def body(client, server, assistant):
        resp = await client.post("/api/button")
        data = await resp.json()
        await client.post("/api/pause")
        return data, assistant

    data, assistant = asyncio.run(_with_client(body))

    assert data["presses"] == 1
    assert assistant.presses == 1
    assert assistant.pauses == 1


def test_websocket_gets_initial_state_and_broadcasts() -> None:
    async def body(client, server, assistant):
        ws = await client.ws_connect("/ws/live")
        first = await ws.receive_json(timeout=2)
        await server.broadcast({"type": "response", "text": "Ciao."})
        second = await ws.receive_json(timeout=2)
        await ws.close()
        return first, second

    first, second = asyncio.run(_with_client(body))

    assert first["type"] == "state"
    assert first["button"] == "Registra"
    assert second == {"type": "response", "text": "Ciao."}


def test_broadcast_without_clients_is_a_noop() -> None:
    server = DashboardServer(StubAssistant())

    asyncio.run(server.broadcast({"type": "state"}))


def test_published_events_arrive_in_order() -> None:
    async def body(client, server, assistant):
        ws = await client.ws_connect("/ws/live")
        await ws.receive_json(timeout=2)
        for text in ("Uno.", "Uno. Due.", "Uno. Due. Tre."):
            server.publish({"type": "response", "text": text})
        got = [(await ws.receive_json(timeout=2))["text"] for _ in range(3)]
        await ws.close()
        return got

    got = asyncio.run(_with_client(body))

    assert got == ["Uno.", "Uno. Due.", "Uno. Due. Tre."]


class VanishingPeer:
    """A client whose send lets another client drop off the set."""

    def __init__(self, clients: set, other=None) -> None:
        self.clients = clients
        self.other = other
        self.sent: list[str] = []

    async def send_str(self, data: str) -> None:
        self.sent.append(data)
        if self.other is not None:
            self.clients.discard(self.other)
        await asyncio.sleep(0)


def test_client_leaving_during_broadcast() -> None:
    server = DashboardServer(StubAssistant())
    leaver = VanishingPeer(server._clients)
    stayer = VanishingPeer(server._clients, other=leaver)
    server._clients.update({stayer, leaver})

    asyncio.run(server.broadcast({"type": "state"}))

    assert stayer.sent == ['{"type": "state"}']
    assert stayer in server._clients
