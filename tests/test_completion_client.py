from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

from voiceqa.completion_client import CompletionClient, decode_event_lines
from voiceqa.errors import DecodeError, TransportError


def _chunk(*contents: str | None) -> bytes:
    choices = [{"delta": {} if c is None else {"content": c}} for c in contents]
    return b"data: " + json.dumps({"choices": choices}).encode() + b"\n"


async def _lines(*items: bytes):
    for item in items:
        yield item


async def _collect(lines) -> tuple[list[str], Exception | None]:
    out: list[str] = []
    try:
        async for delta in decode_event_lines(lines):
            out.append(delta)
    except Exception as exc:
        return out, exc
    return out, None


def test_two_data_lines_then_done() -> None:
    lines = _lines(_chunk("Ciao"), _chunk(" mondo."), b"data: [DONE]\n", _chunk("ignored"))

    out, error = asyncio.run(_collect(lines))

    assert out == ["Ciao", " mondo."]
    assert error is None


def test_non_data_lines_are_ignored() -> None:
    lines = _lines(b": keep-alive\n", b"\n", b"event: message\n", _chunk("ok"), b"data: [DONE]\n")

    out, error = asyncio.run(_collect(lines))

    assert out == ["ok"]
    assert error is None


def test_choices_without_content_are_skipped() -> None:
    role_only = b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n'
    lines = _lines(role_only, _chunk(None), _chunk("a", "b"), b'data: {"choices": []}\n')

    out, error = asyncio.run(_collect(lines))

    assert out == ["a", "b"]
    assert error is None


def test_end_of_lines_without_done_finishes_cleanly() -> None:
    out, error = asyncio.run(_collect(_lines(_chunk("solo"))))

    assert out == ["solo"]
    assert error is None


def test_malformed_json_after_good_chunk() -> None:
    lines = _lines(_chunk("Parziale"), b"data: {not json\n", _chunk("never"))

    out, error = asyncio.run(_collect(lines))

    assert out == ["Parziale"]
    assert isinstance(error, DecodeError)


@pytest.mark.parametrize(
    "payload",
    [
        b'data: {"choices": 3}\n',
        b'data: {"choices": [{"delta": "x"}]}\n',
        b'data: {"choices": [{"delta": {"content": 7}}]}\n',
        b"data: [1, 2]\n",
    ],
)
def test_wrong_shape_is_a_decode_error(payload: bytes) -> None:
    out, error = asyncio.run(_collect(_lines(payload)))

    assert out == []
    assert isinstance(error, DecodeError)


def test_payload_includes_system_prompt_when_set() -> None:
    client = CompletionClient(api_key="k", model="m", system_prompt="sii breve")

    payload = client.build_payload("cos'è il DNS?")

    assert payload == {
        "model": "m",
        "stream": True,
        "messages": [
            {"role": "system", "content": "sii breve"},
            {"role": "user", "content": "cos'è il DNS?"},
        ],
    }
    assert CompletionClient(api_key="k", system_prompt="").build_payload("x")["messages"] == [
        {"role": "user", "content": "x"},
    ]


class FakeEndpoint:
    """Serves a scripted event stream and records the requests it got."""

    def __init__(self, lines: list[bytes], status: int = 200, stall: float = 0.0) -> None:
        self.lines = lines
        self.status = status
        self.stall = stall
        self.requests: list[tuple[dict, str]] = []

    async def handle(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((await request.json(), request.headers.get("Authorization", "")))
        if self.status != 200:
            return web.Response(status=self.status, text="quota exceeded")
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        for line in self.lines:
            await resp.write(line + b"\n")
        if self.stall:
            await asyncio.sleep(self.stall)
        return resp


async def _with_server(endpoint: FakeEndpoint, body, **client_kwargs):
    app = web.Application()
    app.router.add_post("/v1/chat/completions", endpoint.handle)
    async with test_utils.TestServer(app) as server:
        url = str(server.make_url("/v1/chat/completions"))
        async with CompletionClient(api_key="sk-test", url=url, **client_kwargs) as client:
            return await body(client)


async def _drain(client: CompletionClient, prompt: str = "domanda"):
    out: list[str] = []
    try:
        async for delta in client.stream(prompt):
            out.append(delta)
    except Exception as exc:
        return out, exc
    return out, None


def test_stream_against_server() -> None:
    endpoint = FakeEndpoint([_chunk("Il DNS"), _chunk(" risolve i nomi."), b"data: [DONE]"])

    out, error = asyncio.run(_with_server(endpoint, _drain, model="gpt-test"))

    assert out == ["Il DNS", " risolve i nomi."]
    assert error is None
    body, auth = endpoint.requests[0]
    assert auth == "Bearer sk-test"
    assert body["stream"] is True
    assert body["model"] == "gpt-test"
    assert body["messages"][-1] == {"role": "user", "content": "domanda"}


def test_http_error_status_is_transport_error() -> None:
    endpoint = FakeEndpoint([], status=429)

    out, error = asyncio.run(_with_server(endpoint, _drain))

    assert out == []
    assert isinstance(error, TransportError)
    assert "429" in str(error)


def test_malformed_chunk_keeps_earlier_fragments() -> None:
    endpoint = FakeEndpoint([_chunk("Prima."), b"data: {broken", _chunk("Dopo.")])

    out, error = asyncio.run(_with_server(endpoint, _drain))

    assert out == ["Prima."]
    assert isinstance(error, DecodeError)


def test_oversized_line_is_not_reported_as_bad_url() -> None:
    endpoint = FakeEndpoint([_chunk("Prima."), b"data: " + b"x" * 400_000])

    out, error = asyncio.run(_with_server(endpoint, _drain))

    assert out == ["Prima."]
    assert isinstance(error, TransportError)
    assert "URL" not in str(error)


def test_bad_url_fails_before_any_fragment() -> None:
    async def _run():
        async with CompletionClient(api_key="k", url="notaurl") as client:
            return await _drain(client)

    out, error = asyncio.run(_run())

    assert out == []
    assert isinstance(error, TransportError)


def test_connection_refused_is_transport_error() -> None:
    async def _run():
        async with CompletionClient(api_key="k", url="http://127.0.0.1:9/v1/chat/completions") as client:
            return await _drain(client)

    out, error = asyncio.run(_run())

    assert out == []
    assert isinstance(error, TransportError)


def test_idle_timeout_is_transport_error() -> None:
    endpoint = FakeEndpoint([_chunk("Inizio")], stall=1.0)

    out, error = asyncio.run(_with_server(endpoint, _drain, idle_timeout=0.2))

    assert out == ["Inizio"]
    assert isinstance(error, TransportError)


def test_cancel_mid_stream_stops_fragments() -> None:
    endpoint = FakeEndpoint([_chunk("Uno.")], stall=1.0)

    async def body(client: CompletionClient):
        got: list[str] = []
        first = asyncio.Event()

        async def consume():
            async for delta in client.stream("x"):
                got.append(delta)
                first.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(first.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return got

    got = asyncio.run(_with_server(endpoint, body))

    assert got == ["Uno."]


def test_stream_requires_start() -> None:
    async def _run():
        client = CompletionClient(api_key="k")
        async for _ in client.stream("x"):
            pass

    with pytest.raises(RuntimeError):
        asyncio.run(_run())
