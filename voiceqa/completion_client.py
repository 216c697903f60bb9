"""Streaming chat-completion client for an OpenAI-compatible endpoint.

POSTs the transcribed question with ``"stream": true`` and decodes the
server-sent event lines into text deltas.  Each call to stream() is one
request; the async iterator it returns is finite and not restartable.
Closing the iterator (or cancelling the task consuming it) releases the
connection.
"""

import asyncio
import json
import logging
from typing import AsyncIterable, AsyncIterator

import aiohttp

from . import config
from .errors import DecodeError, TransportError

log = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _parse_chunk(payload: str) -> list[str]:
    """Return the text deltas carried by one ``data:`` payload."""
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise DecodeError("malformed stream chunk: %s" % exc) from exc

    if not isinstance(chunk, dict):
        raise DecodeError("stream chunk is not an object: %s" % payload[:120])
    choices = chunk.get("choices", [])
    if not isinstance(choices, list):
        raise DecodeError("'choices' is not a list: %s" % payload[:120])

    deltas = []
    for choice in choices:
        if not isinstance(choice, dict):
            raise DecodeError("choice is not an object: %s" % payload[:120])
        delta = choice.get("delta")
        if delta is None:
            continue
        if not isinstance(delta, dict):
            raise DecodeError("'delta' is not an object: %s" % payload[:120])
        content = delta.get("content")
        if content is None:
            continue
        if not isinstance(content, str):
            raise DecodeError("'content' is not a string: %s" % payload[:120])
        if content:
            deltas.append(content)
    return deltas


async def decode_event_lines(lines: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Turn raw event-stream lines into text deltas, in arrival order.

    Lines without the ``data: `` prefix are skipped.  ``data: [DONE]`` ends
    the stream; so does running out of lines.
    """
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            log.debug("Stream finished by server")
            return
        for delta in _parse_chunk(payload):
            yield delta


class CompletionClient:
    """Async client for the streaming /chat/completions API."""

    def __init__(
        self,
        api_key: str,
        url: str = config.COMPLETION_URL,
        model: str = config.COMPLETION_MODEL,
        system_prompt: str = config.SYSTEM_PROMPT,
        idle_timeout: float = config.STREAM_IDLE_TIMEOUT,
        connect_timeout: float = config.STREAM_CONNECT_TIMEOUT,
    ):
        self._api_key = api_key
        self._url = url
        self._model = model
        self._system_prompt = system_prompt
        self._timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=connect_timeout,
            sock_read=idle_timeout,
        )
        self._session: aiohttp.ClientSession | None = None

    async def start(self):
        self._session = aiohttp.ClientSession()

    async def stop(self):
        if self._session:
            try:
                await self._session.close()
            except Exception:
                log.exception("Error closing completion session")
            self._session = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    def build_payload(self, prompt: str) -> dict:
        messages = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self._model,
            "stream": True,
            "messages": messages,
        }

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """Send one prompt and yield the answer as it is generated.

        Raises TransportError when the request cannot be made or the server
        rejects it, DecodeError when a chunk cannot be parsed.  Fragments
        yielded before a DecodeError stay valid.
        """
        if self._session is None:
            raise RuntimeError("CompletionClient.start() has not been called")

        headers = {
            "Authorization": "Bearer %s" % self._api_key,
            "Content-Type": "application/json",
        }
        log.info("Completion request (model=%s): %s", self._model, prompt[:60])
        count = 0
        connected = False
        try:
            async with self._session.post(
                self._url,
                json=self.build_payload(prompt),
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                connected = True
                if resp.status != 200:
                    body = await resp.text()
                    raise TransportError(
                        "HTTP %d from completion endpoint: %s" % (resp.status, body[:200])
                    )
                async for delta in decode_event_lines(resp.content):
                    count += 1
                    yield delta
        except asyncio.TimeoutError as exc:
            raise TransportError("no data from completion endpoint within timeout") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        except ValueError as exc:
            if connected:
                # aiohttp refuses lines longer than its read buffer
                raise TransportError("unreadable response from completion endpoint: %s" % exc) from exc
            # yarl rejects unparseable URLs with ValueError
            raise TransportError("invalid completion URL %r: %s" % (self._url, exc)) from exc
        log.info("Completion stream done (%d fragments)", count)
