"""Single-consumer FIFO that feeds a speech sink one utterance at a time.

The sink reports each finished utterance through ``on_finished``, possibly
from its own worker thread.  That report is marshalled onto the event loop
the queue was created on, so every state change (pending list, in-flight
slot, playback state) happens on that one thread.
"""

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Utterance:
    text: str
    rate: float = 1.0


class PlaybackState(str, enum.Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    PAUSED = "paused"


class SpeechSink(Protocol):
    """Speech output engine driven by UtteranceQueue."""

    on_finished: Optional[Callable[[Utterance], None]]

    def speak(self, utterance: Utterance) -> None:
        """Start speaking; must not block until playback ends."""

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop_immediately(self) -> None:
        """Drop the current utterance without reporting it finished."""


class UtteranceQueue:
    """Pending utterances plus an idle/speaking/paused state machine."""

    def __init__(self, sink: SpeechSink):
        self._sink = sink
        self._loop = asyncio.get_running_loop()
        self._pending: deque[Utterance] = deque()
        self._in_flight: Utterance | None = None
        self._state = PlaybackState.IDLE
        self._idle = asyncio.Event()
        self._idle.set()
        self.on_state_change: Callable[[PlaybackState], None] | None = None
        sink.on_finished = self.notify_finished

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True while speaking or paused (something is left to play)."""
        return self._state is not PlaybackState.IDLE

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> Utterance | None:
        return self._in_flight

    def enqueue(self, utterance: Utterance):
        self._pending.append(utterance)
        log.debug("Enqueued (%d pending): %s", len(self._pending), utterance.text[:50])
        if self._state is PlaybackState.IDLE:
            self._dispatch_next()

    def enqueue_texts(self, texts: Iterable[str], rate: float):
        for text in texts:
            self.enqueue(Utterance(text, rate))

    def pause(self):
        if self._state is not PlaybackState.SPEAKING:
            return
        self._sink.pause()
        self._set_state(PlaybackState.PAUSED)

    def resume(self):
        if self._state is not PlaybackState.PAUSED:
            return
        if self._in_flight is not None:
            self._sink.resume()
            self._set_state(PlaybackState.SPEAKING)
        else:
            # The in-flight utterance finished just as we paused
            self._dispatch_next()

    def toggle_pause(self):
        if self._state is PlaybackState.SPEAKING:
            self.pause()
        elif self._state is PlaybackState.PAUSED:
            self.resume()

    def cancel_all(self):
        dropped = len(self._pending) + (1 if self._in_flight else 0)
        self._pending.clear()
        self._in_flight = None
        self._sink.stop_immediately()
        if dropped:
            log.info("Speech cancelled (%d utterances dropped)", dropped)
        self._set_state(PlaybackState.IDLE)

    async def wait_idle(self):
        await self._idle.wait()

    def notify_finished(self, utterance: Utterance):
        """Sink callback: ``utterance`` has been fully spoken.  Thread-safe.

        Always delivered as a separate loop callback, never re-entrantly
        from inside sink.speak().
        """
        self._loop.call_soon_threadsafe(self._handle_finished, utterance)

    def _handle_finished(self, utterance: Utterance):
        if utterance is not self._in_flight:
            log.debug("Ignoring stale finish for: %s", utterance.text[:50])
            return
        self._in_flight = None
        if self._state is PlaybackState.SPEAKING:
            self._dispatch_next()

    def _dispatch_next(self):
        while self._pending:
            utterance = self._pending.popleft()
            self._in_flight = utterance
            self._set_state(PlaybackState.SPEAKING)
            try:
                self._sink.speak(utterance)
            except Exception:
                log.exception("Speech sink failed on: %s", utterance.text[:50])
                self._in_flight = None
                continue
            return
        self._set_state(PlaybackState.IDLE)

    def _set_state(self, state: PlaybackState):
        if state is PlaybackState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()
        if state is self._state:
            return
        self._state = state
        log.debug("Playback state -> %s", state.value)
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception:
                log.exception("Error in playback state callback")
