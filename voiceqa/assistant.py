"""Turn orchestration: record -> transcribe -> stream answer -> display + speak.

One button drives the turn, as in the handheld UI:
  - while the answer is being spoken it stops playback and the stream
  - while recording it ends the take and sends the question
  - otherwise it starts recording
Tapping the transcript area pauses/resumes speech.

Everything here runs on the event loop thread; the capture and the speech
sink hand their callbacks back to it.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Protocol

from . import config
from .errors import StreamError
from .sentence_buffer import SentenceBuffer
from .transform import prepare_for_speech
from .utterance_queue import PlaybackState, Utterance, UtteranceQueue

log = logging.getLogger(__name__)

EventHandler = Callable[[dict], None]


class Capture(Protocol):
    """Speech input source (see speech.SpeechCapture)."""

    on_transcript: Callable[[str], None] | None

    @property
    def is_capturing(self) -> bool: ...

    @property
    def current_transcript(self) -> str: ...

    def start_capture(self) -> None: ...

    async def stop_capture(self) -> str: ...


class Completer(Protocol):
    def stream(self, prompt: str) -> AsyncIterator[str]: ...


class StreamSession:
    """One outstanding completion request and the task consuming it."""

    def __init__(self, prompt: str, task: asyncio.Task):
        self.prompt = prompt
        self._task = task

    @property
    def task(self) -> asyncio.Task:
        return self._task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self):
        if self.active:
            log.info("Cancelling answer stream")
            self._task.cancel()

    async def wait(self):
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class VoiceAssistant:
    """Owns the transcript/answer text and the single active StreamSession."""

    def __init__(
        self,
        client: Completer,
        queue: UtteranceQueue,
        capture: Capture,
        on_event: EventHandler | None = None,
        speak_transform: Callable[[str], str] = prepare_for_speech,
        answer_rate: float = config.ANSWER_RATE,
        cue_rate: float = config.CUE_RATE,
    ):
        self._client = client
        self._queue = queue
        self._capture = capture
        self._on_event = on_event
        self._speak_transform = speak_transform
        self._answer_rate = answer_rate
        self._cue_rate = cue_rate
        self._session: StreamSession | None = None
        self.response_text = ""
        self._busy = False
        capture.on_transcript = self._on_transcript
        queue.on_state_change = self._on_playback_state

    # --- observable state ---

    @property
    def transcript(self) -> str:
        return self._capture.current_transcript

    @property
    def session(self) -> StreamSession | None:
        return self._session

    @property
    def is_speaking(self) -> bool:
        return self._queue.is_active

    @property
    def button_disabled(self) -> bool:
        """Record/send is blocked while a turn is being set up or streamed; stop never is."""
        return self._busy and not self.is_speaking

    @property
    def is_recording(self) -> bool:
        return self._capture.is_capturing

    def button_label(self) -> str:
        if self.is_speaking:
            return config.LABEL_STOP
        if self.is_recording:
            return config.LABEL_SEND
        return config.LABEL_RECORD

    def snapshot(self) -> dict[str, Any]:
        return {
            "transcript": self.transcript,
            "response": self.response_text,
            "button": self.button_label(),
            "button_disabled": self.button_disabled,
            "playback": self._queue.state.value,
            "recording": self.is_recording,
            "streaming": bool(self._session and self._session.active),
        }

    def _emit(self, msg: dict):
        if self._on_event is None:
            return
        try:
            self._on_event(msg)
        except Exception:
            log.exception("Error in assistant event handler")

    def _emit_state(self):
        self._emit({"type": "state", **self.snapshot()})

    def _set_response(self, text: str):
        self.response_text = text
        self._emit({"type": "response", "text": text})

    def _on_transcript(self, text: str):
        self._emit({"type": "transcript", "text": text})

    def _on_playback_state(self, _state: PlaybackState):
        self._emit_state()

    # --- user actions ---

    async def press_button(self):
        """Main button, dispatched on (speaking, recording)."""
        if self.is_speaking:
            self.stop_answer()
        elif self._busy:
            return
        elif self.is_recording:
            await self.finish_recording()
        else:
            self.start_recording()

    def toggle_pause(self):
        self._queue.toggle_pause()

    def stop_answer(self):
        """Stop speaking and abandon the stream.  Not an error."""
        self._queue.cancel_all()
        self._cancel_session()
        self._emit_state()

    def start_recording(self):
        self._busy = True
        self._cancel_session()
        self._queue.cancel_all()
        self._queue.enqueue(Utterance(config.RECORDING_CUE, self._cue_rate))
        try:
            self._capture.start_capture()
        finally:
            self._busy = False
            self._emit_state()

    async def finish_recording(self) -> StreamSession | None:
        """End the take and send it.  Returns the new session, if any."""
        self._busy = True
        self._emit_state()
        session = None
        try:
            try:
                transcript = await self._capture.stop_capture()
            except Exception as exc:
                log.exception("Final transcription failed")
                self._set_response(config.ERROR_MESSAGE_PREFIX + str(exc))
                return None
            prompt = transcript.strip()

            if not prompt:
                log.info("Empty transcript -- nothing to ask")
                self._set_response(config.EMPTY_PROMPT_MESSAGE)
                return None

            self._set_response("")
            session = self.ask(prompt)
            # The stream task has not run yet, so the cue goes out first
            self._queue.enqueue(Utterance(config.WAITING_CUE, self._cue_rate))
            return session
        finally:
            if session is None:
                self._busy = False
                self._emit_state()

    def ask(self, prompt: str) -> StreamSession:
        """Open a new StreamSession for ``prompt``.

        Any previous session is cancelled and its pending speech dropped.
        """
        self._cancel_session()
        self._queue.cancel_all()
        self._busy = True
        task = asyncio.create_task(self._stream_answer(prompt), name="answer-stream")
        self._session = StreamSession(prompt, task)
        self._emit_state()
        return self._session

    def _cancel_session(self):
        if self._session is not None:
            self._session.cancel()
            self._session = None

    # --- streaming ---

    def _deliver(self, sentence: str):
        self._set_response(self.response_text + sentence)
        spoken = self._speak_transform(sentence)
        if spoken.strip():
            self._queue.enqueue(Utterance(spoken, self._answer_rate))

    async def _stream_answer(self, prompt: str):
        buffer = SentenceBuffer()
        stream = self._client.stream(prompt)
        try:
            async for fragment in stream:
                for sentence in buffer.extract(fragment):
                    self._deliver(sentence)

            remainder = buffer.flush()
            if remainder:
                self._deliver(remainder)
        except StreamError as exc:
            log.warning("Answer stream failed: %s", exc)
            # Keep what already arrived, including an unterminated tail
            remainder = buffer.flush()
            if remainder:
                self._deliver(remainder)
            message = config.ERROR_MESSAGE_PREFIX + str(exc)
            if self.response_text:
                message = self.response_text + "\n" + message
            self._set_response(message)
        except asyncio.CancelledError:
            log.info("Answer stream cancelled")
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            if self._session is None or self._session.task is asyncio.current_task():
                self._busy = False
                self._emit_state()
