"""Push-to-talk speech capture: PyAudio mic + sherpa-onnx offline recognizer.

Audio is accumulated while capture is on.  Every STT_PARTIAL_INTERVAL
seconds the whole take is re-transcribed so the live transcript grows on
screen; stop_capture() runs the final pass and returns the transcript.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

import numpy as np

from . import config

log = logging.getLogger(__name__)

SENSEVOICE_MODEL_DIR = "sherpa-onnx-sense-voice-zh-en-ja-ko-yue-2024-07-17"
WHISPER_MODEL_DIR = "sherpa-onnx-whisper-small"


class SpeechCapture:
    """Microphone capture with live re-transcription via sherpa-onnx."""

    def __init__(self):
        self._recognizer = None
        self._audio_stream = None
        self._pyaudio = None
        self._device_idx = None
        self._chunks: list[np.ndarray] = []
        self._transcript = ""
        self._capture_task: asyncio.Task | None = None
        self._capturing = False
        self.on_transcript: Callable[[str], None] | None = None

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def current_transcript(self) -> str:
        return self._transcript

    def _find_device_by_name(self, name: str):
        """Find PyAudio input device index by name substring."""
        for i in range(self._pyaudio.get_device_count()):
            info = self._pyaudio.get_device_info_by_index(i)
            if info["maxInputChannels"] > 0 and name in info["name"]:
                log.info("Auto-detected audio input: index=%d name='%s'", i, info["name"])
                return i
        log.warning("Audio device '%s' not found, falling back to default", name)
        return None

    def init(self):
        import sherpa_onnx

        model_dir = Path(config.STT_MODEL_DIR)
        if config.STT_ENGINE == "sensevoice":
            self._recognizer = self._load_sensevoice(sherpa_onnx, model_dir / SENSEVOICE_MODEL_DIR)
        else:
            self._recognizer = self._load_whisper(sherpa_onnx, model_dir / WHISPER_MODEL_DIR)

        import pyaudio

        self._pyaudio = pyaudio.PyAudio()
        self._device_idx = config.AUDIO_DEVICE_INDEX
        if self._device_idx is None and config.AUDIO_INPUT_DEVICE_NAME:
            self._device_idx = self._find_device_by_name(config.AUDIO_INPUT_DEVICE_NAME)
        log.info(
            "Speech capture ready (engine=%s, language=%s, device=%s)",
            config.STT_ENGINE, config.STT_LANGUAGE,
            self._device_idx if self._device_idx is not None else "default",
        )

    @staticmethod
    def _load_sensevoice(sherpa_onnx, model_dir: Path):
        model_path = model_dir / "model.int8.onnx"
        if not model_path.exists():
            model_path = model_dir / "model.onnx"
        if not model_path.exists():
            raise RuntimeError("SenseVoice model not found. Expected at %s/" % model_dir)
        log.info("Loading SenseVoice: %s", model_path)
        return sherpa_onnx.OfflineRecognizer.from_sense_voice(
            model=str(model_path),
            tokens=str(model_dir / "tokens.txt"),
            use_itn=True,
            num_threads=config.STT_NUM_THREADS,
            language=config.STT_LANGUAGE,
        )

    @staticmethod
    def _load_whisper(sherpa_onnx, model_dir: Path):
        encoder = next(iter(sorted(model_dir.glob("*encoder*.onnx"))), None)
        decoder = next(iter(sorted(model_dir.glob("*decoder*.onnx"))), None)
        tokens = next(iter(sorted(model_dir.glob("*tokens.txt"))), None)
        if encoder is None or decoder is None or tokens is None:
            raise RuntimeError("Whisper model not found. Expected encoder/decoder/tokens in %s/" % model_dir)
        log.info("Loading Whisper: %s", encoder.parent)
        return sherpa_onnx.OfflineRecognizer.from_whisper(
            encoder=str(encoder),
            decoder=str(decoder),
            tokens=str(tokens),
            language=config.STT_LANGUAGE,
            task="transcribe",
            num_threads=config.STT_NUM_THREADS,
        )

    def _transcribe(self, audio: np.ndarray) -> str:
        """Transcribe float32 audio via sherpa-onnx."""
        stream = self._recognizer.create_stream()
        stream.accept_waveform(config.AUDIO_SAMPLE_RATE, audio)
        self._recognizer.decode_stream(stream)
        text = stream.result.text
        # SenseVoice prefixes output with language/emotion tags --strip them
        if "<|" in text:
            parts = text.split("|>")
            text = parts[-1] if parts else text
        return text.strip()

    def _set_transcript(self, text: str):
        if text == self._transcript:
            return
        self._transcript = text
        if self.on_transcript:
            try:
                self.on_transcript(text)
            except Exception:
                log.exception("Error in transcript callback")

    def start_capture(self):
        """Open the microphone and start recording.  Ignored if already recording."""
        if self._capturing:
            log.warning("Capture already running")
            return
        import pyaudio

        self._chunks = []
        self._set_transcript("")
        self._audio_stream = self._pyaudio.open(
            format=pyaudio.paInt16,
            channels=config.AUDIO_CHANNELS,
            rate=config.AUDIO_SAMPLE_RATE,
            input=True,
            input_device_index=self._device_idx,
            frames_per_buffer=config.AUDIO_FRAMES_PER_BUFFER,
        )
        self._capturing = True
        self._capture_task = asyncio.create_task(self._capture_loop())
        log.info("Recording started")

    async def stop_capture(self) -> str:
        """Stop recording, run the final transcription and return it."""
        if not self._capturing:
            return self._transcript
        self._capturing = False
        if self._capture_task:
            try:
                await self._capture_task
            except Exception:
                log.exception("Capture loop failed")
            self._capture_task = None
        if self._audio_stream:
            self._audio_stream.stop_stream()
            self._audio_stream.close()
            self._audio_stream = None

        if self._chunks:
            audio = np.concatenate(self._chunks)
            loop = asyncio.get_running_loop()
            t0 = time.monotonic()
            text = await loop.run_in_executor(None, self._transcribe, audio)
            log.info(
                "STT (%.2fs, %.1fs audio): %s",
                time.monotonic() - t0, len(audio) / config.AUDIO_SAMPLE_RATE, text,
            )
            self._set_transcript(text)
        log.info("Recording stopped")
        return self._transcript

    async def _capture_loop(self):
        loop = asyncio.get_running_loop()
        read_size = config.AUDIO_FRAMES_PER_BUFFER
        last_partial = time.monotonic()
        partial: asyncio.Future | None = None

        while self._capturing:
            raw = await loop.run_in_executor(None, self._audio_stream.read, read_size, False)
            samples = np.frombuffer(raw, dtype=np.int16).astype(np.float32) / 32768.0
            if config.AUDIO_CHANNELS > 1:
                samples = samples.reshape(-1, config.AUDIO_CHANNELS).mean(axis=1)
            self._chunks.append(samples)

            if partial is not None and partial.done():
                try:
                    self._set_transcript(partial.result())
                except Exception:
                    log.exception("Partial transcription failed")
                partial = None
            if partial is None and time.monotonic() - last_partial >= config.STT_PARTIAL_INTERVAL:
                last_partial = time.monotonic()
                partial = loop.run_in_executor(None, self._transcribe, np.concatenate(self._chunks))

        if partial is not None:
            # The final pass in stop_capture() supersedes it
            try:
                await partial
            except Exception:
                log.exception("Partial transcription failed")

    def release(self):
        self._capturing = False
        if self._audio_stream:
            self._audio_stream.stop_stream()
            self._audio_stream.close()
            self._audio_stream = None
        if self._pyaudio:
            self._pyaudio.terminate()
            self._pyaudio = None
