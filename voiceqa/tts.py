"""Offline TTS speech sink -- Piper, Kokoro, or Matcha-TTS synthesis played via aplay.

Engine selected via config.TTS_ENGINE ("piper", "kokoro", or "matcha").
speak() returns immediately; synthesis and playback run on a worker thread
which reports ``on_finished(utterance)`` once the clip and the
post-utterance pause are over.  pause()/resume() freeze and thaw the aplay
process; stop_immediately() kills it and suppresses the finish report.
"""

import io
import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
import wave
from typing import Callable

import numpy as np

from . import config
from .utterance_queue import Utterance

log = logging.getLogger(__name__)

# Rates most I2S/USB codecs accept; 22050 is often NOT supported.
_SUPPORTED_RATES = frozenset({8000, 16000, 24000, 32000, 44100, 48000, 96000})


def _detect_output_device() -> str:
    """Auto-detect best ALSA output device. Prefer USB, then the default card."""
    try:
        out = subprocess.check_output(["aplay", "-l"], stderr=subprocess.DEVNULL, text=True)
    except (OSError, subprocess.CalledProcessError):
        return "default"

    for line in out.splitlines():
        if line.startswith("card ") and "usb" in line.lower():
            card_num = line.split(":")[0].replace("card ", "").strip()
            device = "plughw:%s,0" % card_num
            log.info("Auto-detected audio output: %s (USB)", device)
            return device
    log.info("No USB output device found, using default")
    return "default"


def to_pcm16_stereo(samples: np.ndarray, rate: int, volume: float) -> tuple[np.ndarray, int]:
    """Scale float32 samples by volume, resample to a supported rate, duplicate to stereo."""
    scaled = np.clip(samples * max(0.0, min(1.0, volume)), -1.0, 1.0)
    pcm16 = (scaled * 32767).astype(np.int16)

    # Resample if hardware doesn't support this rate
    if rate not in _SUPPORTED_RATES:
        target_rate = min((r for r in _SUPPORTED_RATES if r >= rate), default=48000)
        n_in = len(pcm16)
        n_out = int(n_in * target_rate / rate)
        x_old = np.arange(n_in, dtype=np.float64)
        x_new = np.linspace(0, n_in - 1, n_out)
        pcm16 = np.interp(x_new, x_old, pcm16.astype(np.float64)).astype(np.int16)
        rate = target_rate

    return np.column_stack([pcm16, pcm16]).flatten(), rate


class TTSEngine:
    """Speech sink with Piper, Kokoro, and Matcha-TTS backends."""

    def __init__(self, backend: str | None = None):
        self._engine = None
        self._backend = backend or config.TTS_ENGINE
        self._sample_rate = 16000
        self._output_device = "default"
        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None
        self._paused = False
        self._generation = 0
        self._stopped = threading.Event()
        self.is_speaking = threading.Event()
        self.on_finished: Callable[[Utterance], None] | None = None

    def init(self):
        self._output_device = config.AUDIO_OUTPUT_DEVICE or _detect_output_device()
        if self._backend == "piper":
            self._init_piper()
        elif self._backend == "matcha":
            self._init_matcha()
        else:
            self._init_kokoro()

    def _init_piper(self):
        from piper import PiperVoice

        if not config.PIPER_MODEL_PATH.exists():
            raise RuntimeError("Piper model not found at %s" % config.PIPER_MODEL_PATH)

        self._engine = PiperVoice.load(
            str(config.PIPER_MODEL_PATH),
            config_path=str(config.PIPER_CONFIG_PATH),
        )
        self._sample_rate = self._engine.config.sample_rate
        log.info("TTS ready (Piper %s, rate=%d)", config.PIPER_MODEL_PATH.stem, self._sample_rate)

    def _init_kokoro(self):
        from kokoro_onnx import Kokoro

        if not config.KOKORO_MODEL_PATH.exists():
            raise RuntimeError("Kokoro model not found at %s" % config.KOKORO_MODEL_PATH)
        if not config.KOKORO_VOICES_PATH.exists():
            raise RuntimeError("Kokoro voices not found at %s" % config.KOKORO_VOICES_PATH)

        self._engine = Kokoro(str(config.KOKORO_MODEL_PATH), str(config.KOKORO_VOICES_PATH))
        self._sample_rate = 24000
        log.info(
            "TTS ready (Kokoro-82M int8, voice=%s, rate=%d)",
            config.KOKORO_VOICE, self._sample_rate,
        )

    def _init_matcha(self):
        import sherpa_onnx

        model_dir = config.MATCHA_MODEL_DIR
        acoustic = model_dir / config.MATCHA_ACOUSTIC_MODEL
        vocoder = model_dir / config.MATCHA_VOCODER
        tokens = model_dir / config.MATCHA_TOKENS
        data_dir = model_dir / config.MATCHA_DATA_DIR
        for path in (acoustic, vocoder, tokens):
            if not path.exists():
                raise RuntimeError("Matcha file not found at %s" % path)
        if not data_dir.is_dir():
            raise RuntimeError("Matcha espeak-ng-data not found at %s" % data_dir)

        matcha_config = sherpa_onnx.OfflineTtsConfig(
            model=sherpa_onnx.OfflineTtsModelConfig(
                matcha=sherpa_onnx.OfflineTtsMatchaModelConfig(
                    acoustic_model=str(acoustic),
                    vocoder=str(vocoder),
                    tokens=str(tokens),
                    data_dir=str(data_dir),
                    noise_scale=config.MATCHA_NOISE_SCALE,
                ),
                num_threads=config.MATCHA_NUM_THREADS,
                provider="cpu",
            ),
            max_num_sentences=1,
        )
        self._engine = sherpa_onnx.OfflineTts(matcha_config)
        self._sample_rate = self._engine.sample_rate
        log.info(
            "TTS ready (Matcha-TTS + Vocos, rate=%d, threads=%d)",
            self._sample_rate, config.MATCHA_NUM_THREADS,
        )

    # --- SpeechSink ---

    def speak(self, utterance: Utterance) -> None:
        """Start synthesizing and playing ``utterance`` on a worker thread."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._stopped.clear()
        threading.Thread(
            target=self._run_utterance,
            args=(generation, utterance),
            name="tts-utterance",
            daemon=True,
        ).start()

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            if self._proc is not None and self._proc.poll() is None:
                self._proc.send_signal(signal.SIGSTOP)
        log.info("TTS paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            if self._proc is not None and self._proc.poll() is None:
                self._proc.send_signal(signal.SIGCONT)
        log.info("TTS resumed")

    def stop_immediately(self) -> None:
        with self._lock:
            self._generation += 1
            self._paused = False
            self._stopped.set()
            proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.kill()
        self.is_speaking.clear()

    # --- worker ---

    def _current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _run_utterance(self, generation: int, utterance: Utterance) -> None:
        if self._engine is None:
            log.warning("TTS not initialized, skipping: %s", utterance.text[:50])
        else:
            t0 = time.monotonic()
            try:
                samples = self._synthesize(utterance.text, utterance.rate)
                log.info("TTS synth: %.2fs for '%s'", time.monotonic() - t0, utterance.text[:50])
                if samples is not None and len(samples) and self._current(generation):
                    self._write_and_play(samples, generation)
            except Exception:
                log.exception("TTS failed for: %s", utterance.text[:50])

        if not self._current(generation):
            return
        if config.TTS_POST_UTTERANCE_DELAY > 0:
            self._stopped.wait(config.TTS_POST_UTTERANCE_DELAY)
            # Paused during the trailing gap: hold the finish until resumed
            while self._paused and not self._stopped.is_set():
                self._stopped.wait(0.1)
        if self._current(generation) and self.on_finished is not None:
            self.on_finished(utterance)

    def _synthesize(self, text: str, rate: float) -> np.ndarray | None:
        speed = rate if rate > 0 else 1.0
        if self._backend == "piper":
            return self._synthesize_piper(text, speed)
        if self._backend == "matcha":
            audio = self._engine.generate(text, sid=0, speed=speed)
            return np.array(audio.samples, dtype=np.float32)
        samples, _sr = self._engine.create(
            text, voice=config.KOKORO_VOICE, speed=speed, lang=config.KOKORO_LANG,
        )
        return samples

    def _synthesize_piper(self, text: str, speed: float) -> np.ndarray:
        from piper import SynthesisConfig

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            self._engine.synthesize_wav(text, wf, syn_config=SynthesisConfig(length_scale=1.0 / speed))
        buf.seek(0)
        with wave.open(buf, "rb") as wf:
            self._sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
        return np.frombuffer(frames, dtype=np.int16).astype(np.float32) / 32768.0

    def _write_and_play(self, samples: np.ndarray, generation: int) -> None:
        stereo, rate = to_pcm16_stereo(samples, self._sample_rate, config.TTS_VOLUME)

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(suffix=".wav")
            os.close(fd)
            with wave.open(tmp_path, "wb") as wf:
                wf.setnchannels(2)
                wf.setsampwidth(2)
                wf.setframerate(rate)
                wf.writeframes(stereo.tobytes())
            self._play_wav(tmp_path, generation)
        finally:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

    def _play_wav(self, path: str, generation: int) -> None:
        """Play a WAV file via aplay, managing is_speaking flag.

        Nothing is heard if ``generation`` was superseded while the clip
        was being prepared.
        """
        try:
            proc = subprocess.Popen(
                ["aplay", "-q", "-D", self._output_device, path],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            log.error("aplay not found -- install alsa-utils")
            return
        with self._lock:
            current = generation == self._generation
            if current:
                self._proc = proc
                if self._paused:
                    proc.send_signal(signal.SIGSTOP)
        if not current:
            proc.kill()
            proc.wait()
            if proc.stderr:
                proc.stderr.close()
            log.debug("Dropped stale clip %s", path)
            return
        self.is_speaking.set()
        try:
            # Wall-clock timeout would fire during a long pause; poll instead
            deadline = time.monotonic() + config.TTS_APLAY_TIMEOUT
            while proc.poll() is None:
                if self._paused:
                    deadline += 0.1
                elif time.monotonic() > deadline:
                    log.warning("aplay timed out, killing")
                    proc.kill()
                    break
                time.sleep(0.1)
            proc.wait()
            stderr = proc.stderr.read() if proc.stderr else b""
            if proc.returncode not in (0, -signal.SIGKILL) and stderr:
                log.warning("aplay error: %s", stderr.decode(errors="replace").strip()[:200])
        finally:
            if proc.stderr:
                proc.stderr.close()
            with self._lock:
                if self._proc is proc:
                    self._proc = None
            self.is_speaking.clear()

    def release(self):
        self.stop_immediately()
        self._engine = None
