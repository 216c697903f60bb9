"""voiceqa -- main entry point.

Wires speech capture, the streaming completion client and the TTS sink
into one VoiceAssistant, then drives it from the keyboard (and the local
dashboard when enabled):

  Enter  main button (Registra / Fine e invia / Ferma lettura)
  p      pause / resume speech
  q      quit
"""

import asyncio
import logging
import signal
import sys

from . import config
from .assistant import VoiceAssistant
from .completion_client import CompletionClient
from .errors import ConfigurationError
from .utterance_queue import UtteranceQueue

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voiceqa")


class ConsoleDisplay:
    """Prints the transcript and the growing answer to stdout."""

    def __init__(self, out=None):
        self._out = out if out is not None else sys.stdout
        self._shown = ""
        self._label = ""

    def __call__(self, msg: dict):
        kind = msg.get("type")
        if kind == "transcript":
            if msg["text"]:
                self._write("\r> %s" % msg["text"])
        elif kind == "response":
            self._show_response(msg["text"])
        elif kind == "state":
            if msg["button"] != self._label:
                self._label = msg["button"]
                self._write("\n[%s]\n" % self._label)

    def _show_response(self, text: str):
        if text.startswith(self._shown):
            self._write(text[len(self._shown):])
        else:
            self._write("\n" + text)
        self._shown = text

    def _write(self, text: str):
        self._out.write(text)
        self._out.flush()


async def _keyboard_loop(assistant: VoiceAssistant, stop: asyncio.Event):
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    loop.add_reader(sys.stdin.fileno(), lambda: lines.put_nowait(sys.stdin.readline()))
    try:
        while not stop.is_set():
            line = await lines.get()
            if not line:
                break
            key = line.strip().lower()
            if key == "q":
                break
            try:
                if key == "p":
                    assistant.toggle_pause()
                else:
                    await assistant.press_button()
            except Exception:
                log.exception("Error handling key %r", key)
    finally:
        loop.remove_reader(sys.stdin.fileno())
        stop.set()


async def main():
    try:
        api_key = config.load_api_key()
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)
        sys.exit(1)

    log.info("voiceqa starting -- model=%s endpoint=%s", config.COMPLETION_MODEL, config.COMPLETION_URL)

    from .speech import SpeechCapture
    from .tts import TTSEngine

    tts = TTSEngine()
    capture = SpeechCapture()
    try:
        tts.init()
        capture.init()
    except Exception:
        log.exception("Audio init failed")
        capture.release()
        tts.release()
        sys.exit(1)

    client = CompletionClient(api_key)
    await client.start()
    queue = UtteranceQueue(tts)

    dashboard = None
    display = ConsoleDisplay()

    # Fan-out: console + dashboard WS clients
    def on_event(msg: dict):
        display(msg)
        if dashboard:
            dashboard.publish(msg)

    assistant = VoiceAssistant(client, queue, capture, on_event=on_event)

    if config.DASHBOARD_ENABLED:
        from .dashboard import DashboardServer
        dashboard = DashboardServer(assistant)
        try:
            await dashboard.start()
        except OSError:
            log.exception("Dashboard failed to start -- continuing without it")
            dashboard = None

    # Graceful shutdown
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _shutdown():
        log.info("Shutting down...")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown)

    tasks = []
    if config.KEYBOARD_ENABLED:
        print("[%s]  Enter = button, p = pause, q = quit" % assistant.button_label())
        tasks.append(asyncio.create_task(_keyboard_loop(assistant, stop)))

    try:
        await stop.wait()
    finally:
        for t in tasks:
            t.cancel()
        assistant.stop_answer()
        if dashboard:
            await dashboard.stop()
        await client.stop()
        capture.release()
        tts.release()
        log.info("voiceqa stopped")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
