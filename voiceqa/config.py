"""voiceqa configuration -- loaded from environment variables."""

import os
from pathlib import Path

from .errors import ConfigurationError

BASE_DIR = Path(os.getenv("VOICEQA_HOME", str(Path.home() / ".voiceqa")))
MODEL_DIR = Path(os.getenv("VOICEQA_MODEL_DIR", str(BASE_DIR / "models")))

# --- Completion endpoint ---
COMPLETION_URL = os.getenv("COMPLETION_URL", "https://api.openai.com/v1/chat/completions")
COMPLETION_MODEL = os.getenv("COMPLETION_MODEL", "gpt-5-mini")
STREAM_CONNECT_TIMEOUT = float(os.getenv("STREAM_CONNECT_TIMEOUT", "15"))
STREAM_IDLE_TIMEOUT = float(os.getenv("STREAM_IDLE_TIMEOUT", "60"))

SYSTEM_PROMPT = os.getenv(
    "SYSTEM_PROMPT",
    "Questo è un esame orale universitario. Trattandosi di esposizione esclusivamente orale, "
    "la risposta deve essere priva di elementi tipici del solo testo scritto e non adatti "
    "all'esposizione orale, tra cui elenchi numerati o puntati, parole in grassetto, formule "
    "numeriche e calcoli, e così via. Ogni frase deve poter essere usata come breve messaggio "
    "SMS, quindi non deve essere più lunga di 140 caratteri. Usa il più possibile espressioni "
    "italiane: per esempio, invece di \"molti setup server high-performance\", dovresti dire "
    "\"molti sistemi server ad alte prestazioni\". Poiché la domanda viene dettata a voce, "
    "potrebbe contenere errori di trascrizione: per esempio, \"ISODOSI\" può significare "
    "\"ISO/OSI\", oppure \"di H CP\" può significare \"DHCP\"; interpreta parole o acronimi "
    "senza senso attribuendo loro il corretto significato in un contesto informatico.",
)

# --- Speech output (TTS) ---
TTS_ENGINE = os.getenv("TTS_ENGINE", "piper")  # "piper", "kokoro" or "matcha"
TTS_VOLUME = float(os.getenv("TTS_VOLUME", "0.6"))
TTS_POST_UTTERANCE_DELAY = float(os.getenv("TTS_POST_UTTERANCE_DELAY", "2.7"))
TTS_APLAY_TIMEOUT = float(os.getenv("TTS_APLAY_TIMEOUT", "120"))
AUDIO_OUTPUT_DEVICE = os.getenv("AUDIO_OUTPUT_DEVICE", "")

PIPER_MODEL_PATH = Path(os.getenv(
    "PIPER_MODEL_PATH",
    str(MODEL_DIR / "tts" / "piper" / "it_IT-paola-medium.onnx"),
))
PIPER_CONFIG_PATH = Path(os.getenv("PIPER_CONFIG_PATH", str(PIPER_MODEL_PATH) + ".json"))

KOKORO_MODEL_DIR = MODEL_DIR / "tts" / "kokoro"
KOKORO_MODEL_PATH = KOKORO_MODEL_DIR / os.getenv("KOKORO_MODEL_FILE", "kokoro-v1.0.int8.onnx")
KOKORO_VOICES_PATH = KOKORO_MODEL_DIR / os.getenv("KOKORO_VOICES_FILE", "voices-v1.0.bin")
KOKORO_VOICE = os.getenv("KOKORO_VOICE", "if_sara")
KOKORO_LANG = os.getenv("KOKORO_LANG", "it")

MATCHA_MODEL_DIR = Path(os.getenv("MATCHA_MODEL_DIR", str(MODEL_DIR / "tts" / "matcha")))
MATCHA_ACOUSTIC_MODEL = os.getenv("MATCHA_ACOUSTIC_MODEL", "model-steps-3.onnx")
MATCHA_VOCODER = os.getenv("MATCHA_VOCODER", "vocos-22khz-univ.onnx")
MATCHA_TOKENS = os.getenv("MATCHA_TOKENS", "tokens.txt")
MATCHA_DATA_DIR = os.getenv("MATCHA_DATA_DIR", "espeak-ng-data")
MATCHA_NUM_THREADS = int(os.getenv("MATCHA_NUM_THREADS", "2"))
MATCHA_NOISE_SCALE = float(os.getenv("MATCHA_NOISE_SCALE", "0.667"))

# Speed multipliers handed to the TTS engine with each utterance
ANSWER_RATE = float(os.getenv("ANSWER_RATE", "0.9"))
CUE_RATE = float(os.getenv("CUE_RATE", "1.2"))

# --- Speech input (STT) ---
STT_ENGINE = os.getenv("STT_ENGINE", "whisper")  # "whisper" or "sensevoice"
STT_LANGUAGE = os.getenv("STT_LANGUAGE", "it")
STT_MODEL_DIR = Path(os.getenv("STT_MODEL_DIR", str(MODEL_DIR / "stt")))
STT_NUM_THREADS = int(os.getenv("STT_NUM_THREADS", "2"))
STT_PARTIAL_INTERVAL = float(os.getenv("STT_PARTIAL_INTERVAL", "1.5"))
AUDIO_DEVICE_INDEX = os.getenv("AUDIO_DEVICE_INDEX", None)  # None = auto-detect
if AUDIO_DEVICE_INDEX is not None:
    AUDIO_DEVICE_INDEX = int(AUDIO_DEVICE_INDEX)
AUDIO_INPUT_DEVICE_NAME = os.getenv("AUDIO_INPUT_DEVICE_NAME", "")
AUDIO_SAMPLE_RATE = int(os.getenv("AUDIO_SAMPLE_RATE", "16000"))
AUDIO_CHANNELS = int(os.getenv("AUDIO_CHANNELS", "1"))
AUDIO_FRAMES_PER_BUFFER = int(os.getenv("AUDIO_FRAMES_PER_BUFFER", "1600"))

# --- Turn UI strings ---
RECORDING_CUE = os.getenv("RECORDING_CUE", "Registro")
WAITING_CUE = os.getenv("WAITING_CUE", "Attendo")
EMPTY_PROMPT_MESSAGE = os.getenv("EMPTY_PROMPT_MESSAGE", "Nessuna domanda registrata.")
ERROR_MESSAGE_PREFIX = os.getenv("ERROR_MESSAGE_PREFIX", "Errore nella chiamata: ")
LABEL_RECORD = os.getenv("LABEL_RECORD", "Registra")
LABEL_SEND = os.getenv("LABEL_SEND", "Fine e invia")
LABEL_STOP = os.getenv("LABEL_STOP", "Ferma lettura")

# --- Dashboard ---
DASHBOARD_ENABLED = os.getenv("DASHBOARD_ENABLED", "false").lower() in ("true", "1", "yes")
DASHBOARD_PORT = int(os.getenv("DASHBOARD_PORT", "8080"))
DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", "127.0.0.1")

# --- Keyboard control ---
KEYBOARD_ENABLED = os.getenv("KEYBOARD_ENABLED", "true").lower() in ("true", "1", "yes")


def load_api_key() -> str:
    """Return the completion API bearer token, or raise ConfigurationError."""
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ConfigurationError("OPENAI_API_KEY is not set")
    return key
