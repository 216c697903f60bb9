"""Error taxonomy for the voice Q&A pipeline."""


class VoiceQAError(Exception):
    """Base class for all voiceqa errors."""


class ConfigurationError(VoiceQAError):
    """Required configuration is missing or invalid. Fatal at startup."""


class StreamError(VoiceQAError):
    """A completion stream ended abnormally."""


class TransportError(StreamError):
    """Bad URL, connection failure, HTTP error status or read timeout."""


class DecodeError(StreamError):
    """A streamed chunk could not be decoded."""
