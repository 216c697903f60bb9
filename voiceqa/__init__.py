"""Voice question/answer client: speak a question, hear the streamed answer."""

__version__ = "0.1.0"
