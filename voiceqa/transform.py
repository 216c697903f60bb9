"""Text rewrites applied to answer sentences before they are spoken.

The displayed text is never touched; only the copy handed to the TTS
engine goes through prepare_for_speech().
"""

import re
from functools import lru_cache

# Literal (find, replace) pairs, applied once each, in order.
SUBSTITUTIONS: tuple[tuple[str, str], ...] = (
    (" piuttosto che ", " anziché "),
    (" il che ", " che "),
    ("crucial", "important"),
    ("In sintesi, ", "Quindi, per concludere, "),
)

# A spoken pause (comma) goes before each of these when missing.
COMMA_WORDS: tuple[str, ...] = ("e", "ed", "o", "od", "sia", "che", "con", "per", "tra", "fra")


@lru_cache(maxsize=32)
def _comma_patterns(words: tuple[str, ...]) -> tuple[tuple[re.Pattern, str], ...]:
    return tuple(
        (re.compile(r"(?<![,\s])\s+(" + re.escape(word) + r")\b"), word)
        for word in words
    )


def replace_phrases(text: str, substitutions=SUBSTITUTIONS) -> str:
    for find, replace in substitutions:
        text = text.replace(find, replace)
    return text


def add_commas(text: str, words=COMMA_WORDS) -> str:
    """Insert ", " before each listed word that follows whitespace but no comma.

    Words are processed in the given order, each pass working on the output
    of the previous one.
    """
    for pattern, _word in _comma_patterns(tuple(words)):
        text = pattern.sub(r", \1", text)
    return text


def prepare_for_speech(text: str) -> str:
    """Apply phrase substitutions, then comma insertion, with the default tables."""
    return add_commas(replace_phrases(text))


class TextTransformer:
    """prepare_for_speech() bound to a custom substitution table and word list."""

    def __init__(self, substitutions=SUBSTITUTIONS, words=COMMA_WORDS):
        self._substitutions = tuple(substitutions)
        self._words = tuple(words)
        _comma_patterns(self._words)

    def __call__(self, text: str) -> str:
        return add_commas(replace_phrases(text, self._substitutions), self._words)
