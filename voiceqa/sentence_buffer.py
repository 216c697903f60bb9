"""Buffer that accumulates streamed text fragments and yields complete sentences.

Used for progressive TTS: each sentence is shown and spoken as soon as its
terminator arrives instead of waiting for the full completion.
"""

SENTENCE_TERMINATORS = "."


class SentenceBuffer:
    """Accumulate fragments, cut complete sentences on terminator boundaries.

    Sentences are returned verbatim, terminator included, so that joining
    every extracted sentence with the final flush() reproduces the input.
    """

    def __init__(self, terminators: str = SENTENCE_TERMINATORS):
        if not terminators:
            raise ValueError("at least one terminator is required")
        self._terminators = terminators
        self._pending = ""

    @property
    def pending(self) -> str:
        """Text received but not yet part of a complete sentence."""
        return self._pending

    def extract(self, fragment: str) -> list[str]:
        """Append a fragment. Returns the sentences it completed, in order."""
        if not fragment:
            return []
        self._pending += fragment

        sentences = []
        while True:
            end = self._find_terminator()
            if end < 0:
                break
            sentences.append(self._pending[:end + 1])
            self._pending = self._pending[end + 1:]
        return sentences

    def _find_terminator(self) -> int:
        positions = [self._pending.find(t) for t in self._terminators]
        found = [p for p in positions if p >= 0]
        return min(found) if found else -1

    def flush(self) -> str:
        """Return the unterminated remainder and empty the buffer."""
        remainder = self._pending
        self._pending = ""
        return remainder

    def clear(self):
        """Discard all buffered text."""
        self._pending = ""
