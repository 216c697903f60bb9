from __future__ import annotations

import pytest

from voiceqa.sentence_buffer import SentenceBuffer

ANSWER = (
    "Il modello ISO/OSI ha sette livelli. Il livello di rete instrada i pacchetti."
    " Il livello di trasporto garantisce l'affidabilità. Resto senza punto"
)


def test_extracts_every_sentence_in_one_fragment() -> None:
    buf = SentenceBuffer()

    sentences = buf.extract("Uno. Due. Tre")

    assert sentences == ["Uno.", " Due."]
    assert buf.pending == " Tre"


def test_sentence_spanning_fragments() -> None:
    buf = SentenceBuffer()

    assert buf.extract("Il DHCP ") == []
    assert buf.extract("assegna gli indirizzi") == []
    assert buf.extract(". Poi") == ["Il DHCP assegna gli indirizzi."]
    assert buf.flush() == " Poi"
    assert buf.pending == ""


def test_empty_fragment_is_noop() -> None:
    buf = SentenceBuffer()
    buf.extract("abc")

    assert buf.extract("") == []
    assert buf.pending == "abc"


@pytest.mark.parametrize("size", [1, 2, 7, len(ANSWER)])
def test_any_split_reproduces_input(size: int) -> None:
    buf = SentenceBuffer()
    out: list[str] = []
    for i in range(0, len(ANSWER), size):
        out.extend(buf.extract(ANSWER[i:i + size]))

    assert "".join(out) + buf.flush() == ANSWER
    assert out == SentenceBuffer().extract(ANSWER)


def test_no_complete_sentence_left_after_extract() -> None:
    buf = SentenceBuffer()
    buf.extract("a.b.c.d")

    assert "." not in buf.pending


def test_custom_terminators() -> None:
    buf = SentenceBuffer(terminators=".!?")

    assert buf.extract("Davvero? Sì! Certo.") == ["Davvero?", " Sì!", " Certo."]


def test_clear_discards_pending() -> None:
    buf = SentenceBuffer()
    buf.extract("mezza frase")
    buf.clear()

    assert buf.flush() == ""
