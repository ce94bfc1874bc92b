"""Incremental sentence segmentation for streamed model output.

The segmenter consumes arbitrary slices of a growing text stream and emits
speakable sentences as soon as a boundary is certain enough, so speech can
start long before the model has finished generating.
"""
from __future__ import annotations

import logging
import string
from typing import Callable, FrozenSet, Iterable, List, Optional

from .errors import SegmenterStateError

logger = logging.getLogger(__name__)

SentenceHandler = Callable[[str], None]

TERMINATORS: FrozenSet[str] = frozenset(".!?")

# Words that never end a sentence when followed by a period.
DEFAULT_ABBREVIATIONS: FrozenSet[str] = frozenset(
    {"st", "mr", "mrs", "dr", "ms", "jr", "sr", "prof"}
)

# Lowercased words (trailing punctuation removed) after which whitespace does
# not start a new sentence.
DEFAULT_PUNCTUATED_WORDS: FrozenSet[str] = frozenset(
    {
        "u.s", "u.s.a", "u.k", "e.g", "i.e", "etc", "ph.d", "a.m", "p.m",
        "b.c", "a.d", "fig", "bros", "dept", "corp", "inc", "co", "vs",
        "gen", "sen", "rev", "hon", "gov", "lt", "cmdr", "approx", "est",
        "alt", "def", "n.b", "p.s", "r.s.v.p", "tel", "temp", "vet", "viz",
    }
)

_CLOSERS = frozenset("\"')]}”’")
_OPENERS = "\"'([{“‘"
_NEWLINES = frozenset("\n\r\u2028\u2029")


class SentenceSegmenter:
    """Character state machine turning streamed text into sentences.

    ``on_sentence`` is called once per emitted sentence, in order. Sentences
    are stripped of surrounding whitespace and blank ones are never emitted.
    """

    def __init__(
        self,
        on_sentence: Optional[SentenceHandler] = None,
        *,
        abbreviations: Optional[Iterable[str]] = None,
        punctuated_words: Optional[Iterable[str]] = None,
    ) -> None:
        self.on_sentence = on_sentence
        self.abbreviations = frozenset(
            word.lower() for word in (abbreviations if abbreviations is not None else DEFAULT_ABBREVIATIONS)
        )
        self.punctuated_words = frozenset(
            word.lower().rstrip(".")
            for word in (punctuated_words if punctuated_words is not None else DEFAULT_PUNCTUATED_WORDS)
        )
        self._buffer: List[str] = []
        self._terminator_pending = False
        self._after_newline = False
        # The sentence already ended at the first terminator of this run.
        self._skip_run = False
        self._emitted: List[str] = []

    @property
    def pending(self) -> str:
        """Text received but not yet emitted."""

        return "".join(self._buffer)

    # ------------------------------------------------------------------
    def ingest(self, chunk: str) -> List[str]:
        """Consume newly available text and emit any completed sentences."""

        self._emitted = []
        for char in chunk:
            self._consume(char)
        if self._terminator_pending and self.pending.strip() and not self._ends_with_punctuated_word():
            # Speak as soon as possible instead of waiting for the next chunk.
            self._close_sentence()
        return self._emitted

    def finalize(self) -> List[str]:
        """Flush the remaining text as a final sentence."""

        self._emitted = []
        self._emit()
        self._terminator_pending = False
        self._after_newline = False
        self._skip_run = False
        return self._emitted

    def clear(self) -> None:
        """Drop all buffered text without emitting it."""

        self._buffer = []
        self._terminator_pending = False
        self._after_newline = False
        self._skip_run = False

    # ------------------------------------------------------------------
    def _consume(self, char: str) -> None:
        if self._after_newline and self._terminator_pending:
            raise SegmenterStateError("newline and terminator cannot both be pending")

        if self._skip_run:
            if char in TERMINATORS or char in _CLOSERS:
                return
            self._skip_run = False

        if char in _NEWLINES:
            self._emit()
            self._after_newline = True
            self._terminator_pending = False
            return

        if self._after_newline:
            # The buffer was emitted at the newline; start the next sentence here.
            self._after_newline = False
            self._buffer = []

        if self._terminator_pending:
            if char.isspace():
                self._terminator_pending = False
                if self._ends_with_punctuated_word():
                    self._buffer.append(char)
                else:
                    self._emit()
                    self._buffer = [char]
                return
            if char in _CLOSERS or char in TERMINATORS:
                if not self._ends_with_punctuated_word():
                    # Same decision an end-of-chunk flush makes at this point.
                    self._close_sentence()
                    return
                if char in _CLOSERS:
                    self._buffer.append(char)
                    return
            else:
                self._terminator_pending = False
                self._buffer.append(char)
                return

        if char in TERMINATORS:
            if self._can_terminate_sentence():
                self._terminator_pending = True
            self._buffer.append(char)
            return

        self._buffer.append(char)

    def _close_sentence(self) -> None:
        self._terminator_pending = False
        self._emit()
        self._skip_run = True

    def _emit(self) -> None:
        sentence = self.pending.strip()
        self._buffer = []
        if not sentence:
            return
        logger.debug("Sentence ready: %r", sentence)
        self._emitted.append(sentence)
        if self.on_sentence is not None:
            self.on_sentence(sentence)

    def _last_word(self) -> Optional[str]:
        words = self.pending.split()
        return words[-1] if words else None

    def _can_terminate_sentence(self) -> bool:
        """Decide whether a terminator arriving now may end the sentence."""

        last_word = self._last_word()
        if last_word is None:
            return False
        word = last_word.lstrip(_OPENERS).lower()
        if word in self.abbreviations:
            return False
        if len(word) == 1:
            return False
        if word and word[-1].isdigit():
            return False
        return True

    def _ends_with_punctuated_word(self) -> bool:
        """True if the buffer ends in an abbreviation or acronym like ``U.S.``."""

        last_word = self._last_word()
        if last_word is None:
            return False
        cleaned = last_word.strip(string.punctuation + "“”‘’").lower()
        if cleaned in self.punctuated_words or cleaned in self.abbreviations:
            return True
        parts = last_word.strip(_OPENERS).rstrip("".join(_CLOSERS)).rstrip(".").split(".")
        return len(parts) > 1 and all(len(part) == 1 and part.isupper() for part in parts)
