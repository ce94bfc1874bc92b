"""Sequential playback of sentences through a single synthesis engine."""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from .interfaces import SpeechEvent, SpeechEventKind, SynthesizerInterface

logger = logging.getLogger(__name__)


class SpeechQueue:
    """FIFO of sentences spoken one after another.

    The queue is the only component that talks to the synthesizer. Each
    utterance handed to the engine gets a fresh token; engine events carrying
    any other token are stale and ignored, so an utterance stopped by
    :meth:`cancel_all` can never advance the queue afterwards.

    ``on_finished`` fires whenever the queue becomes idle: after the last
    sentence finishes and on every :meth:`cancel_all`.
    """

    def __init__(
        self,
        synthesizer: SynthesizerInterface,
        *,
        on_started: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[], None]] = None,
        on_word: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._synthesizer = synthesizer
        self.on_started = on_started
        self.on_finished = on_finished
        self.on_word = on_word
        self._pending: Deque[str] = deque()
        self._tokens = itertools.count(1)
        self._current_id: Optional[int] = None
        self._processing = False
        self._current_sentence = ""
        self._current_word = ""
        self._is_speaking = False
        self._idle = asyncio.Event()
        self._idle.set()
        synthesizer.set_observer(self.handle_event)

    # --- observable state ---------------------------------------------
    @property
    def current_sentence(self) -> str:
        return self._current_sentence

    @property
    def current_word(self) -> str:
        return self._current_word

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @property
    def is_idle(self) -> bool:
        return not self._processing

    @property
    def pending(self) -> Tuple[str, ...]:
        return tuple(self._pending)

    # --- control ------------------------------------------------------
    def enqueue(self, sentence: str) -> None:
        """Append *sentence* and start playback if nothing is playing."""

        self._pending.append(sentence)
        if self._processing:
            return
        self._processing = True
        self._idle.clear()
        self._speak_next()

    def cancel_all(self) -> None:
        """Drop queued sentences, cut off playback and report the queue finished."""

        dropped = len(self._pending)
        self._pending.clear()
        self._current_id = None
        self._synthesizer.stop_immediately()
        logger.debug("Speech cancelled (%d queued sentences dropped)", dropped)
        self._finish()

    async def drained(self) -> None:
        """Wait until nothing is queued or playing."""

        await self._idle.wait()

    def handle_event(self, event: SpeechEvent) -> None:
        """Observer for synthesizer events; must run on the event loop."""

        if event.utterance_id != self._current_id:
            logger.debug("Ignoring stale %s for utterance %d", event.kind.value, event.utterance_id)
            return

        if event.kind is SpeechEventKind.STARTED:
            self._is_speaking = True
        elif event.kind is SpeechEventKind.WORD_BOUNDARY:
            self._current_word = self._current_sentence[event.start : event.end]
            if self.on_word is not None:
                self.on_word(self._current_word)
        elif event.kind is SpeechEventKind.FINISHED:
            if event.error is not None:
                logger.warning("Utterance %d failed: %s", event.utterance_id, event.error)
            self._current_id = None
            self._speak_next()

    # ------------------------------------------------------------------
    def _speak_next(self) -> None:
        while self._pending:
            sentence = self._pending.popleft()
            utterance_id = next(self._tokens)
            self._current_id = utterance_id
            self._current_sentence = sentence
            self._current_word = ""
            self._is_speaking = True
            logger.info("Speaking: %s", sentence)
            if self.on_started is not None:
                self.on_started(sentence)
                if self._current_id != utterance_id:
                    # Cancelled from inside the callback.
                    return
            try:
                self._synthesizer.speak(sentence, utterance_id)
            except Exception:
                # A broken utterance counts as finished so the queue keeps moving.
                logger.exception("Speech engine rejected utterance %d", utterance_id)
                continue
            return
        self._finish()

    def _finish(self) -> None:
        self._current_id = None
        self._processing = False
        self._is_speaking = False
        self._current_sentence = ""
        self._current_word = ""
        self._idle.set()
        if self.on_finished is not None:
            self.on_finished()
