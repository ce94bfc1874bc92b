"""Testing aids and scripted implementations for the coordinator."""
from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator, Iterable, List, Optional, Tuple

from .interfaces import (
    InferenceChunk,
    InferenceInterface,
    Prompt,
    SpeechEvent,
    SpeechEventKind,
    SpeechObserver,
    SynthesizerInterface,
)


class ScriptedInference(InferenceInterface):
    """Inference engine replaying pre-defined text pieces as cumulative output."""

    def __init__(
        self,
        pieces: Iterable[str],
        delay: float = 0.0,
        tokens_per_second: Optional[float] = None,
    ) -> None:
        self._pieces = list(pieces)
        self.delay = delay
        self.tokens_per_second = tokens_per_second
        self.prompts: List[Prompt] = []
        self.stop_requests: List[Optional[List[str]]] = []
        self.closed = 0

    async def stream(
        self,
        prompt: Prompt,
        *,
        stop: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[InferenceChunk]:
        self.prompts.append(prompt)
        self.stop_requests.append(stop)
        text = ""
        try:
            for piece in self._pieces:
                if self.delay:
                    await asyncio.sleep(self.delay)
                else:
                    await asyncio.sleep(0)
                text += piece
                yield {"text": text, "is_final": False}
            final: InferenceChunk = {"text": text, "is_final": True, "tokens": len(self._pieces)}
            if self.tokens_per_second is not None:
                final["tokens_per_second"] = self.tokens_per_second
            yield final
        finally:
            self.closed += 1


class FailingInference(ScriptedInference):
    """Inference engine that raises after replaying its pieces."""

    def __init__(self, pieces: Iterable[str], error: Exception) -> None:
        super().__init__(pieces)
        self.error = error

    async def stream(
        self,
        prompt: Prompt,
        *,
        stop: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[InferenceChunk]:
        text = ""
        for piece in self._pieces:
            await asyncio.sleep(0)
            text += piece
            yield {"text": text, "is_final": False}
        raise self.error


class ScriptedSynthesizer(SynthesizerInterface):
    """Synthesizer that pretends to speak each utterance for ``duration`` seconds.

    With ``auto_finish=False`` utterances only end when :meth:`finish` is
    called, which lets tests hold the queue in the speaking state.
    """

    def __init__(
        self,
        duration: float = 0.0,
        *,
        auto_finish: bool = True,
        fail_on: Iterable[str] = (),
        raise_on: Iterable[str] = (),
    ) -> None:
        self.duration = duration
        self.auto_finish = auto_finish
        self.fail_on = set(fail_on)
        self.raise_on = set(raise_on)
        self.requested: List[str] = []
        self.completed: List[str] = []
        self.stopped: List[str] = []
        self.stop_calls = 0
        self._observer: Optional[SpeechObserver] = None
        self._current: Optional[Tuple[int, str]] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    def set_observer(self, observer: Optional[SpeechObserver]) -> None:
        self._observer = observer

    @property
    def current(self) -> Optional[str]:
        return self._current[1] if self._current else None

    def speak(self, text: str, utterance_id: int) -> None:
        if text in self.raise_on:
            raise RuntimeError(f"cannot speak {text!r}")
        self.requested.append(text)
        self._current = (utterance_id, text)
        loop = asyncio.get_running_loop()
        loop.call_soon(self._emit, SpeechEventKind.STARTED, utterance_id, text)
        if self.auto_finish:
            self._handle = loop.call_later(self.duration, self.finish)

    def finish(self, error: Optional[BaseException] = None) -> None:
        """Complete the current utterance, reporting word boundaries first."""

        if self._current is None:
            return
        utterance_id, text = self._current
        self._current = None
        for match in re.finditer(r"\S+", text):
            self._emit(SpeechEventKind.WORD_BOUNDARY, utterance_id, text, match.start(), match.end())
        if error is None and text in self.fail_on:
            error = RuntimeError(f"playback failed for {text!r}")
        if error is None:
            self.completed.append(text)
        self._emit(SpeechEventKind.FINISHED, utterance_id, text, error=error)

    def stop_immediately(self) -> None:
        self.stop_calls += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._current is None:
            return
        utterance_id, text = self._current
        self._current = None
        self.stopped.append(text)
        # Real engines report the interrupted utterance as finished, later.
        asyncio.get_running_loop().call_soon(
            self._emit, SpeechEventKind.FINISHED, utterance_id, text
        )

    def _emit(
        self,
        kind: SpeechEventKind,
        utterance_id: int,
        text: str,
        start: int = 0,
        end: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        if self._observer is not None:
            self._observer(
                SpeechEvent(kind=kind, utterance_id=utterance_id, text=text, start=start, end=end, error=error)
            )
