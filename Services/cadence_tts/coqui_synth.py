"""Speech synthesis backend built on Coqui TTS with local playback."""
from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
from TTS.api import TTS

from Services.cadence_core.interfaces import (
    SpeechEvent,
    SpeechEventKind,
    SpeechObserver,
    SynthesizerInterface,
)

logger = logging.getLogger(__name__)

OutputFactory = Callable[[int], Any]


def _sounddevice_output(sample_rate: int):
    import sounddevice as sd

    return sd.OutputStream(samplerate=sample_rate, channels=1, dtype="int16")


def _to_pcm16(wav) -> np.ndarray:
    audio = np.asarray(wav, dtype=np.float32)
    if audio.ndim > 1:
        audio = audio.mean(axis=1)
    pcm = np.clip(audio, -1.0, 1.0)
    return (pcm * 32767.0).astype(np.int16)


def word_spans(text: str) -> List[Tuple[int, int]]:
    return [(match.start(), match.end()) for match in re.finditer(r"\S+", text)]


class CoquiSynthesizer(SynthesizerInterface):
    """Speak one utterance at a time through the default output device.

    Audio is synthesised off the event loop, then written in ``frame_ms``
    frames so :meth:`stop_immediately` takes effect within one frame. Coqui
    models do not report word timings, so word boundaries are estimated from
    each word's character offset against playback progress.
    """

    def __init__(
        self,
        model_name: str = "tts_models/en/ljspeech/vits",
        *,
        speaker_wav: Optional[str] = None,
        language: Optional[str] = None,
        rate: float = 1.1,
        device: Optional[str] = None,
        frame_ms: int = 50,
        tts: Optional[Any] = None,
        output_factory: OutputFactory = _sounddevice_output,
    ) -> None:
        self._tts = tts if tts is not None else TTS(model_name)
        if device and tts is None:
            self._tts.to(device)
        self._speaker_wav = speaker_wav
        self._language = language
        self.rate = rate
        self.sample_rate = int(self._tts.synthesizer.output_sample_rate)
        self._frame_samples = max(1, int(self.sample_rate * frame_ms / 1000))
        self._output_factory = output_factory
        self._observer: Optional[SpeechObserver] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = threading.Event()

    def set_observer(self, observer: Optional[SpeechObserver]) -> None:
        self._observer = observer

    def speak(self, text: str, utterance_id: int) -> None:
        previous = self._task
        if previous is not None and not previous.done():
            self._stop_event.set()
        else:
            previous = None
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._task = asyncio.get_running_loop().create_task(
            self._play(text, utterance_id, stop_event, previous)
        )

    def stop_immediately(self) -> None:
        self._stop_event.set()

    async def wait_idle(self) -> None:
        """Wait for the utterance task in flight, if any, to wind down."""

        if self._task is not None:
            await asyncio.wait({self._task})

    # ------------------------------------------------------------------
    def _synthesize(self, text: str) -> np.ndarray:
        kwargs: Dict[str, Any] = {"text": text}
        if self._speaker_wav:
            kwargs["speaker_wav"] = self._speaker_wav
        if self._language:
            kwargs["language"] = self._language
        if self.rate and self.rate != 1.0:
            kwargs["speed"] = self.rate
        return _to_pcm16(self._tts.tts(**kwargs))

    async def _play(
        self,
        text: str,
        utterance_id: int,
        stop_event: threading.Event,
        previous: Optional[asyncio.Task] = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        if previous is not None:
            # One model and one output device: wait for the stopped utterance to let go.
            await asyncio.wait({previous})
        try:
            if stop_event.is_set():
                self._emit(SpeechEventKind.FINISHED, utterance_id, text)
                return
            pcm = await loop.run_in_executor(None, self._synthesize, text)
            if stop_event.is_set() or pcm.size == 0:
                self._emit(SpeechEventKind.FINISHED, utterance_id, text)
                return
            self._emit(SpeechEventKind.STARTED, utterance_id, text)
            spans = word_spans(text)
            next_word = 0
            stream = self._output_factory(self.sample_rate)
            stream.start()
            aborted = False
            try:
                for offset in range(0, pcm.size, self._frame_samples):
                    if stop_event.is_set():
                        stream.abort()
                        aborted = True
                        break
                    while next_word < len(spans) and spans[next_word][0] * pcm.size <= offset * len(text):
                        start, end = spans[next_word]
                        self._emit(SpeechEventKind.WORD_BOUNDARY, utterance_id, text, start, end)
                        next_word += 1
                    frame = pcm[offset : offset + self._frame_samples]
                    await loop.run_in_executor(None, stream.write, frame.reshape(-1, 1))
                if not aborted:
                    await loop.run_in_executor(None, stream.stop)
            finally:
                stream.close()
        except Exception as exc:
            logger.exception("Playback failed for utterance %d", utterance_id)
            self._emit(SpeechEventKind.FINISHED, utterance_id, text, error=exc)
            return
        self._emit(SpeechEventKind.FINISHED, utterance_id, text)

    def _emit(
        self,
        kind: SpeechEventKind,
        utterance_id: int,
        text: str,
        start: int = 0,
        end: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        if self._observer is None:
            return
        self._observer(
            SpeechEvent(kind=kind, utterance_id=utterance_id, text=text, start=start, end=end, error=error)
        )
