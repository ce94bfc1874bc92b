"""Interfaces for the collaborators the turn-taking engine drives."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, TypedDict, Union


class InferenceChunk(TypedDict, total=False):
    """One progress report from a streaming language model."""

    text: str
    is_final: bool
    tokens: int
    tokens_per_second: float


class ChatMessage(TypedDict):
    role: str
    content: str


# A bare string is treated as a single user message.
Prompt = Union[str, List[ChatMessage]]


def as_messages(prompt: Prompt) -> List[ChatMessage]:
    if isinstance(prompt, str):
        return [{"role": "user", "content": prompt}]
    return list(prompt)


class CaptureEvent(TypedDict, total=False):
    """Event produced by the capture/recognition layer."""

    type: str
    text: str


class SpeechEventKind(str, Enum):
    STARTED = "STARTED"
    FINISHED = "FINISHED"
    WORD_BOUNDARY = "WORD_BOUNDARY"


@dataclass(frozen=True)
class SpeechEvent:
    """Notification from a synthesis backend about one utterance.

    ``utterance_id`` is the token the queue handed to :meth:`SynthesizerInterface.speak`.
    ``start``/``end`` delimit the word being spoken for ``WORD_BOUNDARY`` events.
    A ``FINISHED`` event with ``error`` set reports a failed utterance.
    """

    kind: SpeechEventKind
    utterance_id: int
    text: str = ""
    start: int = 0
    end: int = 0
    error: Optional[BaseException] = None


SpeechObserver = Callable[[SpeechEvent], None]


class InferenceInterface:
    """Streaming language model interface."""

    async def stream(
        self,
        prompt: Prompt,
        *,
        stop: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[InferenceChunk]:
        """Yield the cumulative decoded reply to *prompt* as generation progresses.

        Cancelling the task that consumes the iterator must stop generation.
        """


class SynthesizerInterface:
    """Speech synthesis engine that plays one utterance at a time."""

    def set_observer(self, observer: Optional[SpeechObserver]) -> None:
        """Register the callback receiving :class:`SpeechEvent` notifications.

        Events must be delivered on the event loop that called :meth:`speak`.
        """

    def speak(self, text: str, utterance_id: int) -> None:
        """Start speaking *text*; completion is reported through the observer."""

    def stop_immediately(self) -> None:
        """Cut off the utterance currently playing, if any."""
