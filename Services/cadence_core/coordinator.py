"""Generation coordinator owning the single active model-to-speech session."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import GenerationInProgressError, InferenceError
from .interfaces import InferenceInterface, Prompt, SynthesizerInterface
from .segmenter import SentenceSegmenter
from .speech_queue import SpeechQueue
from .turn_state import TurnState, TurnStateMachine

logger = logging.getLogger(__name__)

CoordinatorListener = Callable[[Dict[str, Any]], None]


class SessionStatus(str, Enum):
    RUNNING = "RUNNING"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class GenerationSession:
    """State of one generation attempt, identified by ``session_id``."""

    prompt: Prompt
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.RUNNING
    output: str = ""
    error: Optional[BaseException] = None
    tokens: int = 0
    tokens_per_second: Optional[float] = None
    started_at: float = field(default_factory=time.perf_counter)
    stream_done: bool = False

    @property
    def running(self) -> bool:
        return self.status is SessionStatus.RUNNING


@dataclass(frozen=True)
class GenerationResult:
    """What :meth:`GenerationCoordinator.generate` hands back to the caller."""

    session_id: Optional[str]
    text: str
    status: SessionStatus
    error: Optional[BaseException] = None
    tokens_per_second: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @classmethod
    def from_session(cls, session: GenerationSession) -> "GenerationResult":
        return cls(
            session_id=session.session_id,
            text=session.output if session.status is SessionStatus.COMPLETED else "",
            status=session.status,
            error=session.error,
            tokens_per_second=session.tokens_per_second,
        )


class GenerationCoordinator:
    """Streams a model reply into speech while staying interruptible.

    Exactly one :class:`GenerationSession` may run at a time. Decoded text
    reaches the segmenter only through :meth:`handle_progress`, which drops
    anything tagged with a session id other than the active one.
    """

    def __init__(
        self,
        engine: InferenceInterface,
        synthesizer: SynthesizerInterface,
        *,
        turn_state: Optional[TurnStateMachine] = None,
        stop_sequences: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
        abbreviations: Optional[Iterable[str]] = None,
        punctuated_words: Optional[Iterable[str]] = None,
    ) -> None:
        self.engine = engine
        self.turn_state = turn_state or TurnStateMachine()
        self.stop_sequences = list(stop_sequences or [])
        self.max_tokens = max_tokens
        self._segmenter = SentenceSegmenter(
            self._on_sentence,
            abbreviations=abbreviations,
            punctuated_words=punctuated_words,
        )
        self._queue = SpeechQueue(
            synthesizer,
            on_started=self._on_speech_started,
            on_finished=self._on_speech_finished,
            on_word=self._on_word,
        )
        self._active: Optional[GenerationSession] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[CoordinatorListener] = []

    # --- observable state ---------------------------------------------
    @property
    def active_session(self) -> Optional[GenerationSession]:
        return self._active

    @property
    def is_running(self) -> bool:
        return self._active is not None and self._active.running

    @property
    def is_speaking(self) -> bool:
        return self._queue.is_speaking

    @property
    def current_sentence(self) -> str:
        return self._queue.current_sentence

    @property
    def current_word(self) -> str:
        return self._queue.current_word

    @property
    def speech_queue(self) -> SpeechQueue:
        return self._queue

    @property
    def segmenter(self) -> SentenceSegmenter:
        return self._segmenter

    def add_listener(self, listener: CoordinatorListener) -> Callable[[], None]:
        """Subscribe to coordinator events; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # --- entry points ---------------------------------------------------
    async def generate(self, prompt: Prompt) -> GenerationResult:
        """Run one generation and return once its speech has finished.

        Returns a failed result immediately if another session is running.
        """

        if self.is_running:
            logger.warning("Generation requested while session %s is running", self._active.session_id)
            return GenerationResult(
                session_id=None,
                text="",
                status=SessionStatus.FAILED,
                error=GenerationInProgressError("a generation is already running"),
            )

        session = GenerationSession(prompt=prompt)
        self._active = session
        self._segmenter.clear()
        if not self.turn_state.transition(TurnState.GENERATING):
            logger.warning(
                "Starting generation from turn state %s", self.turn_state.state.value
            )
        logger.info("Generation %s started", session.session_id)

        task = asyncio.create_task(self._run(session))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self._cancel_session(session)
            raise
        finally:
            if self._task is task:
                self._task = None

        if task.cancelled():
            return GenerationResult.from_session(session)
        error = task.exception()
        if error is not None and session.running:
            self._fail(session, error)
        return GenerationResult.from_session(session)

    def cancel(self) -> None:
        """Stop the active generation and silence its speech.

        Once this returns, nothing from the cancelled session is spoken.
        """

        session = self._active
        if session is None or not session.running:
            self._segmenter.clear()
            self._queue.cancel_all()
            self.turn_state.transition(TurnState.LISTENING)
            return
        self._cancel_session(session)

    def handle_progress(self, session_id: str, text: str) -> bool:
        """Feed the cumulative decoded *text* of *session_id* to the segmenter.

        Returns ``False`` when the session is no longer the active one.
        """

        session = self._active
        if session is None or session.session_id != session_id or not session.running:
            logger.debug("Dropping progress from stale session %s", session_id)
            return False
        if len(text) <= len(session.output):
            return True
        chunk = text[len(session.output) :]
        first = not session.output
        session.output = text
        if first:
            self._notify({"type": "first_token", "session_id": session_id})
        self._segmenter.ingest(chunk)
        return True

    # ------------------------------------------------------------------
    async def _run(self, session: GenerationSession) -> None:
        try:
            async for chunk in self.engine.stream(
                session.prompt, stop=self.stop_sequences or None, max_tokens=self.max_tokens
            ):
                if not self.handle_progress(session.session_id, chunk.get("text", "")):
                    break
                if chunk.get("tokens") is not None:
                    session.tokens = int(chunk["tokens"])
                if chunk.get("tokens_per_second") is not None:
                    session.tokens_per_second = float(chunk["tokens_per_second"])
                if chunk.get("is_final"):
                    break
        except Exception as exc:
            raise InferenceError(str(exc) or exc.__class__.__name__) from exc

        if self._active is not session:
            return
        session.stream_done = True
        self._segmenter.finalize()
        await self._queue.drained()

        if self._active is not session or not session.running:
            return
        session.status = SessionStatus.COMPLETED
        self._active = None
        self.turn_state.transition(TurnState.LISTENING)
        logger.info(
            "Generation %s completed (%d chars, %s tok/s)",
            session.session_id,
            len(session.output),
            f"{session.tokens_per_second:.2f}" if session.tokens_per_second else "n/a",
        )
        self._notify({"type": "generation_done", "session_id": session.session_id, "status": session.status.value})

    def _cancel_session(self, session: GenerationSession) -> None:
        if not session.running:
            return
        if self._active is session:
            self._active = None
        session.status = SessionStatus.CANCELLED
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        self._segmenter.clear()
        self._queue.cancel_all()
        self.turn_state.transition(TurnState.LISTENING)
        logger.info("Generation %s cancelled", session.session_id)
        self._notify({"type": "generation_done", "session_id": session.session_id, "status": session.status.value})

    def _fail(self, session: GenerationSession, error: BaseException) -> None:
        if not session.running:
            # Already cancelled; a late error changes nothing.
            return
        session.status = SessionStatus.FAILED
        session.error = error
        if self._active is session:
            self._active = None
        self._segmenter.clear()
        self._queue.cancel_all()
        self.turn_state.transition(TurnState.LISTENING)
        logger.error("Generation %s failed: %s", session.session_id, error)
        self._notify({"type": "generation_done", "session_id": session.session_id, "status": session.status.value})

    def _on_sentence(self, sentence: str) -> None:
        session = self._active
        if session is None or not session.running:
            return
        self._notify({"type": "sentence", "session_id": session.session_id, "text": sentence})
        self._queue.enqueue(sentence)

    def _on_speech_started(self, sentence: str) -> None:
        self.turn_state.transition(TurnState.SPEAKING)
        self._notify({"type": "speech_started", "text": sentence})

    def _on_word(self, word: str) -> None:
        self._notify({"type": "word", "text": word, "sentence": self._queue.current_sentence})

    def _on_speech_finished(self) -> None:
        self._notify({"type": "speech_finished"})

    def _notify(self, event: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(event)
