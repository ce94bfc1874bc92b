"""Voice session orchestrator driving the listen, think, speak cycle."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .conversation import Conversation, Role
from .coordinator import GenerationCoordinator
from .interfaces import CaptureEvent, ChatMessage
from .tracer import Tracer
from .turn_state import TurnState

logger = logging.getLogger(__name__)

SendJson = Callable[[object], Awaitable[None]]

_TRACE_MARKS = {
    "first_token": "llm_first_token",
    "sentence": "first_sentence",
    "speech_started": "speech_start",
}


class Orchestrator:
    """Connects a capture client to the generation coordinator.

    Capture events:

    * ``partial``: running transcript; it is handed over once the user has
      been silent for ``pause_seconds``.
    * ``final``: finished transcript, handed over immediately.
    * ``speech_detected``: the user started talking; interrupts the assistant.
    * ``cancel``: interrupt without new speech.

    Transcripts are only accepted while the turn state is listening.
    """

    def __init__(
        self,
        coordinator: GenerationCoordinator,
        conversation: Optional[Conversation] = None,
        *,
        pause_seconds: float = 2.0,
    ) -> None:
        self.coordinator = coordinator
        self.conversation = conversation or Conversation()
        self.pause_seconds = pause_seconds
        self.barge_ins = 0
        self._outbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._turn_task: Optional[asyncio.Task] = None
        self._pause_task: Optional[asyncio.Task] = None
        self._speech_text = ""
        self._tracer: Optional[Tracer] = None

    @property
    def state(self) -> TurnState:
        return self.coordinator.turn_state.state

    @property
    def turn_active(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    async def handle_session(
        self,
        events: AsyncIterator[CaptureEvent],
        send_json: SendJson,
        *,
        finish_turn: bool = True,
    ) -> None:
        """Process capture events until the source is exhausted.

        With ``finish_turn`` the reply in progress is allowed to complete
        before returning; otherwise it is cancelled.
        """

        unsubscribe_state = self.coordinator.turn_state.subscribe(self._on_turn_state)
        remove_listener = self.coordinator.add_listener(self._on_coordinator_event)
        sender = asyncio.create_task(self._send_loop(send_json))
        self._post({"type": "state", "state": self.state.value})
        try:
            async for event in events:
                await self._handle_event(event)
        finally:
            self._cancel_pause_timer()
            if self.turn_active:
                if not finish_turn:
                    self.coordinator.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._turn_task
            unsubscribe_state()
            remove_listener()
            await self._outbox.put(None)
            await sender

    # ------------------------------------------------------------------
    async def _handle_event(self, event: CaptureEvent) -> None:
        kind = event.get("type")
        text = event.get("text", "")
        if kind == "speech_detected":
            self._interrupt(barge_in=True)
        elif kind == "cancel":
            self._cancel_pause_timer()
            self._interrupt(barge_in=False)
        elif kind == "partial":
            if not self._accepting_speech():
                return
            self._speech_text = text
            self._restart_pause_timer()
        elif kind == "final":
            if not self._accepting_speech():
                logger.debug("Ignoring transcript while %s", self.state.value)
                return
            self._cancel_pause_timer()
            self._start_turn(text)
        else:
            logger.warning("Unknown capture event %r", kind)

    def _accepting_speech(self) -> bool:
        return self.state is TurnState.LISTENING and not self.turn_active

    def _interrupt(self, *, barge_in: bool) -> None:
        if self.state is TurnState.LISTENING and not self.coordinator.is_running:
            return
        if barge_in:
            self.barge_ins += 1
            self._post({"type": "barge_in"})
        logger.info("Interrupting assistant (barge_in=%s)", barge_in)
        self.coordinator.cancel()

    def _restart_pause_timer(self) -> None:
        self._cancel_pause_timer()
        self._pause_task = asyncio.create_task(self._pause_then_respond())

    def _cancel_pause_timer(self) -> None:
        if self._pause_task is not None and not self._pause_task.done():
            self._pause_task.cancel()
        self._pause_task = None

    async def _pause_then_respond(self) -> None:
        await asyncio.sleep(self.pause_seconds)
        self._pause_task = None
        if self._accepting_speech():
            self._start_turn(self._speech_text)

    def _start_turn(self, text: str) -> None:
        prompt_text = text.strip()
        self._speech_text = ""
        if not prompt_text:
            return
        self.conversation.add(Role.USER, prompt_text)
        self._post({"type": "user_text", "text": prompt_text})
        tracer = Tracer()
        tracer.mark("turn_start")
        self._tracer = tracer
        self._turn_task = asyncio.create_task(self._run_turn(self.conversation.to_messages(), tracer))

    async def _run_turn(self, messages: List[ChatMessage], tracer: Tracer) -> None:
        with tracer.span("generation"):
            result = await self.coordinator.generate(messages)
        tracer.mark("turn_end")
        if result.ok and result.text.strip():
            self.conversation.add(Role.ASSISTANT, result.text)
        payload: Dict[str, Any] = {
            "type": "assistant_text",
            "text": result.text,
            "status": result.status.value,
        }
        if result.tokens_per_second is not None:
            payload["tokens_per_second"] = round(result.tokens_per_second, 3)
        self._post(payload)
        if result.error is not None:
            self._post({"type": "error", "message": str(result.error)})
        metrics = tracer.metrics()
        if metrics:
            self._post({"type": "metrics", **metrics})
        tracer.dump()

    # --- outbound events ------------------------------------------------
    def _on_turn_state(self, previous: TurnState, current: TurnState) -> None:
        self._post({"type": "state", "state": current.value})

    def _on_coordinator_event(self, event: Dict[str, Any]) -> None:
        kind = event["type"]
        if self._tracer is not None and kind in _TRACE_MARKS:
            self._tracer.mark_once(_TRACE_MARKS[kind])
        if kind == "sentence":
            self._post({"type": "sentence", "text": event["text"]})
        elif kind == "speech_started":
            self._post({"type": "caption", "sentence": event["text"], "word": ""})
        elif kind == "word":
            self._post({"type": "caption", "sentence": event["sentence"], "word": event["text"]})
        elif kind == "speech_finished":
            self._post({"type": "speech_finished"})

    def _post(self, payload: Dict[str, Any]) -> None:
        self._outbox.put_nowait(payload)

    async def _send_loop(self, send_json: SendJson) -> None:
        connected = True
        while True:
            payload = await self._outbox.get()
            if payload is None:
                break
            if not connected:
                continue
            try:
                await send_json(payload)
            except Exception as exc:
                # Keep draining so producers never block on a dead client.
                logger.warning("Client send failed, dropping further events: %s", exc)
                connected = False
