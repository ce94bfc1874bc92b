"""FastAPI entrypoint exposing the `/voice` websocket endpoint."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Callable, Optional, Tuple

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from Services.cadence_core.config import Settings
from Services.cadence_core.conversation import Conversation
from Services.cadence_core.coordinator import GenerationCoordinator
from Services.cadence_core.interfaces import CaptureEvent, InferenceInterface, SynthesizerInterface
from Services.cadence_core.orchestrator import Orchestrator
from Services.cadence_core.segmenter import DEFAULT_ABBREVIATIONS

logger = logging.getLogger("cadence")

ServicesFactory = Callable[[Settings], Tuple[InferenceInterface, SynthesizerInterface]]


def _build_services(settings: Settings) -> Tuple[InferenceInterface, SynthesizerInterface]:
    from Services.cadence_tts.coqui_synth import CoquiSynthesizer

    if settings.llm_backend == "ollama":
        from Services.cadence_core.llm_ollama import OllamaInference

        engine: InferenceInterface = OllamaInference(
            settings.llm_model,
            host=settings.ollama_host,
            max_tokens=settings.llm_max_tokens,
        )
    elif settings.llm_backend == "transformers":
        from Services.cadence_core.llm_transformers import TransformersInference

        engine = TransformersInference(
            settings.llm_model,
            device=settings.llm_device,
            max_new_tokens=settings.llm_max_tokens,
            emit_every=settings.llm_emit_every,
        )
    else:
        raise ValueError(f"unknown CADENCE_LLM_BACKEND {settings.llm_backend!r}")

    synthesizer = CoquiSynthesizer(
        settings.tts_model,
        speaker_wav=settings.tts_speaker_wav,
        language=settings.tts_language,
        rate=settings.tts_rate,
        device=settings.tts_device,
    )
    return engine, synthesizer


async def _queue_iterator(queue: "asyncio.Queue[Optional[CaptureEvent]]") -> AsyncIterator[CaptureEvent]:
    while True:
        event = await queue.get()
        queue.task_done()
        if event is None:
            break
        yield event


def create_app(
    settings: Optional[Settings] = None,
    services_factory: ServicesFactory = _build_services,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = FastAPI(title="Cadence", version="0.1.0")
    app.state.settings = settings
    app.state.coordinator = None
    app.state.session_lock = asyncio.Lock()

    def get_coordinator() -> GenerationCoordinator:
        # One synthesizer per process: every session shares this coordinator.
        if app.state.coordinator is None:
            engine, synthesizer = services_factory(settings)
            app.state.coordinator = GenerationCoordinator(
                engine,
                synthesizer,
                stop_sequences=settings.llm_stop,
                max_tokens=settings.llm_max_tokens,
                abbreviations=DEFAULT_ABBREVIATIONS | {word.lower() for word in settings.extra_abbreviations},
            )
        return app.state.coordinator

    @app.get("/state")
    async def state() -> dict:
        coordinator: Optional[GenerationCoordinator] = app.state.coordinator
        if coordinator is None:
            return {"state": "LISTENING", "is_speaking": False, "current_sentence": "", "current_word": ""}
        return {
            "state": coordinator.turn_state.state.value,
            "is_speaking": coordinator.is_speaking,
            "current_sentence": coordinator.current_sentence,
            "current_word": coordinator.current_word,
        }

    @app.websocket("/voice")
    async def voice_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        lock: asyncio.Lock = app.state.session_lock
        if lock.locked():
            await ws.send_text(json.dumps({"type": "error", "message": "another voice session is active"}))
            await ws.close(code=1013)
            return

        async with lock:
            orchestrator = Orchestrator(
                get_coordinator(),
                Conversation(settings.system_prompt, max_messages=settings.history_messages),
                pause_seconds=settings.pause_seconds,
            )
            events: "asyncio.Queue[Optional[CaptureEvent]]" = asyncio.Queue()

            async def ws_send(payload) -> None:
                if isinstance(payload, str):
                    await ws.send_text(payload)
                else:
                    await ws.send_text(json.dumps(payload))

            session_task = asyncio.create_task(
                orchestrator.handle_session(_queue_iterator(events), ws_send, finish_turn=False)
            )
            try:
                while True:
                    message = await ws.receive()
                    if message.get("type") == "websocket.disconnect":
                        break
                    if message.get("text") is None:
                        continue
                    try:
                        data = json.loads(message["text"])
                    except json.JSONDecodeError:
                        logger.warning("Dropping malformed client message")
                        continue
                    if not isinstance(data, dict):
                        logger.warning("Dropping client message that is not a JSON object")
                        continue
                    if data.get("type") == "end_session":
                        break
                    await events.put(data)
            except WebSocketDisconnect:
                pass
            finally:
                await events.put(None)
                await session_task
                logger.info("Voice session closed after %d barge-ins", orchestrator.barge_ins)

    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual entry point
    import uvicorn

    _settings = app.state.settings
    uvicorn.run(app, host=_settings.host, port=_settings.port)
