import asyncio

from Services.cadence_core.conversation import Conversation, Role
from Services.cadence_core.coordinator import GenerationCoordinator
from Services.cadence_core.orchestrator import Orchestrator
from Services.cadence_core.stubs import ScriptedInference, ScriptedSynthesizer
from Services.cadence_core.turn_state import TurnState


async def capture_iter(events):
    for event in events:
        await asyncio.sleep(0)
        yield event


async def queue_iter(queue):
    while True:
        item = await queue.get()
        queue.task_done()
        if item is None:
            break
        yield item


def make_orchestrator(engine, synth, **kwargs):
    coordinator = GenerationCoordinator(engine, synth, stop_sequences=["\nUser:"])
    return Orchestrator(coordinator, Conversation("Be brief."), **kwargs)


def of_type(sent, kind):
    return [payload for payload in sent if payload.get("type") == kind]


def test_final_transcript_gets_spoken_reply():
    async def runner():
        engine = ScriptedInference(["Hi! ", "Nice to meet you."])
        synth = ScriptedSynthesizer(duration=0.001)
        orchestrator = make_orchestrator(engine, synth)
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        await orchestrator.handle_session(capture_iter([{"type": "final", "text": "hello"}]), ws_send)

        assert synth.completed == ["Hi!", "Nice to meet you."]
        assert engine.prompts == [
            [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hello"}]
        ]
        assert [p["state"] for p in of_type(sent, "state")] == [
            "LISTENING",
            "GENERATING",
            "SPEAKING",
            "LISTENING",
        ]
        assert of_type(sent, "user_text") == [{"type": "user_text", "text": "hello"}]
        assert [p["text"] for p in of_type(sent, "sentence")] == ["Hi!", "Nice to meet you."]
        reply = of_type(sent, "assistant_text")[0]
        assert reply["text"] == "Hi! Nice to meet you."
        assert reply["status"] == "COMPLETED"
        captions = of_type(sent, "caption")
        assert {"type": "caption", "sentence": "Nice to meet you.", "word": "meet"} in captions
        assert [m.role for m in orchestrator.conversation.messages] == [Role.USER, Role.ASSISTANT]

    asyncio.run(runner())


def test_metrics_emitted():
    async def runner():
        orchestrator = make_orchestrator(ScriptedInference(["Sure thing."]), ScriptedSynthesizer())
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        await orchestrator.handle_session(capture_iter([{"type": "final", "text": "help"}]), ws_send)

        metrics = of_type(sent, "metrics")[0]
        assert metrics["llm_first_token_ms"] >= 0
        assert metrics["first_sentence_ms"] >= metrics["llm_first_token_ms"]
        assert metrics["speech_start_ms"] >= 0
        assert metrics["turn_total_ms"] >= metrics["speech_start_ms"]

    asyncio.run(runner())


def test_partial_transcript_is_answered_after_pause(wait_until):
    async def runner():
        engine = ScriptedInference(["It is noon."])
        orchestrator = make_orchestrator(engine, ScriptedSynthesizer(), pause_seconds=0.05)
        queue: "asyncio.Queue" = asyncio.Queue()
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        session = asyncio.create_task(orchestrator.handle_session(queue_iter(queue), ws_send))
        await queue.put({"type": "partial", "text": "what time"})
        await asyncio.sleep(0.01)
        assert engine.prompts == []
        await queue.put({"type": "partial", "text": "what time is it"})

        await wait_until(lambda: of_type(sent, "assistant_text"))
        assert len(engine.prompts) == 1
        assert engine.prompts[0][-1] == {"role": "user", "content": "what time is it"}

        await queue.put(None)
        await session

    asyncio.run(runner())


def test_barge_in_triggers_stop(wait_until):
    async def runner():
        engine = ScriptedInference(["First sentence. ", "Second sentence. "], delay=0.01)
        synth = ScriptedSynthesizer(auto_finish=False)
        orchestrator = make_orchestrator(engine, synth)
        queue: "asyncio.Queue" = asyncio.Queue()
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        session = asyncio.create_task(orchestrator.handle_session(queue_iter(queue), ws_send))
        await queue.put({"type": "final", "text": "tell me a story"})
        await wait_until(lambda: synth.requested)
        assert orchestrator.state is TurnState.SPEAKING

        # Transcripts are not accepted while the assistant talks.
        await queue.put({"type": "final", "text": "ignored"})
        await asyncio.sleep(0.01)
        assert len(engine.prompts) == 1

        await queue.put({"type": "speech_detected"})
        await wait_until(lambda: not orchestrator.turn_active)

        assert orchestrator.barge_ins == 1
        assert synth.stopped == ["First sentence."]
        assert orchestrator.state is TurnState.LISTENING
        assert of_type(sent, "barge_in")
        assert of_type(sent, "assistant_text")[0]["status"] == "CANCELLED"
        assert [m.role for m in orchestrator.conversation.messages] == [Role.USER]

        await queue.put(None)
        await session

    asyncio.run(runner())


def test_cancel_while_listening_is_ignored():
    async def runner():
        synth = ScriptedSynthesizer()
        orchestrator = make_orchestrator(ScriptedInference([]), synth)
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        await orchestrator.handle_session(
            capture_iter([{"type": "cancel"}, {"type": "speech_detected"}]), ws_send
        )
        assert orchestrator.barge_ins == 0
        assert synth.stop_calls == 0
        assert of_type(sent, "barge_in") == []

    asyncio.run(runner())


def test_ending_session_cancels_reply_in_progress():
    async def runner():
        engine = ScriptedInference(["A long answer. ", "That keeps going. "], delay=0.01)
        synth = ScriptedSynthesizer(auto_finish=False)
        orchestrator = make_orchestrator(engine, synth)
        sent = []

        async def ws_send(payload):
            sent.append(payload)

        async def events():
            yield {"type": "final", "text": "go on"}
            while not synth.requested:
                await asyncio.sleep(0.005)

        await orchestrator.handle_session(events(), ws_send, finish_turn=False)

        assert synth.stopped == ["A long answer."]
        assert orchestrator.state is TurnState.LISTENING
        assert of_type(sent, "assistant_text")[0]["status"] == "CANCELLED"

    asyncio.run(runner())


def test_send_failure_does_not_stop_the_turn():
    async def runner():
        orchestrator = make_orchestrator(ScriptedInference(["Fine."]), ScriptedSynthesizer())

        async def ws_send(payload):
            raise ConnectionError("client went away")

        await orchestrator.handle_session(capture_iter([{"type": "final", "text": "hi"}]), ws_send)

        assert [m.content for m in orchestrator.conversation.messages] == ["hi", "Fine."]

    asyncio.run(runner())
