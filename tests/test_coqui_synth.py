import asyncio
import threading

import pytest

pytest.importorskip("TTS.api")

from Services.cadence_core.interfaces import SpeechEventKind
from Services.cadence_tts.coqui_synth import CoquiSynthesizer, word_spans


class FakeTTS:
    class synthesizer:
        output_sample_rate = 1000

    def __init__(self, samples=200):
        self.samples = samples
        self.calls = []

    def tts(self, **kwargs):
        self.calls.append(kwargs)
        return [0.5] * self.samples


class FakeStream:
    def __init__(self, sample_rate):
        self.sample_rate = sample_rate
        self.frames = []
        self.started = self.stopped = self.aborted = self.closed = False

    def start(self):
        self.started = True

    def write(self, frame):
        self.frames.append(frame)

    def stop(self):
        self.stopped = True

    def abort(self):
        self.aborted = True

    def close(self):
        self.closed = True


def make_synth(**kwargs):
    streams = []

    def output_factory(sample_rate):
        stream = FakeStream(sample_rate)
        streams.append(stream)
        return stream

    synth = CoquiSynthesizer(tts=FakeTTS(), frame_ms=10, output_factory=output_factory, **kwargs)
    return synth, streams


def test_word_spans():
    assert word_spans("one  two") == [(0, 3), (5, 8)]


def test_utterance_plays_with_word_boundaries():
    async def runner():
        synth, streams = make_synth(rate=1.0)
        events = []
        synth.set_observer(events.append)

        synth.speak("one two three", 7)
        await synth.wait_idle()

        assert [e.kind for e in events] == [
            SpeechEventKind.STARTED,
            SpeechEventKind.WORD_BOUNDARY,
            SpeechEventKind.WORD_BOUNDARY,
            SpeechEventKind.WORD_BOUNDARY,
            SpeechEventKind.FINISHED,
        ]
        assert all(e.utterance_id == 7 for e in events)
        assert [(e.start, e.end) for e in events[1:4]] == [(0, 3), (4, 7), (8, 13)]
        assert events[-1].error is None
        stream = streams[0]
        assert len(stream.frames) == 20
        assert stream.stopped and stream.closed and not stream.aborted
        assert "speed" not in synth._tts.calls[0]

    asyncio.run(runner())


def test_stop_immediately_aborts_playback():
    async def runner():
        synth, streams = make_synth()
        events = []

        def observer(event):
            events.append(event)
            if event.kind is SpeechEventKind.STARTED:
                synth.stop_immediately()

        synth.set_observer(observer)
        synth.speak("cut me off", 1)
        await synth.wait_idle()

        assert [e.kind for e in events] == [SpeechEventKind.STARTED, SpeechEventKind.FINISHED]
        stream = streams[0]
        assert stream.aborted and stream.closed
        assert stream.frames == []
        assert synth._tts.calls[0]["speed"] == 1.1

    asyncio.run(runner())


def test_playback_error_is_reported_on_finish():
    async def runner():
        def broken_output(sample_rate):
            raise OSError("no audio device")

        synth = CoquiSynthesizer(tts=FakeTTS(), output_factory=broken_output)
        events = []
        synth.set_observer(events.append)
        synth.speak("hello", 3)
        await synth.wait_idle()

        assert events[-1].kind is SpeechEventKind.FINISHED
        assert isinstance(events[-1].error, OSError)

    asyncio.run(runner())


class GatedTTS(FakeTTS):
    """Blocks inside ``tts`` until released and records overlapping calls."""

    def __init__(self):
        super().__init__(samples=20)
        self.gate = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def tts(self, **kwargs):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.gate.wait(timeout=2.0)
        with self._lock:
            self.active -= 1
        return super().tts(**kwargs)


def test_next_utterance_waits_for_stopped_synthesis():
    async def runner():
        tts = GatedTTS()
        synth = CoquiSynthesizer(tts=tts, frame_ms=10, output_factory=FakeStream)
        events = []
        synth.set_observer(events.append)

        synth.speak("first", 1)
        await asyncio.sleep(0.05)
        assert tts.active == 1

        synth.stop_immediately()
        synth.speak("second", 2)
        await asyncio.sleep(0.05)
        assert tts.active == 1

        tts.gate.set()
        await synth.wait_idle()

        assert tts.max_active == 1
        assert [c["text"] for c in tts.calls] == ["first", "second"]
        assert [(e.kind, e.utterance_id) for e in events] == [
            (SpeechEventKind.FINISHED, 1),
            (SpeechEventKind.STARTED, 2),
            (SpeechEventKind.WORD_BOUNDARY, 2),
            (SpeechEventKind.FINISHED, 2),
        ]

    asyncio.run(runner())
