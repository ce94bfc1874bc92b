from voice_client import capture_message, render_event


def test_typed_lines_become_capture_events():
    assert capture_message("hello there\n") == {"type": "final", "text": "hello there"}
    assert capture_message("hello", partial=True) == {"type": "partial", "text": "hello"}
    assert capture_message("\n") == {"type": "speech_detected"}
    assert capture_message("/cancel") == {"type": "cancel"}


def test_only_user_facing_events_are_rendered():
    assert render_event({"type": "caption", "sentence": "Hi there.", "word": ""}) == "assistant> Hi there."
    assert render_event({"type": "caption", "sentence": "Hi there.", "word": "Hi"}) is None
    assert render_event({"type": "state", "state": "SPEAKING"}) == "[speaking]"
    assert render_event({"type": "metrics", "turn_total_ms": 12}) == "[metrics] turn_total_ms=12"
    assert render_event({"type": "sentence", "text": "x"}) is None
