from Services.cadence_core.conversation import Conversation, Role


def test_history_becomes_chat_messages():
    conversation = Conversation("You are terse.")
    conversation.add(Role.USER, " hi there ")
    conversation.add(Role.ASSISTANT, "Hello.")
    conversation.add(Role.USER, "How are you?")
    assert conversation.to_messages() == [
        {"role": "system", "content": "You are terse."},
        {"role": "user", "content": "hi there"},
        {"role": "assistant", "content": "Hello."},
        {"role": "user", "content": "How are you?"},
    ]


def test_history_is_bounded_in_messages_only():
    conversation = Conversation("", max_messages=2)
    for text in ("one", "two", "three"):
        conversation.add(Role.USER, text)
    assert [m["content"] for m in conversation.to_messages()] == ["two", "three"]
    assert len(conversation.messages) == 3

    conversation.clear()
    assert conversation.messages == []
