"""In-memory conversation thread rendered as chat messages for the model."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .interfaces import ChatMessage

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Respond using natural sounding dialogue, "
    "in short spoken sentences without lists or markup."
)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    role: Role
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)


class Conversation:
    """Ordered messages of one conversation.

    ``max_messages`` bounds how much history is rendered into the prompt; the
    full thread is kept regardless.
    """

    def __init__(
        self,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        *,
        max_messages: Optional[int] = None,
    ) -> None:
        self.system_prompt = system_prompt
        self.max_messages = max_messages
        self._messages: List[Message] = []

    @property
    def messages(self) -> List[Message]:
        return sorted(self._messages, key=lambda message: message.timestamp)

    def add(self, role: Role, content: str) -> Message:
        message = Message(role=role, content=content.strip())
        self._messages.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    def to_messages(self) -> List[ChatMessage]:
        """Chat messages for the model: system prompt first, then recent history."""

        history = self.messages
        if self.max_messages:
            history = history[-self.max_messages :]
        messages: List[ChatMessage] = []
        if self.system_prompt:
            messages.append({"role": Role.SYSTEM.value, "content": self.system_prompt.strip()})
        messages.extend({"role": message.role.value, "content": message.content} for message in history)
        return messages
