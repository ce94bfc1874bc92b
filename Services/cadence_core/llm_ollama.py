"""Streaming inference adapter for a local Ollama server."""
from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional

from ollama import AsyncClient

from .interfaces import InferenceChunk, InferenceInterface, Prompt, as_messages

logger = logging.getLogger(__name__)


class OllamaInference(InferenceInterface):
    """Stream chat replies from a local Ollama server.

    Cancelling the consumer closes the HTTP stream, which makes the server
    abandon the generation.
    """

    def __init__(
        self,
        model: str,
        *,
        host: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.5,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncClient(host=host)
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def stream(
        self,
        prompt: Prompt,
        *,
        stop: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[InferenceChunk]:
        options = {
            "temperature": self._temperature,
            "num_predict": max_tokens or self._max_tokens,
        }
        if stop:
            options["stop"] = list(stop)

        text = ""
        responses = await self._client.chat(
            model=self.model, messages=as_messages(prompt), stream=True, options=options
        )
        async for part in responses:
            message = part.get("message") or {}
            text += message.get("content") or ""
            if not part.get("done"):
                yield {"text": text, "is_final": False}
                continue
            final: InferenceChunk = {"text": text, "is_final": True}
            eval_count = part.get("eval_count")
            eval_duration = part.get("eval_duration")
            if eval_count:
                final["tokens"] = int(eval_count)
                if eval_duration:
                    final["tokens_per_second"] = eval_count / (eval_duration / 1e9)
            logger.debug("Ollama %s finished: %s tokens", self.model, eval_count)
            yield final
            return
        yield {"text": text, "is_final": True}
