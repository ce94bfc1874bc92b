"""Streaming inference adapter built on top of HuggingFace Transformers."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import AsyncIterator, Dict, List, Optional

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
)

from .interfaces import ChatMessage, InferenceChunk, InferenceInterface, Prompt, as_messages

logger = logging.getLogger(__name__)


class TransformersInference(InferenceInterface):
    """Generate text incrementally with a local causal language model.

    Generation runs on a worker thread; the decoded text is reported as a
    growing cumulative string every ``emit_every`` streamer pieces. Closing or
    cancelling the consumer stops the worker at the next token.
    """

    def __init__(
        self,
        model_name: str = "Qwen/Qwen2.5-0.5B-Instruct",
        *,
        device: Optional[str] = None,
        max_new_tokens: int = 4096,
        emit_every: int = 4,
        generation_kwargs: Optional[Dict] = None,
    ) -> None:
        self._tokenizer = AutoTokenizer.from_pretrained(model_name)
        self._model = AutoModelForCausalLM.from_pretrained(model_name)
        self._device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._model.to(self._device)
        self._max_new_tokens = max_new_tokens
        self._emit_every = max(1, emit_every)
        self._gen_kwargs = generation_kwargs or {
            "temperature": 0.5,
            "do_sample": True,
        }
        logger.info("Loaded %s on %s", model_name, self._device)

    async def stream(
        self,
        prompt: Prompt,
        *,
        stop: Optional[List[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[InferenceChunk]:
        tokenized = self._encode(prompt)
        inputs = {k: v.to(self._device) for k, v in tokenized.items()}
        streamer = TextIteratorStreamer(
            self._tokenizer, skip_special_tokens=True, skip_prompt=True
        )
        cancelled = threading.Event()
        stop_sequences = list(stop or [])
        criteria = _StopCriteria(
            self._tokenizer,
            stop_sequences,
            cancelled,
            prompt_length=int(inputs["input_ids"].shape[-1]),
        )

        generation_kwargs = dict(self._gen_kwargs)
        generation_kwargs.update(
            {
                "streamer": streamer,
                "max_new_tokens": max_tokens or self._max_new_tokens,
                "pad_token_id": self._tokenizer.eos_token_id,
                "stopping_criteria": StoppingCriteriaList([criteria]),
            }
        )

        loop = asyncio.get_running_loop()
        thread = threading.Thread(
            target=self._model.generate,
            kwargs={**inputs, **generation_kwargs},
            daemon=True,
        )
        started = time.perf_counter()
        thread.start()

        text = ""
        pieces = 0
        try:
            while True:
                piece = await loop.run_in_executor(None, streamer.text_queue.get)
                if piece is streamer.stop_signal or piece is None:
                    break
                text += piece
                pieces += 1
                if pieces % self._emit_every == 0:
                    yield {"text": _trim_stop(text, stop_sequences), "is_final": False}
            elapsed = time.perf_counter() - started
            yield {
                "text": _trim_stop(text, stop_sequences, hold_partial=False),
                "is_final": True,
                "tokens": criteria.generated,
                "tokens_per_second": criteria.generated / elapsed if elapsed > 0 else 0.0,
            }
        finally:
            cancelled.set()
            thread.join(timeout=0.1)

    def _encode(self, prompt: Prompt):
        messages = as_messages(prompt)
        if getattr(self._tokenizer, "chat_template", None):
            return self._tokenizer.apply_chat_template(
                messages, add_generation_prompt=True, return_tensors="pt", return_dict=True
            )
        # Base models have no chat template; give them a plain dialogue.
        return self._tokenizer(render_plain_prompt(messages), return_tensors="pt")


def render_plain_prompt(messages: List[ChatMessage]) -> str:
    """Render chat messages as a plain ``User:``/``Assistant:`` transcript."""

    lines = []
    for message in messages:
        if message["role"] == "system":
            lines.extend([message["content"], ""])
        else:
            lines.append(f"{message['role'].capitalize()}: {message['content']}")
    lines.append("Assistant:")
    return "\n".join(lines)


def _trim_stop(text: str, stop_sequences: List[str], *, hold_partial: bool = True) -> str:
    """Cut *text* at the first stop sequence.

    With ``hold_partial`` a trailing fragment that could still grow into a stop
    sequence is held back, so reported text never has to shrink later.
    """

    for sequence in stop_sequences:
        index = text.find(sequence)
        if index != -1:
            text = text[:index]
    if not hold_partial:
        return text
    for sequence in stop_sequences:
        for size in range(min(len(sequence) - 1, len(text)), 0, -1):
            if text.endswith(sequence[:size]):
                return text[:-size]
    return text


class _StopCriteria(StoppingCriteria):
    """Stops on a stop sequence in the decoded continuation or on cancellation."""

    def __init__(
        self,
        tokenizer,
        stop_sequences: List[str],
        cancelled: threading.Event,
        *,
        prompt_length: int,
    ) -> None:
        self._tokenizer = tokenizer
        self._stop_sequences = stop_sequences
        self._cancelled = cancelled
        self._prompt_length = prompt_length
        self.generated = 0

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs) -> bool:
        self.generated = int(input_ids.shape[-1]) - self._prompt_length
        if self._cancelled.is_set():
            return True
        if not self._stop_sequences:
            return False
        tail = self._tokenizer.decode(input_ids[0, self._prompt_length :][-16:], skip_special_tokens=True)
        return any(sequence in tail for sequence in self._stop_sequences)
