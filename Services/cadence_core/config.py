"""Environment driven settings for the Cadence voice service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, TypeVar

from .conversation import DEFAULT_SYSTEM_PROMPT

ENV_PREFIX = "CADENCE_"

T = TypeVar("T")


def _split(value: str) -> List[str]:
    return [item for item in value.split("|") if item]


@dataclass
class Settings:
    """Runtime configuration; every field maps to a ``CADENCE_*`` variable."""

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    llm_backend: str = "transformers"
    llm_model: str = "Qwen/Qwen2.5-0.5B-Instruct"
    llm_device: Optional[str] = None
    llm_max_tokens: int = 4096
    llm_stop: List[str] = field(default_factory=lambda: ["\nUser:"])
    llm_emit_every: int = 4
    ollama_host: Optional[str] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_messages: int = 20

    tts_model: str = "tts_models/en/ljspeech/vits"
    tts_speaker_wav: Optional[str] = None
    tts_language: Optional[str] = None
    tts_rate: float = 1.1
    tts_device: Optional[str] = None

    pause_seconds: float = 2.0
    extra_abbreviations: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, cast: Callable[[str], T], default: T) -> T:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ValueError(f"invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from exc

        return cls(
            log_level=get("log_level", str.upper, defaults.log_level),
            host=get("host", str, defaults.host),
            port=get("port", int, defaults.port),
            llm_backend=get("llm_backend", str.lower, defaults.llm_backend),
            llm_model=get("llm_model", str, defaults.llm_model),
            llm_device=get("llm_device", str, defaults.llm_device),
            llm_max_tokens=get("llm_max_tokens", int, defaults.llm_max_tokens),
            llm_stop=get("llm_stop", _split, defaults.llm_stop),
            llm_emit_every=get("llm_emit_every", int, defaults.llm_emit_every),
            ollama_host=get("ollama_host", str, defaults.ollama_host),
            system_prompt=get("system_prompt", str, defaults.system_prompt),
            history_messages=get("history_messages", int, defaults.history_messages),
            tts_model=get("tts_model", str, defaults.tts_model),
            tts_speaker_wav=get("tts_speaker_wav", str, defaults.tts_speaker_wav),
            tts_language=get("tts_language", str, defaults.tts_language),
            tts_rate=get("tts_rate", float, defaults.tts_rate),
            tts_device=get("tts_device", str, defaults.tts_device),
            pause_seconds=get("pause_seconds", float, defaults.pause_seconds),
            extra_abbreviations=get("extra_abbreviations", _split, defaults.extra_abbreviations),
        )
