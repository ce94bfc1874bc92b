"""Latency timeline of one conversation turn."""
from __future__ import annotations

import contextlib
import json
import logging
import time
import uuid
from typing import Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Reported metric -> mark whose delay from the turn start it measures.
TURN_METRICS: Dict[str, str] = {
    "llm_first_token_ms": "llm_first_token",
    "first_sentence_ms": "first_sentence",
    "speech_start_ms": "speech_start",
    "turn_total_ms": "turn_end",
}


class Tracer:
    """Records marks and spans for a turn and measures them from ``start``.

    Only the first occurrence of a mark counts towards :meth:`metrics`; later
    ones stay in the timeline written by :meth:`dump`.
    """

    def __init__(
        self,
        turn_id: Optional[str] = None,
        *,
        start: str = "turn_start",
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.turn_id = turn_id or uuid.uuid4().hex
        self.start = start
        self._clock = clock
        self._first: Dict[str, float] = {}
        self.events: List[dict] = []

    def mark(self, name: str, meta: Optional[Dict] = None) -> None:
        now = self._clock()
        self._first.setdefault(name, now)
        self.events.append({"t": now, "type": "mark", "name": name, "meta": meta or {}})

    def mark_once(self, name: str, meta: Optional[Dict] = None) -> None:
        if name not in self._first:
            self.mark(name, meta)

    @contextlib.contextmanager
    def span(self, name: str, meta: Optional[Dict] = None):
        self.events.append({"t": self._clock(), "type": "start", "name": name, "meta": meta or {}})
        try:
            yield
        finally:
            self.events.append({"t": self._clock(), "type": "end", "name": name, "meta": {}})

    def elapsed_ms(self, name: str) -> Optional[int]:
        """Milliseconds from the start mark to the first *name* mark, if both exist."""

        started = self._first.get(self.start)
        reached = self._first.get(name)
        if started is None or reached is None:
            return None
        return int((reached - started) * 1000)

    def metrics(self, marks: Mapping[str, str] = TURN_METRICS) -> Dict[str, int]:
        measured = {metric: self.elapsed_ms(mark) for metric, mark in marks.items()}
        return {metric: value for metric, value in measured.items() if value is not None}

    def dump(self) -> List[dict]:
        """Log the timeline as JSON, offsets relative to the first event."""

        base = self.events[0]["t"] if self.events else 0.0
        timeline = [
            {
                "turn_id": self.turn_id,
                "type": event["type"],
                "name": event["name"],
                "t_ms": int((event["t"] - base) * 1000),
                "meta": event["meta"],
            }
            for event in self.events
        ]
        logger.info("turn trace %s", json.dumps(timeline, ensure_ascii=False))
        return timeline
