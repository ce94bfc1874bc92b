"""Console client that feeds transcripts to `/voice` and prints the assistant's captions."""
from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Dict, Optional

import websockets


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cadence console voice client")
    parser.add_argument("--uri", default="ws://localhost:8000/voice", help="WebSocket URI")
    parser.add_argument(
        "--partial",
        action="store_true",
        help="Send typed lines as partial transcripts and let the server detect the pause",
    )
    parser.add_argument(
        "--print-events",
        action="store_true",
        help="Print every JSON event received from the server",
    )
    return parser


def capture_message(line: str, *, partial: bool = False) -> Dict[str, Any]:
    """Translate one typed line into a capture event.

    An empty line means the user started talking over the assistant.
    """

    text = line.strip()
    if not text:
        return {"type": "speech_detected"}
    if text == "/cancel":
        return {"type": "cancel"}
    return {"type": "partial" if partial else "final", "text": text}


def render_event(event: Dict[str, Any]) -> Optional[str]:
    kind = event.get("type")
    if kind == "state":
        return f"[{event.get('state', '').lower()}]"
    if kind == "caption" and not event.get("word"):
        return f"assistant> {event.get('sentence', '')}"
    if kind == "barge_in":
        return "[interrupted]"
    if kind == "error":
        return f"[error] {event.get('message', '')}"
    if kind == "metrics":
        return "[metrics] " + ", ".join(f"{k}={v}" for k, v in event.items() if k != "type")
    return None


async def run_client(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    async with websockets.connect(args.uri, ping_interval=None) as ws:
        async def sender() -> None:
            try:
                while not stop_event.is_set():
                    line = await loop.run_in_executor(None, sys.stdin.readline)
                    if line == "":
                        break
                    await ws.send(json.dumps(capture_message(line, partial=args.partial)))
            finally:
                stop_event.set()

        async def receiver() -> None:
            try:
                async for message in ws:
                    event = json.loads(message)
                    if args.print_events:
                        print("[event]", event)
                        continue
                    rendered = render_event(event)
                    if rendered:
                        print(rendered, flush=True)
            finally:
                stop_event.set()

        def _handle_sigint(*_):
            stop_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, _handle_sigint)
        except NotImplementedError:  # pragma: no cover - Windows fallback
            pass

        tasks = [asyncio.create_task(sender()), asyncio.create_task(receiver())]
        try:
            await stop_event.wait()
        finally:
            try:
                await ws.send(json.dumps({"type": "end_session"}))
            except websockets.ConnectionClosed:
                pass
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def main() -> None:
    parser = _build_arg_parser()
    args = parser.parse_args()
    asyncio.run(run_client(args))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
