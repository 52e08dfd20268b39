"""
Stream encoder: wraps provider text increments in the wire event protocol.

Every response is one server-sent-events stream with a fixed lifecycle:

    start → start-step → text-start → text-delta* → text-end
          → finish-step → finish → [DONE]

Each event is a single `data: {json}` record followed by a blank line.
All text events of one response share a message id. If the text source
raises, the stream stops where it is: no text-end, no finish, no [DONE].
Clients detect that truncation with is_complete().

The decoder half (parse_events / is_complete) is used by the CLI client.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Iterable
from uuid import uuid4

logger = logging.getLogger(__name__)

DONE = "[DONE]"
DONE_RECORD = b"data: [DONE]\n\n"

# Event types, in lifecycle order
START = "start"
START_STEP = "start-step"
TEXT_START = "text-start"
TEXT_DELTA = "text-delta"
TEXT_END = "text-end"
FINISH_STEP = "finish-step"
FINISH = "finish"


def new_message_id() -> str:
    return f"msg_{uuid4().hex}"


def encode_event(event: dict) -> bytes:
    """One SSE record: `data: {json}\\n\\n`."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


async def encode_text_stream(
    text_stream: AsyncIterator[str],
    message_id: str | None = None,
    finish_reason: str = "stop",
) -> AsyncIterator[bytes]:
    """
    Encode a lazy sequence of text increments as wire events.
    Deltas are emitted one per increment, in arrival order, unbatched.
    Exceptions from text_stream propagate after the deltas already emitted.
    """
    message_id = message_id or new_message_id()

    yield encode_event({"type": START})
    yield encode_event({"type": START_STEP})
    yield encode_event({"type": TEXT_START, "id": message_id})

    async for delta in text_stream:
        yield encode_event({"type": TEXT_DELTA, "id": message_id, "delta": delta})

    yield encode_event({"type": TEXT_END, "id": message_id})
    yield encode_event({"type": FINISH_STEP})
    yield encode_event({"type": FINISH, "finishReason": finish_reason})
    yield DONE_RECORD


# ---------------------------------------------------------------------------
# Decoding (client side)
# ---------------------------------------------------------------------------

def parse_events(lines: Iterable[str] | str) -> list[dict]:
    """
    Decode an event stream into a list of event dicts.
    The [DONE] sentinel becomes {"type": "[DONE]"} so it stays visible
    to is_complete(). Non-data lines are ignored.
    """
    if isinstance(lines, str):
        lines = lines.splitlines()

    events = []
    for line in lines:
        event = parse_line(line)
        if event is not None:
            events.append(event)
    return events


def parse_line(line: str) -> dict | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == DONE:
        return {"type": DONE}
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed event line: %s", line)
        return None
    return event if isinstance(event, dict) else None


def is_complete(events: list[dict]) -> bool:
    """True only for a stream that reached finish and the [DONE] sentinel."""
    types = [e.get("type") for e in events]
    return FINISH in types and bool(types) and types[-1] == DONE


def collect_text(events: list[dict]) -> str:
    """Concatenate every text-delta in order."""
    return "".join(e.get("delta", "") for e in events if e.get("type") == TEXT_DELTA)
