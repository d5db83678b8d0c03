"""Line protocol for streaming chat responses.

Each frame is one line, ``<tag>:<json>\\n``:

- ``0:"text"``: a fragment of the assistant's reply (:class:`TextDelta`)
- ``d:{"finishReason": ..., "conversationId": ...}``: end of turn
  (:class:`Terminal`), always the last frame and sent at most once

Consumers read line by line and dispatch on the tag. JSON payloads are
ASCII-escaped, so a frame never contains a raw line break.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

TEXT_TAG = "0"
TERMINAL_TAG = "d"


class FrameDecodeError(ValueError):
    """A line is not a valid frame."""


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class Terminal:
    finish_reason: str
    conversation_id: str

    def to_payload(self) -> dict[str, str]:
        return {"finishReason": self.finish_reason, "conversationId": self.conversation_id}


Frame = TextDelta | Terminal


def encode_frame(frame: Frame) -> str:
    """Serialize *frame* to one newline-terminated line."""
    if isinstance(frame, TextDelta):
        return f"{TEXT_TAG}:{json.dumps(frame.text)}\n"
    if isinstance(frame, Terminal):
        return f"{TERMINAL_TAG}:{json.dumps(frame.to_payload())}\n"
    raise TypeError(f"Not a frame: {frame!r}")


def decode_frame(line: str) -> Frame:
    """Parse one line (with or without its trailing newline) into a frame."""
    tag, sep, raw = line.rstrip("\r\n").partition(":")
    if not sep:
        raise FrameDecodeError(f"Missing tag separator: {line!r}")

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise FrameDecodeError(f"Invalid JSON payload: {raw!r}") from exc

    if tag == TEXT_TAG:
        if not isinstance(payload, str):
            raise FrameDecodeError("Text frame payload must be a string")
        return TextDelta(payload)

    if tag == TERMINAL_TAG:
        if not isinstance(payload, dict):
            raise FrameDecodeError("Terminal frame payload must be an object")
        finish_reason = payload.get("finishReason")
        conversation_id = payload.get("conversationId")
        if not isinstance(finish_reason, str) or not isinstance(conversation_id, str):
            raise FrameDecodeError("Terminal frame needs finishReason and conversationId")
        return Terminal(finish_reason=finish_reason, conversation_id=conversation_id)

    raise FrameDecodeError(f"Unknown frame tag: {tag!r}")


def iter_frames(lines: Iterable[str]) -> Iterator[Frame]:
    """Decode a sequence of lines, skipping blank ones."""
    for line in lines:
        if line.strip():
            yield decode_frame(line)
