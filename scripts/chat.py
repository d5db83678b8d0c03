#!/usr/bin/env python3
"""Chat with a running VBot service from the terminal.

Usage examples:
    # One question, new conversation
    uv run python scripts/chat.py --user demo "How did my workouts go this week?"

    # Continue an existing conversation
    uv run python scripts/chat.py --user demo --conversation 3f2a... "And my protein?"

    # Interactive session against another host
    uv run python scripts/chat.py --user demo --url http://localhost:8080
"""

import argparse
import sys

import httpx

from vbot.config import settings
from vbot.llm.frames import FrameDecodeError, Terminal, TextDelta, decode_frame


def send(
    client: httpx.Client,
    base_url: str,
    user_id: str,
    history: list[dict[str, str]],
    conversation_id: str | None,
) -> tuple[str, str | None]:
    """Send one turn and print the reply as it streams. Returns (reply, conversation_id)."""
    body: dict = {"messages": history}
    if conversation_id:
        body["conversationId"] = conversation_id

    reply = ""
    with client.stream(
        "POST",
        f"{base_url.rstrip('/')}/chat",
        json=body,
        headers={settings.identity_header: user_id},
    ) as response:
        if response.status_code != 200:
            print(f"ERROR {response.status_code}: {response.read().decode()}", file=sys.stderr)
            return "", conversation_id

        conversation_id = response.headers.get("X-Conversation-Id", conversation_id)
        for line in response.iter_lines():
            if not line.strip():
                continue
            try:
                frame = decode_frame(line)
            except FrameDecodeError as exc:
                print(f"\n[bad frame: {exc}]", file=sys.stderr)
                continue
            if isinstance(frame, TextDelta):
                reply += frame.text
                print(frame.text, end="", flush=True)
            elif isinstance(frame, Terminal):
                conversation_id = frame.conversation_id
                print(f"\n[{frame.finish_reason}]", file=sys.stderr)
    print()
    return reply, conversation_id


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with VBot")
    parser.add_argument("message", nargs="?", help="Send one message and exit")
    parser.add_argument("--user", required=True, help="User ID to send as")
    parser.add_argument("--conversation", help="Conversation ID to continue")
    parser.add_argument(
        "--url", default=f"http://localhost:{settings.server_port}", help="Service base URL"
    )
    args = parser.parse_args()

    history: list[dict[str, str]] = []
    conversation_id = args.conversation

    with httpx.Client(timeout=httpx.Timeout(60.0, connect=10.0)) as client:
        if args.message:
            history.append({"role": "user", "content": args.message})
            send(client, args.url, args.user, history, conversation_id)
            return

        while True:
            try:
                text = input("> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not text:
                continue
            history.append({"role": "user", "content": text})
            reply, conversation_id = send(client, args.url, args.user, history, conversation_id)
            if reply:
                history.append({"role": "assistant", "content": reply})


if __name__ == "__main__":
    main()
