import asyncio
import os
import sys

from dotenv import load_dotenv

from schemas import ChatTurnRequest
from stream_consumer import AbruptTermination, RelayClient, RelayRequestError, StreamEventError

load_dotenv()

BASE = os.getenv("RELAY_URL", "http://localhost:8000")
BACKEND = os.getenv("RELAY_BACKEND", "python")

async def main(text: str) -> int:
    client = RelayClient(BASE)
    messages = [{"role": "user", "content": text}]

    try:
        msg = await client.send(ChatTurnRequest(text=text, backend=BACKEND), messages)
    except RelayRequestError as e:
        print(f"[relay error {e.status}] {e.detail}", file=sys.stderr)
        return 2
    except StreamEventError as e:
        print(f"[stream error] {e}", file=sys.stderr)
        return 1
    except AbruptTermination as e:
        print(f"[aborted] {e}", file=sys.stderr)
        return 1

    if msg is None:
        print("(empty answer)")
        return 0

    print("\n==== ANSWER ====")
    print(msg.content)
    if msg.sources:
        print("\n==== SOURCES ====")
        for s in msg.sources:
            print(f"- {s.title} <{s.url}>")
    if msg.usage:
        u = msg.usage
        print(f"\nTokens: {u.total_tokens} (prompt: {u.prompt_tokens}, completion: {u.completion_tokens})")
    return 0

if __name__ == '__main__':
    if len(sys.argv) < 2:
        raise SystemExit("usage: python chat_cli.py \"질문\"")
    raise SystemExit(asyncio.run(main(" ".join(sys.argv[1:]))))
