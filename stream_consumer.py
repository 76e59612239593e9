from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from obs_log import log
from schemas import ChatTurnRequest, Source, Usage
from sse_events import ChunkEvent, DoneEvent, ErrorEvent, StreamEvent, parse_event

DATA_PREFIX = "data:"


class StreamEventError(RuntimeError):
    """서버가 error 이벤트를 보냄."""


class AbruptTermination(RuntimeError):
    """done/error 없이 스트림이 끝남."""


class RelayRequestError(RuntimeError):
    """스트림이 열리기 전에 relay가 HTTP 에러로 응답함."""

    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"relay request failed ({status}): {detail}")


class SSEDecoder:
    """
    바이트 조각을 받아서 완성된 이벤트만 돌려주는 증분 디코더.

    네트워크 read 경계는 레코드 경계와 상관이 없다:
      - read 하나에 레코드 여러 개가 들어올 수 있고
      - 레코드 하나(심지어 UTF-8 한 글자)가 read 여러 개로 쪼개질 수 있다.
    그래서 마지막 줄바꿈 이후의 부분 줄은 buffer에 남겨두고 다음 read와 이어 붙인다.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, data: bytes) -> List[StreamEvent]:
        self._buffer += self._utf8.decode(data)
        if "\n" not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        events: List[StreamEvent] = []
        for line in lines:
            evt = self._parse_line(line.rstrip("\r"))
            if evt is not None:
                events.append(evt)
        return events

    def _parse_line(self, line: str) -> Optional[StreamEvent]:
        # 빈 줄(레코드 구분), 주석(:), event:/id: 같은 필드는 무시
        if not line.startswith(DATA_PREFIX):
            return None
        raw = line[len(DATA_PREFIX):].lstrip(" ")
        try:
            return parse_event(json.loads(raw))
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError도 ValueError
            self.skipped += 1
            log("sse_decode_skipped", line=line[:200], error=str(e)[:200])
            return None


async def iter_events(byte_stream: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """바이트 스트림 -> StreamEvent (lazy, 한 번만 소비 가능)."""
    decoder = SSEDecoder()
    async for data in byte_stream:
        for evt in decoder.feed(data):
            yield evt


@dataclass
class AssistantMessage:
    role: str = "assistant"
    content: str = ""
    sources: Optional[List[Source]] = None
    usage: Optional[Usage] = None
    finalized: bool = field(default=False, repr=False)

    def apply(self, chunk: ChunkEvent) -> None:
        if self.finalized:
            raise RuntimeError("assistant message is already finalized")
        self.content += chunk.content
        if chunk.sources is not None:
            self.sources = chunk.sources
        if chunk.usage is not None:
            self.usage = chunk.usage

    def finalize(self) -> None:
        self.finalized = True

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.sources is not None:
            out["sources"] = [s.model_dump(by_alias=True) for s in self.sources]
        if self.usage is not None:
            out["usage"] = self.usage.model_dump(by_alias=True)
        return out


async def consume_stream(
    byte_stream: AsyncIterable[bytes],
    messages: List[Any],
) -> Optional[AssistantMessage]:
    """
    이벤트를 읽어서 messages 끝의 assistant 메시지에 누적한다.
    첫 chunk에서 AssistantMessage를 만들어 messages에 붙인다.

    - done: 메시지를 확정하고 돌려줌 (chunk가 없었으면 None)
    - error: 메시지를 확정하고 StreamEventError
    - done/error 없이 끝남: 메시지를 확정하고 AbruptTermination
    """
    current: Optional[AssistantMessage] = None

    def _finalize() -> None:
        if current is not None:
            current.finalize()

    events = iter_events(byte_stream)
    try:
        async for evt in events:
            if isinstance(evt, ChunkEvent):
                if current is None:
                    current = AssistantMessage()
                    messages.append(current)
                current.apply(evt)
            elif isinstance(evt, ErrorEvent):
                _finalize()
                raise StreamEventError(evt.error)
            elif isinstance(evt, DoneEvent):
                _finalize()
                return current
    finally:
        await events.aclose()

    _finalize()
    raise AbruptTermination("stream closed before a done/error event")


class RelayClient:
    """relay 서버에 turn을 보내고 SSE 응답을 AssistantMessage로 모으는 httpx 클라이언트."""

    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/chat/stream",
        timeout_sec: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.path = path
        self.timeout_sec = timeout_sec
        self.transport = transport

    async def send(self, turn: ChatTurnRequest, messages: List[Any]) -> Optional[AssistantMessage]:
        payload = turn.model_dump(by_alias=True, exclude_none=True)
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout_sec, transport=self.transport
        ) as client:
            async with client.stream("POST", self.path, json=payload) as r:
                if r.status_code != 200:
                    body = (await r.aread()).decode(errors="ignore")
                    try:
                        detail = json.loads(body).get("error") or body
                    except (ValueError, AttributeError):
                        detail = body
                    raise RelayRequestError(r.status_code, detail or "relay error")
                return await consume_stream(r.aiter_bytes(), messages)
