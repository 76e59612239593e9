from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from schemas import Source, Usage, WireModel

# 공통 베이스
class SSEBase(WireModel):
    type: str

# --- Lifecycle ---
class ConnectedEvent(SSEBase):
    type: Literal["connected"] = "connected"

class DoneEvent(SSEBase):
    type: Literal["done"] = "done"

# --- Content ---
class ChunkEvent(SSEBase):
    type: Literal["chunk"] = "chunk"
    content: str
    is_last: bool
    # 마지막 chunk에만 붙는다
    sources: Optional[List[Source]] = None
    usage: Optional[Usage] = None

# --- Errors ---
class ErrorEvent(SSEBase):
    type: Literal["error"] = "error"
    error: str

# Union 타입: 서버/클라이언트/테스트에서 검증할 때 사용
StreamEvent = Annotated[
    Union[ConnectedEvent, ChunkEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

TERMINAL_TYPES = ("done", "error")

SSE_ADAPTER = TypeAdapter(StreamEvent)


def event_payload(event: SSEBase) -> dict:
    return event.model_dump(by_alias=True, exclude_none=True)


def format_sse(event: SSEBase) -> str:
    """`data: <json>\\n\\n` 한 레코드로 직렬화."""
    return f"data: {json.dumps(event_payload(event), ensure_ascii=False)}\n\n"


def parse_event(obj: Any) -> StreamEvent:
    # 실패하면 pydantic.ValidationError
    return SSE_ADAPTER.validate_python(obj)
