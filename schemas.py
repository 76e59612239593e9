from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

BackendName = Literal["python", "gemini", "chatgpt"]

PRIMARY_BACKEND: BackendName = "python"

# 예전 클라이언트/문서에서 쓰던 A/B/C 표기 허용
BACKEND_ALIASES: Dict[str, BackendName] = {
    "A": "python",
    "B": "gemini",
    "C": "chatgpt",
}


class WireModel(BaseModel):
    """wire 포맷은 camelCase, 파이썬 코드에서는 snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Source(WireModel):
    title: str
    url: str
    snippet: str = ""


class Usage(WireModel):
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)
    total_tokens: int = Field(0, ge=0)

    @classmethod
    def zero(cls) -> "Usage":
        return cls(prompt_tokens=0, completion_tokens=0, total_tokens=0)


class ChatTurnRequest(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text: str = Field(..., validation_alias=AliasChoices("text", "chatInput"))
    top_k: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = None
    backend: BackendName = PRIMARY_BACKEND

    @field_validator("backend", mode="before")
    @classmethod
    def _backend_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return BACKEND_ALIASES.get(v, v)
        return v


class UpstreamBody(WireModel):
    text: str
    top_k: int
    temperature: float
    backend_tag: BackendName


class UpstreamRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    body: UpstreamBody

    def json_body(self) -> Dict[str, Any]:
        return self.body.model_dump(by_alias=True)


class UpstreamReply(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    output: str
    sources: Optional[List[Source]] = None
    usage: Optional[Usage] = None


class ChatResponse(BaseModel):
    request_id: str
    output: str
    chunks: int
    latency_ms: int
    sources: Optional[List[Source]] = None
    usage: Optional[Usage] = None
