from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from obs_log import log
from sse_events import SSEBase, event_payload

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
TRACE_ENABLED = os.getenv("TRACE_ENABLED", "0") == "1"
TRACE_TTL_SEC = int(os.getenv("TRACE_TTL_SEC", "86400"))        # 24h
TRACE_MAX_EVENTS = int(os.getenv("TRACE_MAX_EVENTS", "2000"))   # 리스트 길이 제한

def _key(request_id: str) -> str:
    return f"trace:{request_id}"

def _meta_key(request_id: str) -> str:
    return f"trace:{request_id}:meta"

@dataclass
class TraceEvent:
    ts: float
    type: str
    data: Dict[str, Any]

@dataclass
class RequestTrace:
    request_id: str
    events: List[TraceEvent]
    # backend, webhook url 등 turn 단위 정보
    meta: Dict[str, str] = field(default_factory=dict)

class RedisTraceStore:
    """
    turn 하나에서 클라이언트로 내보낸 SSE 이벤트를 Redis 리스트에 남긴다.
    어떤 webhook으로 갔는지는 별도 hash(meta)에 둔다.
    redis가 None이면 모든 호출이 아무것도 하지 않는다.
    """
    def __init__(self, redis: Optional[Redis] = None):
        self.redis = redis

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def start(self, request_id: str, *, backend: str, url: str) -> None:
        if self.redis is None:
            return
        k = _meta_key(request_id)
        try:
            await self.redis.hset(k, mapping={"backend": backend, "url": url, "started_at": str(time.time())})
            await self.redis.expire(k, TRACE_TTL_SEC)
        except RedisError as e:
            # trace가 안 써져도 turn은 계속 진행
            log("trace_write_failed", request_id=request_id, error=str(e))

    async def record(self, request_id: str, event: SSEBase) -> None:
        if self.redis is None:
            return
        data = event_payload(event)
        data.pop("type", None)

        k = _key(request_id)
        s = json.dumps({"ts": time.time(), "type": event.type, "data": data}, ensure_ascii=False)

        try:
            await self.redis.rpush(k, s)
            # 최신 TRACE_MAX_EVENTS개만 유지
            await self.redis.ltrim(k, -TRACE_MAX_EVENTS, -1)
            # TTL 갱신 (chunk가 길게 이어져도 trace 유지)
            await self.redis.expire(k, TRACE_TTL_SEC)
        except RedisError as e:
            log("trace_write_failed", request_id=request_id, event_type=event.type, error=str(e))

    async def get(self, request_id: str) -> Optional[RequestTrace]:
        if self.redis is None:
            return None
        try:
            items = await self.redis.lrange(_key(request_id), 0, -1)
            meta = await self.redis.hgetall(_meta_key(request_id)) or {}
        except RedisError as e:
            log("trace_read_failed", request_id=request_id, error=str(e))
            return None
        if not items:
            return None

        events: List[TraceEvent] = []
        for it in items:
            try:
                obj = json.loads(it)
                events.append(TraceEvent(ts=obj["ts"], type=obj["type"], data=obj.get("data", {})))
            except (ValueError, KeyError, TypeError):
                # 파싱 실패 항목은 무시
                continue

        return RequestTrace(request_id=request_id, events=events, meta=dict(meta))

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()

def build_trace_store() -> RedisTraceStore:
    if not TRACE_ENABLED:
        return RedisTraceStore(None)
    return RedisTraceStore(Redis.from_url(REDIS_URL, decode_responses=True))
