from __future__ import annotations

import asyncio
import enum
import os
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from backends import BackendConfig
from chunker import CHUNK_SIZE, chunk_text
from metrics_prom import CHUNKS, INFLIGHT, TOKENS, TURN_COUNT, TURN_LATENCY_MS
from normalizer import normalize_reply
from obs_log import estimate_cost_usd, log
from schemas import ChatTurnRequest, UpstreamReply, UpstreamRequest
from sse_events import ChunkEvent, ConnectedEvent, DoneEvent, ErrorEvent, SSEBase
from trace_store import RedisTraceStore
from utils_obs import Timer
from webhook_client import WebhookClient

CHUNK_DELAY_SEC = float(os.getenv("CHUNK_DELAY_SEC", "0.1"))

IsCancelled = Callable[[], Awaitable[bool]]


class EncoderState(str, enum.Enum):
    INIT = "init"
    CONNECTED = "connected"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class StreamEncoder:
    """
    한 turn의 이벤트 시퀀스를 만드는 pull 방식 producer.

        INIT -> CONNECTED -> STREAMING -> TERMINATED

    - connected 이벤트는 항상 첫 번째
    - 업스트림/정규화 단계에서 실패하면 error 하나를 내고 바로 종료 (chunk 없음)
    - sources/usage는 마지막 chunk에만 붙는다
    - is_cancelled()는 업스트림 호출 전과 매 chunk 전에 확인
    """

    def __init__(
        self,
        *,
        turn: ChatTurnRequest,
        upstream: UpstreamRequest,
        backend: BackendConfig,
        client: WebhookClient,
        request_id: str,
        is_cancelled: Optional[IsCancelled] = None,
        trace: Optional[RedisTraceStore] = None,
        chunk_size: int = CHUNK_SIZE,
        chunk_delay_sec: Optional[float] = None,
        endpoint: str = "stream",
    ):
        self.turn = turn
        self.upstream = upstream
        self.backend = backend
        self.client = client
        self.request_id = request_id
        self.is_cancelled = is_cancelled
        self.trace = trace
        self.chunk_size = chunk_size
        self.chunk_delay_sec = CHUNK_DELAY_SEC if chunk_delay_sec is None else chunk_delay_sec
        self.endpoint = endpoint

        self.state = EncoderState.INIT
        self.status: Optional[str] = None   # done / error / cancelled / aborted
        self.reply: Optional[UpstreamReply] = None
        self.emitted: List[str] = []
        self._used = False

    async def _cancelled(self) -> bool:
        if self.is_cancelled is None:
            return False
        return bool(await self.is_cancelled())

    async def _emit(self, event: SSEBase) -> SSEBase:
        self.emitted.append(event.type)
        if self.trace is not None:
            await self.trace.record(self.request_id, event)
        return event

    async def _fetch(self) -> UpstreamReply:
        raw = await self.client.fetch_reply(
            self.upstream, self.turn, self.backend, request_id=self.request_id
        )
        return normalize_reply(raw)

    async def events(self) -> AsyncIterator[SSEBase]:
        if self._used:
            raise RuntimeError("StreamEncoder.events() can only be consumed once")
        self._used = True

        timer = Timer.start()
        INFLIGHT.labels(endpoint=self.endpoint).inc()
        try:
            if self.trace is not None:
                await self.trace.start(self.request_id, backend=self.backend.name, url=self.upstream.url)
            yield await self._emit(ConnectedEvent())
            self.state = EncoderState.CONNECTED

            if await self._cancelled():
                self.status = "cancelled"
                return

            try:
                self.reply = await self._fetch()
            except Exception as e:
                # connected 이후의 실패는 in-band error 이벤트로 (헤더는 이미 나갔음)
                self.status = "error"
                log(
                    "turn_error",
                    request_id=self.request_id,
                    backend=self.backend.name,
                    error_type=type(e).__name__,
                    message=str(e),
                )
                yield await self._emit(ErrorEvent(error=str(e) or type(e).__name__))
                return

            self.state = EncoderState.STREAMING
            chunks = list(chunk_text(self.reply.output, self.chunk_size))
            for i, content in enumerate(chunks):
                if await self._cancelled():
                    self.status = "cancelled"
                    return

                is_last = i == len(chunks) - 1
                yield await self._emit(ChunkEvent(
                    content=content,
                    is_last=is_last,
                    sources=self.reply.sources if is_last else None,
                    usage=self.reply.usage if is_last else None,
                ))
                CHUNKS.labels(backend=self.backend.name).inc()

                # 생성되는 것처럼 보이게 chunk 사이에 잠깐 쉰다
                if not is_last and self.chunk_delay_sec > 0:
                    await asyncio.sleep(self.chunk_delay_sec)

            self.status = "done"
            yield await self._emit(DoneEvent())

        except (asyncio.CancelledError, GeneratorExit):
            # 클라이언트 연결 끊김 등으로 producer가 중간에 닫힘
            if self.status is None:
                self.status = "aborted"
            raise

        finally:
            self.state = EncoderState.TERMINATED
            INFLIGHT.labels(endpoint=self.endpoint).dec()
            self._record(timer.ms())

    def _record(self, latency_ms: int) -> None:
        backend = self.backend.name
        status = self.status or "aborted"
        TURN_COUNT.labels(endpoint=self.endpoint, backend=backend, status=status).inc()
        TURN_LATENCY_MS.labels(endpoint=self.endpoint, backend=backend).observe(latency_ms)

        usage = self.reply.usage.model_dump(by_alias=True) if self.reply and self.reply.usage else {}
        if self.reply and self.reply.usage and status == "done":
            TOKENS.labels(backend=backend, kind="prompt").inc(self.reply.usage.prompt_tokens)
            TOKENS.labels(backend=backend, kind="completion").inc(self.reply.usage.completion_tokens)
            TOKENS.labels(backend=backend, kind="total").inc(self.reply.usage.total_tokens)

        if status == "cancelled" or status == "aborted":
            log("turn_cancelled", request_id=self.request_id, backend=backend, status=status,
                latency_ms=latency_ms, emitted=self.emitted)
            return

        log(
            "turn_done" if status == "done" else "turn_failed",
            request_id=self.request_id,
            endpoint=self.endpoint,
            backend=backend,
            status=status,
            latency_ms=latency_ms,
            chunks=self.emitted.count("chunk"),
            usage=usage,
            cost_usd=estimate_cost_usd(usage),
        )
