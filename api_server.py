import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from backends import BACKENDS, ConfigError, dispatch, load_settings
from otel import setup_tracing
from relay_core import StreamEncoder
from schemas import ChatResponse, ChatTurnRequest
from sse_events import SSE_ADAPTER, ChunkEvent, ErrorEvent, SSEBase, event_payload, format_sse
from trace_store import build_trace_store
from utils_obs import Timer, ensure_request_id
from webhook_client import WebhookClient

load_dotenv()

# 로깅 설정 (uvicorn 로그와 통합)
logger = logging.getLogger("uvicorn")

VALIDATE_SSE = os.getenv("VALIDATE_SSE", "0") == "1"

# 전역으로 1번만 생성 (테스트에서는 monkeypatch로 교체)
webhook_client = WebhookClient()
trace_store = build_trace_store()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 서버 시작 시 실행
    if setup_tracing():
        logger.info("LIFESPAN: OpenTelemetry tracing enabled.")
    try:
        load_settings()
    except ConfigError as e:
        # 잘못된 값은 요청마다 다시 검사되므로 여기서는 경고만
        logger.warning(f"LIFESPAN: relay configuration problem: {e}")

    yield

    # Shutdown: 서버 종료 시 실행
    logger.info("LIFESPAN: Shutdown initiated. Closing webhook client.")
    await webhook_client.aclose()
    await trace_store.aclose()

app = FastAPI(title="Webhook Chat Relay (n8n -> SSE)", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    # 스트림 열기 전 에러 바디는 {"error": ...}
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

# text가 없으면 400, 나머지 바디 검증 실패는 422. 둘 다 {"error": ...}
TEXT_LOCS = {("body",), ("body", "text")}

def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = err.get("msg", "invalid request")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid request"

@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    for err in exc.errors():
        if err.get("type") == "missing" and tuple(err.get("loc", ())) in TEXT_LOCS:
            return JSONResponse(status_code=400, content={"error": "text is required"})
    return JSONResponse(status_code=422, content={"error": _validation_message(exc)})

def _prepare(req: ChatTurnRequest, endpoint: str, request_id: str, request: Optional[Request]) -> StreamEncoder:
    """
    스트림을 열기 전에 검증 + dispatch.
    여기서 실패하면 일반 HTTP 에러로 응답 (아직 헤더가 안 나갔음).
    """
    if not req.text.strip():
        raise HTTPException(status_code=400, detail="text is required")

    try:
        settings = load_settings()
        upstream = dispatch(req, settings)
    except ConfigError as e:
        logger.error(f"config error request_id={request_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return StreamEncoder(
        turn=req,
        upstream=upstream,
        backend=settings.backend(req.backend),
        client=webhook_client,
        request_id=request_id,
        is_cancelled=request.is_disconnected if request is not None else None,
        trace=trace_store if trace_store.enabled else None,
        endpoint=endpoint,
    )

def _sse(event: SSEBase) -> str:
    if VALIDATE_SSE:
        # 스키마 검증: 실패하면 예외 발생
        SSE_ADAPTER.validate_python(event_payload(event))
    return format_sse(event)

@app.get("/health")
def health():
    return {"ok": True}

@app.get("/readiness")
def readiness():
    """백엔드별로 현재 설정으로 dispatch가 되는지 확인."""
    try:
        settings = load_settings()
    except ConfigError as e:
        return {"ok": False, "error": str(e), "backends": {}}

    backends = {}
    for name in BACKENDS:
        try:
            probe = ChatTurnRequest(text="ping", backend=name)
            upstream = dispatch(probe, settings)
            backends[name] = {"ok": True, "url": upstream.url,
                              "fallback_on_failure": settings.backend(name).fallback_on_failure}
        except ConfigError as e:
            backends[name] = {"ok": False, "error": str(e)}

    urls = [b["url"] for b in backends.values() if b.get("ok")]
    return {
        "ok": bool(backends) and all(b["ok"] for b in backends.values()),
        # 서로 다른 백엔드가 같은 URL로 가고 있으면 알려준다 (기본 경로 fallback)
        "shared_urls": len(urls) != len(set(urls)),
        "backends": backends,
    }

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.post("/chat/stream")
@app.post("/api/chat/send")
async def chat_stream(
    req: ChatTurnRequest,
    request: Request,
    x_request_id: Optional[str] = Header(default=None),
):
    rid = ensure_request_id(x_request_id)
    encoder = _prepare(req, "stream", rid, request)

    async def event_gen():
        async for evt in encoder.events():
            yield _sse(evt)

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Request-ID": rid},
    )

@app.post("/chat", response_model=ChatResponse)
async def chat(
    req: ChatTurnRequest,
    x_request_id: Optional[str] = Header(default=None),
):
    """스트림 대신 같은 이벤트 흐름을 모아서 한 번에 응답."""
    rid = ensure_request_id(x_request_id)
    timer = Timer.start()
    encoder = _prepare(req, "collect", rid, None)

    chunks = 0
    last: Optional[ChunkEvent] = None
    error: Optional[str] = None
    async for evt in encoder.events():
        if isinstance(evt, ChunkEvent):
            chunks += 1
            last = evt
        elif isinstance(evt, ErrorEvent):
            error = evt.error

    if error is not None:
        raise HTTPException(status_code=502, detail=error)

    return ChatResponse(
        request_id=rid,
        output=encoder.reply.output if encoder.reply else "",
        chunks=chunks,
        latency_ms=timer.ms(),
        sources=last.sources if last else None,
        usage=last.usage if last else None,
    )

@app.get("/trace/{request_id}")
async def get_trace(request_id: str):
    tr = await trace_store.get(request_id)
    if not tr:
        return {"request_id": request_id, "enabled": trace_store.enabled, "events": []}
    return {
        "request_id": request_id,
        "enabled": True,
        "meta": tr.meta,
        "events": [
            {"ts": e.ts, "type": e.type, "data": e.data}
            for e in tr.events
        ]
    }
