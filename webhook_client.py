from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Optional

import httpx

from backends import BackendConfig
from metrics_prom import FALLBACKS, UPSTREAM_LATENCY_MS
from obs_log import log
from otel import get_tracer
from resilience import WEBHOOK_TIMEOUT_SEC, webhook_retry, with_timeout
from schemas import ChatTurnRequest, Source, UpstreamReply, UpstreamRequest, Usage
from utils_obs import Timer

FALLBACK_HELP_URL = os.getenv(
    "FALLBACK_HELP_URL",
    "https://docs.n8n.io/integrations/builtin/core-nodes/n8n-nodes-base.webhook/",
)

# 대체 응답의 usage는 고정값
FALLBACK_USAGE = Usage(prompt_tokens=20, completion_tokens=50, total_tokens=70)

ERROR_BODY_PREVIEW = 300


class UpstreamError(Exception):
    kind = "upstream_error"


class UpstreamHTTPError(UpstreamError):
    kind = "http_error"

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"N8N webhook failed: {status}")


class UpstreamParseError(UpstreamError):
    kind = "parse_error"


class UpstreamNetworkError(UpstreamError):
    kind = "network_error"


def fallback_reply(turn: ChatTurnRequest, backend: str) -> UpstreamReply:
    """업스트림 장애 시 스트림 모양을 유지하기 위한 결정적(deterministic) 대체 응답."""
    return UpstreamReply(
        output=(
            f"[{backend}] 백엔드에 연결하지 못해 임시 응답을 보냅니다.\n"
            f"받은 질문: \"{turn.text}\"\n"
            "webhook 설정(N8N_BASE_URL, 백엔드별 N8N_WEBHOOK_PATH_*)을 확인한 뒤 다시 시도해 주세요."
        ),
        sources=[
            Source(
                title="Webhook 설정 가이드",
                url=FALLBACK_HELP_URL,
                snippet="webhook URL과 경로, 응답 형식({output, sources, usage}) 설정 방법",
            )
        ],
        usage=FALLBACK_USAGE,
    )


class WebhookClient:
    """
    webhook 백엔드에 한 번 POST하고 JSON 응답을 돌려준다.
    실패는 UpstreamHTTPError / UpstreamParseError / UpstreamNetworkError로 분류한다.
    """

    def __init__(
        self,
        *,
        timeout_sec: float = WEBHOOK_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_sec = timeout_sec
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        # 이벤트 루프 안에서 처음 쓸 때 생성
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post_once(self, upstream: UpstreamRequest) -> httpx.Response:
        try:
            return await with_timeout(
                self.client.post(upstream.url, json=upstream.json_body()),
                self.timeout_sec,
            )
        except (httpx.TransportError, asyncio.TimeoutError) as e:
            # DNS 실패, connection refused, TLS, timeout
            raise UpstreamNetworkError(f"N8N webhook unreachable: {type(e).__name__}: {e}") from e

    async def post(self, upstream: UpstreamRequest) -> Any:
        backend = upstream.body.backend_tag
        timer = Timer.start()
        outcome = "ok"

        with get_tracer().start_as_current_span("webhook.post") as span:
            span.set_attribute("relay.backend", backend)
            span.set_attribute("http.url", upstream.url)
            try:
                resp = await webhook_retry(UpstreamNetworkError)(self._post_once)(upstream)

                if not resp.is_success:
                    raise UpstreamHTTPError(resp.status_code, resp.text[:ERROR_BODY_PREVIEW])

                try:
                    return resp.json()
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    raise UpstreamParseError(f"N8N webhook returned invalid JSON: {e}") from e

            except UpstreamError as e:
                outcome = e.kind
                span.set_attribute("relay.upstream_error", e.kind)
                raise
            except asyncio.CancelledError:
                # 클라이언트가 끊겨서 호출이 중간에 취소됨
                outcome = "cancelled"
                span.set_attribute("relay.upstream_error", outcome)
                raise
            finally:
                UPSTREAM_LATENCY_MS.labels(backend=backend, outcome=outcome).observe(timer.ms())

    async def fetch_reply(
        self,
        upstream: UpstreamRequest,
        turn: ChatTurnRequest,
        cfg: BackendConfig,
        *,
        request_id: Optional[str] = None,
    ) -> Any:
        """
        post() + 장애 정책. cfg.fallback_on_failure면 HTTP/네트워크 실패를
        fallback_reply로 바꿔서 돌려준다. JSON 파싱 실패는 항상 그대로 올린다.
        """
        try:
            return await self.post(upstream)
        except (UpstreamHTTPError, UpstreamNetworkError) as e:
            log(
                "upstream_error",
                request_id=request_id,
                backend=cfg.name,
                kind=e.kind,
                status=getattr(e, "status", None),
                message=str(e),
                fallback=cfg.fallback_on_failure,
            )
            if not cfg.fallback_on_failure:
                raise
            FALLBACKS.labels(backend=cfg.name, reason=e.kind).inc()
            log("upstream_fallback", request_id=request_id, backend=cfg.name, reason=e.kind)
            return fallback_reply(turn, cfg.name).model_dump(by_alias=True)
