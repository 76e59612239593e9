import asyncio
import os
import sys

# 모듈 import 전에 설정되어야 하는 값들 (모듈 상수로 읽힘)
os.environ.setdefault("CHUNK_DELAY_SEC", "0")
os.environ.setdefault("RETRY_MAX_ATTEMPTS", "1")
os.environ.setdefault("RETRY_BASE_WAIT_SEC", "0")
os.environ.setdefault("TRACE_ENABLED", "0")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import httpx
import pytest

from webhook_client import WebhookClient

RELAY_ENV = (
    "N8N_BASE_URL",
    "N8N_WEBHOOK_PATH",
    "N8N_WEBHOOK_PATH_GEMINI",
    "N8N_WEBHOOK_PATH_CHATGPT",
    "ALLOW_DEFAULT_PATH_FALLBACK",
    "DEFAULT_TOP_K",
    "TEMPERATURE_PYTHON",
    "TEMPERATURE_GEMINI",
    "TEMPERATURE_CHATGPT",
    "FALLBACK_ON_UPSTREAM_FAILURE_PYTHON",
    "FALLBACK_ON_UPSTREAM_FAILURE_GEMINI",
    "FALLBACK_ON_UPSTREAM_FAILURE_CHATGPT",
)

N8N_BASE = "http://n8n.test"
N8N_PATH = "/webhook/chat"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def clean_env(monkeypatch):
    for k in RELAY_ENV:
        monkeypatch.delenv(k, raising=False)
    return monkeypatch


@pytest.fixture
def n8n_env(clean_env):
    clean_env.setenv("N8N_BASE_URL", N8N_BASE)
    clean_env.setenv("N8N_WEBHOOK_PATH", N8N_PATH)
    return clean_env


class FakeWebhook:
    """httpx.MockTransport 핸들러. 받은 요청을 기록하고 정해둔 응답을 돌려준다."""

    def __init__(self, responses):
        # responses: httpx.Response / Exception / callable(request) 의 리스트. 마지막 것은 반복
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        idx = min(len(self.requests) - 1, len(self.responses) - 1)
        r = self.responses[idx]
        if isinstance(r, Exception):
            raise r
        if callable(r):
            return r(request)
        # 같은 Response 객체를 재사용하지 않도록 매번 새로 만든다
        return httpx.Response(r.status_code, headers=r.headers, content=r.content)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def client(self) -> WebhookClient:
        return WebhookClient(transport=httpx.MockTransport(self), timeout_sec=5)


@pytest.fixture
def fake_webhook():
    def _make(*responses):
        return FakeWebhook(responses)
    return _make
