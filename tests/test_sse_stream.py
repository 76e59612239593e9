import json

import httpx
import pytest
from fastapi.testclient import TestClient

import api_server
from sse_events import SSE_ADAPTER

LONG_ANSWER = " ".join(f"Paragraph {i} of the workflow answer is here." for i in range(40))

@pytest.fixture
def client():
    return TestClient(api_server.app)

@pytest.fixture
def use_webhook(monkeypatch, fake_webhook):
    def _use(*responses):
        hook = fake_webhook(*responses)
        monkeypatch.setattr(api_server, "webhook_client", hook.client())
        return hook
    return _use

def _read_events(r):
    events = []
    for raw in r.iter_lines():
        if not raw:
            continue
        line = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        if not line.startswith("data: "):
            continue
        evt = json.loads(line[len("data: "):])
        # 스키마 검증
        SSE_ADAPTER.validate_python(evt)
        events.append(evt)
    return events

def test_sse_events_schema_and_order(n8n_env, use_webhook, client):
    """
        목적: /chat/stream이 내보내는 이벤트가 스키마와 순서 계약을 지키는지 검증한다.
        webhook 호출은 MockTransport로 대체한다.
    """
    use_webhook(httpx.Response(200, json={
        "output": LONG_ANSWER,
        "sources": [{"title": "n8n", "url": "https://docs.n8n.io", "snippet": ""}],
        "usage": {"promptTokens": 5, "completionTokens": 6, "totalTokens": 11},
    }))

    with client.stream("POST", "/chat/stream", json={"text": "워크플로 설명해줘"}) as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        assert r.headers["cache-control"] == "no-cache"
        events = _read_events(r)

    types = [e["type"] for e in events]
    assert types[0] == "connected"
    assert types[-1] == "done"
    assert set(types[1:-1]) == {"chunk"}

    chunks = [e for e in events if e["type"] == "chunk"]
    assert len(chunks) > 1
    assert [c["isLast"] for c in chunks] == [False] * (len(chunks) - 1) + [True]
    assert all("sources" not in c and "usage" not in c for c in chunks[:-1])
    assert chunks[-1]["usage"]["totalTokens"] == 11
    assert "".join(c["content"] for c in chunks).replace(" ", "") == LONG_ANSWER.replace(" ", "")

def test_request_id_is_echoed(n8n_env, use_webhook, client):
    use_webhook(httpx.Response(200, json={"output": "ok"}))

    with client.stream("POST", "/chat/stream", json={"text": "hi"}, headers={"X-Request-ID": "rid-42"}) as r:
        assert r.headers["x-request-id"] == "rid-42"
        _read_events(r)

    with client.stream("POST", "/chat/stream", json={"text": "hi"}) as r:
        assert r.headers["x-request-id"]
        _read_events(r)

def test_legacy_send_path_and_chat_input(n8n_env, use_webhook, client):
    hook = use_webhook(httpx.Response(200, json={"output": "legacy ok"}))

    with client.stream("POST", "/api/chat/send", json={"chatInput": "Hola", "backend": "B"}) as r:
        assert r.status_code == 200
        events = _read_events(r)

    assert [e["type"] for e in events] == ["connected", "chunk", "done"]
    assert json.loads(hook.requests[0].content)["backendTag"] == "gemini"

def test_upstream_failure_is_in_band_error(n8n_env, use_webhook, client):
    use_webhook(httpx.Response(500))

    with client.stream("POST", "/chat/stream", json={"text": "Hola"}) as r:
        # 헤더는 이미 200으로 나갔다
        assert r.status_code == 200
        events = _read_events(r)

    assert [e["type"] for e in events] == ["connected", "error"]
    assert "500" in events[1]["error"]

def test_fallback_keeps_stream_shape(n8n_env, use_webhook, client):
    n8n_env.setenv("FALLBACK_ON_UPSTREAM_FAILURE_PYTHON", "1")
    use_webhook(httpx.Response(500))

    with client.stream("POST", "/chat/stream", json={"text": "Hola", "backend": "A"}) as r:
        events = _read_events(r)

    assert events[0]["type"] == "connected" and events[-1]["type"] == "done"
    last = [e for e in events if e["type"] == "chunk"][-1]
    assert "Hola" in last["content"]
    assert len(last["sources"]) == 1
    assert last["usage"]["totalTokens"] == 70

@pytest.mark.parametrize("payload", [{"text": ""}, {"text": "   "}, {}, {"topK": 5}, {"chatInput": ""}])
@pytest.mark.parametrize("path", ["/chat/stream", "/chat"])
def test_empty_text_is_400(n8n_env, use_webhook, client, payload, path):
    hook = use_webhook(httpx.Response(200, json={"output": "x"}))

    r = client.post(path, json=payload)

    assert r.status_code == 400
    assert r.json() == {"error": "text is required"}
    assert hook.calls == 0

def test_missing_configuration_is_500(clean_env, use_webhook, client):
    use_webhook(httpx.Response(200, json={"output": "x"}))

    r = client.post("/chat/stream", json={"text": "Hola"})

    assert r.status_code == 500
    assert "N8N configuration missing" in r.json()["error"]

@pytest.mark.parametrize("payload, field", [
    ({"text": "Hola", "backend": "claude"}, "backend"),
    ({"text": "Hola", "topK": 0}, "topK"),
])
def test_invalid_body_is_422_with_error_body(n8n_env, client, payload, field):
    r = client.post("/chat/stream", json=payload)

    assert r.status_code == 422
    body = r.json()
    assert set(body) == {"error"}
    assert field in body["error"]

def test_chat_collects_stream(n8n_env, use_webhook, client):
    use_webhook(httpx.Response(200, json={
        "output": LONG_ANSWER,
        "usage": {"promptTokens": 1, "completionTokens": 1, "totalTokens": 2},
    }))

    r = client.post("/chat", json={"text": "Hola"}, headers={"X-Request-ID": "collect-1"})

    assert r.status_code == 200, r.text
    data = r.json()
    assert data["request_id"] == "collect-1"
    assert data["output"] == LONG_ANSWER
    assert data["chunks"] > 1
    assert data["usage"]["totalTokens"] == 2

def test_chat_maps_upstream_error_to_502(n8n_env, use_webhook, client):
    use_webhook(httpx.Response(500))

    r = client.post("/chat", json={"text": "Hola"})

    assert r.status_code == 502
    assert "500" in r.json()["error"]

def test_health(client):
    assert client.get("/health").json() == {"ok": True}

def test_readiness_reports_shared_urls(n8n_env, client):
    n8n_env.setenv("N8N_WEBHOOK_PATH_GEMINI", "/webhook/gemini")

    data = client.get("/readiness").json()

    assert data["ok"] is True
    assert data["backends"]["gemini"]["url"] == "http://n8n.test/webhook/gemini"
    # chatgpt는 전용 경로가 없어서 python과 같은 URL
    assert data["backends"]["chatgpt"]["url"] == data["backends"]["python"]["url"]
    assert data["shared_urls"] is True

def test_readiness_without_configuration(clean_env, client):
    data = client.get("/readiness").json()
    assert data["ok"] is False
    assert data["backends"]["python"]["ok"] is False

def test_metrics_after_turn(n8n_env, use_webhook, client):
    use_webhook(httpx.Response(200, json={"output": "ok"}))
    client.post("/chat", json={"text": "Hola"})

    r = client.get("/metrics")

    assert r.status_code == 200
    assert "webhook_relay_turns_total" in r.text

def test_trace_records_stream(monkeypatch, n8n_env, use_webhook, client):
    from test_trace_store import FakeRedis
    from trace_store import RedisTraceStore

    monkeypatch.setattr(api_server, "trace_store", RedisTraceStore(FakeRedis()))
    use_webhook(httpx.Response(200, json={"output": "traced"}))

    with client.stream("POST", "/chat/stream", json={"text": "Hola"}, headers={"X-Request-ID": "tr-1"}) as r:
        _read_events(r)

    data = client.get("/trace/tr-1").json()
    assert data["enabled"] is True
    assert [e["type"] for e in data["events"]] == ["connected", "chunk", "done"]
    assert data["meta"]["url"] == "http://n8n.test/webhook/chat"

def test_trace_disabled_returns_empty(client):
    data = client.get("/trace/unknown-id").json()
    assert data == {"request_id": "unknown-id", "enabled": False, "events": []}

def test_trace_read_outage_returns_empty(monkeypatch, client):
    from test_trace_store import BrokenRedis
    from trace_store import RedisTraceStore

    monkeypatch.setattr(api_server, "trace_store", RedisTraceStore(BrokenRedis()))

    r = client.get("/trace/tr-down")

    assert r.status_code == 200
    assert r.json() == {"request_id": "tr-down", "enabled": True, "events": []}
