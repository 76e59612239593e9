import os, sys, json, statistics, time
import requests

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sse_events import TERMINAL_TYPES

BASE = os.getenv("BASE_URL", "http://localhost:8000")
N = int(os.getenv("GATE_N", "10"))
BACKEND = os.getenv("GATE_BACKEND", "python")
MAX_P95_MS = int(os.getenv("GATE_MAX_P95_MS", "8000"))
MAX_FIRST_CHUNK_MS = int(os.getenv("GATE_MAX_FIRST_CHUNK_MS", "6000"))

def check_order(types):
    """connected, chunk*, done|error 순서인지 확인. 문제 있으면 이유 문자열."""
    if not types or types[0] != "connected":
        return "first event is not connected"
    if types[-1] not in TERMINAL_TYPES:
        return "missing terminal event"
    middle = types[1:-1]
    if any(t != "chunk" for t in middle):
        return f"unexpected events between connected and terminal: {middle}"
    if types[-1] == "error" and middle:
        return "chunk before error"
    return None

def run_once(i):
    payload = {"text": "n8n webhook이 뭐야? 3줄로 요약해줘.", "backend": BACKEND}
    t0 = time.time()
    first_chunk_ms = None
    types = []

    with requests.post(f"{BASE}/chat/stream", json=payload, stream=True, timeout=120,
                       headers={"X-Request-ID": f"gate-{int(t0)}-{i}"}) as r:
        if r.status_code != 200:
            return {"ok": False, "reason": f"http {r.status_code}"}
        for line in r.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            evt = json.loads(line[len("data: "):])
            types.append(evt["type"])
            if evt["type"] == "chunk" and first_chunk_ms is None:
                first_chunk_ms = int((time.time() - t0) * 1000)

    total_ms = int((time.time() - t0) * 1000)
    reason = check_order(types)
    if reason is None and types[-1] == "error":
        reason = "error event"
    return {"ok": reason is None, "reason": reason, "ms": total_ms, "first_chunk_ms": first_chunk_ms}

def main():
    latencies = []
    first_chunks = []
    errors = []

    for i in range(N):
        res = run_once(i)
        if not res["ok"]:
            errors.append(res["reason"])
            continue
        latencies.append(res["ms"])
        first_chunks.append(res["first_chunk_ms"])

    if not latencies:
        raise SystemExit(f"GATE FAIL: no successful turns ({errors})")

    p95 = statistics.quantiles(latencies, n=20)[18] if len(latencies) > 1 else latencies[0]   # 대략 p95
    worst_first = max(first_chunks)
    err_rate = len(errors) / N

    print(json.dumps({
        "n": N,
        "backend": BACKEND,
        "success": len(latencies),
        "errors": errors,
        "error_rate": err_rate,
        "p95_ms": p95,
        "worst_first_chunk_ms": worst_first,
    }, ensure_ascii=False, indent=2))

    if p95 > MAX_P95_MS:
        raise SystemExit(f"GATE FAIL: p95 {p95}ms > {MAX_P95_MS}ms")
    if worst_first > MAX_FIRST_CHUNK_MS:
        raise SystemExit(f"GATE FAIL: first chunk {worst_first}ms > {MAX_FIRST_CHUNK_MS}ms")
    if err_rate > 0.1:  # 초기엔 10%로 두고 점진 강화
        raise SystemExit(f"GATE FAIL: error_rate {err_rate} > 0.1")

if __name__ == '__main__':
    main()
