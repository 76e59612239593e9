import json
import os
import sys
import time
from typing import Any, Dict, Optional

LOG_JSON = os.getenv("LOG_JSON", "1") == "1"

COST_IN = float(os.getenv("COST_PER_1K_INPUT_USD", "0.0"))
COST_OUT = float(os.getenv("COST_PER_1K_OUTPUT_USD", "0.0"))

def now_ms() -> int:
    return int(time.time() * 1000)

def _get(usage: Dict[str, Any], *keys: str) -> int:
    for k in keys:
        v = usage.get(k)
        if v:
            return int(v)
    return 0

def normalize_usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """
    usage 포멧을 통일:
        {"prompt_tokens": int, "completion_tokens": int, "total_tokens": int}
    webhook(camelCase), OpenAI(snake_case), LangChain(input/output) 형태를 모두 흡수
    """
    if not usage:
        return {}

    inp = _get(usage, "promptTokens", "prompt_tokens", "input_tokens")
    out = _get(usage, "completionTokens", "completion_tokens", "output_tokens")
    total = _get(usage, "totalTokens", "total_tokens") or (inp + out)

    return {
        "prompt_tokens": inp,
        "completion_tokens": out,
        "total_tokens": total,
    }

def estimate_cost_usd(usage: Optional[Dict[str, Any]]) -> float:
    u = normalize_usage(usage)
    inp = u.get("prompt_tokens", 0)
    out = u.get("completion_tokens", 0)

    return (inp / 1000.0) * COST_IN + (out / 1000.0) * COST_OUT

def log(event: str, **fields):
    payload = {"ts_ms": now_ms(), "event": event, **fields}
    if LOG_JSON:
        print(json.dumps(payload, ensure_ascii=False, default=str), file=sys.stderr)
    else:
        print(payload, file=sys.stderr)
