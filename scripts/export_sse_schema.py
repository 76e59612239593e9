import sys
import os

# Add the project root to sys.path so we can import sse_events / schemas
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sse_events import SSE_ADAPTER
from schemas import ChatTurnRequest, UpstreamReply
import json

# 프론트/webhook 쪽과 공유할 계약: 요청 바디, SSE 이벤트, webhook 응답
schema = {
    "request": ChatTurnRequest.model_json_schema(by_alias=True),
    "events": SSE_ADAPTER.json_schema(by_alias=True),
    "webhook_reply": UpstreamReply.model_json_schema(by_alias=True),
}

print(json.dumps(schema, ensure_ascii=False, indent=2))
