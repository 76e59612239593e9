from __future__ import annotations

import json
import os
from typing import Any, List, Optional

from pydantic import ValidationError

from obs_log import log
from schemas import Source, UpstreamReply, Usage

NORMALIZE_DUMP_CHARS = int(os.getenv("NORMALIZE_DUMP_CHARS", "500"))


def _dump(raw: Any, limit: int) -> str:
    try:
        s = json.dumps(raw, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = repr(raw)
    if len(s) > limit:
        s = s[:limit] + "…"
    return s


def _sources(raw: Any) -> Optional[List[Source]]:
    if raw is None:
        return None
    if not isinstance(raw, list):
        return None
    out: List[Source] = []
    for item in raw:
        try:
            out.append(Source.model_validate(item))
        except ValidationError:
            # 형식이 깨진 source는 버린다
            continue
    return out


def _usage(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    try:
        return Usage.model_validate(raw)
    except ValidationError:
        return None


def normalize_reply(raw: Any) -> UpstreamReply:
    """
    webhook 응답(JSON 값 아무거나)을 UpstreamReply로 맞춘다. 예외를 던지지 않는다.

    output이 없거나 비어 있으면 받은 내용을 잘라서 보여주는 안내 메시지를 만들고
    usage는 0으로 채운다.
    """
    body = raw if isinstance(raw, dict) else {}
    output = body.get("output")

    if not isinstance(output, str) or not output.strip():
        received = _dump(raw, NORMALIZE_DUMP_CHARS)
        log("normalize_warning", reason="missing_output", received=received)
        return UpstreamReply(
            output=(
                "백엔드가 'output' 필드 없이 응답했습니다. "
                "webhook 워크플로의 마지막 노드가 {\"output\": \"...\"} 형태로 응답하는지 확인하세요.\n\n"
                f"받은 응답: {received}"
            ),
            sources=_sources(body.get("sources")),
            usage=Usage.zero(),
        )

    return UpstreamReply(
        output=output,
        sources=_sources(body.get("sources")),
        usage=_usage(body.get("usage")),
    )
