from __future__ import annotations

import os
from typing import Iterator, Optional

CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "700"))

SENTENCE_ENDS = (".", "?", "!")


def _last_sentence_end(text: str, lo: int, hi: int) -> int:
    # lo < idx <= hi 범위에서 가장 뒤의 문장 끝. 없으면 -1
    best = max(text.rfind(ch, 0, hi + 1) for ch in SENTENCE_ENDS)
    return best if best > lo else -1


def _first_sentence_end(text: str, lo: int, hi: int) -> int:
    # lo < idx <= hi 범위에서 가장 앞의 문장 끝. 없으면 -1
    found = [i for i in (text.find(ch, lo + 1, hi + 1) for ch in SENTENCE_ENDS) if i != -1]
    return min(found) if found else -1


def _cut_point(text: str, start: int, end: int, lookahead: int) -> int:
    """
    start~end 윈도우 안에서 자를 위치를 찾는다.
    우선순위: 문장 끝(. ? !) 바로 뒤 > 윈도우 직후 lookahead 안의 문장 끝 > 공백 > 윈도우 경계
    """
    idx = _last_sentence_end(text, start, end)
    if idx != -1:
        return idx + 1

    if lookahead > 0:
        idx = _first_sentence_end(text, end, min(end + lookahead, len(text) - 1))
        if idx != -1:
            return idx + 1

    space = text.rfind(" ", 0, end + 1)
    if space > start:
        return space

    return end


def chunk_text(text: str, size: int = CHUNK_SIZE, lookahead: Optional[int] = None) -> Iterator[str]:
    """
    긴 텍스트를 size 근처 길이의 조각으로 나눈다.

    문장이 윈도우 경계를 살짝 넘어서 끝나면(lookahead 이내, 기본 size // 20)
    문장을 자르지 않고 그 문장 끝까지 포함한다.
    같은 (text, size)면 항상 같은 결과. 빈 조각은 버린다.
    """
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    if lookahead is None:
        lookahead = size // 20

    pos = 0
    n = len(text)
    while pos < n:
        end = pos + size
        if end < n:
            end = _cut_point(text, pos, end, lookahead)

        piece = text[pos:end].strip()
        if piece:
            yield piece
        pos = end
