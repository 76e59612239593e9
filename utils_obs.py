import time
import uuid
from dataclasses import dataclass

@dataclass
class Timer:
    t0: float

    @classmethod
    def start(cls):
        return cls(time.perf_counter())

    def ms(self) -> int:
        return int((time.perf_counter() - self.t0) * 1000)

def ensure_request_id(rid: str | None) -> str:
    # 클라이언트가 X-Request-ID를 주면 그대로 쓰고 없으면 새로 발급
    rid = (rid or "").strip()
    return rid[:128] if rid else uuid.uuid4().hex
