import asyncio
import os

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

WEBHOOK_TIMEOUT_SEC = float(os.getenv("WEBHOOK_TIMEOUT_SEC", "60"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "2"))
RETRY_BASE_WAIT_SEC = float(os.getenv("RETRY_BASE_WAIT_SEC", "0.5"))

def _retry_policy(*exc_types):
    return retry(
        reraise=True,
        retry=retry_if_exception_type(exc_types),
        stop=stop_after_attempt(max(1, RETRY_MAX_ATTEMPTS)),
        wait=wait_exponential_jitter(initial=RETRY_BASE_WAIT_SEC, max=3.0, jitter=RETRY_BASE_WAIT_SEC),
    )

async def with_timeout(coro, timeout_sec: float):
    return await asyncio.wait_for(coro, timeout=timeout_sec)

# webhook 호출용: 네트워크 계열 실패만 재시도 (HTTP status는 재시도하지 않음)
def webhook_retry(*exc_types):
    return _retry_policy(*exc_types)
