# app/infra/retry.py
import random
import time
from typing import Callable, Optional, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from app.core.logging_config import logger

T = TypeVar("T")

# S3-foutcodes die bij een tweede poging meestal wel lukken
_TRANSIENT_S3_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "InternalError",
    "ServiceUnavailable",
    "503",
    "500",
}


def _sleep_with_jitter(base: float, factor: float, attempt: int, cap: float) -> float:
    # exponential backoff met jitter
    delay = min(base * (factor ** attempt), cap)
    return delay + random.uniform(0, delay * 0.25)


def is_transient_s3_error(exc: Exception) -> bool:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code") in _TRANSIENT_S3_CODES
    return isinstance(exc, BotoCoreError)


def retry_on(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base: float = 0.2,
    factor: float = 2.0,
    cap: float = 2.0,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    op: str = "call",
) -> T:
    """Roep fn aan; bij een retryable fout opnieuw met backoff. Laatste fout wordt doorgegeven."""
    for i in range(attempts):
        try:
            return fn()
        except Exception as e:
            if (is_retryable and not is_retryable(e)) or i == attempts - 1:
                raise
            sleep_s = _sleep_with_jitter(base, factor, i, cap)
            logger.warning("retrying", op=op, attempt=i + 1, sleep_s=round(sleep_s, 2), error=repr(e))
            time.sleep(sleep_s)
    raise RuntimeError("retry_on called with attempts < 1")
