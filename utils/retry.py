"""Job retry backoff and error sanitising."""

import re
from datetime import datetime, timedelta

from config.constants import JOB_BACKOFF_BASE_SECONDS, JOB_BACKOFF_MAX_SECONDS

# Patterns that look like credentials in URLs or provider error strings
_SENSITIVE_PARAMS = re.compile(
    r"((?:token|api_?key|api_?token|secret|password|authorization)=)[^&\s'\")]+",
    re.IGNORECASE,
)

MAX_ERROR_LENGTH = 1000


def _sanitize_error(error: str) -> str:
    """Strip API keys and tokens from error messages."""
    return _SENSITIVE_PARAMS.sub(r"\1[REDACTED]", error)


def sanitize_error(error: BaseException | str | None) -> str | None:
    """Error text safe to persist: credentials redacted, length capped."""
    if error is None:
        return None
    text = _sanitize_error(str(error))
    return text[:MAX_ERROR_LENGTH]


def backoff_delay(
    attempts: int,
    base_delay: float = JOB_BACKOFF_BASE_SECONDS,
    max_delay: float = JOB_BACKOFF_MAX_SECONDS,
) -> timedelta:
    """Delay before the next attempt: ``base * 2^attempts``, capped at ``max_delay``."""
    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    # Bound the exponent so huge attempt counts don't overflow the float
    seconds = min(base_delay * (2 ** min(attempts, 32)), max_delay)
    return timedelta(seconds=seconds)


def next_retry_at(attempts: int, now: datetime) -> datetime:
    return now + backoff_delay(attempts)


def is_exhausted(attempts: int, max_attempts: int) -> bool:
    """True once a job has used up its attempt budget and belongs in the dead-letter state."""
    return attempts >= max_attempts
