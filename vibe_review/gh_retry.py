"""
GitHub retry wrapper.

Remote calls to GitHub fail transiently (timeouts, connection resets, 5xx from
the API edge). call_with_retry() re-invokes an idempotent call with a bounded
backoff schedule when the error text looks transient. Anything else is raised
immediately, and non-idempotent calls (replies, issue creation) are never
retried so a retry can not duplicate a side effect.
"""
import logging
import re
import time
from typing import Any, Callable, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = (0.25, 0.75, 1.5)

_TRANSIENT_PATTERNS = (
    "error connecting to api.github.com",
    "timeout",
    "timed out",
    "connection reset",
    "connection aborted",
    "temporary failure",
)
_TRANSIENT_STATUS_RE = re.compile(r"\b(502|503|504)\b")


def error_text(error: BaseException) -> str:
    """Message of an exception plus the HTTP response body when there is one."""
    parts = [str(error)]
    response = getattr(error, "response", None)
    if isinstance(response, requests.Response):
        parts.append(str(response.status_code))
        body = response.text or ""
        if body.strip():
            parts.append(body.strip())
    return "\n".join(p for p in parts if p)


def is_retryable_error(error: BaseException) -> bool:
    """True when the error text matches a known transient failure."""
    text = error_text(error).lower()
    if not text:
        return False
    if any(pattern in text for pattern in _TRANSIENT_PATTERNS):
        return True
    return bool(_TRANSIENT_STATUS_RE.search(text))


def call_with_retry(
    fn: Callable[..., Any],
    *args: Any,
    idempotent: bool = True,
    attempts: Optional[int] = None,
    backoff: Sequence[float] = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    context: str = "",
    **kwargs: Any,
) -> Any:
    """Call fn with retries on transient errors.

    Args:
        fn: Callable to invoke.
        *args, **kwargs: Forwarded to fn.
        idempotent: When False the call is made exactly once.
        attempts: Total tries. Defaults to len(backoff).
        backoff: Delay in seconds before retry N (last value repeats).
        sleep: Injected for tests.
        context: Label for log messages.

    Raises:
        The last exception when the error is not transient or attempts run out.
    """
    schedule = list(backoff) or [0.0]
    total = 1 if not idempotent else max(1, int(attempts or len(schedule)))
    label = f" [{context}]" if context else ""

    for attempt in range(1, total + 1):
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            if attempt >= total or not is_retryable_error(exc):
                raise
            delay = schedule[min(attempt - 1, len(schedule) - 1)]
            logger.warning(
                "Attempt %d/%d failed%s: %s, retrying in %.2fs",
                attempt, total, label, exc, delay,
            )
            if delay > 0:
                sleep(delay)

    raise RuntimeError("gh retry: call failed")  # unreachable
