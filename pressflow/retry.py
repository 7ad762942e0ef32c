"""
Retry policy and error classification
=====================================

Failures are first mapped to an ``ErrorCode`` and the code decides whether
another attempt is worth it. Every outbound call that retries goes through
``RetryPolicy``: WordPress REST requests and remote image fetches, where a
freshly generated image URL can briefly 404 before the CDN has it. An
exception carrying a numeric ``retry_after`` raises the next delay to at
least that many seconds.

Usage:
    from pressflow.retry import RetryPolicy, classify_error

    policy = RetryPolicy(max_retries=3, base_delay=1.0, module_name="image_fetch")
    data = await policy.execute(fetch_bytes, url)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.retry")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    """E1xxx network, E2xxx auth, E3xxx remote resources, E4xxx AI providers, E9xxx internal."""

    E1001 = "NETWORK_TIMEOUT"
    E1002 = "NETWORK_UNREACHABLE"
    E1003 = "CONNECTION_REFUSED"

    E2001 = "AUTH_INVALID"
    E2002 = "AUTH_FORBIDDEN"

    E3001 = "REMOTE_API_ERROR"
    E3002 = "REMOTE_NOT_FOUND"
    E3003 = "REMOTE_RATE_LIMITED"
    E3004 = "REMOTE_UNAVAILABLE"

    E4001 = "PROVIDER_RATE_LIMITED"
    E4002 = "PROVIDER_OVERLOADED"
    E4003 = "PROVIDER_INVALID_REQUEST"

    E9001 = "INTERNAL_ERROR"
    E9002 = "INVALID_CONTENT"


# Never retried, whatever a policy's retryable_codes say.
FATAL_CODES: Set[ErrorCode] = {ErrorCode.E2001, ErrorCode.E2002, ErrorCode.E4003, ErrorCode.E9002}

DEFAULT_RETRYABLE_CODES: Set[ErrorCode] = {
    ErrorCode.E1001,
    ErrorCode.E1002,
    ErrorCode.E1003,
    ErrorCode.E3003,
    ErrorCode.E3004,
    ErrorCode.E4001,
    ErrorCode.E4002,
}

# status -> (code for remote services, code for AI provider modules)
_STATUS_CODES: Dict[int, Tuple[ErrorCode, ErrorCode]] = {
    400: (ErrorCode.E3001, ErrorCode.E4003),
    401: (ErrorCode.E2001, ErrorCode.E2001),
    403: (ErrorCode.E2002, ErrorCode.E2002),
    404: (ErrorCode.E3002, ErrorCode.E3002),
    429: (ErrorCode.E3003, ErrorCode.E4001),
    500: (ErrorCode.E3004, ErrorCode.E3004),
    502: (ErrorCode.E3004, ErrorCode.E3004),
    503: (ErrorCode.E3004, ErrorCode.E3004),
    504: (ErrorCode.E3004, ErrorCode.E3004),
    529: (ErrorCode.E4002, ErrorCode.E4002),
}

_MESSAGE_HINTS: List[Tuple[Tuple[str, ...], ErrorCode]] = [
    (("timeout", "timed out"), ErrorCode.E1001),
    (("connection refused",), ErrorCode.E1003),
    (("overloaded",), ErrorCode.E4002),
    (("rate limit", "rate_limit"), ErrorCode.E4001),
    (("not found",), ErrorCode.E3002),
    (("not an image", "cannot identify image"), ErrorCode.E9002),
]


@dataclass
class ErrorContext:
    code: ErrorCode
    message: str
    module: str
    operation: str

    @property
    def retryable(self) -> bool:
        return self.code not in FATAL_CODES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "module": self.module,
            "operation": self.operation,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (module={self.module}, op={self.operation})"


def _code_for(exception: Exception, module: str) -> ErrorCode:
    status = getattr(exception, "status_code", None) or getattr(exception, "status", None)
    if isinstance(status, int) and status >= 400:
        remote, provider = _STATUS_CODES.get(status, (ErrorCode.E3001, ErrorCode.E3001))
        return provider if "provider" in module else remote

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.E1001
    if isinstance(exception, ConnectionRefusedError):
        return ErrorCode.E1003

    text = str(exception).lower()
    for needles, code in _MESSAGE_HINTS:
        if any(n in text for n in needles):
            return code

    # aiohttp transport failures: ClientConnectionError, ServerDisconnectedError, ...
    if isinstance(exception, ConnectionError) or type(exception).__name__.startswith(("Client", "Server")):
        return ErrorCode.E1002
    return ErrorCode.E9001


def classify_error(exception: Exception, module: str = "unknown", operation: str = "unknown") -> ErrorContext:
    """Map a raw exception to an ErrorContext.

    A ``status_code`` (or ``status``) attribute of 400 or more wins; then the
    exception type; then hints in the message text.
    """
    return ErrorContext(
        code=_code_for(exception, module),
        message=str(exception),
        module=module,
        operation=operation,
    )


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """Retry a callable while its failures classify as transient."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff: float = 2.0
    jitter: bool = False
    retryable_codes: Set[ErrorCode] = field(default_factory=lambda: set(DEFAULT_RETRYABLE_CODES))
    module_name: str = "unknown"

    def delay_for(self, attempt: int, exc: Optional[Exception] = None) -> float:
        """Backoff after failed attempt *attempt* (0-based), never shorter than the error's retry_after."""
        delay = min(self.base_delay * self.backoff ** attempt, self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        hint = getattr(exc, "retry_after", None)
        if isinstance(hint, (int, float)):
            delay = max(delay, float(hint))
        return round(delay, 3)

    def should_retry(self, error: ErrorContext, attempt: int) -> bool:
        return attempt < self.max_retries and error.retryable and error.code in self.retryable_codes

    async def execute(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """
        Call *func* (sync or async) until it succeeds or a failure is final.

        Raises
        ------
        Exception
            Whatever *func* raised last, unchanged.
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception as exc:
                error = classify_error(exc, module=self.module_name, operation=getattr(func, "__name__", "call"))
                if not self.should_retry(error, attempt):
                    if attempt:
                        logger.warning("Giving up on %s after %d attempts: %s", self.module_name, attempt + 1, error)
                    raise
                delay = self.delay_for(attempt, exc)
                attempt += 1
                logger.info(
                    "%s failed (%s), attempt %d/%d in %.1fs",
                    self.module_name, error.code.name, attempt + 1, self.max_retries + 1, delay,
                )
                await asyncio.sleep(delay)
            else:
                if attempt:
                    logger.info("%s succeeded after %d retries", self.module_name, attempt)
                return result
