import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    INELIGIBLE = "ineligible"
    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    PERSISTENCE = "persistence"


class ReviewError(Exception):
    """Failure raised anywhere in the pipeline, tagged with its kind.

    ``status`` carries the HTTP-like status of the upstream call when there
    is one (GitHub or the language model API). ``retryable`` decides whether
    the backoff helpers try again.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or f"{kind.value.upper()}_ERROR"
        self.status = status
        self.retryable = retryable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "status": self.status,
        }

    def __repr__(self) -> str:
        return f"ReviewError(kind={self.kind.value!r}, code={self.code!r}, status={self.status!r})"


class QueueClosedError(RuntimeError):
    """Raised when a job is added after the queue stopped accepting work."""


def upstream_error(message: str, status: Optional[int] = None, **context: Any) -> ReviewError:
    """Build an upstream error; 429 and 5xx responses are retryable."""
    retryable = status == 429 or (status is not None and status >= 500)
    return ReviewError(
        ErrorKind.UPSTREAM,
        message,
        status=status,
        retryable=retryable,
        context=context,
    )


def is_retryable(exc: BaseException) -> bool:
    """Return True if the backoff helpers should try the operation again."""
    if isinstance(exc, ReviewError):
        return exc.retryable
    text = str(exc).lower()
    return any(word in text for word in ("timeout", "timed out", "network", "connection"))


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, ReviewError) and exc.status == 429:
        return True
    text = str(exc).lower()
    return any(
        word in text
        for word in ("rate limit", "429", "quota exceeded", "resource exhausted")
    )


def retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff delay for a zero-based attempt number."""
    return min(base_delay * (2 ** attempt), max_delay)
