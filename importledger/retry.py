import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError


logger = logging.getLogger(__name__)
T = TypeVar("T")

# Connection drops and lock timeouts; constraint violations are not retried.
TRANSIENT_DB_ERRORS: tuple[type[Exception], ...] = (OperationalError,)


class RetryExhaustedError(RuntimeError):
    pass


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def run_with_retries(
    fn: Callable[[], T],
    *,
    label: str,
    max_retries: int,
    backoff_seconds: float,
    before_retry: Callable[[], None] | None = None,
) -> T:
    """Run an idempotent ledger write, retrying transient database errors.

    Row inserts never go through here: a failed row is reported, not replayed.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if attempt > max_retries or not is_transient(exc):
                break
            logger.warning(
                "ledger write failed, retrying",
                extra={"operation": label, "attempt": attempt, "error": str(exc)},
            )
            if before_retry:
                before_retry()
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(f"{label} failed: {last_error}") from last_error
