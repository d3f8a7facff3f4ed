import time
from typing import Callable, Tuple, Type, TypeVar

from snapfetch.utils.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before the attempt following ``attempt`` (1-based): base * 2^(attempt-1)."""
    return base_delay * (2 ** max(attempt - 1, 0))


def run_with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 3.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Exceptions outside ``retry_on`` propagate at once; after the last attempt
    the last error is re-raised unchanged.
    """
    attempts = max(int(max_attempts), 1)
    last_error: BaseException = RuntimeError(f"{label} was not attempted")
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            last_error = exc
            if attempt >= attempts:
                break
            delay = backoff_delay(base_delay, attempt)
            logger.warning(
                "Retry attempt %s/%s for %s after %.1fs: %s", attempt, attempts, label, delay, exc
            )
            sleep(delay)
    raise last_error
