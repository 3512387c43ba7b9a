"""Retry helpers for storage writes and failed node actions."""

import random
import time
from functools import wraps
from typing import Callable, List, Optional, Tuple, Type

from sqlalchemy.exc import OperationalError

from ..models.core import ActionResult, RetryPolicy
from .exceptions import WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retrying transient storage failures."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        # SQLite reports "database is locked" as OperationalError
        self.retryable_exceptions = retryable_exceptions or [OperationalError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator retrying a function on transient errors."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        raise
                    delay = config.get_delay(attempt)
                    logger.warning(
                        f"Retrying {func.__name__} after {type(e).__name__} "
                        f"(attempt {attempt}/{config.max_attempts}, sleeping {delay:.3f}s)"
                    )
                    time.sleep(delay)
        return wrapper

    return decorator


def run_with_policy(
    action: Callable[[], ActionResult],
    policy: Optional[RetryPolicy],
    should_stop: Callable[[], bool] = lambda: False,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "action"
) -> Tuple[ActionResult, int]:
    """
    Run an action, retrying failed results according to a node's retry policy.

    Args:
        action: Callable returning an ActionResult; must not raise
        policy: Node retry policy, None for a single attempt
        should_stop: Checked between attempts; a true result stops retrying
        sleep: Sleep function, replaceable in tests
        label: Name used in log messages

    Returns:
        Tuple of the last result and the number of attempts made
    """
    extra_attempts = policy.max_attempts if policy else 0
    attempts = 0
    while True:
        attempts += 1
        result = action()
        if result.success or attempts > extra_attempts:
            return result, attempts
        # validation failures will fail identically on every attempt
        if result.error_category == "validation":
            return result, attempts
        if should_stop():
            logger.info(f"Not retrying {label}: execution is stopping")
            return result, attempts

        delay = policy.delay_seconds(attempts)
        logger.info(
            f"Retrying {label} after failure '{result.error}' "
            f"(retry {attempts}/{extra_attempts}, waiting {delay:.2f}s)"
        )
        sleep(delay)
        if should_stop():
            logger.info(f"Not retrying {label}: execution is stopping")
            return result, attempts
