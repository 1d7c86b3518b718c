"""
Retry policy shared by registry calls, lease-lock waits and the
download loops (resume after a dropped connection, start over after a
checksum mismatch).

A RetryPolicy bundles the attempt budget, the backoff schedule and the
predicate deciding which exceptions are worth another attempt, so every
call site retries the same way instead of growing its own loop.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _never(exc: BaseException) -> bool:
    return False


@dataclass
class RetryPolicy:
    """
    Exponential backoff with a bounded number of attempts.

    Example:
        policy = RetryPolicy(max_attempts=4, base_delay=1.0,
                             retry_on=lambda e: isinstance(e, RegistryError) and e.retryable)
        data = policy.call(client.resolve, spec)
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retry_on: Callable[[BaseException], bool] = field(default=_never)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def for_exceptions(cls, exc_types: Tuple[Type[BaseException], ...], **kwargs) -> 'RetryPolicy':
        """Build a policy that retries any of the given exception types."""
        return cls(retry_on=lambda e: isinstance(e, exc_types), **kwargs)

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """
        Delay after the given zero-based failed attempt.

        Honors a ``retry_after`` hint on the exception (rate limiting),
        capped at max_delay.
        """
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        hint = getattr(exc, 'retry_after', None)
        if hint is not None:
            delay = min(max(delay, float(hint)), self.max_delay)
        return delay

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """
        Call ``func`` until it succeeds, a non-retryable error is raised,
        or the attempt budget runs out (the last error is re-raised).
        """
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                attempt += 1
                if attempt >= self.max_attempts or not self.retry_on(exc):
                    raise
                delay = self.delay_for(attempt - 1, exc)
                logger.warning(
                    f"{getattr(func, '__name__', 'call')} failed ({exc}); "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})"
                )
                self.sleep(delay)
