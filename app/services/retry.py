# app/services/retry.py
"""Bounded exponential backoff for ledger RPC calls."""
import functools
import logging
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_rpc_retry(
    retry_on: Tuple[Type[Exception], ...],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator that retries transient failures with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else is
    raised on the first attempt. Limits not given explicitly are read from
    settings at call time so they follow configuration changes.

    A ``deadline`` keyword argument passed to the decorated function (a
    time.monotonic() value) also bounds the retries: no retry is started
    if its backoff delay would end past the deadline.

    Args:
        retry_on: Exception types that count as transient
        max_retries: Retry attempts after the first call (X402_RPC_MAX_RETRIES)
        base_delay: Delay before the first retry in seconds (X402_RPC_BACKOFF_SECONDS)
        max_delay: Upper bound for a single delay
        backoff_factor: Multiplier applied per attempt

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            retries = max_retries if max_retries is not None else settings.X402_RPC_MAX_RETRIES
            delay_base = base_delay if base_delay is not None else settings.X402_RPC_BACKOFF_SECONDS
            deadline = kwargs.get("deadline")

            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    delay = min(delay_base * (backoff_factor ** attempt), max_delay)
                    out_of_time = deadline is not None and time.monotonic() + delay >= deadline

                    if attempt >= retries or out_of_time:
                        logger.warning(
                            f"{func.__name__} failed after {attempt + 1} attempts"
                            f"{' (deadline reached)' if out_of_time else ''}: {e}"
                        )
                        raise

                    logger.debug(
                        f"{func.__name__} transient failure (attempt {attempt + 1}/{retries + 1}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
