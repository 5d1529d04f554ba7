"""
Centralized retry logic with exponential backoff and jitter.

Used at the DynamoDB boundary: throttling errors are retried, every other
ClientError propagates on the first attempt so the invoking queue can
redeliver the message.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from botocore.exceptions import ClientError

from .constants import THROTTLING_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.2


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)

    # Add jitter to prevent thundering herd
    jitter = random.uniform(0, delay * config.jitter_factor)

    return delay + jitter


def is_throttling_error(error: Exception) -> bool:
    """Return True for DynamoDB throttling/transient ClientErrors."""
    if not isinstance(error, ClientError):
        return False
    return error.response.get("Error", {}).get("Code", "") in THROTTLING_ERRORS


def retry_sync(func: Callable[..., T], *args, config: Optional[RetryConfig] = None, **kwargs) -> T:
    """
    Execute a function, retrying throttling errors with backoff.

    Args:
        func: Function to call
        *args: Positional arguments for func
        config: Retry configuration
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        The first non-throttling error, or the last throttling error once
        retries are exhausted
    """
    config = config or DYNAMODB_RETRY_CONFIG
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except ClientError as e:
            if not is_throttling_error(e):
                raise

            if attempt == config.max_retries:
                logger.error(
                    f"All {config.max_retries + 1} attempts failed for {name}",
                    extra={
                        "function": name,
                        "attempts": config.max_retries + 1,
                        "error_type": type(e).__name__,
                    },
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_retries + 1} throttled for "
                f"{name}, retrying in {delay:.2f}s",
                extra={"function": name, "attempt": attempt + 1, "delay_seconds": delay},
            )
            time.sleep(delay)

    raise RuntimeError("Unexpected retry state")


DYNAMODB_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=0.1,
    max_delay=2.0,
    jitter_factor=0.2,
)
