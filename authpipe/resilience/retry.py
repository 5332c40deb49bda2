# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Bounded retry with exponential backoff for transient provider failures.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Type

from ..errors import ConfigurationError, TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry configuration."""
    max_attempts: int = 3
    initial_delay: timedelta = field(default_factory=lambda: timedelta(milliseconds=200))
    max_delay: timedelta = field(default_factory=lambda: timedelta(seconds=2))
    multiplier: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[Exception]] = field(
        default_factory=lambda: [TransientNetworkError]
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be at least 1")
        if not self.retryable_exceptions:
            self.retryable_exceptions = [TransientNetworkError]


class Retry:
    """Retry handler with exponential backoff."""

    def __init__(self, config: RetryConfig, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self._sleep = sleep
        self.attempts = 0

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` until it succeeds, fails permanently, or attempts run out."""
        for attempt in range(1, self.config.max_attempts + 1):
            self.attempts = attempt
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not self._is_retryable(e):
                    raise
                if attempt == self.config.max_attempts:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                    raise
                delay = self._calculate_delay(attempt)
                logger.warning(f"Attempt {attempt} failed: {e}. Retrying in {delay:.2f}s")
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Succeeded on attempt {attempt}")
            return result

    def _is_retryable(self, exception: Exception) -> bool:
        """Check if exception is retryable."""
        return any(isinstance(exception, exc_type) for exc_type in self.config.retryable_exceptions)

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay_seconds = self.config.initial_delay.total_seconds() * (self.config.multiplier ** (attempt - 1))
        delay_seconds = min(delay_seconds, self.config.max_delay.total_seconds())

        if self.config.jitter:
            delay_seconds *= random.uniform(0.5, 1.5)

        return delay_seconds
