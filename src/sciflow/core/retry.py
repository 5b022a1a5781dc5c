# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Bounded retry for outbound rail calls.

Each attempt runs under a timeout. Timeouts, connection failures and
retryable rail errors back off exponentially; anything else is raised at
once. When attempts run out the last failure is reported as RailUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import aiohttp

from .exceptions import RailUnavailable, RailVerificationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: float = 15.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5

    @classmethod
    def from_config(cls) -> RetryPolicy:
        from .config import get_config

        config = get_config()
        return cls(
            timeout_seconds=config.rail_timeout_seconds,
            max_attempts=max(1, config.rail_max_attempts),
            backoff_seconds=config.rail_backoff_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Backoff before attempt number ``attempt + 1`` (0-based)."""
        return self.backoff_seconds * (2**attempt)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    rail: str,
    description: str,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Timeout and backoff settings.
        rail: Rail name, for errors and logs.
        description: What is being attempted, for logs.

    Raises:
        RailVerificationError: A non-retryable rail failure, raised at once.
        RailUnavailable: Every attempt failed with a transient error.
    """
    last_error: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
        except RailVerificationError as e:
            if not e.retryable:
                raise
            last_error = e
        except (TimeoutError, aiohttp.ClientError) as e:
            last_error = e

        if attempt < policy.max_attempts - 1:
            delay = policy.delay(attempt)
            logger.debug(f"{rail}: {description} failed ({last_error}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    logger.warning(f"{rail}: {description} failed after {policy.max_attempts} attempts: {last_error}")
    raise RailUnavailable(f"{description} failed after {policy.max_attempts} attempts: {last_error}", rail=rail)
