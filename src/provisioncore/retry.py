"""
Generic retry primitive.

Every call site describes its retry behaviour with a RetryPolicy value
instead of writing its own loop:

    executor = RetryExecutor(network=checker)
    result = executor.execute(download, RetryPolicy(max_attempts=3, delay_seconds=5,
                                                    exponential_backoff=True,
                                                    requires_network=True))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from provisioncore.errors import ConfigurationError, TransientNetworkError
from provisioncore.network import NetworkStabilityChecker
from provisioncore.timeouts import NETWORK_RECHECK_DELAY_S

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "RetryExecutor", "NO_RETRY"]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration."""
    max_attempts: int = 1
    delay_seconds: int = 0
    exponential_backoff: bool = False
    requires_network: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ConfigurationError(f"max_attempts must be an integer, got {self.max_attempts!r}")
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ConfigurationError(f"delay_seconds must be >= 0, got {self.delay_seconds}")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        if self.exponential_backoff:
            return self.delay_seconds * (2 ** (attempt - 1))
        return self.delay_seconds


NO_RETRY = RetryPolicy()


class RetryExecutor:
    """
    Runs an operation up to policy.max_attempts times.

    Args:
        network: Checker used when policy.requires_network is set
        sleep: Blocking sleep function
    """

    def __init__(
        self,
        network: Optional[NetworkStabilityChecker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._network = network
        self._sleep = sleep

    def _ensure_network(self, attempt: int) -> None:
        if self._network is None:
            return
        if self._network.probe():
            return
        logger.warning(
            "Network unavailable before attempt %d, rechecking in %.0fs",
            attempt,
            NETWORK_RECHECK_DELAY_S,
        )
        self._sleep(NETWORK_RECHECK_DELAY_S)
        if not self._network.probe():
            raise TransientNetworkError(f"Network unavailable before attempt {attempt}")

    def execute(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy,
        retry_if: Optional[Callable[[Exception], bool]] = None,
    ) -> T:
        """
        Run `operation` with retries.

        Args:
            operation: Zero-argument callable; raising means failure
            policy: Retry configuration
            retry_if: Optional predicate; when it returns False for an error
                the error is re-raised without further attempts

        Returns:
            The operation's first successful return value

        Raises:
            The last operation error, unchanged, once attempts are exhausted.
            TransientNetworkError if network gating fails before a retry.
        """
        attempt = 1
        while True:
            if attempt > 1 and policy.requires_network:
                self._ensure_network(attempt)
            try:
                return operation()
            except Exception as e:
                if attempt >= policy.max_attempts:
                    logger.error(
                        "Operation failed after %d attempt(s): %s", attempt, e
                    )
                    raise
                if retry_if is not None and not retry_if(e):
                    logger.error("Operation failed with non-retryable error: %s", e)
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed: %s (retrying in %ss)",
                    attempt,
                    policy.max_attempts,
                    e,
                    delay,
                )
                if delay:
                    self._sleep(delay)
                attempt += 1
