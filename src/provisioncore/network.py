"""Network reachability probing and stability waits."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

from provisioncore.errors import ConfigurationError
from provisioncore.timeouts import (
    NETWORK_PROBE_DEFAULT_URL,
    NETWORK_PROBE_TIMEOUT_S,
    NETWORK_STABILITY_CONFIRM_INTERVAL_S,
    NETWORK_STABILITY_CONFIRMATIONS,
)

logger = logging.getLogger(__name__)

__all__ = ["NetworkStabilityChecker"]


class NetworkStabilityChecker:
    """
    Probes connectivity against a known-stable endpoint.

    A probe is a single timeout-bounded HTTP HEAD request. Stability waits
    call probe() repeatedly with blocking sleeps in between.

    Args:
        url: Endpoint to probe
        timeout: Per-probe timeout in seconds
        client: Optional httpx.Client (tests pass one with a MockTransport)
        sleep: Blocking sleep function
    """

    def __init__(
        self,
        url: str = NETWORK_PROBE_DEFAULT_URL,
        timeout: float = NETWORK_PROBE_TIMEOUT_S,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, **kwargs) -> "NetworkStabilityChecker":
        return cls(url=config.probe_url, timeout=config.probe_timeout_seconds, **kwargs)

    def probe(self) -> bool:
        """Single reachability check. Returns False on any transport error or 5xx."""
        try:
            if self._client is not None:
                response = self._client.head(self.url, timeout=self.timeout)
            else:
                response = httpx.head(self.url, timeout=self.timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Network probe to %s failed: %s", self.url, e)
            return False
        if response.status_code >= 500:
            logger.debug("Network probe to %s returned HTTP %s", self.url, response.status_code)
            return False
        return True

    def _confirm(self) -> bool:
        for i in range(NETWORK_STABILITY_CONFIRMATIONS):
            self._sleep(NETWORK_STABILITY_CONFIRM_INTERVAL_S)
            if not self.probe():
                logger.warning(
                    "Network dropped during stability confirmation (%d/%d)",
                    i + 1,
                    NETWORK_STABILITY_CONFIRMATIONS,
                )
                return False
        return True

    def wait_for_stability(
        self,
        max_retries: int,
        delay_seconds: float,
        continuous_check: bool = False,
    ) -> bool:
        """
        Wait until the network is reachable (and, optionally, stable).

        Args:
            max_retries: Outer attempts; must be >= 1
            delay_seconds: Sleep between outer attempts
            continuous_check: After a first success, require
                NETWORK_STABILITY_CONFIRMATIONS further successful probes
                spaced NETWORK_STABILITY_CONFIRM_INTERVAL_S apart. A failure
                during confirmation counts as an unstable attempt.

        Returns:
            True once stable, False after exhausting max_retries

        Raises:
            ConfigurationError: If max_retries < 1 or delay_seconds < 0
        """
        if max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {max_retries}")
        if delay_seconds < 0:
            raise ConfigurationError(f"delay_seconds must be >= 0, got {delay_seconds}")

        for attempt in range(1, max_retries + 1):
            if self.probe():
                if not continuous_check or self._confirm():
                    logger.info("Network available (attempt %d/%d)", attempt, max_retries)
                    return True
            else:
                logger.warning(
                    "Network not available (attempt %d/%d)", attempt, max_retries
                )

            if attempt < max_retries:
                self._sleep(delay_seconds)

        logger.error("Network not stable after %d attempts", max_retries)
        return False
