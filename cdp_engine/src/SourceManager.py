"""SourceManager: Per-venue failure tracking with exponential backoff.

When a venue fails to produce a quote (returns None, raises, or times out),
it enters a backoff period. The backoff doubles with each consecutive failure
up to a maximum (default 5 minutes). A successful quote resets the counter.
Venues in backoff are not asked for quotes, so a broken venue degrades the
oracle's quorum instead of slowing every round.

.. code-block:: python

    >>> manager = SourceManager(["coinbase", "kraken", "coingecko"])
    >>> manager.record_failure("kraken", "timeout")
    5.0
    >>> manager.active_sources()
    ['coinbase', 'coingecko']
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class SourceStatus:
    """Tracks the health of a single venue.

    :ivar consecutive_failures: Number of consecutive failures.
    :ivar backoff_until: Unix timestamp when backoff period ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    :ivar last_success_at: Unix timestamp of the last good quote.
    :ivar last_error: Description of the most recent failure.
    """

    consecutive_failures: int = 0
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0
    last_success_at: float | None = None
    last_error: str | None = None


class SourceManager:
    """Backoff bookkeeping for the configured price venues.

    :ivar sources: Tracked venue names, in configuration order.
    :ivar base_backoff_seconds: Backoff after the first failure.
    :ivar max_backoff_seconds: Cap on the backoff duration.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 5
    DEFAULT_MAX_BACKOFF_SECONDS = 300  # 5 minutes

    def __init__(
        self,
        sources: list[str],
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        if base_backoff_seconds <= 0 or max_backoff_seconds < base_backoff_seconds:
            raise ValueError("backoff must be positive and max >= base")
        self.sources = list(sources)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._status: dict[str, SourceStatus] = {s: SourceStatus() for s in sources}

    def _get(self, source: str) -> SourceStatus:
        if source not in self._status:
            raise KeyError(f"Untracked source '{source}'")
        return self._status[source]

    def record_failure(self, source: str, error: str | None = None) -> float:
        """Record a failed fetch and start (or extend) the venue's backoff.

        :param source: Venue that failed.
        :param error: Optional description for diagnostics.
        :returns: The backoff duration in seconds.
        """
        status = self._get(source)
        status.consecutive_failures += 1
        status.total_failures += 1
        status.last_error = error

        # Exponential backoff: base * 2^(failures-1), capped at max
        backoff_seconds = min(
            self.base_backoff_seconds * (2 ** (status.consecutive_failures - 1)),
            self.max_backoff_seconds,
        )
        status.backoff_until = time.time() + backoff_seconds
        logger.debug(
            f"[{source}] failure #{status.consecutive_failures} ({error}), "
            f"backoff {backoff_seconds:.1f}s"
        )
        return float(backoff_seconds)

    def record_success(self, source: str) -> None:
        """Record a good quote, clearing the venue's backoff."""
        status = self._get(source)
        status.consecutive_failures = 0
        status.backoff_until = 0.0
        status.total_successes += 1
        status.last_success_at = time.time()
        status.last_error = None

    def active_sources(self) -> list[str]:
        """Venues not currently in backoff, in configuration order."""
        now = time.time()
        return [s for s in self.sources if now >= self._status[s].backoff_until]

    def status(self, source: str) -> SourceStatus:
        """Status record of one venue.

        :raises KeyError: If the venue is not tracked.
        """
        return self._get(source)

    def backoff_remaining(self, source: str) -> float:
        """Seconds left in the venue's backoff, or 0."""
        return max(0.0, self._get(source).backoff_until - time.time())
