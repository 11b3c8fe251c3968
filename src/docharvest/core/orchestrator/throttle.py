"""
Adaptive concurrency control.

The allowed number of simultaneously running jobs is the minimum of:
- the operator-configured ceiling (clamped to a hard maximum)
- a throttle level that drops by one on every failed job and climbs back
  by one per poll once a cooldown has expired
- a storage-pressure cap derived from the size of accumulated results
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Mapping

from docharvest.core.config.models import OrchestratorConfig

from .jobs import CONCURRENCY_OPTION

logger = logging.getLogger(__name__)


def normalize_concurrency(value: Any, hard_max: int) -> int:
    """Coerce an operator-provided value into ``[1, hard_max]``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number):
        return 1
    return max(1, min(hard_max, int(round(number))))


class ConcurrencyController:
    """Computes how many jobs may run at once.

    ``stored_bytes`` is polled on every :meth:`effective_concurrency` call
    and must return the total size of completed results. ``clock`` defaults
    to :func:`time.monotonic` and is injectable for tests.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        stored_bytes: Callable[[], int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or OrchestratorConfig()
        self._stored_bytes = stored_bytes or (lambda: 0)
        self._clock = clock

        self.configured_ceiling = normalize_concurrency(
            self.config.default_concurrency, self.hard_max
        )
        self.throttle_level = 1
        self.cooldown_until = 0.0

    @property
    def hard_max(self) -> int:
        return self.config.hard_max_concurrency

    def set_ceiling(self, value: Any) -> int:
        """Set the operator ceiling; lowers the throttle level if it now exceeds it."""
        self.configured_ceiling = normalize_concurrency(value, self.hard_max)
        self.throttle_level = max(1, min(self.throttle_level, self.configured_ceiling))
        logger.debug(
            f"Concurrency ceiling set to {self.configured_ceiling} "
            f"(throttle={self.throttle_level})"
        )
        return self.configured_ceiling

    def apply_options_hint(self, options: Mapping[str, Any] | None) -> bool:
        """Adopt the ``batch_concurrency`` hint carried by job options, if any."""
        if not options or options.get(CONCURRENCY_OPTION) is None:
            return False
        self.set_ceiling(options[CONCURRENCY_OPTION])
        return True

    def in_cooldown(self) -> bool:
        return self._clock() <= self.cooldown_until

    def effective_concurrency(self) -> int:
        """Currently allowed number of running jobs.

        Each call after the cooldown has expired raises the throttle level by
        one step towards the ceiling, so recovery is paced by polling.
        """
        if not self.in_cooldown() and self.throttle_level < self.configured_ceiling:
            self.throttle_level += 1

        limit = min(self.configured_ceiling, self.throttle_level)
        stored = self._stored_bytes()

        if stored > self.config.storage_high_water_bytes:
            limit = 1
        elif stored > self.config.storage_low_water_bytes:
            limit = min(limit, 2)

        return max(1, min(self.hard_max, limit))

    def record_outcome(self, success: bool) -> None:
        """Back off by one level and start a cooldown after a failure."""
        if success:
            return
        self.throttle_level = max(1, self.throttle_level - 1)
        self.cooldown_until = self._clock() + self.config.throttle_cooldown_seconds
        logger.info(
            f"Job failed; throttling to {self.throttle_level} "
            f"for {self.config.throttle_cooldown_seconds:.0f}s"
        )

    def stats(self) -> dict[str, Any]:
        return {
            "configured_ceiling": self.configured_ceiling,
            "throttle_level": self.throttle_level,
            "cooldown_remaining": max(0.0, self.cooldown_until - self._clock()),
            "stored_bytes": self._stored_bytes(),
        }
