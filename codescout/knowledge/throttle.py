"""Resource throttling for indexing runs.

Bounds the number of embedding workers from the host core count and a CPU
ceiling, and inserts a fixed pause after every indexing batch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import os
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


def _cpu_count() -> int:
    return os.cpu_count() or 1


class ResourceThrottle:
    """Worker budget and inter-batch delay policy.

    With max_workers "auto" the budget is half of the cores allowed by
    max_cpu_percent (25% of all cores at the default 50% ceiling), at least
    one. An explicit max_workers is clamped to [1, cpu_count].
    """

    def __init__(
        self,
        max_cpu_percent: int = 50,
        batch_delay_ms: int = 100,
        max_workers: int | str = "auto",
        cpu_count: int | None = None,
    ):
        self.max_cpu_percent = max_cpu_percent if max_cpu_percent > 0 else 50
        self.batch_delay_ms = max(0, batch_delay_ms)
        self.cpu_count = cpu_count or _cpu_count()
        self.max_workers = self._resolve_max_workers(max_workers)

        logger.info(
            "Throttle: CPU limit %d%%, batch delay %dms, max workers %d",
            self.max_cpu_percent,
            self.batch_delay_ms,
            self.max_workers,
        )

    def _auto_budget(self) -> int:
        return max(1, math.floor(self.cpu_count * self.max_cpu_percent / 200))

    def _resolve_max_workers(self, value: int | str) -> int:
        if value == "auto" or value is None:
            return self._auto_budget()
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = 0
        if parsed < 1:
            logger.error("Invalid max_workers %r, using auto", value)
            return self._auto_budget()
        return min(parsed, self.cpu_count)

    def get_worker_count(self, requested: int | str) -> int:
        """Number of workers to start for a requested count or "auto"."""
        if requested == "auto":
            return self.max_workers
        try:
            wanted = int(requested)
        except (TypeError, ValueError):
            logger.warning("Invalid worker request %r, using auto", requested)
            return self.max_workers
        return max(1, min(wanted, self.max_workers, self.cpu_count))

    async def throttled_batch(
        self, work: Callable[[], Awaitable[Any] | Any] | None = None
    ) -> Any:
        """Run work (sync or async), then pause for the batch delay."""
        result = None
        if work is not None:
            result = work()
            if inspect.isawaitable(result):
                result = await result
        await self.sleep()
        return result

    async def sleep(self) -> None:
        if self.batch_delay_ms > 0:
            await asyncio.sleep(self.batch_delay_ms / 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_cpu_percent": self.max_cpu_percent,
            "batch_delay_ms": self.batch_delay_ms,
            "max_workers": self.max_workers,
        }
