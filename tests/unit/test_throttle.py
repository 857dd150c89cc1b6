"""Unit tests for the resource throttle."""

from __future__ import annotations

import time

import pytest

from codescout.knowledge.throttle import ResourceThrottle


class TestWorkerBudget:
    """Tests for worker budget resolution."""

    @pytest.mark.parametrize(
        "cpu_count,percent,expected",
        [(8, 50, 2), (16, 50, 4), (8, 100, 4), (1, 50, 1), (2, 10, 1)],
    )
    def test_auto_budget(self, cpu_count, percent, expected):
        throttle = ResourceThrottle(max_cpu_percent=percent, cpu_count=cpu_count)
        assert throttle.max_workers == expected

    def test_explicit_max_workers(self):
        assert ResourceThrottle(max_workers=3, cpu_count=8).max_workers == 3

    def test_explicit_max_workers_capped_by_cores(self):
        assert ResourceThrottle(max_workers=20, cpu_count=8).max_workers == 8

    @pytest.mark.parametrize("value", [0, -2, "many"])
    def test_invalid_max_workers_uses_auto(self, value):
        assert ResourceThrottle(max_workers=value, cpu_count=8).max_workers == 2

    def test_invalid_percent_uses_default(self):
        assert ResourceThrottle(max_cpu_percent=0, cpu_count=8).max_cpu_percent == 50

    def test_get_worker_count(self):
        throttle = ResourceThrottle(max_workers=4, cpu_count=8)

        assert throttle.get_worker_count("auto") == 4
        assert throttle.get_worker_count(2) == 2
        assert throttle.get_worker_count(10) == 4
        assert throttle.get_worker_count(0) == 1
        assert throttle.get_worker_count("lots") == 4


class TestThrottledBatch:
    """Tests for the inter-batch pause."""

    @pytest.mark.asyncio
    async def test_runs_sync_work(self):
        throttle = ResourceThrottle(batch_delay_ms=0)
        assert await throttle.throttled_batch(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_runs_async_work(self):
        async def work():
            return "done"

        throttle = ResourceThrottle(batch_delay_ms=0)
        assert await throttle.throttled_batch(work) == "done"

    @pytest.mark.asyncio
    async def test_pauses_after_work(self):
        throttle = ResourceThrottle(batch_delay_ms=50)

        start = time.monotonic()
        await throttle.throttled_batch()

        assert time.monotonic() - start >= 0.045

    def test_negative_delay(self):
        assert ResourceThrottle(batch_delay_ms=-5).batch_delay_ms == 0

    def test_to_dict(self):
        throttle = ResourceThrottle(max_cpu_percent=40, batch_delay_ms=25, max_workers=2, cpu_count=8)
        assert throttle.to_dict() == {
            "max_cpu_percent": 40,
            "batch_delay_ms": 25,
            "max_workers": 2,
        }
