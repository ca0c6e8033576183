"""
Tests for storefront_checkout.concurrency.

Tests cover:
- The in-flight limit
- Input order of results
- Cancellation of pending calls on failure and on outer cancellation
"""
from __future__ import annotations

import asyncio

import pytest

from storefront_checkout.concurrency import bounded_gather
from storefront_checkout.models import CartLineItem, CheckoutContext

DE = CheckoutContext(tenant="LUNERA", market="DE")


class TestBoundedGather:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 3])
    async def test_in_flight_calls_never_exceed_limit(self, limit):
        release = asyncio.Event()
        counts = {"in_flight": 0, "peak": 0}

        async def work(item: int) -> int:
            counts["in_flight"] += 1
            counts["peak"] = max(counts["peak"], counts["in_flight"])
            await release.wait()
            counts["in_flight"] -= 1
            return item * 2

        task = asyncio.ensure_future(bounded_gather(list(range(10)), work, limit))
        for _ in range(5):
            await asyncio.sleep(0)
        assert counts["in_flight"] == limit

        release.set()
        assert await task == [item * 2 for item in range(10)]
        assert counts["peak"] == limit

    @pytest.mark.asyncio
    async def test_results_keep_input_order_when_completed_in_reverse(self):
        done = {item: asyncio.Event() for item in range(5)}
        finished = []

        async def work(item: int) -> str:
            if item + 1 in done:
                await done[item + 1].wait()
            finished.append(item)
            done[item].set()
            return f"result-{item}"

        results = await bounded_gather(list(range(5)), work, 5)

        assert finished == [4, 3, 2, 1, 0]
        assert results == [f"result-{item}" for item in range(5)]

    @pytest.mark.asyncio
    async def test_failure_cancels_pending_calls(self):
        cancelled = []

        async def work(item: str) -> str:
            if item == "boom":
                await asyncio.sleep(0)
                raise RuntimeError("platform down")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(item)
                raise
            return item

        with pytest.raises(RuntimeError, match="platform down"):
            await bounded_gather(["a", "boom", "b", "c"], work, 4)

        assert sorted(cancelled) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_queued_calls_never_start_after_failure(self):
        started = []

        async def work(item: str) -> str:
            started.append(item)
            if item == "boom":
                raise RuntimeError("platform down")
            await asyncio.Event().wait()
            return item

        with pytest.raises(RuntimeError):
            await bounded_gather(["boom", "a", "b", "c"], work, 2)
        await asyncio.sleep(0)

        assert "c" not in started
        assert started[0] == "boom"

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def work(item):
            raise AssertionError("not called")

        assert await bounded_gather([], work, 3) == []


class TestSessionCancellation:

    @pytest.mark.asyncio
    async def test_cancelling_session_creation_cancels_verification(self, orchestrator, platform):
        entered = asyncio.Event()
        cancelled = asyncio.Event()

        async def blocked_verify(refs):
            entered.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return {}

        platform.verify_variants = blocked_verify

        task = asyncio.ensure_future(
            orchestrator.create_session([CartLineItem("P1", "V1", 2)], None, DE)
        )
        await asyncio.wait_for(entered.wait(), timeout=1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled.is_set()
        assert platform.create_calls == []
