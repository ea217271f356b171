"""Tests for the single-flight operation serializer."""

from __future__ import annotations

import asyncio

import pytest

from dca_agent.execution.serializer import OperationSerializer


class TestOperationSerializer:
    @pytest.mark.asyncio
    async def test_concurrent_jobs_run_once_each_in_fifo_order(self) -> None:
        ser = OperationSerializer()
        counter = 0
        in_flight = 0
        max_in_flight = 0
        order: list[tuple[int, int]] = []

        async def job(i: int) -> int:
            nonlocal counter, in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.001 * (5 - i % 5))
            counter += 1
            order.append((i, counter))
            in_flight -= 1
            return i

        futures = [ser.enqueue(lambda i=i: job(i)) for i in range(20)]
        results = await asyncio.gather(*futures)

        assert results == list(range(20))
        assert [i for i, _ in order] == list(range(20))
        assert [c for _, c in order] == list(range(1, 21))
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_failing_job_rejects_only_its_future(self) -> None:
        ser = OperationSerializer()

        async def bad() -> None:
            raise ValueError("boom")

        async def good() -> str:
            return "ok"

        f1 = ser.enqueue(bad)
        f2 = ser.enqueue(good)
        with pytest.raises(ValueError, match="boom"):
            await f1
        assert await f2 == "ok"

    @pytest.mark.asyncio
    async def test_executing_flag_tracks_job_body(self) -> None:
        ser = OperationSerializer()
        seen: list[bool] = []
        release = asyncio.Event()

        async def job() -> None:
            seen.append(ser.executing)
            await release.wait()

        fut = ser.enqueue(job)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert ser.executing is True
        release.set()
        await fut
        assert seen == [True]
        assert ser.executing is False

    @pytest.mark.asyncio
    async def test_close_cancels_queued_jobs_only(self) -> None:
        ser = OperationSerializer()
        release = asyncio.Event()
        ran: list[str] = []

        async def blocking() -> str:
            await release.wait()
            ran.append("first")
            return "first"

        async def later() -> None:
            ran.append("later")

        first = ser.enqueue(blocking)
        await asyncio.sleep(0)
        queued = [ser.enqueue(later), ser.enqueue(later)]
        assert ser.pending == 2

        assert ser.close() == 2
        release.set()
        assert await first == "first"
        assert all(f.cancelled() for f in queued)
        assert ran == ["first"]

    @pytest.mark.asyncio
    async def test_cancelled_future_skips_its_job(self) -> None:
        ser = OperationSerializer()
        release = asyncio.Event()
        ran: list[str] = []

        async def blocking() -> None:
            await release.wait()

        async def skipped() -> None:
            ran.append("skipped")

        async def kept() -> str:
            ran.append("kept")
            return "kept"

        ser.enqueue(blocking)
        f_skip = ser.enqueue(skipped)
        f_kept = ser.enqueue(kept)
        f_skip.cancel()
        release.set()
        assert await f_kept == "kept"
        assert ran == ["kept"]

    @pytest.mark.asyncio
    async def test_drain_restarts_after_queue_empties(self) -> None:
        ser = OperationSerializer()

        async def job(v: int) -> int:
            return v

        assert await ser.enqueue(lambda: job(1)) == 1
        await asyncio.sleep(0)
        assert await ser.enqueue(lambda: job(2)) == 2
