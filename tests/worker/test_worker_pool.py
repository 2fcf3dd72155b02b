from __future__ import annotations

import asyncio
import gc

import pytest

from agent_engine.worker.pool import AgentLocks, RunWorkerPool


@pytest.mark.asyncio
async def test_pool_bounds_concurrency():
    pool = RunWorkerPool(size=2)
    running = 0
    peak = 0

    async def job(token):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    for i in range(6):
        pool.submit(f"job-{i}", job)
    await pool.join()

    assert peak == 2
    assert pool.active == 0


@pytest.mark.asyncio
async def test_cancel_flags_token_of_running_job():
    pool = RunWorkerPool(size=1)
    started = asyncio.Event()
    seen = {}

    async def job(token):
        started.set()
        while not token.cancelled:
            await asyncio.sleep(0.001)
        seen["cancelled"] = True

    pool.submit("run:1", job)
    await started.wait()
    assert pool.cancel("run:1") is True
    await pool.join()

    assert seen == {"cancelled": True}
    assert pool.cancel("run:1") is False


@pytest.mark.asyncio
async def test_queued_job_cancelled_before_start_never_runs():
    pool = RunWorkerPool(size=1)
    gate = asyncio.Event()
    ran = []

    async def blocker(token):
        await gate.wait()

    async def queued(token):
        ran.append("queued")

    pool.submit("a", blocker)
    pool.submit("b", queued)
    pool.cancel("b")
    gate.set()
    await pool.join()

    assert ran == []


@pytest.mark.asyncio
async def test_crashing_job_does_not_break_the_pool():
    pool = RunWorkerPool(size=1)
    done = []

    async def broken(token):
        raise RuntimeError("boom")

    async def fine(token):
        done.append(True)

    pool.submit("broken", broken)
    pool.submit("fine", fine)
    await pool.join()
    assert done == [True]


@pytest.mark.asyncio
async def test_shutdown_cancels_stragglers_and_refuses_new_work():
    pool = RunWorkerPool(size=1)

    async def forever(token):
        await asyncio.sleep(3600)

    pool.submit("slow", forever)
    await asyncio.sleep(0)
    await pool.shutdown(timeout=0.01)

    assert pool.active == 0
    with pytest.raises(RuntimeError):
        pool.submit("late", forever)


@pytest.mark.asyncio
async def test_agent_locks_are_per_agent():
    locks = AgentLocks()
    assert locks.for_agent("a") is locks.for_agent("a")
    assert locks.for_agent("a") is not locks.for_agent("b")


@pytest.mark.asyncio
async def test_agent_locks_drop_entries_nobody_holds():
    locks = AgentLocks()

    async with locks.for_agent("deleted-agent"):
        assert len(locks) == 1
        waiter = asyncio.create_task(_acquire(locks, "deleted-agent"))
        await asyncio.sleep(0)
        assert len(locks) == 1
    await waiter

    gc.collect()
    assert len(locks) == 0


async def _acquire(locks, agent_id):
    async with locks.for_agent(agent_id):
        pass
