import asyncio

import pytest

from tilescale.core.exceptions import PipelineCancelledError, RemoteEnhancementError
from tilescale.pipeline.scheduler import WorkerPool


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit():
    in_flight = 0
    peak = 0
    
    async def work(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item * 2
    
    outcomes = await WorkerPool(3).run_all(list(range(12)), work)
    
    assert peak == 3
    assert [o.result for o in outcomes] == [i * 2 for i in range(12)]


@pytest.mark.asyncio
async def test_outcomes_keep_input_order():
    async def work(item):
        # Later items finish first
        await asyncio.sleep(0.001 * (10 - item))
        return item
    
    outcomes = await WorkerPool(5).run_all(list(range(10)), work)
    
    assert [o.index for o in outcomes] == list(range(10))
    assert [o.result for o in outcomes] == list(range(10))


@pytest.mark.asyncio
async def test_empty_input():
    async def work(item):
        raise AssertionError("should not be called")
    
    assert await WorkerPool(2).run_all([], work) == []


@pytest.mark.asyncio
async def test_first_failure_fails_the_run():
    started = []
    
    async def work(item):
        started.append(item)
        await asyncio.sleep(0.01)
        if item == 1:
            raise RemoteEnhancementError("tile failed", attempts=3)
        return item
    
    with pytest.raises(RemoteEnhancementError, match="tile failed"):
        await WorkerPool(2).run_all(list(range(20)), work)
    
    # Dispatch stopped once the failure was seen
    assert len(started) < 20


@pytest.mark.asyncio
async def test_on_result_runs_sequentially():
    active = 0
    overlapped = False
    applied = []
    
    async def work(item):
        await asyncio.sleep(0)
        return item
    
    async def on_result(outcome):
        nonlocal active, overlapped
        active += 1
        overlapped = overlapped or active > 1
        await asyncio.sleep(0.001)
        applied.append(outcome.result)
        active -= 1
    
    await WorkerPool(4).run_all(list(range(16)), work, on_result=on_result)
    
    assert not overlapped
    assert sorted(applied) == list(range(16))


@pytest.mark.asyncio
async def test_on_result_error_fails_the_run():
    async def work(item):
        return item
    
    async def on_result(outcome):
        raise ValueError("canvas broke")
    
    with pytest.raises(ValueError, match="canvas broke"):
        await WorkerPool(2).run_all([1, 2, 3], work, on_result=on_result)


@pytest.mark.asyncio
async def test_cancel_event_abandons_run():
    cancel = asyncio.Event()
    calls = []
    
    async def work(item):
        calls.append(item)
        if item == 0:
            cancel.set()
        await asyncio.sleep(1)
        return item
    
    with pytest.raises(PipelineCancelledError):
        await asyncio.wait_for(
            WorkerPool(1).run_all(list(range(5)), work, cancel_event=cancel),
            timeout=0.5
        )
    
    assert calls == [0]


def test_concurrency_limit_must_be_positive():
    with pytest.raises(ValueError):
        WorkerPool(0)
