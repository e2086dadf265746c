"""
Scheduler - bounded fan-out over unreliable calls.

A fixed number of workers pull items from a queue and push outcomes onto a
results channel. One consumer task drains the channel and hands successful
results to an optional callback, so callers that mutate shared state (the
merge canvas) see exactly one writer.

Failure policy (fail_fast): the first error marks the run failed, workers
stop taking new items, in-flight siblings finish but their results are
discarded, and the first error is re-raised. Cancellation via cancel_event
stops dispatch, abandons in-flight calls and raises PipelineCancelledError.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from tilescale.core.exceptions import PipelineCancelledError
from tilescale.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_DONE = object()


@dataclass
class Outcome(Generic[T, R]):
    """Result (or error) for one item, keyed by its position in the input."""
    index: int
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    
    @property
    def ok(self) -> bool:
        return self.error is None


class WorkerPool(Generic[T, R]):
    """Run an async function over items with at most `concurrency_limit` in flight."""
    
    def __init__(self, concurrency_limit: int, fail_fast: bool = True, name: str = "pool"):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.concurrency_limit = concurrency_limit
        self.fail_fast = fail_fast
        self.name = name
    
    async def run_all(
        self,
        items: Sequence[T],
        fn: Callable[[T], Awaitable[R]],
        on_result: Optional[Callable[[Outcome[T, R]], Awaitable[None]]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> List[Outcome[T, R]]:
        """
        Process every item and return outcomes in input order.
        
        Args:
            items: Work items; identity is kept by index, not completion order.
            fn: Coroutine function applied to each item.
            on_result: Awaited sequentially, from a single task, for each
                successful outcome of a run that has not failed.
            cancel_event: When set, dispatch stops and in-flight calls are abandoned.
        """
        outcomes: List[Optional[Outcome[T, R]]] = [None] * len(items)
        if not items:
            return []
        
        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))
        results: asyncio.Queue = asyncio.Queue()
        failed = asyncio.Event()
        errors: List[BaseException] = []
        
        def stopped() -> bool:
            return failed.is_set() or (cancel_event is not None and cancel_event.is_set())
        
        async def worker():
            while not stopped():
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = Outcome(index=index, item=item, result=await fn(item))
                except Exception as e:
                    outcome = Outcome(index=index, item=item, error=e)
                    if self.fail_fast and not failed.is_set():
                        errors.append(e)
                        failed.set()
                await results.put(outcome)
        
        async def consumer():
            while True:
                outcome = await results.get()
                if outcome is _DONE:
                    return
                if stopped() and outcome.ok:
                    # Results landing after the run was marked failed are dropped
                    continue
                outcomes[outcome.index] = outcome
                if outcome.ok and on_result is not None:
                    try:
                        await on_result(outcome)
                    except Exception as e:
                        # Keep draining so the workers can wind down
                        if not errors:
                            errors.append(e)
                        failed.set()
        
        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.concurrency_limit, len(items)))
        ]
        consumer_task = asyncio.create_task(consumer())
        all_workers = asyncio.gather(*workers)
        cancel_wait = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        
        try:
            if cancel_wait is not None:
                await asyncio.wait({all_workers, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_event.is_set():
                    logger.warning("pool_cancelled", pool=self.name, pending=queue.qsize())
                    raise PipelineCancelledError()
            await all_workers
            await results.put(_DONE)
            await consumer_task
        finally:
            pending = [t for t in workers + [consumer_task] if not t.done()]
            if cancel_wait is not None and not cancel_wait.done():
                pending.append(cancel_wait)
            for task in pending:
                task.cancel()
            await asyncio.gather(all_workers, *pending, return_exceptions=True)
        
        if errors:
            logger.error(
                "pool_failed",
                pool=self.name,
                error=str(errors[0]),
                error_type=type(errors[0]).__name__
            )
            raise errors[0]
        
        return [o for o in outcomes if o is not None]
