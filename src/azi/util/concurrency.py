from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Outcome(Generic[T, R]):
    """
    Result slot of one fan-out task: either value or error is set.
    """

    item: T
    value: Optional[R] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
    *,
    on_interrupt: Optional[Callable[[], None]] = None,
) -> List[R]:
    """
    Execute func over items in a thread pool and return results preserving the
    input order. Exceptions from workers are propagated.

    Uses a sliding window of at most max_workers futures. On any exception queued
    work is cancelled and the pool is not joined before re-raising. On an
    interrupt (KeyboardInterrupt, SystemExit) on_interrupt is invoked first so
    in-flight calls can abort.
    """
    max_workers = max(1, int(max_workers))
    results: List[R] = []
    iterator = iter(items)
    inflight: Dict[Future[R], int] = {}
    pending: Dict[int, R] = {}
    next_index = 0
    submitted = 0

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="azi-fanout")

    def _submit_next() -> bool:
        nonlocal submitted
        try:
            item = next(iterator)
        except StopIteration:
            return False
        inflight[executor.submit(func, item)] = submitted
        submitted += 1
        return True

    try:
        for _ in range(max_workers):
            if not _submit_next():
                break

        while inflight:
            done, _ = wait(inflight.keys(), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = inflight.pop(fut)
                pending[idx] = fut.result()
            for _ in range(len(done)):
                if not _submit_next():
                    break
            while next_index in pending:
                results.append(pending.pop(next_index))
                next_index += 1
    except BaseException as e:
        for fut in inflight:
            fut.cancel()
        if on_interrupt is not None and not isinstance(e, Exception):
            on_interrupt()
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return results


def fan_out(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
    *,
    on_interrupt: Optional[Callable[[], None]] = None,
) -> List[Outcome[T, R]]:
    """
    Bounded fan-out/fan-in: run func for every item and wait for all of them.
    Ordinary exceptions are captured into the item's Outcome instead of
    aborting siblings; interrupts still propagate.
    """

    def _capture(item: T) -> Outcome[T, R]:
        try:
            return Outcome(item=item, value=func(item))
        except Exception as e:  # recorded per item
            return Outcome(item=item, error=e)

    return parallel_map_ordered(_capture, items, max_workers, on_interrupt=on_interrupt)
