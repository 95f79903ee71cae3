"""Bounded-concurrency iteration over a worker function."""
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, Iterator, TypeVar

T = TypeVar('T')
R = TypeVar('R')


def bounded_map(limit: int, items: Iterable[T], worker: Callable[[T], R]) -> Iterator[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    Results are yielded in completion order, one per item. If a worker
    raises, no further items are started and the exception is re-raised to
    the consumer once the calls already in flight have finished.
    """
    if limit < 1:
        raise ValueError(f'limit must be at least 1, got {limit}')

    pending_items = iter(items)
    with ThreadPoolExecutor(max_workers=limit) as executor:
        in_flight = set()

        def _submit_next() -> bool:
            for item in pending_items:
                in_flight.add(executor.submit(worker, item))
                return True
            return False

        while len(in_flight) < limit and _submit_next():
            pass

        while in_flight:
            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                in_flight.discard(future)
                error = future.exception()
                if error is not None:
                    for other in in_flight:
                        other.cancel()
                    raise error
                yield future.result()
                _submit_next()


def consume(results: Iterator[Any], callback: Callable[[], None]) -> int:
    """Exhaust ``results``, invoking ``callback`` once per item. Returns the count."""
    count = 0
    for _ in results:
        count += 1
        callback()
    return count
