import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Sequence, TypeVar, Union

from workers.retry import CancelToken, OperationCancelledError

T = TypeVar("T")
U = TypeVar("U")

WorkFn = Callable[[T], Awaitable[U]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    max_workers: int = 10

    def __post_init__(self):
        if not isinstance(self.max_workers, int):
            raise ValueError(f"max_workers must be an int, got {self.max_workers!r}")


def _clamp_workers(max_workers: int, size: Optional[int]) -> int:
    upper = max(1, size) if size is not None else max(1, max_workers)
    return max(1, min(max_workers, upper))


def _as_iterator(inputs: Union[Sequence[T], Iterable[T]]) -> tuple[Iterator[T], Optional[int]]:
    size = len(inputs) if isinstance(inputs, Sequence) else None
    return iter(inputs), size


async def _worker(source: Iterator[T], fn: WorkFn, results: dict[int, U], counter: list[int]) -> None:
    # next() and the index bump run without an await in between, so no two
    # workers ever claim the same input.
    for item in source:
        index = counter[0]
        counter[0] += 1
        results[index] = await fn(item)


async def map_parallel(
    inputs: Union[Sequence[T], Iterable[T]],
    max_workers: int,
    fn: WorkFn,
) -> list[U]:
    """Apply ``fn`` to every input with at most ``max_workers`` calls in flight.

    ``result[i]`` is always ``fn(inputs[i])`` regardless of completion order.
    An exception raised by ``fn`` propagates to the caller; callers that need
    partial success make ``fn`` return a sentinel instead of raising.
    """
    source, size = _as_iterator(inputs)
    n_workers = _clamp_workers(max_workers, size)
    results: dict[int, U] = {}
    counter = [0]

    tasks = [asyncio.ensure_future(_worker(source, fn, results, counter)) for _ in range(n_workers)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    return [results[i] for i in range(counter[0])]


async def map_parallel_with(inputs: Union[Sequence[T], Iterable[T]], config: PoolConfig, fn: WorkFn) -> list[U]:
    return await map_parallel(inputs, config.max_workers, fn)


def _total(fn: WorkFn, fallback: Optional[U], cancel: Optional[CancelToken] = None) -> WorkFn:
    """Wrap ``fn`` so a failure yields ``fallback``; cancellation of the run still propagates."""

    async def wrapped(item: T) -> Optional[U]:
        try:
            return await fn(item)
        except (asyncio.CancelledError, OperationCancelledError):
            raise
        except Exception as e:
            if cancel is not None and cancel.cancelled:
                raise
            logger.error(f"Parallel call failed, using fallback: {e}")
            return fallback

    return wrapped


async def map_parallel_safe(
    inputs: Union[Sequence[T], Iterable[T]],
    max_workers: int,
    fn: WorkFn,
    fallback: Optional[U] = None,
    cancel: Optional[CancelToken] = None,
) -> list[Optional[U]]:
    return await map_parallel(inputs, max_workers, _total(fn, fallback, cancel))
