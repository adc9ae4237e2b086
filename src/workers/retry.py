"""
Retry with exponential backoff and cooperative cancellation.

Every network-calling collaborator wraps its single HTTP call in
``call_with_retries``. Cancellation is explicit: a ``CancelToken`` is created
once per run and handed down to every call that should stop when the run is
aborted.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, Iterator, Optional, TypeVar

from config import settings

logger = logging.getLogger(__name__)

R = TypeVar("R")

SleepFn = Callable[[float, Optional["CancelToken"]], Awaitable[None]]


class OperationCancelledError(RuntimeError):
    pass


class RetryExhaustedError(RuntimeError):
    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"Network request failed after {attempts} attempts: {detail}")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = frozenset({429, 500})

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        object.__setattr__(self, "retryable_status_codes", frozenset(self.retryable_status_codes))

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetryPolicy":
        values = {
            "max_retries": settings.retry_max_retries,
            "initial_delay": settings.retry_initial_delay,
            "max_delay": settings.retry_max_delay,
            "backoff_multiplier": settings.retry_backoff_multiplier,
            "retryable_status_codes": frozenset(settings.retry_status_codes),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> Iterator[float]:
        """Sleeps taken between consecutive attempts, in order."""
        delay = min(self.initial_delay, self.max_delay)
        for _ in range(self.max_retries):
            yield delay
            delay = min(delay * self.backoff_multiplier, self.max_delay)

    def is_retryable(self, response: Any) -> bool:
        return getattr(response, "status_code", None) in self.retryable_status_codes


class CancelToken:
    """Run-wide cancellation signal.

    ``cancel`` fires every registered callback synchronously, so sleeps and
    in-flight calls observe it on the next loop iteration.
    """

    def __init__(self):
        self._reason: Optional[BaseException] = None
        self._callbacks: list[Callable[[BaseException], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[BaseException]:
        return self._reason

    def cancel(self, reason: Optional[BaseException] = None) -> None:
        if self._reason is not None:
            return
        self._reason = reason if reason is not None else OperationCancelledError("Operation aborted")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self._reason)

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self._reason

    def add_callback(self, callback: Callable[[BaseException], None]) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[BaseException], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


async def cancellable_sleep(seconds: float, cancel: Optional[CancelToken] = None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()

    loop = asyncio.get_running_loop()
    future = loop.create_future()
    handle = loop.call_later(seconds, _resolve, future)

    def on_cancel(reason: BaseException) -> None:
        if not future.done():
            future.set_exception(reason)

    if cancel is not None:
        cancel.add_callback(on_cancel)
    try:
        await future
    finally:
        handle.cancel()
        if cancel is not None:
            cancel.remove_callback(on_cancel)


async def _dispatch(op: Callable[[], Awaitable[R]], cancel: Optional[CancelToken]) -> R:
    if cancel is None:
        return await op()

    cancel.raise_if_cancelled()
    task = asyncio.ensure_future(op())

    def on_cancel(reason: BaseException) -> None:
        task.cancel()

    cancel.add_callback(on_cancel)
    try:
        return await task
    except asyncio.CancelledError:
        if cancel.cancelled and task.cancelled():
            raise cancel.reason
        raise
    finally:
        cancel.remove_callback(on_cancel)


async def call_with_retries(
    op: Callable[[], Awaitable[R]],
    policy: Optional[RetryPolicy] = None,
    cancel: Optional[CancelToken] = None,
    sleep: SleepFn = cancellable_sleep,
) -> R:
    """Run ``op`` up to ``policy.max_retries + 1`` times.

    A response whose ``status_code`` is not retryable is returned at once.
    After the last attempt the final response is returned as-is; if no attempt
    produced a response at all, ``RetryExhaustedError`` is raised.
    """
    policy = policy or RetryPolicy.from_settings()
    if cancel is not None:
        cancel.raise_if_cancelled()

    last_error: Optional[BaseException] = None
    last_response: Optional[R] = None
    delays = policy.delays()

    for attempt in range(policy.total_attempts):
        is_last = attempt == policy.max_retries
        try:
            response = await _dispatch(op, cancel)
        except Exception as e:
            if cancel is not None and cancel.cancelled:
                raise
            last_error = e
            if is_last:
                break
            logger.warning(f"Attempt {attempt + 1}/{policy.total_attempts} failed: {e}")
        else:
            if not policy.is_retryable(response) or is_last:
                return response
            last_response = response
            logger.warning(
                f"Attempt {attempt + 1}/{policy.total_attempts} returned retryable status "
                f"{getattr(response, 'status_code', None)}"
            )

        await sleep(next(delays), cancel)

    if last_response is not None:
        return last_response

    raise RetryExhaustedError(policy.total_attempts, last_error)
