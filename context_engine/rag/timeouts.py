"""Deadline enforcement for calls into external collaborators."""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar


T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    pass


def call_with_deadline(func: Callable[..., T], timeout: Optional[float], *args, **kwargs) -> T:
    """Run ``func`` and wait at most ``timeout`` seconds for it.

    With ``timeout`` None the call runs inline. On overrun the worker thread is
    abandoned (Python threads cannot be killed) and DeadlineExceeded is raised.
    """
    if timeout is None:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="deadline")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        name = getattr(func, "__qualname__", repr(func))
        raise DeadlineExceeded(f"{name} did not finish within {timeout:.1f}s") from e
    finally:
        executor.shutdown(wait=False)
