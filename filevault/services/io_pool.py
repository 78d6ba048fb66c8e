from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Any, Callable, TypeVar

from filevault.core.config import settings

T = TypeVar("T")


@lru_cache(maxsize=1)
def get_io_executor() -> ThreadPoolExecutor:
    workers = max(1, int(settings.PIPELINE_IO_WORKERS or 1))
    return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="filevault-io")


def run_io(fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
    """Run a blocking call on the shared pool and wait for it.

    Raises ``concurrent.futures.TimeoutError`` when ``timeout`` elapses. The
    worker thread is not interrupted; its result is discarded.
    """
    future = get_io_executor().submit(fn, *args, **kwargs)
    return future.result(timeout=timeout)
