"""Async helper utilities shared by the media pipeline."""

import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Callable, Optional, TypeVar

# Shared thread pool for blocking filesystem and hashing work
_io_executor: Optional[ThreadPoolExecutor] = None

T = TypeVar("T")


def get_io_executor() -> ThreadPoolExecutor:
    """Get or create the shared executor for blocking I/O."""
    global _io_executor

    if _io_executor is None:
        _io_executor = ThreadPoolExecutor(
            max_workers=min(32, (os.cpu_count() or 1) * 4),
            thread_name_prefix="obitarchive-io",
        )
    return _io_executor


async def run_in_thread_pool(func: Callable[..., T], *args, **kwargs) -> T:
    """Run a synchronous function in the shared thread pool.

    This avoids creating excessive threads by using a controlled thread pool.
    """
    loop = asyncio.get_running_loop()
    if kwargs:
        func = partial(func, **kwargs)
    return await loop.run_in_executor(get_io_executor(), func, *args)
