"""Bounded calls into the blocking store and channel collaborators."""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


async def bounded(fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run fn in a worker thread; raises TimeoutError after timeout seconds."""
    return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
