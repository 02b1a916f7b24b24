from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from trafficsafety.service.errors import PersistenceTimeoutError

T = TypeVar("T")


async def call_with_timeout(
    timeout: float, func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread, bounded by ``timeout`` seconds."""

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", "store_call")
        raise PersistenceTimeoutError(
            "storage did not respond in time", detail={"operation": name}
        ) from exc
