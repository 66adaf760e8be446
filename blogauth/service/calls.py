from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from blogauth.logging import get_logger
from blogauth.service.errors import InternalError
from blogauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    op: str, fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread under ``timeout`` seconds.

    Unavailability and timeouts become ``InternalError`` so authentication
    fails closed. ``ConstraintViolation`` passes through for callers to map.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.error("repository_timeout", op=op, timeout_seconds=timeout)
        raise InternalError() from None
    except StorageUnavailable as exc:
        logger.error(
            "repository_unavailable", op=op, error=exc.message, detail=exc.detail
        )
        raise InternalError() from exc
