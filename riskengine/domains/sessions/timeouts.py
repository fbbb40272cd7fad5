"""Execution bounds for on-demand operations."""

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog

from .errors import OperationTimeout

logger = structlog.get_logger()

T = TypeVar("T")


async def bounded(
    awaitable: Awaitable[T],
    operation: str,
    timeout_seconds: float | None,
    **context: Any,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    ``None`` or a non-positive bound disables the limit.
    """
    if timeout_seconds is None or timeout_seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError as exc:
        logger.warning(
            "operation_timed_out", operation=operation, timeout_seconds=timeout_seconds, **context
        )
        raise OperationTimeout(operation, timeout_seconds, **context) from exc
