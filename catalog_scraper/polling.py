"""Poll-until-predicate primitive used for every in-page wait."""
from __future__ import annotations

import asyncio
import inspect
import logging
import math
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from .errors import NavigationTimeout

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Predicate = Callable[[], Union[T, Awaitable[T]]]


class PollTimeout(NavigationTimeout):
    """Predicate never became truthy within the timeout."""


async def poll_until(
    predicate: Predicate,
    *,
    timeout: float,
    interval: float = 0.5,
    description: str = "condition",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> Any:
    """Evaluate ``predicate`` until it returns a truthy value.

    Parameters
    ----------
    predicate : callable
        Sync or async callable; its first truthy result is returned
    timeout : float
        Total time budget in seconds
    interval : float
        Pause between evaluations in seconds
    description : str
        Human-readable name used in the timeout message
    sleep : callable, optional
        Awaitable sleep function (defaults to ``asyncio.sleep``)

    Returns
    -------
    Any
        The first truthy predicate result

    Raises
    ------
    PollTimeout
        If the predicate stays falsy for the whole timeout
    """
    sleep = sleep or asyncio.sleep
    attempts = max(1, math.ceil(timeout / interval) + 1) if interval > 0 else 1
    for attempt in range(attempts):
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if attempt < attempts - 1:
            await sleep(interval)
    LOGGER.debug("Gave up waiting for %s after %.1fs", description, timeout)
    raise PollTimeout(f"Timed out after {timeout:.1f}s waiting for {description}")
