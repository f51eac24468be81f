"""
First-to-settle timeout races.

The identity provider SDK calls give no cancellation guarantees, so an
operation is raced against a timer. Whichever settles first wins; the losing
operation is cancelled but never awaited, and its eventual exception is
consumed so it cannot surface later as "Task exception was never retrieved".
"""
import asyncio
from typing import Awaitable, TypeVar

from equiauth.utils.errors import SessionTimeoutError
from equiauth.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _consume_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Orphaned auth operation finished with: {exc!r}")


async def race_with_timeout(operation: Awaitable[T], timeout: float, name: str = "operation") -> T:
    """
    Await an operation, giving up after `timeout` seconds.

    Args:
        operation: Coroutine or future to run
        timeout: Seconds before the timer wins
        name: Operation name used in the timeout error

    Returns:
        The operation's result if it settled first

    Raises:
        SessionTimeoutError: If the timer settled first
        Exception: Whatever the operation raised, if it settled first
    """
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_consume_result)
    task.cancel()
    logger.warning(f"{name} did not settle within {timeout:g}s, discarding")
    raise SessionTimeoutError(name, timeout)
