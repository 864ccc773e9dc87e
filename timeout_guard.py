import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


def _discard_result(task: "asyncio.Future") -> None:
    # retrieve late exceptions of abandoned operations so asyncio does not report them
    if not task.cancelled():
        task.exception()


async def run_with_deadline(
    operation: Awaitable[T],
    timeout: float,
    logger,
    stop_event: Optional[asyncio.Event] = None,
    name: str = "operation",
) -> Optional[T]:
    """
    Race ``operation`` against ``timeout`` seconds and the optional stop signal.

    Returns the operation's result, or None when it timed out, was stopped,
    or raised. On timeout or stop the operation task is cancelled and left
    to unwind on its own; callers discard the session it was using.
    """
    task = asyncio.ensure_future(operation)
    waiters = {task}
    stop_waiter = None
    if stop_event is not None:
        stop_waiter = asyncio.ensure_future(stop_event.wait())
        waiters.add(stop_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if stop_waiter is not None and not stop_waiter.done():
            stop_waiter.cancel()

    stopping = stop_event is not None and stop_event.is_set()
    if task in done:
        try:
            return task.result()
        except asyncio.CancelledError:
            logger.debug(f"{name} was cancelled.")
            return None
        except Exception as exc:
            if not stopping:
                logger.error(f"Operation failed ({name}): {type(exc).__name__}: {exc}")
            return None

    task.add_done_callback(_discard_result)
    task.cancel()
    if stopping:
        logger.debug(f"Operation cancelled ({name}).")
    else:
        logger.warning(f"[TIMEOUT] {name} did not complete within {timeout}s.")
    return None
