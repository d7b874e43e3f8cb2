import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


async def cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    """Cancel a task and wait until it has actually finished.

    CancelledError raised by the task itself is absorbed; cancellation of
    the caller still propagates.
    """
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
