"""
Helpers for the operator's long-living asyncio tasks.

The operator runs a handful of "eternal" tasks: the dispatcher, the watch
sources, the controller loops, the metrics server. None of them is expected
to exit on its own, so an exit or a failure is logged the moment it happens,
not when (if ever) the task is awaited by the root task.
"""
import asyncio
from typing import TYPE_CHECKING, Any, Collection, Coroutine, Optional, Set, Tuple

from capifleet._cogs.helpers import typedefs

# A workaround for a difference in tasks at runtime and type-checking time.
if TYPE_CHECKING:
    Future = asyncio.Future[Any]
    Task = asyncio.Task[Any]
else:
    Future = asyncio.Future
    Task = asyncio.Task


async def guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        finishable: bool = False,
        cancellable: bool = False,
        logger: Optional[typedefs.Logger] = None,
) -> None:
    """
    Run a presumably eternal coroutine and log how it ends.

    Errors are always logged. The normal exit is logged as a warning unless
    the task is marked as finishable; the cancellation is logged unless
    the task is marked as cancellable. The outcome is re-raised as is.
    """
    capname = name.capitalize()
    try:
        await coro
    except asyncio.CancelledError:
        if logger is not None and not cancellable:
            logger.debug(f"{capname} is cancelled.")
        raise
    except Exception as e:
        if logger is not None:
            logger.exception(f"{capname} has failed: {e}")
        raise
    else:
        if logger is not None and not finishable:
            logger.warning(f"{capname} has finished unexpectedly.")


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        finishable: bool = False,
        cancellable: bool = False,
        logger: Optional[typedefs.Logger] = None,
) -> Task:
    """ A shortcut for a named task running a guarded coroutine. """
    return asyncio.create_task(
        name=name,
        coro=guard(
            name=name,
            coro=coro,
            finishable=finishable,
            cancellable=cancellable,
            logger=logger))


async def wait(
        tasks: Collection[Task],
        *,
        timeout: Optional[float] = None,
        return_when: Any = asyncio.ALL_COMPLETED,
) -> Tuple[Set[Task], Set[Task]]:
    """
    Same as :func:`asyncio.wait`, but tolerant to an empty collection of tasks.
    """
    if not tasks:
        return set(), set()
    done, pending = await asyncio.wait(tasks, timeout=timeout, return_when=return_when)
    return done, pending


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        logger: Optional[typedefs.Logger] = None,
) -> Tuple[Set[Task], Set[Task]]:
    """
    Cancel the tasks and wait until they are all done.

    There is no timeout: the stopping ends either when all the tasks exit,
    or when the stopping routine itself is cancelled (e.g. on a repeated signal).
    """
    captitle = title.capitalize()
    if not tasks:
        return set(), set()

    for task in tasks:
        task.cancel()

    try:
        done, pending = await wait(tasks)
    except asyncio.CancelledError:
        pending = {task for task in tasks if not task.done()}
        if logger is not None:
            logger.debug(f"{captitle} tasks are not stopped: cancelled; tasks left: {pending!r}")
        raise
    else:
        if logger is not None:
            logger.debug(f"{captitle} tasks are stopped; tasks left: {pending!r}")
    return done, pending


async def reraise(
        tasks: Collection[Task],
) -> None:
    """
    Re-raise the first error of the tasks, if any; ignore the cancellations.
    """
    for task in tasks:
        try:
            task.result()
        except asyncio.CancelledError:
            pass
