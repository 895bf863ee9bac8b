import asyncio
import dataclasses
import logging
import signal
import threading
from typing import Callable, Collection, Coroutine, Iterable, List, Optional, Tuple

from capifleet._cogs.aiokits import aiobarriers, aiotasks
from capifleet._cogs.clients import auth, scanning
from capifleet._cogs.configs import configuration
from capifleet._core.engines import metrics, probing
from capifleet._core.reactor import dispatching, registry

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Context:
    """
    The shared services of the operator, created once and passed to all the controllers.
    """
    settings: configuration.OperatorSettings
    metrics: metrics.Metrics
    diagnostics: metrics.Diagnostics
    registry: registry.WatchRegistry
    dispatcher: dispatching.Dispatcher
    barrier: aiobarriers.Barrier
    version: int = 0  # the API server's minor version, e.g. 32 for 1.32.

    @property
    def streaming(self) -> bool:
        return self.version >= self.settings.watching.streaming_min_version


# The named root coroutines of the operator, made from the shared context.
RootCoroutines = Iterable[Tuple[str, Coroutine[None, None, None]]]
RootsFactory = Callable[[Context], RootCoroutines]


def run(
        *,
        roots: RootsFactory,
        settings: Optional[configuration.OperatorSettings] = None,
        stop_flag: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the whole operator synchronously, until stopped by a signal or a failure.
    """
    try:
        asyncio.run(operator(roots=roots, settings=settings, stop_flag=stop_flag))
    except asyncio.CancelledError:
        pass


async def operator(
        *,
        roots: RootsFactory,
        settings: Optional[configuration.OperatorSettings] = None,
        stop_flag: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the whole operator asynchronously.

    The failures to log in and to detect the server's capabilities are fatal:
    there is nothing to run without them.
    """
    settings = settings if settings is not None else configuration.OperatorSettings()
    info = auth.login()
    async with auth.APIContext(info) as api_context:
        auth.api_context_var.set(api_context)
        version = await scanning.read_version(settings=settings, logger=logger)
        logger.debug(f"The API server's minor version is {version}.")

        watches = registry.WatchRegistry(
            settings=settings,
            streaming=version >= settings.watching.streaming_min_version,
        )
        context = Context(
            settings=settings,
            metrics=metrics.Metrics(),
            diagnostics=metrics.Diagnostics(reporter=settings.posting.reporting_component),
            registry=watches,
            dispatcher=dispatching.Dispatcher(watches, settings=settings),
            barrier=aiobarriers.Barrier(settings.dispatching.barrier_parties),
            version=version,
        )
        operator_tasks = await spawn_tasks(context=context, roots=roots, stop_flag=stop_flag)
        await run_tasks(operator_tasks)


async def spawn_tasks(
        *,
        context: Context,
        roots: RootsFactory,
        stop_flag: Optional[asyncio.Event] = None,
) -> Collection[aiotasks.Task]:
    """
    Spawn all the tasks needed to run the operator.

    The tasks are properly inter-connected with the shared context.
    """
    loop = asyncio.get_running_loop()
    settings = context.settings
    signal_flag: aiotasks.Future = asyncio.Future()
    tasks = []

    # A top-level task for external stopping by setting a stop-flag or by the OS signals.
    tasks.append(aiotasks.create_guarded_task(
        name="stop-flag checker", finishable=True, logger=logger,
        coro=_stop_flag_checker(signal_flag=signal_flag, stop_flag=stop_flag)))

    # Liveness does not depend on the controllers: it is served as soon as possible.
    if settings.server.endpoint is not None:
        tasks.append(aiotasks.create_guarded_task(
            name="health, metrics & diagnostics server", logger=logger,
            coro=probing.server(
                endpoint=settings.server.endpoint,
                metrics=context.metrics,
                diagnostics=context.diagnostics)))

    tasks.append(aiotasks.create_guarded_task(
        name="broadcast dispatcher", logger=logger,
        coro=context.dispatcher.run()))

    for name, coro in roots(context):
        tasks.append(aiotasks.create_guarded_task(
            name=name, logger=logger,
            coro=_barrier_participant(coro, barrier=context.barrier)))

    # Ensure that all guarded tasks got control for a moment to enter the guard.
    await asyncio.sleep(0)

    # On Ctrl+C or pod termination, cancel all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        loop.add_signal_handler(signal.SIGINT, signal_flag.set_result, signal.SIGINT)
        loop.add_signal_handler(signal.SIGTERM, signal_flag.set_result, signal.SIGTERM)
    else:
        logger.warning("OS signals are ignored: running not in the main thread.")

    return tasks


async def run_tasks(root_tasks: Collection[aiotasks.Task]) -> None:
    """
    Orchestrate the tasks and terminate them gracefully when needed.

    The root tasks are expected to run forever. Once any of them exits,
    the whole operator and all other root tasks should exit. The controllers
    stop consuming the events, but let their running reconciliations finish.
    """
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger)
        raise

    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)
    await aiotasks.reraise(root_done | root_cancelled)


async def _barrier_participant(
        coro: Coroutine[None, None, None],
        *,
        barrier: aiobarriers.Barrier,
) -> None:
    """
    Run a root coroutine; if it fails before the readiness, fail the others too.

    The other controllers would wait for it at the barrier forever otherwise.
    """
    try:
        await coro
    except Exception as e:
        await barrier.abort(e)
        raise


async def _stop_flag_checker(
        signal_flag: aiotasks.Future,
        stop_flag: Optional[asyncio.Event],
) -> None:
    """
    A top-level task for external stopping by setting a stop-flag. Once set,
    this task will exit, and thus all other top-level tasks will be cancelled.
    """
    flags: List[aiotasks.Future] = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.create_task(stop_flag.wait(), name="stop-flag waiter"))

    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        result = done.pop().result()
    except asyncio.CancelledError:
        pass  # operator is stopping for any other reason
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. Operator is stopping.", result.name)
        else:
            logger.info("Stop-flag is raised. Operator is stopping.")
    finally:
        for flag in flags[1:]:
            flag.cancel()
