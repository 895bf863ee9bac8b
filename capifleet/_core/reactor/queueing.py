"""
The per-object queueing of the reconciliations.

Every object is identified by its reconcile key (kind, namespace, name),
and is reconciled sequentially: never two reconciliations of the same key
at the same time. Other objects are reconciled in parallel in their own
sequential workers.

The events are not queued one by one: only the fact that a key needs
a reconciliation is remembered. Multiple events arriving while the key
is being reconciled are coalesced into one more reconciliation after
the current one. The reconciliation always uses the latest cached state
of the object, so nothing is lost by coalescing.

Delayed scheduling implements the requeueing ("retry in 10 seconds").
If a key is scheduled several times with different delays,
the earliest deadline wins: an event for the object reconciles it
immediately even if a delayed retry is already pending.

To prevent the memory leaks over the long run, the workers of each key
are destroyed if no new schedules arrive for some time.
The destruction delay prevents the often worker destruction and re-creation
when the events are for any reason delayed by Kubernetes.
"""
import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Dict, Optional

from capifleet._cogs.aiokits import aiotasks
from capifleet._cogs.configs import configuration
from capifleet._cogs.structs import references

logger = logging.getLogger(__name__)

KeyReconciler = Callable[[references.ObjectRef], Awaitable[None]]


@dataclasses.dataclass
class _Slot:
    """ The scheduling state of one key, shared by the scheduler and the worker. """
    wakeup: asyncio.Event = dataclasses.field(default_factory=asyncio.Event)
    deadline: Optional[float] = None  # in the loop's time; None if nothing is scheduled.
    task: Optional[aiotasks.Task] = None


class Queue:
    """
    A scheduler of the per-key single-flight reconciliations.

    Usage::

        queue = Queue(reconcile_key, settings=settings, name='Cluster')
        queue.schedule(key)             # as soon as possible
        queue.schedule(key, delay=10)   # retry in 10 seconds
        ...
        await queue.close()
    """

    def __init__(
            self,
            reconciler: KeyReconciler,
            *,
            settings: configuration.OperatorSettings,
            name: str,
    ) -> None:
        super().__init__()
        self._reconciler = reconciler
        self._settings = settings
        self._name = name
        self._slots: Dict[references.ObjectRef, _Slot] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def closed(self) -> bool:
        return self._closed

    def scheduled(self, key: references.ObjectRef) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.deadline is not None

    def schedule(self, key: references.ObjectRef, delay: Optional[float] = None) -> None:
        """
        Request a reconciliation of the key: now or after a delay.
        """
        if self._closed:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (delay or 0)
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
            slot.task = asyncio.create_task(self._worker(key, slot), name=f'worker for {key}')
        if slot.deadline is None or deadline < slot.deadline:
            slot.deadline = deadline
        slot.wakeup.set()

    async def close(self) -> None:
        """
        Stop accepting new keys, drop the pending ones, let the running ones finish.

        The running reconciliations are not cancelled, even if the closing
        itself is cancelled: they are only not waited for in that case.
        """
        self._closed = True
        for slot in self._slots.values():
            slot.deadline = None
            slot.wakeup.set()

        tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
        if tasks:
            logger.debug(f"Waiting for {len(tasks)} workers of {self._name} to finish.")
            await asyncio.shield(aiotasks.wait(tasks, timeout=self._settings.queueing.exit_timeout))

    async def _worker(self, key: references.ObjectRef, slot: _Slot) -> None:
        loop = asyncio.get_running_loop()
        idle_timeout = self._settings.queueing.idle_timeout
        try:
            while not self._closed:

                # Nothing to do: wait for new schedules, or exit if none arrive for long enough.
                if slot.deadline is None:
                    slot.wakeup.clear()
                    try:
                        await asyncio.wait_for(slot.wakeup.wait(), timeout=idle_timeout)
                    except asyncio.TimeoutError:
                        if slot.deadline is None:
                            break
                    continue

                # Something is scheduled for later: sleep, but wake up on earlier schedules.
                delay = slot.deadline - loop.time()
                if delay > 0:
                    slot.wakeup.clear()
                    try:
                        await asyncio.wait_for(slot.wakeup.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                    continue

                # The schedules that arrive during the reconciliation set a new deadline.
                slot.deadline = None
                try:
                    await self._reconciler(key)
                except Exception as e:
                    logger.exception(f"Reconciliation of {key} has failed unexpectedly: {e}")
        finally:
            # No awaits between the idleness check and the removal: no schedules can sneak in.
            if self._slots.get(key) is slot:
                del self._slots[key]
