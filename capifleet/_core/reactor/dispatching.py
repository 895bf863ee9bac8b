"""
The broadcast dispatcher: one merged feed of all the dynamic watch-streams.

The dispatcher polls all the streams of the registry at once (one pending
read per stream), and republishes every event in the order it has received
them onto one bounded broadcast channel. The order of the events of one stream
is preserved; the order across the streams is not guaranteed.

Every controller loop subscribes to the channel and gets its own receiver,
filtered by the resource kind it is interested in. The subscribers never
block the dispatcher: a subscriber that is too slow skips the lost events
(and logs it), and relies on the next events of the same objects
(or the re-listing of the restarted streams) for the eventual consistency.

When the registry changes, the dispatcher stops polling the removed streams
(they are closed and dropped) and starts polling the added ones.
When the registry is empty, the dispatcher waits for its changes.
"""
import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Union

from capifleet._cogs.aiokits import aiobroadcast, aiotasks
from capifleet._cogs.clients import watching
from capifleet._cogs.configs import configuration
from capifleet._cogs.structs import bodies, references
from capifleet._core.reactor import reflectors, registry

logger = logging.getLogger(__name__)


class Subscriber:
    """
    One controller's view of the merged feed: a receiver with its own cache.

    The cache is not fed by the subscriber itself, but by the controller
    consuming it (see :mod:`controlling`).
    """

    def __init__(
            self,
            receiver: aiobroadcast.Receiver[bodies.RawEvent],
            *,
            resource: Optional[references.Resource] = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.store = reflectors.Store()
        self._receiver = receiver

    def __aiter__(self) -> AsyncIterator[bodies.RawEvent]:
        return self

    async def __anext__(self) -> bodies.RawEvent:
        while True:
            try:
                raw_event = await self._receiver.recv()
            except aiobroadcast.ChannelClosed:
                raise StopAsyncIteration
            except aiobroadcast.Lagged as e:
                logger.warning(f"The subscriber for {self.resource} is lagging behind; "
                               f"skipped {e.skipped} events.")
                continue

            if self.resource is None or self.resource.matches(raw_event['object']):
                return raw_event


class Dispatcher:
    """
    The single owner of the merged feed, created once per operator.
    """

    def __init__(
            self,
            watches: registry.WatchRegistry,
            *,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self._registry = watches
        self._channel: aiobroadcast.Channel[bodies.RawEvent] = aiobroadcast.Channel(
            capacity=settings.dispatching.capacity)

    @property
    def watches(self) -> registry.WatchRegistry:
        return self._registry

    def subscribe(self, resource: Optional[references.Resource] = None) -> Subscriber:
        """
        Subscribe to the events sent from now on (never to the past ones).
        """
        return Subscriber(self._channel.subscribe(), resource=resource)

    async def run(self) -> None:
        """
        Poll the registered streams and republish their events until cancelled.
        """
        reads: Dict[registry.WatchHandle, aiotasks.Task] = {}
        try:
            while True:
                generation = self._registry.generation
                handles = self._registry.handles()
                await self._retire(reads, keep=handles)
                for handle in handles:
                    if handle not in reads:
                        reads[handle] = asyncio.create_task(handle.next(), name=f'read {handle}')

                changed = asyncio.create_task(self._registry.wait_for_change(generation))
                try:
                    await asyncio.wait([changed, *reads.values()], return_when=asyncio.FIRST_COMPLETED)
                finally:
                    changed.cancel()

                # Publish in the order of the current set; re-read the consumed streams next time.
                for handle, task in list(reads.items()):
                    if task.done():
                        del reads[handle]
                        await self._publish(handle, task.result())
        finally:
            await self._retire(reads, keep=[])
            await self._channel.close()

    async def _publish(
            self,
            handle: registry.WatchHandle,
            item: Union[watching.Bookmark, bodies.RawEvent],
    ) -> None:
        if isinstance(item, watching.Bookmark):
            logger.debug(f"The initial listing is over for {handle.descriptor}.")
        else:
            await self._channel.send(item)

    async def _retire(
            self,
            reads: Dict[registry.WatchHandle, aiotasks.Task],
            *,
            keep: List[registry.WatchHandle],
    ) -> None:
        retired = [handle for handle in reads if handle not in keep]
        if not retired:
            return

        # Even if some of the pending reads have already got an event, it is dropped:
        # the new streams start with a full listing of the objects anyway.
        tasks = [reads.pop(handle) for handle in retired]
        await aiotasks.stop(tasks, title="Retired watch", logger=logger)
        for handle in retired:
            await handle.close()
            logger.debug(f"Stopped polling the watch-stream of {handle.descriptor}.")
