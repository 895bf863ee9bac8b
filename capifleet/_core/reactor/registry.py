"""
The dynamic watch registry: the set of watch-streams changed at runtime.

The streams are not known at startup: they depend on the label selectors
in the operator's configuration object (which can change at any time),
and on the namespaces found in the cluster (which come and go).
So, the streams are created, replaced, and added while the operator runs,
with no restarts.

The registry only keeps the set. It is polled by the dispatcher
(see :mod:`dispatching`), which merges all the registered streams
into one feed, and notices the changes of the set via its generation.

The replacement is "clear, then refill" under a lock. The lock is held
only for the span of the replacement and is never held while waiting
for the events. The readers (the dispatcher) see either the old set
or the new set, since there are no awaits between clearing and refilling;
but they can poll the old streams for a while until they notice the change.
"""
import asyncio
import dataclasses
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

from capifleet._cogs.clients import watching
from capifleet._cogs.configs import configuration
from capifleet._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

WatchStream = AsyncIterator[Union[watching.Bookmark, bodies.RawEvent]]


@dataclasses.dataclass(frozen=True)
class WatchDescriptor:
    """
    One logical watch: a resource kind, a scope, and the selectors.

    Two descriptors with the same fields are the same watch; the registry
    never keeps two streams for the same descriptor.
    """
    resource: references.Resource
    namespace: references.Namespace = None  # None means cluster-wide.
    labels: Optional[str] = None
    fields: Optional[str] = None

    def __str__(self) -> str:
        where = f'in {self.namespace!r}' if self.namespace is not None else 'cluster-wide'
        selectors = ', '.join(filter(None, [self.labels, self.fields]))
        return f'{self.resource} {where}' + (f' ({selectors})' if selectors else '')


StreamFactory = Callable[[WatchDescriptor], WatchStream]


class WatchHandle:
    """
    A live watch-stream of one descriptor, restarted if it fails.

    A handle is identified by its own identity, not by the descriptor:
    a handle replaced by another one of the same descriptor is a new stream.
    """

    def __init__(
            self,
            descriptor: WatchDescriptor,
            *,
            factory: StreamFactory,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self.descriptor = descriptor
        self._factory = factory
        self._settings = settings
        self._stream: Optional[WatchStream] = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.descriptor}>'

    async def next(self) -> Union[watching.Bookmark, bodies.RawEvent]:
        """
        Get the next event of the stream; restart the stream on errors.

        The errors of the stream are logged and retried after a delay
        instead of being raised: one failing stream (e.g. with a missing
        resource kind) must not stop the other streams in the same feed.
        """
        while True:
            if self._stream is None:
                self._stream = self._factory(self.descriptor)
            try:
                return await self._stream.__anext__()
            except StopAsyncIteration:
                logger.warning(f"The watch-stream of {self.descriptor} has ended; restarting.")
                self._stream = None
            except Exception as e:
                logger.error(f"The watch-stream of {self.descriptor} has failed; "
                             f"restarting in {self._settings.watching.error_backoff}s: {e!r}")
                self._stream = None
                await asyncio.sleep(self._settings.watching.error_backoff)

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        aclose = getattr(stream, 'aclose', None)
        if aclose is not None:
            await aclose()


class WatchRegistry:
    """
    The set of watch-streams currently active, as polled by the dispatcher.

    It is created once per operator and passed to everything that needs it,
    i.e. the dispatcher (the reader) and the reconcilers (the writers).
    """

    def __init__(
            self,
            *,
            settings: configuration.OperatorSettings,
            streaming: bool = False,
            factory: Optional[StreamFactory] = None,  # used in tests
    ) -> None:
        super().__init__()
        self._settings = settings
        self._streaming = streaming
        self._factory: StreamFactory = factory if factory is not None else self._watch
        self._handles: Dict[WatchDescriptor, WatchHandle] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def generation(self) -> int:
        """ A counter of the changes, to notice them without comparing the sets. """
        return self._generation

    def descriptors(self) -> List[WatchDescriptor]:
        return list(self._handles)

    def handles(self) -> List[WatchHandle]:
        return list(self._handles.values())

    async def replace(self, descriptors: Iterable[WatchDescriptor]) -> None:
        """
        Replace all the streams with the new ones, as a whole.

        No stream survives the replacement, even if its descriptor is the same:
        the new streams re-list the objects, so the caches are re-synced.
        """
        async with self._lock:
            self._handles.clear()
            for descriptor in descriptors:
                self._handles.setdefault(descriptor, self._make_handle(descriptor))
            await self._notify()

    async def add(self, descriptor: WatchDescriptor) -> bool:
        """
        Add one stream unless it is already present; return whether it was added.
        """
        async with self._lock:
            if descriptor in self._handles:
                return False
            self._handles[descriptor] = self._make_handle(descriptor)
            await self._notify()
            return True

    async def wait_for_change(self, generation: int) -> int:
        """
        Wait until the set differs from the given generation; return the new one.
        """
        async with self._changed:
            await self._changed.wait_for(lambda: self._generation != generation)
            return self._generation

    async def _notify(self) -> None:
        async with self._changed:
            self._generation += 1
            self._changed.notify_all()

    def _make_handle(self, descriptor: WatchDescriptor) -> WatchHandle:
        return WatchHandle(descriptor, factory=self._factory, settings=self._settings)

    def _watch(self, descriptor: WatchDescriptor) -> WatchStream:
        return watching.infinite_watch(
            settings=self._settings,
            resource=descriptor.resource,
            namespace=descriptor.namespace,
            labels=descriptor.labels,
            fields=descriptor.fields,
            streaming=self._streaming,
        )
