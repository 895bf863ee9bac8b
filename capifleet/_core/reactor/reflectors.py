"""
The local caches of the watched objects ("reflectors").

Every controller keeps its own cache of the objects it reconciles,
fed only from the watch-events, never from the direct API reads.
The reconciliations always get the latest cached state of the object,
not the state from the event that has triggered them.

The caches are eventually consistent: a missed event (e.g. by a lagging
subscriber of the dispatcher) is fixed by the next event of the same object,
or by the re-listing after the watch-stream is restarted.
"""
import asyncio
from typing import Dict, Iterator, List, Optional, Tuple

from capifleet._cogs.structs import bodies, references

StoreKey = Tuple[Optional[str], str]  # (namespace, name)


class Store:

    def __init__(self) -> None:
        super().__init__()
        self._objects: Dict[StoreKey, bodies.RawBody] = {}
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[bodies.RawBody]:
        return iter(list(self._objects.values()))

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        """ Mark the initial listing as fully loaded into the cache. """
        self._ready.set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def apply(self, raw_event: bodies.RawEvent) -> Optional[bodies.RawBody]:
        """
        Put the event's object into the cache, or remove it if deleted.

        Returns the previously cached state of the object, if any.
        """
        body = raw_event['object']
        key = (bodies.get_namespace(body), bodies.get_name(body))
        if raw_event['type'] == 'DELETED':
            return self._objects.pop(key, None)
        else:
            old = self._objects.get(key)
            self._objects[key] = body
            return old

    def get(self, namespace: Optional[str], name: str) -> Optional[bodies.RawBody]:
        return self._objects.get((namespace, name))

    def get_by_ref(self, ref: references.ObjectRef) -> Optional[bodies.RawBody]:
        return self.get(ref.namespace, ref.name)

    def state(self) -> List[bodies.RawBody]:
        """ A snapshot of all the cached objects. """
        return list(self._objects.values())
