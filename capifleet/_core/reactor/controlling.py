"""
The controller loops: from the watch-events to the per-object reconciliations.

A controller reconciles the objects of one resource kind (the primary one).
It is triggered by:

* the events of the primary objects themselves;
* the events of the owned objects, mapped to their owners of the primary kind;
* the events of any other watched objects, mapped by a custom function.

The primary objects are cached locally from their events, and the reconciler
always gets the latest cached state of the object. The objects absent from
the cache (e.g. already deleted) are not reconciled.

The events that do not change the object in a relevant way (as decided by
a predicate) do not trigger the reconciliations. By default, every new
resource version of an object is relevant.

The primary stream is either the controller's own watch-stream,
or a subscription to the dispatcher's merged feed (see :mod:`dispatching`).
"""
import asyncio
import logging
from typing import (Any, AsyncIterable, Awaitable, Callable, Dict, Hashable, Iterable,
                    List, Mapping, Optional, Tuple, Union)

from capifleet._cogs.aiokits import aiotasks
from capifleet._cogs.clients import watching
from capifleet._cogs.configs import configuration
from capifleet._cogs.structs import bodies, references
from capifleet._core.actions import results
from capifleet._core.reactor import dispatching, queueing, reflectors

logger = logging.getLogger(__name__)

EventSource = AsyncIterable[Union[watching.Bookmark, bodies.RawEvent]]
Reconciler = Callable[[bodies.RawBody], Awaitable[results.Action]]
ErrorPolicy = Callable[[bodies.RawBody, Exception], results.Action]
Mapper = Callable[[bodies.RawBody], Iterable[references.ObjectRef]]
Predicate = Callable[[Mapping[str, Any]], Optional[Hashable]]


def resource_version(body: Mapping[str, Any]) -> Optional[Hashable]:
    return body.get('metadata', {}).get('resourceVersion')


def generation(body: Mapping[str, Any]) -> Optional[Hashable]:
    return body.get('metadata', {}).get('generation')


def generation_with_deletion(body: Mapping[str, Any]) -> Optional[Hashable]:
    """
    The spec changes only; but every change once the deletion is requested.

    The metadata changes (e.g. the finalizers) do not increase the generation,
    so the deleted objects are tracked by their resource versions to notice
    the moment when they can be cleaned up.
    """
    if body.get('metadata', {}).get('deletionTimestamp') is not None:
        return ('deleting', resource_version(body))
    else:
        return generation(body)


class PredicateFilter:
    """
    Remember the last predicate value of every object; pass only the changes.

    The objects for which the predicate returns ``None`` always pass:
    e.g. the objects with no generation (the built-in ones) when filtered
    by the generation.
    """

    def __init__(self, predicate: Predicate) -> None:
        super().__init__()
        self._predicate = predicate
        self._seen: Dict[Tuple[Optional[str], Optional[str], str], Hashable] = {}

    def __call__(self, raw_event: bodies.RawEvent) -> bool:
        body = raw_event['object']
        key = (body.get('kind'), bodies.get_namespace(body), bodies.get_name(body))
        if raw_event['type'] == 'DELETED':
            self._seen.pop(key, None)
            return True

        value = self._predicate(body)
        if value is None:
            return True
        elif key in self._seen and self._seen[key] == value:
            return False
        else:
            self._seen[key] = value
            return True


class Controller:
    """
    One controller loop over a primary resource kind.

    Usage::

        controller = Controller(references.CAPI_CLUSTERS, subscriber, store=subscriber.store,
                                settings=settings)
        controller.owns(references.FLEET_CLUSTERS, fleet_clusters_stream)
        controller.watches(references.FLEET_BUNDLE_NS_MAPPINGS, mappings_stream, mapper)
        await controller.run(reconciler, error_policy)
    """

    def __init__(
            self,
            resource: references.Resource,
            source: EventSource,
            *,
            settings: configuration.OperatorSettings,
            store: Optional[reflectors.Store] = None,
            predicate: Optional[Predicate] = resource_version,
            name: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.store = store if store is not None else reflectors.Store()
        self.name = name or resource.kind
        self._settings = settings
        self._source = source
        self._predicate = predicate
        self._secondaries: List[Tuple[references.Resource, EventSource, Mapper]] = []

    @classmethod
    def for_subscriber(
            cls,
            resource: references.Resource,
            subscriber: dispatching.Subscriber,
            *,
            settings: configuration.OperatorSettings,
            predicate: Optional[Predicate] = resource_version,
            name: Optional[str] = None,
    ) -> "Controller":
        return cls(resource, subscriber, store=subscriber.store,
                   settings=settings, predicate=predicate, name=name)

    @classmethod
    def for_watch(
            cls,
            resource: references.Resource,
            *,
            settings: configuration.OperatorSettings,
            labels: Optional[str] = None,
            fields: Optional[str] = None,
            streaming: bool = False,
            predicate: Optional[Predicate] = resource_version,
            name: Optional[str] = None,
    ) -> "Controller":
        source = watching.infinite_watch(
            settings=settings,
            resource=resource,
            namespace=None,
            labels=labels,
            fields=fields,
            streaming=streaming,
        )
        return cls(resource, source, settings=settings, predicate=predicate, name=name)

    def owns(self, resource: references.Resource, source: EventSource) -> "Controller":
        """
        Reconcile the owners (of the primary kind) of the objects on their changes.
        """
        self._secondaries.append((resource, source, self._map_owners))
        return self

    def watches(self, resource: references.Resource, source: EventSource, mapper: Mapper) -> "Controller":
        """
        Reconcile the primary objects returned by the mapper on the objects' changes.
        """
        self._secondaries.append((resource, source, mapper))
        return self

    def _map_owners(self, body: bodies.RawBody) -> Iterable[references.ObjectRef]:
        namespace = bodies.get_namespace(body) if self.resource.namespaced else None
        for owner in bodies.get_owner_references(body):
            if owner.get('apiVersion') == self.resource.api_version and owner.get('kind') == self.resource.kind:
                yield references.ObjectRef(self.resource, namespace, owner['name'])

    async def run(self, reconciler: Reconciler, error_policy: ErrorPolicy) -> None:
        """
        Consume the streams and reconcile the objects until cancelled.

        On cancellation, the streams stop being consumed, the pending
        reconciliations are dropped, the running ones are finished.
        """
        queue = queueing.Queue(
            lambda key: self._reconcile_key(key, queue, reconciler, error_policy),
            settings=self._settings,
            name=self.name,
        )
        tasks = [
            aiotasks.create_guarded_task(
                name=f'{self.name} controller: primary stream',
                coro=self._consume_primary(queue),
                logger=logger,
            )
        ]
        for resource, source, mapper in self._secondaries:
            tasks.append(aiotasks.create_guarded_task(
                name=f'{self.name} controller: {resource.kind} stream',
                coro=self._consume_secondary(queue, resource, source, mapper),
                logger=logger,
            ))

        logger.debug(f"The {self.name} controller is running.")
        try:
            await asyncio.gather(*tasks)
        finally:
            await aiotasks.stop(tasks, title=f"{self.name} controller", logger=logger)
            await queue.close()
            logger.debug(f"The {self.name} controller is stopped.")

    async def _consume_primary(self, queue: queueing.Queue) -> None:
        passes = PredicateFilter(self._predicate) if self._predicate is not None else None
        async for item in self._source:
            if isinstance(item, watching.Bookmark):
                if item is watching.Bookmark.LISTED:
                    self.store.mark_ready()
                continue

            self.store.apply(item)
            if item['type'] == 'DELETED':
                continue
            if passes is not None and not passes(item):
                continue

            body = item['object']
            namespace = bodies.get_namespace(body) if self.resource.namespaced else None
            queue.schedule(references.ObjectRef(self.resource, namespace, bodies.get_name(body)))

    async def _consume_secondary(
            self,
            queue: queueing.Queue,
            resource: references.Resource,
            source: EventSource,
            mapper: Mapper,
    ) -> None:
        passes = PredicateFilter(resource_version)
        async for item in source:
            if isinstance(item, watching.Bookmark):
                continue
            if not passes(item):
                continue
            for key in mapper(item['object']):
                queue.schedule(key)

    async def _reconcile_key(
            self,
            key: references.ObjectRef,
            queue: queueing.Queue,
            reconciler: Reconciler,
            error_policy: ErrorPolicy,
    ) -> None:
        body = self.store.get_by_ref(key)
        if body is None:
            logger.debug(f"Skipping the reconciliation of {key}: it is not in the cache.")
            return

        try:
            action = await reconciler(body)
        except Exception as e:
            action = error_policy(body, e)

        if action.requeue_after is not None:
            queue.schedule(key, delay=action.requeue_after)
