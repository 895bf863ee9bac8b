import asyncio

import pytest

from capifleet._cogs.structs.references import CAPI_CLUSTERS, NAMESPACES
from capifleet._core.reactor.dispatching import Dispatcher
from capifleet._core.reactor.registry import WatchDescriptor, WatchRegistry


CLUSTERS = WatchDescriptor(CAPI_CLUSTERS, labels='import=true')
NAMESPACES_ = WatchDescriptor(NAMESPACES, labels='import=true')
CLUSTER_EVENT = {'type': 'ADDED', 'object': {'apiVersion': 'cluster.x-k8s.io/v1beta2',
                                             'kind': 'Cluster', 'metadata': {'name': 'c1'}}}
NAMESPACE_EVENT = {'type': 'ADDED', 'object': {'apiVersion': 'v1', 'kind': 'Namespace',
                                               'metadata': {'name': 'ns1'}}}


@pytest.fixture()
def registry(settings, streams):
    return WatchRegistry(settings=settings, factory=streams)


@pytest.fixture()
async def dispatcher(registry, settings, stop):
    dispatcher = Dispatcher(registry, settings=settings)
    task = asyncio.create_task(dispatcher.run())
    yield dispatcher
    await stop(task)


async def test_events_are_fanned_out_to_all_subscribers(dispatcher, registry, streams):
    subscriber1 = dispatcher.subscribe()
    subscriber2 = dispatcher.subscribe()
    await registry.replace([CLUSTERS])
    streams.feed(CLUSTERS, CLUSTER_EVENT)

    assert await asyncio.wait_for(subscriber1.__anext__(), timeout=1) == CLUSTER_EVENT
    assert await asyncio.wait_for(subscriber2.__anext__(), timeout=1) == CLUSTER_EVENT


async def test_subscribers_filter_by_resource(dispatcher, registry, streams):
    clusters = dispatcher.subscribe(CAPI_CLUSTERS)
    namespaces = dispatcher.subscribe(NAMESPACES)
    await registry.replace([CLUSTERS, NAMESPACES_])
    streams.feed(NAMESPACES_, NAMESPACE_EVENT)
    streams.feed(CLUSTERS, CLUSTER_EVENT)

    assert await asyncio.wait_for(clusters.__anext__(), timeout=1) == CLUSTER_EVENT
    assert await asyncio.wait_for(namespaces.__anext__(), timeout=1) == NAMESPACE_EVENT


async def test_events_are_in_order_within_a_stream(dispatcher, registry, streams):
    subscriber = dispatcher.subscribe()
    await registry.replace([CLUSTERS])
    events = [dict(CLUSTER_EVENT, type=t) for t in ['ADDED', 'MODIFIED', 'DELETED']]
    streams.feed(CLUSTERS, *events)

    received = [await asyncio.wait_for(subscriber.__anext__(), timeout=1) for _ in events]
    assert received == events


async def test_removed_streams_are_closed(dispatcher, registry, streams):
    await registry.replace([CLUSTERS])
    await asyncio.sleep(0.01)
    assert streams.started == [CLUSTERS]

    await registry.replace([NAMESPACES_])
    await asyncio.sleep(0.01)
    assert streams.started == [CLUSTERS, NAMESPACES_]
    assert streams.closed == [CLUSTERS]


async def test_added_streams_are_polled(dispatcher, registry, streams):
    subscriber = dispatcher.subscribe()
    await registry.replace([CLUSTERS])
    await asyncio.sleep(0.01)
    await registry.add(NAMESPACES_)
    streams.feed(NAMESPACES_, NAMESPACE_EVENT)

    assert await asyncio.wait_for(subscriber.__anext__(), timeout=1) == NAMESPACE_EVENT
    assert streams.closed == []


async def test_lagging_subscribers_skip_events(registry, streams, settings, stop, assert_logs):
    settings.dispatching.capacity = 2
    dispatcher = Dispatcher(registry, settings=settings)
    subscriber = dispatcher.subscribe(CAPI_CLUSTERS)
    task = asyncio.create_task(dispatcher.run())
    try:
        events = [dict(CLUSTER_EVENT, type=t) for t in ['ADDED', 'MODIFIED', 'DELETED']]
        await registry.replace([CLUSTERS])
        streams.feed(CLUSTERS, *events)
        await asyncio.sleep(0.05)

        received = await asyncio.wait_for(subscriber.__anext__(), timeout=1)
        assert received == events[1]
    finally:
        await stop(task)

    assert_logs([r"lagging behind; skipped 1 events"])


async def test_subscribers_get_only_the_new_events(dispatcher, registry, streams):
    await registry.replace([CLUSTERS])
    streams.feed(CLUSTERS, CLUSTER_EVENT)
    await asyncio.sleep(0.01)

    subscriber = dispatcher.subscribe()
    event2 = dict(CLUSTER_EVENT, type='MODIFIED')
    streams.feed(CLUSTERS, event2)
    assert await asyncio.wait_for(subscriber.__anext__(), timeout=1) == event2


async def test_subscribers_stop_when_the_dispatcher_stops(registry, settings, stop):
    dispatcher = Dispatcher(registry, settings=settings)
    subscriber = dispatcher.subscribe()
    task = asyncio.create_task(dispatcher.run())
    await asyncio.sleep(0.01)
    await stop(task)

    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(subscriber.__anext__(), timeout=1)


def test_dispatcher_exposes_its_watches(registry, settings):
    dispatcher = Dispatcher(registry, settings=settings)
    assert dispatcher.watches is registry
