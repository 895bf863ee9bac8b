import asyncio

import pytest

from capifleet._cogs.structs.references import CAPI_CLUSTERS, ObjectRef
from capifleet._core.reactor.reflectors import Store


def event(type_, name, namespace='ns', **extra):
    return {'type': type_, 'object': {'metadata': {'name': name, 'namespace': namespace}, **extra}}


def test_added_objects_are_cached():
    store = Store()
    old = store.apply(event('ADDED', 'c1', spec=1))
    assert old is None
    assert len(store) == 1
    assert store.get('ns', 'c1')['spec'] == 1


def test_modified_objects_replace_the_cached_ones():
    store = Store()
    store.apply(event('ADDED', 'c1', spec=1))
    old = store.apply(event('MODIFIED', 'c1', spec=2))
    assert old['spec'] == 1
    assert store.get('ns', 'c1')['spec'] == 2
    assert len(store) == 1


def test_deleted_objects_are_removed():
    store = Store()
    store.apply(event('ADDED', 'c1'))
    old = store.apply(event('DELETED', 'c1'))
    assert old is not None
    assert store.get('ns', 'c1') is None
    assert len(store) == 0


def test_same_names_in_different_namespaces_are_different_objects():
    store = Store()
    store.apply(event('ADDED', 'c1', namespace='ns1'))
    store.apply(event('ADDED', 'c1', namespace='ns2'))
    assert len(store) == 2
    assert store.get_by_ref(ObjectRef(CAPI_CLUSTERS, 'ns2', 'c1'))['metadata']['namespace'] == 'ns2'
    assert {body['metadata']['namespace'] for body in store.state()} == {'ns1', 'ns2'}


def test_iteration_is_a_snapshot():
    store = Store()
    store.apply(event('ADDED', 'c1'))
    store.apply(event('ADDED', 'c2'))
    for body in store:
        store.apply({'type': 'DELETED', 'object': body})
    assert len(store) == 0


async def test_readiness():
    store = Store()
    assert not store.ready

    waiter = asyncio.create_task(store.wait_ready())
    await asyncio.sleep(0)
    assert not waiter.done()

    store.mark_ready()
    await asyncio.wait_for(waiter, timeout=1)
    assert store.ready


@pytest.mark.parametrize('type_', ['ADDED', 'MODIFIED', None])
def test_non_deletions_upsert(type_):
    store = Store()
    store.apply(event(type_, 'c1'))
    assert store.get('ns', 'c1') is not None
