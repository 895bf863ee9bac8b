import pytest

from capifleet._cogs.structs.references import (CAPI_CLUSTERS, FLEET_ADDON_CONFIGS, NAMESPACES,
                                                ObjectRef, Resource)


def test_resources_are_equal_by_group_version_plural():
    assert Resource('g', 'v', 'p', 'Kind1') == Resource('g', 'v', 'p', 'Kind2')
    assert hash(Resource('g', 'v', 'p', 'Kind1')) == hash(Resource('g', 'v', 'p', 'Kind2'))
    assert Resource('g', 'v', 'p', 'Kind') != Resource('g', 'v2', 'p', 'Kind')


@pytest.mark.parametrize('resource, expected', [
    (NAMESPACES, 'v1'),
    (CAPI_CLUSTERS, 'cluster.x-k8s.io/v1beta2'),
])
def test_api_version(resource, expected):
    assert resource.api_version == expected


def test_matching_type_erased_objects():
    assert CAPI_CLUSTERS.matches({'apiVersion': 'cluster.x-k8s.io/v1beta2', 'kind': 'Cluster'})
    assert not CAPI_CLUSTERS.matches({'apiVersion': 'fleet.cattle.io/v1alpha1', 'kind': 'Cluster'})
    assert not CAPI_CLUSTERS.matches({'apiVersion': 'cluster.x-k8s.io/v1beta2', 'kind': 'Machine'})


@pytest.mark.parametrize('kwargs, expected', [
    (dict(), '/apis/cluster.x-k8s.io/v1beta2/clusters'),
    (dict(namespace='ns'), '/apis/cluster.x-k8s.io/v1beta2/namespaces/ns/clusters'),
    (dict(namespace='ns', name='c1'), '/apis/cluster.x-k8s.io/v1beta2/namespaces/ns/clusters/c1'),
    (dict(namespace='ns', params={'watch': 'true'}),
     '/apis/cluster.x-k8s.io/v1beta2/namespaces/ns/clusters?watch=true'),
    (dict(server='https://host/', namespace='ns'),
     'https://host/apis/cluster.x-k8s.io/v1beta2/namespaces/ns/clusters'),
])
def test_urls_of_namespaced_resources(kwargs, expected):
    assert CAPI_CLUSTERS.get_url(**kwargs) == expected


def test_urls_of_core_and_cluster_scoped_resources():
    assert NAMESPACES.get_url(name='ns1') == '/api/v1/namespaces/ns1'
    assert NAMESPACES.get_url(namespace='ignored', name='ns1') == '/api/v1/namespaces/ns1'
    assert FLEET_ADDON_CONFIGS.get_url(name='cfg') == \
        '/apis/addons.cluster.x-k8s.io/v1alpha1/fleetaddonconfigs/cfg'


def test_namespaced_object_urls_require_a_namespace():
    with pytest.raises(ValueError):
        CAPI_CLUSTERS.get_url(name='c1')


def test_object_refs_as_keys():
    ref1 = ObjectRef(CAPI_CLUSTERS, 'ns', 'c1')
    ref2 = ObjectRef(CAPI_CLUSTERS, 'ns', 'c1')
    assert ref1 == ref2
    assert len({ref1, ref2}) == 1
    assert str(ref1) == 'Cluster ns/c1'
    assert str(ObjectRef(FLEET_ADDON_CONFIGS, None, 'cfg')) == 'FleetAddonConfig cfg'
