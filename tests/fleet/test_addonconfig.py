import base64
import json

import pytest

from capifleet._cogs.structs.references import (CAPI_CLUSTERS, CONFIGMAPS, ENDPOINTS,
                                                FLEET_ADDON_CONFIGS, NAMESPACES, ObjectRef)
from capifleet._core.actions.errors import AddonConfigSyncError, DynamicWatcherError
from capifleet._core.actions.results import Action
from capifleet._core.reactor.registry import WatchDescriptor
from capifleet.fleet.addonconfig import (lookup_endpoint, map_configmap_to_config,
                                         reconcile_config_sync, reconcile_dynamic_watches,
                                         update_watches)
from capifleet.fleet.config import FleetAddonConfig

FLEET_CONFIG_URL = CONFIGMAPS.get_url(namespace='cattle-fleet-system', name='fleet-controller')
ENDPOINTS_URL = ENDPOINTS.get_url(namespace='default', name='kubernetes')
ROOT_CA_URL = CONFIGMAPS.get_url(namespace='default', name='kube-root-ca.crt')
CERT = '-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n'


def config_body(**spec):
    return {
        'apiVersion': 'addons.cluster.x-k8s.io/v1alpha1',
        'kind': 'FleetAddonConfig',
        'metadata': {'name': 'fleet-addon-config', 'uid': 'uid-config'},
        'spec': spec,
    }


def fleet_config(**config):
    return {'metadata': {'name': 'fleet-controller', 'namespace': 'cattle-fleet-system'},
            'data': {'config': json.dumps(config), 'other': 'kept'}}


#
# The endpoints of the local API server.
#

@pytest.mark.parametrize('endpoints, expected', [
    ({}, None),
    ({'subsets': []}, None),
    ({'subsets': [{'addresses': [{'ip': '10.0.0.1'}]}]}, None),
    ({'subsets': [{'ports': [{'port': 6443}]}]}, None),
    ({'subsets': [{'addresses': [{'ip': '10.0.0.1'}], 'ports': [{'name': 'https', 'port': 6443}]}]},
     'https://10.0.0.1:6443'),
    ({'subsets': [{'addresses': [{'hostname': 'api', 'ip': '10.0.0.1'}],
                   'ports': [{'name': 'https', 'port': 6443}]}]},
     'https://api:6443'),
    ({'subsets': [{'addresses': [{'ip': '10.0.0.1'}], 'ports': [{'port': 6443}]}]},
     '10.0.0.1'),
    ({'subsets': [{'addresses': [{'ip': '10.0.0.1'}, {'ip': '10.0.0.2'}],
                   'ports': [{'name': 'https', 'port': 6443}, {'name': 'http', 'port': 80}]},
                  {'addresses': [{'ip': '10.0.0.3'}], 'ports': [{'name': 'https', 'port': 1}]}]},
     'https://10.0.0.1:6443'),
])
def test_endpoint_lookup(endpoints, expected):
    assert lookup_endpoint(endpoints) == expected


#
# The dynamic watches.
#

async def test_watches_with_the_selectors(context, assert_logs):
    cfg = FleetAddonConfig(config_body(cluster={
        'selector': {'matchLabels': {'import': 'true'}},
        'namespaceSelector': 'env=prod',
    }))

    action = await update_watches(cfg, context=context)

    assert action == Action.await_change()
    assert context.registry.descriptors() == [
        WatchDescriptor(CAPI_CLUSTERS, labels='import=true'),
        WatchDescriptor(NAMESPACES, labels='env=prod'),
    ]
    assert_logs([r"Reconciled dynamic watches to match selectors: "
                 r"namespace=env=prod, cluster=import=true"])


async def test_watches_with_no_selectors_watch_everything(context):
    await update_watches(FleetAddonConfig(None), context=context)
    assert context.registry.descriptors() == [
        WatchDescriptor(CAPI_CLUSTERS),
        WatchDescriptor(NAMESPACES),
    ]


async def test_watches_are_replaced_as_a_whole(context):
    await context.registry.add(WatchDescriptor(CAPI_CLUSTERS, 'ns1'))
    generation = context.registry.generation

    await reconcile_dynamic_watches(config_body(cluster={'selector': 'import=true'}), context=context)

    assert context.registry.generation > generation
    assert WatchDescriptor(CAPI_CLUSTERS, 'ns1') not in context.registry.descriptors()
    assert WatchDescriptor(CAPI_CLUSTERS, labels='import=true') in context.registry.descriptors()


async def test_malformed_selectors_keep_the_watches(context):
    await context.registry.add(WatchDescriptor(CAPI_CLUSTERS, 'ns1'))
    cfg = FleetAddonConfig(config_body(cluster={'selector': 'a in ('}))

    with pytest.raises(DynamicWatcherError, match=r"Malformed label selector"):
        await update_watches(cfg, context=context)

    assert context.registry.descriptors() == [WatchDescriptor(CAPI_CLUSTERS, 'ns1')]


#
# Fleet's own configuration.
#

async def test_config_sync_with_no_server_settings(kubeapi, context):
    kubeapi.add('get', FLEET_CONFIG_URL, fleet_config(apiServerURL='https://old', extra=1))
    apply_route = kubeapi.add('patch', FLEET_CONFIG_URL, {})

    action = await reconcile_config_sync(config_body(), context=context)

    assert action == Action.await_change()
    assert apply_route.call_count == 1
    assert apply_route.requests[0].query == {'fieldManager': 'addon-provider-fleet', 'force': 'true'}
    assert apply_route.requests[0].headers['Content-Type'] == 'application/apply-patch+yaml'
    assert apply_route.data['metadata'] == {'name': 'fleet-controller',
                                            'namespace': 'cattle-fleet-system'}
    assert list(apply_route.data['data']) == ['config']
    assert json.loads(apply_route.data['data']['config']) == {'apiServerURL': 'https://old', 'extra': 1}


async def test_config_sync_with_the_local_server(kubeapi, context, assert_logs):
    kubeapi.add('get', FLEET_CONFIG_URL, fleet_config(extra=1))
    kubeapi.add('get', ENDPOINTS_URL, {'subsets': [{
        'addresses': [{'ip': '10.0.0.1'}],
        'ports': [{'name': 'https', 'port': 6443}],
    }]})
    kubeapi.add('get', ROOT_CA_URL, {'data': {'ca.crt': CERT}})
    apply_route = kubeapi.add('patch', FLEET_CONFIG_URL, {})

    await reconcile_config_sync(config_body(config={'server': {'inferLocal': True}}), context=context)

    assert json.loads(apply_route.data['data']['config']) == {
        'extra': 1,
        'apiServerURL': 'https://10.0.0.1:6443',
        'apiServerCA': base64.b64encode(CERT.encode()).decode(),
    }
    assert_logs([r"Updated fleet config map"])


async def test_config_sync_with_the_custom_server(kubeapi, context):
    kubeapi.add('get', FLEET_CONFIG_URL, fleet_config())
    kubeapi.add('get', CONFIGMAPS.get_url(namespace='custom-ns', name='custom-ca'),
                {'data': {'ca.crt': CERT}})
    apply_route = kubeapi.add('patch', FLEET_CONFIG_URL, {})

    await reconcile_config_sync(config_body(config={'server': {'custom': {
        'apiServerUrl': 'https://api.example.com:6443',
        'apiServerCaConfigRef': {'name': 'custom-ca', 'namespace': 'custom-ns'},
    }}}), context=context)

    assert json.loads(apply_route.data['data']['config']) == {
        'apiServerURL': 'https://api.example.com:6443',
        'apiServerCA': base64.b64encode(CERT.encode()).decode(),
    }


async def test_config_sync_with_an_absent_fleet_config(kubeapi, context):
    apply_route = kubeapi.add('patch', FLEET_CONFIG_URL, {})

    with pytest.raises(AddonConfigSyncError, match=r"is absent"):
        await reconcile_config_sync(config_body(), context=context)

    assert not apply_route.called


async def test_config_sync_with_a_broken_fleet_config(kubeapi, context):
    kubeapi.add('get', FLEET_CONFIG_URL, {'data': {'config': '{not a json'}})

    with pytest.raises(AddonConfigSyncError, match=r"not a valid JSON"):
        await reconcile_config_sync(config_body(), context=context)


async def test_config_sync_with_an_absent_certificate(kubeapi, context):
    kubeapi.add('get', FLEET_CONFIG_URL, fleet_config())
    kubeapi.add('get', ROOT_CA_URL, {'data': {}})

    with pytest.raises(AddonConfigSyncError, match=r"No 'ca.crt'"):
        await reconcile_config_sync(config_body(config={'server': {'inferLocal': True}}),
                                    context=context)


async def test_config_sync_failures(kubeapi, context):
    kubeapi.add('get', FLEET_CONFIG_URL, fleet_config())
    kubeapi.add('patch', FLEET_CONFIG_URL, {'kind': 'Status', 'code': 403}, status=403)

    with pytest.raises(AddonConfigSyncError, match=r"Fleet config update error"):
        await reconcile_config_sync(config_body(), context=context)


def test_configmaps_are_mapped_to_the_config():
    mapper = map_configmap_to_config('fleet-addon-config')
    refs = mapper({'metadata': {'name': 'fleet-controller', 'namespace': 'cattle-fleet-system'}})
    assert refs == [ObjectRef(FLEET_ADDON_CONFIGS, None, 'fleet-addon-config')]
