import pytest

from capifleet._cogs.structs.references import CAPI_CLUSTERS, EVENTS, FLEET_CLUSTERS
from capifleet._core.actions import applying
from capifleet._core.actions.errors import ClusterSyncError, FinalizerError, SyncError
from capifleet._core.actions.results import Action
from capifleet._core.reactor.reconciling import (FleetBundle, FleetController, error_policy,
                                                 measured, reconciler)

FINALIZER = 'fleet.addons.cluster.x-k8s.io'
CLUSTER_URL = CAPI_CLUSTERS.get_url(namespace='ns', name='cluster-a')
DOWNSTREAM = {
    'apiVersion': 'fleet.cattle.io/v1alpha1',
    'kind': 'Cluster',
    'metadata': {'name': 'cluster-a', 'namespace': 'ns'},
}


def make_body(*, finalizers=(), deleting=False):
    body = {
        'apiVersion': 'cluster.x-k8s.io/v1beta2',
        'kind': 'Cluster',
        'metadata': {'name': 'cluster-a', 'namespace': 'ns', 'uid': 'uid-a',
                     'resourceVersion': '100', 'finalizers': list(finalizers)},
    }
    if deleting:
        body['metadata']['deletionTimestamp'] = '2020-01-01T00:00:00Z'
    return body


class DownstreamBundle(FleetBundle):
    """ One downstream object, created if absent. """

    def __init__(self, *, cleanup_error=None, cleanup_action=None):
        super().__init__()
        self.synced = 0
        self.cleaned = 0
        self.cleanup_error = cleanup_error
        self.cleanup_action = cleanup_action

    async def sync(self, context, logger):
        self.synced += 1
        return await applying.get_or_create(FLEET_CLUSTERS, DOWNSTREAM,
                                            settings=context.settings, logger=logger)

    async def cleanup(self, context, logger):
        self.cleaned += 1
        if self.cleanup_error is not None:
            raise self.cleanup_error
        if self.cleanup_action is not None:
            return self.cleanup_action
        return await super().cleanup(context, logger)


class NoCleanupBundle(FleetBundle):

    async def sync(self, context, logger):
        return Action.await_change()


def make_controller_cls(bundle):

    class DownstreamController(FleetController[FleetBundle]):
        resource = CAPI_CLUSTERS

        async def to_bundle(self):
            return bundle

    return DownstreamController


@pytest.fixture()
def bundle():
    return DownstreamBundle()


@pytest.fixture()
def patch_route(kubeapi):
    return kubeapi.add('patch', CLUSTER_URL, {})


@pytest.fixture(autouse=True)
def event_route(kubeapi):
    return kubeapi.add('post', EVENTS.get_url(namespace='ns'), {})


async def test_new_object_gets_the_finalizer_and_the_downstream_object(
        kubeapi, context, bundle, patch_route, event_route):
    get_route = kubeapi.add('get', FLEET_CLUSTERS.get_url(namespace='ns', name='cluster-a'),
                            {'kind': 'Status', 'code': 404}, status=404)
    post_route = kubeapi.add('post', FLEET_CLUSTERS.get_url(namespace='ns'), DOWNSTREAM)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(make_body(), context=context).reconcile()

    assert action == Action.await_change()
    assert patch_route.call_count == 1
    assert patch_route.data == {'metadata': {'finalizers': [FINALIZER], 'resourceVersion': '100'}}
    assert patch_route.requests[0].headers['Content-Type'] == 'application/merge-patch+json'
    assert get_route.call_count == 1
    assert post_route.call_count == 1
    assert post_route.data == DOWNSTREAM
    assert event_route.data['reason'] == 'Created'
    assert bundle.synced == 1


async def test_object_with_the_finalizer_is_only_synced(kubeapi, context, bundle, patch_route):
    kubeapi.add('get', FLEET_CLUSTERS.get_url(namespace='ns', name='cluster-a'), DOWNSTREAM)
    post_route = kubeapi.add('post', FLEET_CLUSTERS.get_url(namespace='ns'), DOWNSTREAM)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(make_body(finalizers=[FINALIZER]), context=context).reconcile()

    assert action == Action.await_change()
    assert not patch_route.called
    assert not post_route.called  # exists already.
    assert bundle.synced == 1


async def test_no_bundle_means_no_finalizer(kubeapi, context, patch_route):
    controller_cls = make_controller_cls(None)

    action = await controller_cls(make_body(), context=context).reconcile()

    assert action == Action.await_change()
    assert not patch_route.called


async def test_sync_errors_keep_the_finalizer(kubeapi, context, patch_route):
    class FailingBundle(FleetBundle):
        async def sync(self, context, logger):
            raise ClusterSyncError("boo!")

    controller_cls = make_controller_cls(FailingBundle())

    with pytest.raises(ClusterSyncError):
        await controller_cls(make_body(), context=context).reconcile()

    assert patch_route.call_count == 1  # added, not removed.
    assert patch_route.data['metadata']['finalizers'] == [FINALIZER]


async def test_deleted_object_is_cleaned_up_and_released(kubeapi, context, bundle, patch_route):
    body = make_body(finalizers=['other', FINALIZER], deleting=True)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(body, context=context).reconcile()

    assert action == Action.await_change()
    assert bundle.cleaned == 1
    assert bundle.synced == 0
    assert patch_route.call_count == 1
    assert patch_route.data == {'metadata': {'finalizers': ['other'], 'resourceVersion': '100'}}


async def test_cleanup_errors_keep_the_finalizer(kubeapi, context, patch_route):
    bundle = DownstreamBundle(cleanup_error=SyncError("boo!"))
    body = make_body(finalizers=[FINALIZER], deleting=True)
    controller_cls = make_controller_cls(bundle)

    with pytest.raises(SyncError):
        await controller_cls(body, context=context).reconcile()

    assert bundle.cleaned == 1
    assert not patch_route.called


async def test_deleted_object_without_the_finalizer_is_left_alone(kubeapi, context, bundle, patch_route):
    body = make_body(deleting=True)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(body, context=context).reconcile()

    assert action == Action.await_change()
    assert bundle.cleaned == 0
    assert bundle.synced == 0
    assert not patch_route.called
    assert not kubeapi.requests


async def test_deleted_object_with_no_bundle_publishes_an_event(
        kubeapi, context, patch_route, event_route):
    body = make_body(finalizers=[FINALIZER], deleting=True)
    controller_cls = make_controller_cls(None)

    action = await controller_cls(body, context=context).reconcile()

    assert action == Action.await_change()
    assert event_route.call_count == 1
    assert event_route.data['reason'] == 'DeleteRequested'
    assert event_route.data['message'] == 'Delete `cluster-a`'
    assert patch_route.call_count == 1
    assert patch_route.data['metadata']['finalizers'] == []


async def test_cleanup_returning_await_change_still_releases(kubeapi, context, patch_route):
    bundle = DownstreamBundle(cleanup_action=Action.await_change())
    body = make_body(finalizers=[FINALIZER], deleting=True)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(body, context=context).reconcile()

    assert action == Action.await_change()
    assert patch_route.call_count == 1


async def test_finalizer_failures(kubeapi, context):
    kubeapi.add('patch', CLUSTER_URL, {'kind': 'Status', 'code': 409}, status=409)
    controller_cls = make_controller_cls(NoCleanupBundle())

    with pytest.raises(FinalizerError) as err:
        await controller_cls(make_body(), context=context).reconcile()

    assert err.value.stage == 'add'
    assert err.value.metric_label == 'FinalizerError'


async def test_finalizer_removal_failures(kubeapi, context):
    kubeapi.add('patch', CLUSTER_URL, {'kind': 'Status', 'code': 409}, status=409)
    controller_cls = make_controller_cls(DownstreamBundle())
    body = make_body(finalizers=[FINALIZER], deleting=True)

    with pytest.raises(FinalizerError) as err:
        await controller_cls(body, context=context).reconcile()

    assert err.value.stage == 'remove'


async def test_reconciliations_touch_the_diagnostics(kubeapi, context, patch_route):
    initial = context.diagnostics.last_event
    controller_cls = make_controller_cls(None)
    await controller_cls(make_body(), context=context).reconcile()
    assert context.diagnostics.last_event >= initial


async def test_error_policy_requeues_and_counts(context, assert_logs):
    policy = error_policy(context)

    action = policy(make_body(), ClusterSyncError("boo!"))

    assert action == Action.requeue(context.settings.reconciling.error_backoff)
    assert context.metrics.registry.get_sample_value(
        'caapf_controller_reconciliation_errors_total',
        {'instance': 'cluster-a', 'error': 'ClusterSyncError'}) == 1.0
    assert_logs([r"Reconciliation has failed: boo!"])


async def test_reconciler_is_measured(kubeapi, context, patch_route):
    fn = reconciler(make_controller_cls(None), context)

    action = await fn(make_body())

    assert action == Action.await_change()
    text = context.metrics.render().decode('utf-8')
    assert 'caapf_controller_reconciliations_total 1.0' in text
    assert 'caapf_controller_reconcile_duration_seconds_count 1.0' in text


async def test_measured_failures_are_measured_too(context):
    async def failing(body):
        raise ValueError("boo!")

    with pytest.raises(ValueError):
        await measured(failing, context)(make_body())

    text = context.metrics.render().decode('utf-8')
    assert 'caapf_controller_reconciliations_total 1.0' in text


async def test_deferred_cleanup_keeps_the_finalizer(kubeapi, context, patch_route):
    bundle = DownstreamBundle(cleanup_action=Action.defer())
    body = make_body(finalizers=[FINALIZER], deleting=True)
    controller_cls = make_controller_cls(bundle)

    action = await controller_cls(body, context=context).reconcile()

    assert action.requeue_after is None
    assert action.deferred
    assert bundle.cleaned == 1
    assert not patch_route.called
