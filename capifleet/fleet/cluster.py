"""
The CAPI clusters imported into Fleet.

For every CAPI cluster with a ready control plane, a fleet cluster is made
with the same name (maybe prefixed/suffixed) and namespace, pointing to the
cluster's kubeconfig secret. The fleet cluster carries the template values
for the Helm bundles: the CAPI cluster itself, its control plane, and its
infrastructure cluster (with all the volatile fields stripped).

For the clusters made from a cluster class, a cluster group is made for the
class in the cluster's namespace, and a bundle-namespace mapping is made
in the class's namespace, so that the bundles of the class namespace
are deployed to the clusters in all the namespaces that use the class.

The mapping is shared by all the clusters of the same namespace and class
namespace: it is deleted only with the last of them. The clusters being deleted
keep their finalizers while other live clusters still use the mapping;
the deletion of the mapping by the last of them triggers the others again.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from capifleet._cogs.clients import deleting, fetching, scanning, watching
from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, finalizers, references
from capifleet._core.actions import applying, errors, results
from capifleet._core.reactor import controlling, reconciling, registry, running
from capifleet.fleet import clustergroup, config

logger = logging.getLogger(__name__)

CONTROLPLANE_READY_CONDITION = 'ControlPlaneReady'

# The fields that change on every write and are meaningless for the templates.
VOLATILE_METADATA = ('managedFields', 'resourceVersion')


def get_class_name(body: Mapping[str, Any]) -> Optional[str]:
    topology = body.get('spec', {}).get('topology') or {}
    class_ref = topology.get('classRef') or {}
    return class_ref.get('name') or topology.get('class') or None


def get_class_namespace(body: Mapping[str, Any]) -> Optional[str]:
    topology = body.get('spec', {}).get('topology') or {}
    class_ref = topology.get('classRef') or {}
    return class_ref.get('namespace') or topology.get('classNamespace') or None


def is_ready(body: Mapping[str, Any]) -> bool:
    """
    Check if the cluster's control plane is ready, by a condition or by a flag.
    """
    status = body.get('status') or {}
    for condition in status.get('conditions') or []:
        if condition.get('type') == CONTROLPLANE_READY_CONDITION and condition.get('status') == 'True':
            return True
    return bool(status.get('controlPlaneReady'))


def to_fleet_cluster(body: Mapping[str, Any], cfg: config.FleetAddonConfig) -> Dict[str, Any]:
    name = bodies.get_name(body)
    namespace = bodies.get_namespace(body)
    class_name = get_class_name(body)
    labels = dict(bodies.get_labels(body))
    if class_name is not None:
        class_namespace = get_class_namespace(body) or namespace or ''
        labels.update(clustergroup.class_labels(class_name, class_namespace))

    metadata: Dict[str, Any] = {
        'name': cfg.apply_naming(name),
        'namespace': namespace,
        'labels': labels,
        'annotations': dict(bodies.get_annotations(body)),
    }
    if cfg.cluster_set_owner_references:
        metadata['ownerReferences'] = [bodies.build_owner_reference(body, controller=True)]

    spec: Dict[str, Any] = {
        'kubeConfigSecret': f'{name}-kubeconfig',
        'agentNamespace': cfg.agent_namespace,
        'agentTolerations': cfg.agent_tolerations,
    }
    if cfg.host_network is not None:
        spec['hostNetwork'] = cfg.host_network
    if cfg.agent_env_vars is not None:
        spec['agentEnvVars'] = cfg.agent_env_vars

    return {
        'apiVersion': references.FLEET_CLUSTERS.api_version,
        'kind': references.FLEET_CLUSTERS.kind,
        'metadata': metadata,
        'spec': spec,
    }


def to_group(body: Mapping[str, Any], cfg: config.FleetAddonConfig) -> Optional[Dict[str, Any]]:
    # The groups in the class's own namespace are made by the cluster class controller.
    class_name = get_class_name(body)
    class_namespace = get_class_namespace(body)
    if not cfg.apply_class_group or class_name is None or class_namespace is None:
        return None
    return clustergroup.build_group(
        name=f'{class_name}.{class_namespace}',
        namespace=bodies.get_namespace(body),
        class_name=class_name,
        class_namespace=class_namespace,
        owner=body,
    )


def to_bundle_ns_mapping(body: Mapping[str, Any], cfg: config.FleetAddonConfig) -> Optional[Dict[str, Any]]:
    class_namespace = get_class_namespace(body)
    namespace = bodies.get_namespace(body)
    if not cfg.apply_class_group or class_namespace is None or namespace is None:
        return None
    return {
        'apiVersion': references.FLEET_BUNDLE_NS_MAPPINGS.api_version,
        'kind': references.FLEET_BUNDLE_NS_MAPPINGS.kind,
        'metadata': {
            'name': namespace,
            'namespace': class_namespace,
        },
        'bundleSelector': {},
        'namespaceSelector': {
            'matchLabels': {'kubernetes.io/metadata.name': namespace},
        },
    }


def strip_volatile(body: Mapping[str, Any]) -> Dict[str, Any]:
    stripped = {key: val for key, val in body.items() if key != 'status'}
    stripped['metadata'] = {key: val for key, val in (body.get('metadata') or {}).items()
                            if key not in VOLATILE_METADATA}
    return stripped


async def fetch_reference(
        ref: Optional[Mapping[str, Any]],
        *,
        namespace: Optional[str],
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Fetch an object referenced by a cluster; ``None`` if it cannot be fetched.

    The references come with either ``apiVersion`` or ``apiGroup`` (the newer
    API versions); in the latter case, the group's preferred version is used.
    """
    if not ref or not ref.get('kind') or not ref.get('name'):
        return None

    if ref.get('apiVersion'):
        group, _, version = str(ref['apiVersion']).rpartition('/')
    else:
        group, version = ref.get('apiGroup') or '', ''

    try:
        resource = await scanning.discover_resource(
            group=group,
            version=version or None,
            kind=ref['kind'],
            settings=settings,
            logger=logger,
        )
        if resource is None:
            return None
        return await fetching.read_obj(
            resource=resource,
            namespace=references.NamespaceName(ref.get('namespace') or namespace or ''),
            name=ref['name'],
            settings=settings,
            logger=logger,
        )
    except api_errors.API_FAILURES as e:
        logger.debug(f"Cannot fetch the referenced {ref.get('kind')} {ref.get('name')!r}: {e}")
        return None


async def resolve_template_values(
        body: Mapping[str, Any],
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> Optional[Dict[str, Any]]:
    """
    Get the values for the bundle templates; ``None`` if not all of them are available.
    """
    namespace = bodies.get_namespace(body)
    spec = body.get('spec') or {}
    control_plane, infrastructure = await asyncio.gather(
        fetch_reference(spec.get('controlPlaneRef'), namespace=namespace,
                        settings=settings, logger=logger),
        fetch_reference(spec.get('infrastructureRef'), namespace=namespace,
                        settings=settings, logger=logger),
    )
    if control_plane is None or infrastructure is None:
        return None

    return {
        'Cluster': strip_volatile(body),
        'ControlPlane': strip_volatile(control_plane),
        'InfrastructureCluster': strip_volatile(infrastructure),
    }


class ClusterBundle(reconciling.FleetBundle):

    def __init__(
            self,
            *,
            cluster: bodies.RawBody,
            fleet: Dict[str, Any],
            group: Optional[Dict[str, Any]],
            mapping: Optional[Dict[str, Any]],
            cfg: config.FleetAddonConfig,
    ) -> None:
        super().__init__()
        self.cluster = cluster
        self.fleet = fleet
        self.group = group
        self.mapping = mapping
        self.config = cfg

    async def sync(self, context: running.Context, logger: typedefs.Logger) -> results.Action:
        settings = context.settings
        name = bodies.get_name(self.cluster)
        field_manager = f'cluster-{name}-{settings.reconciling.field_manager}'

        fleet = dict(self.fleet)
        values = await resolve_template_values(self.cluster, settings=settings, logger=logger)
        if values is not None:
            fleet['spec'] = dict(fleet['spec'], templateValues=values)

        if self.mapping is not None and self.config.cluster_patch_enabled:
            try:
                await applying.patch_if_different(
                    references.FLEET_BUNDLE_NS_MAPPINGS, self.mapping,
                    field_manager=field_manager, settings=settings, logger=logger)
            except errors.PatchError as e:
                raise errors.ClusterSyncError(f"Cluster BundleNamespaceMapping update error: {e}") from e
            logger.info(f"Updated BundleNamespaceMapping for cluster {name} between "
                        f"class namespace: {bodies.get_namespace(self.mapping)} and "
                        f"cluster namespace: {bodies.get_name(self.mapping)}")

        if self.config.cluster_patch_enabled:
            try:
                await applying.patch_if_different(
                    references.FLEET_CLUSTERS, fleet,
                    field_manager=settings.reconciling.field_manager, settings=settings, logger=logger)
            except errors.PatchError as e:
                raise errors.ClusterSyncError(f"Cluster update error: {e}") from e
        else:
            try:
                await applying.get_or_create(
                    references.FLEET_CLUSTERS, fleet, settings=settings, logger=logger)
            except errors.Error as e:
                raise errors.ClusterSyncError(f"Cluster create error: {e}") from e

        if self.group is not None and self.config.cluster_patch_enabled:
            try:
                await applying.patch_if_different(
                    references.FLEET_CLUSTER_GROUPS, self.group,
                    field_manager=field_manager, settings=settings, logger=logger)
            except errors.PatchError as e:
                raise errors.ClusterSyncError(f"Cluster group update error: {e}") from e

        return results.Action.await_change()

    async def cleanup(self, context: running.Context, logger: typedefs.Logger) -> results.Action:
        if self.mapping is None:
            return results.Action.await_change()

        settings = context.settings
        cluster_name = bodies.get_name(self.cluster)
        cluster_namespace = bodies.get_name(self.mapping)
        class_namespace = bodies.get_namespace(self.mapping)
        try:
            others, _ = await fetching.list_objs(
                resource=references.CAPI_CLUSTERS,
                namespace=references.NamespaceName(cluster_namespace),
                settings=settings,
                logger=logger,
            )
        except api_errors.API_FAILURES as e:
            raise errors.SyncError(f"BundleNamespaceMapping lookup error: {e}") from e

        for other in others:
            if (get_class_namespace(other) == class_namespace and
                    bodies.get_name(other) != cluster_name and
                    not finalizers.is_deletion_ongoing(other)):
                logger.info(f"Keeping the BundleNamespaceMapping {cluster_namespace!r} "
                            f"in {class_namespace!r}: it is used by {bodies.get_name(other)!r}.")
                return results.Action.defer()

        try:
            await deleting.delete_obj(
                resource=references.FLEET_BUNDLE_NS_MAPPINGS,
                namespace=references.NamespaceName(class_namespace or ''),
                name=cluster_namespace,
                settings=settings,
                logger=logger,
            )
        except api_errors.API_FAILURES as e:
            raise errors.SyncError(f"BundleNamespaceMapping delete error: {e}") from e
        logger.info(f"Deleted the BundleNamespaceMapping {cluster_namespace!r} in {class_namespace!r}.")
        return results.Action.await_change()


class ClusterController(reconciling.FleetController[ClusterBundle]):
    resource = references.CAPI_CLUSTERS

    async def to_bundle(self) -> Optional[ClusterBundle]:
        try:
            cfg = await config.fetch_config(settings=self.context.settings, logger=self.logger)
        except errors.ConfigFetchError as e:
            raise errors.BundleError(str(e)) from e

        if not cfg.cluster_operations_enabled:
            return None
        if not is_ready(self.body):
            self.logger.debug("The control plane is not ready yet; skipping.")
            return None

        return ClusterBundle(
            cluster=self.body,
            fleet=to_fleet_cluster(self.body, cfg),
            group=to_group(self.body, cfg),
            mapping=to_bundle_ns_mapping(self.body, cfg),
            cfg=cfg,
        )


async def add_namespace_watch(body: bodies.RawBody, *, context: running.Context) -> results.Action:
    """
    Watch the clusters in a namespace that matches the namespace selector.
    """
    name = bodies.get_name(body)
    descriptor = registry.WatchDescriptor(references.CAPI_CLUSTERS, references.NamespaceName(name))
    if await context.registry.add(descriptor):
        logger.info(f"Reconciled dynamic watches: added namespace watch on {name}")
    return results.Action.await_change()


def map_mapping_to_clusters(store: Iterable[bodies.RawBody]) -> controlling.Mapper:
    """
    Make a mapper of the bundle-namespace mappings to the clusters using them.

    A mapping is named after the namespace of its clusters, and lives
    in the namespace of their class.
    """
    def mapper(mapping: bodies.RawBody) -> List[references.ObjectRef]:
        return [
            references.ObjectRef(references.CAPI_CLUSTERS, bodies.get_namespace(cluster),
                                 bodies.get_name(cluster))
            for cluster in store
            if bodies.get_namespace(cluster) == bodies.get_name(mapping) and
            get_class_namespace(cluster) == bodies.get_namespace(mapping)
        ]
    return mapper


def namespace_watcher(context: running.Context) -> controlling.Controller:
    """
    Make the controller of the namespaces that match the namespace selector.

    Every event passes, the unchanged ones too: a replacement of the watches
    drops the namespace watches, and only the re-listing of the namespaces
    brings them back.
    """
    return controlling.Controller.for_subscriber(
        references.NAMESPACES, context.dispatcher.subscribe(references.NAMESPACES),
        settings=context.settings, predicate=None)


async def run(context: running.Context) -> None:
    """
    Run the cluster controllers: for the clusters, and for the namespaces with clusters.

    Both consume the dispatcher's merged feed. The subscriptions are made
    before the readiness, so that no events are missed after the first watches.
    """
    settings = context.settings
    namespaces = namespace_watcher(context)
    clusters = controlling.Controller.for_subscriber(
        references.CAPI_CLUSTERS, context.dispatcher.subscribe(references.CAPI_CLUSTERS),
        settings=settings)
    clusters.owns(references.FLEET_CLUSTERS, watching.infinite_watch(
        settings=settings, resource=references.FLEET_CLUSTERS, namespace=None,
        metadata_only=True, streaming=context.streaming))
    clusters.owns(references.FLEET_CLUSTER_GROUPS, watching.infinite_watch(
        settings=settings, resource=references.FLEET_CLUSTER_GROUPS, namespace=None,
        labels=str(clustergroup.group_selector()), metadata_only=True, streaming=context.streaming))
    clusters.watches(references.FLEET_BUNDLE_NS_MAPPINGS, watching.infinite_watch(
        settings=settings, resource=references.FLEET_BUNDLE_NS_MAPPINGS, namespace=None,
        metadata_only=True, streaming=context.streaming), map_mapping_to_clusters(clusters.store))

    await context.barrier.wait()
    policy = reconciling.error_policy(context)
    await asyncio.gather(
        clusters.run(reconciling.reconciler(ClusterController, context), policy),
        namespaces.run(reconciling.measured(
            lambda body: add_namespace_watch(body, context=context), context), policy),
    )
