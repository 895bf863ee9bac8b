"""
The fleet cluster groups made for the cluster classes.

The groups are recognised by two labels: the class name and the class namespace.
Their reconciliation keeps the class's own labels copied onto the group
(so that the bundles can target the groups by the class labels), and removes
the finalizer left on the groups by the older versions of the operator.
"""
import logging
from typing import Any, Dict, Mapping, Optional

from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.clients import fetching, patching
from capifleet._cogs.structs import bodies, references, selectors
from capifleet._core.actions import applying, errors, loggers, results
from capifleet._core.reactor import running

logger = logging.getLogger(__name__)

CLUSTER_CLASS_LABEL = 'clusterclass-name.fleet.addons.cluster.x-k8s.io'
CLUSTER_CLASS_NAMESPACE_LABEL = 'clusterclass-namespace.fleet.addons.cluster.x-k8s.io'


def group_selector() -> selectors.Selector:
    return selectors.Selector.exists(CLUSTER_CLASS_LABEL, CLUSTER_CLASS_NAMESPACE_LABEL)


def class_labels(class_name: str, class_namespace: str) -> Dict[str, str]:
    return {
        CLUSTER_CLASS_LABEL: class_name,
        CLUSTER_CLASS_NAMESPACE_LABEL: class_namespace,
    }


def build_group(
        *,
        name: str,
        namespace: Optional[str],
        class_name: str,
        class_namespace: str,
        labels: Optional[Mapping[str, str]] = None,
        owner: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build a group that selects all the fleet clusters of a class.
    """
    metadata: Dict[str, Any] = {
        'name': name,
        'namespace': namespace,
        'labels': dict(labels or {}, **class_labels(class_name, class_namespace)),
    }
    if owner is not None:
        metadata['ownerReferences'] = [bodies.build_owner_reference(owner, controller=True)]
    return {
        'apiVersion': references.FLEET_CLUSTER_GROUPS.api_version,
        'kind': references.FLEET_CLUSTER_GROUPS.kind,
        'metadata': metadata,
        'spec': {
            'selector': {
                'matchLabels': class_labels(class_name, class_namespace),
            },
        },
    }


def get_class_ref(body: Mapping[str, Any]) -> Optional[references.ObjectRef]:
    labels = bodies.get_labels(body)
    name = labels.get(CLUSTER_CLASS_LABEL)
    namespace = labels.get(CLUSTER_CLASS_NAMESPACE_LABEL)
    if not name or not namespace:
        return None
    return references.ObjectRef(references.CAPI_CLUSTER_CLASSES,
                                references.NamespaceName(namespace), name)


async def reconcile(body: bodies.RawBody, *, context: running.Context) -> results.Action:
    settings = context.settings
    objlogger = loggers.ObjectLogger(body=body)
    context.diagnostics.touch()

    class_ref = get_class_ref(body)
    if class_ref is not None:
        try:
            cluster_class = await fetching.read_obj(
                resource=class_ref.resource,
                namespace=class_ref.namespace,
                name=class_ref.name,
                metadata_only=True,
                settings=settings,
                logger=objlogger,
            )
        except api_errors.API_FAILURES as e:
            raise errors.GroupSyncError(f"Unable to find origin ClusterClass for the ClusterGroup: {e}") from e
        if cluster_class is None:
            raise errors.GroupSyncError(f"Unable to find origin ClusterClass for the ClusterGroup: {class_ref}")

        # Only the managed fields are applied, not the server-side ones (uid, status, etc).
        desired = {
            'apiVersion': references.FLEET_CLUSTER_GROUPS.api_version,
            'kind': references.FLEET_CLUSTER_GROUPS.kind,
            'metadata': {
                'name': bodies.get_name(body),
                'namespace': bodies.get_namespace(body),
                'labels': dict(bodies.get_labels(body), **bodies.get_labels(cluster_class)),
            },
            'spec': body.get('spec') or {},
        }
        try:
            await applying.patch_if_different(
                references.FLEET_CLUSTER_GROUPS, desired,
                field_manager=settings.reconciling.field_manager,
                settings=settings,
                logger=objlogger,
            )
        except errors.Error as e:
            raise errors.GroupSyncError(f"Cluster group update error: {e}") from e

    finalizers = list(body.get('metadata', {}).get('finalizers') or [])
    legacy = settings.reconciling.finalizer
    if legacy in finalizers:
        try:
            await patching.merge_patch_obj(
                resource=references.FLEET_CLUSTER_GROUPS,
                namespace=references.NamespaceName(bodies.get_namespace(body) or ''),
                name=bodies.get_name(body),
                patch={'metadata': {'finalizers': [f for f in finalizers if f != legacy]}},
                settings=settings,
                logger=objlogger,
            )
        except api_errors.API_FAILURES as e:
            raise errors.GroupSyncError(f"Cluster group finalizer removal error: {e}") from e
        objlogger.info("Removed the legacy finalizer from the cluster group.")

    return results.Action.await_change()
