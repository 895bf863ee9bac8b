"""
The CAPI cluster classes, each with a fleet cluster group of its clusters.

The group is made in the class's namespace, with the class's name, and selects
all the fleet clusters labelled with the class name and namespace (the labels
are put on the fleet clusters by the cluster controller).
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from capifleet._cogs.clients import watching
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references
from capifleet._core.actions import applying, errors, results
from capifleet._core.reactor import controlling, reconciling, running
from capifleet.fleet import clustergroup, config

logger = logging.getLogger(__name__)


def to_group(body: bodies.RawBody, cfg: config.FleetAddonConfig) -> Dict[str, Any]:
    name = bodies.get_name(body)
    namespace = bodies.get_namespace(body) or ''
    return clustergroup.build_group(
        name=name,
        namespace=namespace,
        class_name=name,
        class_namespace=namespace,
        labels=bodies.get_labels(body),
        owner=body if cfg.cluster_class_set_owner_references else None,
    )


class ClusterClassBundle(reconciling.FleetBundle):

    def __init__(self, *, group: Dict[str, Any], cfg: config.FleetAddonConfig) -> None:
        super().__init__()
        self.group = group
        self.config = cfg

    async def sync(self, context: running.Context, logger: typedefs.Logger) -> results.Action:
        settings = context.settings
        try:
            if self.config.cluster_class_patch_enabled:
                await applying.patch_if_different(
                    references.FLEET_CLUSTER_GROUPS, self.group,
                    field_manager=settings.reconciling.field_manager,
                    settings=settings, logger=logger)
            else:
                await applying.get_or_create(
                    references.FLEET_CLUSTER_GROUPS, self.group,
                    settings=settings, logger=logger)
        except errors.Error as e:
            raise errors.GroupSyncError(f"Cluster group sync error: {e}") from e
        return results.Action.await_change()


class ClusterClassController(reconciling.FleetController[ClusterClassBundle]):
    resource = references.CAPI_CLUSTER_CLASSES

    async def to_bundle(self) -> Optional[ClusterClassBundle]:
        try:
            cfg = await config.fetch_config(settings=self.context.settings, logger=self.logger)
        except errors.ConfigFetchError as e:
            raise errors.BundleError(str(e)) from e

        if not cfg.cluster_class_operations_enabled:
            return None
        return ClusterClassBundle(group=to_group(self.body, cfg), cfg=cfg)


async def run(context: running.Context) -> None:
    """
    Run the cluster class controller and the cluster group controller.

    Both have their own watch-streams: the classes and the groups are not
    filtered by the dynamic selectors, so they are not in the shared feed.
    """
    settings = context.settings
    selector = str(clustergroup.group_selector())

    groups = controlling.Controller.for_watch(
        references.FLEET_CLUSTER_GROUPS, labels=selector,
        settings=settings, streaming=context.streaming)
    classes = controlling.Controller.for_watch(
        references.CAPI_CLUSTER_CLASSES,
        settings=settings, streaming=context.streaming)
    classes.owns(references.FLEET_CLUSTER_GROUPS, watching.infinite_watch(
        settings=settings, resource=references.FLEET_CLUSTER_GROUPS, namespace=None,
        labels=selector, metadata_only=True, streaming=context.streaming))

    await context.barrier.wait()
    policy = reconciling.error_policy(context)
    await asyncio.gather(
        classes.run(reconciling.reconciler(ClusterClassController, context), policy),
        groups.run(reconciling.measured(
            lambda body: clustergroup.reconcile(body, context=context), context), policy),
    )
