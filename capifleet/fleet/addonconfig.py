"""
The reactions to the operator's configuration object (``FleetAddonConfig``).

Two independent things are reconciled from the same object:

* The dynamic watches: the clusters and the namespaces are watched
  with the label selectors from the configuration, and re-watched
  when the selectors change.

* Fleet's own configuration (the ``fleet-controller`` config-map):
  the API server's URL and CA are put there for the agents to connect to,
  either inferred from the local cluster or as configured explicitly.
  Only the ``config`` key is applied: the rest of the config-map is Fleet's.
"""
import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.clients import fetching, patching, watching
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references, selectors
from capifleet._core.actions import errors, loggers, results
from capifleet._core.reactor import controlling, reconciling, registry, running
from capifleet.fleet import config

logger = logging.getLogger(__name__)

LOCAL_NAMESPACE = references.NamespaceName('default')
LOCAL_ENDPOINTS_NAME = 'kubernetes'
LOCAL_CA_CONFIGMAP_NAME = 'kube-root-ca.crt'
CA_CERT_KEY = 'ca.crt'


async def update_watches(cfg: config.FleetAddonConfig, *, context: running.Context) -> results.Action:
    """
    Re-watch the clusters & namespaces with the configured label selectors.
    """
    try:
        cluster_selector = cfg.cluster_selector()
        ns_selector = cfg.namespace_selector()
    except selectors.SelectorParseError as e:
        raise errors.DynamicWatcherError(f"Malformed label selector: {e}") from e

    logger.info("Reconciling dynamic watches")
    await context.registry.replace([
        registry.WatchDescriptor(references.CAPI_CLUSTERS, labels=str(cluster_selector) or None),
        registry.WatchDescriptor(references.NAMESPACES, labels=str(ns_selector) or None),
    ])
    logger.info(f"Reconciled dynamic watches to match selectors: "
                f"namespace={ns_selector}, cluster={cluster_selector}")
    return results.Action.await_change()


async def reconcile_dynamic_watches(body: bodies.RawBody, *, context: running.Context) -> results.Action:
    return await update_watches(config.FleetAddonConfig(body), context=context)


def lookup_endpoint(endpoints: Mapping[str, Any]) -> Optional[str]:
    """
    Get the API server's URL from the endpoints of the ``kubernetes`` service.

    Only the first address & port of the first subset are used.
    If the port has no name (the scheme), only the host is returned.
    """
    subsets = endpoints.get('subsets') or []
    if not subsets:
        return None
    addresses = subsets[0].get('addresses') or []
    ports = subsets[0].get('ports') or []
    if not addresses or not ports:
        return None

    host = addresses[0].get('hostname') or addresses[0].get('ip')
    if not host:
        return None
    port = ports[0]
    if port.get('name'):
        return f"{port['name']}://{host}:{port.get('port')}"
    return host


async def update_certificate(
        data: Dict[str, Any],
        server: Mapping[str, Any],
        *,
        context: running.Context,
        logger: typedefs.Logger,
) -> None:
    custom = server.get('custom') or {}
    if server.get('inferLocal'):
        namespace, name = LOCAL_NAMESPACE, LOCAL_CA_CONFIGMAP_NAME
    elif custom.get('apiServerCaConfigRef'):
        ref = custom['apiServerCaConfigRef']
        namespace, name = references.NamespaceName(ref.get('namespace') or 'default'), ref['name']
    else:
        return

    try:
        configmap = await fetching.read_obj(
            resource=references.CONFIGMAPS, namespace=namespace, name=name,
            settings=context.settings, logger=logger)
    except api_errors.API_FAILURES as e:
        raise errors.AddonConfigSyncError(f"CA config-map lookup error: {e}") from e

    cert = ((configmap or {}).get('data') or {}).get(CA_CERT_KEY)
    if cert is None:
        raise errors.AddonConfigSyncError(f"No {CA_CERT_KEY!r} in the config-map {namespace}/{name}")
    data['apiServerCA'] = base64.b64encode(cert.encode('utf-8')).decode('ascii')


async def update_url(
        data: Dict[str, Any],
        server: Mapping[str, Any],
        *,
        context: running.Context,
        logger: typedefs.Logger,
) -> None:
    custom = server.get('custom') or {}
    if server.get('inferLocal'):
        try:
            endpoints = await fetching.read_obj(
                resource=references.ENDPOINTS, namespace=LOCAL_NAMESPACE, name=LOCAL_ENDPOINTS_NAME,
                settings=context.settings, logger=logger)
        except api_errors.API_FAILURES as e:
            raise errors.AddonConfigSyncError(f"API server endpoints lookup error: {e}") from e
        url = lookup_endpoint(endpoints or {})
    else:
        url = custom.get('apiServerUrl')

    if url is not None:
        data['apiServerURL'] = url


async def reconcile_config_sync(body: bodies.RawBody, *, context: running.Context) -> results.Action:
    """
    Put the API server's URL & CA into Fleet's configuration.

    The configuration is a JSON document in the ``config`` key of the config-map.
    Its unknown fields are preserved as they are.
    """
    settings = context.settings
    objlogger = loggers.ObjectLogger(body=body)
    namespace = references.NamespaceName(settings.fleet.system_namespace)
    name = settings.fleet.controller_config_name
    context.diagnostics.touch()

    try:
        configmap = await fetching.read_obj(
            resource=references.CONFIGMAPS, namespace=namespace, name=name,
            settings=settings, logger=objlogger)
    except api_errors.API_FAILURES as e:
        raise errors.AddonConfigSyncError(f"Fleet config lookup error: {e}") from e
    if configmap is None:
        raise errors.AddonConfigSyncError(f"Fleet config {namespace}/{name} is absent.")

    try:
        data: Dict[str, Any] = json.loads((configmap.get('data') or {}).get('config') or '{}')
    except ValueError as e:
        raise errors.AddonConfigSyncError(f"Fleet config is not a valid JSON: {e}") from e

    server = config.FleetAddonConfig(body).server
    if server:
        await update_certificate(data, server, context=context, logger=objlogger)
        await update_url(data, server, context=context, logger=objlogger)

    try:
        await patching.apply_obj(
            resource=references.CONFIGMAPS,
            body={
                'apiVersion': references.CONFIGMAPS.api_version,
                'kind': references.CONFIGMAPS.kind,
                'metadata': {'name': name, 'namespace': namespace},
                'data': {'config': json.dumps(data)},
            },
            field_manager=settings.reconciling.field_manager,
            force=True,
            settings=settings,
            logger=objlogger,
        )
    except api_errors.API_FAILURES as e:
        raise errors.AddonConfigSyncError(f"Fleet config update error: {e}") from e

    objlogger.info("Updated fleet config map")
    return results.Action.await_change()


def map_configmap_to_config(name: str) -> controlling.Mapper:
    def mapper(body: bodies.RawBody) -> List[references.ObjectRef]:
        return [references.ObjectRef(references.FLEET_ADDON_CONFIGS, None, name)]
    return mapper


async def run(context: running.Context) -> None:
    """
    Run the configuration controllers, after the initial configuration of the watches.

    The initial configuration is fatal if it fails: the operator cannot
    watch anything with a broken configuration, so it stops.
    """
    settings = context.settings
    cfg = await config.fetch_config(settings=settings)
    await update_watches(cfg, context=context)

    config_sync = controlling.Controller.for_watch(
        references.FLEET_ADDON_CONFIGS, settings=settings,
        streaming=context.streaming, name='config-sync')
    config_sync.watches(references.CONFIGMAPS, watching.infinite_watch(
        settings=settings, resource=references.CONFIGMAPS,
        namespace=references.NamespaceName(settings.fleet.system_namespace),
        fields=f'metadata.name={settings.fleet.controller_config_name}',
        streaming=context.streaming), map_configmap_to_config(settings.fleet.config_name))
    dynamic_watches = controlling.Controller.for_watch(
        references.FLEET_ADDON_CONFIGS, settings=settings, streaming=context.streaming,
        predicate=controlling.generation, name='dynamic-watches')

    await context.barrier.wait()
    policy = reconciling.error_policy(context)
    await asyncio.gather(
        config_sync.run(reconciling.measured(
            lambda body: reconcile_config_sync(body, context=context), context), policy),
        dynamic_watches.run(reconciling.measured(
            lambda body: reconcile_dynamic_watches(body, context=context), context), policy),
    )
