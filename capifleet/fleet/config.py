"""
The runtime configuration of the fleet integration: the ``FleetAddonConfig``.

It is a cluster-scoped singleton, read on every reconciliation (never cached),
so that its changes apply immediately. The absent object means the defaults.

A sample::

    apiVersion: addons.cluster.x-k8s.io/v1alpha1
    kind: FleetAddonConfig
    metadata:
      name: fleet-addon-config
    spec:
      cluster:
        enabled: true
        patchResource: true
        setOwnerReferences: true
        applyClassGroup: true
        naming:
          prefix: "capi-"
        selector:
          matchLabels:
            import: "true"
        namespaceSelector:
          matchLabels:
            import: "true"
      clusterClass:
        patchResource: true
        setOwnerReferences: true
      config:
        server:
          inferLocal: true
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.clients import fetching
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import references, selectors
from capifleet._core.actions import errors

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAMESPACE = 'fleet-addon-agent'

# The agent must be schedulable on the nodes of a cluster being provisioned.
DEFAULT_AGENT_TOLERATIONS: List[Dict[str, str]] = [
    {'key': 'node.kubernetes.io/not-ready', 'operator': 'Exists', 'effect': 'NoSchedule'},
    {'key': 'node.cluster.x-k8s.io/uninitialized', 'operator': 'Exists', 'effect': 'NoSchedule'},
    {'key': 'node.cloudprovider.kubernetes.io/uninitialized', 'operator': 'Equal',
     'value': 'true', 'effect': 'NoSchedule'},
]


class FleetAddonConfig:
    """
    A read-only view of the configuration object with the defaults applied.
    """

    def __init__(self, body: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self.body: Mapping[str, Any] = body or {}

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({dict(self.spec)!r})'

    @property
    def spec(self) -> Mapping[str, Any]:
        return self.body.get('spec') or {}

    @property
    def cluster(self) -> Mapping[str, Any]:
        return self.spec.get('cluster') or {}

    @property
    def cluster_class(self) -> Mapping[str, Any]:
        return self.spec.get('clusterClass') or {}

    @property
    def server(self) -> Optional[Mapping[str, Any]]:
        return (self.spec.get('config') or {}).get('server')

    # Clusters.

    @property
    def cluster_operations_enabled(self) -> bool:
        return bool(self.cluster.get('enabled', True))

    @property
    def cluster_patch_enabled(self) -> bool:
        return bool(self.cluster.get('patchResource', False))

    @property
    def cluster_set_owner_references(self) -> bool:
        return bool(self.cluster.get('setOwnerReferences', False))

    @property
    def apply_class_group(self) -> bool:
        return bool(self.cluster.get('applyClassGroup', False))

    @property
    def agent_namespace(self) -> str:
        return self.cluster.get('agentNamespace') or DEFAULT_AGENT_NAMESPACE

    @property
    def agent_tolerations(self) -> List[Mapping[str, Any]]:
        tolerations = self.cluster.get('agentTolerations')
        return list(tolerations) if tolerations is not None else list(DEFAULT_AGENT_TOLERATIONS)

    @property
    def host_network(self) -> Optional[bool]:
        return self.cluster.get('hostNetwork')

    @property
    def agent_env_vars(self) -> Optional[List[Mapping[str, Any]]]:
        return self.cluster.get('agentEnvVars')

    def apply_naming(self, name: str) -> str:
        naming = self.cluster.get('naming') or {}
        return f"{naming.get('prefix') or ''}{name}{naming.get('suffix') or ''}"

    def cluster_selector(self) -> selectors.Selector:
        return _selector(self.cluster.get('selector'))

    def namespace_selector(self) -> selectors.Selector:
        return _selector(self.cluster.get('namespaceSelector'))

    # Cluster classes.

    @property
    def cluster_class_operations_enabled(self) -> bool:
        return bool(self.cluster_class.get('enabled', True))

    @property
    def cluster_class_patch_enabled(self) -> bool:
        return bool(self.cluster_class.get('patchResource', False))

    @property
    def cluster_class_set_owner_references(self) -> bool:
        return bool(self.cluster_class.get('setOwnerReferences', False))


def _selector(value: Any) -> selectors.Selector:
    # Both the structured label selectors and their string forms are accepted.
    if value is None or isinstance(value, Mapping):
        return selectors.Selector.from_label_selector(value)
    elif isinstance(value, str):
        return selectors.Selector.parse(value)
    else:
        raise selectors.SelectorParseError(f"Unsupported label selector: {value!r}")


async def fetch_config(
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger = logger,
) -> FleetAddonConfig:
    try:
        body = await fetching.read_obj(
            resource=references.FLEET_ADDON_CONFIGS,
            namespace=None,
            name=settings.fleet.config_name,
            settings=settings,
            logger=logger,
        )
    except api_errors.API_FAILURES as e:
        raise errors.ConfigFetchError(f"Config lookup error: {e}") from e
    return FleetAddonConfig(body)
