import dataclasses
import urllib.parse
from typing import List, Mapping, NamedTuple, NewType, Optional

# A specific really existing addressable namespace (at least, the one assumed to be so).
NamespaceName = NewType('NamespaceName', str)

# A namespace reference usable in the API calls. `None` means cluster-wide API calls.
Namespace = Optional[NamespaceName]


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    A reference to a very specific custom or built-in resource kind.

    It is used to form the K8s API URLs. Generally, K8s API only needs
    an API group, an API version, and a plural name of the resource.
    The kind is remembered to recognise the type-erased objects in the events
    (which carry only ``apiVersion`` & ``kind``) and for the audit events.
    """

    group: str
    """
    The resource's API group; e.g. ``"cluster.x-k8s.io"``, ``"fleet.cattle.io"``.
    For Core v1 API resources, an empty string: ``""``.
    """

    version: str
    """
    The resource's API version; e.g. ``"v1"``, ``"v1beta2"``, etc.
    """

    plural: str
    """
    The resource's plural name; e.g. ``"clusters"``, ``"clustergroups"``.
    It is used as an API endpoint, together with API group & version.
    """

    kind: str
    """
    The resource's kind (as in YAML files); e.g. ``"Cluster"``, ``"ClusterGroup"``.
    """

    namespaced: bool = True
    """
    Whether the resource is namespaced (``True``) or cluster-scoped (``False``).
    """

    def __hash__(self) -> int:
        return hash((self.group, self.version, self.plural))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            self_tuple = (self.group, self.version, self.plural)
            other_tuple = (other.group, other.version, other.plural)
            return self_tuple == other_tuple
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.strip('.')

    @property
    def api_version(self) -> str:
        # As in the objects' "apiVersion" field, not the URLs.
        return f'{self.group}/{self.version}' if self.group else self.version

    def matches(self, body: Mapping[str, object]) -> bool:
        """ Check if a type-erased object belongs to this resource kind. """
        return body.get('apiVersion') == self.api_version and body.get('kind') == self.kind

    def get_url(
            self,
            *,
            server: Optional[str] = None,
            namespace: Namespace = None,
            name: Optional[str] = None,
            subresource: Optional[str] = None,
            params: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Build a URL to be used with K8s API.

        If the namespace is not set, a cluster-wide URL is returned.
        For cluster-scoped resources, the namespace is ignored.

        If the name is not set, the URL for the resource list is returned.
        Otherwise (if set), the URL for the individual resource is returned.

        Params go to the query parameters (``?param1=value1&param2=value2...``).
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        parts: List[Optional[str]] = [
            '/api' if self.group == '' and self.version == 'v1' else '/apis',
            self.group,
            self.version,
            'namespaces' if self.namespaced and namespace is not None else None,
            namespace if self.namespaced and namespace is not None else None,
            self.plural,
            name,
            subresource,
        ]

        query = urllib.parse.urlencode(params, encoding='utf-8') if params else ''
        path = '/'.join([part for part in parts if part])
        url = path + ('?' if query else '') + query
        return url if server is None else server.rstrip('/') + '/' + url.lstrip('/')


class ObjectRef(NamedTuple):
    """
    A reconcile key: the identity used to serialize the reconciliations.

    Unlike UIDs, it survives the re-creation of an object with the same name,
    so that a re-created object is reconciled strictly after the deleted one.
    """
    resource: Resource
    namespace: Namespace
    name: str

    def __str__(self) -> str:
        where = f'{self.namespace}/' if self.namespace else ''
        return f'{self.resource.kind} {where}{self.name}'


# Built-in resources used by the operator.
NAMESPACES = Resource('', 'v1', 'namespaces', 'Namespace', namespaced=False)
CONFIGMAPS = Resource('', 'v1', 'configmaps', 'ConfigMap')
ENDPOINTS = Resource('', 'v1', 'endpoints', 'Endpoints')
EVENTS = Resource('', 'v1', 'events', 'Event')

# The upstream cluster-management resources (the sources).
CAPI_CLUSTERS = Resource('cluster.x-k8s.io', 'v1beta2', 'clusters', 'Cluster')
CAPI_CLUSTER_CLASSES = Resource('cluster.x-k8s.io', 'v1beta2', 'clusterclasses', 'ClusterClass')

# The downstream Fleet resources (the derived ones).
FLEET_CLUSTERS = Resource('fleet.cattle.io', 'v1alpha1', 'clusters', 'Cluster')
FLEET_CLUSTER_GROUPS = Resource('fleet.cattle.io', 'v1alpha1', 'clustergroups', 'ClusterGroup')
FLEET_BUNDLE_NS_MAPPINGS = Resource('fleet.cattle.io', 'v1alpha1', 'bundlenamespacemappings',
                                    'BundleNamespaceMapping')

# The operator's own configuration singleton.
FLEET_ADDON_CONFIGS = Resource('addons.cluster.x-k8s.io', 'v1alpha1', 'fleetaddonconfigs',
                               'FleetAddonConfig', namespaced=False)
